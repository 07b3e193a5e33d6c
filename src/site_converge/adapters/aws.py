"""boto3 implementation of the provider interface (S3, CloudFront, ACM, Route 53)."""

from __future__ import annotations

import hashlib
import json
import logging
import time
import uuid
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

import boto3
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ProfileNotFound,
    ReadTimeoutError,
)

from ..errors import ConfigError, PermanentProviderError, TransientProviderError
from ..models import CertificateStatus, ResourceKind
from .provider import CLOUDFRONT_HOSTED_ZONE_ID, ProviderResult, ResourceProvider

logger = logging.getLogger(__name__)

# CloudFront only accepts ACM certificates from us-east-1.
CERTIFICATE_REGION = "us-east-1"
CACHING_OPTIMIZED_POLICY_ID = "658327ea-f89d-4fab-a63d-7e88639e58f6"
CONTENT_HASH_METADATA = "content-sha256"

TRANSIENT_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "Throttled",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "PriorRequestNotComplete",
        "SlowDown",
        "ServiceUnavailable",
        "InternalError",
        "InternalFailure",
        "RequestTimeout",
        "OperationAborted",
    }
)
NOT_FOUND_ERROR_CODES = frozenset(
    {
        "404",
        "NoSuchBucket",
        "NoSuchKey",
        "NotFound",
        "NoSuchBucketPolicy",
        "NoSuchDistribution",
        "NoSuchCloudFrontOriginAccessIdentity",
        "ResourceNotFoundException",
        "NoSuchHostedZone",
    }
)

_ACM_STATUS = {
    "ISSUED": CertificateStatus.ISSUED,
    "PENDING_VALIDATION": CertificateStatus.PENDING,
}


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


@contextmanager
def translate_errors(action: str) -> Iterator[None]:
    """Map botocore failures onto the engine's transient/permanent taxonomy."""

    try:
        yield
    except ClientError as exc:
        code = _error_code(exc)
        message = exc.response.get("Error", {}).get("Message", "")
        if code in TRANSIENT_ERROR_CODES:
            raise TransientProviderError(f"{action}: {code} {message}".strip()) from exc
        raise PermanentProviderError(f"{action}: {code} {message}".strip()) from exc
    except (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError) as exc:
        raise TransientProviderError(f"{action}: {exc}") from exc


def _record_id(zone_id: str, name: str, record_type: str) -> str:
    return f"{zone_id}|{_fqdn(name)}|{record_type}"


def _split_record_id(remote_id: str) -> Tuple[str, str, str]:
    zone_id, name, record_type = remote_id.split("|", 2)
    return zone_id, name, record_type


def _fqdn(name: str) -> str:
    return name if name.endswith(".") else f"{name}."


def _split_object_id(remote_id: str) -> Tuple[str, str]:
    bucket, _, key = remote_id.partition("/")
    return bucket, key


class AwsProvider(ResourceProvider):
    """Provider backed by boto3 clients created from one session."""

    def __init__(
        self,
        session: Any = None,
        *,
        region: str = "us-east-1",
        profile: str | None = None,
        validation_details_timeout: float = 120.0,
        deploy_timeout: float = 1800.0,
        poll_interval: float = 5.0,
        sleep: Callable[[float], Any] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if session is None:
            try:
                session = boto3.Session(profile_name=profile, region_name=region)
            except ProfileNotFound as exc:
                raise ConfigError(f"Credentials profile '{profile}' was not found") from exc
        self.session = session
        self.region = region
        self.validation_details_timeout = validation_details_timeout
        self.deploy_timeout = deploy_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock
        self._clients: Dict[Tuple[str, str], Any] = {}

    def _client(self, service: str, region: str | None = None) -> Any:
        key = (service, region or self.region)
        if key not in self._clients:
            self._clients[key] = self.session.client(service, region_name=key[1])
        return self._clients[key]

    # Dispatch ------------------------------------------------------------
    def create(self, kind: ResourceKind, attributes: Mapping[str, Any]) -> ProviderResult:
        with translate_errors(f"create {kind.value}"):
            return getattr(self, f"_create_{kind.value}")(attributes)

    def read(self, kind: ResourceKind, remote_id: str) -> Optional[ProviderResult]:
        with translate_errors(f"read {kind.value} {remote_id}"):
            try:
                return getattr(self, f"_read_{kind.value}")(remote_id)
            except ClientError as exc:
                if _error_code(exc) in NOT_FOUND_ERROR_CODES:
                    return None
                raise

    def update(
        self, kind: ResourceKind, remote_id: str, attributes: Mapping[str, Any]
    ) -> ProviderResult:
        with translate_errors(f"update {kind.value} {remote_id}"):
            return getattr(self, f"_update_{kind.value}")(remote_id, attributes)

    def delete(self, kind: ResourceKind, remote_id: str) -> None:
        with translate_errors(f"delete {kind.value} {remote_id}"):
            try:
                getattr(self, f"_delete_{kind.value}")(remote_id)
            except ClientError as exc:
                if _error_code(exc) not in NOT_FOUND_ERROR_CODES:
                    raise
                logger.debug("%s %s already deleted", kind.value, remote_id)

    def certificate_status(self, remote_id: str) -> Tuple[CertificateStatus, Optional[str]]:
        with translate_errors(f"describe certificate {remote_id}"):
            certificate = self._client("acm", CERTIFICATE_REGION).describe_certificate(
                CertificateArn=remote_id
            )["Certificate"]
        status = _ACM_STATUS.get(certificate.get("Status", ""), CertificateStatus.FAILED)
        reason = None
        if status is CertificateStatus.FAILED:
            reason = certificate.get("FailureReason") or certificate.get("Status")
        return status, reason

    # S3 buckets ----------------------------------------------------------
    def _create_bucket(self, attributes: Mapping[str, Any]) -> ProviderResult:
        s3 = self._client("s3")
        name = str(attributes["bucket_name"])
        region = str(attributes.get("region") or self.region)
        params: Dict[str, Any] = {"Bucket": name}
        if region != "us-east-1":
            params["CreateBucketConfiguration"] = {"LocationConstraint": region}
        try:
            s3.create_bucket(**params)
            logger.info("Created bucket %s in %s", name, region)
        except ClientError as exc:
            if _error_code(exc) != "BucketAlreadyOwnedByYou":
                raise
        return self._update_bucket(name, attributes)

    def _read_bucket(self, remote_id: str) -> ProviderResult:
        self._client("s3").head_bucket(Bucket=remote_id)
        return self._bucket_result(remote_id, self.region)

    def _update_bucket(self, remote_id: str, attributes: Mapping[str, Any]) -> ProviderResult:
        block = bool(attributes.get("block_public_access", True))
        self._client("s3").put_public_access_block(
            Bucket=remote_id,
            PublicAccessBlockConfiguration={
                "BlockPublicAcls": block,
                "IgnorePublicAcls": block,
                "BlockPublicPolicy": block,
                "RestrictPublicBuckets": block,
            },
        )
        return self._bucket_result(remote_id, str(attributes.get("region") or self.region))

    def _delete_bucket(self, remote_id: str) -> None:
        self._client("s3").delete_bucket(Bucket=remote_id)

    @staticmethod
    def _bucket_result(name: str, region: str) -> ProviderResult:
        return ProviderResult(
            remote_id=name,
            outputs={
                "bucket_name": name,
                "arn": f"arn:aws:s3:::{name}",
                "regional_domain_name": f"{name}.s3.{region}.amazonaws.com",
            },
        )

    # S3 bucket policies --------------------------------------------------
    def _create_bucket_policy(self, attributes: Mapping[str, Any]) -> ProviderResult:
        return self._update_bucket_policy(str(attributes["bucket_name"]), attributes)

    def _read_bucket_policy(self, remote_id: str) -> ProviderResult:
        response = self._client("s3").get_bucket_policy(Bucket=remote_id)
        return ProviderResult(remote_id=remote_id, outputs={"policy": json.loads(response["Policy"])})

    def _update_bucket_policy(self, remote_id: str, attributes: Mapping[str, Any]) -> ProviderResult:
        policy = attributes["policy"]
        self._client("s3").put_bucket_policy(Bucket=remote_id, Policy=json.dumps(policy))
        return ProviderResult(remote_id=remote_id, outputs={"bucket_name": remote_id, "policy": policy})

    def _delete_bucket_policy(self, remote_id: str) -> None:
        self._client("s3").delete_bucket_policy(Bucket=remote_id)

    # S3 objects ----------------------------------------------------------
    def _create_asset_object(self, attributes: Mapping[str, Any]) -> ProviderResult:
        bucket, key = str(attributes["bucket"]), str(attributes["key"])
        params: Dict[str, Any] = {
            "Bucket": bucket,
            "Key": key,
            "Body": attributes["body"],
            "ContentType": attributes.get("content_type") or "application/octet-stream",
            "Metadata": {CONTENT_HASH_METADATA: str(attributes.get("content_hash", ""))},
        }
        if attributes.get("cache_control"):
            params["CacheControl"] = attributes["cache_control"]
        response = self._client("s3").put_object(**params)
        return ProviderResult(
            remote_id=f"{bucket}/{key}",
            outputs={"etag": response.get("ETag"), "content_hash": attributes.get("content_hash")},
        )

    def _read_asset_object(self, remote_id: str) -> ProviderResult:
        bucket, key = _split_object_id(remote_id)
        response = self._client("s3").head_object(Bucket=bucket, Key=key)
        return ProviderResult(
            remote_id=remote_id,
            outputs={
                "etag": response.get("ETag"),
                "content_hash": (response.get("Metadata") or {}).get(CONTENT_HASH_METADATA),
                "content_type": response.get("ContentType"),
            },
        )

    def _update_asset_object(self, remote_id: str, attributes: Mapping[str, Any]) -> ProviderResult:
        bucket, key = _split_object_id(remote_id)
        return self._create_asset_object({**attributes, "bucket": bucket, "key": key})

    def _delete_asset_object(self, remote_id: str) -> None:
        bucket, key = _split_object_id(remote_id)
        self._client("s3").delete_object(Bucket=bucket, Key=key)

    # CloudFront origin access identities ---------------------------------
    def _create_access_identity(self, attributes: Mapping[str, Any]) -> ProviderResult:
        response = self._client("cloudfront").create_cloud_front_origin_access_identity(
            CloudFrontOriginAccessIdentityConfig={
                "CallerReference": str(uuid.uuid4()),
                "Comment": str(attributes.get("comment") or ""),
            }
        )
        return self._identity_result(response["CloudFrontOriginAccessIdentity"])

    def _read_access_identity(self, remote_id: str) -> ProviderResult:
        response = self._client("cloudfront").get_cloud_front_origin_access_identity(Id=remote_id)
        return self._identity_result(response["CloudFrontOriginAccessIdentity"])

    def _update_access_identity(self, remote_id: str, attributes: Mapping[str, Any]) -> ProviderResult:
        cloudfront = self._client("cloudfront")
        current = cloudfront.get_cloud_front_origin_access_identity_config(Id=remote_id)
        config = dict(current["CloudFrontOriginAccessIdentityConfig"])
        config["Comment"] = str(attributes.get("comment") or "")
        response = cloudfront.update_cloud_front_origin_access_identity(
            CloudFrontOriginAccessIdentityConfig=config, Id=remote_id, IfMatch=current["ETag"]
        )
        return self._identity_result(response["CloudFrontOriginAccessIdentity"])

    def _delete_access_identity(self, remote_id: str) -> None:
        cloudfront = self._client("cloudfront")
        current = cloudfront.get_cloud_front_origin_access_identity(Id=remote_id)
        cloudfront.delete_cloud_front_origin_access_identity(Id=remote_id, IfMatch=current["ETag"])

    @staticmethod
    def _identity_result(identity: Mapping[str, Any]) -> ProviderResult:
        identity_id = str(identity["Id"])
        return ProviderResult(
            remote_id=identity_id,
            outputs={
                "principal": f"arn:aws:iam::cloudfront:user/CloudFront Origin Access Identity {identity_id}",
                "canonical_user_id": identity.get("S3CanonicalUserId"),
            },
        )

    # ACM certificates ----------------------------------------------------
    def _create_certificate(self, attributes: Mapping[str, Any]) -> ProviderResult:
        acm = self._client("acm", CERTIFICATE_REGION)
        domain = str(attributes["domain_name"])
        alternatives = [str(name) for name in attributes.get("alternative_names") or []]
        params: Dict[str, Any] = {
            "DomainName": domain,
            "ValidationMethod": "DNS",
            # Repeating the request within the hour returns the same certificate.
            "IdempotencyToken": hashlib.sha256(
                "|".join([domain, *sorted(alternatives)]).encode("utf-8")
            ).hexdigest()[:32],
        }
        if alternatives:
            params["SubjectAlternativeNames"] = [domain, *alternatives]
        arn = acm.request_certificate(**params)["CertificateArn"]
        logger.info("Requested ACM certificate %s", arn)

        deadline = self._clock() + self.validation_details_timeout
        expected = 1 + len(set(alternatives) - {domain})
        while True:
            result = self._read_certificate(arn)
            if len(result.outputs["validation_records"]) >= expected:
                return result
            if self._clock() >= deadline:
                raise TransientProviderError(f"Validation records for {arn} are not available yet")
            self._sleep(self.poll_interval)

    def _read_certificate(self, remote_id: str) -> ProviderResult:
        certificate = self._client("acm", CERTIFICATE_REGION).describe_certificate(
            CertificateArn=remote_id
        )["Certificate"]
        records: List[Dict[str, str]] = []
        for option in certificate.get("DomainValidationOptions", []):
            record = option.get("ResourceRecord")
            if not record:
                continue
            records.append(
                {
                    "domain": option.get("DomainName", ""),
                    "record_name": record["Name"],
                    "record_value": record["Value"],
                    "record_type": record.get("Type", "CNAME"),
                }
            )
        return ProviderResult(
            remote_id=remote_id,
            outputs={"status": certificate.get("Status"), "validation_records": records},
        )

    def _update_certificate(self, remote_id: str, attributes: Mapping[str, Any]) -> ProviderResult:
        # Certificates are immutable; the engine replaces them instead.
        return self._read_certificate(remote_id)

    def _delete_certificate(self, remote_id: str) -> None:
        self._client("acm", CERTIFICATE_REGION).delete_certificate(CertificateArn=remote_id)

    # Route 53 records ----------------------------------------------------
    def _create_validation_record(self, attributes: Mapping[str, Any]) -> ProviderResult:
        record_set = {
            "Name": _fqdn(str(attributes["name"])),
            "Type": str(attributes.get("type") or "CNAME"),
            "TTL": int(attributes.get("ttl") or 300),
            "ResourceRecords": [{"Value": str(attributes["value"])}],
        }
        return self._upsert_record(str(attributes["zone_id"]), record_set)

    def _create_alias_record(self, attributes: Mapping[str, Any]) -> ProviderResult:
        target = attributes["alias_target"]
        record_set = {
            "Name": _fqdn(str(attributes["name"])),
            "Type": str(attributes.get("type") or "A"),
            "AliasTarget": {
                "HostedZoneId": str(target.get("hosted_zone_id") or CLOUDFRONT_HOSTED_ZONE_ID),
                "DNSName": str(target["dns_name"]),
                "EvaluateTargetHealth": False,
            },
        }
        return self._upsert_record(str(attributes["zone_id"]), record_set)

    def _update_validation_record(self, remote_id: str, attributes: Mapping[str, Any]) -> ProviderResult:
        return self._create_validation_record(attributes)

    def _update_alias_record(self, remote_id: str, attributes: Mapping[str, Any]) -> ProviderResult:
        return self._create_alias_record(attributes)

    def _read_validation_record(self, remote_id: str) -> Optional[ProviderResult]:
        return self._read_record(remote_id)

    def _read_alias_record(self, remote_id: str) -> Optional[ProviderResult]:
        return self._read_record(remote_id)

    def _delete_validation_record(self, remote_id: str) -> None:
        self._delete_record(remote_id)

    def _delete_alias_record(self, remote_id: str) -> None:
        self._delete_record(remote_id)

    def _upsert_record(self, zone_id: str, record_set: Mapping[str, Any]) -> ProviderResult:
        self._client("route53").change_resource_record_sets(
            HostedZoneId=zone_id,
            ChangeBatch={"Changes": [{"Action": "UPSERT", "ResourceRecordSet": dict(record_set)}]},
        )
        logger.debug("Upserted %s record %s", record_set["Type"], record_set["Name"])
        return ProviderResult(
            remote_id=_record_id(zone_id, record_set["Name"], record_set["Type"]),
            outputs={"name": record_set["Name"], "type": record_set["Type"]},
        )

    def _find_record(self, remote_id: str) -> Optional[Dict[str, Any]]:
        zone_id, name, record_type = _split_record_id(remote_id)
        response = self._client("route53").list_resource_record_sets(
            HostedZoneId=zone_id, StartRecordName=name, StartRecordType=record_type, MaxItems="1"
        )
        for record_set in response.get("ResourceRecordSets", []):
            if _fqdn(record_set["Name"]) == name and record_set["Type"] == record_type:
                return record_set
        return None

    def _read_record(self, remote_id: str) -> Optional[ProviderResult]:
        record_set = self._find_record(remote_id)
        if record_set is None:
            return None
        return ProviderResult(
            remote_id=remote_id, outputs={"name": record_set["Name"], "type": record_set["Type"]}
        )

    def _delete_record(self, remote_id: str) -> None:
        record_set = self._find_record(remote_id)
        if record_set is None:
            return
        zone_id, _, _ = _split_record_id(remote_id)
        self._client("route53").change_resource_record_sets(
            HostedZoneId=zone_id,
            ChangeBatch={"Changes": [{"Action": "DELETE", "ResourceRecordSet": record_set}]},
        )

    # CloudFront distributions --------------------------------------------
    def _distribution_config(
        self, attributes: Mapping[str, Any], caller_reference: str
    ) -> Dict[str, Any]:
        aliases = [str(name) for name in attributes.get("aliases") or []]
        origin_id = str(attributes["origin_id"])
        config: Dict[str, Any] = {
            "CallerReference": caller_reference,
            "Comment": str(attributes.get("comment") or ""),
            "Enabled": True,
            "DefaultRootObject": str(attributes.get("default_root_object") or "index.html"),
            "PriceClass": str(attributes.get("price_class") or "PriceClass_100"),
            "HttpVersion": "http2",
            "IsIPV6Enabled": bool(attributes.get("ipv6", False)),
            "Aliases": {"Quantity": len(aliases), "Items": aliases},
            "Origins": {
                "Quantity": 1,
                "Items": [
                    {
                        "Id": origin_id,
                        "DomainName": str(attributes["origin_domain"]),
                        "S3OriginConfig": {
                            "OriginAccessIdentity": (
                                f"origin-access-identity/cloudfront/{attributes['access_identity_id']}"
                            )
                        },
                    }
                ],
            },
            "DefaultCacheBehavior": {
                "TargetOriginId": origin_id,
                "ViewerProtocolPolicy": "redirect-to-https",
                "AllowedMethods": {
                    "Quantity": 2,
                    "Items": ["GET", "HEAD"],
                    "CachedMethods": {"Quantity": 2, "Items": ["GET", "HEAD"]},
                },
                "CachePolicyId": CACHING_OPTIMIZED_POLICY_ID,
                "Compress": True,
            },
        }
        certificate_arn = attributes.get("certificate_arn")
        if certificate_arn:
            config["ViewerCertificate"] = {
                "ACMCertificateArn": str(certificate_arn),
                "SSLSupportMethod": "sni-only",
                "MinimumProtocolVersion": "TLSv1.2_2021",
            }
        else:
            config["ViewerCertificate"] = {"CloudFrontDefaultCertificate": True}
        return config

    def _create_distribution(self, attributes: Mapping[str, Any]) -> ProviderResult:
        response = self._client("cloudfront").create_distribution(
            DistributionConfig=self._distribution_config(attributes, str(uuid.uuid4()))
        )
        return self._distribution_result(response["Distribution"])

    def _read_distribution(self, remote_id: str) -> ProviderResult:
        response = self._client("cloudfront").get_distribution(Id=remote_id)
        return self._distribution_result(response["Distribution"])

    def _update_distribution(self, remote_id: str, attributes: Mapping[str, Any]) -> ProviderResult:
        cloudfront = self._client("cloudfront")
        current = cloudfront.get_distribution_config(Id=remote_id)
        caller_reference = current["DistributionConfig"]["CallerReference"]
        config = {**current["DistributionConfig"], **self._distribution_config(attributes, caller_reference)}
        response = cloudfront.update_distribution(
            DistributionConfig=config, Id=remote_id, IfMatch=current["ETag"]
        )
        return self._distribution_result(response["Distribution"])

    def _delete_distribution(self, remote_id: str) -> None:
        cloudfront = self._client("cloudfront")
        current = cloudfront.get_distribution_config(Id=remote_id)
        etag = current["ETag"]
        if current["DistributionConfig"].get("Enabled"):
            logger.info("Disabling distribution %s before deletion", remote_id)
            config = {**current["DistributionConfig"], "Enabled": False}
            etag = cloudfront.update_distribution(DistributionConfig=config, Id=remote_id, IfMatch=etag)[
                "ETag"
            ]
        self._wait_distribution_deployed(remote_id)
        cloudfront.delete_distribution(Id=remote_id, IfMatch=etag)

    def _wait_distribution_deployed(self, remote_id: str) -> None:
        deadline = self._clock() + self.deploy_timeout
        while self._read_distribution(remote_id).outputs["status"] != "Deployed":
            if self._clock() >= deadline:
                raise TransientProviderError(f"Distribution {remote_id} is still deploying")
            self._sleep(self.poll_interval)

    @staticmethod
    def _distribution_result(distribution: Mapping[str, Any]) -> ProviderResult:
        return ProviderResult(
            remote_id=str(distribution["Id"]),
            outputs={
                "arn": distribution.get("ARN"),
                "domain_name": distribution.get("DomainName"),
                "status": distribution.get("Status"),
                "hosted_zone_id": CLOUDFRONT_HOSTED_ZONE_ID,
            },
        )
