"""Content-addressed synchronization of a local asset tree to object storage."""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import os
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Iterable, List, Mapping, Optional

from ..adapters.provider import ResourceProvider
from ..config import DEFAULT_ASSET_EXCLUDES
from ..errors import DeclarationError, ProviderError
from ..models import AssetRecord, ResourceKind, UploadAction, UploadPlan
from .content_types import cache_control, classify

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024


def hash_file(path: Path) -> str:
    hasher = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(_CHUNK_SIZE), b""):
            hasher.update(chunk)
    return hasher.hexdigest()


def object_id(bucket: str, remote_key: str) -> str:
    return f"{bucket}/{remote_key}"


class AssetSynchronizer:
    """Diff a local tree against a manifest and upload what changed.

    Remote objects missing locally are left alone; the synchronizer never
    deletes during a sync.
    """

    def __init__(
        self,
        *,
        exclude: Iterable[str] = DEFAULT_ASSET_EXCLUDES,
        key_prefix: str = "",
        max_workers: int = 8,
    ) -> None:
        self.exclude = frozenset(exclude)
        self.key_prefix = key_prefix.strip("/")
        self.max_workers = max(1, max_workers)

    # ------------------------------------------------------------------
    def scan(self, local_root: str | os.PathLike[str]) -> List[AssetRecord]:
        """Hash every regular file under ``local_root`` outside the exclusion set."""

        root = Path(local_root)
        if not root.is_dir():
            raise DeclarationError(f"Asset root is not a directory: {root}")

        records: List[AssetRecord] = []
        for dirpath, dirnames, filenames in os.walk(root):
            base = Path(dirpath).relative_to(root)
            dirnames[:] = sorted(name for name in dirnames if not self.excluded((base / name).as_posix()))
            for filename in sorted(filenames):
                relative = (base / filename).as_posix()
                if self.excluded(relative):
                    continue
                path = Path(dirpath) / filename
                if path.is_symlink() or not path.is_file():
                    continue
                records.append(
                    AssetRecord(
                        relative_path=relative,
                        content_hash=hash_file(path),
                        content_type=classify(path),
                        remote_key=self.remote_key(relative),
                        source=path,
                    )
                )
        return records

    def excluded(self, relative_path: str) -> bool:
        """Match ``relative_path`` or its final name against the exclusion globs."""

        name = relative_path.rsplit("/", 1)[-1]
        return any(
            fnmatch.fnmatchcase(name, pattern) or fnmatch.fnmatchcase(relative_path, pattern.strip("/"))
            for pattern in self.exclude
        )

    def remote_key(self, relative_path: str) -> str:
        return f"{self.key_prefix}/{relative_path}" if self.key_prefix else relative_path

    def sync(
        self, local_root: str | os.PathLike[str], remote_manifest: Mapping[str, str]
    ) -> UploadPlan:
        """Return the uploads needed to bring ``remote_manifest`` in line with ``local_root``."""

        plan = UploadPlan()
        for record in self.scan(local_root):
            previous = remote_manifest.get(record.remote_key)
            if previous == record.content_hash:
                plan.unchanged.append(record)
            else:
                plan.actions.append(UploadAction(record=record, previous_hash=previous))
        return plan

    def verify(self, plan: UploadPlan, provider: ResourceProvider, bucket: str) -> UploadPlan:
        """Confirm unchanged entries against the remote store.

        Objects that are missing remotely, or whose recorded hash differs, are
        moved into the upload actions.
        """

        verified = UploadPlan(actions=list(plan.actions))
        for record in plan.unchanged:
            remote = provider.read(ResourceKind.ASSET_OBJECT, object_id(bucket, record.remote_key))
            remote_hash = remote.outputs.get("content_hash") if remote else None
            if remote_hash == record.content_hash:
                verified.unchanged.append(record)
            else:
                logger.info("Remote copy of %s is missing or stale; re-uploading", record.remote_key)
                verified.actions.append(UploadAction(record=record, previous_hash=remote_hash))
        return verified

    def upload(
        self,
        plan: UploadPlan,
        provider: ResourceProvider,
        bucket: str,
        *,
        on_uploaded: Optional[Callable[[AssetRecord], None]] = None,
    ) -> List[AssetRecord]:
        """Upload every action in ``plan`` concurrently.

        ``on_uploaded`` runs once per completed upload. Every upload is
        attempted; if any failed, the first error is raised after the others
        finished.
        """

        if not plan.actions:
            return []

        logger.info("Uploading %d asset(s) to %s", len(plan.actions), bucket)
        uploaded: List[AssetRecord] = []
        errors: List[ProviderError] = []
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = {
                pool.submit(self._upload_one, provider, bucket, action.record): action.record
                for action in plan.actions
            }
            for future in as_completed(futures):
                record = futures[future]
                try:
                    future.result()
                except ProviderError as exc:
                    logger.error("Upload of %s failed: %s", record.remote_key, exc)
                    errors.append(exc)
                    continue
                if on_uploaded is not None:
                    on_uploaded(record)
                uploaded.append(record)

        if errors:
            raise errors[0]
        return sorted(uploaded, key=lambda record: record.remote_key)

    def _upload_one(self, provider: ResourceProvider, bucket: str, record: AssetRecord) -> None:
        provider.create(
            ResourceKind.ASSET_OBJECT,
            {
                "bucket": bucket,
                "key": record.remote_key,
                "body": record.source.read_bytes(),
                "content_type": record.content_type,
                "content_hash": record.content_hash,
                "cache_control": cache_control(record.remote_key),
            },
        )
        logger.debug("Uploaded %s (%s)", record.remote_key, record.content_hash[:12])
