"""Plan and apply resource operations in dependency order."""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Mapping, Optional, Set

from ..adapters.provider import ProviderResult
from ..config import ConvergeSettings
from ..errors import ApplyCancelledError, ConvergenceError, DeclarationError
from ..graph import ResourceGraph, destroy_order
from ..models import (
    ApplyResult,
    CertificateRequest,
    DeposedInstance,
    NodeOutcome,
    OperationKind,
    OperationRecord,
    Plan,
    PlannedOperation,
    ReplacePolicy,
    ResourceKind,
    ResourceNode,
    StateEntry,
)
from ..state import StateStore, utc_timestamp
from .handlers import ApplyContext, ResourceHandler

logger = logging.getLogger(__name__)


class TopologicalExecutor:
    """Converge remote state to a :class:`ResourceGraph`, one node at a time.

    Creates and updates run in dependency order, destroys in reverse
    dependency order. The first failing node halts the walk; completed nodes
    stay in place and in the state store.
    """

    def __init__(
        self,
        graph: ResourceGraph,
        state: StateStore,
        handlers: Mapping[ResourceKind, ResourceHandler],
        *,
        settings: ConvergeSettings | None = None,
        cancel_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.graph = graph
        self.state = state
        self.handlers = dict(handlers)
        self.clock = clock
        self.context = ApplyContext(
            state=state,
            settings=settings or ConvergeSettings(),
            cancel_event=cancel_event or threading.Event(),
        )

    # Planning ------------------------------------------------------------
    def plan(self) -> Plan:
        """Diff the graph against the state store."""

        operations: List[PlannedOperation] = []
        replaced: Set[str] = set()
        for node in self.graph.order():
            previous = self.state.get(node.id)
            handler = self._handler(node.kind)
            fingerprint = handler.fingerprint(node, self.context)
            action, reason = self._diff(node, previous, fingerprint)
            if (
                action is OperationKind.NOOP
                and previous is not None
                and handler.needs_refresh(node, previous, self.context)
            ):
                action, reason = OperationKind.UPDATE, "verify remote copies"

            if action is OperationKind.NOOP:
                rewired = sorted(self.graph.dependencies(node.id) & replaced)
                if rewired:
                    action, reason = OperationKind.UPDATE, f"rewire to replaced {', '.join(rewired)}"
            # Deposed instances linger until every dependent has moved off them.
            if action is OperationKind.REPLACE or (previous is not None and previous.deposed):
                replaced.add(node.id)

            operations.append(
                PlannedOperation(
                    resource_id=node.id,
                    kind=node.kind,
                    action=action,
                    reason=reason,
                    replace_policy=node.replace_policy,
                    fingerprint=fingerprint,
                    node=node,
                    previous=previous,
                )
            )

        orphans = {
            entry.resource_id: entry for entry in self.state.entries() if entry.resource_id not in self.graph
        }
        operations.extend(self._destroy_operations(orphans, "no longer declared"))
        return Plan(operations=operations)

    def plan_destroy(self) -> Plan:
        """Plan the removal of everything recorded in the state store."""

        entries = {entry.resource_id: entry for entry in self.state.entries()}
        for resource_id, payload in self.state.checkpoints().items():
            if resource_id not in entries:
                entries[resource_id] = _pending_certificate_entry(resource_id, payload)
        return Plan(operations=self._destroy_operations(entries, "destroy requested"))

    def _destroy_operations(self, entries: Mapping[str, StateEntry], reason: str) -> List[PlannedOperation]:
        order = destroy_order({key: entry.depends_on for key, entry in entries.items()})
        return [
            PlannedOperation(
                resource_id=resource_id,
                kind=entries[resource_id].kind,
                action=OperationKind.DESTROY,
                reason=reason,
                previous=entries[resource_id],
            )
            for resource_id in order
        ]

    @staticmethod
    def _diff(
        node: ResourceNode, previous: Optional[StateEntry], fingerprint: str
    ) -> tuple[OperationKind, str]:
        if previous is None:
            return OperationKind.CREATE, "not yet created"
        if previous.kind is not node.kind:
            return OperationKind.REPLACE, f"kind changed from {previous.kind.value}"
        if previous.attribute_hash == fingerprint:
            return OperationKind.NOOP, ""
        if node.requires_replacement(previous.attributes):
            return OperationKind.REPLACE, "attribute change requires a new instance"
        return OperationKind.UPDATE, "attributes changed"

    # Execution -----------------------------------------------------------
    def apply(self, plan: Plan | None = None) -> ApplyResult:
        """Execute ``plan`` (or a fresh plan) while holding the state lock."""

        with self.state.lock():
            plan = plan or self.plan()
            result = ApplyResult(plan=plan)
            self._walk(plan.forward, result, upstream=self.graph.descendants)
            self._walk(plan.destroys, result)
            if result.error is None:
                self._remove_deposed(result)
        self._log_summary(result)
        return result

    def destroy(self, plan: Plan | None = None) -> ApplyResult:
        """Destroy every recorded resource in reverse dependency order."""

        with self.state.lock():
            plan = plan or self.plan_destroy()
            result = ApplyResult(plan=plan)
            self._walk(plan.operations, result)
        self._log_summary(result)
        return result

    def _walk(
        self,
        operations: List[PlannedOperation],
        result: ApplyResult,
        *,
        upstream: Optional[Callable[[str], Set[str]]] = None,
    ) -> None:
        blocked: Set[str] = set()
        for operation in operations:
            if result.error is None and self.context.cancel_event.is_set():
                result.error = ApplyCancelledError(f"Apply cancelled before '{operation.resource_id}'")

            if result.error is not None:
                detail = "upstream failure" if operation.resource_id in blocked else "apply halted"
                result.records.append(self._record(operation, NodeOutcome.SKIPPED, detail=detail))
                continue

            started = self.clock()
            logger.info("%s %s (%s)", operation.action.value, operation.resource_id, operation.kind.value)
            try:
                detail = self._execute(operation)
            except ConvergenceError as exc:
                logger.error("%s %s failed: %s", operation.action.value, operation.resource_id, exc)
                result.error = exc
                if upstream is not None and operation.resource_id in self.graph:
                    blocked = upstream(operation.resource_id)
                result.records.append(
                    self._record(operation, NodeOutcome.FAILED, started, self.clock(), str(exc))
                )
                continue

            result.records.append(
                self._record(operation, NodeOutcome.SUCCEEDED, started, self.clock(), detail)
            )

    def _execute(self, operation: PlannedOperation) -> str:
        previous = operation.previous
        if operation.action is OperationKind.NOOP:
            return "unchanged"

        if operation.action is OperationKind.DESTROY:
            assert previous is not None
            self._delete_instance(previous)
            self.state.remove(previous.resource_id)
            return f"destroyed {previous.remote_identifier}"

        node = operation.node
        assert node is not None
        missing = node.missing_attributes()
        if missing:
            raise DeclarationError(f"Resource '{node.id}' is missing {', '.join(missing)}")
        handler = self._handler(node.kind)

        if operation.action is OperationKind.CREATE:
            created = handler.create(node, self.context)
            self._commit(operation, created, [])
            return f"created {created.remote_id}"

        assert previous is not None
        if operation.action is OperationKind.UPDATE:
            updated = handler.update(node, previous, self.context)
            self._commit(operation, updated, previous.deposed)
            return f"updated {updated.remote_id}"

        if operation.replace_policy is ReplacePolicy.CREATE_BEFORE_DESTROY and previous.kind is node.kind:
            created = handler.create(node, self.context)
            deposed = [*previous.deposed, DeposedInstance(previous.remote_identifier, dict(previous.outputs))]
            self._commit(operation, created, deposed)
            return f"created {created.remote_id}; {previous.remote_identifier} removed after dependents move"

        self._delete_instance(previous)
        self.state.remove(previous.resource_id)
        created = handler.create(node, self.context)
        self._commit(operation, created, [])
        return f"replaced {previous.remote_identifier} with {created.remote_id}"

    def _delete_instance(self, entry: StateEntry) -> None:
        handler = self._handler(entry.kind)
        for instance in entry.deposed:
            handler.delete_deposed(entry, instance, self.context)
        handler.delete(entry, self.context)

    def _remove_deposed(self, result: ApplyResult) -> None:
        # Dependents converge before this runs, so none still points at a deposed instance.
        for node in reversed(self.graph.order()):
            entry = self.state.get(node.id)
            if entry is None or not entry.deposed:
                continue

            handler = self._handler(entry.kind)
            operation = PlannedOperation(
                resource_id=f"{node.id} (deposed)",
                kind=entry.kind,
                action=OperationKind.DESTROY,
                reason="replaced by a new instance",
                previous=entry,
            )
            started = self.clock()
            try:
                while entry.deposed:
                    instance = entry.deposed[0]
                    handler.delete_deposed(entry, instance, self.context)
                    entry.deposed = entry.deposed[1:]
                    self.state.commit(entry)
            except ConvergenceError as exc:
                logger.error("Removing deposed instances of %s failed: %s", node.id, exc)
                result.error = exc
                result.records.append(
                    self._record(operation, NodeOutcome.FAILED, started, self.clock(), str(exc))
                )
                return
            result.plan.operations.append(operation)
            result.records.append(
                self._record(operation, NodeOutcome.SUCCEEDED, started, self.clock(), "deposed instances removed")
            )

    def _commit(
        self, operation: PlannedOperation, outcome: ProviderResult, deposed: List[DeposedInstance]
    ) -> StateEntry:
        node = operation.node
        assert node is not None
        return self.state.commit(
            StateEntry(
                resource_id=node.id,
                kind=node.kind,
                remote_identifier=outcome.remote_id,
                attribute_hash=operation.fingerprint,
                last_applied_at=utc_timestamp(),
                attributes=dict(node.desired_attributes),
                outputs=dict(outcome.outputs),
                depends_on=sorted(self.graph.dependencies(node.id)),
                deposed=list(deposed),
            )
        )

    # Helpers -------------------------------------------------------------
    def _handler(self, kind: ResourceKind) -> ResourceHandler:
        try:
            return self.handlers[kind]
        except KeyError as exc:
            raise ConvergenceError(f"No handler registered for {kind.value} resources") from exc

    @staticmethod
    def _record(
        operation: PlannedOperation,
        outcome: NodeOutcome,
        started: Optional[float] = None,
        finished: Optional[float] = None,
        detail: str = "",
    ) -> OperationRecord:
        return OperationRecord(
            resource_id=operation.resource_id,
            kind=operation.kind,
            action=operation.action,
            outcome=outcome,
            started_at=started,
            finished_at=finished,
            detail=detail,
        )

    @staticmethod
    def _log_summary(result: ApplyResult) -> None:
        counts: Dict[NodeOutcome, int] = {outcome: 0 for outcome in NodeOutcome}
        for record in result.records:
            counts[record.outcome] += 1
        summary = ", ".join(f"{count} {outcome.value}" for outcome, count in counts.items())
        if result.error is None:
            logger.info("Convergence finished: %s", summary)
        else:
            logger.warning("Convergence halted: %s (%s)", summary, result.error)


def _pending_certificate_entry(resource_id: str, payload: Mapping[str, object]) -> StateEntry:
    request = CertificateRequest.from_checkpoint(payload)
    return StateEntry(
        resource_id=resource_id,
        kind=ResourceKind.CERTIFICATE,
        remote_identifier=str(request.certificate_arn),
        attribute_hash="",
        last_applied_at="",
        outputs={"validation_record_ids": list(request.validation_record_ids)},
    )
