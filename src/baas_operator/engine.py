"""Apply engine: drive a whole manifest through the per-resource reconcilers.

For every declared resource, in manifest order:

1. Resolve ``@name`` parent references from the state file
2. Absent from state (or drifted away remotely): create
3. Present with changed attributes: update in place when the kind allows
   it, otherwise delete and create (replacement)
4. Present and unchanged: keep the freshly read record

Afterwards, resources still in state but no longer declared are deleted in
reverse creation order. The first failure stops the run; the state file is
saved after every successful step so a rerun picks up where it stopped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, NoReturn

from .config import Config
from .dedup import SharedResourceDeduplicator
from .errors import ConvergenceTimeoutError, ReconcileError
from .gateway import Gateway
from .kinds import get_kind
from .models import DesiredSpec, ReconcileOutcome, ReconcileResult
from .reconciler import ResourceReconciler
from .retry import Deadline, Retry
from .state import DeclaredResource, Manifest, StateEntry, StateFileError, StateStore

logger = logging.getLogger(__name__)


class _StopRun(Exception):
    """Internal signal: a step failed and the run must stop.

    The failed result has already been appended to the report.
    """

    pass


@dataclass
class ApplyReport:
    """Outcome of one engine run."""

    results: list[ReconcileResult] = field(default_factory=list)
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None

    @property
    def success(self) -> bool:
        return all(result.success for result in self.results)

    @property
    def failure(self) -> ReconcileResult | None:
        for result in self.results:
            if not result.success:
                return result
        return None

    @property
    def duration_seconds(self) -> float:
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    def count(self, action: str) -> int:
        return sum(1 for result in self.results if result.success and result.action == action)

    def summary(self) -> dict[str, int]:
        actions = ("create", "update", "replace", "delete", "unchanged", "read", "drifted")
        return {action: self.count(action) for action in actions}

    def finish(self) -> ApplyReport:
        self.end_time = datetime.now(UTC)
        return self


class Engine:
    """Reconciles a manifest against the state file and the control plane."""

    def __init__(
        self,
        gateway: Gateway,
        store: StateStore,
        config: Config,
        retry: Retry | None = None,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._config = config
        self._retry = retry or Retry(config.retry)
        self._deduplicator = SharedResourceDeduplicator(gateway)
        self._reconcilers: dict[str, ResourceReconciler] = {}

    @property
    def store(self) -> StateStore:
        return self._store

    def reconciler_for(self, kind_name: str) -> ResourceReconciler:
        reconciler = self._reconcilers.get(kind_name)
        if reconciler is None:
            reconciler = ResourceReconciler(
                get_kind(kind_name), self._gateway, self._retry, self._deduplicator
            )
            self._reconcilers[kind_name] = reconciler
        return reconciler

    # =========================================================================
    # Public operations
    # =========================================================================

    async def apply(self, manifest: Manifest) -> ApplyReport:
        """Bring the control plane in line with the manifest."""
        report = ApplyReport()
        declared = {resource.name for resource in manifest.resources}
        try:
            for resource in manifest.resources:
                await self._apply_resource(resource, report)

            orphans = [name for name in reversed(self._store.names()) if name not in declared]
            for name in orphans:
                await self._delete_entry(name, report)
        except _StopRun:
            pass

        self._log_report("apply", report)
        return report.finish()

    async def destroy(self) -> ApplyReport:
        """Delete every resource in state, children first."""
        report = ApplyReport()
        try:
            for name in reversed(self._store.names()):
                await self._delete_entry(name, report)
        except _StopRun:
            pass

        self._log_report("destroy", report)
        return report.finish()

    async def refresh(self) -> ApplyReport:
        """Re-read every resource in state and drop the ones that drifted away."""
        report = ApplyReport()
        try:
            for name in self._store.names():
                entry = self._store.get(name)
                assert entry is not None
                await self._refresh_entry(name, entry, report)
        except _StopRun:
            pass

        self._log_report("refresh", report)
        return report.finish()

    # =========================================================================
    # Steps
    # =========================================================================

    async def _apply_resource(self, resource: DeclaredResource, report: ApplyReport) -> None:
        try:
            parent_keys = self._store.resolve_parent_keys(resource)
            get_kind(resource.kind).require_parent_keys(parent_keys)
        except ReconcileError as e:
            self._fail(report, resource.name, resource.kind, "create", e)

        spec = resource.to_desired_spec(parent_keys)
        entry = self._store.get(resource.name)

        if entry is not None and entry.tainted:
            logger.warning(
                "Replacing resource that never became ready",
                extra={"resource": resource.name, "resource_id": entry.id},
            )
            await self._replace(resource.name, spec, report)
            return

        if entry is not None and entry.kind == resource.kind:
            entry = await self._refresh_entry(resource.name, entry, report, record_read=False)

        if entry is None:
            await self._create(resource.name, spec, "create", report)
            return

        if self._needs_replacement(entry, spec):
            await self._replace(resource.name, spec, report)
            return

        changed = _changed_attributes(entry.desired, spec.attributes)
        if not changed:
            result = ReconcileResult(
                kind=spec.kind, record=entry.to_record(), name=resource.name, action="unchanged"
            )
            report.results.append(result.finish())
            return

        kind = get_kind(spec.kind)
        if kind.mutable and changed <= set(kind.update_fields):
            await self._update(resource.name, entry, spec, report)
        else:
            logger.info(
                "Attributes cannot change in place, replacing",
                extra={"resource": resource.name, "changed": sorted(changed)},
            )
            await self._replace(resource.name, spec, report)

    async def _create(
        self, name: str, spec: DesiredSpec, action: str, report: ApplyReport
    ) -> None:
        reconciler = self.reconciler_for(spec.kind)
        deadline = Deadline(spec.timeout_seconds or self._config.create_timeout_seconds)
        try:
            result = await reconciler.create(spec, deadline)
        except ReconcileError as e:
            if isinstance(e, ConvergenceTimeoutError) and e.resource_id:
                # The remote entity exists; keep track of it so it is not leaked
                self._store.put(
                    name,
                    StateEntry(
                        kind=spec.kind,
                        id=e.resource_id,
                        state=e.last_state,
                        parent_keys=get_kind(spec.kind).require_parent_keys(spec.parent_keys),
                        shared_deployment=spec.shared_deployment,
                        tainted=True,
                        desired=dict(spec.attributes),
                    ),
                )
                self._save(report, name, spec.kind, action)
            self._fail(report, name, spec.kind, action, e)

        assert result.record is not None
        self._store.put(name, StateEntry.from_record(result.record, spec, adopted=result.adopted))
        self._save(report, name, spec.kind, action)
        self._record(report, result, name, action)

    async def _update(
        self, name: str, entry: StateEntry, spec: DesiredSpec, report: ApplyReport
    ) -> None:
        reconciler = self.reconciler_for(spec.kind)
        deadline = Deadline(spec.timeout_seconds or self._config.update_timeout_seconds)
        try:
            result = await reconciler.update(entry.id, spec, deadline)
        except ReconcileError as e:
            self._fail(report, name, spec.kind, "update", e)

        assert result.record is not None
        record = result.record
        # An update response may carry no body; keep what was last read
        updated = entry.model_copy(
            update={
                "state": record.state or entry.state,
                "desired": dict(spec.attributes),
                "attributes": {**entry.attributes, **record.attributes},
            }
        )
        self._store.put(name, updated)
        self._save(report, name, spec.kind, "update")
        self._record(report, result, name, "update")

    async def _replace(self, name: str, spec: DesiredSpec, report: ApplyReport) -> None:
        await self._delete_entry(name, report, action="replace")
        await self._create(name, spec, "replace", report)

    async def _delete_entry(self, name: str, report: ApplyReport, action: str = "delete") -> None:
        entry = self._store.get(name)
        assert entry is not None
        reconciler = self.reconciler_for(entry.kind)
        deadline = Deadline(self._config.delete_timeout_seconds)
        try:
            result = await reconciler.delete(
                entry.id, entry.parent_keys, entry.shared_deployment, deadline
            )
        except ReconcileError as e:
            self._fail(report, name, entry.kind, action, e)

        self._store.drop(name)
        self._save(report, name, entry.kind, action)
        if action == "delete":
            self._record(report, result, name, action)
        else:
            logger.info(
                "Removed resource ahead of replacement",
                extra={"resource": name, "resource_id": entry.id, "outcome": result.outcome.value},
            )

    async def _refresh_entry(
        self, name: str, entry: StateEntry, report: ApplyReport, record_read: bool = True
    ) -> StateEntry | None:
        """Read one entry; returns the refreshed entry or None if it drifted away."""
        reconciler = self.reconciler_for(entry.kind)
        deadline = Deadline(self._config.request_timeout_seconds)
        try:
            result = await reconciler.read(entry.id, entry.parent_keys, deadline)
        except ReconcileError as e:
            self._fail(report, name, entry.kind, "read", e)

        if result.outcome is ReconcileOutcome.DRIFTED:
            self._store.drop(name)
            self._save(report, name, entry.kind, "drifted")
            self._record(report, result, name, "drifted")
            return None

        assert result.record is not None
        refreshed = entry.refreshed(result.record)
        self._store.put(name, refreshed)
        self._save(report, name, entry.kind, "read")
        if record_read:
            self._record(report, result, name, "read")
        return refreshed

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _needs_replacement(entry: StateEntry, spec: DesiredSpec) -> bool:
        if entry.kind != spec.kind or entry.shared_deployment != spec.shared_deployment:
            return True
        scope = get_kind(spec.kind).require_parent_keys(spec.parent_keys)
        return dict(entry.parent_keys) != scope

    def _save(self, report: ApplyReport, name: str, kind: str, action: str) -> None:
        try:
            self._store.save()
        except StateFileError as e:
            self._fail(report, name, kind, action, e)

    def _record(
        self, report: ApplyReport, result: ReconcileResult, name: str, action: str
    ) -> None:
        result.name = name
        result.action = action
        report.results.append(result)
        extra: dict[str, Any] = {
            "resource": name,
            "kind": result.kind,
            "action": action,
            "outcome": result.outcome.value,
            "resource_id": result.resource_id,
            "duration_seconds": result.duration_seconds,
        }
        if result.adopted:
            extra["adopted"] = True
        logger.info("Reconciled resource", extra=extra)

    def _fail(
        self, report: ApplyReport, name: str, kind: str, action: str, error: Exception
    ) -> NoReturn:
        result = ReconcileResult(
            kind=kind, outcome=ReconcileOutcome.FAILED, name=name, action=action, error=error
        )
        report.results.append(result.finish())
        logger.error(
            "Reconciliation failed",
            extra={
                "resource": name,
                "kind": kind,
                "action": action,
                "error": str(error),
                "error_type": type(error).__name__,
            },
        )
        raise _StopRun() from error

    def _log_report(self, operation: str, report: ApplyReport) -> None:
        extra: dict[str, Any] = {"operation": operation, **report.summary()}
        if report.success:
            logger.info("Run complete", extra=extra)
        else:
            logger.error("Run stopped at first failure", extra=extra)


def _changed_attributes(previous: dict[str, Any], desired: dict[str, Any]) -> set[str]:
    return {name for name in set(previous) | set(desired) if previous.get(name) != desired.get(name)}
