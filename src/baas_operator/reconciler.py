"""Per-resource reconciliation against an eventually-consistent control plane.

One ``ResourceReconciler`` drives one kind through its lifecycle:

    absent -> creating -> (converging) -> ready
           -> (updating -> converging -> ready)* -> deleting -> absent

The state machine is client-observed; the control plane owns the real
state. Remote creation is often asynchronous: the entity exists as soon as
the create call returns but only becomes usable once its state reaches the
kind's ready label. The reconciler waits for that with the backoff poller.

Within one call every gateway operation is sequential and bounded by the
caller's deadline. Only "not converged yet" is retried; transport failures
and remote rejections end the call immediately.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Mapping
from typing import TypeVar

from .dedup import SharedResourceDeduplicator
from .errors import (
    ConvergenceTimeoutError,
    PollCancelledError,
    RemoteRejectedError,
    ResourceNotReadyError,
    UnsupportedOperationError,
)
from .gateway import Gateway, GatewayResponse
from .kinds import ResourceKind
from .models import DesiredSpec, ReconcileOutcome, ReconcileResult, ResourceRecord
from .retry import Deadline, Retry, StepResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _describe(kind: ResourceKind, resource_id: str, parent_keys: Mapping[str, str]) -> str:
    scope = ", ".join(f"{key} {value}" for key, value in parent_keys.items())
    target = f"{kind.name} {resource_id}".rstrip()
    return f"{target} in {scope}" if scope else target


class ResourceReconciler:
    """Create/read/update/delete lifecycle for one resource kind."""

    def __init__(
        self,
        kind: ResourceKind,
        gateway: Gateway,
        retry: Retry | None = None,
        deduplicator: SharedResourceDeduplicator | None = None,
    ) -> None:
        self._kind = kind
        self._gateway = gateway
        self._retry = retry or Retry()
        self._deduplicator = deduplicator or SharedResourceDeduplicator(gateway)

    @property
    def kind(self) -> ResourceKind:
        return self._kind

    async def create(self, spec: DesiredSpec, deadline: Deadline | None = None) -> ReconcileResult:
        """Create (or adopt) the resource and wait until it is ready.

        Raises:
            PreconditionError: Missing ancestor key or unusable identity key.
            TransportError: A gateway call could not complete.
            RemoteRejectedError: The control plane refused a call.
            ConvergenceTimeoutError: The resource did not become ready in time.
        """
        deadline = deadline or Deadline()
        result = ReconcileResult(kind=self._kind.name)
        parent_keys = self._kind.require_parent_keys(spec.parent_keys)
        payload = self._kind.build_payload(spec.attributes)

        record: ResourceRecord | None = None
        if spec.shared_deployment:
            identity_key = self._kind.identity_key_for(spec.attributes, spec.identity_key)
            record = await self._call(
                self._deduplicator.find_adoptable(self._kind, parent_keys, identity_key),
                deadline,
                f"list {self._kind.name}",
            )
            if record is not None:
                result.adopted = True
                logger.info(
                    "Adopting existing shared resource",
                    extra={
                        "kind": self._kind.name,
                        "resource_id": record.id,
                        "identity_key": identity_key,
                    },
                )

        if record is None:
            response = await self._call(
                self._gateway.create(self._kind, parent_keys, payload),
                deadline,
                f"create {self._kind.name}",
            )
            if not response.ok:
                raise RemoteRejectedError(
                    f"Could not create {_describe(self._kind, '', parent_keys)}",
                    response.status,
                    response.text,
                )
            record = response.record(self._kind, parent_keys)
            logger.info(
                "Created resource",
                extra={"kind": self._kind.name, "resource_id": record.id, "state": record.state},
            )

        if self._kind.asynchronous:
            record = await self._wait_until_ready(record, deadline)

        result.record = record
        result.outcome = ReconcileOutcome.READY
        return result.finish()

    async def read(
        self,
        resource_id: str,
        parent_keys: Mapping[str, str],
        deadline: Deadline | None = None,
    ) -> ReconcileResult:
        """Fetch the current remote record.

        A missing resource is reported as drift (outcome ``DRIFTED``, no
        record) so the caller can drop it from declared state.
        """
        deadline = deadline or Deadline()
        result = ReconcileResult(kind=self._kind.name)
        scope = self._kind.require_parent_keys(parent_keys)

        response = await self._call(
            self._gateway.get(self._kind, resource_id, scope),
            deadline,
            f"get {self._kind.name}",
        )
        if response.not_found:
            logger.warning(
                "Resource removed remotely",
                extra={"kind": self._kind.name, "resource_id": resource_id},
            )
            result.outcome = ReconcileOutcome.DRIFTED
            return result.finish()
        if not response.ok:
            raise RemoteRejectedError(
                f"Failed to get {_describe(self._kind, resource_id, scope)}",
                response.status,
                response.text,
            )

        result.record = response.record(self._kind, scope)
        result.outcome = ReconcileOutcome.READY
        return result.finish()

    async def update(
        self,
        resource_id: str,
        spec: DesiredSpec,
        deadline: Deadline | None = None,
    ) -> ReconcileResult:
        """Apply updatable attributes in place.

        Raises:
            UnsupportedOperationError: The kind cannot change in place.
        """
        if not self._kind.mutable:
            raise UnsupportedOperationError(
                f"{self._kind.name} does not support in-place update; "
                "destroy and recreate it instead"
            )

        deadline = deadline or Deadline()
        result = ReconcileResult(kind=self._kind.name)
        scope = self._kind.require_parent_keys(spec.parent_keys)
        payload = self._kind.build_update_payload(spec.attributes)

        response = await self._call(
            self._gateway.update(self._kind, resource_id, scope, payload),
            deadline,
            f"update {self._kind.name}",
        )
        if not response.ok:
            raise RemoteRejectedError(
                f"Could not update {_describe(self._kind, resource_id, scope)}",
                response.status,
                response.text,
            )
        record = self._updated_record(response, resource_id, scope)

        if self._kind.reset_on_update:
            response = await self._call(
                self._gateway.reset(self._kind, resource_id, scope),
                deadline,
                f"reset {self._kind.name}",
            )
            if not response.ok:
                raise RemoteRejectedError(
                    f"Could not reset {_describe(self._kind, resource_id, scope)}",
                    response.status,
                    response.text,
                )

        if self._kind.converge_on_update:
            record = await self._wait_until_ready(record, deadline)

        logger.info(
            "Updated resource",
            extra={"kind": self._kind.name, "resource_id": resource_id, "state": record.state},
        )
        result.record = record
        result.outcome = ReconcileOutcome.READY
        return result.finish()

    async def delete(
        self,
        resource_id: str,
        parent_keys: Mapping[str, str],
        shared_deployment: bool = False,
        deadline: Deadline | None = None,
    ) -> ReconcileResult:
        """Delete the resource; shared resources are only detached.

        Kinds without a remote delete are detached too. Deleting an already
        absent resource succeeds.
        """
        result = ReconcileResult(kind=self._kind.name)
        if shared_deployment or not self._kind.remote_delete:
            # Other manifests may still depend on a shared remote entity
            logger.info(
                "Detaching resource without remote delete",
                extra={
                    "kind": self._kind.name,
                    "resource_id": resource_id,
                    "shared_deployment": shared_deployment,
                },
            )
            result.outcome = ReconcileOutcome.DETACHED
            return result.finish()

        deadline = deadline or Deadline()
        scope = self._kind.require_parent_keys(parent_keys)
        response = await self._call(
            self._gateway.delete(self._kind, resource_id, scope),
            deadline,
            f"delete {self._kind.name}",
        )
        if not response.ok and not response.not_found:
            raise RemoteRejectedError(
                f"Failed to delete {_describe(self._kind, resource_id, scope)}",
                response.status,
                response.text,
            )

        logger.info(
            "Deleted resource",
            extra={
                "kind": self._kind.name,
                "resource_id": resource_id,
                "already_absent": response.not_found,
            },
        )
        result.outcome = ReconcileOutcome.DELETED
        return result.finish()

    def _updated_record(
        self, response: GatewayResponse, resource_id: str, parent_keys: Mapping[str, str]
    ) -> ResourceRecord:
        if isinstance(response.body, Mapping):
            record = response.record(self._kind, parent_keys)
            if record.id:
                return record
        return ResourceRecord(id=resource_id, kind=self._kind.name, parent_keys=dict(parent_keys))

    async def _wait_until_ready(self, record: ResourceRecord, deadline: Deadline) -> ResourceRecord:
        """Poll the record until its state equals the kind's ready label."""
        ready_state = self._kind.ready_state
        assert ready_state is not None, "Only asynchronous kinds have a ready state"

        scope = record.parent_keys
        last = record
        attempts = 0

        async def step(attempt: int) -> StepResult:
            nonlocal last, attempts
            attempts = attempt
            response = await self._call(
                self._gateway.get(self._kind, record.id, scope),
                deadline,
                f"get {self._kind.name}",
            )
            if not response.ok:
                return StepResult.fatal(
                    RemoteRejectedError(
                        f"Fetching {_describe(self._kind, record.id, scope)} state failed",
                        response.status,
                        response.text,
                    )
                )
            last = response.record(self._kind, scope)
            if last.state == ready_state:
                return StepResult.converged()
            return StepResult.retry(
                ResourceNotReadyError(
                    f"{self._kind.name} {record.id} is '{last.state}', not '{ready_state}'"
                )
            )

        try:
            await self._retry.do(deadline, f"wait for {self._kind.name} {record.id}", step)
        except PollCancelledError as e:
            if deadline.cancelled:
                raise
            raise ConvergenceTimeoutError(
                self._kind.name, record.id, ready_state, last.state, attempts
            ) from e

        return last

    async def _call(self, operation: Awaitable[T], deadline: Deadline, label: str) -> T:
        """Await a gateway operation without outliving the deadline."""
        remaining = deadline.remaining()
        if remaining is None:
            return await operation
        try:
            return await asyncio.wait_for(operation, timeout=remaining)
        except TimeoutError as e:
            raise PollCancelledError(label, 1, reason="deadline exceeded") from e
