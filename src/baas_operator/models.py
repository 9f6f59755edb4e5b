"""Pydantic models for desired and actual resource state.

These models provide:
1. Type-safe parsing of declared configuration (YAML manifest, state file)
2. Validation at the boundary (fail fast, fail loudly)
3. Immutable remote records: id and parent keys never change in place
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ResourceRecord(BaseModel):
    """Remote-side representation of one provisioned entity."""

    model_config = ConfigDict(frozen=True)

    id: str = ""
    kind: str
    state: str = ""
    attributes: dict[str, Any] = Field(default_factory=dict)

    # Ordered ancestor chain, e.g. {"consortium_id": "c1", "environment_id": "e1"}
    parent_keys: dict[str, str] = Field(default_factory=dict)


class DesiredSpec(BaseModel):
    """The caller's intended configuration for one resource."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    kind: Annotated[str, Field(min_length=1)]
    attributes: dict[str, Any] = Field(default_factory=dict)
    parent_keys: dict[str, str] = Field(default_factory=dict, alias="parentKeys")

    # Shared resources are adopted when found and never destroyed remotely
    shared_deployment: bool = Field(False, alias="sharedDeployment")
    identity_key: dict[str, Any] | None = Field(None, alias="identityKey")

    # Overrides the configured convergence deadline for this resource
    timeout_seconds: Annotated[int, Field(ge=1)] | None = Field(None, alias="timeoutSeconds")

    @field_validator("parent_keys")
    @classmethod
    def validate_parent_keys(cls, v: dict[str, str]) -> dict[str, str]:
        for key, value in v.items():
            if not key:
                raise ValueError("parent key names must not be empty")
            if not isinstance(value, str):
                raise ValueError(f"parent key {key} must be a string")
        return v


class ReconcileOutcome(str, Enum):
    """What a reconciliation call did to the resource."""

    READY = "ready"  # Record exists remotely and reached its ready state
    DRIFTED = "drifted"  # Record no longer exists remotely
    DELETED = "deleted"  # Record removed remotely (or already absent)
    DETACHED = "detached"  # Shared record dropped locally, remote untouched
    FAILED = "failed"


@dataclass
class ReconcileResult:
    """Result of a single reconciliation call."""

    kind: str
    outcome: ReconcileOutcome = ReconcileOutcome.READY
    record: ResourceRecord | None = None
    adopted: bool = False
    name: str = ""  # Local address when driven by the engine
    action: str = ""  # Engine step: create, update, replace, read, delete, unchanged
    start_time: datetime = field(default_factory=lambda: datetime.now(UTC))
    end_time: datetime | None = None
    error: Exception | None = None

    @property
    def duration_seconds(self) -> float:
        """Calculate duration in seconds."""
        if self.end_time is None:
            return 0.0
        return (self.end_time - self.start_time).total_seconds()

    @property
    def success(self) -> bool:
        """Check if reconciliation succeeded."""
        return self.error is None

    @property
    def resource_id(self) -> str:
        return self.record.id if self.record is not None else ""

    def finish(self) -> ReconcileResult:
        self.end_time = datetime.now(UTC)
        return self
