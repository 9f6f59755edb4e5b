"""Declared-state bridge: YAML manifest in, YAML state file out.

The manifest lists desired resources in dependency order (parents first).
A parent key value of the form ``@name`` refers to the remote id of another
resource in the same manifest, resolved from the state file once that
resource exists.

The state file records, per local name, what was last applied and what the
control plane reported back. This module only translates shapes; it never
retries or waits.

SECURITY: All file reads enforce size limits and use ``yaml.safe_load``.
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Annotated, Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .config import MAX_MANIFEST_FILE_SIZE_BYTES, MAX_STATE_FILE_SIZE_BYTES
from .errors import PreconditionError
from .kinds import KINDS
from .models import DesiredSpec, ResourceRecord

logger = logging.getLogger(__name__)

REFERENCE_PREFIX = "@"
STATE_FILE_VERSION = 1

VALID_NAME_PATTERN = r"^[A-Za-z][A-Za-z0-9_.-]{0,127}$"


class ManifestLoadError(Exception):
    """Raised when manifest loading or validation fails."""

    pass


class StateFileError(Exception):
    """Raised when the state file cannot be read or written."""

    pass


# =============================================================================
# Manifest
# =============================================================================


class DeclaredResource(BaseModel):
    """One desired resource as written in the manifest."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    name: Annotated[str, Field(pattern=VALID_NAME_PATTERN)]
    kind: str
    attributes: dict[str, Any] = Field(default_factory=dict)
    parent_keys: dict[str, str] = Field(default_factory=dict, alias="parentKeys")
    shared_deployment: bool = Field(False, alias="sharedDeployment")
    identity_key: dict[str, Any] | None = Field(None, alias="identityKey")
    timeout_seconds: Annotated[int, Field(ge=1)] | None = Field(None, alias="timeoutSeconds")

    @field_validator("kind")
    @classmethod
    def validate_kind(cls, v: str) -> str:
        if v not in KINDS:
            raise ValueError(f"kind must be one of {sorted(KINDS)}")
        return v

    @model_validator(mode="after")
    def validate_parent_key_names(self) -> DeclaredResource:
        expected = KINDS[self.kind].parent_keys
        unknown = sorted(set(self.parent_keys) - set(expected))
        if unknown:
            raise ValueError(f"{self.kind} has no parent key(s) {unknown}; expected {list(expected)}")
        return self

    def references(self) -> dict[str, str]:
        """Parent key name -> referenced resource name, for ``@name`` values."""
        return {
            key: value[len(REFERENCE_PREFIX) :]
            for key, value in self.parent_keys.items()
            if value.startswith(REFERENCE_PREFIX)
        }

    def to_desired_spec(self, parent_keys: dict[str, str]) -> DesiredSpec:
        """Build the reconciler input once references are resolved."""
        return DesiredSpec(
            kind=self.kind,
            attributes=dict(self.attributes),
            parent_keys=parent_keys,
            shared_deployment=self.shared_deployment,
            identity_key=self.identity_key,
            timeout_seconds=self.timeout_seconds,
        )


class Manifest(BaseModel):
    """Ordered list of desired resources."""

    model_config = ConfigDict(extra="forbid")

    resources: list[DeclaredResource] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_order(self) -> Manifest:
        seen: set[str] = set()
        for resource in self.resources:
            if resource.name in seen:
                raise ValueError(f"duplicate resource name '{resource.name}'")
            for target in resource.references().values():
                if target not in seen:
                    raise ValueError(
                        f"'{resource.name}' references '{target}', which must be declared before it"
                    )
            seen.add(resource.name)
        return self

    def get(self, name: str) -> DeclaredResource | None:
        for resource in self.resources:
            if resource.name == name:
                return resource
        return None


def _read_yaml(path: Path, max_size: int, error_cls: type[Exception]) -> Any:
    # SECURITY: Check file size before reading to prevent DoS
    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise error_cls(f"Failed to stat {path}: {e}") from e

    if file_size > max_size:
        raise error_cls(f"{path} exceeds maximum size of {max_size} bytes")

    try:
        content = path.read_text(encoding="utf-8")
    except OSError as e:
        raise error_cls(f"Failed to read {path}: {e}") from e

    try:
        return yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise error_cls(f"Invalid YAML in {path}: {e}") from e


def _format_validation_error(path: Path, error: ValidationError) -> str:
    errors = []
    for item in error.errors():
        loc = ".".join(str(x) for x in item["loc"])
        errors.append(f"  - {loc}: {item['msg']}")
    return f"Validation failed for {path}:\n" + "\n".join(errors)


def load_manifest(path: Path) -> Manifest:
    """Load and validate a manifest from YAML.

    Raises:
        ManifestLoadError: If the manifest cannot be loaded or fails validation.
    """
    if not path.exists():
        raise ManifestLoadError(f"Manifest file not found: {path}")

    raw_data = _read_yaml(path, MAX_MANIFEST_FILE_SIZE_BYTES, ManifestLoadError)
    if not isinstance(raw_data, dict):
        raise ManifestLoadError(f"Manifest must contain a YAML mapping: {path}")

    try:
        manifest = Manifest.model_validate(raw_data)
    except ValidationError as e:
        raise ManifestLoadError(_format_validation_error(path, e)) from e

    logger.info("Loaded manifest with %d resource(s) from %s", len(manifest.resources), path)
    return manifest


# =============================================================================
# State file
# =============================================================================


class StateEntry(BaseModel):
    """Actual state of one applied resource."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    kind: str
    id: str
    state: str = ""
    parent_keys: dict[str, str] = Field(default_factory=dict, alias="parentKeys")
    shared_deployment: bool = Field(False, alias="sharedDeployment")
    adopted: bool = False

    # Created remotely but never became ready; replaced on the next apply
    tainted: bool = False

    # Attributes as last declared, used to detect changes on the next apply
    desired: dict[str, Any] = Field(default_factory=dict)

    # Attributes as last reported by the control plane
    attributes: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_record(
        cls, record: ResourceRecord, spec: DesiredSpec, *, adopted: bool = False
    ) -> StateEntry:
        return cls(
            kind=record.kind,
            id=record.id,
            state=record.state,
            parent_keys=dict(record.parent_keys or spec.parent_keys),
            shared_deployment=spec.shared_deployment,
            adopted=adopted,
            desired=dict(spec.attributes),
            attributes=dict(record.attributes),
        )

    def refreshed(self, record: ResourceRecord) -> StateEntry:
        """Copy with the remote state and attributes from a fresh read."""
        return self.model_copy(update={"state": record.state, "attributes": dict(record.attributes)})

    def to_record(self) -> ResourceRecord:
        return ResourceRecord(
            id=self.id,
            kind=self.kind,
            state=self.state,
            attributes=dict(self.attributes),
            parent_keys=dict(self.parent_keys),
        )


class StateFile(BaseModel):
    model_config = ConfigDict(extra="ignore")

    version: int = STATE_FILE_VERSION
    resources: dict[str, StateEntry] = Field(default_factory=dict)


class StateStore:
    """File-backed mapping of local name to ``StateEntry``.

    Insertion order is preserved and equals creation order, so deleting in
    reverse order removes children before their parents.
    """

    def __init__(self, path: Path, entries: dict[str, StateEntry] | None = None) -> None:
        self._path = path
        self._entries: dict[str, StateEntry] = dict(entries or {})

    @classmethod
    def load(cls, path: Path) -> StateStore:
        """Load the state file; a missing file is an empty state.

        Raises:
            StateFileError: If the file exists but is unreadable or invalid.
        """
        if not path.exists():
            return cls(path)

        raw_data = _read_yaml(path, MAX_STATE_FILE_SIZE_BYTES, StateFileError)
        if raw_data is None:
            return cls(path)
        if not isinstance(raw_data, dict):
            raise StateFileError(f"State file must contain a YAML mapping: {path}")

        try:
            state = StateFile.model_validate(raw_data)
        except ValidationError as e:
            raise StateFileError(_format_validation_error(path, e)) from e

        if state.version != STATE_FILE_VERSION:
            raise StateFileError(
                f"Unsupported state file version {state.version} in {path} "
                f"(expected {STATE_FILE_VERSION})"
            )
        return cls(path, state.resources)

    @property
    def path(self) -> Path:
        return self._path

    def names(self) -> list[str]:
        return list(self._entries)

    def get(self, name: str) -> StateEntry | None:
        return self._entries.get(name)

    def put(self, name: str, entry: StateEntry) -> None:
        self._entries[name] = entry

    def drop(self, name: str) -> StateEntry | None:
        return self._entries.pop(name, None)

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def resolve_parent_keys(self, resource: DeclaredResource) -> dict[str, str]:
        """Replace ``@name`` references with the ids recorded in state.

        Raises:
            PreconditionError: If a referenced resource has no recorded id.
        """
        resolved = dict(resource.parent_keys)
        for key, target in resource.references().items():
            entry = self._entries.get(target)
            if entry is None or not entry.id:
                raise PreconditionError(
                    f"{resource.name}: {key} references '{target}', which has not been created"
                )
            resolved[key] = entry.id
        return resolved

    def save(self) -> None:
        """Write the state file atomically.

        Raises:
            StateFileError: If the file cannot be written.
        """
        document = StateFile(resources=self._entries).model_dump(mode="json", by_alias=True)
        content = yaml.safe_dump(document, sort_keys=False, default_flow_style=False)

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            # mkstemp creates the file 0600; the state holds credentials.
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self._path.name}.", dir=self._path.parent, text=True
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    handle.write(content)
                os.replace(tmp_name, self._path)
            except BaseException:
                Path(tmp_name).unlink(missing_ok=True)
                raise
        except OSError as e:
            raise StateFileError(f"Failed to write state file {self._path}: {e}") from e

        logger.debug("Saved state", extra={"path": str(self._path), "resources": len(self)})
