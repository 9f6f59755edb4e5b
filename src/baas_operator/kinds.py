"""Resource kinds and their reconciliation strategies.

Every kind of remote resource is reconciled by the same state machine. What
differs per kind lives in a ``ResourceKind``:

- where the collection lives and which ancestors address it
- how local attributes map onto the API payload (and back)
- which state label means "ready" for asynchronously provisioned kinds
- which attributes may change in place, if any
- which attributes identify a shared instance

EXAMPLE:
    environments live at /consortia/{consortium_id}/environments, become
    usable once their state is "live", and cannot be changed in place.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from .errors import PreconditionError
from .models import ResourceRecord

# Remote states that mean a deletion is already under way
DELETING_STATES: frozenset[str] = frozenset({"delete_pending", "deleting", "deleted"})

REDACTED = "<redacted>"


@dataclass(frozen=True)
class ResourceKind:
    """Kind-specific strategy for the generic reconciler."""

    name: str
    collection: str  # Path template, e.g. "/consortia/{consortium_id}/environments"
    parent_keys: tuple[str, ...] = ()

    # Attribute mapping
    create_fields: tuple[str, ...] = ()
    update_fields: tuple[str, ...] = ()  # Empty means the kind cannot be updated in place
    field_map: Mapping[str, str] = field(default_factory=dict)  # local name -> API name
    computed_fields: Mapping[str, str] = field(default_factory=dict)  # local -> dotted API path

    # Lifecycle
    ready_state: str | None = None  # None: remote creation completes synchronously
    remote_delete: bool = True  # False: detach only, removed remotely along with its parent
    converge_on_update: bool = False
    reset_on_update: bool = False
    update_method: str = "PATCH"

    # Shared deployment
    identity_fields: tuple[str, ...] = ()

    # Never printed; still recorded in the state file
    sensitive_fields: tuple[str, ...] = ()

    id_field: str = "_id"
    state_field: str = "state"

    @property
    def mutable(self) -> bool:
        return bool(self.update_fields)

    @property
    def asynchronous(self) -> bool:
        return self.ready_state is not None

    @property
    def shareable(self) -> bool:
        return bool(self.identity_fields)

    def require_parent_keys(self, parent_keys: Mapping[str, str]) -> dict[str, str]:
        """Return the ancestor chain in declared order.

        Raises:
            PreconditionError: If any ancestor key is missing or empty.
        """
        missing = [key for key in self.parent_keys if not parent_keys.get(key)]
        if missing:
            raise PreconditionError(f"{self.name} missing required ancestor key(s): {missing}")
        return {key: parent_keys[key] for key in self.parent_keys}

    def collection_path(self, parent_keys: Mapping[str, str]) -> str:
        return self.collection.format(**self.require_parent_keys(parent_keys))

    def item_path(self, resource_id: str, parent_keys: Mapping[str, str]) -> str:
        if not resource_id:
            raise PreconditionError(f"{self.name} resource id is required")
        return f"{self.collection_path(parent_keys)}/{resource_id}"

    def build_payload(self, attributes: Mapping[str, Any]) -> dict[str, Any]:
        """Map desired attributes onto the create payload."""
        return self._payload(attributes, self.create_fields)

    def build_update_payload(self, attributes: Mapping[str, Any]) -> dict[str, Any]:
        """Map desired attributes onto the update payload (updatable fields only)."""
        return self._payload(attributes, self.update_fields)

    def _payload(self, attributes: Mapping[str, Any], fields: tuple[str, ...]) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        for name in fields:
            value = attributes.get(name)
            if value is None:
                continue
            payload[self.field_map.get(name, name)] = value
        return payload

    def to_record(self, body: Mapping[str, Any], parent_keys: Mapping[str, str]) -> ResourceRecord:
        """Translate an API response body into a record."""
        attributes: dict[str, Any] = {}
        for name in (*self.create_fields, *self.update_fields):
            api_name = self.field_map.get(name, name)
            if api_name in body:
                attributes[name] = body[api_name]
        for name, path in self.computed_fields.items():
            value = _lookup(body, path)
            if value is not None:
                attributes[name] = value

        return ResourceRecord(
            id=str(body.get(self.id_field) or ""),
            kind=self.name,
            state=str(body.get(self.state_field) or ""),
            attributes=attributes,
            parent_keys={key: parent_keys[key] for key in self.parent_keys if key in parent_keys},
        )

    def identity_key_for(
        self,
        attributes: Mapping[str, Any],
        identity_key: Mapping[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Resolve and validate the identity key of a shared resource.

        Without an explicit key, the kind's identity attributes are taken
        from the desired attributes.

        Raises:
            PreconditionError: If the key is empty or names unknown attributes.
        """
        if identity_key is None:
            key = {name: attributes[name] for name in self.identity_fields if name in attributes}
        else:
            key = dict(identity_key)

        if not key:
            raise PreconditionError(f"{self.name} shared deployment requires an identity key")

        unknown = sorted(set(key) - set(self.identity_fields))
        if unknown:
            raise PreconditionError(
                f"{self.name} identity key has unknown attribute(s) {unknown}; "
                f"valid: {list(self.identity_fields)}"
            )
        return key

    def is_deleting(self, state: str) -> bool:
        return state.lower() in DELETING_STATES

    def redact(self, attributes: Mapping[str, Any]) -> dict[str, Any]:
        return {
            name: REDACTED if name in self.sensitive_fields else value
            for name, value in attributes.items()
        }


def _lookup(body: Mapping[str, Any], path: str) -> Any:
    current: Any = body
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


_ENVIRONMENT_SCOPE = ("consortium_id", "environment_id")
_ENVIRONMENT_PATH = "/consortia/{consortium_id}/environments/{environment_id}"

_NODE_OPTIONS = (
    "size",
    "kms_id",
    "opsmetric_id",
    "backup_id",
    "networking_id",
    "node_config_id",
    "baf_id",
)

KINDS: dict[str, ResourceKind] = {
    kind.name: kind
    for kind in (
        ResourceKind(
            name="consortium",
            collection="/consortia",
            create_fields=("name", "description"),
            update_fields=("name", "description"),
        ),
        ResourceKind(
            name="membership",
            collection="/consortia/{consortium_id}/memberships",
            parent_keys=("consortium_id",),
            create_fields=("org_name",),
            update_fields=("org_name",),
        ),
        ResourceKind(
            name="environment",
            collection="/consortia/{consortium_id}/environments",
            parent_keys=("consortium_id",),
            create_fields=(
                "name",
                "description",
                "env_type",
                "consensus_type",
                "release_id",
                "block_period",
                "prefunded_accounts",
                "test_features",
            ),
            field_map={"env_type": "provider"},
            ready_state="live",
        ),
        ResourceKind(
            name="node",
            collection=f"{_ENVIRONMENT_PATH}/nodes",
            parent_keys=_ENVIRONMENT_SCOPE,
            create_fields=("name", "membership_id", "zone_id", "role", *_NODE_OPTIONS),
            update_fields=("name", *_NODE_OPTIONS),
            computed_fields={
                "websocket_url": "urls.wss",
                "https_url": "urls.rpc",
                "first_user_account": "first_user_account",
            },
            ready_state="started",
            converge_on_update=True,
            reset_on_update=True,
        ),
        ResourceKind(
            name="service",
            collection=f"{_ENVIRONMENT_PATH}/services",
            parent_keys=_ENVIRONMENT_SCOPE,
            create_fields=("name", "service_type", "membership_id", "zone_id", "details"),
            field_map={"service_type": "service"},
            computed_fields={
                "https_url": "urls.http",
                "websocket_url": "urls.ws",
                "webui_url": "urls.webui",
            },
            ready_state="started",
            identity_fields=("service_type",),
            remote_delete=False,
        ),
        ResourceKind(
            name="configuration",
            collection=f"{_ENVIRONMENT_PATH}/configurations",
            parent_keys=_ENVIRONMENT_SCOPE,
            create_fields=("name", "type", "membership_id", "details"),
        ),
        ResourceKind(
            name="app_creds",
            collection=f"{_ENVIRONMENT_PATH}/appcreds",
            parent_keys=_ENVIRONMENT_SCOPE,
            create_fields=("name", "membership_id"),
            computed_fields={
                "username": "username",
                "password": "password",
                "auth_type": "auth_type",
            },
            sensitive_fields=("password",),
        ),
        ResourceKind(
            name="czone",
            collection="/consortia/{consortium_id}/zones",
            parent_keys=("consortium_id",),
            create_fields=("name", "cloud", "region"),
            identity_fields=("cloud", "region"),
            remote_delete=False,
        ),
        ResourceKind(
            name="ezone",
            collection=f"{_ENVIRONMENT_PATH}/zones",
            parent_keys=_ENVIRONMENT_SCOPE,
            create_fields=("name", "cloud", "region"),
            update_fields=("name",),
            identity_fields=("cloud", "region"),
            remote_delete=False,
        ),
        ResourceKind(
            name="invitation",
            collection="/consortia/{consortium_id}/invitations",
            parent_keys=("consortium_id",),
            create_fields=("org_name", "email"),
            update_fields=("org_name", "email"),
        ),
        ResourceKind(
            name="destination",
            collection="/{service_type}/{service_id}/destinations",
            parent_keys=("service_type", "service_id"),
            create_fields=("name", "kaleido_managed"),
            update_fields=("kaleido_managed",),
            update_method="PUT",
            identity_fields=("name",),
            id_field="name",
        ),
    )
}


def get_kind(name: str) -> ResourceKind:
    """Look up a kind by name.

    Raises:
        PreconditionError: If the kind is not recognized.
    """
    kind = KINDS.get(name)
    if kind is None:
        raise PreconditionError(f"Unknown resource kind '{name}'. Valid kinds: {list(KINDS)}")
    return kind
