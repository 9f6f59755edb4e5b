"""Shared-resource deduplication.

Some remote resources are logical singletons that several independent
manifests reference: a zone for a given cloud and region, or a utility
service of a given type. Before creating one, the reconciler asks the
deduplicator whether an adoptable instance already exists.

The list-then-create sequence is not atomic. Two reconcilers racing on the
same identity key can both see no match and both create. That race is
accepted; nothing here tries to detect it.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from .errors import RemoteRejectedError
from .gateway import Gateway
from .kinds import ResourceKind
from .models import ResourceRecord

logger = logging.getLogger(__name__)


class SharedResourceDeduplicator:
    """Finds an existing remote instance matching a logical identity key."""

    def __init__(self, gateway: Gateway) -> None:
        self._gateway = gateway

    async def find_adoptable(
        self,
        kind: ResourceKind,
        parent_keys: Mapping[str, str],
        identity_key: Mapping[str, Any],
    ) -> ResourceRecord | None:
        """Return the record to adopt, or None when a genuine create is needed.

        Matches must equal every entry of the identity key and must not be
        in a deletion state. When several match, the lowest id wins so the
        choice does not depend on remote list order.

        Raises:
            PreconditionError: If parent keys or the identity key are unusable.
            RemoteRejectedError: If the control plane refuses the list call.
            TransportError: If the list call cannot complete.
        """
        scope = kind.require_parent_keys(parent_keys)
        key = kind.identity_key_for({}, identity_key)

        response = await self._gateway.list(kind, scope)
        if not response.ok:
            raise RemoteRejectedError(
                f"Failed to list existing {kind.name} resources under {scope}",
                response.status,
                response.text,
            )

        candidates = [
            record
            for record in response.records(kind, scope)
            if record.id
            and not kind.is_deleting(record.state)
            and all(record.attributes.get(name) == value for name, value in key.items())
        ]

        if not candidates:
            logger.debug(
                "No adoptable shared resource",
                extra={"kind": kind.name, "identity_key": key},
            )
            return None

        candidates.sort(key=lambda record: record.id)
        chosen = candidates[0]
        if len(candidates) > 1:
            logger.warning(
                "Multiple shared resources match identity key, adopting lowest id",
                extra={
                    "kind": kind.name,
                    "identity_key": key,
                    "candidate_ids": [record.id for record in candidates],
                    "adopted_id": chosen.id,
                },
            )
        return chosen
