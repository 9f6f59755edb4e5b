"""Remote Resource Gateway: typed CRUD calls against the control plane.

The reconciler only depends on the ``Gateway`` protocol. ``HttpGateway``
implements it over JSON/REST with an azure-core HTTP pipeline:

- bearer API key injected by ``AzureKeyCredentialPolicy``
- no transport-level retries; a create either succeeds or fails definitively
- blocking sends run in the default executor so the event loop stays free

SECURITY: The API key only ever lives in the credential policy. It is never
logged and never part of a request URL.
"""

from __future__ import annotations

import asyncio
import functools
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Protocol

from azure.core import PipelineClient
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import AzureError
from azure.core.pipeline.policies import (
    AzureKeyCredentialPolicy,
    HeadersPolicy,
    NetworkTraceLoggingPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest

from .config import Config
from .errors import GatewayError, TransportError
from .kinds import ResourceKind
from .models import ResourceRecord

logger = logging.getLogger(__name__)

USER_AGENT = "baas-operator/0.1.0"
CONNECTION_TIMEOUT_SECONDS = 30


@dataclass(frozen=True)
class GatewayResponse:
    """Status code plus the decoded response body."""

    status: int
    body: Any = None
    text: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    @property
    def not_found(self) -> bool:
        return self.status == 404

    def record(self, kind: ResourceKind, parent_keys: Mapping[str, str]) -> ResourceRecord:
        """Decode a single resource from the body."""
        if not isinstance(self.body, Mapping):
            raise GatewayError(
                f"Unexpected {kind.name} response body with status {self.status}: {self.text}"
            )
        return kind.to_record(self.body, parent_keys)

    def records(self, kind: ResourceKind, parent_keys: Mapping[str, str]) -> list[ResourceRecord]:
        """Decode a list of resources from the body."""
        if not isinstance(self.body, list):
            raise GatewayError(
                f"Unexpected {kind.name} list response body with status {self.status}: {self.text}"
            )
        return [kind.to_record(item, parent_keys) for item in self.body if isinstance(item, Mapping)]


class Gateway(Protocol):
    """Typed operations against the remote control plane.

    Implementations return the remote status for every answered call and
    raise ``TransportError`` only when no answer was obtained.
    """

    async def create(
        self, kind: ResourceKind, parent_keys: Mapping[str, str], attributes: Mapping[str, Any]
    ) -> GatewayResponse: ...

    async def get(
        self, kind: ResourceKind, resource_id: str, parent_keys: Mapping[str, str]
    ) -> GatewayResponse: ...

    async def update(
        self,
        kind: ResourceKind,
        resource_id: str,
        parent_keys: Mapping[str, str],
        attributes: Mapping[str, Any],
    ) -> GatewayResponse: ...

    async def delete(
        self, kind: ResourceKind, resource_id: str, parent_keys: Mapping[str, str]
    ) -> GatewayResponse: ...

    async def list(self, kind: ResourceKind, parent_keys: Mapping[str, str]) -> GatewayResponse: ...

    async def reset(
        self, kind: ResourceKind, resource_id: str, parent_keys: Mapping[str, str]
    ) -> GatewayResponse: ...


def build_pipeline_client(config: Config) -> PipelineClient:
    """Create the HTTP pipeline for the configured endpoint."""
    credential = AzureKeyCredential(config.api_key)
    return PipelineClient(
        base_url=config.api_url.rstrip("/"),
        policies=[
            HeadersPolicy({"Accept": "application/json"}),
            UserAgentPolicy(user_agent=USER_AGENT),
            RetryPolicy.no_retries(),
            AzureKeyCredentialPolicy(credential, "Authorization", prefix="Bearer"),
            NetworkTraceLoggingPolicy(),
        ],
    )


class HttpGateway:
    """Gateway implementation over the control plane's REST API."""

    def __init__(self, config: Config, client: PipelineClient | None = None) -> None:
        """Initialize the gateway.

        Args:
            config: Validated operator configuration (endpoint, key, timeouts).
            client: Pre-built pipeline client, mainly for tests.
        """
        self._config = config
        self._client = client or build_pipeline_client(config)

    async def create(
        self, kind: ResourceKind, parent_keys: Mapping[str, str], attributes: Mapping[str, Any]
    ) -> GatewayResponse:
        return await self._send("POST", kind.collection_path(parent_keys), dict(attributes))

    async def get(
        self, kind: ResourceKind, resource_id: str, parent_keys: Mapping[str, str]
    ) -> GatewayResponse:
        return await self._send("GET", kind.item_path(resource_id, parent_keys))

    async def update(
        self,
        kind: ResourceKind,
        resource_id: str,
        parent_keys: Mapping[str, str],
        attributes: Mapping[str, Any],
    ) -> GatewayResponse:
        return await self._send(
            kind.update_method, kind.item_path(resource_id, parent_keys), dict(attributes)
        )

    async def delete(
        self, kind: ResourceKind, resource_id: str, parent_keys: Mapping[str, str]
    ) -> GatewayResponse:
        return await self._send("DELETE", kind.item_path(resource_id, parent_keys))

    async def list(self, kind: ResourceKind, parent_keys: Mapping[str, str]) -> GatewayResponse:
        return await self._send("GET", kind.collection_path(parent_keys))

    async def reset(
        self, kind: ResourceKind, resource_id: str, parent_keys: Mapping[str, str]
    ) -> GatewayResponse:
        return await self._send("PUT", f"{kind.item_path(resource_id, parent_keys)}/reset", {})

    async def _send(self, method: str, path: str, body: Any = None) -> GatewayResponse:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            None, functools.partial(self._send_sync, method, path, body)
        )

    def _send_sync(self, method: str, path: str, body: Any = None) -> GatewayResponse:
        url = self._client.format_url(path)
        if body is None:
            request = HttpRequest(method, url)
        else:
            request = HttpRequest(method, url, json=body)

        logger.debug(f"--> {method} {url}")
        try:
            response = self._client.send_request(
                request,
                connection_timeout=CONNECTION_TIMEOUT_SECONDS,
                read_timeout=self._config.request_timeout_seconds,
            )
        except AzureError as e:
            logger.debug(f"<-- {method} {url} [{e}]")
            raise TransportError(f"{method} {path} failed with error: {e}") from e

        text = response.text() or ""
        logger.debug(
            f"<-- {method} {url} [{response.status_code}]",
            extra={"status": response.status_code},
        )

        decoded: Any = None
        if text:
            try:
                decoded = response.json()
            except ValueError:
                decoded = None

        return GatewayResponse(status=response.status_code, body=decoded, text=text)
