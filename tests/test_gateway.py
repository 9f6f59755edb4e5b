"""Tests for the HTTP gateway.

The azure-core pipeline client is replaced with a MagicMock so no request
leaves the process.
"""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import MagicMock

import pytest
from azure.core import PipelineClient
from azure.core.exceptions import ServiceRequestError

from baas_operator.config import Config
from baas_operator.errors import GatewayError, PreconditionError, TransportError
from baas_operator.gateway import GatewayResponse, HttpGateway, build_pipeline_client
from baas_operator.kinds import get_kind

BASE_URL = "https://console.example.test/api/v1"
ENV_SCOPE = {"consortium_id": "c1", "environment_id": "e1"}


def make_client(status: int = 200, body: Any = None) -> MagicMock:
    client = MagicMock()
    client.format_url.side_effect = lambda path: f"{BASE_URL}{path}"
    response = MagicMock()
    response.status_code = status
    response.text.return_value = "" if body is None else json.dumps(body)
    response.json.side_effect = lambda: json.loads(response.text())
    client.send_request.return_value = response
    return client


def sent_request(client: MagicMock):  # type: ignore[no-untyped-def]
    return client.send_request.call_args.args[0]


class TestGatewayResponse:
    """Tests for GatewayResponse decoding."""

    def test_status_flags(self) -> None:
        """Test ok and not-found classification."""
        assert GatewayResponse(200).ok is True
        assert GatewayResponse(204).ok is True
        assert GatewayResponse(404).ok is False
        assert GatewayResponse(404).not_found is True
        assert GatewayResponse(500).not_found is False

    def test_record_requires_mapping(self) -> None:
        """Test that a non-object body cannot become a record."""
        with pytest.raises(GatewayError, match="Unexpected consortium response body"):
            GatewayResponse(200, ["x"], '["x"]').record(get_kind("consortium"), {})

    def test_records_skips_non_objects(self) -> None:
        """Test list decoding."""
        response = GatewayResponse(200, [{"_id": "z1", "cloud": "aws"}, "junk"])
        records = response.records(get_kind("czone"), {"consortium_id": "c1"})
        assert [r.id for r in records] == ["z1"]

    def test_records_requires_list(self) -> None:
        """Test that a list call must answer with a list."""
        with pytest.raises(GatewayError, match="list response body"):
            GatewayResponse(200, {"_id": "z1"}).records(get_kind("czone"), {"consortium_id": "c1"})


class TestHttpGateway:
    """Tests for HttpGateway request construction."""

    @pytest.mark.asyncio
    async def test_create_posts_payload(self, config: Config) -> None:
        """Test that create POSTs the payload to the collection."""
        client = make_client(201, {"_id": "e1", "state": "initializing"})
        gateway = HttpGateway(config, client=client)

        response = await gateway.create(
            get_kind("environment"), {"consortium_id": "c1"}, {"name": "env", "provider": "quorum"}
        )

        request = sent_request(client)
        assert request.method == "POST"
        assert request.url == f"{BASE_URL}/consortia/c1/environments"
        assert json.loads(request.content) == {"name": "env", "provider": "quorum"}
        assert response.status == 201
        assert response.body == {"_id": "e1", "state": "initializing"}

    @pytest.mark.asyncio
    async def test_get_uses_item_path(self, config: Config) -> None:
        """Test nested item addressing."""
        client = make_client(200, {"_id": "n1"})
        gateway = HttpGateway(config, client=client)

        await gateway.get(get_kind("node"), "n1", ENV_SCOPE)

        request = sent_request(client)
        assert request.method == "GET"
        assert request.url == f"{BASE_URL}/consortia/c1/environments/e1/nodes/n1"

    @pytest.mark.asyncio
    async def test_update_uses_kind_method(self, config: Config) -> None:
        """Test PATCH by default and PUT where the kind says so."""
        client = make_client(200, {})
        gateway = HttpGateway(config, client=client)

        await gateway.update(get_kind("node"), "n1", ENV_SCOPE, {"size": "large"})
        assert sent_request(client).method == "PATCH"

        await gateway.update(
            get_kind("destination"),
            "dest1",
            {"service_type": "idregistry", "service_id": "s1"},
            {"kaleido_managed": True},
        )
        request = sent_request(client)
        assert request.method == "PUT"
        assert request.url == f"{BASE_URL}/idregistry/s1/destinations/dest1"

    @pytest.mark.asyncio
    async def test_reset_puts_empty_body(self, config: Config) -> None:
        """Test the node restart call."""
        client = make_client(200, {})
        gateway = HttpGateway(config, client=client)

        await gateway.reset(get_kind("node"), "n1", ENV_SCOPE)

        request = sent_request(client)
        assert request.method == "PUT"
        assert request.url.endswith("/nodes/n1/reset")
        assert json.loads(request.content) == {}

    @pytest.mark.asyncio
    async def test_delete_and_list(self, config: Config) -> None:
        """Test DELETE on the item and GET on the collection."""
        client = make_client(204)
        gateway = HttpGateway(config, client=client)

        response = await gateway.delete(get_kind("czone"), "z1", {"consortium_id": "c1"})
        assert sent_request(client).method == "DELETE"
        assert response.body is None
        assert response.ok is True

        await gateway.list(get_kind("czone"), {"consortium_id": "c1"})
        request = sent_request(client)
        assert request.method == "GET"
        assert request.url == f"{BASE_URL}/consortia/c1/zones"

    @pytest.mark.asyncio
    async def test_error_status_is_returned_not_raised(self, config: Config) -> None:
        """Test that an answered error keeps its status and text."""
        client = make_client(409, {"errorMessage": "name taken"})
        gateway = HttpGateway(config, client=client)

        response = await gateway.create(get_kind("consortium"), {}, {"name": "c"})

        assert response.status == 409
        assert "name taken" in response.text

    @pytest.mark.asyncio
    async def test_json_body_decoded_by_response(self, config: Config) -> None:
        """Test that the body is decoded through the transport response."""
        client = make_client(200, {"_id": "c1", "name": "Cons"})
        gateway = HttpGateway(config, client=client)

        response = await gateway.get(get_kind("consortium"), "c1", {})

        assert response.body == {"_id": "c1", "name": "Cons"}
        client.send_request.return_value.json.assert_called_once_with()

    @pytest.mark.asyncio
    async def test_empty_body_not_decoded(self, config: Config) -> None:
        """Test that an empty answer has no body."""
        client = make_client(204)
        gateway = HttpGateway(config, client=client)

        response = await gateway.delete(get_kind("consortium"), "c1", {})

        assert response.body is None
        client.send_request.return_value.json.assert_not_called()

    @pytest.mark.asyncio
    async def test_non_json_body(self, config: Config) -> None:
        """Test that a non-JSON body is kept as text only."""
        client = make_client(502)
        client.send_request.return_value.text.return_value = "<html>Bad Gateway</html>"
        gateway = HttpGateway(config, client=client)

        response = await gateway.get(get_kind("consortium"), "c1", {})

        assert response.body is None
        assert response.text == "<html>Bad Gateway</html>"

    @pytest.mark.asyncio
    async def test_transport_failure(self, config: Config) -> None:
        """Test that pipeline errors become TransportError."""
        client = make_client()
        client.send_request.side_effect = ServiceRequestError("connection refused")
        gateway = HttpGateway(config, client=client)

        with pytest.raises(TransportError, match="GET /consortia/c1 failed") as exc_info:
            await gateway.get(get_kind("consortium"), "c1", {})

        assert isinstance(exc_info.value.__cause__, ServiceRequestError)

    @pytest.mark.asyncio
    async def test_timeouts_passed_to_transport(self, config: Config) -> None:
        """Test per-request timeouts."""
        client = make_client(200, {})
        gateway = HttpGateway(config, client=client)

        await gateway.get(get_kind("consortium"), "c1", {})

        kwargs = client.send_request.call_args.kwargs
        assert kwargs["read_timeout"] == config.request_timeout_seconds
        assert kwargs["connection_timeout"] > 0

    @pytest.mark.asyncio
    async def test_missing_parent_key_fails_before_send(self, config: Config) -> None:
        """Test that path building validates ancestors."""
        client = make_client()
        gateway = HttpGateway(config, client=client)

        with pytest.raises(PreconditionError, match="consortium_id"):
            await gateway.list(get_kind("environment"), {})

        client.send_request.assert_not_called()


class TestBuildPipelineClient:
    """Tests for build_pipeline_client."""

    def test_builds_client(self, config: Config) -> None:
        """Test that a real pipeline client can be built from config."""
        client = build_pipeline_client(config)
        assert isinstance(client, PipelineClient)
        assert client.format_url("/consortia") == f"{BASE_URL}/consortia"
