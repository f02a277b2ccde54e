"""
Tests for the Evolution API gateway client.
"""

import json

import httpx
import pytest

from wa_integration.errors import GatewayError, GatewayUnavailable
from wa_integration.gateway.base import ConnectionState, map_gateway_state, strip_jid
from wa_integration.gateway.client import WEBHOOK_EVENTS, EvolutionGatewayClient


def make_client(handler, api_key="deployment-key") -> EvolutionGatewayClient:
    return EvolutionGatewayClient(
        api_url="https://evolution.example.com/",
        api_key=api_key,
        transport=httpx.MockTransport(handler),
    )


class TestGatewayHelpers:
    """Tests for JID and state helpers."""

    def test_strip_jid_user(self):
        assert strip_jid("5511999999999@s.whatsapp.net") == "5511999999999"

    def test_strip_jid_device_suffix(self):
        assert strip_jid("5511999999999:12@s.whatsapp.net") == "5511999999999"

    def test_strip_jid_empty(self):
        assert strip_jid(None) is None
        assert strip_jid("") is None

    def test_map_gateway_state(self):
        assert map_gateway_state("open") == ConnectionState.CONNECTED
        assert map_gateway_state("connecting") == ConnectionState.CONNECTING
        assert map_gateway_state("close") == ConnectionState.DISCONNECTED
        assert map_gateway_state("OPEN") == ConnectionState.CONNECTED

    def test_map_unknown_state(self):
        assert map_gateway_state("refused") is None
        assert map_gateway_state(None) is None


class TestEvolutionGatewayClient:
    """Tests for request shaping and response parsing."""

    async def test_create_account_payload_and_secret(self):
        """Test instance creation registers the webhook and returns the hash."""
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["apikey"] = request.headers["apikey"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(
                201,
                json={
                    "instance": {"instanceName": "acme_1", "status": "created"},
                    "hash": "instance-secret",
                    "qrcode": {"base64": "data:image/png;base64,AAA"},
                },
            )

        client = make_client(handler)
        provisioned = await client.create_account("acme_1", webhook_url="https://app.example.com/webhook/acme_1")

        assert captured["url"] == "https://evolution.example.com/instance/create"
        assert captured["apikey"] == "deployment-key"
        assert captured["body"]["instanceName"] == "acme_1"
        assert captured["body"]["webhook"]["url"] == "https://app.example.com/webhook/acme_1"
        assert captured["body"]["webhook"]["events"] == WEBHOOK_EVENTS
        assert provisioned.secret == "instance-secret"
        assert provisioned.pairing_payload == "data:image/png;base64,AAA"

    async def test_create_account_v1_hash(self):
        """Test v1 responses nest the key under hash.apikey."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, json={"hash": {"apikey": "v1-secret"}})

        provisioned = await make_client(handler).create_account("acme_1")
        assert provisioned.secret == "v1-secret"

    async def test_account_key_takes_precedence(self):
        """Test per-account credential replaces the deployment key."""
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers["apikey"])
            return httpx.Response(200, json={"instance": {"state": "close"}})

        client = make_client(handler)
        await client.fetch_connection_state("acme_1", api_key="account-key")
        await client.fetch_connection_state("acme_1")

        assert seen == ["account-key", "deployment-key"]

    async def test_fetch_connection_state(self):
        """Test connection state parsing with owner identity."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/instance/connectionState/acme_1"
            return httpx.Response(
                200,
                json={
                    "instance": {
                        "instanceName": "acme_1",
                        "state": "open",
                        "wuid": "5511999999999@s.whatsapp.net",
                        "profileName": "Acme",
                    }
                },
            )

        snapshot = await make_client(handler).fetch_connection_state("acme_1")

        assert snapshot.state == ConnectionState.CONNECTED
        assert snapshot.phone_identity == "5511999999999"
        assert snapshot.profile_name == "Acme"

    async def test_request_pairing(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/instance/connect/acme_1"
            return httpx.Response(200, json={"pairingCode": None, "code": "2@abc", "base64": "data:image/png;base64,QR"})

        payload = await make_client(handler).request_pairing("acme_1")
        assert payload == "data:image/png;base64,QR"

    async def test_send_text(self):
        """Test send returns the gateway message id."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/message/sendText/acme_1"
            assert json.loads(request.content) == {"number": "5511888888888", "text": "Hola"}
            return httpx.Response(201, json={"key": {"id": "BAE5F00D", "fromMe": True}, "status": "PENDING"})

        receipt = await make_client(handler).send_text("acme_1", "5511888888888", "Hola", api_key="account-key")
        assert receipt.message_id == "BAE5F00D"

    async def test_not_found_is_unavailable(self):
        """Test 404 means the account is gone from the gateway."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                404,
                json={"status": 404, "error": "Not Found", "response": {"message": ['The "acme_1" instance does not exist']}},
            )

        with pytest.raises(GatewayUnavailable) as exc_info:
            await make_client(handler).fetch_connection_state("acme_1")

        assert exc_info.value.status_code == 404
        assert exc_info.value.is_auth_or_missing
        assert "does not exist" in str(exc_info.value)

    async def test_unauthorized_not_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, json={"message": "Unauthorized"})

        with pytest.raises(GatewayError) as exc_info:
            await make_client(handler).send_text("acme_1", "5511888888888", "Hola")

        assert not isinstance(exc_info.value, GatewayUnavailable)
        assert exc_info.value.retryable is False
        assert exc_info.value.is_auth_or_missing

    async def test_server_error_retryable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="Bad Gateway")

        with pytest.raises(GatewayError) as exc_info:
            await make_client(handler).send_text("acme_1", "5511888888888", "Hola")

        assert exc_info.value.retryable is True
        assert exc_info.value.code == "502"

    async def test_timeout_is_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(GatewayUnavailable) as exc_info:
            await make_client(handler).fetch_connection_state("acme_1")

        assert exc_info.value.code == "TIMEOUT"
        assert exc_info.value.retryable is True

    async def test_list_accounts_v2(self):
        """Test v2 flat fetchInstances entries."""

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json=[
                    {
                        "name": "acme_1",
                        "connectionStatus": "open",
                        "ownerJid": "5511999999999@s.whatsapp.net",
                        "token": "secret-1",
                    },
                    {"name": "acme_2", "connectionStatus": "close", "ownerJid": None},
                ],
            )

        accounts = await make_client(handler).list_accounts()

        assert [a.account_key for a in accounts] == ["acme_1", "acme_2"]
        assert accounts[0].state == ConnectionState.CONNECTED
        assert accounts[0].phone_identity == "5511999999999"
        assert accounts[0].secret == "secret-1"
        assert accounts[1].phone_identity is None

    async def test_fetch_account_v1(self):
        """Test v1 entries nested under "instance"."""

        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["instanceName"] == "acme_1"
            return httpx.Response(
                200,
                json=[{"instance": {"instanceName": "acme_1", "status": "open", "owner": "5511999999999@s.whatsapp.net"}}],
            )

        account = await make_client(handler).fetch_account("acme_1")

        assert account is not None
        assert account.phone_identity == "5511999999999"
