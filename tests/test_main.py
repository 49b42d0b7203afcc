"""Tests for settings loading, service wiring and the websocket connection handler."""

import json

import pytest
from websockets.exceptions import ConnectionClosed

from agent_gateway.config import GatewaySettings
from agent_gateway.main import build_services, make_connection_handler
from agent_gateway.runners.cli_runner import ClaudeCliRunner
from agent_gateway.runners.factory import create_runner
from agent_gateway.runners.ports import PermissionMode
from agent_gateway.runners.sdk_runner import ClaudeSDKRunner


class FakeWebSocket:
    """Stands in for a websockets ServerConnection: iterates inbound frames, records outbound."""

    remote_address = ("127.0.0.1", 50000)

    def __init__(self, inbound, closed_on_send=False):
        self._inbound = list(inbound)
        self._closed_on_send = closed_on_send
        self.sent: list[dict] = []

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._inbound:
            raise StopAsyncIteration
        return self._inbound.pop(0)

    async def send(self, data: str) -> None:
        if self._closed_on_send:
            raise ConnectionClosed(None, None)
        self.sent.append(json.loads(data))


def _settings(**overrides) -> GatewaySettings:
    return GatewaySettings(_env_file=None, jwt_secret="test-secret", **overrides)


class TestGatewaySettings:
    def test_defaults(self):
        settings = _settings()

        assert settings.port == 3000
        assert settings.runner_backend == "sdk"
        assert settings.max_concurrent_runners == 3
        assert settings.rate_limit_max_requests == 10
        assert settings.rate_limit_window_seconds == 60.0
        assert settings.tool_approval_timeout_seconds == 120.0
        assert "Read" in settings.read_only_tools

    def test_environment_parsing(self, monkeypatch):
        monkeypatch.setenv("DEVICE_IDS", "phone, laptop ,")
        monkeypatch.setenv("READ_ONLY_TOOLS", "Read,Grep")
        monkeypatch.setenv("WORKSPACES", '{"ws-1": "/srv/app"}')
        monkeypatch.setenv("MAX_CONCURRENT_RUNNERS", "5")
        monkeypatch.setenv("RUNNER_BACKEND", "cli")

        settings = GatewaySettings(_env_file=None)

        assert settings.device_ids == ["phone", "laptop"]
        assert settings.read_only_tools == ["Read", "Grep"]
        assert settings.workspaces == {"ws-1": "/srv/app"}
        assert settings.max_concurrent_runners == 5
        assert settings.runner_backend == "cli"


class TestBuildServices:
    @pytest.mark.asyncio
    async def test_store_is_seeded(self, tmp_path):
        services = build_services(_settings(workspaces={"ws-1": str(tmp_path)}, device_ids=["dev-1"]))

        workspace = await services.workspaces.get_workspace("ws-1")
        assert workspace.path == str(tmp_path.resolve())
        assert await services.devices.device_exists("dev-1") is True
        assert await services.devices.device_exists("dev-2") is False

    def test_policy_follows_settings(self):
        services = build_services(_settings(
            max_concurrent_runners=2,
            claude_permission_mode="acceptEdits",
            max_turns_chat=9,
            tool_approval_enabled=True,
            tool_result_max_chars=500,
            runner_abort_grace_seconds=2.5,
        ))

        assert services.registry.max_concurrent == 2
        assert services.policy.permission_mode == PermissionMode.ACCEPT_EDITS
        assert services.policy.max_turns == 9
        assert services.policy.tool_approval_enabled is True
        assert services.policy.limits.tool_result_chars == 500
        assert services.policy.abort_grace_seconds == 2.5

    def test_read_only_tools_configure_the_gate(self):
        services = build_services(_settings(read_only_tools=["Grep"]))

        assert services.approvals.is_auto_approved("Grep") is True
        assert services.approvals.is_auto_approved("Read") is False

    def test_runner_backend_selection(self):
        assert isinstance(build_services(_settings(runner_backend="cli")).new_runner(), ClaudeCliRunner)
        assert isinstance(build_services(_settings()).new_runner(), ClaudeSDKRunner)


class TestCreateRunner:
    def test_backends(self):
        assert isinstance(create_runner("cli", cli_path="/opt/claude"), ClaudeCliRunner)
        assert isinstance(create_runner("sdk"), ClaudeSDKRunner)

    def test_each_call_returns_a_fresh_runner(self):
        assert create_runner("sdk") is not create_runner("sdk")

    def test_unknown_backend(self):
        with pytest.raises(ValueError, match="Unknown runner backend"):
            create_runner("docker")  # type: ignore[arg-type]


class TestConnectionHandler:
    @pytest.mark.asyncio
    async def test_frames_are_dispatched_and_answered(self):
        services = build_services(_settings(device_ids=["dev-1"]))
        token = services.verifier.sign_token("dev-1")
        websocket = FakeWebSocket([
            json.dumps({"type": "auth", "token": token}),
            "not json",
        ])

        await make_connection_handler(services)(websocket)

        assert websocket.sent == [
            {"type": "auth_success", "deviceId": "dev-1"},
            {"type": "error", "error": "Invalid JSON"},
        ]

    @pytest.mark.asyncio
    async def test_send_to_closed_connection_is_dropped(self):
        services = build_services(_settings())
        websocket = FakeWebSocket([json.dumps({"type": "chat_retry", "conversationId": "c"})], closed_on_send=True)

        await make_connection_handler(services)(websocket)

        assert websocket.sent == []
