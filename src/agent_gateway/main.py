"""WebSocket server: entry point for the agent gateway.

Each client connection gets its own SessionHandler; everything that must be
shared across connections (runner registry, approval gate, rate limiter,
stores) is built once here and injected.

Protocol summary (see schemas/protocol.py for every frame):
  Client -> Server: {"type": "auth", "token": "..."}, then chat_send /
                    chat_retry / tool_approval_response
  Server -> Client: auth_success, conversation_created, chat_start,
                    chat_chunk, tool_use, tool_result, chat_complete, ...
"""

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from websockets.asyncio.server import ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from agent_gateway.approvals import ToolApprovalGate
from agent_gateway.auth import TokenVerifier
from agent_gateway.cleanup import StaleRunnerCleaner
from agent_gateway.config import GatewaySettings
from agent_gateway.rate_limit import RateLimiter
from agent_gateway.registry import RunnerRegistry
from agent_gateway.schemas.protocol import ErrorMessage
from agent_gateway.session import GatewayServices, SessionHandler, SessionPolicy
from agent_gateway.store import InMemoryStore, Workspace

logger = logging.getLogger(__name__)


def build_services(settings: GatewaySettings) -> GatewayServices:
    """Wire the shared collaborators from settings."""
    store = InMemoryStore()
    for workspace_id, path in settings.workspaces.items():
        store.add_workspace(Workspace(id=workspace_id, path=str(Path(path).expanduser().resolve())))
    for device_id in settings.device_ids:
        store.add_device(device_id)

    return GatewayServices(
        verifier=TokenVerifier(settings.jwt_secret, settings.jwt_expires_days),
        registry=RunnerRegistry(max_concurrent=settings.max_concurrent_runners),
        rate_limiter=RateLimiter(
            max_requests=settings.rate_limit_max_requests,
            window_seconds=settings.rate_limit_window_seconds,
        ),
        approvals=ToolApprovalGate(
            timeout_seconds=settings.tool_approval_timeout_seconds,
            auto_approve_read_only=settings.auto_approve_read_only,
            read_only_tools=frozenset(settings.read_only_tools),
        ),
        conversations=store,
        workspaces=store,
        devices=store,
        policy=SessionPolicy.from_settings(settings),
    )


def make_connection_handler(services: GatewayServices):
    async def handle_connection(websocket: ServerConnection) -> None:
        """Process every frame of one connection, then tear its session down."""

        async def send(frame: dict[str, Any]) -> None:
            try:
                await websocket.send(json.dumps(frame))
            except ConnectionClosed:
                # The close path below cleans up; nothing left to deliver to.
                logger.debug("Dropped %s frame for closed connection", frame.get("type"))

        session = SessionHandler(services, send)
        logger.info("New connection from %s", websocket.remote_address)
        try:
            async for raw_message in websocket:
                try:
                    await session.handle_raw(raw_message)
                except Exception:
                    logger.exception("Error handling message from %s", websocket.remote_address)
                    await session.send(ErrorMessage(error="Internal server error"))
        except ConnectionClosed as exc:
            logger.info("Connection from %s dropped: %s", websocket.remote_address, exc)
        finally:
            await session.close()

    return handle_connection


async def main(settings: GatewaySettings) -> None:
    services = build_services(settings)
    cleaner = StaleRunnerCleaner(
        services.registry,
        max_age_seconds=settings.runner_timeout_seconds,
        interval_seconds=settings.stale_runner_check_seconds,
    )
    cleaner.start()
    try:
        async with serve(make_connection_handler(services), settings.host, settings.port):
            logger.info(
                "Agent gateway listening on ws://%s:%s (backend=%s, max runners=%s)",
                settings.host, settings.port, settings.runner_backend, settings.max_concurrent_runners,
            )
            await asyncio.Future()  # Run forever until cancelled.
    finally:
        await cleaner.stop()
        services.approvals.clear_all()


def run() -> None:
    parser = argparse.ArgumentParser(description="Claude coding-agent WebSocket gateway")
    parser.add_argument("--host", help="Interface to bind (overrides HOST)")
    parser.add_argument("--port", type=int, help="Port to listen on (overrides PORT)")
    parser.add_argument("--backend", choices=["sdk", "cli"], help="Agent runner backend")
    args = parser.parse_args()

    overrides = {
        key: value
        for key, value in (("host", args.host), ("port", args.port), ("runner_backend", args.backend))
        if value is not None
    }
    settings = GatewaySettings().model_copy(update=overrides)

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)-5s %(name)s: %(message)s",
    )
    try:
        asyncio.run(main(settings))
    except KeyboardInterrupt:
        logger.info("Agent gateway stopped")


if __name__ == "__main__":
    run()
