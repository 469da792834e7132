"""WebSocket channel that asks connected operators for key share decisions."""

from __future__ import annotations

import asyncio
import json
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from loguru import logger
from websockets.asyncio.server import Server, ServerConnection, serve
from websockets.exceptions import ConnectionClosed

from keyshare.arbiter.config import WSPromptConfig
from keyshare.arbiter.contracts import CHOICES, Decision, DecisionPrompt, PromptRequest


@dataclass
class PendingPrompt:
    """Outstanding prompt waiting for the first valid decision."""

    request: PromptRequest
    future: asyncio.Future[Decision]


class WSDecisionPrompt(DecisionPrompt):
    """Serve key share prompts over a small JSON WebSocket protocol."""

    name = "ws_prompt"

    def __init__(self, config: WSPromptConfig, on_ready: Callable[[], Any] | None = None):
        self.config = config
        self.on_ready = on_ready
        self._server: Server | None = None
        self._running = False
        self._connections: dict[str, ServerConnection] = {}
        self._pending: dict[str, PendingPrompt] = {}
        self._background: set[asyncio.Task[None]] = set()

    def is_ready(self) -> bool:
        return bool(self._connections)

    async def start(self) -> None:
        """Start WebSocket server and keep it running."""
        self._running = True
        self._server = await serve(self._handle_client, self.config.host, self.config.port)
        logger.info(f"Key share prompt listening on ws://{self.config.host}:{self.config.port}")

        try:
            await self._server.wait_closed()
        finally:
            self._running = False

    async def stop(self) -> None:
        """Stop server, dismiss outstanding prompts and drop all connections."""
        self._running = False

        for prompt_id in list(self._pending):
            self.abort(prompt_id)

        for ws in list(self._connections.values()):
            try:
                await ws.close(code=1001, reason="server stopping")
            except Exception as e:  # noqa: BLE001
                logger.debug(f"ws_prompt close failed: {e}")

        self._connections.clear()

        if self._server:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def present(self, request: PromptRequest) -> Decision:
        """Broadcast the prompt and wait for the first valid decision."""
        future: asyncio.Future[Decision] = asyncio.get_running_loop().create_future()
        self._pending[request.prompt_id] = PendingPrompt(request=request, future=future)
        try:
            await self._broadcast(self._prompt_payload(request))
            return await future
        except asyncio.CancelledError:
            self.abort(request.prompt_id)
            raise
        finally:
            self._pending.pop(request.prompt_id, None)

    def abort(self, prompt_id: str) -> None:
        pending = self._pending.get(prompt_id)
        if pending is None or pending.future.done():
            return
        pending.future.set_result(Decision.ABORTED)
        self._spawn(self._broadcast({"type": "dismissed", "id": prompt_id}))

    async def _handle_client(self, websocket: ServerConnection) -> None:
        """Handle one websocket connection lifecycle."""
        conn_id = uuid.uuid4().hex
        logger.info(f"ws_prompt client connected conn_id={conn_id}")

        try:
            ok = await self._handshake(conn_id, websocket)
            if not ok:
                return

            async for raw in websocket:
                await self._handle_message_frame(conn_id, websocket, raw)
        except ConnectionClosed:
            pass
        except Exception as e:  # noqa: BLE001
            logger.warning(f"ws_prompt connection error conn_id={conn_id}: {e}")
        finally:
            self._connections.pop(conn_id, None)
            logger.info(f"ws_prompt client disconnected conn_id={conn_id}")

    async def _handshake(self, conn_id: str, ws: ServerConnection) -> bool:
        """Authenticate an operator client, then replay outstanding prompts."""
        try:
            raw = await asyncio.wait_for(ws.recv(), timeout=self.config.handshake_timeout_s)
        except (asyncio.TimeoutError, ConnectionClosed):
            return await self._reject(ws, "bad_request", "connect message timeout", 1002, "connect timeout")

        hello = self._parse_json(raw)
        if hello is None or hello.get("type") != "connect":
            return await self._reject(ws, "bad_request", "first message must be connect", 1002, "invalid handshake")

        if self.config.require_auth and not self._token_ok(hello.get("token")):
            return await self._reject(ws, "unauthorized", "invalid token", 1008, "unauthorized")

        first = not self._connections
        self._connections[conn_id] = ws
        await self._send_json(ws, {
            "type": "connected",
            "scopes": ["keyshare.decide"],
            "sessionId": conn_id,
        })
        for pending in list(self._pending.values()):
            if not pending.future.done():
                await self._send_json(ws, self._prompt_payload(pending.request))

        if first and self.on_ready is not None:
            self.on_ready()
        return True

    async def _handle_message_frame(self, conn_id: str, ws: ServerConnection, raw: Any) -> None:
        """Handle non-handshake frames."""
        data = self._parse_json(raw)
        if data is None:
            await self._send_error(ws, "bad_request", "invalid JSON payload")
            return

        msg_type = str(data.get("type") or "").strip()
        if msg_type == "decision":
            await self._handle_decision(conn_id, ws, data)
            return

        await self._send_error(
            ws, "unsupported_type", f"unsupported message type: {msg_type or '<empty>'}"
        )

    async def _handle_decision(self, conn_id: str, ws: ServerConnection, data: dict[str, Any]) -> None:
        """Resolve an outstanding prompt with the operator's choice."""
        prompt_id = str(data.get("id") or "").strip()
        if not prompt_id:
            await self._send_error(ws, "bad_request", "id is required")
            return

        pending = self._pending.get(prompt_id)
        if pending is None or pending.future.done():
            await self._send_error(ws, "unknown_prompt", "prompt is not pending", prompt_id)
            return

        value = str(data.get("decision") or "").strip()
        if value not in {choice.value for choice in CHOICES}:
            await self._send_error(
                ws, "invalid_decision", f"unsupported decision: {value or '<empty>'}", prompt_id
            )
            return

        decision = Decision(value)
        pending.future.set_result(decision)
        logger.info(f"ws_prompt decision id={prompt_id} decision={value} conn_id={conn_id}")
        await self._broadcast({"type": "resolved", "id": prompt_id, "decision": value})

    async def _broadcast(self, payload: dict[str, Any]) -> None:
        for conn_id, ws in list(self._connections.items()):
            try:
                await self._send_json(ws, payload)
            except Exception as e:  # noqa: BLE001
                logger.warning(f"ws_prompt send failed conn_id={conn_id}: {e}")

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    @staticmethod
    def _prompt_payload(request: PromptRequest) -> dict[str, Any]:
        return {
            "type": "key_request",
            "id": request.prompt_id,
            "userId": request.user_id,
            "deviceId": request.device_id,
            "deviceName": request.device.label,
            "newDevice": request.was_new_device,
            "requestCount": request.request_count,
            "text": request.text,
            "choices": [choice.value for choice in CHOICES],
        }

    @staticmethod
    def _parse_json(raw: Any) -> dict[str, Any] | None:
        """Decode a text or bytes frame into a JSON object, or None."""
        text = raw.decode("utf-8", errors="ignore") if isinstance(raw, bytes) else raw
        if not isinstance(text, str):
            return None
        try:
            frame = json.loads(text)
        except ValueError:
            return None
        return frame if isinstance(frame, dict) else None

    def _token_ok(self, token: Any) -> bool:
        return bool(self.config.token) and str(token or "") == self.config.token

    async def _reject(self, ws: ServerConnection, code: str, message: str, close_code: int, reason: str) -> bool:
        await self._send_error(ws, code, message)
        await ws.close(code=close_code, reason=reason)
        return False

    @staticmethod
    async def _send_json(ws: ServerConnection, payload: dict[str, Any]) -> None:
        await ws.send(json.dumps(payload, ensure_ascii=False))

    async def _send_error(
        self,
        ws: ServerConnection,
        code: str,
        message: str,
        prompt_id: str | None = None,
    ) -> None:
        frame: dict[str, Any] = {"type": "error", "error": {"code": code, "message": message}}
        if prompt_id is not None:
            frame["id"] = prompt_id
        await self._send_json(ws, frame)
