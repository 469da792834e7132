"""Self-tests for the WebSocket decision prompt using in-memory connections."""

import asyncio
import json

import pytest

from keyshare.arbiter.config import WSPromptConfig
from keyshare.arbiter.contracts import Decision, DeviceInfo, PromptRequest
from keyshare.channels.ws_prompt import WSDecisionPrompt


class FakeConnection:
    def __init__(self, *frames: str):
        self.inbox: asyncio.Queue[str] = asyncio.Queue()
        for frame in frames:
            self.inbox.put_nowait(frame)
        self.sent: list[dict] = []
        self.closed: tuple[int, str] | None = None

    async def recv(self) -> str:
        return await self.inbox.get()

    async def send(self, data: str) -> None:
        self.sent.append(json.loads(data))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]


def _prompt_request(prompt_id: str = "p1") -> PromptRequest:
    return PromptRequest(
        prompt_id=prompt_id,
        user_id="@alice:example.org",
        device_id="PHONE",
        device=DeviceInfo("PHONE", display_name="Alice's phone"),
        was_new_device=False,
        request_count=2,
    )


def _connect(token: str = "secret") -> str:
    return json.dumps({"type": "connect", "token": token})


async def _wait_for(predicate) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(_poll(), timeout=1)


@pytest.mark.asyncio
async def test_handshake_accepts_token_and_fires_ready_hook() -> None:
    ready: list[bool] = []
    prompt = WSDecisionPrompt(WSPromptConfig(token="secret"), on_ready=lambda: ready.append(True))
    ws = FakeConnection(_connect())

    assert not prompt.is_ready()
    assert await prompt._handshake("c1", ws)

    assert prompt.is_ready()
    assert ws.sent[0]["type"] == "connected"
    assert ws.sent[0]["scopes"] == ["keyshare.decide"]
    assert ready == [True]

    assert await prompt._handshake("c2", FakeConnection(_connect()))
    assert ready == [True]


@pytest.mark.asyncio
async def test_handshake_rejects_bad_token_and_bad_frames() -> None:
    prompt = WSDecisionPrompt(WSPromptConfig(token="secret"))

    unauthorized = FakeConnection(_connect("wrong"))
    assert not await prompt._handshake("c1", unauthorized)
    assert unauthorized.sent[0]["error"]["code"] == "unauthorized"
    assert unauthorized.closed == (1008, "unauthorized")

    garbage = FakeConnection("not json")
    assert not await prompt._handshake("c2", garbage)
    assert garbage.sent[0]["error"]["code"] == "bad_request"
    assert garbage.closed == (1002, "invalid handshake")

    assert not prompt.is_ready()


@pytest.mark.asyncio
async def test_handshake_times_out() -> None:
    prompt = WSDecisionPrompt(WSPromptConfig(require_auth=False, handshake_timeout_s=0.01))
    silent = FakeConnection()
    assert not await prompt._handshake("c1", silent)
    assert silent.closed == (1002, "connect timeout")


@pytest.mark.asyncio
async def test_present_resolves_with_first_valid_decision() -> None:
    prompt = WSDecisionPrompt(WSPromptConfig(token="secret"))
    ws_a = FakeConnection(_connect())
    ws_b = FakeConnection(_connect())
    await prompt._handshake("a", ws_a)
    await prompt._handshake("b", ws_b)

    task = asyncio.create_task(prompt.present(_prompt_request()))
    await _wait_for(lambda: "key_request" in ws_b.types())

    frame = ws_a.sent[-1]
    assert frame["type"] == "key_request"
    assert frame["deviceName"] == "Alice's phone"
    assert frame["requestCount"] == 2
    assert frame["choices"] == ["share", "share_without_verifying", "ignore"]

    await prompt._handle_message_frame("b", ws_b, json.dumps({"type": "decision", "id": "p1", "decision": "maybe"}))
    assert ws_b.sent[-1]["error"]["code"] == "invalid_decision"

    await prompt._handle_message_frame(
        "b", ws_b, json.dumps({"type": "decision", "id": "p1", "decision": "share_without_verifying"})
    )
    assert await task is Decision.SHARE_WITHOUT_VERIFYING
    assert ws_a.sent[-1] == {"type": "resolved", "id": "p1", "decision": "share_without_verifying"}

    await prompt._handle_message_frame("a", ws_a, json.dumps({"type": "decision", "id": "p1", "decision": "ignore"}))
    assert ws_a.sent[-1]["error"]["code"] == "unknown_prompt"


@pytest.mark.asyncio
async def test_abort_resolves_present_and_dismisses() -> None:
    prompt = WSDecisionPrompt(WSPromptConfig(require_auth=False))
    ws = FakeConnection(_connect(""))
    await prompt._handshake("c1", ws)

    task = asyncio.create_task(prompt.present(_prompt_request("p7")))
    await _wait_for(lambda: "key_request" in ws.types())

    prompt.abort("p7")
    prompt.abort("p7")
    prompt.abort("unknown")
    assert await task is Decision.ABORTED
    await _wait_for(lambda: "dismissed" in ws.types())
    assert ws.types().count("dismissed") == 1


@pytest.mark.asyncio
async def test_late_client_receives_outstanding_prompt() -> None:
    prompt = WSDecisionPrompt(WSPromptConfig(token="secret"))
    task = asyncio.create_task(prompt.present(_prompt_request("p2")))
    await asyncio.sleep(0)

    late = FakeConnection(_connect())
    await prompt._handshake("late", late)
    assert late.types() == ["connected", "key_request"]
    assert late.sent[1]["id"] == "p2"

    await prompt._handle_message_frame("late", late, json.dumps({"type": "decision", "id": "p2", "decision": "ignore"}))
    assert await task is Decision.IGNORE


@pytest.mark.asyncio
async def test_unsupported_frames_get_errors() -> None:
    prompt = WSDecisionPrompt(WSPromptConfig(require_auth=False))
    ws = FakeConnection()

    await prompt._handle_message_frame("c1", ws, b"[1, 2]")
    await prompt._handle_message_frame("c1", ws, json.dumps({"type": "agent"}))
    await prompt._handle_message_frame("c1", ws, json.dumps({"type": "decision"}))

    assert [frame["error"]["code"] for frame in ws.sent] == [
        "bad_request",
        "unsupported_type",
        "bad_request",
    ]


@pytest.mark.asyncio
async def test_stop_aborts_outstanding_prompts() -> None:
    prompt = WSDecisionPrompt(WSPromptConfig(token="secret"))
    ws = FakeConnection(_connect())
    await prompt._handshake("c1", ws)

    task = asyncio.create_task(prompt.present(_prompt_request("p3")))
    await _wait_for(lambda: "key_request" in ws.types())
    await prompt.stop()

    assert await task is Decision.ABORTED
    assert ws.closed == (1001, "server stopping")
    assert not prompt.is_ready()


@pytest.mark.asyncio
async def test_cancelled_present_dismisses_prompt() -> None:
    prompt = WSDecisionPrompt(WSPromptConfig(token="secret"))
    ws = FakeConnection(_connect())
    await prompt._handshake("c1", ws)

    task = asyncio.create_task(prompt.present(_prompt_request("p4")))
    await _wait_for(lambda: "key_request" in ws.types())
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    await _wait_for(lambda: "dismissed" in ws.types())
    assert ws.sent[-1] == {"type": "dismissed", "id": "p4"}

    await prompt._handle_message_frame("c1", ws, json.dumps({"type": "decision", "id": "p4", "decision": "share"}))
    assert ws.sent[-1]["error"]["code"] == "unknown_prompt"
