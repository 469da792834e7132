"""Key-request arbitrator: one device decision at a time."""

from __future__ import annotations

import asyncio
import inspect
import uuid
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import Any, TypeVar

from loguru import logger

from keyshare.arbiter.config import ArbiterConfig
from keyshare.arbiter.contracts import (
    ArbiterState,
    Decision,
    DecisionPrompt,
    DeviceDirectory,
    DeviceInfo,
    Effect,
    KeyRequest,
    KeyRequestCancellation,
    PromptRequest,
)
from keyshare.arbiter.errors import DirectoryLookupError, EffectError, InvalidRequestError
from keyshare.arbiter.keying import build_pair_key, request_pair_key
from keyshare.arbiter.pending_queue import PendingQueue

T = TypeVar("T")


@dataclass
class _ActiveDecision:
    """The (user, device) pair currently being decided."""

    user_id: str
    device_id: str
    prompt_id: str
    presenting: bool = False
    aborted: bool = False
    closing: bool = False

    @property
    def pair(self) -> tuple[str, str]:
        return self.user_id, self.device_id

    @property
    def key(self) -> str:
        return build_pair_key(self.user_id, self.device_id)


class KeyRequestArbitrator:
    """Queues incoming key requests and resolves them one device at a time.

    All public methods must be called from the event loop that owns the
    arbitrator. ``submit`` and ``submit_cancellation`` never raise; failures
    are logged and turned into a no-op or a decline of the active pair.
    """

    def __init__(
        self,
        *,
        directory: DeviceDirectory,
        prompt: DecisionPrompt,
        config: ArbiterConfig | None = None,
    ):
        self.directory = directory
        self.prompt = prompt
        self.config = config or ArbiterConfig()
        self._queue = PendingQueue()
        self._active: _ActiveDecision | None = None
        self._state = ArbiterState.IDLE
        self._task: asyncio.Task[None] | None = None
        self._running = True

    @property
    def state(self) -> ArbiterState:
        return self._state

    @property
    def active_pair(self) -> tuple[str, str] | None:
        return self._active.pair if self._active else None

    def pending(self) -> dict[str, dict[str, list[KeyRequest]]]:
        """Snapshot of the queued requests."""
        return self._queue.snapshot()

    def pending_count(self) -> int:
        return len(self._queue)

    def submit(self, request: KeyRequest) -> bool:
        """Admit a key request; return False if it was rejected."""
        try:
            request.validate()
        except InvalidRequestError as exc:
            logger.warning("Rejected key request: {}", exc)
            return False

        if not self._queue.add(request):
            logger.debug(
                "Already have key request {} from {}, ignoring",
                request.request_id,
                request_pair_key(request),
            )
            return True

        if self._active is not None:
            logger.debug(
                "Queued key request {} from {} while deciding {}",
                request.request_id,
                request_pair_key(request),
                self._active.key,
            )
            return True

        self.advance()
        return True

    def cancel(self, cancellation: KeyRequestCancellation) -> bool:
        """Withdraw a key request; return False if nothing matched."""
        try:
            cancellation.validate()
        except InvalidRequestError as exc:
            logger.warning("Rejected key request cancellation: {}", exc)
            return False

        # Once close-out has popped the pair, later requests sit in a fresh entry.
        active = self._active
        if active is not None and active.pair == cancellation.pair and not active.closing:
            logger.info("Key request cancelled for {} while deciding it", active.key)
            active.aborted = True
            if active.presenting:
                self.prompt.abort(active.prompt_id)
            return True

        if not self._queue.remove(*cancellation.pair, cancellation.request_id):
            logger.debug(
                "No pending key request {} from {} to cancel",
                cancellation.request_id,
                request_pair_key(cancellation),
            )
            return False

        logger.info(
            "Forgot key request {} from {}",
            cancellation.request_id,
            request_pair_key(cancellation),
        )
        return True

    def submit_cancellation(self, user_id: str, device_id: str, request_id: str) -> bool:
        return self.cancel(KeyRequestCancellation(user_id, device_id, request_id))

    def handle_event(
        self,
        sender: str,
        content: dict[str, Any],
        share: Effect | None = None,
        ignore: Effect | None = None,
    ) -> bool:
        """Route raw ``m.room_key_request`` content by its action."""
        action = content.get("action") if isinstance(content, dict) else None
        if action == "request":
            return self.submit(KeyRequest.from_event(sender, content, share=share, ignore=ignore))
        if action == "request_cancellation":
            return self.cancel(KeyRequestCancellation.from_event(sender, content))
        logger.warning("Unsupported key request action from {}: {}", sender, action)
        return False

    def advance(self) -> bool:
        """Start deciding the next pending pair; return True if one was started."""
        if not self._running or self._active is not None:
            return False

        pair = self._queue.next_pair()
        if pair is None:
            return False

        if not self.prompt.is_ready():
            logger.debug("Decision prompt not ready, {} key requests waiting", len(self._queue))
            return False

        active = _ActiveDecision(user_id=pair[0], device_id=pair[1], prompt_id=uuid.uuid4().hex)
        self._active = active
        logger.info("Starting key share decision for {}", active.key)
        self._task = asyncio.create_task(self._resolve(active), name=f"keyshare:{active.key}")
        return True

    async def wait_idle(self) -> None:
        """Wait until no decision is in flight."""
        while self._task is not None and not self._task.done():
            await asyncio.wait({self._task})

    async def stop(self) -> None:
        """Abandon the in-flight decision and stop advancing.

        Queued requests are kept, including those of a pair whose prompt was
        still open. If close-out had already started, that pair's requests
        were taken off the queue and their remaining effects are dropped.
        """
        self._running = False
        active = self._active
        if active is not None and active.presenting:
            self.prompt.abort(active.prompt_id)
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        self._active = None
        self._state = ArbiterState.IDLE

    async def _resolve(self, active: _ActiveDecision) -> None:
        try:
            decision: Decision | None = await self._decide(active)
        except DirectoryLookupError as exc:
            logger.warning("{}", exc)
            decision = None
        except asyncio.CancelledError:
            logger.info("Key share decision for {} abandoned", active.key)
            self._active = None
            self._state = ArbiterState.IDLE
            raise

        await self._close_out(active, decision)

    async def _decide(self, active: _ActiveDecision) -> Decision:
        self._state = ArbiterState.RESOLVING_DEVICE
        device = await self._lookup(active)

        was_new_device = device.unknown
        if was_new_device:
            self._state = ArbiterState.MARKING_VERIFICATION
            try:
                await self._bounded(
                    self.directory.mark_unverified(active.user_id, active.device_id),
                    self.config.lookup_timeout_s,
                )
            except Exception as exc:  # noqa: BLE001
                raise DirectoryLookupError(
                    active.user_id, active.device_id, f"mark unverified failed: {exc!r}"
                ) from exc

        if active.aborted:
            return Decision.ABORTED

        request = PromptRequest(
            prompt_id=active.prompt_id,
            user_id=active.user_id,
            device_id=active.device_id,
            device=device,
            was_new_device=was_new_device,
            request_count=len(self._queue.requests_for(*active.pair)),
        )
        self._state = ArbiterState.AWAITING_DECISION
        active.presenting = True
        # The prompt is aborted before its task is cancelled so it can dismiss itself.
        presenting = asyncio.ensure_future(self.prompt.present(request))
        try:
            done, _ = await asyncio.wait({presenting}, timeout=self.config.prompt_timeout_s)
            if done:
                decision = Decision(presenting.result())
            else:
                logger.info("Key share prompt for {} timed out", active.key)
                self.prompt.abort(active.prompt_id)
                presenting.cancel()
                decision = Decision.ABORTED
        except asyncio.CancelledError:
            presenting.cancel()
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Key share prompt for {} failed: {}", active.key, exc)
            decision = Decision.ABORTED
        finally:
            active.presenting = False

        return Decision.ABORTED if active.aborted else decision

    async def _lookup(self, active: _ActiveDecision) -> DeviceInfo:
        try:
            devices = await self._bounded(
                self.directory.download_device_info(active.user_id),
                self.config.lookup_timeout_s,
            )
        except Exception as exc:  # noqa: BLE001
            raise DirectoryLookupError(
                active.user_id, active.device_id, f"download failed: {exc!r}"
            ) from exc

        device = (devices or {}).get(active.device_id)
        if device is None:
            raise DirectoryLookupError(active.user_id, active.device_id, "no details found")
        return device

    async def _close_out(self, active: _ActiveDecision, decision: Decision | None) -> None:
        active.closing = True
        requests = self._queue.pop_pair(*active.pair)
        if decision is not None and decision.shares:
            effect_name = "share"
        elif decision is Decision.IGNORE:
            effect_name = "ignore"
        else:
            effect_name = None

        logger.info(
            "Key share decision for {}: {} ({} requests)",
            active.key,
            decision.value if decision is not None else "declined",
            len(requests),
        )
        try:
            if effect_name is not None:
                for request in requests:
                    try:
                        await self._run_effect(request, effect_name)
                    except EffectError:
                        logger.exception(
                            "Key request {} {} failed", request.request_id, effect_name
                        )
        finally:
            self._active = None
            self._state = ArbiterState.IDLE

        self.advance()

    @staticmethod
    async def _run_effect(request: KeyRequest, effect_name: str) -> None:
        effect = getattr(request, effect_name)
        if effect is None:
            return
        try:
            result = effect()
            if inspect.isawaitable(result):
                await result
        except Exception as exc:  # noqa: BLE001
            raise EffectError(
                f"{effect_name} effect failed for {request_pair_key(request)}"
                f" request {request.request_id}"
            ) from exc

    @staticmethod
    async def _bounded(awaitable: Awaitable[T], timeout_s: float | None) -> T:
        if timeout_s is None:
            return await awaitable
        return await asyncio.wait_for(awaitable, timeout=timeout_s)
