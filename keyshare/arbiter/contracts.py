"""Contracts for key requests and the collaborators the arbiter drives."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from keyshare.arbiter.errors import InvalidRequestError

Effect = Callable[[], "Awaitable[None] | None"]


def _pick_str(data: dict[str, Any], *keys: str) -> str:
    """Pick the first non-empty string value from candidate keys."""
    for key in keys:
        value = data.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _require_ids(kind: str, user_id: str, device_id: str, request_id: str) -> None:
    missing = [
        name
        for name, value in (
            ("user_id", user_id),
            ("device_id", device_id),
            ("request_id", request_id),
        )
        if not value
    ]
    if missing:
        raise InvalidRequestError(f"Invalid {kind}: missing {', '.join(missing)}")


@dataclass(frozen=True)
class KeyRequest:
    """A remote device asking for a room key it cannot decrypt with."""

    user_id: str
    device_id: str
    request_id: str
    share: Effect | None = field(default=None, compare=False, repr=False)
    ignore: Effect | None = field(default=None, compare=False, repr=False)
    body: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    def validate(self) -> None:
        _require_ids("key request", self.user_id, self.device_id, self.request_id)

    @property
    def pair(self) -> tuple[str, str]:
        return self.user_id, self.device_id

    @classmethod
    def from_event(
        cls,
        sender: str,
        content: dict[str, Any],
        share: Effect | None = None,
        ignore: Effect | None = None,
    ) -> "KeyRequest":
        """Build a request from ``m.room_key_request`` event content."""
        body = content.get("body")
        return cls(
            user_id=(sender or "").strip(),
            device_id=_pick_str(content, "requesting_device_id", "device_id"),
            request_id=_pick_str(content, "request_id"),
            share=share,
            ignore=ignore,
            body=body if isinstance(body, dict) else {},
        )


@dataclass(frozen=True)
class KeyRequestCancellation:
    """Withdrawal of an earlier key request."""

    user_id: str
    device_id: str
    request_id: str

    def validate(self) -> None:
        _require_ids("key request cancellation", self.user_id, self.device_id, self.request_id)

    @property
    def pair(self) -> tuple[str, str]:
        return self.user_id, self.device_id

    @classmethod
    def from_event(cls, sender: str, content: dict[str, Any]) -> "KeyRequestCancellation":
        return cls(
            user_id=(sender or "").strip(),
            device_id=_pick_str(content, "requesting_device_id", "device_id"),
            request_id=_pick_str(content, "request_id"),
        )


@dataclass(frozen=True)
class DeviceInfo:
    """Directory view of a remote device."""

    device_id: str
    display_name: str | None = None
    unknown: bool = False

    @property
    def label(self) -> str:
        """Name shown to the decision-maker."""
        if self.display_name and self.display_name.strip():
            return self.display_name.strip()
        return self.device_id


class Decision(str, Enum):
    """Outcome of a single prompt."""

    SHARE = "share"
    SHARE_WITHOUT_VERIFYING = "share_without_verifying"
    IGNORE = "ignore"
    ABORTED = "aborted"

    @property
    def shares(self) -> bool:
        return self in (Decision.SHARE, Decision.SHARE_WITHOUT_VERIFYING)


CHOICES = (Decision.SHARE, Decision.SHARE_WITHOUT_VERIFYING, Decision.IGNORE)


class ArbiterState(str, Enum):
    IDLE = "idle"
    RESOLVING_DEVICE = "resolving_device"
    MARKING_VERIFICATION = "marking_verification"
    AWAITING_DECISION = "awaiting_decision"


@dataclass(frozen=True)
class PromptRequest:
    """Everything a prompt needs to ask about one device."""

    prompt_id: str
    user_id: str
    device_id: str
    device: DeviceInfo
    was_new_device: bool
    request_count: int = 1

    @property
    def text(self) -> str:
        if self.was_new_device:
            return (
                f"You added a new device '{self.device.label}', "
                "which is requesting encryption keys."
            )
        return f"Your unverified device '{self.device.label}' is requesting encryption keys."


class DeviceDirectory(ABC):
    """Resolves devices and records their verification state."""

    @abstractmethod
    async def download_device_info(self, user_id: str) -> dict[str, DeviceInfo]:
        """
        Fetch the known devices of a user.

        Args:
            user_id: Owner of the devices

        Returns:
            Mapping of device id to device info

        Raises:
            Exception: Any network or protocol failure
        """

    @abstractmethod
    async def mark_unverified(self, user_id: str, device_id: str) -> None:
        """Move a never-seen device to the unverified state."""


class DecisionPrompt(ABC):
    """Collects one human decision at a time."""

    def is_ready(self) -> bool:
        """Whether a prompt can be shown right now."""
        return True

    @abstractmethod
    async def present(self, request: PromptRequest) -> Decision:
        """Show the prompt and wait for a decision."""

    @abstractmethod
    def abort(self, prompt_id: str) -> None:
        """
        Dismiss an outstanding prompt.

        The pending ``present`` call must then return ``Decision.ABORTED``.
        Unknown or already-decided ids are ignored.
        """
