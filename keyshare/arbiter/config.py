"""Arbiter and prompt channel configuration from environment."""

from __future__ import annotations

import os
from dataclasses import dataclass


def _is_true(value: str | None, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _timeout(value: str | None, default: float) -> float | None:
    """Parse a timeout in seconds; zero or negative disables it."""
    seconds = float(value) if value and value.strip() else default
    return seconds if seconds > 0 else None


@dataclass(frozen=True)
class ArbiterConfig:
    """Config knobs for the key-request arbiter."""

    enabled: bool = True
    lookup_timeout_s: float | None = 30.0
    prompt_timeout_s: float | None = None

    @classmethod
    def from_env(cls) -> "ArbiterConfig":
        return cls(
            enabled=_is_true(os.getenv("KEYSHARE_ARBITER_ENABLED"), default=True),
            lookup_timeout_s=_timeout(os.getenv("KEYSHARE_LOOKUP_TIMEOUT_S"), 30.0),
            prompt_timeout_s=_timeout(os.getenv("KEYSHARE_PROMPT_TIMEOUT_S"), 0.0),
        )


@dataclass(frozen=True)
class WSPromptConfig:
    """Config knobs for the WebSocket decision prompt."""

    host: str = "127.0.0.1"
    port: int = 8765
    token: str = ""
    require_auth: bool = True
    handshake_timeout_s: float = 10.0

    @classmethod
    def from_env(cls) -> "WSPromptConfig":
        return cls(
            host=os.getenv("KEYSHARE_WS_HOST", "127.0.0.1"),
            port=int(os.getenv("KEYSHARE_WS_PORT", "8765")),
            token=os.getenv("KEYSHARE_WS_TOKEN", ""),
            require_auth=_is_true(os.getenv("KEYSHARE_WS_REQUIRE_AUTH"), default=True),
        )
