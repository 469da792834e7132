"""Bootstrap helpers for the key-request arbiter."""

from __future__ import annotations

from keyshare.arbiter.arbitrator import KeyRequestArbitrator
from keyshare.arbiter.config import ArbiterConfig, WSPromptConfig
from keyshare.arbiter.contracts import DecisionPrompt, DeviceDirectory
from keyshare.channels.ws_prompt import WSDecisionPrompt


def build_arbitrator_if_enabled(
    *,
    directory: DeviceDirectory,
    prompt: DecisionPrompt,
    config: ArbiterConfig | None = None,
) -> KeyRequestArbitrator | None:
    """Build the host's arbitrator when key share prompts are enabled."""
    cfg = config or ArbiterConfig.from_env()
    if not cfg.enabled:
        return None
    return KeyRequestArbitrator(directory=directory, prompt=prompt, config=cfg)


def build_ws_arbitrator(
    *,
    directory: DeviceDirectory,
    config: ArbiterConfig | None = None,
    ws_config: WSPromptConfig | None = None,
) -> tuple[KeyRequestArbitrator, WSDecisionPrompt] | None:
    """Build an arbitrator whose prompts go to WebSocket operator clients.

    The prompt's ready hook restarts advancement for requests that queued
    up while no client was connected.
    """
    prompt = WSDecisionPrompt(ws_config or WSPromptConfig.from_env())
    arbitrator = build_arbitrator_if_enabled(directory=directory, prompt=prompt, config=config)
    if arbitrator is None:
        return None
    prompt.on_ready = arbitrator.advance
    return arbitrator, prompt
