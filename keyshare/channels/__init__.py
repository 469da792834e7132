"""Decision prompt channels."""

from keyshare.channels.ws_prompt import WSDecisionPrompt

__all__ = ["WSDecisionPrompt"]
