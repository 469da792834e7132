"""Key-request arbitration: one device decision at a time."""

from keyshare.arbiter.arbitrator import KeyRequestArbitrator
from keyshare.arbiter.config import ArbiterConfig, WSPromptConfig
from keyshare.arbiter.contracts import (
    ArbiterState,
    Decision,
    DecisionPrompt,
    DeviceDirectory,
    DeviceInfo,
    KeyRequest,
    KeyRequestCancellation,
    PromptRequest,
)
from keyshare.arbiter.errors import (
    DirectoryLookupError,
    EffectError,
    InvalidRequestError,
    KeyShareError,
)
from keyshare.arbiter.keying import build_pair_key
from keyshare.arbiter.pending_queue import PendingQueue

__all__ = [
    "ArbiterConfig",
    "ArbiterState",
    "Decision",
    "DecisionPrompt",
    "DeviceDirectory",
    "DeviceInfo",
    "DirectoryLookupError",
    "EffectError",
    "InvalidRequestError",
    "KeyRequest",
    "KeyRequestArbitrator",
    "KeyRequestCancellation",
    "KeyShareError",
    "PendingQueue",
    "PromptRequest",
    "WSPromptConfig",
    "build_pair_key",
]
