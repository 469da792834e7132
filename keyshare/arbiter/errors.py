"""Error types raised and absorbed inside the key-request arbiter."""


class KeyShareError(RuntimeError):
    """Base class for arbiter errors."""


class InvalidRequestError(KeyShareError, ValueError):
    """Raised when a request or cancellation is missing an identifier."""


class DirectoryLookupError(KeyShareError):
    """Raised when device resolution or verification marking fails."""

    def __init__(self, user_id: str, device_id: str, reason: str):
        super().__init__(f"Device lookup failed for {user_id}:{device_id}: {reason}")
        self.user_id = user_id
        self.device_id = device_id
        self.reason = reason


class EffectError(KeyShareError):
    """Raised when a request's share or ignore effect fails."""
