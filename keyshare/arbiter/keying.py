"""Pair key builders."""

from __future__ import annotations

from keyshare.arbiter.contracts import KeyRequest, KeyRequestCancellation


def build_pair_key(user_id: str, device_id: str) -> str:
    """Stable key for one requesting (user, device) pair."""
    return f"{user_id}:{device_id}"


def request_pair_key(request: KeyRequest | KeyRequestCancellation) -> str:
    return build_pair_key(request.user_id, request.device_id)
