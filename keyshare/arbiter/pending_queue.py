"""Pending key requests grouped by user, then device."""

from __future__ import annotations

from keyshare.arbiter.contracts import KeyRequest


class PendingQueue:
    """user id -> device id -> requests in arrival order.

    Empty device lists and empty user maps are pruned on every removal, so
    the queue is empty exactly when the top-level mapping is.
    """

    def __init__(self) -> None:
        self._by_user: dict[str, dict[str, list[KeyRequest]]] = {}

    def __len__(self) -> int:
        return sum(len(reqs) for devices in self._by_user.values() for reqs in devices.values())

    def __bool__(self) -> bool:
        return bool(self._by_user)

    def add(self, request: KeyRequest) -> bool:
        """Append a request; return False if its id is already queued for the pair."""
        devices = self._by_user.setdefault(request.user_id, {})
        requests = devices.setdefault(request.device_id, [])
        if request in requests:
            return False
        requests.append(request)
        return True

    def remove(self, user_id: str, device_id: str, request_id: str) -> bool:
        """Drop one request by id; return False if it was not queued."""
        requests = self._by_user.get(user_id, {}).get(device_id)
        if not requests:
            return False
        for idx, queued in enumerate(requests):
            if queued.request_id == request_id:
                del requests[idx]
                break
        else:
            return False
        if not requests:
            self._prune(user_id, device_id)
        return True

    def pop_pair(self, user_id: str, device_id: str) -> list[KeyRequest]:
        """Remove and return every request queued for the pair."""
        devices = self._by_user.get(user_id)
        if devices is None:
            return []
        requests = devices.pop(device_id, [])
        if not devices:
            self._by_user.pop(user_id, None)
        return requests

    def requests_for(self, user_id: str, device_id: str) -> list[KeyRequest]:
        return list(self._by_user.get(user_id, {}).get(device_id, []))

    def next_pair(self) -> tuple[str, str] | None:
        """Oldest user entry first, then that user's oldest device entry."""
        for user_id, devices in self._by_user.items():
            for device_id in devices:
                return user_id, device_id
        return None

    def snapshot(self) -> dict[str, dict[str, list[KeyRequest]]]:
        return {
            user_id: {device_id: list(reqs) for device_id, reqs in devices.items()}
            for user_id, devices in self._by_user.items()
        }

    def _prune(self, user_id: str, device_id: str) -> None:
        devices = self._by_user.get(user_id)
        if devices is None:
            return
        if not devices.get(device_id):
            devices.pop(device_id, None)
        if not devices:
            self._by_user.pop(user_id, None)
