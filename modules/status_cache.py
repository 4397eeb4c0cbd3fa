"""
Device status cache: latest snapshot plus the one before it, per device.

The previous snapshot exists only for change detection; this is not a
history.
"""

from typing import Any, Dict, Iterator, Optional, Tuple

Snapshot = Dict[str, Any]


class StatusCache:

    def __init__(self):
        self._current: Dict[str, Snapshot] = {}
        self._previous: Dict[str, Snapshot] = {}

    def update(self, device_id: str, snapshot: Snapshot):
        """Store a fresh snapshot, shifting the old one to previous."""
        old = self._current.get(device_id)
        if old is not None:
            self._previous[device_id] = old
        self._current[device_id] = dict(snapshot)

    def get(self, device_id: Optional[str]) -> Optional[Snapshot]:
        if not device_id:
            return None
        return self._current.get(device_id)

    def pair(self, device_id: str) -> Tuple[Optional[Snapshot], Optional[Snapshot]]:
        """(previous, current) for a device."""
        return self._previous.get(device_id), self._current.get(device_id)

    def forget(self, device_id: str):
        self._current.pop(device_id, None)
        self._previous.pop(device_id, None)

    def __contains__(self, device_id: str) -> bool:
        return device_id in self._current

    def __iter__(self) -> Iterator[str]:
        return iter(self._current)

    def __len__(self) -> int:
        return len(self._current)
