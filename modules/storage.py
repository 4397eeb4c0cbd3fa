"""
JSON Collection Stores
======================
Durable collections for rules, variables and history.

Every store is one JSON array on disk with full-collection semantics:
read_all() returns the whole list, replace_all() rewrites it. There is no
partial update; callers read-modify-write.

Files:
    <data_dir>/automations.json
    <data_dir>/variables.json
    <data_dir>/history.json
"""

import asyncio
import json
import logging
import os
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from json_helpers import safe_json_dumps

from .automation_models import HistoryItem

logger = logging.getLogger("storage")

HISTORY_LIMIT = 1000

COMMAND_LABELS = {
    "turnOn": "ON",
    "turnOff": "OFF",
    "lock": "Lock",
    "unlock": "Unlock",
}


class StoreError(Exception):
    """Raised when a collection cannot be read or written."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def timestamp_sort_key(item: Dict[str, Any]):
    """Sort key on the parsed timestamp; unparseable values sort oldest."""
    raw = str(item.get("timestamp") or "")
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return (0, raw)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return (1, parsed.timestamp())


class JsonCollectionStore:
    """A JSON array file with read-all / replace-all access."""

    def __init__(self, path: str):
        self.path = path
        self._lock = asyncio.Lock()

    def _ensure_file(self):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        if not os.path.exists(self.path):
            with open(self.path, "w", encoding="utf-8") as f:
                f.write("[]")

    def _read(self) -> List[Dict[str, Any]]:
        try:
            self._ensure_file()
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError) as e:
            raise StoreError(f"Failed to read {self.path}: {e}") from e
        if not isinstance(data, list):
            raise StoreError(f"{self.path} does not contain a JSON array")
        return data

    def _write(self, items: List[Any]):
        try:
            self._ensure_file()
            payload = safe_json_dumps(items, indent=2)
            tmp = f"{self.path}.tmp"
            with open(tmp, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except (OSError, TypeError, ValueError) as e:
            raise StoreError(f"Failed to write {self.path}: {e}") from e

    async def read_all(self) -> List[Dict[str, Any]]:
        async with self._lock:
            return self._read()

    async def replace_all(self, items: List[Any]):
        async with self._lock:
            self._write(list(items))
        logger.debug(f"Saved {len(items)} item(s) to {self.path}")


class HistoryLog(JsonCollectionStore):
    """Newest-first event log capped at ``limit`` entries."""

    def __init__(self, path: str, limit: int = HISTORY_LIMIT):
        super().__init__(path)
        self.limit = limit

    def _read_tolerant(self) -> List[Dict[str, Any]]:
        try:
            return self._read()
        except StoreError as e:
            logger.warning(f"History unreadable, starting fresh: {e}")
            return []

    async def read_all(self) -> List[Dict[str, Any]]:
        async with self._lock:
            items = self._read_tolerant()
        return sorted(items, key=timestamp_sort_key, reverse=True)

    async def append(self, entry: Union[HistoryItem, Dict[str, Any]]) -> Dict[str, Any]:
        """Prepend an entry, filling id/timestamp when absent, and cap the log."""
        if isinstance(entry, HistoryItem):
            item = entry.model_dump(by_alias=True, exclude_none=True)
        else:
            item = {k: v for k, v in entry.items() if v is not None}
        item["id"] = item.get("id") or str(uuid.uuid4())
        item["timestamp"] = item.get("timestamp") or utc_now_iso()

        async with self._lock:
            history = self._read_tolerant()
            history.insert(0, item)
            del history[self.limit:]
            self._write(history)
        return item

    async def record(self, type_: str, message: str,
                     details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        entry = {"type": type_, "message": message}
        if details:
            entry["details"] = details
        return await self.append(entry)

    async def record_command(self, device_id: str, device_name: Optional[str],
                             command: str, parameter: Optional[str] = None,
                             source: Optional[str] = None) -> Dict[str, Any]:
        """Log a device command sent by the UI or by an automation."""
        label = COMMAND_LABELS.get(command, command)
        details = {
            "deviceId": device_id,
            "deviceName": device_name,
            "command": command,
            "parameter": parameter,
            "source": source,
        }
        return await self.record(
            "device",
            f"{device_name or device_id} : {label} command sent",
            {k: v for k, v in details.items() if v is not None},
        )


class VariableStore(JsonCollectionStore):
    """
    Variable collection. A replace that flips a value logs a "variable"
    history entry tagged with the writer's source (UI / Automation).
    """

    def __init__(self, path: str, history: Optional[HistoryLog] = None):
        super().__init__(path)
        self.history = history

    async def replace_all(self, items: List[Any], source: Optional[str] = None):
        changes = []
        if self.history is not None:
            try:
                old = {v.get("id"): v for v in await self.read_all() if isinstance(v, dict)}
            except StoreError as e:
                logger.error(f"Could not diff variables before write: {e}")
                old = {}
            for new in items:
                prev = old.get(new.get("id"))
                if prev is not None and prev.get("value") != new.get("value"):
                    changes.append((prev, new))

        await super().replace_all(items)

        for prev, new in changes:
            state = "ON" if new.get("value") else "OFF"
            details = {
                "variableId": new.get("id"),
                "oldValue": prev.get("value"),
                "newValue": new.get("value"),
            }
            if source:
                details["source"] = source
            try:
                await self.history.record(
                    "variable", f"Variable \"{new.get('name', new.get('id'))}\" changed to {state}", details)
            except StoreError as e:
                logger.error(f"History write failed for variable {new.get('id')}: {e}")


def build_stores(data_dir: str, history_limit: int = HISTORY_LIMIT):
    """Create (rules, variables, history) stores under data_dir."""
    history = HistoryLog(os.path.join(data_dir, "history.json"), limit=history_limit)
    rules = JsonCollectionStore(os.path.join(data_dir, "automations.json"))
    variables = VariableStore(os.path.join(data_dir, "variables.json"), history=history)
    return rules, variables, history
