from __future__ import annotations

import json
import logging
import os
import re
import tempfile
from abc import ABC, abstractmethod
from copy import deepcopy
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from .config import get_bridge_runtime_settings

logger = logging.getLogger(__name__)

SnapshotListener = Callable[[str, Dict[str, Any]], Any]

_SAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def _safe_name(name: str) -> str:
    normalized = _SAFE_NAME_RE.sub("_", (name or "").strip())
    return normalized.strip("._") or "app"


class SnapshotStore(ABC):
    """
    Keyed widget state that survives a reload, partitioned by app id.

    Writes are last-write-wins overwrites; listeners subscribed to an app id
    are told about every save of that key.
    """

    def __init__(self) -> None:
        self._listeners: Dict[str, List[SnapshotListener]] = {}

    @abstractmethod
    def _read(self, app_id: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def _write(self, app_id: str, state: Dict[str, Any]) -> None:
        ...

    @abstractmethod
    def _remove(self, app_id: str) -> bool:
        ...

    def save(self, app_id: str, state: Dict[str, Any]) -> None:
        if not isinstance(state, dict):
            raise TypeError(f"Snapshot for {app_id} must be a dict, got {type(state).__name__}")
        snapshot = deepcopy(state)
        self._write(app_id, snapshot)
        logger.debug("Saved snapshot for %s (%d keys)", app_id, len(snapshot))
        self._publish(app_id, snapshot)

    def load(self, app_id: str) -> Optional[Dict[str, Any]]:
        """Stored state of ``app_id``, or None when nothing was ever saved."""
        snapshot = self._read(app_id)
        return deepcopy(snapshot) if snapshot is not None else None

    def delete(self, app_id: str) -> bool:
        return self._remove(app_id)

    def subscribe(self, app_id: str, listener: SnapshotListener) -> Callable[[], None]:
        self._listeners.setdefault(app_id, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(app_id)
            if listeners and listener in listeners:
                listeners.remove(listener)
                if not listeners:
                    self._listeners.pop(app_id, None)

        return unsubscribe

    def _publish(self, app_id: str, snapshot: Dict[str, Any]) -> None:
        for listener in list(self._listeners.get(app_id, ())):
            try:
                listener(app_id, deepcopy(snapshot))
            except Exception:
                logger.exception("Snapshot listener for %s failed", app_id)


class MemorySnapshotStore(SnapshotStore):
    def __init__(self) -> None:
        super().__init__()
        self._snapshots: Dict[str, Dict[str, Any]] = {}

    def _read(self, app_id: str) -> Optional[Dict[str, Any]]:
        return self._snapshots.get(app_id)

    def _write(self, app_id: str, state: Dict[str, Any]) -> None:
        self._snapshots[app_id] = state

    def _remove(self, app_id: str) -> bool:
        return self._snapshots.pop(app_id, None) is not None

    def __len__(self) -> int:
        return len(self._snapshots)


class FileSnapshotStore(SnapshotStore):
    """One JSON file per app id under ``base_dir``, replaced atomically on save."""

    def __init__(self, base_dir: os.PathLike | str) -> None:
        super().__init__()
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)

    def path_for(self, app_id: str) -> Path:
        return self.base_dir / f"{_safe_name(app_id)}.json"

    def _read(self, app_id: str) -> Optional[Dict[str, Any]]:
        path = self.path_for(app_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Unreadable snapshot %s: %s", path, exc)
            return None
        if not isinstance(data, dict) or data.get("app_id") != app_id:
            # sanitized file names may collide; the stored key decides
            return None
        state = data.get("state")
        return state if isinstance(state, dict) else None

    def _write(self, app_id: str, state: Dict[str, Any]) -> None:
        path = self.path_for(app_id)
        fd, tmp_name = tempfile.mkstemp(prefix=".snapshot-", suffix=".json", dir=str(self.base_dir))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump({"app_id": app_id, "state": state}, handle, ensure_ascii=False)
            os.replace(tmp_name, path)
        except BaseException:
            try:
                os.unlink(tmp_name)
            except OSError:
                pass
            raise

    def _remove(self, app_id: str) -> bool:
        path = self.path_for(app_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        return True


_SNAPSHOT_STORE: Optional[SnapshotStore] = None


def build_snapshot_store() -> SnapshotStore:
    settings = get_bridge_runtime_settings()
    if settings.persistence_backend == "file":
        return FileSnapshotStore(settings.persistence_dir)
    return MemorySnapshotStore()


def get_snapshot_store() -> SnapshotStore:
    """Process-wide store, built from the runtime settings on first use."""
    global _SNAPSHOT_STORE
    if _SNAPSHOT_STORE is None:
        _SNAPSHOT_STORE = build_snapshot_store()
    return _SNAPSHOT_STORE


def set_snapshot_store(store: Optional[SnapshotStore]) -> None:
    global _SNAPSHOT_STORE
    _SNAPSHOT_STORE = store
