"""Persisted convergence state with per-key atomic commits and an exclusive lock."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from ..errors import ConcurrentApplyError, StateStoreError
from ..models import StateEntry

logger = logging.getLogger(__name__)

STATE_VERSION = 1


def utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


class StateStore:
    """JSON-file backed record of what each resource converged to.

    Every commit rewrites the file atomically, so a crash leaves the file
    describing exactly the commits that completed. Commits are serialized by
    an in-process lock because asset uploads record their keys concurrently.
    """

    def __init__(self, path: str | os.PathLike[str]) -> None:
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._mutex = threading.RLock()
        self._data: Optional[Dict[str, Any]] = None

    # Locking -------------------------------------------------------------
    @contextmanager
    def lock(self) -> Iterator["StateStore"]:
        """Hold exclusive access to the state for the duration of the block."""

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            descriptor = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError as exc:
            raise ConcurrentApplyError(
                f"State {self.path} is locked by another apply ({self._describe_lock()}); "
                "run 'site-converge unlock' if that apply is no longer running"
            ) from exc

        with os.fdopen(descriptor, "w", encoding="utf-8") as handle:
            json.dump({"pid": os.getpid(), "acquired_at": utc_timestamp()}, handle)

        self._data = None
        try:
            yield self
        finally:
            self.lock_path.unlink(missing_ok=True)

    @property
    def is_locked(self) -> bool:
        return self.lock_path.exists()

    def force_unlock(self) -> bool:
        """Remove a lock left behind by a crashed apply. Returns ``True`` if one existed."""

        if not self.lock_path.exists():
            return False
        logger.warning("Removing state lock %s (%s)", self.lock_path, self._describe_lock())
        self.lock_path.unlink(missing_ok=True)
        return True

    def _describe_lock(self) -> str:
        try:
            info = json.loads(self.lock_path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError):
            return "owner unknown"
        return f"pid {info.get('pid', '?')} since {info.get('acquired_at', '?')}"

    # Resource entries ----------------------------------------------------
    def get(self, resource_id: str) -> Optional[StateEntry]:
        with self._mutex:
            payload = self._load()["resources"].get(resource_id)
            return StateEntry.from_dict(payload) if payload else None

    def entries(self) -> List[StateEntry]:
        with self._mutex:
            return [StateEntry.from_dict(item) for item in self._load()["resources"].values()]

    def commit(self, entry: StateEntry) -> StateEntry:
        """Persist ``entry`` as the converged state of its resource.

        Any in-flight checkpoint of the resource is dropped in the same write.
        """

        with self._mutex:
            data = self._load()
            data["resources"][entry.resource_id] = entry.to_dict()
            data["checkpoints"].pop(entry.resource_id, None)
            self._write(data)
        logger.debug("Committed state for %s (%s)", entry.resource_id, entry.remote_identifier)
        return entry

    def remove(self, resource_id: str) -> None:
        with self._mutex:
            data = self._load()
            data["resources"].pop(resource_id, None)
            data["assets"].pop(resource_id, None)
            data["checkpoints"].pop(resource_id, None)
            self._write(data)
        logger.debug("Removed state for %s", resource_id)

    # Asset manifests -----------------------------------------------------
    def manifest(self, resource_id: str) -> Dict[str, str]:
        """Return the ``remote_key -> content_hash`` manifest of an asset node."""

        with self._mutex:
            return dict(self._load()["assets"].get(resource_id, {}))

    def record_asset(self, resource_id: str, remote_key: str, content_hash: str) -> None:
        with self._mutex:
            data = self._load()
            data["assets"].setdefault(resource_id, {})[remote_key] = content_hash
            self._write(data)

    def forget_asset(self, resource_id: str, remote_key: str) -> None:
        with self._mutex:
            data = self._load()
            data["assets"].get(resource_id, {}).pop(remote_key, None)
            self._write(data)

    # Checkpoints ---------------------------------------------------------
    def checkpoint(self, resource_id: str) -> Optional[Dict[str, Any]]:
        with self._mutex:
            payload = self._load()["checkpoints"].get(resource_id)
            return dict(payload) if payload else None

    def checkpoints(self) -> Dict[str, Dict[str, Any]]:
        with self._mutex:
            return {key: dict(value) for key, value in self._load()["checkpoints"].items()}

    def save_checkpoint(self, resource_id: str, payload: Dict[str, Any]) -> None:
        with self._mutex:
            data = self._load()
            data["checkpoints"][resource_id] = payload
            self._write(data)

    def clear_checkpoint(self, resource_id: str) -> None:
        with self._mutex:
            data = self._load()
            if data["checkpoints"].pop(resource_id, None) is not None:
                self._write(data)

    # Persistence ---------------------------------------------------------
    def _load(self) -> Dict[str, Any]:
        if self._data is not None:
            return self._data

        if not self.path.exists():
            data: Dict[str, Any] = {}
        else:
            try:
                data = json.loads(self.path.read_text(encoding="utf-8") or "{}")
            except json.JSONDecodeError as exc:
                raise StateStoreError(f"State file {self.path} is not valid JSON") from exc
            except OSError as exc:  # pragma: no cover - filesystem errors surfaced to caller
                raise StateStoreError(f"Failed to read state file {self.path}") from exc
            if not isinstance(data, dict):
                raise StateStoreError(f"State file {self.path} must contain an object")
            if data.get("version", STATE_VERSION) != STATE_VERSION:
                raise StateStoreError(
                    f"State file {self.path} has unsupported version {data.get('version')}"
                )

        data["version"] = STATE_VERSION
        for section in ("resources", "assets", "checkpoints"):
            data.setdefault(section, {})
        self._data = data
        return data

    def _write(self, data: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        try:
            with tempfile.NamedTemporaryFile(
                "w",
                encoding="utf-8",
                dir=self.path.parent,
                prefix=f".{self.path.name}.",
                suffix=".tmp",
                delete=False,
            ) as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
                temp_path = handle.name
            os.replace(temp_path, self.path)
        except OSError as exc:
            raise StateStoreError(f"Failed to write state file {self.path}") from exc
