"""Asset models produced by scanning a local asset tree."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


@dataclass(frozen=True, slots=True)
class AssetRecord:
    """A local file together with its content hash and remote key."""

    relative_path: str
    content_hash: str
    content_type: str
    remote_key: str
    source: Path


@dataclass(frozen=True, slots=True)
class UploadAction:
    """A single upload required to bring a remote key up to date."""

    record: AssetRecord
    previous_hash: Optional[str] = None

    @property
    def is_new(self) -> bool:
        return self.previous_hash is None


@dataclass(slots=True)
class UploadPlan:
    """Result of diffing a scanned asset tree against the remote manifest."""

    actions: List[UploadAction] = field(default_factory=list)
    unchanged: List[AssetRecord] = field(default_factory=list)

    @property
    def records(self) -> List[AssetRecord]:
        return sorted(
            [action.record for action in self.actions] + list(self.unchanged),
            key=lambda record: record.remote_key,
        )

    @property
    def digest(self) -> str:
        """Digest over every ``(remote_key, content_hash)`` pair in the tree."""

        hasher = hashlib.sha256()
        for record in self.records:
            hasher.update(f"{record.remote_key}\0{record.content_hash}\n".encode("utf-8"))
        return hasher.hexdigest()
