"""
Local batch metadata cache.

Holds the id, city list and start time of the batch currently being driven
so an interrupted import can be resumed after a restart. The file is written
when a batch starts and removed only after the batch finishes successfully.
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ..errors import CorruptBatchCache

DEFAULT_CACHE_SUBDIR = "navio_cache"
CACHE_FILENAME = "active_batch.json"


def _normalize_cache_dir(configured_path: str | None, instance_path: str) -> Path:
    if not configured_path:
        return Path(instance_path) / DEFAULT_CACHE_SUBDIR

    candidate = Path(configured_path)
    if candidate.is_absolute():
        return candidate

    return Path(instance_path) / candidate


def resolve_cache_directory(app) -> Path:
    """
    Determine and create (if necessary) the batch cache directory.
    """

    cache_dir = _normalize_cache_dir(app.config.get("NAVIO_CACHE_DIR"), app.instance_path)
    cache_dir.mkdir(parents=True, exist_ok=True)
    return cache_dir


@dataclass
class CachedBatch:
    batch_id: str
    cities: list[str] = field(default_factory=list)
    started_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())
    stage: str = "processing"

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "CachedBatch":
        return cls(
            batch_id=str(payload["batch_id"]),
            cities=[str(name) for name in payload.get("cities") or []],
            started_at=str(payload.get("started_at") or ""),
            stage=str(payload.get("stage") or "processing"),
        )


class BatchCache:
    def __init__(self, directory: Path | str) -> None:
        self.path = Path(directory) / CACHE_FILENAME

    @classmethod
    def for_app(cls, app) -> "BatchCache":
        return cls(resolve_cache_directory(app))

    def load(self) -> CachedBatch | None:
        """
        Return the cached batch, or None when no file exists.

        Raises CorruptBatchCache when the file exists but cannot be parsed;
        the operator must discard it explicitly.
        """
        if not self.path.exists():
            return None
        try:
            return CachedBatch.from_dict(json.loads(self.path.read_text(encoding="utf-8")))
        except (OSError, ValueError, KeyError, TypeError, AttributeError) as exc:
            raise CorruptBatchCache(
                f"Batch cache {self.path} is unreadable: {exc}", path=str(self.path)
            ) from exc

    def save(self, batch: CachedBatch) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        tmp.write_text(json.dumps(asdict(batch), indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(self.path)

    def update_stage(self, stage: str) -> None:
        cached = self.load()
        if cached is not None:
            cached.stage = stage
            self.save(cached)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
