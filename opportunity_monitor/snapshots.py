from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
import time
import uuid
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple

from .config import SnapshotConfig
from .models import CandidateOpportunity, DataSnapshot, MarketAnalysis, MarketSnapshot

log = logging.getLogger("snapshots")

SUFFIX = ".json"


class SnapshotStoreError(RuntimeError):
    """Raised when a snapshot record cannot be written."""


@dataclass(frozen=True)
class SnapshotStats:
    count: int
    total_bytes: int
    oldest_ms: Optional[int]
    newest_ms: Optional[int]


def _valid_id(snapshot_id: str) -> bool:
    if not snapshot_id or not isinstance(snapshot_id, str):
        return False
    return os.path.basename(snapshot_id) == snapshot_id and snapshot_id not in (".", "..")


class SnapshotStore:
    """One JSON document per snapshot id in a flat directory.

    Writes go through a temporary file and ``os.replace`` so a reader or a
    sweep never observes a partially written record. All blocking file access
    is pushed to worker threads.
    """

    def __init__(self, cfg: Optional[SnapshotConfig] = None):
        cfg = cfg or SnapshotConfig()
        self.directory = cfg.directory
        self.max_count = int(cfg.max_count)
        self.retention_ms = int(cfg.retention_hours * 3600 * 1000)
        self._tasks: Set[asyncio.Task] = set()

    def _path(self, snapshot_id: str) -> str:
        return os.path.join(self.directory, snapshot_id + SUFFIX)

    async def save(
        self,
        opportunity: CandidateOpportunity,
        market: MarketSnapshot,
        analysis: Optional[MarketAnalysis] = None,
    ) -> str:
        now_ms = int(time.time() * 1000)
        snap = DataSnapshot(
            id=str(uuid.uuid4()),
            created_at_ms=now_ms,
            symbol=opportunity.symbol,
            market=market,
            analysis=analysis.to_dict() if analysis is not None else None,
            opportunities=(opportunity,),
            expires_at_ms=now_ms + self.retention_ms,
        )
        try:
            await asyncio.to_thread(self._write, snap)
        except (OSError, TypeError, ValueError) as e:
            raise SnapshotStoreError(f"snapshot write failed id={snap.id}: {e}") from e

        log.debug("snapshot_saved id=%s symbol=%s", snap.id, snap.symbol)
        self._spawn_cleanup()
        return snap.id

    def _write(self, snap: DataSnapshot) -> None:
        os.makedirs(self.directory, exist_ok=True)
        payload = json.dumps(snap.to_dict(), separators=(",", ":"))
        fd, tmp = tempfile.mkstemp(prefix=".tmp-", suffix=SUFFIX, dir=self.directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self._path(snap.id))
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def _spawn_cleanup(self) -> None:
        task = asyncio.create_task(self.cleanup_by_count())
        self._tasks.add(task)
        task.add_done_callback(self._cleanup_done)

    def _cleanup_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        err = task.exception()
        if err is not None:
            log.warning("snapshot_cleanup_failed err=%s", err)

    async def wait_background(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def get(self, snapshot_id: str) -> Optional[DataSnapshot]:
        if not _valid_id(snapshot_id):
            return None
        return await asyncio.to_thread(self._read, self._path(snapshot_id))

    def _read(self, path: str) -> Optional[DataSnapshot]:
        try:
            with open(path, "r", encoding="utf-8") as f:
                raw = json.load(f)
            return DataSnapshot.from_dict(raw)
        except FileNotFoundError:
            return None
        except (OSError, ValueError, KeyError, TypeError) as e:
            log.warning("snapshot_unreadable path=%s err=%s", path, e)
            return None

    def _entries(self) -> List[Tuple[str, float, int]]:
        """(path, mtime, size) of every record, newest first."""
        try:
            names = os.listdir(self.directory)
        except FileNotFoundError:
            return []
        out = []
        for name in names:
            if not name.endswith(SUFFIX) or name.startswith(".tmp-"):
                continue
            path = os.path.join(self.directory, name)
            try:
                st = os.stat(path)
            except FileNotFoundError:
                continue
            out.append((path, st.st_mtime, st.st_size))
        # equal mtimes fall back to the path so listing and eviction are stable
        out.sort(key=lambda e: (e[1], e[0]), reverse=True)
        return out

    async def list(self, limit: int = 10) -> List[DataSnapshot]:
        limit = max(0, int(limit))
        if limit == 0:
            return []

        def _load() -> List[DataSnapshot]:
            out: List[DataSnapshot] = []
            for path, _, _ in self._entries():
                snap = self._read(path)
                if snap is None:
                    continue
                out.append(snap)
                if len(out) >= limit:
                    break
            return out

        return await asyncio.to_thread(_load)

    async def stats(self) -> SnapshotStats:
        entries = await asyncio.to_thread(self._entries)
        if not entries:
            return SnapshotStats(count=0, total_bytes=0, oldest_ms=None, newest_ms=None)
        return SnapshotStats(
            count=len(entries),
            total_bytes=sum(e[2] for e in entries),
            oldest_ms=int(entries[-1][1] * 1000),
            newest_ms=int(entries[0][1] * 1000),
        )

    @staticmethod
    def _remove(paths: List[str]) -> int:
        removed = 0
        for path in paths:
            try:
                os.unlink(path)
                removed += 1
            except FileNotFoundError:
                continue
        return removed

    async def cleanup_by_count(self) -> int:
        def _run() -> int:
            stale = [e[0] for e in self._entries()[self.max_count:]]
            return self._remove(stale)

        removed = await asyncio.to_thread(_run)
        if removed:
            log.info("snapshot_cleanup_count removed=%d keep=%d", removed, self.max_count)
        return removed

    async def cleanup_expired(self, now_ms: Optional[int] = None) -> int:
        now_s = (now_ms if now_ms is not None else int(time.time() * 1000)) / 1000.0
        cutoff = now_s - self.retention_ms / 1000.0

        def _run() -> int:
            stale = [e[0] for e in self._entries() if e[1] < cutoff]
            return self._remove(stale)

        removed = await asyncio.to_thread(_run)
        if removed:
            log.info("snapshot_cleanup_expired removed=%d", removed)
        return removed
