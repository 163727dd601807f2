"""
Cache Service
=============
Persistent job cache for pipelines in a terminal status.

Cacheable (immutable once finished):
    - Job executions of pipelines whose status is success or failed

NOT Cacheable (may still change):
    - Running or canceled pipelines
    - Anything whose status differs from the live list-phase status

Storage:
    - One JSON file per project:
      <cache root>/cilens/gitlab/<group-project>.json
    - Value per pipeline id: {"status": ..., "jobs": [...]}
    - Loaded fully into memory on load(); resident for the run
    - Flushed through a temp file + os.replace, never left truncated
    - A failed write is logged and the cache stays memory-only for the run

Invalidation:
    - Cached status must equal the live status, otherwise the entry is evicted
    - Unparseable file → empty cache; unparseable entry → dropped
    - clear_project_cache() deletes the file before a run

Concurrency:
    - store() is the only write path for concurrent fetch tasks; it holds an
      asyncio.Lock across the in-memory put and the disk flush
"""
import asyncio
import json
import logging
import os
import sys
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Union

from pydantic import ValidationError

from cilens.core.exceptions import CacheCorruptionError
from cilens.models.pipeline import CacheEntry, JobExecution

logger = logging.getLogger(__name__)


def default_cache_root() -> Path:
    """Platform-conventional user cache directory."""
    override = os.getenv("CILENS_CACHE_DIR")
    if override:
        return Path(override)
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches"
    if sys.platform.startswith("win"):
        return Path(os.getenv("LOCALAPPDATA", Path.home() / "AppData" / "Local"))
    return Path(os.getenv("XDG_CACHE_HOME", Path.home() / ".cache"))


def cache_file_for(project_path: str, cache_dir: Optional[Union[str, Path]] = None) -> Path:
    """Cache file for a project ("group/project" → group-project.json)."""
    root = Path(cache_dir) if cache_dir else default_cache_root()
    return root / "cilens" / "gitlab" / (project_path.replace("/", "-") + ".json")


def _parse_entry(pipeline_id: str, raw: object) -> CacheEntry:
    if not isinstance(raw, dict):
        raise CacheCorruptionError(f"entry for {pipeline_id} is not an object")
    try:
        entry = CacheEntry(pipeline_id=pipeline_id, **raw)
    except (ValidationError, TypeError) as e:
        raise CacheCorruptionError(f"entry for {pipeline_id} is invalid: {e}") from e
    if not entry.is_valid:
        raise CacheCorruptionError(
            f"entry for {pipeline_id} has non-terminal status {entry.status}"
        )
    return entry


class JobCache:
    """
    Per-project cache of job executions keyed by pipeline id.

    Usage:
        with JobCache("group/project") as cache:
            jobs = cache.lookup(pipeline_id, live_status)
            if jobs is None:
                ...
                await cache.store(CacheEntry(...))
    """

    def __init__(
        self,
        project_path: str,
        enabled: bool = True,
        cache_dir: Optional[Union[str, Path]] = None,
        cache_file: Optional[Path] = None,
    ) -> None:
        self.project_path = project_path
        self.enabled = enabled
        # cache_file=None with enabled=True means memory-only backing
        if cache_file is None and enabled and project_path:
            cache_file = cache_file_for(project_path, cache_dir)
        self.cache_file = cache_file
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = asyncio.Lock()
        self._dirty = False

    @classmethod
    def in_memory(cls) -> "JobCache":
        """Cache with no backing file (flush is a no-op)."""
        return cls(project_path="", enabled=True)

    @classmethod
    def disabled(cls) -> "JobCache":
        return cls(project_path="", enabled=False)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def __enter__(self) -> "JobCache":
        self.load()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.flush()

    def load(self) -> int:
        """
        Read the backing file into memory.

        Returns
        -------
        int
            Number of valid entries loaded. Corrupt files and entries are
            discarded with a warning.
        """
        self._entries.clear()
        if not self.enabled or self.cache_file is None or not self.cache_file.exists():
            return 0

        try:
            raw = json.loads(self.cache_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Failed to load cache %s (%s), starting empty", self.cache_file, e)
            return 0

        if not isinstance(raw, dict):
            logger.warning("Cache %s is not a JSON object, starting empty", self.cache_file)
            return 0

        dropped = 0
        for pipeline_id, value in raw.items():
            try:
                self._entries[pipeline_id] = _parse_entry(pipeline_id, value)
            except CacheCorruptionError as e:
                dropped += 1
                logger.debug("Dropping cache entry: %s", e)

        if dropped:
            logger.warning("Dropped %d unusable cache entries from %s", dropped, self.cache_file)
            self._dirty = True
        logger.info("Loaded %d cached pipelines from %s", len(self._entries), self.cache_file)
        return len(self._entries)

    def flush(self) -> bool:
        """
        Write the in-memory entries to disk atomically.

        Returns
        -------
        bool
            False if the file could not be written. The cache then stays
            memory-only for the rest of the run.
        """
        if not self.enabled or self.cache_file is None or not self._dirty:
            return True

        data = {
            pipeline_id: entry.model_dump(mode="json", exclude={"pipeline_id"})
            for pipeline_id, entry in self._entries.items()
        }
        try:
            self._write_atomic(data)
        except OSError as e:
            logger.warning(
                "Failed to write cache %s (%s), keeping entries in memory only",
                self.cache_file, e,
            )
            self.cache_file = None
            return False
        self._dirty = False
        logger.debug("Saved %d pipelines to cache %s", len(data), self.cache_file)
        return True

    def _write_atomic(self, data: Dict[str, dict]) -> None:
        self.cache_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(
            dir=self.cache_file.parent, prefix=self.cache_file.name, suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
            os.replace(tmp_path, self.cache_file)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, pipeline_id: str) -> Optional[CacheEntry]:
        if not self.enabled:
            return None
        return self._entries.get(pipeline_id)

    def lookup(self, pipeline_id: str, live_status: str) -> Optional[List[JobExecution]]:
        """
        Return cached jobs only if the cached status equals ``live_status``.

        A status mismatch evicts the stale entry so the refetched data can
        replace it.
        """
        entry = self.get(pipeline_id)
        if entry is None:
            return None
        if entry.status != live_status:
            logger.debug(
                "Stale cache entry for %s (cached %s, live %s)",
                pipeline_id, entry.status, live_status,
            )
            self.invalidate(pipeline_id)
            return None
        logger.debug("Cache hit for pipeline %s", pipeline_id)
        return list(entry.jobs)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def put(self, entry: CacheEntry) -> bool:
        """Store an entry in memory. Non-terminal entries are ignored."""
        if not self.enabled:
            return False
        if not entry.is_valid:
            logger.debug("Not caching pipeline %s with status %s", entry.pipeline_id, entry.status)
            return False
        self._entries[entry.pipeline_id] = entry
        self._dirty = True
        return True

    async def store(self, entry: CacheEntry) -> bool:
        """Write-through put, serialized across concurrent fetch tasks."""
        async with self._lock:
            stored = self.put(entry)
            if stored:
                await asyncio.to_thread(self.flush)
            return stored

    def invalidate(self, pipeline_id: str) -> None:
        if self._entries.pop(pipeline_id, None) is not None:
            self._dirty = True

    def clear(self) -> None:
        """Drop every entry and delete the backing file."""
        self._entries.clear()
        self._dirty = False
        if self.cache_file is not None and self.cache_file.exists():
            self.cache_file.unlink()
            logger.info("Cache cleared: %s", self.cache_file)

    @staticmethod
    def clear_project_cache(project_path: str, cache_dir: Optional[Union[str, Path]] = None) -> bool:
        """
        Delete a project's cache file.

        Returns
        -------
        bool
            True if a file was removed.
        """
        cache_file = cache_file_for(project_path, cache_dir)
        if cache_file.exists():
            try:
                cache_file.unlink()
            except OSError as e:
                logger.warning("Failed to clear cache %s: %s", cache_file, e)
                return False
            logger.info("Cache cleared: %s", cache_file)
            return True
        logger.info("No cache file found for project: %s", project_path)
        return False

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, pipeline_id: str) -> bool:
        return pipeline_id in self._entries
