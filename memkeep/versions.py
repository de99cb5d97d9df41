"""Version store: durable, append-only history for every memory."""

import json
import logging
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

from pydantic import ValidationError as PydanticValidationError

from .exceptions import NotFoundError, StorageError
from .locking import ReadWriteLock
from .models import ExportData, MemoryVersion, MemoryWithHistory, normalize_tag, normalize_tags, utcnow
from .storage import quarantine, read_json, write_json_atomic

logger = logging.getLogger(__name__)

VERSIONS_FILENAME = "memory_versions.json"
DEFAULT_RESTORE_REASON = "Manual restoration"

T = TypeVar("T")

HistoryMap = Dict[str, MemoryWithHistory]


def append_version(
    histories: HistoryMap,
    memory_id: str,
    content: str,
    author_id: str,
    change_note: str = "",
    context: str = "",
    tags: Optional[Iterable[str]] = None,
) -> MemoryVersion:
    """Append a version to ``histories[memory_id]``, creating the record if needed.

    Operates on the given map in place; callers hand in a staged copy.
    Tags replace the record's current tags wholesale.
    """
    now = utcnow()
    history = histories.get(memory_id)
    if history is None:
        history = MemoryWithHistory(id=memory_id, current_version=0, context=context, created_at=now, updated_at=now)
        logger.debug("Creating new version history for memory %r", memory_id)

    # Keep created_at non-decreasing even if the wall clock steps back
    if history.versions and history.versions[-1].created_at > now:
        now = history.versions[-1].created_at

    version = MemoryVersion(
        version_number=len(history.versions) + 1,
        content=content,
        created_at=now,
        created_by=author_id,
        change_note=change_note,
    )
    history.versions.append(version)
    history.current_version = version.version_number
    history.updated_at = max(now, history.updated_at)
    history.context = context
    history.tags = normalize_tags(tags)

    histories[memory_id] = history
    return version


def union_tags(history: MemoryWithHistory, tags: Iterable[str]) -> None:
    history.tags = normalize_tags([*history.tags, *tags])
    history.updated_at = max(utcnow(), history.updated_at)


def subtract_tags(history: MemoryWithHistory, tags: Iterable[str]) -> None:
    removed = {normalize_tag(t) for t in tags}
    history.tags = [t for t in history.tags if t not in removed]
    history.updated_at = max(utcnow(), history.updated_at)


class VersionStore:
    """JSON-backed version history keyed by memory ID.

    Every mutation is applied to a staged copy of the map, written to disk
    atomically, and only then swapped in. A failed write raises
    ``StorageError`` and leaves the in-memory state untouched.

    A single readers-writer lock guards the whole map: reads share it,
    mutations are exclusive.
    """

    def __init__(self, dir_path: Path, filename: str = VERSIONS_FILENAME):
        self.dir_path = Path(dir_path)
        self.file_path = self.dir_path / filename
        self._lock = ReadWriteLock()
        self._histories: HistoryMap = {}

        try:
            self.dir_path.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"Failed to create version directory {self.dir_path}: {e}") from e

        self._load()

    # -- Persistence ---------------------------------------------------------

    def _load(self) -> None:
        try:
            raw = read_json(self.file_path)
            if raw is None:
                return
            self._histories = {memory_id: MemoryWithHistory.model_validate(data) for memory_id, data in raw.items()}
        except (json.JSONDecodeError, UnicodeDecodeError, PydanticValidationError, AttributeError) as e:
            self._histories = {}
            moved_to = quarantine(self.file_path)
            logger.warning(
                "Version history at %s is unreadable (%s). Moved it to %s and starting fresh.",
                self.file_path,
                e,
                moved_to,
            )
            return

        logger.info("Loaded %d versioned memories from %s", len(self._histories), self.file_path)

    def _save(self, histories: HistoryMap) -> None:
        data = {memory_id: history.model_dump(mode="json") for memory_id, history in histories.items()}
        write_json_atomic(self.file_path, data)
        logger.debug("Persisted %d versioned memories to disk", len(histories))

    def _stage(self) -> HistoryMap:
        return {memory_id: history.model_copy(deep=True) for memory_id, history in self._histories.items()}

    def apply(self, mutate: Callable[[HistoryMap], T]) -> T:
        """Run ``mutate`` on a staged copy under the write lock, then commit it.

        The staged map is saved once; on success it replaces the live map and
        ``mutate``'s return value is passed through. Exceptions raised by
        ``mutate`` discard the staged copy without saving.

        Raises:
            StorageError: If the save fails; nothing is applied
        """
        with self._lock.write_locked():
            staged = self._stage()
            result = mutate(staged)
            self._save(staged)
            self._histories = staged
            return result

    def close(self) -> None:
        """Flush the current state to disk."""
        with self._lock.write_locked():
            self._save(self._histories)

    # -- Write ---------------------------------------------------------------

    def add_version(
        self,
        memory_id: str,
        content: str,
        author_id: str,
        change_note: str = "",
        context: str = "",
        tags: Optional[Iterable[str]] = None,
    ) -> MemoryVersion:
        """Append a new version to a memory's history.

        Creates the record on first use. ``context`` and ``tags`` overwrite the
        record's current values; tags are not merged with the previous set.

        Returns:
            The appended version

        Raises:
            StorageError: If the history can't be persisted
        """
        _, version = self.add_version_with_previous(memory_id, content, author_id, change_note, context, tags)
        return version

    def add_version_with_previous(
        self,
        memory_id: str,
        content: str,
        author_id: str,
        change_note: str = "",
        context: str = "",
        tags: Optional[Iterable[str]] = None,
    ) -> Tuple[Optional[MemoryWithHistory], MemoryVersion]:
        """Like ``add_version``, but also return the record as it was before the append.

        The previous state is read under the same write lock as the append, so
        callers keeping derived counts see exactly the state they replaced.
        The first element is None when the memory was new.
        """
        tag_list = list(tags or [])

        def append(staged: HistoryMap) -> Tuple[Optional[MemoryWithHistory], MemoryVersion]:
            previous = staged.get(memory_id)
            if previous is not None:
                previous = previous.model_copy(deep=True)
            version = append_version(staged, memory_id, content, author_id, change_note, context, tag_list)
            return previous, version

        previous, version = self.apply(append)
        logger.info("Added version %d to memory %r (client: %s)", version.version_number, memory_id, author_id)
        return previous, version

    def restore_version(
        self,
        memory_id: str,
        version_number: int,
        author_id: str,
        reason: str = "",
    ) -> MemoryVersion:
        """Append a new version carrying the content of an earlier one.

        History is never rewritten; the restored content becomes the newest
        version. Context and tags stay as they are.

        Raises:
            NotFoundError: If the memory or version doesn't exist
        """
        note = f"Restored from version {version_number}: {reason or DEFAULT_RESTORE_REASON}"

        def restore(staged: HistoryMap) -> MemoryVersion:
            history = self._require(staged, memory_id)
            old = self._require_version(history, version_number)
            return append_version(staged, memory_id, old.content, author_id, note, history.context, history.tags)

        version = self.apply(restore)
        logger.info("Restored memory %r to version %d as version %d", memory_id, version_number, version.version_number)
        return version

    def delete_memory_history(self, memory_id: str) -> MemoryWithHistory:
        """Remove a memory and all of its versions.

        Returns:
            The removed record

        Raises:
            NotFoundError: If the memory doesn't exist
        """

        def delete(staged: HistoryMap) -> MemoryWithHistory:
            self._require(staged, memory_id)
            return staged.pop(memory_id)

        removed = self.apply(delete)
        logger.info("Deleted history for memory %r", memory_id)
        return removed

    def add_tags(self, memory_id: str, tags: Iterable[str]) -> List[str]:
        """Union ``tags`` into a memory's tag set. Returns the resulting tags."""
        tag_list = list(tags)

        def add(staged: HistoryMap) -> List[str]:
            history = self._require(staged, memory_id)
            union_tags(history, tag_list)
            return list(history.tags)

        return self.apply(add)

    def remove_tags(self, memory_id: str, tags: Iterable[str]) -> List[str]:
        """Remove ``tags`` (case-insensitive) from a memory. Returns the resulting tags."""
        tag_list = list(tags)

        def remove(staged: HistoryMap) -> List[str]:
            history = self._require(staged, memory_id)
            subtract_tags(history, tag_list)
            return list(history.tags)

        return self.apply(remove)

    def set_tags(self, memory_id: str, tags: Iterable[str]) -> List[str]:
        """Replace a memory's tags without appending a version."""
        tag_list = normalize_tags(tags)

        def replace(staged: HistoryMap) -> List[str]:
            history = self._require(staged, memory_id)
            history.tags = list(tag_list)
            history.updated_at = max(utcnow(), history.updated_at)
            return list(history.tags)

        return self.apply(replace)

    def import_memories(self, export: ExportData) -> int:
        """Import records from export data.

        A record whose ID already exists is replaced as a whole; histories are
        not merged.

        Returns:
            Number of records imported
        """
        records = [memory.model_copy(deep=True) for memory in export.memories]

        def import_all(staged: HistoryMap) -> int:
            for record in records:
                staged[record.id] = record
            return len(records)

        count = self.apply(import_all)
        logger.info("Imported %d memories", count)
        return count

    # -- Read ----------------------------------------------------------------

    def get_version(self, memory_id: str, version_number: int) -> MemoryVersion:
        """Get one version of a memory.

        Raises:
            NotFoundError: If the memory is unknown or the version is out of range
        """
        with self._lock.read_locked():
            history = self._require(self._histories, memory_id)
            return self._require_version(history, version_number)

    def get_history(self, memory_id: str) -> MemoryWithHistory:
        """Get a copy of a memory's full history.

        Raises:
            NotFoundError: If the memory doesn't exist
        """
        with self._lock.read_locked():
            history = self._require(self._histories, memory_id)
            return history.model_copy(deep=True)

    def get_all_histories(self) -> HistoryMap:
        """Copies of every stored history, keyed by memory ID."""
        with self._lock.read_locked():
            return self._stage()

    def export_memories(
        self,
        memory_ids: Optional[Iterable[str]] = None,
        include_versions: bool = True,
        exported_by: str = "system",
    ) -> ExportData:
        """Build export data for some or all memories.

        Args:
            memory_ids: IDs to export; None or empty exports everything
            include_versions: If False, each record carries only its latest version
            exported_by: Recorded in the export header

        Returns:
            ExportData with memories in ascending ID order
        """
        wanted = set(memory_ids or [])
        with self._lock.read_locked():
            memories = []
            for memory_id in sorted(self._histories):
                if wanted and memory_id not in wanted:
                    continue
                history = self._histories[memory_id]
                memories.append(history.model_copy(deep=True) if include_versions else history.compacted())

        return ExportData(exported_by=exported_by, memories=memories)

    def count(self) -> int:
        with self._lock.read_locked():
            return len(self._histories)

    def ids(self) -> List[str]:
        with self._lock.read_locked():
            return sorted(self._histories)

    def __contains__(self, memory_id: object) -> bool:
        with self._lock.read_locked():
            return memory_id in self._histories

    # -- Helpers -------------------------------------------------------------

    @staticmethod
    def _require(histories: HistoryMap, memory_id: str) -> MemoryWithHistory:
        history = histories.get(memory_id)
        if history is None:
            raise NotFoundError(f"Memory {memory_id!r} not found")
        return history

    @staticmethod
    def _require_version(history: MemoryWithHistory, version_number: int) -> MemoryVersion:
        if version_number < 1 or version_number > len(history.versions):
            raise NotFoundError(f"Version {version_number} not found for memory {history.id!r}")
        return history.versions[version_number - 1]
