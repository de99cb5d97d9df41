"""Memory service: wires the stores together behind typed requests."""

import logging
import threading
import warnings
from collections import Counter
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .batch import BatchCoordinator
from .config import Config
from .exceptions import PersistenceWarning, StorageError, ValidationError
from .filters import FilterEngine
from .models import (
    BatchCreateItem,
    BatchOperationResult,
    ContextStats,
    ExportData,
    MemoryVersion,
    MemoryWithHistory,
    SearchFilter,
    SearchResult,
    normalize_tags,
)
from .registry import ContextRegistry
from .versions import VersionStore

logger = logging.getLogger(__name__)


class _Request(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")


class RememberRequest(_Request):
    memory_id: str = Field(..., min_length=1)
    content: str
    client_id: str = "system"
    change_note: str = ""
    context: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags")
    @classmethod
    def _normalize(cls, v):
        return normalize_tags(v)


class RestoreRequest(_Request):
    memory_id: str = Field(..., min_length=1)
    version_number: int = Field(..., ge=1)
    client_id: str = "system"
    restore_reason: str = ""


class BatchRequest(_Request):
    operation: Literal["create", "delete", "add_tags", "remove_tags"]
    memory_ids: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    memories: List[BatchCreateItem] = Field(default_factory=list)
    client_id: str = "system"


class ExportRequest(_Request):
    memory_ids: List[str] = Field(default_factory=list)
    include_versions: bool = True
    include_taxonomy: bool = True


class MemoryService:
    """Entry point for callers: owns one store, registry, filter engine and batch coordinator.

    The version store is the source of truth. Context and tag memory counts
    in the registry are bookkeeping derived from it; if saving them fails
    after the memory write has committed, a ``PersistenceWarning`` is issued
    instead of failing the call.
    """

    def __init__(self, store: VersionStore, registry: ContextRegistry, exported_by: str = "system"):
        self.store = store
        self.registry = registry
        self.filters = FilterEngine(store, registry)
        self.batches = BatchCoordinator(store)
        self.exported_by = exported_by
        # Serializes each store write with the count adjustment derived from it
        self._counts_lock = threading.Lock()

    @classmethod
    def open(cls, config: Config) -> "MemoryService":
        store = VersionStore(config.data_dir, config.versions_file)
        registry = ContextRegistry(
            config.registry_path,
            default_context=config.default_context,
            max_sessions=config.max_sessions,
        )
        return cls(store, registry, exported_by=config.exported_by)

    def close(self) -> None:
        self.store.close()
        self.registry.save()

    # -- Bookkeeping ---------------------------------------------------------

    def _save_bookkeeping(self, action: str) -> None:
        try:
            self.registry.save()
        except StorageError as e:
            logger.error("Registry counts not saved after %s: %s", action, e)
            warnings.warn(
                f"{action} committed but registry counts were not saved: {e}",
                PersistenceWarning,
                stacklevel=3,
            )

    def recount(self) -> None:
        """Recompute every context and tag memory count from the store."""
        with self._counts_lock:
            histories = self.store.get_all_histories()
            context_counts = Counter(h.context for h in histories.values())
            tag_counts = Counter(tag for h in histories.values() for tag in h.tags)
            self.registry.set_counts(dict(context_counts), dict(tag_counts))

    def _register_taxonomy(self, context: str, tags: List[str]) -> None:
        if context:
            self.registry.ensure_context(context)
        for tag in tags:
            self.registry.ensure_tag(tag)

    # -- Memories ------------------------------------------------------------

    def remember(self, request: RememberRequest) -> MemoryVersion:
        """Store a new version of a memory.

        Without an explicit context, the client's current context is used.
        """
        context = request.context or self.registry.get_client_context(request.client_id)
        self._register_taxonomy(context, request.tags)

        with self._counts_lock:
            previous, version = self.store.add_version_with_previous(
                request.memory_id,
                request.content,
                request.client_id,
                request.change_note,
                context,
                request.tags,
            )
            self._adjust_counts(previous, context, request.tags)

        self.registry.touch_session(request.client_id)
        self._save_bookkeeping(f"remember {request.memory_id!r}")
        return version

    def _adjust_counts(self, previous: Optional[MemoryWithHistory], context: str, tags: List[str]) -> None:
        old_context = previous.context if previous else None
        old_tags = set(previous.tags) if previous else set()

        if old_context != context:
            if old_context and self.registry.has_context(old_context):
                self.registry.decrement_memory_count(old_context)
            self.registry.increment_memory_count(context)

        for tag in old_tags - set(tags):
            if self.registry.has_tag(tag):
                self.registry.decrement_tag_count(tag)
        for tag in set(tags) - old_tags:
            self.registry.increment_tag_count(tag)

    def forget(self, memory_id: str) -> None:
        """Delete a memory and its whole history."""
        with self._counts_lock:
            history = self.store.delete_memory_history(memory_id)
            if history.context and self.registry.has_context(history.context):
                self.registry.decrement_memory_count(history.context)
            for tag in history.tags:
                if self.registry.has_tag(tag):
                    self.registry.decrement_tag_count(tag)
        self._save_bookkeeping(f"forget {memory_id!r}")

    def history(self, memory_id: str) -> MemoryWithHistory:
        return self.store.get_history(memory_id)

    def get_version(self, memory_id: str, version_number: int) -> MemoryVersion:
        return self.store.get_version(memory_id, version_number)

    def restore(self, request: RestoreRequest) -> MemoryVersion:
        return self.store.restore_version(
            request.memory_id,
            request.version_number,
            request.client_id,
            request.restore_reason,
        )

    # -- Queries -------------------------------------------------------------

    def search(self, search_filter: SearchFilter) -> List[SearchResult]:
        return self.filters.search(search_filter)

    def context_stats(self, context_id: str) -> ContextStats:
        """Statistics over memories carrying ``context_id``.

        The context need not be registered: memories keep their context ID
        after the context is deleted, and an unused ID gives zero counts.
        """
        return self.filters.get_context_stats(context_id)

    # -- Batches -------------------------------------------------------------

    def batch(self, request: BatchRequest) -> BatchOperationResult:
        """Run a batch; registry counts are recomputed once it has committed."""
        if request.operation == "create":
            for item in request.memories:
                if not item.created_by:
                    item.created_by = request.client_id
                if not item.context:
                    item.context = self.registry.get_client_context(request.client_id)
                self._register_taxonomy(item.context, normalize_tags(item.tags))
        elif request.operation == "add_tags":
            self._register_taxonomy("", normalize_tags(request.tags))

        result = self.batches.run(
            request.operation,
            memory_ids=request.memory_ids,
            tags=request.tags,
            items=request.memories,
        )

        if result.successful:
            self.recount()
            self._save_bookkeeping(result.operation_type)
        return result

    # -- Export / import -----------------------------------------------------

    def export(self, request: Optional[ExportRequest] = None) -> ExportData:
        request = request or ExportRequest()
        data = self.store.export_memories(
            request.memory_ids,
            include_versions=request.include_versions,
            exported_by=self.exported_by,
        )
        if request.include_taxonomy:
            snapshot = self.registry.snapshot()
            data.contexts = snapshot.contexts
            data.tags = snapshot.tags
        return data

    def import_data(self, data: ExportData) -> int:
        """Import memories and taxonomy. Existing records with the same ID are replaced."""
        if not isinstance(data, ExportData):
            raise ValidationError("Import expects ExportData")

        count = self.store.import_memories(data)

        try:
            self.registry.replace_taxonomy(data.contexts, data.tags)
            for memory in data.memories:
                self._register_taxonomy(memory.context, memory.tags)
            self.recount()
        except StorageError as e:
            logger.error("Taxonomy not saved after import: %s", e)
            warnings.warn(f"import committed but taxonomy was not saved: {e}", PersistenceWarning, stacklevel=2)
            return count

        self._save_bookkeeping("import")
        return count

    def import_json(self, payload: str) -> int:
        """Parse an export JSON document and import it."""
        try:
            data = ExportData.model_validate_json(payload)
        except ValueError as e:
            raise ValidationError(f"Invalid export data: {e}") from e
        return self.import_data(data)
