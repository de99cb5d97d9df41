"""Batch coordinator: one operation over many memories, tallied per item."""

import logging
from typing import Callable, Iterable, Sequence

from .exceptions import BatchCommitError, MemkeepError, NotFoundError, StorageError, ValidationError
from .models import BatchCreateItem, BatchOperationResult
from .versions import HistoryMap, VersionStore, append_version, subtract_tags, union_tags

logger = logging.getLogger(__name__)

BATCH_CHANGE_NOTE = "Batch import"

OP_CREATE = "create"
OP_DELETE = "delete"
OP_ADD_TAGS = "add_tags"
OP_REMOVE_TAGS = "remove_tags"

ItemHandler = Callable[[HistoryMap, object], None]


class BatchCoordinator:
    """Apply create/delete/tag operations across many memory IDs.

    Items are processed independently: a failing item is counted and logged
    in ``errors`` and the batch moves on. The whole batch is committed with a
    single save. If that save fails, nothing is applied, the tally flips to
    ``successful=0, failed=total`` and ``BatchCommitError`` is raised with the
    flipped result attached.
    """

    def __init__(self, store: VersionStore):
        self.store = store

    def _run(
        self,
        operation_type: str,
        items: Sequence,
        item_id: Callable[[object], str],
        handler: ItemHandler,
    ) -> BatchOperationResult:
        result = BatchOperationResult(operation_type=operation_type, total=len(items))
        logger.info("Starting %s operation for %d memories", operation_type, result.total)

        def apply_items(staged: HistoryMap) -> None:
            for item in items:
                try:
                    handler(staged, item)
                except MemkeepError as e:
                    result.record_failure(f"{item_id(item) or '<empty id>'}: {e}")
                    continue
                result.successful += 1

        try:
            self.store.apply(apply_items)
        except StorageError as e:
            result.successful = 0
            result.failed = result.total
            result.errors.append(f"Failed to save: {e}")
            logger.error("%s failed to commit: %s", operation_type, e)
            raise BatchCommitError(f"{operation_type} was not persisted: {e}", result) from e

        logger.info(
            "%s completed: %d successful, %d failed", operation_type, result.successful, result.failed
        )
        return result

    def batch_create(self, items: Iterable[BatchCreateItem]) -> BatchOperationResult:
        """Append a version per item, creating memories that don't exist yet."""

        def create(staged: HistoryMap, item: BatchCreateItem) -> None:
            if not item.id:
                raise ValidationError("Memory ID cannot be empty")
            append_version(
                staged,
                item.id,
                item.content,
                item.created_by,
                BATCH_CHANGE_NOTE,
                item.context,
                item.tags,
            )

        return self._run("batch_create", list(items), lambda item: item.id, create)

    def batch_delete(self, memory_ids: Iterable[str]) -> BatchOperationResult:
        def delete(staged: HistoryMap, memory_id: str) -> None:
            if memory_id not in staged:
                raise NotFoundError(f"Memory {memory_id!r} not found")
            del staged[memory_id]

        return self._run("batch_delete", list(memory_ids), str, delete)

    def batch_add_tags(self, memory_ids: Iterable[str], tags: Iterable[str]) -> BatchOperationResult:
        tag_list = list(tags)

        def add(staged: HistoryMap, memory_id: str) -> None:
            history = staged.get(memory_id)
            if history is None:
                raise NotFoundError(f"Memory {memory_id!r} not found")
            union_tags(history, tag_list)

        return self._run("batch_add_tags", list(memory_ids), str, add)

    def batch_remove_tags(self, memory_ids: Iterable[str], tags: Iterable[str]) -> BatchOperationResult:
        tag_list = list(tags)

        def remove(staged: HistoryMap, memory_id: str) -> None:
            history = staged.get(memory_id)
            if history is None:
                raise NotFoundError(f"Memory {memory_id!r} not found")
            subtract_tags(history, tag_list)

        return self._run("batch_remove_tags", list(memory_ids), str, remove)

    def run(
        self,
        operation: str,
        memory_ids: Iterable[str] = (),
        tags: Iterable[str] = (),
        items: Iterable[BatchCreateItem] = (),
    ) -> BatchOperationResult:
        """Dispatch a batch by operation name.

        Raises:
            ValidationError: If the operation is unknown
        """
        if operation == OP_CREATE:
            return self.batch_create(items)
        if operation == OP_DELETE:
            return self.batch_delete(memory_ids)
        if operation == OP_ADD_TAGS:
            return self.batch_add_tags(memory_ids, tags)
        if operation == OP_REMOVE_TAGS:
            return self.batch_remove_tags(memory_ids, tags)
        raise ValidationError(f"Unknown operation: {operation}")
