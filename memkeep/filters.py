"""Filter engine: structured queries over the version store."""

import logging
from datetime import datetime
from typing import List, Optional

from .exceptions import NotFoundError, ValidationError
from .models import ContextStats, MemoryWithHistory, SearchFilter, SearchResult, normalize_tag
from .registry import ContextRegistry
from .versions import VersionStore

logger = logging.getLogger(__name__)

TAG_MODE_ALL = "all"
TAG_MODE_ANY = "any"
VALID_TAG_MODES = ("", TAG_MODE_ALL, TAG_MODE_ANY)

CONTEXT_TAG_SEARCH_LIMIT = 50
DATE_RANGE_SEARCH_LIMIT = 100
TAG_SEARCH_LIMIT = 100
STATS_SCAN_LIMIT = 10000


def matches_filter(history: MemoryWithHistory, search_filter: SearchFilter) -> bool:
    """Check one record against every predicate of a filter."""
    if search_filter.context_id and history.context != search_filter.context_id:
        return False

    if search_filter.start_date is not None and history.created_at < search_filter.start_date:
        return False
    if search_filter.end_date is not None and history.updated_at > search_filter.end_date:
        return False

    # Author is the original writer of the memory, not the latest editor
    if search_filter.created_by and history.versions:
        if history.original_author != search_filter.created_by:
            return False

    if search_filter.tags:
        wanted = [normalize_tag(t) for t in search_filter.tags]
        if search_filter.tag_filter_mode == TAG_MODE_ALL:
            if not all(tag in history.tags for tag in wanted):
                return False
        elif not any(tag in history.tags for tag in wanted):
            return False

    return True


class FilterEngine:
    """Stateless query layer over a VersionStore, validated against a ContextRegistry.

    Results come back in ascending memory ID order. ``max_results`` keeps a
    prefix of that order: filtering has no similarity to rank by, so every
    result carries the sentinel similarity 1.0 and the cutoff is not a top-k.
    """

    def __init__(self, store: VersionStore, registry: ContextRegistry):
        self.store = store
        self.registry = registry

    def filter_memories(self, search_filter: SearchFilter) -> List[SearchResult]:
        """Return the current version of every memory matching the filter.

        Records that don't match are skipped, never reported as errors.
        """
        histories = self.store.get_all_histories()
        results: List[SearchResult] = []

        for memory_id in sorted(histories):
            history = histories[memory_id]
            if not history.versions:
                continue
            if not matches_filter(history, search_filter):
                continue
            results.append(SearchResult.from_history(history))

        if search_filter.max_results > 0 and len(results) > search_filter.max_results:
            results = results[: search_filter.max_results]

        logger.debug("Filter matched %d of %d memories", len(results), len(histories))
        return results

    def validate_filter(self, search_filter: SearchFilter) -> None:
        """Raise ValidationError if the filter can't be evaluated meaningfully."""
        if search_filter.context_id:
            try:
                self.registry.get_context(search_filter.context_id)
            except NotFoundError as e:
                raise ValidationError(f"Invalid context_id: {e}") from e

        if search_filter.start_date is not None and search_filter.end_date is not None:
            if search_filter.start_date > search_filter.end_date:
                raise ValidationError("start_date cannot be after end_date")

        if search_filter.tag_filter_mode not in VALID_TAG_MODES:
            raise ValidationError("tag_filter_mode must be 'all' or 'any'")

    def search(self, search_filter: SearchFilter) -> List[SearchResult]:
        """Validate, then filter."""
        self.validate_filter(search_filter)
        return self.filter_memories(search_filter)

    # -- Derived queries -----------------------------------------------------

    def search_by_context_and_tags(self, context_id: str, tags: List[str], tag_mode: str = TAG_MODE_ANY) -> List[SearchResult]:
        return self.filter_memories(
            SearchFilter(
                context_id=context_id,
                tags=tags,
                tag_filter_mode=tag_mode,
                max_results=CONTEXT_TAG_SEARCH_LIMIT,
            )
        )

    def search_by_date_range(
        self,
        start_date: Optional[datetime],
        end_date: Optional[datetime],
    ) -> List[SearchResult]:
        return self.filter_memories(
            SearchFilter(start_date=start_date, end_date=end_date, max_results=DATE_RANGE_SEARCH_LIMIT)
        )

    def search_by_context(self, context_id: str, max_results: int = CONTEXT_TAG_SEARCH_LIMIT) -> List[SearchResult]:
        return self.filter_memories(SearchFilter(context_id=context_id, max_results=max_results))

    def get_memories_by_tag(self, tag_name: str) -> List[SearchResult]:
        return self.filter_memories(
            SearchFilter(tags=[tag_name], tag_filter_mode=TAG_MODE_ANY, max_results=TAG_SEARCH_LIMIT)
        )

    def get_memories_by_multiple_tags(self, tags: List[str], match_all: bool = False) -> List[SearchResult]:
        mode = TAG_MODE_ALL if match_all else TAG_MODE_ANY
        return self.filter_memories(SearchFilter(tags=tags, tag_filter_mode=mode, max_results=TAG_SEARCH_LIMIT))

    # -- Statistics ----------------------------------------------------------

    def get_context_stats(self, context_id: str) -> ContextStats:
        """Fold the memories of a context into counts, tags and time bounds."""
        memories = self.search_by_context(context_id, STATS_SCAN_LIMIT)
        stats = ContextStats(context_id=context_id, memory_count=len(memories))

        for memory in memories:
            stats.unique_tags.update(memory.tags)
            if stats.oldest_memory is None or memory.created_at < stats.oldest_memory:
                stats.oldest_memory = memory.created_at
            if stats.newest_memory is None or memory.updated_at > stats.newest_memory:
                stats.newest_memory = memory.updated_at
            stats.total_characters += len(memory.content)

        return stats
