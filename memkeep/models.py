"""Pydantic models for memories, taxonomy, filters and batch results."""

import uuid
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Set

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .config import FORMAT_VERSION


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_datetime(v):
    """Parse ISO strings and pin naive datetimes to UTC."""
    if v is None or v == "":
        return None
    if isinstance(v, str):
        v = datetime.fromisoformat(v.replace("Z", "+00:00"))
    if isinstance(v, datetime) and v.tzinfo is None:
        v = v.replace(tzinfo=timezone.utc)
    return v


def normalize_tag(tag: str) -> str:
    return tag.strip().lower()


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Strip, case-fold and deduplicate tags, keeping first-seen order."""
    result: List[str] = []
    for tag in tags or []:
        name = normalize_tag(tag)
        if name and name not in result:
            result.append(name)
    return result


class MemoryVersion(BaseModel):
    """One immutable snapshot of a memory's content."""

    model_config = ConfigDict(frozen=True)

    version_number: int = Field(..., ge=1, description="1-based, strictly increasing within a memory")
    content: str = Field(..., description="Memory content at this version")
    created_at: datetime = Field(default_factory=utcnow)
    created_by: str = Field(default="", description="Client ID that wrote this version")
    change_note: str = Field(default="", description="Optional note about what changed")

    @field_validator("created_at", mode="before")
    @classmethod
    def _parse_created_at(cls, v):
        return parse_datetime(v)


class MemoryWithHistory(BaseModel):
    """A memory record with its full version history.

    ``context`` and ``tags`` describe the record as a whole and reflect the
    latest write; they are not versioned.
    """

    model_config = ConfigDict(extra="allow")

    id: str
    current_version: int = 0
    versions: List[MemoryVersion] = Field(default_factory=list)
    context: str = ""
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _parse_timestamps(cls, v):
        return parse_datetime(v)

    @field_validator("tags", mode="before")
    @classmethod
    def _normalize_tags(cls, v):
        return normalize_tags(v)

    @model_validator(mode="after")
    def _check_versions(self):
        """current_version must match the history length, numbered 1..n."""
        if self.current_version != len(self.versions):
            raise ValueError(
                f"memory {self.id!r}: current_version {self.current_version} != {len(self.versions)} versions"
            )
        for expected, version in enumerate(self.versions, 1):
            if version.version_number != expected:
                raise ValueError(f"memory {self.id!r}: version {version.version_number} out of sequence")
        return self

    @property
    def latest(self) -> Optional[MemoryVersion]:
        return self.versions[-1] if self.versions else None

    @property
    def original_author(self) -> str:
        return self.versions[0].created_by if self.versions else ""

    def has_tag(self, tag: str) -> bool:
        return normalize_tag(tag) in self.tags

    def compacted(self) -> "MemoryWithHistory":
        """Copy of this record holding only its latest version.

        The surviving version is renumbered to 1 so the copy still satisfies
        ``current_version == len(versions)``; the original number is kept in
        ``metadata["compacted_from_version"]``.
        """
        record = self.model_copy(deep=True)
        if len(record.versions) > 1:
            record.metadata["compacted_from_version"] = str(record.current_version)
            record.versions = [record.versions[-1].model_copy(update={"version_number": 1})]
            record.current_version = 1
        return record


class Context(BaseModel):
    """A named bucket that groups memories."""

    id: str
    name: str
    description: str = ""
    memory_count: int = 0
    tags: List[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _parse_timestamps(cls, v):
        return parse_datetime(v)


class Tag(BaseModel):
    """A categorical label; names are case-folded."""

    name: str
    description: str = ""
    color: str = ""
    memory_count: int = 0

    @field_validator("name", mode="before")
    @classmethod
    def _fold_name(cls, v):
        return normalize_tag(v) if isinstance(v, str) else v


class ClientSession(BaseModel):
    """A connected client and the context it is working in."""

    client_id: str
    current_context: str
    created_at: datetime = Field(default_factory=utcnow)
    last_activity: datetime = Field(default_factory=utcnow)
    shared_with: List[str] = Field(default_factory=list, description="Context IDs shared into this session")

    @field_validator("created_at", "last_activity", mode="before")
    @classmethod
    def _parse_timestamps(cls, v):
        return parse_datetime(v)


class RegistryData(BaseModel):
    """Everything the context/tag registry persists."""

    contexts: Dict[str, Context] = Field(default_factory=dict)
    tags: Dict[str, Tag] = Field(default_factory=dict)
    sessions: Dict[str, ClientSession] = Field(default_factory=dict)
    version: str = FORMAT_VERSION


class SearchFilter(BaseModel):
    """Structured query over memory metadata.

    ``max_results`` of 0 means unlimited. A positive cap keeps a prefix of the
    matches in scan order; it is not a relevance ranking.
    """

    model_config = ConfigDict(str_strip_whitespace=True)

    query: str = ""
    context_id: str = ""
    tags: List[str] = Field(default_factory=list)
    tag_filter_mode: str = ""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    created_by: str = ""
    max_results: int = Field(default=0, ge=0)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def _parse_dates(cls, v):
        return parse_datetime(v)


class SearchResult(BaseModel):
    """The current version of a memory plus its record-level fields."""

    id: str
    content: str
    similarity: float = 1.0
    context: str = ""
    tags: List[str] = Field(default_factory=list)
    current_version: int = 0
    created_at: datetime
    updated_at: datetime
    metadata: Dict[str, str] = Field(default_factory=dict)

    @classmethod
    def from_history(cls, history: MemoryWithHistory) -> "SearchResult":
        return cls(
            id=history.id,
            content=history.latest.content if history.latest else "",
            context=history.context,
            tags=list(history.tags),
            current_version=history.current_version,
            created_at=history.created_at,
            updated_at=history.updated_at,
            metadata=dict(history.metadata),
        )


class ContextStats(BaseModel):
    """Aggregates over the memories currently in one context."""

    context_id: str
    memory_count: int = 0
    unique_tags: Set[str] = Field(default_factory=set)
    oldest_memory: Optional[datetime] = None
    newest_memory: Optional[datetime] = None
    total_characters: int = 0


class BatchCreateItem(BaseModel):
    """One memory to create in a batch."""

    model_config = ConfigDict(str_strip_whitespace=True)

    id: str
    content: str
    context: str = ""
    tags: List[str] = Field(default_factory=list)
    created_by: str = ""


class BatchOperationResult(BaseModel):
    """Per-batch tally; ``errors`` holds one entry per failed item."""

    operation_type: str
    total: int = 0
    successful: int = 0
    failed: int = 0
    errors: List[str] = Field(default_factory=list)
    operation_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])

    def record_failure(self, message: str) -> None:
        self.failed += 1
        self.errors.append(message)


class ExportData(BaseModel):
    """Interchange format for export/import."""

    exported_at: datetime = Field(default_factory=utcnow)
    exported_by: str = "system"
    memories: List[MemoryWithHistory] = Field(default_factory=list)
    contexts: Optional[Dict[str, Context]] = None
    tags: Optional[Dict[str, Tag]] = None
    version: str = FORMAT_VERSION

    @field_validator("exported_at", mode="before")
    @classmethod
    def _parse_exported_at(cls, v):
        return parse_datetime(v)
