"""Context, tag and client-session registry."""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from .config import DEFAULT_CONTEXT_ID, DEFAULT_CONTEXT_NAME, DEFAULT_MAX_SESSIONS
from .exceptions import AlreadyExistsError, NotFoundError, ValidationError
from .locking import ReadWriteLock
from .models import ClientSession, Context, RegistryData, Tag, normalize_tag, utcnow
from .storage import quarantine, read_json, write_json_atomic

logger = logging.getLogger(__name__)


class ContextRegistry:
    """Persistent contexts, tags and client sessions.

    Context IDs are case-sensitive; tag names are case-folded. A default
    context always exists and can't be deleted.

    Memory counts are bookkeeping owned by the caller: the ``increment_*`` and
    ``decrement_*`` methods only touch memory, and ``save()`` persists them.
    """

    def __init__(
        self,
        path: Path,
        default_context: str = DEFAULT_CONTEXT_ID,
        max_sessions: int = DEFAULT_MAX_SESSIONS,
    ):
        self.path = Path(path)
        self.default_context = default_context
        self.max_sessions = max_sessions
        self._lock = ReadWriteLock()
        self._data = RegistryData()
        self._load()
        self._ensure_default_context()

    # -- Persistence ---------------------------------------------------------

    def _load(self) -> None:
        try:
            raw = read_json(self.path)
            if raw is None:
                return
            self._data = RegistryData.model_validate(raw)
        except (json.JSONDecodeError, UnicodeDecodeError, PydanticValidationError) as e:
            self._data = RegistryData()
            moved_to = quarantine(self.path)
            logger.warning(
                "Registry at %s is unreadable (%s). Moved it to %s and starting fresh.", self.path, e, moved_to
            )

    def _ensure_default_context(self) -> None:
        if self.default_context not in self._data.contexts:
            name = DEFAULT_CONTEXT_NAME if self.default_context == DEFAULT_CONTEXT_ID else self.default_context
            self._data.contexts[self.default_context] = Context(
                id=self.default_context,
                name=name,
                description="Default context for memories",
            )

    def _save_locked(self) -> None:
        write_json_atomic(self.path, self._data.model_dump(mode="json"))

    def _commit(self, staged: RegistryData) -> None:
        write_json_atomic(self.path, staged.model_dump(mode="json"))
        self._data = staged

    def save(self) -> None:
        """Persist the registry, including pending count changes."""
        with self._lock.write_locked():
            self._save_locked()

    def snapshot(self) -> RegistryData:
        with self._lock.read_locked():
            return self._data.model_copy(deep=True)

    # -- Contexts ------------------------------------------------------------

    def create_context(self, context_id: str, name: str = "", description: str = "") -> Context:
        """Create a named context.

        Raises:
            ValidationError: If the ID is empty
            AlreadyExistsError: If the ID is taken
        """
        context_id = context_id.strip()
        if not context_id:
            raise ValidationError("Context ID cannot be empty")

        with self._lock.write_locked():
            if context_id in self._data.contexts:
                raise AlreadyExistsError(f"Context {context_id!r} already exists")

            staged = self._data.model_copy(deep=True)
            context = Context(id=context_id, name=name or context_id, description=description)
            staged.contexts[context_id] = context
            self._commit(staged)

        logger.info("Created context %r", context_id)
        return context.model_copy()

    def get_context(self, context_id: str) -> Context:
        """Raises NotFoundError if the context doesn't exist."""
        with self._lock.read_locked():
            context = self._data.contexts.get(context_id)
            if context is None:
                raise NotFoundError(f"Context {context_id!r} not found")
            return context.model_copy(deep=True)

    def has_context(self, context_id: str) -> bool:
        with self._lock.read_locked():
            return context_id in self._data.contexts

    def list_contexts(self) -> List[Context]:
        with self._lock.read_locked():
            return [self._data.contexts[cid].model_copy(deep=True) for cid in sorted(self._data.contexts)]

    def delete_context(self, context_id: str) -> None:
        """Raises ValidationError for the default context, NotFoundError if missing."""
        if context_id == self.default_context:
            raise ValidationError("Cannot delete default context")

        with self._lock.write_locked():
            if context_id not in self._data.contexts:
                raise NotFoundError(f"Context {context_id!r} not found")
            staged = self._data.model_copy(deep=True)
            del staged.contexts[context_id]
            self._commit(staged)

        logger.info("Deleted context %r", context_id)

    def ensure_context(self, context_id: str) -> Context:
        """Return the context, creating it with default metadata if missing."""
        try:
            return self.get_context(context_id)
        except NotFoundError:
            pass
        try:
            return self.create_context(context_id)
        except AlreadyExistsError:
            # Created concurrently
            return self.get_context(context_id)

    # -- Tags ----------------------------------------------------------------

    def create_tag(self, name: str, description: str = "", color: str = "") -> Tag:
        """Create a tag. The name is stripped and lower-cased.

        Raises:
            ValidationError: If the name is empty
            AlreadyExistsError: If the tag exists
        """
        name = normalize_tag(name)
        if not name:
            raise ValidationError("Tag name cannot be empty")

        with self._lock.write_locked():
            if name in self._data.tags:
                raise AlreadyExistsError(f"Tag {name!r} already exists")

            staged = self._data.model_copy(deep=True)
            tag = Tag(name=name, description=description, color=color)
            staged.tags[name] = tag
            self._commit(staged)

        logger.info("Created tag %r", name)
        return tag.model_copy()

    def get_tag(self, name: str) -> Tag:
        """Case-insensitive lookup. Raises NotFoundError if missing."""
        name = normalize_tag(name)
        with self._lock.read_locked():
            tag = self._data.tags.get(name)
            if tag is None:
                raise NotFoundError(f"Tag {name!r} not found")
            return tag.model_copy()

    def has_tag(self, name: str) -> bool:
        with self._lock.read_locked():
            return normalize_tag(name) in self._data.tags

    def list_tags(self) -> List[Tag]:
        with self._lock.read_locked():
            return [self._data.tags[name].model_copy() for name in sorted(self._data.tags)]

    def delete_tag(self, name: str) -> None:
        name = normalize_tag(name)
        with self._lock.write_locked():
            if name not in self._data.tags:
                raise NotFoundError(f"Tag {name!r} not found")
            staged = self._data.model_copy(deep=True)
            del staged.tags[name]
            self._commit(staged)

        logger.info("Deleted tag %r", name)

    def ensure_tag(self, name: str) -> Tag:
        try:
            return self.get_tag(name)
        except NotFoundError:
            pass
        try:
            return self.create_tag(name)
        except AlreadyExistsError:
            return self.get_tag(name)

    # -- Counts --------------------------------------------------------------

    def increment_memory_count(self, context_id: str) -> None:
        with self._lock.write_locked():
            context = self._data.contexts.get(context_id)
            if context is None:
                raise NotFoundError(f"Context {context_id!r} not found")
            context.memory_count += 1
            context.updated_at = utcnow()

    def decrement_memory_count(self, context_id: str) -> None:
        with self._lock.write_locked():
            context = self._data.contexts.get(context_id)
            if context is None:
                raise NotFoundError(f"Context {context_id!r} not found")
            if context.memory_count > 0:
                context.memory_count -= 1
            context.updated_at = utcnow()

    def increment_tag_count(self, name: str) -> None:
        name = normalize_tag(name)
        with self._lock.write_locked():
            tag = self._data.tags.get(name)
            if tag is None:
                raise NotFoundError(f"Tag {name!r} not found")
            tag.memory_count += 1

    def decrement_tag_count(self, name: str) -> None:
        name = normalize_tag(name)
        with self._lock.write_locked():
            tag = self._data.tags.get(name)
            if tag is None:
                raise NotFoundError(f"Tag {name!r} not found")
            if tag.memory_count > 0:
                tag.memory_count -= 1

    def set_counts(self, context_counts: Dict[str, int], tag_counts: Dict[str, int]) -> None:
        """Overwrite every memory count; contexts and tags not listed get 0."""
        with self._lock.write_locked():
            for context_id, context in self._data.contexts.items():
                context.memory_count = context_counts.get(context_id, 0)
            for name, tag in self._data.tags.items():
                tag.memory_count = tag_counts.get(name, 0)

    def replace_taxonomy(
        self,
        contexts: Optional[Dict[str, Context]] = None,
        tags: Optional[Dict[str, Tag]] = None,
    ) -> None:
        """Overwrite contexts and tags sharing a key with the given ones (import)."""
        with self._lock.write_locked():
            staged = self._data.model_copy(deep=True)
            for context_id, context in (contexts or {}).items():
                staged.contexts[context_id] = context.model_copy(deep=True)
            for tag in (tags or {}).values():
                staged.tags[tag.name] = tag.model_copy()
            self._commit(staged)

    # -- Sessions ------------------------------------------------------------

    def register_session(self, client_id: str) -> ClientSession:
        """Register a client in the default context.

        Raises:
            ValidationError: If the session limit is reached
        """
        with self._lock.write_locked():
            return self._register_locked(client_id)

    def _register_locked(self, client_id: str) -> ClientSession:
        if client_id not in self._data.sessions and len(self._data.sessions) >= self.max_sessions:
            raise ValidationError("Maximum concurrent clients reached")

        staged = self._data.model_copy(deep=True)
        session = ClientSession(client_id=client_id, current_context=self.default_context)
        staged.sessions[client_id] = session
        self._commit(staged)
        logger.info("Registered session for client %r", client_id)
        return session.model_copy(deep=True)

    def unregister_session(self, client_id: str) -> None:
        with self._lock.write_locked():
            if client_id not in self._data.sessions:
                raise NotFoundError(f"Session {client_id!r} not found")
            staged = self._data.model_copy(deep=True)
            del staged.sessions[client_id]
            self._commit(staged)

    def get_session(self, client_id: str) -> ClientSession:
        with self._lock.read_locked():
            session = self._data.sessions.get(client_id)
            if session is None:
                raise NotFoundError(f"Session {client_id!r} not found")
            return session.model_copy(deep=True)

    def list_sessions(self) -> List[ClientSession]:
        with self._lock.read_locked():
            return [self._data.sessions[cid].model_copy(deep=True) for cid in sorted(self._data.sessions)]

    def switch_context(self, client_id: str, context_id: str) -> None:
        """Make ``context_id`` the client's current context."""
        with self._lock.write_locked():
            if client_id not in self._data.sessions:
                raise NotFoundError(f"Session {client_id!r} not found")
            if context_id not in self._data.contexts:
                raise NotFoundError(f"Context {context_id!r} not found")

            staged = self._data.model_copy(deep=True)
            session = staged.sessions[client_id]
            session.current_context = context_id
            session.last_activity = utcnow()
            self._commit(staged)

    def get_client_context(self, client_id: str) -> str:
        """Current context for a client; unknown clients are registered first."""
        with self._lock.write_locked():
            session = self._data.sessions.get(client_id)
            if session is None:
                session = self._register_locked(client_id)
            return session.current_context

    def share_context(self, owner_client_id: str, target_client_id: str, context_id: str) -> None:
        """Grant another client's session access to a context.

        Raises:
            NotFoundError: If the context or target session doesn't exist
            AlreadyExistsError: If the context is already shared with the target
        """
        with self._lock.write_locked():
            if context_id not in self._data.contexts:
                raise NotFoundError(f"Context {context_id!r} not found")
            target = self._data.sessions.get(target_client_id)
            if target is None:
                raise NotFoundError(f"Target session {target_client_id!r} not found")
            if context_id in target.shared_with:
                raise AlreadyExistsError(f"Context {context_id!r} already shared with {target_client_id!r}")

            staged = self._data.model_copy(deep=True)
            staged.sessions[target_client_id].shared_with.append(context_id)
            self._commit(staged)

        logger.info("Client %r shared context %r with %r", owner_client_id, context_id, target_client_id)

    def touch_session(self, client_id: str) -> None:
        """Update last activity; unknown clients are ignored. Not persisted until save()."""
        with self._lock.write_locked():
            session = self._data.sessions.get(client_id)
            if session is not None:
                session.last_activity = utcnow()
