"""
Session state store: in-process cache backed by a durable metadata store.

The cache is authoritative for the life of the process. The durable store
is best-effort: reload and persistence failures are logged and the
conversation continues on in-memory state (or a fresh session).

Usage:
    store = SessionStateStore(InMemoryMetadataStore())
    state = await store.get("sess-1", "tenant-1")
    state = await store.update("sess-1", "tenant-1", {"user_data": {"name": "Ana"}})
"""

from datetime import datetime, timedelta
from typing import Any, Callable, Mapping, Optional, Union

from pydantic import BaseModel

from flowbot.config import settings
from flowbot.logging_context import get_session_logger
from flowbot.schemas.conversation_schema import (
    AppointmentData,
    AttemptCount,
    ConversationMessage,
    ConversationState,
    Language,
    MessageRole,
    PaymentContext,
    UserData,
)
from flowbot.storage.metadata_store import MetadataStore
from flowbot.utils import utc_now

logger = get_session_logger(__name__)

PartialUpdate = Mapping[str, Any]
EntityUpdate = Union[BaseModel, Mapping[str, Any], None]

# Payment flags that a partial update must never reset to "unknown"
_CONFIRMATION_FLAGS = ("name_confirmed", "email_confirmed")


def create_initial_state(
    session_id: str,
    tenant_id: str,
    language: Optional[Language] = None,
    now: Optional[datetime] = None,
) -> ConversationState:
    """Build the empty state a brand-new session starts with."""
    return ConversationState(
        session_id=session_id,
        tenant_id=tenant_id,
        language=language or Language(settings.bot.default_language),
        last_activity=now or utc_now(),
    )


def serialize_state(state: ConversationState) -> dict[str, Any]:
    """Serialize to the persisted JSON shape (camelCase keys, ISO dates)."""
    return state.model_dump(mode="json", by_alias=True)


def deserialize_state(blob: Mapping[str, Any]) -> ConversationState:
    """Rebuild a state from a persisted blob.

    Missing fields take their defaults, boolean strings are coerced and
    duplicate entries in set-like fields are dropped.

    Raises:
        pydantic.ValidationError: If the blob cannot describe a valid state.
    """
    return ConversationState.model_validate(blob)


def _field_updates(model_cls: type[BaseModel], update: EntityUpdate) -> dict[str, Any]:
    if update is None:
        return {}
    if isinstance(update, BaseModel):
        return update.model_dump()
    unknown = set(update) - set(model_cls.model_fields)
    if unknown:
        raise KeyError(f"Unknown {model_cls.__name__} fields: {sorted(unknown)}")
    return dict(update)


def merge_user_data(current: UserData, update: EntityUpdate) -> UserData:
    """Deep-merge profile data. A None value never clears a known field."""
    values = {k: v for k, v in _field_updates(UserData, update).items() if v is not None}
    return UserData.model_validate({**current.model_dump(), **values})


def merge_appointment_data(current: AppointmentData, update: EntityUpdate) -> AppointmentData:
    if isinstance(update, AppointmentData):
        return update.model_copy(deep=True)
    values = _field_updates(AppointmentData, update)
    return AppointmentData.model_validate({**current.model_dump(), **values})


def merge_attempt_count(current: AttemptCount, update: EntityUpdate) -> AttemptCount:
    if isinstance(update, AttemptCount):
        return update.model_copy()
    values = _field_updates(AttemptCount, update)
    return AttemptCount.model_validate({**current.model_dump(), **values})


def merge_payment_context(current: PaymentContext, update: EntityUpdate) -> PaymentContext:
    """Merge a payment context update.

    A full ``PaymentContext`` replaces the current one (used for resets).
    A mapping merges only its keys; ``name_confirmed`` and
    ``email_confirmed`` given as None keep their current value.
    """
    if isinstance(update, PaymentContext):
        return update.model_copy(deep=True)
    values = _field_updates(PaymentContext, update)
    for flag in _CONFIRMATION_FLAGS:
        if flag in values and values[flag] is None:
            del values[flag]
    return PaymentContext.model_validate({**current.model_dump(), **values})


_ENTITY_MERGES: dict[str, Callable[[Any, EntityUpdate], BaseModel]] = {
    "user_data": merge_user_data,
    "appointment_data": merge_appointment_data,
    "attempt_count": merge_attempt_count,
    "payment_context": merge_payment_context,
}


def merge_state(current: ConversationState, partial: PartialUpdate) -> ConversationState:
    """Apply a partial update using the per-entity merge rules.

    Scalars and lists are overwritten; nested entities go through their
    merge function.

    Raises:
        KeyError: If the partial names a field the state does not have.
    """
    unknown = set(partial) - set(ConversationState.model_fields)
    if unknown:
        raise KeyError(f"Unknown conversation state fields: {sorted(unknown)}")

    values: dict[str, Any] = {}
    for key, value in partial.items():
        merge = _ENTITY_MERGES.get(key)
        values[key] = merge(getattr(current, key), value) if merge else value
    return ConversationState.model_validate({**current.model_dump(), **values})


def has_user_data(state: ConversationState, field: str) -> bool:
    return bool(getattr(state.user_data, field))


def should_ask_for(state: ConversationState, field: str) -> bool:
    """True if ``field`` is still missing and the user has not declined it."""
    if field == "phone" and state.phone_declined:
        return False
    return not has_user_data(state, field)


class SessionStateStore:
    """
    Owns the canonical ConversationState of every session.

    ``get`` hands out copies; the cache is only written by ``update`` and
    ``reset``. Expiry is logical: an expired state is replaced by a fresh
    one on the next read.
    """

    def __init__(
        self,
        metadata_store: MetadataStore,
        timeout: Optional[timedelta] = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._metadata = metadata_store
        self._timeout = timeout or timedelta(minutes=settings.bot.session_timeout_minutes)
        self._clock = clock
        self._cache: dict[tuple[str, str], ConversationState] = {}

    @property
    def timeout(self) -> timedelta:
        return self._timeout

    def now(self) -> datetime:
        return self._clock()

    def is_expired(self, state: ConversationState) -> bool:
        return self._clock() - state.last_activity > self._timeout

    async def get(self, session_id: str, tenant_id: str) -> ConversationState:
        """Return the session's state, never raising on storage problems."""
        state = await self._load_current(session_id, tenant_id)
        return state.model_copy(deep=True)

    async def update(
        self, session_id: str, tenant_id: str, partial: PartialUpdate
    ) -> ConversationState:
        """Merge ``partial`` into the current state, cache it and persist it."""
        current = await self._load_current(session_id, tenant_id)
        merged = merge_state(current, partial)
        if "last_activity" not in partial:
            merged.last_activity = self._clock()

        self._cache[(tenant_id, session_id)] = merged
        await self._persist(merged)
        return merged.model_copy(deep=True)

    async def reset(
        self, session_id: str, tenant_id: str, language: Optional[Language] = None
    ) -> ConversationState:
        """Drop the cached state and persist a brand-new one."""
        fresh = create_initial_state(session_id, tenant_id, language, self._clock())
        self._cache[(tenant_id, session_id)] = fresh
        await self._persist(fresh)
        logger.info("Session %s reset", session_id)
        return fresh.model_copy(deep=True)

    async def record_message(
        self,
        session_id: str,
        tenant_id: str,
        role: MessageRole,
        content: str,
        language: Language,
    ) -> ConversationState:
        """Append a message to the session's conversation history."""
        current = await self._load_current(session_id, tenant_id)
        message = ConversationMessage(
            role=role, content=content, timestamp=self._clock(), language=language
        )
        return await self.update(
            session_id,
            tenant_id,
            {"conversation_history": [*current.conversation_history, message]},
        )

    def evict(self, session_id: str, tenant_id: str) -> None:
        """Forget the cached state, as a process restart would."""
        self._cache.pop((tenant_id, session_id), None)

    async def _load_current(self, session_id: str, tenant_id: str) -> ConversationState:
        key = (tenant_id, session_id)
        cached = self._cache.get(key)
        if cached is not None:
            if not self.is_expired(cached):
                return cached
            logger.info("Cached session %s expired, starting fresh", session_id)
            self._cache.pop(key, None)
            return create_initial_state(session_id, tenant_id, now=self._clock())

        reloaded = await self._reload(session_id, tenant_id)
        if reloaded is None:
            return create_initial_state(session_id, tenant_id, now=self._clock())
        if self.is_expired(reloaded):
            logger.info("Stored session %s expired, starting fresh", session_id)
            return create_initial_state(session_id, tenant_id, now=self._clock())
        return reloaded

    async def _reload(self, session_id: str, tenant_id: str) -> Optional[ConversationState]:
        try:
            blob = await self._metadata.get(session_id, tenant_id)
        except Exception as e:
            logger.warning("Failed to reload session %s: %s", session_id, e)
            return None
        if blob is None:
            return None
        try:
            return deserialize_state(blob)
        except Exception as e:
            logger.warning("Discarding unreadable state for session %s: %s", session_id, e)
            return None

    async def _persist(self, state: ConversationState) -> None:
        try:
            await self._metadata.put(state.session_id, state.tenant_id, serialize_state(state))
        except Exception as e:
            logger.warning("Failed to persist session %s: %s", state.session_id, e)
