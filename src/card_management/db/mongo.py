from __future__ import annotations

import functools
import logging
from contextlib import asynccontextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Mapping,
    Optional,
    Type,
    TypeVar,
)
from uuid import uuid4

from motor.motor_asyncio import (
    AsyncIOMotorClient,
    AsyncIOMotorClientSession,
    AsyncIOMotorDatabase,
)
from pymongo import ReturnDocument
from pymongo.errors import ConnectionFailure, DuplicateKeyError, PyMongoError

from .base import BaseCardStore, card_changes
from ..errors import (
    CommitOutcomeUnknownError,
    NotFoundError,
    PermissionDeniedError,
    TransientStoreError,
)
from ..models.audit import AuditEntry
from ..models.base import DBSerializableModel, utcnow
from ..models.card import Card
from ..models.limits import CARD_LIMITS_DOC_ID, DEFAULT_PLAN_LIMITS, PlanLimits
from ..models.stats import ActivityKind, CardStats
from ..models.usage import IdentityHints, Plan, UserUsage


logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)

_TRANSIENT_LABEL = "TransientTransactionError"
_UNKNOWN_COMMIT_LABEL = "UnknownTransactionCommitResult"
COMMIT_ATTEMPTS = 3

# Session of the transaction open on the current task, if any.
_current_session: ContextVar[Optional[AsyncIOMotorClientSession]] = ContextVar(
    "mongo_card_store_session", default=None
)


def _is_transient(exc: PyMongoError) -> bool:
    if isinstance(exc, ConnectionFailure):
        return True
    return exc.has_error_label(_TRANSIENT_LABEL)


def _store_errors(method: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
    """Re-raise transient driver failures of a store call as TransientStoreError."""

    @functools.wraps(method)
    async def wrapper(self: "MongoCardStore", *args: Any, **kwargs: Any) -> Any:
        try:
            return await method(self, *args, **kwargs)
        except PyMongoError as exc:
            if _is_transient(exc):
                raise TransientStoreError(
                    f"Store unavailable during {method.__name__}",
                    details={"error": str(exc)},
                ) from exc
            raise

    return wrapper


class MongoCardStore(BaseCardStore):
    """
    MongoDB implementation of BaseCardStore using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the `id`
    attribute of each Pydantic model, which keeps the rest of the system
    agnostic of MongoDB specifics.

    `transaction()` opens a real multi-document transaction on a client
    session, so the deployment must be a replica set (or sharded cluster).
    The session travels in a context variable; store calls made inside the
    `async with` block pass it to the driver and thereby join the transaction.

    Every store call maps transient driver failures (lost connections,
    transaction write conflicts) to TransientStoreError, inside a
    transaction or not.
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        default_limits: Optional[Mapping[str, int]] = None,
    ) -> None:
        self._db = database
        self._client: AsyncIOMotorClient = database.client
        self._default_limits = dict(default_limits or DEFAULT_PLAN_LIMITS)

    @classmethod
    def from_client_uri(
        cls, uri: str, db_name: str, default_limits: Optional[Mapping[str, int]] = None
    ) -> "MongoCardStore":
        client = AsyncIOMotorClient(uri, tz_aware=True)
        return cls(client[db_name], default_limits=default_limits)

    @_store_errors
    async def ensure_indexes(self) -> None:
        for model in (UserUsage, PlanLimits, Card, CardStats, AuditEntry):
            col = self._db[model.collection_name]
            for index in model.indexes:
                await col.create_index(
                    [(key, 1) for key in index.keys], unique=index.unique, name=index.name
                )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if _current_session.get() is not None:
            yield
            return

        try:
            async with await self._client.start_session() as session:
                session.start_transaction()
                token = _current_session.set(session)
                try:
                    yield
                except BaseException:
                    if session.in_transaction:
                        await session.abort_transaction()
                    raise
                finally:
                    _current_session.reset(token)
                await self._commit(session)
        except PyMongoError as exc:
            if _is_transient(exc):
                raise TransientStoreError(
                    "Transaction aborted by a concurrent write", details={"error": str(exc)}
                ) from exc
            raise

    @staticmethod
    async def _commit(session: AsyncIOMotorClientSession) -> None:
        # Only the commit is repeated on an unknown outcome; the body of the
        # transaction has already run and must not run twice.
        for attempt in range(1, COMMIT_ATTEMPTS + 1):
            try:
                await session.commit_transaction()
                return
            except PyMongoError as exc:
                if not exc.has_error_label(_UNKNOWN_COMMIT_LABEL):
                    raise
                if attempt == COMMIT_ATTEMPTS:
                    raise CommitOutcomeUnknownError(
                        "Could not confirm the outcome of the transaction commit",
                        details={"error": str(exc), "attempts": attempt},
                    ) from exc
                logger.warning("Commit outcome unknown (attempt %s), retrying commit", attempt)

    @staticmethod
    def _session() -> Optional[AsyncIOMotorClientSession]:
        return _current_session.get()

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        model_id = getattr(model, "id", None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, "id", model_id)
            data["id"] = model_id
        data["_id"] = model_id
        data.pop("id", None)
        return data

    async def _insert_if_missing(self, col: Any, model: DBSerializableModel) -> Dict[str, Any]:
        """Insert `model` unless a document with its id exists; returns the stored document."""
        data = self._prepare_insert(model)
        doc_id = data.pop("_id")
        session = self._session()
        try:
            return await col.find_one_and_update(
                {"_id": doc_id},
                {"$setOnInsert": data},
                upsert=True,
                return_document=ReturnDocument.AFTER,
                session=session,
            )
        except DuplicateKeyError as exc:
            # A concurrent upsert won. Inside a transaction the error has
            # already aborted it, so only a fresh attempt can continue.
            if session is not None:
                raise TransientStoreError(
                    f"Document {doc_id} was created concurrently"
                ) from exc
            doc = await col.find_one({"_id": doc_id})
            if doc is None:
                raise TransientStoreError(f"Document {doc_id} vanished during creation") from exc
            return doc

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        if "_id" in data:
            data["id"] = str(data.pop("_id"))
        return model_cls.model_validate(data)

    # Usage records
    @_store_errors
    async def get_usage(self, user_id: str) -> Optional[UserUsage]:
        col = self._db[UserUsage.collection_name]
        doc = await col.find_one({"_id": user_id}, session=self._session())
        return self._decode(UserUsage, doc)

    @_store_errors
    async def create_default_usage(
        self, user_id: str, identity: Optional[IdentityHints] = None
    ) -> UserUsage:
        col = self._db[UserUsage.collection_name]
        doc = await self._insert_if_missing(col, UserUsage.default_for(user_id, identity))
        logger.info("Ensured usage record for %s", user_id)
        return self._decode(UserUsage, doc)  # type: ignore[return-value]

    @_store_errors
    async def set_usage_plan(self, user_id: str, plan: Plan, card_limit: int) -> UserUsage:
        col = self._db[UserUsage.collection_name]
        doc = await col.find_one_and_update(
            {"_id": user_id},
            {"$set": {"plan": plan.value, "card_limit": card_limit, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=self._session(),
        )
        if doc is None:
            raise NotFoundError(f"No usage record for user {user_id}")
        return self._decode(UserUsage, doc)  # type: ignore[return-value]

    @_store_errors
    async def set_cards_created(self, user_id: str, cards_created: int) -> UserUsage:
        col = self._db[UserUsage.collection_name]
        doc = await col.find_one_and_update(
            {"_id": user_id},
            {"$set": {"cards_created": max(cards_created, 0), "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
            session=self._session(),
        )
        if doc is None:
            raise NotFoundError(f"No usage record for user {user_id}")
        return self._decode(UserUsage, doc)  # type: ignore[return-value]

    # Plan limits
    @_store_errors
    async def get_limits_config(self) -> PlanLimits:
        col = self._db[PlanLimits.collection_name]
        doc = await col.find_one({"_id": CARD_LIMITS_DOC_ID}, session=self._session())
        if doc is not None:
            return self._decode(PlanLimits, doc)  # type: ignore[return-value]

        doc = await self._insert_if_missing(col, PlanLimits(limits=dict(self._default_limits)))
        logger.info("Ensured card limits document: %s", doc.get("limits"))
        return self._decode(PlanLimits, doc)  # type: ignore[return-value]

    @_store_errors
    async def save_limits_config(self, limits: PlanLimits) -> PlanLimits:
        col = self._db[PlanLimits.collection_name]
        limits.updated_at = utcnow()
        data = self._prepare_insert(limits)
        await col.replace_one({"_id": data["_id"]}, data, upsert=True, session=self._session())
        return limits

    # Cards
    @_store_errors
    async def slug_exists(self, slug: str) -> bool:
        col = self._db[Card.collection_name]
        doc = await col.find_one({"slug": slug}, projection={"_id": 1}, session=self._session())
        return doc is not None

    @_store_errors
    async def write_card_and_increment_usage(
        self, card: Card, user_id: str, card_limit: Optional[int] = None
    ) -> str:
        cards = self._db[Card.collection_name]
        stats = self._db[CardStats.collection_name]
        usage = self._db[UserUsage.collection_name]

        usage_update: Dict[str, Any] = {"updated_at": utcnow()}
        if card_limit is not None:
            usage_update["card_limit"] = card_limit

        async with self.transaction():
            try:
                await cards.insert_one(self._prepare_insert(card), session=self._session())
            except DuplicateKeyError as exc:
                raise TransientStoreError(
                    f"Slug '{card.slug}' was taken concurrently"
                ) from exc
            card_id = card.id or ""
            await stats.insert_one(
                self._prepare_insert(CardStats(id=card_id, owner_id=user_id)),
                session=self._session(),
            )
            result = await usage.update_one(
                {"_id": user_id},
                {"$inc": {"cards_created": 1}, "$set": usage_update},
                session=self._session(),
            )
            if result.matched_count == 0:
                raise NotFoundError(f"No usage record for user {user_id}")
        return card_id

    @_store_errors
    async def delete_card_and_decrement_usage(self, card_id: str, owner_id: str) -> Card:
        cards = self._db[Card.collection_name]
        usage = self._db[UserUsage.collection_name]
        async with self.transaction():
            card = await self._require_owned_card(card_id, owner_id)
            await cards.delete_one({"_id": card_id}, session=self._session())
            await usage.update_one(
                {"_id": owner_id, "cards_created": {"$gt": 0}},
                {"$inc": {"cards_created": -1}, "$set": {"updated_at": utcnow()}},
                session=self._session(),
            )
        return card

    @_store_errors
    async def update_card(
        self, card_id: str, owner_id: str, changes: Mapping[str, Any]
    ) -> Card:
        cards = self._db[Card.collection_name]
        async with self.transaction():
            card = await self._require_owned_card(card_id, owner_id)
            data = card.model_dump()
            data.update(card_changes(changes))
            data["updated_at"] = utcnow()
            updated = Card.model_validate(data)
            await cards.replace_one(
                {"_id": card_id}, self._prepare_insert(updated), session=self._session()
            )
        return updated

    async def _require_owned_card(self, card_id: str, owner_id: str) -> Card:
        card = await self.get_card(card_id)
        if card is None:
            raise NotFoundError(f"Card {card_id} not found")
        if card.owner_id != owner_id:
            raise PermissionDeniedError(f"User {owner_id} does not own card {card_id}")
        return card

    @_store_errors
    async def get_card(self, card_id: str) -> Optional[Card]:
        col = self._db[Card.collection_name]
        doc = await col.find_one({"_id": card_id}, session=self._session())
        return self._decode(Card, doc)

    @_store_errors
    async def get_card_by_slug(self, slug: str) -> Optional[Card]:
        col = self._db[Card.collection_name]
        doc = await col.find_one({"slug": slug}, session=self._session())
        return self._decode(Card, doc)

    @_store_errors
    async def list_cards(self, owner_id: str) -> Iterable[Card]:
        col = self._db[Card.collection_name]
        cursor = col.find({"owner_id": owner_id}, session=self._session()).sort("created_at", 1)
        docs = await cursor.to_list(length=None)
        return [self._decode(Card, d) for d in docs if d is not None]  # type: ignore[misc]

    @_store_errors
    async def count_cards(self, owner_id: str) -> int:
        col = self._db[Card.collection_name]
        return await col.count_documents({"owner_id": owner_id}, session=self._session())

    # Stats
    @_store_errors
    async def get_stats(self, card_id: str) -> Optional[CardStats]:
        col = self._db[CardStats.collection_name]
        doc = await col.find_one({"_id": card_id}, session=self._session())
        return self._decode(CardStats, doc)

    @_store_errors
    async def increment_stat(self, card_id: str, kind: ActivityKind, at: datetime) -> None:
        col = self._db[CardStats.collection_name]
        field = kind.counter_field
        to_set: Dict[str, Any] = {"updated_at": at}
        if kind is ActivityKind.VIEW:
            to_set["last_viewed"] = at
        on_insert: Dict[str, Any] = {
            other.counter_field: 0 for other in ActivityKind if other is not kind
        }
        on_insert["created_at"] = at
        await col.update_one(
            {"_id": card_id},
            {"$inc": {field: 1}, "$set": to_set, "$setOnInsert": on_insert},
            upsert=True,
            session=self._session(),
        )

    @_store_errors
    async def delete_stats(self, card_id: str) -> None:
        col = self._db[CardStats.collection_name]
        await col.delete_one({"_id": card_id}, session=self._session())

    # Audit trail
    @_store_errors
    async def add_audit_entry(self, entry: AuditEntry) -> AuditEntry:
        col = self._db[AuditEntry.collection_name]
        await col.insert_one(self._prepare_insert(entry), session=self._session())
        return entry
