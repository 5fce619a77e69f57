from __future__ import annotations

from types import SimpleNamespace

import pytest
from pymongo.errors import ConnectionFailure, DuplicateKeyError, OperationFailure, PyMongoError

from card_management.db.mongo import COMMIT_ATTEMPTS, MongoCardStore
from card_management.errors import CommitOutcomeUnknownError, TransientStoreError
from card_management.logging.audit_logger import AuditLogger
from card_management.models.base import utcnow
from card_management.models.card import CardProfile
from card_management.models.stats import ActivityKind
from card_management.models.usage import UserUsage
from card_management.services.admission_service import CardAdmissionService
from card_management.services.stats_service import StatsCounter


class FakeCollection:
    """Just enough of a motor collection for the store's call patterns."""

    def __init__(self, docs=None, failures=None):
        self.docs = {d["_id"]: dict(d) for d in docs or []}
        self.failures = dict(failures or {})

    def _check(self, name):
        exc = self.failures.get(name)
        if exc is not None:
            raise exc

    def _match(self, query):
        for doc in self.docs.values():
            if all(doc.get(k) == v for k, v in query.items()):
                return doc
        return None

    async def find_one(self, query, projection=None, session=None):
        self._check("find_one")
        return self._match(query)

    async def find_one_and_update(
        self, query, update, upsert=False, return_document=None, session=None
    ):
        self._check("find_one_and_update")
        doc_id = query["_id"]
        if doc_id not in self.docs and upsert:
            self.docs[doc_id] = {"_id": doc_id, **update.get("$setOnInsert", {})}
        doc = self.docs.get(doc_id)
        if doc is not None:
            doc.update(update.get("$set", {}))
        return doc

    async def count_documents(self, query, session=None):
        self._check("count_documents")
        return sum(1 for doc in self.docs.values() if all(doc.get(k) == v for k, v in query.items()))

    async def insert_one(self, doc, session=None):
        self._check("insert_one")
        self.docs[doc["_id"]] = dict(doc)

    async def update_one(self, query, update, upsert=False, session=None):
        self._check("update_one")
        doc = self._match(query)
        if doc is None:
            return SimpleNamespace(matched_count=0)
        for field, amount in update.get("$inc", {}).items():
            doc[field] = doc.get(field, 0) + amount
        doc.update(update.get("$set", {}))
        return SimpleNamespace(matched_count=1)


class FakeSession:
    def __init__(self, commit_errors=()):
        self.commit_errors = list(commit_errors)
        self.in_transaction = False
        self.commits = 0
        self.aborts = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def start_transaction(self):
        self.in_transaction = True

    async def commit_transaction(self):
        self.commits += 1
        if self.commit_errors:
            raise self.commit_errors.pop(0)
        self.in_transaction = False

    async def abort_transaction(self):
        self.aborts += 1
        self.in_transaction = False


class FakeClient:
    def __init__(self, commit_errors=()):
        self.session = FakeSession(commit_errors)

    async def start_session(self):
        return self.session


class FakeDatabase:
    def __init__(self, client=None, collections=None):
        self.client = client or FakeClient()
        self.collections = dict(collections or {})

    def __getitem__(self, name):
        return self.collections.setdefault(name, FakeCollection())


def _unknown_commit():
    return PyMongoError("commit lost", error_labels=["UnknownTransactionCommitResult"])


def _store(commit_errors=(), collections=None):
    client = FakeClient(commit_errors)
    return MongoCardStore(FakeDatabase(client, collections)), client.session


@pytest.mark.asyncio
async def test_connection_loss_outside_transaction_is_transient():
    store, _ = _store(
        collections={
            UserUsage.collection_name: FakeCollection(
                failures={"find_one": ConnectionFailure("down")}
            )
        }
    )

    with pytest.raises(TransientStoreError) as info:
        await store.get_usage("owner")
    assert info.value.retryable is True


@pytest.mark.asyncio
async def test_non_transient_driver_errors_propagate_unchanged():
    store, _ = _store(
        collections={
            UserUsage.collection_name: FakeCollection(
                failures={"find_one": OperationFailure("bad query", code=2)}
            )
        }
    )

    with pytest.raises(OperationFailure):
        await store.get_usage("owner")


@pytest.mark.asyncio
async def test_failed_stat_increment_is_dropped():
    store, _ = _store(
        collections={
            "cards": FakeCollection(docs=[{"_id": "c1", "slug": "jane-doe", "owner_id": "owner"}]),
            "card_stats": FakeCollection(failures={"update_one": ConnectionFailure("down")}),
        }
    )

    with pytest.raises(TransientStoreError):
        await store.increment_stat("c1", ActivityKind.VIEW, utcnow())

    await StatsCounter(store=store).record_activity("c1", "view")


@pytest.mark.asyncio
async def test_unknown_commit_result_retries_commit_only():
    store, session = _store(commit_errors=[_unknown_commit()])
    runs = []

    async with store.transaction():
        runs.append(1)

    assert runs == [1]
    assert session.commits == 2
    assert session.aborts == 0


@pytest.mark.asyncio
async def test_persistent_unknown_commit_result_is_not_retryable():
    store, session = _store(commit_errors=[_unknown_commit() for _ in range(COMMIT_ATTEMPTS)])
    runs = []

    with pytest.raises(CommitOutcomeUnknownError) as info:
        async with store.transaction():
            runs.append(1)

    assert runs == [1]
    assert session.commits == COMMIT_ATTEMPTS
    assert info.value.retryable is False


@pytest.mark.asyncio
async def test_transient_transaction_error_on_commit_is_retryable():
    conflict = PyMongoError("write conflict", error_labels=["TransientTransactionError"])
    store, _ = _store(commit_errors=[conflict])

    with pytest.raises(TransientStoreError):
        async with store.transaction():
            pass


@pytest.mark.asyncio
async def test_failing_transaction_body_aborts_without_commit():
    store, session = _store()

    with pytest.raises(RuntimeError):
        async with store.transaction():
            raise RuntimeError("boom")

    assert session.aborts == 1
    assert session.commits == 0


@pytest.mark.asyncio
async def test_creation_with_unknown_commit_result_writes_one_card(tmp_path):
    store, session = _store(commit_errors=[_unknown_commit()])
    audit = AuditLogger(store=store, file_path=tmp_path / "audit.log")
    admission = CardAdmissionService(store=store, audit=audit)

    created = await admission.create_card("owner", CardProfile(first_name="Jane", last_name="Doe"))

    assert created.slug == "jane-doe"
    assert await store.count_cards("owner") == 1
    assert (await store.get_usage("owner")).cards_created == 1
    assert session.commits == 2


@pytest.mark.asyncio
async def test_default_usage_never_overwrites_existing_record():
    store, _ = _store()
    await store.create_default_usage("owner")
    await store.set_cards_created("owner", 2)

    usage = await store.create_default_usage("owner")

    assert usage.cards_created == 2


@pytest.mark.asyncio
async def test_concurrent_usage_creation_inside_transaction_is_transient():
    store, _ = _store(
        collections={
            UserUsage.collection_name: FakeCollection(
                failures={"find_one_and_update": DuplicateKeyError("dup", 11000)}
            )
        }
    )

    with pytest.raises(TransientStoreError):
        async with store.transaction():
            await store.create_default_usage("owner")


@pytest.mark.asyncio
async def test_concurrent_usage_creation_outside_transaction_reads_winner():
    existing = UserUsage.default_for("owner").serialize_for_db()
    existing["_id"] = existing.pop("id")
    existing["cards_created"] = 1
    store, _ = _store(
        collections={
            UserUsage.collection_name: FakeCollection(
                docs=[existing],
                failures={"find_one_and_update": DuplicateKeyError("dup", 11000)},
            )
        }
    )

    usage = await store.create_default_usage("owner")

    assert usage.cards_created == 1
