from __future__ import annotations

import logging
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime
from enum import Enum
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
    Type,
    TypeVar,
)
from uuid import uuid4

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError, PyMongoError

from .base import INITIAL_GRANT_REASON, BaseDBManager
from ..errors import InsufficientCredits, InvalidAmount, TransactionFailed, UserNotFound
from ..models.base import DBSerializableModel
from ..models.ledger import LedgerEntry
from ..models.notification import NotificationEvent
from ..models.transaction import (
    CreditTransaction,
    GroupKey,
    TransactionAggregate,
    TransactionFilter,
    TransactionType,
)
from ..models.user import UserAggregate, UserCreditRecord, UserFilter
from ..schema import MODEL_REGISTRY


logger = logging.getLogger(__name__)

TModel = TypeVar("TModel", bound=DBSerializableModel)
TResult = TypeVar("TResult")


def _plain(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


@contextmanager
def _storage_errors(action: str, user_id: Optional[str] = None) -> Iterator[None]:
    """Translate driver failures into TransactionFailed; business errors pass through."""
    try:
        yield
    except PyMongoError as exc:
        logger.error("MongoDB %s failed", action, extra={"user_id": user_id}, exc_info=True)
        raise TransactionFailed(f"{action} failed: {exc}", user_id=user_id) from exc


class MongoDBManager(BaseDBManager):
    """
    MongoDB implementation of BaseDBManager using motor (async driver).

    IDs are stored as string-based `_id` fields and mirrored in the model's
    primary key attribute (`id` for transactions, `user_id` for users), which
    keeps the rest of the system agnostic of MongoDB specifics.

    Balance changes are conditional `find_one_and_update` calls, so a
    deduction can only succeed against a balance that covers it. The balance
    update and the transaction insert share a multi-document transaction when
    `use_transactions` is enabled (requires a replica set). Without it, a
    failed transaction insert reverts the balance change.
    """

    def __init__(
        self,
        database: AsyncIOMotorDatabase,
        client: Optional[AsyncIOMotorClient] = None,
        *,
        use_transactions: bool = True,
        max_transaction_retries: int = 3,
        clock: Callable[[], datetime] = datetime.utcnow,
    ) -> None:
        self._db = database
        self._client = client if client is not None else database.client
        self._use_transactions = use_transactions
        self._max_transaction_retries = max_transaction_retries
        self._clock = clock

    @classmethod
    def from_client_uri(
        cls, uri: str, db_name: str, *, use_transactions: bool = True
    ) -> "MongoDBManager":
        client = AsyncIOMotorClient(uri)
        return cls(client[db_name], client=client, use_transactions=use_transactions)

    @property
    def _users(self):
        return self._db[UserCreditRecord.collection_name]

    @property
    def _transactions(self):
        return self._db[CreditTransaction.collection_name]

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Any]:
        if not self._use_transactions:
            yield None
            return
        async with await self._client.start_session() as session:
            async with session.start_transaction():
                yield session

    async def _run_atomic(self, work: Callable[[Any], Awaitable[TResult]]) -> TResult:
        attempt = 0
        while True:
            attempt += 1
            try:
                async with self.transaction() as session:
                    return await work(session)
            except PyMongoError as exc:
                if attempt < self._max_transaction_retries and exc.has_error_label(
                    "TransientTransactionError"
                ):
                    logger.info("Retrying transient transaction error (attempt %d)", attempt)
                    continue
                raise

    async def ensure_indexes(self) -> None:
        with _storage_errors("index creation"):
            for model in MODEL_REGISTRY:
                col = self._db[model.collection_name]
                for index in model.indexes:
                    await col.create_index(list(index))

    # Helper utilities
    @staticmethod
    def _prepare_insert(model: TModel) -> Dict[str, Any]:
        data = model.serialize_for_db()
        key = model.primary_key or "id"
        model_id = getattr(model, key, None)
        if not model_id:
            model_id = uuid4().hex
            setattr(model, key, model_id)
            data[key] = model_id
        data["_id"] = model_id
        return data

    @staticmethod
    def _decode(model_cls: Type[TModel], doc: Optional[Mapping[str, Any]]) -> Optional[TModel]:
        if doc is None:
            return None
        data = dict(doc)
        key = model_cls.primary_key or "id"
        if "_id" in data and key not in data:
            data[key] = str(data["_id"])
        data.pop("_id", None)
        return model_cls.model_validate(data)

    @staticmethod
    def _user_match(user_filter: Optional[UserFilter]) -> Dict[str, Any]:
        f = user_filter or UserFilter()
        query: Dict[str, Any] = {}
        if not f.include_deleted:
            query["is_deleted"] = {"$ne": True}
        if f.subscription_tier is not None:
            query["subscription_tier"] = f.subscription_tier.value
        elif f.paid_only:
            query["subscription_tier"] = {"$ne": "free"}
        if f.subscription_status is not None:
            query["subscription_status"] = f.subscription_status.value
        credits: Dict[str, Any] = {}
        if f.min_credits is not None:
            credits["$gte"] = f.min_credits
        if f.max_credits is not None:
            credits["$lte"] = f.max_credits
        if credits:
            query["credits"] = credits
        if f.min_total_spent is not None:
            query["total_credits_spent"] = {"$gte": f.min_total_spent}
        converted: Dict[str, Any] = {}
        if f.converted_since is not None:
            converted["$gte"] = f.converted_since
        if f.converted_before is not None:
            converted["$lt"] = f.converted_before
        if converted:
            converted["$ne"] = None
            query["converted_at"] = converted
        if f.last_update_before is not None:
            query["last_credit_update"] = {"$lt": f.last_update_before}
        if f.subscription_updated_before is not None:
            query["subscription_updated_at"] = {"$lt": f.subscription_updated_before}
        return query

    @staticmethod
    def _tx_match(tx_filter: TransactionFilter) -> Dict[str, Any]:
        query: Dict[str, Any] = {}
        if tx_filter.user_id is not None:
            query["user_id"] = tx_filter.user_id
        elif tx_filter.user_ids is not None:
            query["user_id"] = {"$in": list(tx_filter.user_ids)}
        if tx_filter.type is not None:
            query["type"] = tx_filter.type.value
        created: Dict[str, Any] = {}
        if tx_filter.since is not None:
            created["$gte"] = tx_filter.since
        if tx_filter.until is not None:
            created["$lte"] = tx_filter.until
        if created:
            query["created_at"] = created
        if tx_filter.has_endpoint:
            query["metadata.endpoint"] = {"$exists": True, "$nin": [None, ""]}
        return query

    # User operations
    async def add_user(self, user: UserCreditRecord, initial_grant: int = 0) -> bool:
        now = self._clock()
        record = user.model_copy(
            update={
                "credits": initial_grant,
                "total_credits_earned": initial_grant,
                "created_at": now,
                "updated_at": now,
                "last_credit_update": now,
            }
        )

        async def work(session: Any) -> None:
            await self._users.insert_one(self._prepare_insert(record), session=session)
            if initial_grant <= 0:
                return
            grant = CreditTransaction(
                user_id=record.user_id,
                type=TransactionType.ADDITION,
                amount=initial_grant,
                reason=INITIAL_GRANT_REASON,
                balance_after=initial_grant,
                metadata={"event_type": "initial_grant"},
                created_at=now,
            )
            try:
                await self._transactions.insert_one(self._prepare_insert(grant), session=session)
            except PyMongoError:
                if session is None:
                    await self._users.delete_one({"_id": record.user_id})
                raise

        with _storage_errors("user provisioning", user.user_id):
            try:
                await self._run_atomic(work)
            except DuplicateKeyError:
                return False
        return True

    async def get_user(self, user_id: str) -> Optional[UserCreditRecord]:
        with _storage_errors("user lookup", user_id):
            doc = await self._users.find_one({"_id": user_id})
        return self._decode(UserCreditRecord, doc)

    async def update_user_fields(self, user_id: str, fields: Dict[str, Any]) -> UserCreditRecord:
        with _storage_errors("user update", user_id):
            doc = await self._users.find_one_and_update(
                {"_id": user_id},
                {"$set": {**{k: _plain(v) for k, v in fields.items()}, "updated_at": self._clock()}},
                return_document=ReturnDocument.AFTER,
            )
        if doc is None:
            raise UserNotFound(user_id)
        return self._decode(UserCreditRecord, doc)  # type: ignore[return-value]

    async def get_user_credits(self, user_id: str) -> int:
        with _storage_errors("balance lookup", user_id):
            doc = await self._users.find_one({"_id": user_id}, {"credits": 1})
        if doc is None:
            raise UserNotFound(user_id)
        return int(doc.get("credits", 0))

    async def list_users(
        self,
        user_filter: Optional[UserFilter] = None,
        sort_by: str = "last_credit_update",
        descending: bool = True,
        skip: int = 0,
        limit: Optional[int] = None,
    ) -> List[UserCreditRecord]:
        direction = -1 if descending else 1
        with _storage_errors("user listing"):
            cursor = self._users.find(self._user_match(user_filter)).sort(
                [(sort_by, direction), ("_id", direction)]
            )
            if skip:
                cursor = cursor.skip(skip)
            if limit is not None:
                cursor = cursor.limit(limit)
            docs = await cursor.to_list(length=None)
        return [self._decode(UserCreditRecord, d) for d in docs if d is not None]  # type: ignore[misc]

    async def count_users(self, user_filter: Optional[UserFilter] = None) -> int:
        with _storage_errors("user count"):
            return await self._users.count_documents(self._user_match(user_filter))

    async def aggregate_users(
        self,
        group_by: Optional[str] = None,
        user_filter: Optional[UserFilter] = None,
    ) -> List[UserAggregate]:
        pipeline = [
            {"$match": self._user_match(user_filter)},
            {
                "$group": {
                    "_id": f"${group_by}" if group_by else None,
                    "count": {"$sum": 1},
                    "credits": {"$sum": "$credits"},
                    "total_credits_earned": {"$sum": "$total_credits_earned"},
                    "total_credits_spent": {"$sum": "$total_credits_spent"},
                }
            },
        ]
        with _storage_errors("user aggregation"):
            rows = await self._users.aggregate(pipeline).to_list(length=None)
        result = [
            UserAggregate(
                key=None if row["_id"] is None else str(row["_id"]),
                count=row["count"],
                credits=row["credits"],
                total_credits_earned=row["total_credits_earned"],
                total_credits_spent=row["total_credits_spent"],
            )
            for row in rows
        ]
        if group_by is None and not result:
            return [UserAggregate()]
        return result

    # Balance / transaction log
    async def _apply_delta(
        self,
        session: Any,
        user_id: str,
        delta: int,
        tx_type: TransactionType,
        clamp_at_zero: bool,
        now: datetime,
    ) -> Tuple[int, int]:
        """Returns (balance_before, applied_delta)."""
        stamp = {"last_credit_update": now, "updated_at": now}
        total_field = (
            "total_credits_spent" if tx_type is TransactionType.DEDUCTION else "total_credits_earned"
        )

        if delta >= 0:
            before = await self._users.find_one_and_update(
                {"_id": user_id},
                {"$inc": {"credits": delta, total_field: delta}, "$set": stamp},
                return_document=ReturnDocument.BEFORE,
                session=session,
            )
            if before is None:
                raise UserNotFound(user_id)
            return int(before["credits"]), delta

        if clamp_at_zero:
            # Field references inside one $set stage see the pre-update document.
            pipeline = [
                {
                    "$set": {
                        "credits": {"$max": [0, {"$add": ["$credits", delta]}]},
                        total_field: {
                            "$add": [f"${total_field}", {"$min": ["$credits", -delta]}]
                        },
                        **stamp,
                    }
                }
            ]
            before = await self._users.find_one_and_update(
                {"_id": user_id},
                pipeline,
                return_document=ReturnDocument.BEFORE,
                session=session,
            )
            if before is None:
                raise UserNotFound(user_id)
            balance = int(before["credits"])
            return balance, max(delta, -balance)

        before = await self._users.find_one_and_update(
            {"_id": user_id, "credits": {"$gte": -delta}},
            {"$inc": {"credits": delta, total_field: -delta}, "$set": stamp},
            return_document=ReturnDocument.BEFORE,
            session=session,
        )
        if before is None:
            current = await self._users.find_one({"_id": user_id}, {"credits": 1}, session=session)
            if current is None:
                raise UserNotFound(user_id)
            raise InsufficientCredits(user_id, int(current.get("credits", 0)), -delta)
        return int(before["credits"]), delta

    async def _revert_delta(self, user_id: str, applied: int, tx_type: TransactionType) -> None:
        total_field = (
            "total_credits_spent" if tx_type is TransactionType.DEDUCTION else "total_credits_earned"
        )
        try:
            await self._users.update_one(
                {"_id": user_id},
                {"$inc": {"credits": -applied, total_field: -abs(applied)}},
            )
        except PyMongoError:
            logger.critical(
                "Balance for user %s drifted by %d after a failed transaction insert; "
                "run a consistency check",
                user_id,
                applied,
                exc_info=True,
            )

    async def write_transaction_and_balance(
        self,
        user_id: str,
        delta: int,
        tx_type: TransactionType,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        *,
        clamp_at_zero: bool = False,
    ) -> CreditTransaction:
        if delta * tx_type.sign < 0:
            raise InvalidAmount(
                f"{tx_type.value} cannot carry a delta of {delta}", amount=delta, user_id=user_id
            )

        async def work(session: Any) -> CreditTransaction:
            now = self._clock()
            balance, applied = await self._apply_delta(
                session, user_id, delta, tx_type, clamp_at_zero, now
            )
            tx_metadata = dict(metadata or {})
            if clamp_at_zero and delta < 0:
                tx_metadata["requested_delta"] = delta
                tx_metadata["clamped"] = applied != delta
            tx = CreditTransaction(
                user_id=user_id,
                type=tx_type,
                amount=abs(applied),
                reason=reason,
                balance_after=balance + applied,
                metadata=tx_metadata,
                created_at=now,
            )
            try:
                await self._transactions.insert_one(self._prepare_insert(tx), session=session)
            except PyMongoError:
                if session is None:
                    await self._revert_delta(user_id, applied, tx_type)
                raise
            return tx

        with _storage_errors("balance update", user_id):
            return await self._run_atomic(work)

    async def get_transaction(self, transaction_id: str) -> Optional[CreditTransaction]:
        with _storage_errors("transaction lookup"):
            doc = await self._transactions.find_one({"_id": transaction_id})
        return self._decode(CreditTransaction, doc)

    async def list_transactions(
        self,
        user_id: str,
        limit: int,
        offset: int = 0,
        tx_type: Optional[TransactionType] = None,
    ) -> List[CreditTransaction]:
        return await self._find(
            TransactionFilter(user_id=user_id, type=tx_type), limit=limit, skip=offset
        )

    async def count_transactions(self, tx_filter: TransactionFilter) -> int:
        with _storage_errors("transaction count", tx_filter.user_id):
            return await self._transactions.count_documents(self._tx_match(tx_filter))

    async def find_transactions(
        self,
        tx_filter: TransactionFilter,
        limit: Optional[int] = None,
        newest_first: bool = True,
    ) -> List[CreditTransaction]:
        return await self._find(tx_filter, limit=limit, newest_first=newest_first)

    async def _find(
        self,
        tx_filter: TransactionFilter,
        limit: Optional[int] = None,
        skip: int = 0,
        newest_first: bool = True,
    ) -> List[CreditTransaction]:
        direction = -1 if newest_first else 1
        with _storage_errors("transaction query", tx_filter.user_id):
            cursor = self._transactions.find(self._tx_match(tx_filter)).sort(
                [("created_at", direction), ("_id", direction)]
            )
            if skip:
                cursor = cursor.skip(skip)
            if limit is not None:
                cursor = cursor.limit(limit)
            docs = await cursor.to_list(length=None)
        return [self._decode(CreditTransaction, d) for d in docs if d is not None]  # type: ignore[misc]

    async def aggregate_transactions(
        self,
        tx_filter: TransactionFilter,
        group_by: Sequence[GroupKey] = (),
    ) -> List[TransactionAggregate]:
        group_id: Dict[str, Any] = {}
        for key in group_by:
            if key is GroupKey.USER:
                group_id[key.value] = "$user_id"
            elif key is GroupKey.DAY:
                group_id[key.value] = {
                    "$dateToString": {"format": "%Y-%m-%d", "date": "$created_at"}
                }
            elif key is GroupKey.HOUR:
                group_id[key.value] = {"$hour": "$created_at"}
            elif key is GroupKey.TYPE:
                group_id[key.value] = "$type"
            else:
                group_id[key.value] = "$metadata.endpoint"

        pipeline = [
            {"$match": self._tx_match(tx_filter)},
            {
                "$group": {
                    "_id": group_id or None,
                    "total": {"$sum": "$amount"},
                    "count": {"$sum": 1},
                    "first_at": {"$min": "$created_at"},
                    "last_at": {"$max": "$created_at"},
                }
            },
        ]
        with _storage_errors("transaction aggregation", tx_filter.user_id):
            rows = await self._transactions.aggregate(pipeline).to_list(length=None)
        return [
            TransactionAggregate(
                key=dict(row["_id"] or {}),
                total=row["total"],
                count=row["count"],
                first_at=row.get("first_at"),
                last_at=row.get("last_at"),
            )
            for row in rows
        ]

    # Notifications
    async def add_notification_event(self, notification: NotificationEvent) -> NotificationEvent:
        with _storage_errors("notification insert", notification.user_id):
            await self._db[NotificationEvent.collection_name].insert_one(
                self._prepare_insert(notification)
            )
        return notification

    # Ledger
    async def add_ledger_entry(self, entry: LedgerEntry) -> LedgerEntry:
        with _storage_errors("ledger insert", entry.user_id):
            await self._db[LedgerEntry.collection_name].insert_one(self._prepare_insert(entry))
        return entry
