"""Record store adapter: owner-agnostic CRUD and filtered listing over named collections.

Services never build SQL themselves. They describe what they want with
``Filter`` values and a page window, and the adapter translates that into
a query. This keeps the services runnable against any document-style store
that supports equality, prefix, null and bounded "in" filters.

Usage:
    store = SqlRecordStore(async_session)
    trashed = await store.list(
        "files", [eq("owner_id", owner), eq("is_deleted", True)], offset=0, limit=100,
    )
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from filehub.config import settings
from filehub.exceptions import NotFoundError, QueryLimitError, StoreUnavailableError
from filehub.models import Base, FileRecord, Subscription
from filehub.models.base import utcnow

logger = logging.getLogger(__name__)

FILES = "files"
SUBSCRIPTIONS = "subscriptions"

COLLECTIONS: dict[str, type[Base]] = {
    FILES: FileRecord,
    SUBSCRIPTIONS: Subscription,
}

OPERATORS = ("eq", "in", "prefix", "is_null", "search")


@dataclass(frozen=True)
class Filter:
    field: str
    op: str
    value: Any = None


def eq(field: str, value: Any) -> Filter:
    return Filter(field, "eq", value)


def is_in(field: str, values: Sequence[Any]) -> Filter:
    return Filter(field, "in", tuple(values))


def starts_with(field: str, prefix: str) -> Filter:
    return Filter(field, "prefix", prefix)


def is_null(field: str) -> Filter:
    return Filter(field, "is_null")


def search(field: str, text: str) -> Filter:
    """Case-insensitive substring match."""
    return Filter(field, "search", text)


class RecordStore(ABC):
    """Interface the file services run against."""

    query_array_limit: int = 25

    @abstractmethod
    async def create(self, collection: str, fields: dict, record_id: Optional[str] = None) -> Any:
        pass

    @abstractmethod
    async def get(self, collection: str, record_id: str) -> Optional[Any]:
        pass

    @abstractmethod
    async def update(self, collection: str, record_id: str, fields: dict) -> Any:
        pass

    @abstractmethod
    async def delete(self, collection: str, record_id: str) -> None:
        pass

    @abstractmethod
    async def list(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        offset: int = 0,
        limit: int = 100,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list:
        pass


class SqlRecordStore(RecordStore):
    """RecordStore backed by the async SQLAlchemy session factory.

    Every call opens its own session and returns detached ORM instances
    (the factory is built with ``expire_on_commit=False``), so records stay
    readable after the call returns and concurrent calls never share a session.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        query_array_limit: Optional[int] = None,
    ):
        self._session_factory = session_factory
        self.query_array_limit = query_array_limit or settings.QUERY_ARRAY_LIMIT

    @staticmethod
    def _model(collection: str) -> type[Base]:
        try:
            return COLLECTIONS[collection]
        except KeyError:
            raise ValueError(f"Unknown collection: {collection}") from None

    def _condition(self, model: type[Base], flt: Filter):
        column = getattr(model, flt.field, None)
        if column is None:
            raise ValueError(f"{model.__tablename__} has no field {flt.field!r}")

        if flt.op == "eq":
            return column.is_(None) if flt.value is None else column == flt.value
        if flt.op == "in":
            if len(flt.value) > self.query_array_limit:
                raise QueryLimitError(len(flt.value), self.query_array_limit)
            return column.in_(flt.value)
        if flt.op == "prefix":
            return column.startswith(flt.value, autoescape=True)
        if flt.op == "is_null":
            return column.is_(None)
        if flt.op == "search":
            return column.icontains(flt.value, autoescape=True)
        raise ValueError(f"Unsupported filter operator {flt.op!r}, expected one of {OPERATORS}")

    async def create(self, collection: str, fields: dict, record_id: Optional[str] = None):
        model = self._model(collection)
        record = model(**fields)
        if record_id:
            record.id = record_id
        try:
            async with self._session_factory() as db:
                db.add(record)
                await db.commit()
        except SQLAlchemyError as e:
            logger.error("Failed to create %s record: %s", collection, e)
            raise StoreUnavailableError(f"create {collection} failed: {e}") from e
        return record

    async def get(self, collection: str, record_id: str):
        model = self._model(collection)
        try:
            async with self._session_factory() as db:
                return await db.get(model, record_id)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"get {collection}/{record_id} failed: {e}") from e

    async def update(self, collection: str, record_id: str, fields: dict):
        model = self._model(collection)
        try:
            async with self._session_factory() as db:
                record = await db.get(model, record_id)
                if record is None:
                    raise NotFoundError(collection, record_id)
                for key, value in fields.items():
                    setattr(record, key, value)
                if hasattr(record, "updated_at"):
                    record.updated_at = utcnow()
                await db.commit()
                return record
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"update {collection}/{record_id} failed: {e}") from e

    async def delete(self, collection: str, record_id: str) -> None:
        model = self._model(collection)
        try:
            async with self._session_factory() as db:
                record = await db.get(model, record_id)
                if record is None:
                    raise NotFoundError(collection, record_id)
                await db.delete(record)
                await db.commit()
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"delete {collection}/{record_id} failed: {e}") from e

    async def list(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        offset: int = 0,
        limit: int = 100,
        order_by: Optional[str] = None,
        descending: bool = False,
    ) -> list:
        model = self._model(collection)
        query = select(model).where(*(self._condition(model, f) for f in filters))

        if order_by:
            column = getattr(model, order_by)
            query = query.order_by(column.desc() if descending else column.asc(), model.id)
        else:
            # Stable default order so offset paging does not skip or repeat rows
            query = query.order_by(model.created_at, model.id)

        query = query.offset(offset).limit(limit)
        try:
            async with self._session_factory() as db:
                result = await db.execute(query)
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"list {collection} failed: {e}") from e
