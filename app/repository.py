"""
Persistence contract used by the transport core.

Domain services only talk to a Repository: create, get, find/latest,
update, insert_if_absent and a transaction scope. Two implementations:

- InMemoryRepository: dict-backed store used by tests and local runs
- SqlRepository: SQLModel/async SQLAlchemy store; unique constraints on
  the tables are the final arbiter for insert_if_absent
"""

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from contextlib import asynccontextmanager
from contextvars import ContextVar
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Sequence, Type, TypeVar

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import SQLModel, select

from app.core.errors import NotFoundError

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=SQLModel)

_MULTI_VALUE = (list, tuple, set, frozenset)


class Repository(ABC):
    """Abstract persistence collaborator"""

    @abstractmethod
    async def create(self, record: ModelT) -> ModelT:
        pass

    @abstractmethod
    async def get(self, model: Type[ModelT], record_id: uuid.UUID) -> Optional[ModelT]:
        pass

    @abstractmethod
    async def find(
        self,
        model: Type[ModelT],
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        **filters: Any
    ) -> List[ModelT]:
        """
        Equality filters by field name; a list/tuple/set value means
        "field is one of these values".
        """

    @abstractmethod
    async def update(self, record: ModelT, **changes: Any) -> ModelT:
        pass

    @abstractmethod
    async def delete(self, record: ModelT) -> None:
        pass

    @abstractmethod
    async def insert_if_absent(self, record: ModelT, key: Sequence[str]) -> Optional[ModelT]:
        """
        Insert the record unless one with the same values for `key` exists.
        Returns the stored record, or None when the key is already taken.
        """

    @abstractmethod
    def transaction(self) -> Any:
        """Async context manager: all writes inside commit together or not at all"""

    async def latest(self, model: Type[ModelT], order_by: str, **filters: Any) -> Optional[ModelT]:
        rows = await self.find(model, order_by=order_by, descending=True, limit=1, **filters)
        return rows[0] if rows else None

    async def require(self, model: Type[ModelT], record_id: uuid.UUID) -> ModelT:
        record = await self.get(model, record_id)
        if record is None:
            raise NotFoundError(
                f"{model.__name__} {record_id} not found",
                {"model": model.__name__, "id": str(record_id)}
            )
        return record


def _matches(record: SQLModel, filters: Dict[str, Any]) -> bool:
    for name, expected in filters.items():
        value = getattr(record, name)
        if isinstance(expected, _MULTI_VALUE):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


class InMemoryRepository(Repository):
    """Dict-backed repository with an undo log for transactions"""

    def __init__(self):
        self._tables: Dict[type, Dict[uuid.UUID, SQLModel]] = defaultdict(dict)
        self._lock = asyncio.Lock()
        self._undo_log: ContextVar[Optional[List[Callable[[], None]]]] = ContextVar(
            f"undo_log_{id(self)}", default=None
        )

    def _remember(self, action: Callable[[], None]):
        log = self._undo_log.get()
        if log is not None:
            log.append(action)

    async def create(self, record: ModelT) -> ModelT:
        table = self._tables[type(record)]
        if record.id in table:
            raise ValueError(f"{type(record).__name__} {record.id} already exists")

        table[record.id] = record
        self._remember(lambda: table.pop(record.id, None))
        return record

    async def get(self, model: Type[ModelT], record_id: uuid.UUID) -> Optional[ModelT]:
        return self._tables[model].get(record_id)

    async def find(
        self,
        model: Type[ModelT],
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        **filters: Any
    ) -> List[ModelT]:
        rows = [row for row in self._tables[model].values() if _matches(row, filters)]

        if order_by:
            if descending:
                # newest insert wins ties
                rows.reverse()
            rows.sort(key=lambda row: getattr(row, order_by), reverse=descending)

        if limit is not None:
            rows = rows[:limit]
        return rows

    async def update(self, record: ModelT, **changes: Any) -> ModelT:
        previous = {name: getattr(record, name) for name in changes}
        for name, value in changes.items():
            setattr(record, name, value)

        def restore():
            for name, value in previous.items():
                setattr(record, name, value)

        self._remember(restore)
        return record

    async def delete(self, record: ModelT) -> None:
        table = self._tables[type(record)]
        removed = table.pop(record.id, None)
        if removed is not None:
            self._remember(lambda: table.__setitem__(record.id, removed))

    async def insert_if_absent(self, record: ModelT, key: Sequence[str]) -> Optional[ModelT]:
        async with self._lock:
            key_values = {name: getattr(record, name) for name in key}
            existing = [row for row in self._tables[type(record)].values() if _matches(row, key_values)]
            if existing:
                return None
            return await self.create(record)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._undo_log.get() is not None:
            yield
            return

        log: List[Callable[[], None]] = []
        token = self._undo_log.set(log)
        try:
            yield
        except BaseException:
            for action in reversed(log):
                action()
            raise
        finally:
            self._undo_log.reset(token)


class SqlRepository(Repository):
    """Repository over async SQLAlchemy sessions"""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory
        self._session: ContextVar[Optional[AsyncSession]] = ContextVar(
            f"session_{id(self)}", default=None
        )

    @asynccontextmanager
    async def _session_scope(self) -> AsyncIterator[AsyncSession]:
        session = self._session.get()
        if session is not None:
            yield session
            return

        async with self._session_factory() as session:
            async with session.begin():
                yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        if self._session.get() is not None:
            yield
            return

        async with self._session_factory() as session:
            token = self._session.set(session)
            try:
                async with session.begin():
                    yield
            except Exception:
                await self._reload_after_rollback(session)
                raise
            finally:
                self._session.reset(token)

    @staticmethod
    async def _reload_after_rollback(session: AsyncSession):
        """
        Rollback expires every record the transaction touched; reload them so
        callers keep usable objects holding the stored (pre-transaction) values.
        Records created inside the transaction were already expunged.
        """
        for record in list(session.identity_map.values()):
            try:
                await session.refresh(record)
            except SQLAlchemyError as e:
                logger.warning(f"Could not reload {type(record).__name__} after rollback: {e}")
                session.expunge(record)

    async def create(self, record: ModelT) -> ModelT:
        async with self._session_scope() as session:
            session.add(record)
            await session.flush()
        return record

    async def get(self, model: Type[ModelT], record_id: uuid.UUID) -> Optional[ModelT]:
        async with self._session_scope() as session:
            return await session.get(model, record_id)

    async def find(
        self,
        model: Type[ModelT],
        *,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        **filters: Any
    ) -> List[ModelT]:
        statement = select(model)

        for name, value in filters.items():
            column = getattr(model, name)
            if isinstance(value, _MULTI_VALUE):
                statement = statement.where(column.in_(list(value)))
            else:
                statement = statement.where(column == value)

        if order_by:
            column = getattr(model, order_by)
            statement = statement.order_by(column.desc() if descending else column)

        if limit is not None:
            statement = statement.limit(limit)

        async with self._session_scope() as session:
            result = await session.execute(statement)
            return list(result.scalars().all())

    async def update(self, record: ModelT, **changes: Any) -> ModelT:
        async with self._session_scope() as session:
            session.add(record)
            for name, value in changes.items():
                setattr(record, name, value)
            await session.flush()
        return record

    async def delete(self, record: ModelT) -> None:
        async with self._session_scope() as session:
            await session.delete(record)
            await session.flush()

    async def insert_if_absent(self, record: ModelT, key: Sequence[str]) -> Optional[ModelT]:
        # The table's unique constraint decides; `key` documents which one.
        async with self._session_scope() as session:
            try:
                async with session.begin_nested():
                    session.add(record)
            except IntegrityError:
                logger.info(f"{type(record).__name__} already exists for key {tuple(key)}")
                return None
        return record
