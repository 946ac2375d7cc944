"""Table-like storage contract shared by every backend.

Services only ever talk to a ``RowStore``: ``add``, ``get``, ``put``,
``where(field).equals(value)`` / ``where(field).any_of(values)`` and the
``to_array``/``first``/``count``/``delete``/``update`` operations on the
resulting selection. Rows are plain dicts of JSON scalars (enums as their
values, timestamps as ISO-8601 strings) whatever the backend.

``SQLRowStore`` is the embedded relational backend built on SQLAlchemy. The
remote hosted backend lives in ``supabase_store``. ``build_row_store`` picks
one from the settings at composition time.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Iterator, Optional

from sqlalchemy import DateTime, Enum as SAEnum, Integer, delete, select, text, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from config import Settings, ensure_data_dir
from database import Base, make_engine, make_session_factory, session_scope
from models import TABLE_MODELS

logger = logging.getLogger(__name__)

Row = dict[str, Any]

TABLE_NAMES = (
    "users",
    "projects",
    "project_users",
    "categories",
    "transactions",
    "notes",
    "settings",
)


class StoreUnavailable(RuntimeError):
    """The backing store cannot be reached or was never initialized."""


class Selection(ABC):
    @abstractmethod
    def to_array(self) -> list[Row]: ...

    @abstractmethod
    def delete(self) -> int: ...

    @abstractmethod
    def update(self, values: Row) -> int: ...

    def first(self) -> Optional[Row]:
        rows = self.to_array()
        return rows[0] if rows else None

    def count(self) -> int:
        return len(self.to_array())


class EmptySelection(Selection):
    def to_array(self) -> list[Row]:
        return []

    def delete(self) -> int:
        return 0

    def update(self, values: Row) -> int:
        return 0


class Query:
    def __init__(self, table: "Table", field: str) -> None:
        self.table = table
        self.field = field

    def equals(self, value: Any) -> Selection:
        return self.table.selection(self.field, (value,))

    def any_of(self, values: Iterable[Any]) -> Selection:
        values = tuple(values)
        if not values:
            return EmptySelection()
        return self.table.selection(self.field, values)


class Table(ABC):
    name: str
    primary_key: tuple[str, ...]

    def where(self, field: str) -> Query:
        return Query(self, field)

    @abstractmethod
    def add(self, row: Row) -> Any:
        """Insert ``row`` and return its primary key (a tuple for composite keys)."""

    @abstractmethod
    def get(self, pk: Any) -> Optional[Row]: ...

    @abstractmethod
    def put(self, row: Row) -> None:
        """Insert or replace ``row`` by primary key."""

    @abstractmethod
    def remove(self, pk: Any) -> int:
        """Delete the row with primary key ``pk``; returns the number removed."""

    @abstractmethod
    def to_array(self) -> list[Row]: ...

    @abstractmethod
    def selection(self, field: str, values: tuple[Any, ...]) -> Selection:
        """Rows whose ``field`` is one of ``values``; ``(None,)`` matches NULL."""


class RowStore(ABC):
    users: Table
    projects: Table
    project_users: Table
    categories: Table
    transactions: Table
    notes: Table
    settings: Table

    backend: str = "abstract"

    def table(self, name: str) -> Table:
        if name not in TABLE_NAMES:
            raise ValueError(f"Unknown table: {name}")
        return getattr(self, name)

    @abstractmethod
    def initialize(self) -> None: ...

    @abstractmethod
    def close(self) -> None: ...

    @abstractmethod
    def atomic(self):
        """Context manager grouping writes into one all-or-nothing unit."""


class SQLSelection(Selection):
    def __init__(self, table: "SQLTable", field: str, values: tuple[Any, ...]) -> None:
        self.table = table
        self.field = field
        self.values = values

    def _criterion(self):
        column = getattr(self.table.model, self.field)
        if self.values == (None,):
            return column.is_(None)
        return column.in_(self.values)

    def to_array(self) -> list[Row]:
        stmt = (
            select(self.table.model)
            .where(self._criterion())
            .order_by(*self.table.model.__table__.primary_key.columns)
        )
        with self.table.store.session() as session:
            return [self.table.to_row(obj) for obj in session.scalars(stmt)]

    def count(self) -> int:
        return len(self.to_array())

    def delete(self) -> int:
        with self.table.store.session() as session:
            result = session.execute(
                delete(self.table.model).where(self._criterion())
            )
            return int(result.rowcount or 0)

    def update(self, values: Row) -> int:
        coerced = {field: self.table.coerce(field, v) for field, v in values.items()}
        with self.table.store.session() as session:
            result = session.execute(
                update(self.table.model).where(self._criterion()).values(**coerced)
            )
            return int(result.rowcount or 0)


class SQLTable(Table):
    def __init__(self, store: "SQLRowStore", name: str, model: type[Base]) -> None:
        self.store = store
        self.name = name
        self.model = model
        self._columns = {column.name: column for column in model.__table__.columns}
        self.primary_key = tuple(
            column.name for column in model.__table__.primary_key.columns
        )

    def coerce(self, field: str, value: Any) -> Any:
        column = self._columns.get(field)
        if column is None:
            raise ValueError(f"Unknown field: {self.name}.{field}")
        if value is None:
            return None
        col_type = column.type
        if isinstance(col_type, SAEnum) and col_type.enum_class is not None:
            if not isinstance(value, Enum):
                return col_type.enum_class(value)
            return value
        if isinstance(col_type, DateTime) and isinstance(value, str):
            return datetime.fromisoformat(value)
        if isinstance(col_type, Integer) and isinstance(value, str):
            return int(value)
        return value

    def to_row(self, obj: Base) -> Row:
        row: Row = {}
        for name in self._columns:
            value = getattr(obj, name)
            if isinstance(value, Enum):
                value = value.value
            elif isinstance(value, datetime):
                value = value.isoformat()
            row[name] = value
        return row

    def add(self, row: Row) -> Any:
        values = {
            field: self.coerce(field, value)
            for field, value in row.items()
            if value is not None
        }
        with self.store.session() as session:
            obj = self.model(**values)
            session.add(obj)
            session.flush()
            key = tuple(getattr(obj, name) for name in self.primary_key)
        return key[0] if len(key) == 1 else key

    def get(self, pk: Any) -> Optional[Row]:
        raw = pk if isinstance(pk, tuple) else (pk,)
        try:
            key = tuple(
                self.coerce(field, value) for field, value in zip(self.primary_key, raw)
            )
        except ValueError:
            return None
        with self.store.session() as session:
            obj = session.get(self.model, key if len(key) > 1 else key[0])
            return self.to_row(obj) if obj is not None else None

    def put(self, row: Row) -> None:
        values = {field: self.coerce(field, value) for field, value in row.items()}
        with self.store.session() as session:
            session.merge(self.model(**values))
            session.flush()

    def remove(self, pk: Any) -> int:
        raw = pk if isinstance(pk, tuple) else (pk,)
        try:
            key = tuple(
                self.coerce(field, value) for field, value in zip(self.primary_key, raw)
            )
        except ValueError:
            return 0
        with self.store.session() as session:
            obj = session.get(self.model, key if len(key) > 1 else key[0])
            if obj is None:
                return 0
            session.delete(obj)
            session.flush()
        return 1

    def to_array(self) -> list[Row]:
        stmt = select(self.model).order_by(*self.model.__table__.primary_key.columns)
        with self.store.session() as session:
            return [self.to_row(obj) for obj in session.scalars(stmt)]

    def selection(self, field: str, values: tuple[Any, ...]) -> Selection:
        coerced = []
        for value in values:
            try:
                coerced.append(self.coerce(field, value))
            except ValueError:
                # a key that cannot exist in this column matches nothing
                continue
        if not coerced:
            return EmptySelection()
        return SQLSelection(self, field, tuple(coerced))


class SQLRowStore(RowStore):
    backend = "sql"

    def __init__(self, database_url: str, *, create_schema: bool = True) -> None:
        self.database_url = database_url
        self.create_schema = create_schema
        self.engine = None
        self._factory: Optional[sessionmaker[Session]] = None
        # the open atomic unit belongs to the thread that started it
        self._local = threading.local()
        for name in TABLE_NAMES:
            setattr(self, name, SQLTable(self, name, TABLE_MODELS[name]))

    def initialize(self) -> None:
        if self.engine is not None:
            return
        try:
            ensure_data_dir(self.database_url)
        except OSError as exc:
            raise StoreUnavailable(f"Cannot create data directory: {exc}") from exc
        engine = make_engine(self.database_url)
        try:
            with engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            if self.create_schema:
                Base.metadata.create_all(engine)
        except SQLAlchemyError as exc:
            engine.dispose()
            raise StoreUnavailable(
                f"Cannot open database {engine.url.render_as_string(hide_password=True)}"
            ) from exc
        self.engine = engine
        self._factory = make_session_factory(engine)
        logger.info(
            f"store_initialized: backend=sql url={engine.url.render_as_string(hide_password=True)}"
        )

    def close(self) -> None:
        if self.engine is None:
            return
        self.engine.dispose()
        self.engine = None
        self._factory = None
        logger.info("store_closed: backend=sql")

    def _active_session(self) -> Optional[Session]:
        return getattr(self._local, "session", None)

    @contextmanager
    def session(self) -> Iterator[Session]:
        active = self._active_session()
        if active is not None:
            yield active
            return
        if self._factory is None:
            raise StoreUnavailable("Store is not initialized")
        with session_scope(self._factory) as session:
            yield session

    @contextmanager
    def atomic(self) -> Iterator[None]:
        if self._active_session() is not None:
            yield
            return
        with self.session() as session:
            self._local.session = session
            try:
                yield
            finally:
                self._local.session = None


def build_row_store(settings: Settings) -> RowStore:
    if settings.backend == "sql":
        return SQLRowStore(settings.database_url)
    if settings.backend == "supabase":
        from supabase_store import SupabaseRowStore

        return SupabaseRowStore.from_settings(settings)
    raise ValueError(f"Unsupported storage backend: {settings.backend}")
