"""Remote hosted backend for the row store.

Talks to a Supabase (PostgREST) project through the ``supabase`` client. The
client is created lazily in ``initialize`` so importing this module never
triggers network calls.

Environment variables expected (see ``config.get_settings``):
- SUPABASE_URL
- SUPABASE_KEY
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Iterator, Optional

from supabase import Client, create_client

from config import Settings
from row_store import TABLE_NAMES, Row, RowStore, Selection, StoreUnavailable, Table

logger = logging.getLogger(__name__)

PRIMARY_KEYS: dict[str, tuple[str, ...]] = {
    "users": ("id",),
    "projects": ("id",),
    "project_users": ("project_id", "user_id"),
    "categories": ("id",),
    "transactions": ("id",),
    "notes": ("id",),
    "settings": ("key",),
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _payload(row: Row) -> Row:
    return {field: _jsonable(value) for field, value in row.items()}


class SupabaseSelection(Selection):
    def __init__(self, table: "SupabaseTable", field: str, values: tuple[Any, ...]) -> None:
        self.table = table
        self.field = field
        self.values = tuple(_jsonable(v) for v in values)

    def _filter(self, builder):
        if self.values == (None,):
            return builder.is_(self.field, "null")
        if len(self.values) == 1:
            return builder.eq(self.field, self.values[0])
        return builder.in_(self.field, list(self.values))

    def to_array(self) -> list[Row]:
        builder = self.table.builder().select("*")
        response = self._filter(builder).execute()
        return list(response.data or [])

    def delete(self) -> int:
        response = self._filter(self.table.builder().delete()).execute()
        return len(response.data or [])

    def update(self, values: Row) -> int:
        builder = self.table.builder().update(_payload(values))
        response = self._filter(builder).execute()
        return len(response.data or [])


class SupabaseTable(Table):
    def __init__(self, store: "SupabaseRowStore", name: str) -> None:
        self.store = store
        self.name = name
        self.primary_key = PRIMARY_KEYS[name]

    def builder(self):
        return self.store.client.table(self.name)

    def add(self, row: Row) -> Any:
        response = self.builder().insert(_payload(row)).execute()
        if not response.data:
            raise RuntimeError(f"Insert into {self.name} returned no row")
        inserted = response.data[0]
        key = tuple(inserted.get(name) for name in self.primary_key)
        return key[0] if len(key) == 1 else key

    def get(self, pk: Any) -> Optional[Row]:
        raw = pk if isinstance(pk, tuple) else (pk,)
        builder = self.builder().select("*")
        for field, value in zip(self.primary_key, raw):
            builder = builder.eq(field, _jsonable(value))
        response = builder.limit(1).execute()
        rows = response.data or []
        return rows[0] if rows else None

    def put(self, row: Row) -> None:
        self.builder().upsert(_payload(row)).execute()

    def remove(self, pk: Any) -> int:
        raw = pk if isinstance(pk, tuple) else (pk,)
        builder = self.builder().delete()
        for field, value in zip(self.primary_key, raw):
            builder = builder.eq(field, _jsonable(value))
        response = builder.execute()
        return len(response.data or [])

    def to_array(self) -> list[Row]:
        response = self.builder().select("*").execute()
        return list(response.data or [])

    def selection(self, field: str, values: tuple[Any, ...]) -> Selection:
        return SupabaseSelection(self, field, values)


class SupabaseRowStore(RowStore):
    backend = "supabase"

    def __init__(self, client_factory: Callable[[], Client]) -> None:
        self._client_factory = client_factory
        self._client: Optional[Client] = None
        for name in TABLE_NAMES:
            setattr(self, name, SupabaseTable(self, name))

    @classmethod
    def from_settings(cls, settings: Settings) -> "SupabaseRowStore":
        def factory() -> Client:
            if not settings.supabase_url:
                raise StoreUnavailable("SUPABASE_URL is not set in the environment")
            if not settings.supabase_key:
                raise StoreUnavailable("SUPABASE_KEY is not set in the environment")
            return create_client(settings.supabase_url, settings.supabase_key)

        return cls(factory)

    @property
    def client(self) -> Client:
        if self._client is None:
            raise StoreUnavailable("Store is not initialized")
        return self._client

    def initialize(self) -> None:
        if self._client is not None:
            return
        client = self._client_factory()
        try:
            client.table("users").select("id", count="exact").limit(1).execute()
        except Exception as exc:
            logger.error(f"store_initialize_failed: backend=supabase error={exc}")
            raise StoreUnavailable("Unable to reach the Supabase backend") from exc
        self._client = client
        logger.info("store_initialized: backend=supabase")
        for name in TABLE_NAMES:
            column = PRIMARY_KEYS[name][0]
            try:
                client.table(name).select(column, count="exact").limit(1).execute()
            except Exception as exc:
                logger.warning(f"table_check_failed: table={name} error={exc}")

    def close(self) -> None:
        self._client = None

    @contextmanager
    def atomic(self) -> Iterator[None]:
        # PostgREST offers no client-side transactions; writes apply one by one.
        yield
