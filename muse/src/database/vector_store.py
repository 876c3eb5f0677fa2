"""
Muse - Vector Index (LanceDB)
==============================
Read-only wrapper around an already-populated LanceDB table providing
nearest-neighbour search for the Retriever.

Design decisions:
  • **Singleton DB connection** — ``_get_connection()`` caches the
    ``lancedb.DBConnection`` per path at module level, so every index
    object and every concurrent request shares one connection.  It is
    never closed per request.
  • **Non-blocking search** — the LanceDB client is synchronous; each
    search runs in a worker thread (``asyncio.to_thread``) so other
    pipeline runs keep interleaving on the event loop.
  • **Similarity, not distance** — LanceDB returns ``_distance``; for the
    ``cosine`` and ``dot`` distance types similarity is ``1 - distance``.
  • **Consume only** — this module never writes.  A missing table is
    treated as an empty index until ingestion creates it.

Usage:
    from muse.src.database.vector_store import LanceVectorIndex
    index = LanceVectorIndex()
    hits = await index.search(vector, k=4)
"""

from __future__ import annotations

import asyncio
import threading
import time
from typing import Protocol, runtime_checkable

import lancedb
import pyarrow as pa

from muse.config.settings import settings
from muse.src.core.exceptions import ConfigurationError, IndexUnavailable
from muse.src.core.models import EmbeddingVector, PassageMetadata, SearchHit
from muse.src.utils.logger import get_logger

logger = get_logger(__name__)

# ── Type Aliases ──────────────────────────────────────────────────────
SearchRow = dict[str, str | int | float | bool | list[float] | None]


# ── Vector Index Protocol ─────────────────────────────────────────────

@runtime_checkable
class VectorIndex(Protocol):
    """Structural type for any nearest-neighbour passage store."""

    dimensions: int

    async def search(self, vector: EmbeddingVector, k: int) -> list[SearchHit]: ...


# ── Constants ──────────────────────────────────────────────────────────
_VECTOR_COLUMN = "vector"
_DISTANCE_COLUMN = "_distance"
_SCALAR_TYPES = (str, int, float, bool)
_DB_LOCK = threading.Lock()
_db_connection_cache: dict[str, lancedb.DBConnection] = {}


def _get_connection(db_path: str) -> lancedb.DBConnection:
    """
    Return a **singleton** ``lancedb.DBConnection`` for *db_path*.

    Thread-safe via ``_DB_LOCK``.
    """
    if db_path not in _db_connection_cache:
        with _DB_LOCK:
            if db_path not in _db_connection_cache:
                logger.info("Opening new LanceDB connection: %s", db_path)
                _db_connection_cache[db_path] = lancedb.connect(db_path)
    return _db_connection_cache[db_path]


def _vector_width(schema: pa.Schema) -> int:
    """
    Return the fixed length of the ``vector`` column.

    Raises
    ------
    ConfigurationError
        If the column is missing or is not a ``fixed_size_list``.  LanceDB
        only searches fixed-width vectors, so such a table fails every query.
    """
    if _VECTOR_COLUMN not in schema.names:
        raise ConfigurationError(f"Table has no '{_VECTOR_COLUMN}' column (columns: {', '.join(schema.names)}).")
    field_type = schema.field(_VECTOR_COLUMN).type
    if not pa.types.is_fixed_size_list(field_type):
        raise ConfigurationError(f"Column '{_VECTOR_COLUMN}' is {field_type}; re-ingest it as a fixed_size_list of EMBEDDING_DIMENSIONS floats.")
    return field_type.list_size


class LanceVectorIndex:
    """
    ``VectorIndex`` backed by a LanceDB table.

    Parameters
    ----------
    db_path
        Database directory.  Defaults to ``settings.LANCEDB_PATH``.
    table_name
        Table name.  Defaults to ``settings.LANCEDB_TABLE_NAME``.
    dimensions
        Expected vector length.  Defaults to ``settings.EMBEDDING_DIMENSIONS``.
    metric
        LanceDB distance type used at ingestion (``"cosine"`` or ``"dot"``).
    timeout
        Per-search timeout in seconds.

    Raises
    ------
    ConfigurationError
        If the table's fixed vector width disagrees with ``dimensions``.
    """

    __slots__ = ("_db_path", "_table_name", "dimensions", "_metric", "_timeout", "db", "table")

    def __init__(self, db_path: str | None = None, table_name: str | None = None, dimensions: int | None = None, metric: str | None = None, timeout: float | None = None) -> None:
        self._db_path: str = str(db_path or settings.LANCEDB_PATH)
        self._table_name: str = table_name or settings.LANCEDB_TABLE_NAME
        self.dimensions: int = dimensions or settings.EMBEDDING_DIMENSIONS
        self._metric: str = metric or settings.SIMILARITY_METRIC
        self._timeout: float = timeout or settings.SEARCH_TIMEOUT_SECONDS
        self.db: lancedb.DBConnection | None = None
        self.table: lancedb.table.Table | None = None
        self._connect()


    def _connect(self) -> None:
        """Open (or re-use) the LanceDB connection and open the table if present."""
        try:
            self.db = _get_connection(self._db_path)
            self._open_table()
        except OSError as exc:
            logger.error("LanceDB filesystem error at %s: %s", self._db_path, exc)
            raise


    def _open_table(self) -> lancedb.table.Table | None:
        """Lazily open the table if it exists and validate its vector width."""
        if self.table is None and self.db is not None:
            try:
                table = self.db.open_table(self._table_name)
            except (FileNotFoundError, ValueError):
                # LanceDB reports a missing table as ValueError (FileNotFoundError on older releases)
                return None
            width = _vector_width(table.schema)
            if width != self.dimensions:
                raise ConfigurationError(f"Table '{self._table_name}' stores {width}-dim vectors but EMBEDDING_DIMENSIONS={self.dimensions}.")
            self.table = table
            logger.info("Opened table '%s' (%d rows, metric=%s).", self._table_name, table.count_rows(), self._metric)
        return self.table


    def _search_sync(self, vector: EmbeddingVector, k: int) -> list[SearchRow]:
        table = self._open_table()
        if table is None:
            logger.warning("Table '%s' does not exist yet — treating index as empty.", self._table_name)
            return []
        return table.search(vector, vector_column_name=_VECTOR_COLUMN).distance_type(self._metric).limit(k).to_list()


    async def search(self, vector: EmbeddingVector, k: int) -> list[SearchHit]:
        """
        Return up to ``k`` nearest passages, most similar first.

        Raises
        ------
        IndexUnavailable
            On timeout or any LanceDB / filesystem error.
        ConfigurationError
            If the stored vectors have a different width.
        """
        t_start = time.perf_counter()
        try:
            rows = await asyncio.wait_for(asyncio.to_thread(self._search_sync, vector, k), timeout=self._timeout)
        except ConfigurationError:
            raise
        except asyncio.TimeoutError as exc:
            raise IndexUnavailable(f"LanceDB search timed out after {self._timeout:.1f}s") from exc
        except Exception as exc:
            raise IndexUnavailable(f"LanceDB search failed: {exc}") from exc

        hits = [self._to_hit(row) for row in rows]
        logger.info("Search returned %d results in %.1fms.", len(hits), (time.perf_counter() - t_start) * 1000)
        return hits


    @staticmethod
    def _to_hit(row: SearchRow) -> SearchHit:
        distance = float(row.get(_DISTANCE_COLUMN) or 0.0)
        metadata: PassageMetadata = {key: value for key, value in row.items() if key not in ("text", _VECTOR_COLUMN, _DISTANCE_COLUMN) and isinstance(value, _SCALAR_TYPES)}
        return SearchHit(text=str(row.get("text", "")), score=1.0 - distance, metadata=metadata)


    def count(self) -> int:
        """Return the total number of rows in the table."""
        table = self._open_table()
        if table is None:
            return 0
        return table.count_rows()


    def __repr__(self) -> str:
        return f"LanceVectorIndex(db='{self._db_path}', table='{self._table_name}', dims={self.dimensions}, metric='{self._metric}')"
