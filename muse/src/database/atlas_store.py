"""
Muse - Vector Index (MongoDB Atlas Vector Search)
==================================================
``VectorIndex`` adapter for a collection indexed with Atlas Vector
Search, queried through the async ``motor`` driver.

The ``AsyncIOMotorClient`` is a **module-level singleton** per URI: it is
created once, shared by every request, and only closed by
``close_clients()`` at process shutdown.  Closing it per request would
break concurrent requests that still hold a cursor.

Collection layout (populated by an external ingestion job)::

    {
        "<TEXT_KEY>": str,
        "<EMBEDDING_KEY>": [float, ...],
        ... scalar metadata ...
    }
"""

from __future__ import annotations

import asyncio
import re
import time
from typing import Any

import motor.motor_asyncio
from pymongo.errors import OperationFailure, PyMongoError

from muse.config.settings import settings
from muse.src.core.exceptions import ConfigurationError, IndexUnavailable
from muse.src.core.models import EmbeddingVector, PassageMetadata, SearchHit
from muse.src.utils.logger import get_logger

logger = get_logger(__name__)

_SCORE_FIELD = "_score"
_SCALAR_TYPES = (str, int, float, bool)
# Atlas rejects a query vector whose length differs from the index definition
_DIMENSION_MISMATCH = re.compile(r"dimension", re.IGNORECASE)

# ══════════════════════════════════════════════════════════════════════
#  MONGODB SINGLETON CLIENT
# ══════════════════════════════════════════════════════════════════════

_mongo_clients: dict[str, motor.motor_asyncio.AsyncIOMotorClient] = {}


def _get_mongo_client(uri: str) -> motor.motor_asyncio.AsyncIOMotorClient:
    """Return (or create) the module-level async MongoDB client for ``uri``."""
    if uri not in _mongo_clients:
        _mongo_clients[uri] = motor.motor_asyncio.AsyncIOMotorClient(uri)
        logger.info("MongoDB async client created (singleton).")
    return _mongo_clients[uri]


def get_collection(uri: str, namespace: str) -> Any:
    """Resolve ``"<db>.<collection>"`` on the shared client for ``uri``."""
    db_name, collection_name = namespace.split(".")
    return _get_mongo_client(uri)[db_name][collection_name]


def close_clients() -> None:
    """Close every cached MongoDB client.  Call once, at process shutdown."""
    for client in _mongo_clients.values():
        client.close()
    if _mongo_clients:
        logger.info("Closed %d MongoDB client(s).", len(_mongo_clients))
    _mongo_clients.clear()


class AtlasVectorIndex:
    """
    ``VectorIndex`` over a MongoDB Atlas collection.

    Parameters
    ----------
    collection
        A motor collection.  When omitted it is resolved from
        ``settings.MONGO_URI`` and ``settings.MONGO_NAMESPACE``.
    index_name
        Atlas Vector Search index name.
    text_key / embedding_key
        Field names holding the passage text and its vector.
    dimensions
        Vector length the Atlas index was defined with.
    candidate_multiplier
        ``numCandidates = k * candidate_multiplier`` (ANN recall knob).
    """

    __slots__ = ("_collection", "_index_name", "_text_key", "_embedding_key", "dimensions", "_candidate_multiplier", "_timeout")

    def __init__(self, collection: Any = None, index_name: str | None = None, text_key: str | None = None, embedding_key: str | None = None, dimensions: int | None = None, candidate_multiplier: int | None = None, timeout: float | None = None) -> None:
        self._collection = collection if collection is not None else self._default_collection()
        self._index_name: str = index_name or settings.ATLAS_INDEX_NAME
        self._text_key: str = text_key or settings.TEXT_KEY
        self._embedding_key: str = embedding_key or settings.EMBEDDING_KEY
        self.dimensions: int = dimensions or settings.EMBEDDING_DIMENSIONS
        self._candidate_multiplier: int = candidate_multiplier or settings.ATLAS_CANDIDATE_MULTIPLIER
        self._timeout: float = timeout or settings.SEARCH_TIMEOUT_SECONDS


    @staticmethod
    def _default_collection() -> Any:
        if settings.MONGO_URI is None:
            raise ConfigurationError("MONGO_URI is not configured.")
        return get_collection(settings.MONGO_URI.get_secret_value(), settings.MONGO_NAMESPACE)


    def _pipeline(self, vector: EmbeddingVector, k: int) -> list[dict[str, Any]]:
        return [
            {"$vectorSearch": {"index": self._index_name, "path": self._embedding_key, "queryVector": vector, "numCandidates": k * self._candidate_multiplier, "limit": k}},
            {"$project": {"_id": 0, self._embedding_key: 0}},
            {"$addFields": {_SCORE_FIELD: {"$meta": "vectorSearchScore"}}},
        ]


    async def search(self, vector: EmbeddingVector, k: int) -> list[SearchHit]:
        """
        Run ``$vectorSearch`` and return up to ``k`` hits.

        Raises
        ------
        IndexUnavailable
            On timeout or any driver error (connectivity, auth, missing index).
        ConfigurationError
            If Atlas reports that the query vector width does not match the index.
        """
        t_start = time.perf_counter()
        try:
            cursor = self._collection.aggregate(self._pipeline(vector, k))
            docs = await asyncio.wait_for(cursor.to_list(length=k), timeout=self._timeout)
        except asyncio.TimeoutError as exc:
            raise IndexUnavailable(f"Atlas search timed out after {self._timeout:.1f}s") from exc
        except OperationFailure as exc:
            if _DIMENSION_MISMATCH.search(str(exc)):
                raise ConfigurationError(f"Query vector has {len(vector)} dimensions but Atlas index '{self._index_name}' disagrees: {exc}") from exc
            raise IndexUnavailable(f"Atlas search failed: {exc}") from exc
        except PyMongoError as exc:
            raise IndexUnavailable(f"Atlas search failed: {exc}") from exc

        hits = [self._to_hit(doc) for doc in docs]
        logger.info("Atlas search returned %d results in %.1fms.", len(hits), (time.perf_counter() - t_start) * 1000)
        return hits


    def _to_hit(self, doc: dict[str, Any]) -> SearchHit:
        metadata: PassageMetadata = {key: value for key, value in doc.items() if key not in (self._text_key, _SCORE_FIELD) and isinstance(value, _SCALAR_TYPES)}
        return SearchHit(text=str(doc.get(self._text_key, "")), score=float(doc.get(_SCORE_FIELD, 0.0)), metadata=metadata)


    def __repr__(self) -> str:
        return f"AtlasVectorIndex(index='{self._index_name}', dims={self.dimensions})"
