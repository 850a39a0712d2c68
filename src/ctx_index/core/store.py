"""Chunk and vector storage.

Two stores share one interface:

- ``InMemoryChunkStore`` scans a numpy matrix and cannot filter natively, so
  the dense retriever post-filters its hits with ``matches_filters``.
- ``LanceChunkStore`` persists to LanceDB and pushes filters down as a
  prefilter built by ``build_where_clause``.

Both report cosine similarity (``1 - cosine distance``) as the score, record
the embedding model and dimensionality of the first write, and reject later
writes whose vectors have a different length. Writes land a batch at a time;
readers never wait for an indexing run and see the batches written so far.
"""

import asyncio
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

import lancedb
import numpy as np
import orjson
import pyarrow as pa
from loguru import logger

from .exceptions import DatabaseError, DimensionMismatchError
from .filters import build_where_clause, format_search_result
from .models import Chunk, EmbeddedChunk, SearchQueryOptions

# Maximum ids per SQL IN clause when deleting (keeps DataFusion parse trees shallow)
DELETE_BATCH_LIMIT = 500


class ChunkStore(Protocol):
    """Storage consumed by the indexing session and the retrievers."""

    supports_native_filters: bool

    @property
    def dimensions(self) -> int | None: ...

    @property
    def model(self) -> str | None: ...

    @property
    def models(self) -> frozenset[str]: ...

    @property
    def version(self) -> int: ...

    async def add(self, chunks: Sequence[EmbeddedChunk]) -> int: ...

    async def search_vectors(
        self,
        vector: Sequence[float],
        limit: int | None = None,
        options: SearchQueryOptions | None = None,
    ) -> list[tuple[Chunk, float]]: ...

    async def get_chunks(self) -> list[Chunk]: ...

    async def count(self) -> int: ...

    async def delete_project(self, project_id: str) -> int: ...


class _IndexIdentity:
    """Tracks which model and dimensionality an index was built with."""

    def __init__(self, dimensions: int | None = None, model: str | None = None) -> None:
        self._dimensions = dimensions
        self._model = model
        self._models: set[str] = {model} if model else set()
        self._version = 0

    @property
    def dimensions(self) -> int | None:
        return self._dimensions

    @property
    def model(self) -> str | None:
        return self._model

    @property
    def models(self) -> frozenset[str]:
        return frozenset(self._models)

    @property
    def version(self) -> int:
        return self._version

    def _check_batch(self, chunks: Sequence[EmbeddedChunk]) -> None:
        dims = self._dimensions if self._dimensions is not None else chunks[0].dimensions
        for chunk in chunks:
            if len(chunk.vector) != dims or chunk.dimensions != dims:
                raise DimensionMismatchError(
                    f"Chunk {chunk.id!r} has a {len(chunk.vector)}-dimensional vector "
                    f"({chunk.model}), index expects {dims}",
                    {
                        "chunk_id": chunk.id,
                        "expected": dims,
                        "actual": len(chunk.vector),
                        "model": chunk.model,
                    },
                )

    def _record_batch(self, chunks: Sequence[EmbeddedChunk]) -> None:
        if self._dimensions is None:
            self._dimensions = chunks[0].dimensions
            logger.info(f"Index dimension set to {self._dimensions}D")
        if self._model is None:
            self._model = chunks[0].model
        self._models.update(chunk.model for chunk in chunks)
        self._version += 1


class InMemoryChunkStore(_IndexIdentity):
    """Process-local store using brute-force cosine similarity."""

    supports_native_filters = False

    def __init__(self, dimensions: int | None = None, model: str | None = None) -> None:
        super().__init__(dimensions, model)
        self._rows: list[EmbeddedChunk] = []
        self._matrix: np.ndarray | None = None
        self._matrix_version = -1
        self._write_lock = asyncio.Lock()

    async def add(self, chunks: Sequence[EmbeddedChunk]) -> int:
        """Insert or replace chunks by id."""
        if not chunks:
            return 0
        self._check_batch(chunks)
        async with self._write_lock:
            incoming = {chunk.id: chunk for chunk in chunks}
            kept = [row for row in self._rows if row.id not in incoming]
            # Readers keep the list they already hold
            self._rows = kept + list(incoming.values())
            self._record_batch(chunks)
        return len(incoming)

    def _snapshot(self) -> tuple[list[EmbeddedChunk], np.ndarray | None]:
        rows = self._rows
        if not rows:
            return rows, None
        if self._matrix is None or self._matrix_version != self._version:
            matrix = np.asarray([row.vector for row in rows], dtype=np.float64)
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            self._matrix = matrix / norms
            self._matrix_version = self._version
        return rows, self._matrix

    async def search_vectors(
        self,
        vector: Sequence[float],
        limit: int | None = None,
        options: SearchQueryOptions | None = None,
    ) -> list[tuple[Chunk, float]]:
        """Rank all chunks by cosine similarity.

        ``options`` only contributes ``min_score``; metadata filters are left
        to the caller.
        """
        rows, matrix = self._snapshot()
        if matrix is None:
            return []
        if self._dimensions is not None and len(vector) != self._dimensions:
            raise DimensionMismatchError(
                f"Query vector has {len(vector)} dimensions, index has {self._dimensions}",
                {"expected": self._dimensions, "actual": len(vector)},
            )

        query = np.asarray(vector, dtype=np.float64)
        norm = np.linalg.norm(query)
        if norm == 0:
            return []
        scores = matrix @ (query / norm)
        # Stable sort keeps insertion order among equal scores
        order = np.argsort(-scores, kind="stable")

        min_score = options.min_score if options else None
        hits = []
        for idx in order:
            score = float(scores[idx])
            if min_score is not None and score < min_score:
                break
            hits.append((rows[idx].to_chunk(), score))
            if limit is not None and len(hits) >= limit:
                break
        return hits

    async def get_chunks(self) -> list[Chunk]:
        return [row.to_chunk() for row in self._rows]

    async def count(self) -> int:
        return len(self._rows)

    async def delete_project(self, project_id: str) -> int:
        async with self._write_lock:
            before = len(self._rows)
            self._rows = [
                row for row in self._rows if row.metadata.get("project_id") != project_id
            ]
            removed = before - len(self._rows)
            if removed:
                self._version += 1
        return removed


def _create_chunks_schema(vector_dim: int) -> pa.Schema:
    """Create the chunks table schema for a vector dimension.

    ``file_type``, ``language`` and ``project_id`` hold the values
    ``format_search_result`` derives from the metadata, so SQL filters on
    them agree with ``matches_filters``.
    """
    return pa.schema(
        [
            pa.field("id", pa.string()),
            pa.field("vector", pa.list_(pa.float32(), vector_dim)),
            pa.field("content", pa.string()),
            pa.field("file_path", pa.string()),
            pa.field("file_type", pa.string()),
            pa.field("language", pa.string(), nullable=True),
            pa.field("start_line", pa.int32()),
            pa.field("end_line", pa.int32()),
            pa.field("project_id", pa.string()),
            pa.field("provider", pa.string()),
            pa.field("model", pa.string()),
            pa.field("metadata_json", pa.string()),
        ]
    )


class LanceChunkStore(_IndexIdentity):
    """LanceDB-backed store with native metadata filtering.

    Example:
        store = LanceChunkStore(index_path)
        await store.initialize()
        await store.add(embedded_chunks)
        hits = await store.search_vectors(query_vector, limit=10, options=options)
    """

    supports_native_filters = True
    TABLE_NAME = "chunks"
    META_FILE = "index_meta.json"

    def __init__(
        self,
        db_path: Path,
        dimensions: int | None = None,
        model: str | None = None,
        table_name: str = TABLE_NAME,
    ) -> None:
        super().__init__(dimensions, model)
        self.db_path = Path(db_path)
        self.table_name = table_name
        self._db: Any = None
        self._table: Any = None
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Connect and open the chunks table if it exists.

        Raises:
            DatabaseError: If the database cannot be opened
            DimensionMismatchError: If the existing table was built with a
                different dimensionality than the one requested
        """
        try:
            self.db_path.mkdir(parents=True, exist_ok=True)
            logger.info(f"Connecting to LanceDB at: {self.db_path}")
            self._db = lancedb.connect(str(self.db_path))

            tables_response = self._db.list_tables()
            table_names = (
                tables_response.tables
                if hasattr(tables_response, "tables")
                else tables_response
            )
            if self.table_name in table_names:
                self._table = self._db.open_table(self.table_name)
            else:
                self._table = None
                logger.debug("Chunks table will be created on first write")
        except Exception as e:
            logger.error(f"Failed to initialize LanceDB store: {e}")
            raise DatabaseError(f"LanceDB store initialization failed: {e}") from e

        self._load_meta()

        if self._table is not None:
            vector_field = self._table.schema.field("vector")
            existing_dim = getattr(vector_field.type, "list_size", None)
            if self._dimensions is None:
                self._dimensions = existing_dim
            elif existing_dim is not None and existing_dim != self._dimensions:
                raise DimensionMismatchError(
                    f"Index at {self.db_path} has {existing_dim}D vectors, "
                    f"expected {self._dimensions}D",
                    {"expected": self._dimensions, "actual": existing_dim},
                )

    def _meta_path(self) -> Path:
        return self.db_path / self.META_FILE

    def _load_meta(self) -> None:
        path = self._meta_path()
        if not path.exists():
            return
        try:
            meta = orjson.loads(path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable index metadata {path}: {e}")
            return
        if self._model is None:
            self._model = meta.get("model")
        self._models.update(meta.get("models", []))

    def _save_meta(self) -> None:
        meta = {
            "model": self._model,
            "models": sorted(self._models),
            "dimensions": self._dimensions,
        }
        self._meta_path().write_bytes(orjson.dumps(meta))

    def _require_db(self) -> None:
        if self._db is None:
            raise DatabaseError("LanceDB store not initialized; call initialize()")

    @staticmethod
    def _to_row(chunk: EmbeddedChunk) -> dict[str, Any]:
        formatted = format_search_result(chunk.id, 0.0, chunk.content, chunk.metadata)
        return {
            "id": chunk.id,
            "vector": chunk.vector,
            "content": chunk.content,
            "file_path": formatted.file_path,
            "file_type": formatted.file_type,
            "language": formatted.language,
            "start_line": formatted.line_range.start,
            "end_line": formatted.line_range.end,
            "project_id": formatted.project_id or "",
            "provider": chunk.provider,
            "model": chunk.model,
            "metadata_json": orjson.dumps(dict(chunk.metadata), default=str).decode(),
        }

    @staticmethod
    def _to_chunk(row: dict[str, Any]) -> Chunk:
        try:
            metadata = orjson.loads(row.get("metadata_json") or "{}")
        except orjson.JSONDecodeError:
            metadata = {}
        return Chunk(id=row["id"], content=row["content"], metadata=metadata)

    def _delete_ids(self, ids: list[str]) -> None:
        for i in range(0, len(ids), DELETE_BATCH_LIMIT):
            batch = ids[i : i + DELETE_BATCH_LIMIT]
            id_list = ", ".join(f"'{cid.replace(chr(39), chr(39) * 2)}'" for cid in batch)
            self._table.delete(f"id IN ({id_list})")

    async def add(self, chunks: Sequence[EmbeddedChunk]) -> int:
        """Insert or replace chunks by id.

        Raises:
            DimensionMismatchError: If a vector does not match the index
            DatabaseError: If the write fails
        """
        self._require_db()
        if not chunks:
            return 0
        self._check_batch(chunks)

        async with self._write_lock:
            dims = self._dimensions or chunks[0].dimensions
            schema = _create_chunks_schema(dims)
            try:
                table = pa.Table.from_pylist(
                    [self._to_row(chunk) for chunk in chunks], schema=schema
                )
                if self._table is None:
                    self._table = self._db.create_table(
                        self.table_name, table, schema=schema
                    )
                    logger.debug(f"Created chunks table ({dims}D)")
                else:
                    self._delete_ids([chunk.id for chunk in chunks])
                    self._table.add(table, mode="append")
            except Exception as e:
                logger.error(f"Failed to add {len(chunks)} chunks to LanceDB: {e}")
                raise DatabaseError(f"Failed to add chunks: {e}") from e

            self._record_batch(chunks)
            self._save_meta()
        return len(chunks)

    async def search_vectors(
        self,
        vector: Sequence[float],
        limit: int | None = None,
        options: SearchQueryOptions | None = None,
    ) -> list[tuple[Chunk, float]]:
        """Nearest chunks by cosine similarity with filters pushed down.

        Raises:
            DimensionMismatchError: If the query vector length is wrong
            DatabaseError: If the query fails
        """
        self._require_db()
        if self._table is None:
            return []
        if self._dimensions is not None and len(vector) != self._dimensions:
            raise DimensionMismatchError(
                f"Query vector has {len(vector)} dimensions, index has {self._dimensions}",
                {"expected": self._dimensions, "actual": len(vector)},
            )

        try:
            row_limit = limit if limit is not None else max(1, self._table.count_rows())
            query = (
                self._table.search(list(vector))
                .distance_type("cosine")
                .limit(row_limit)
            )
            where_clause = build_where_clause(options)
            if where_clause:
                query = query.where(where_clause, prefilter=True)
            rows = query.to_list()
        except Exception as e:
            logger.error(f"LanceDB vector search failed: {e}")
            raise DatabaseError(f"Vector search failed: {e}") from e

        min_score = options.min_score if options else None
        hits = []
        for row in rows:
            score = 1.0 - float(row.get("_distance", 1.0))
            if min_score is not None and score < min_score:
                continue
            hits.append((self._to_chunk(row), score))
        return hits

    async def get_chunks(self) -> list[Chunk]:
        self._require_db()
        if self._table is None:
            return []
        rows = self._table.to_arrow().select(["id", "content", "metadata_json"])
        return [self._to_chunk(row) for row in rows.to_pylist()]

    async def count(self) -> int:
        self._require_db()
        if self._table is None:
            return 0
        return self._table.count_rows()

    async def delete_project(self, project_id: str) -> int:
        self._require_db()
        if self._table is None:
            return 0
        escaped = project_id.replace("'", "''")
        async with self._write_lock:
            try:
                removed = self._table.count_rows(f"project_id = '{escaped}'")
                if removed:
                    self._table.delete(f"project_id = '{escaped}'")
                    self._version += 1
            except Exception as e:
                raise DatabaseError(f"Failed to delete project {project_id}: {e}") from e
        logger.info(f"Deleted {removed} chunks for project {project_id}")
        return removed

    async def close(self) -> None:
        self._table = None
        self._db = None
