"""
casepal similarity index: line chunks, bag-of-words vectors, top-k search.

Chunks are mirrored to a remote chromadb collection when one is configured
and reachable. Any remote failure drops the index to an in-memory list for
the rest of the session (until reconnect() succeeds).
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from functools import partial

from casepal.chunking import CHUNK_SIZE, Chunk, chunk_text
from casepal.errors import ConfigError, RemoteStoreError
from casepal.relationships import ProjectStructure
from casepal.remote import DEFAULT_COLLECTION, RemoteStore
from casepal.vectors import (
    SCORING_COSINE,
    SCORING_MODES,
    SCORING_OVERLAP,
    VECTOR_DIMENSION,
    frequency_vector,
    score_texts,
)

# ─────────────────────────────────────────────────────────────────────────────
# Configuration
# ─────────────────────────────────────────────────────────────────────────────

UPSERT_BATCH_SIZE = 10  # chunks per remote upsert
DEFAULT_TOP_K = 3
DEDUPE_OVERFETCH = 4  # remote candidates per requested result when deduping

logger = logging.getLogger(__name__)


def _env_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ConfigError(f"Expected a boolean, got {value!r}")


@dataclass
class IndexSettings:
    """Tunables for SimilarityIndex and its optional remote store."""

    chunk_size: int = CHUNK_SIZE
    dimension: int = VECTOR_DIMENSION
    scoring: str = SCORING_COSINE
    dedupe_by_file: bool = True
    batch_size: int = UPSERT_BATCH_SIZE

    api_key: str | None = None
    host: str = "localhost"
    port: int = 8000
    ssl: bool = False
    tenant: str | None = None
    database: str | None = None
    collection: str = DEFAULT_COLLECTION

    def __post_init__(self) -> None:
        if self.chunk_size < 1:
            raise ConfigError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.dimension < 1:
            raise ConfigError(f"dimension must be positive, got {self.dimension}")
        if self.batch_size < 1:
            raise ConfigError(f"batch_size must be positive, got {self.batch_size}")
        if self.scoring not in SCORING_MODES:
            raise ConfigError(f"scoring must be one of {SCORING_MODES}, got {self.scoring!r}")

    @classmethod
    def load(
        cls,
        config: Mapping | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> IndexSettings:
        """
        Build settings from a parsed config.toml dict, then environment overrides.

        Recognized tables are [index] and [remote]. Environment variables:
        CASEPAL_CHROMA_API_KEY, CASEPAL_CHROMA_HOST, CASEPAL_CHROMA_PORT,
        CASEPAL_COLLECTION, CASEPAL_DEDUPE, CASEPAL_SCORING.
        """
        config = config or {}
        env = os.environ if environ is None else environ

        values: dict = {}
        for table in ("index", "remote"):
            section = config.get(table, {})
            if not isinstance(section, Mapping):
                raise ConfigError(f"Config [{table}] must be a table")
            values.update(section)

        known = set(cls.__dataclass_fields__)
        unknown = set(values) - known
        if unknown:
            raise ConfigError(f"Unknown config keys: {', '.join(sorted(unknown))}")

        if env.get("CASEPAL_CHROMA_API_KEY"):
            values["api_key"] = env["CASEPAL_CHROMA_API_KEY"]
        if env.get("CASEPAL_CHROMA_HOST"):
            values["host"] = env["CASEPAL_CHROMA_HOST"]
        if env.get("CASEPAL_CHROMA_PORT"):
            try:
                values["port"] = int(env["CASEPAL_CHROMA_PORT"])
            except ValueError as e:
                raise ConfigError(f"CASEPAL_CHROMA_PORT must be an integer: {e}") from e
        if env.get("CASEPAL_COLLECTION"):
            values["collection"] = env["CASEPAL_COLLECTION"]
        if env.get("CASEPAL_DEDUPE"):
            values["dedupe_by_file"] = _env_bool(env["CASEPAL_DEDUPE"])
        if env.get("CASEPAL_SCORING"):
            values["scoring"] = env["CASEPAL_SCORING"].strip().lower()

        return cls(**values)

    def make_remote(self) -> RemoteStore | None:
        """RemoteStore for these settings, or None without an API key."""
        if not self.api_key:
            return None
        kwargs = {}
        if self.tenant:
            kwargs["tenant"] = self.tenant
        if self.database:
            kwargs["database"] = self.database
        return RemoteStore(
            api_key=self.api_key,
            host=self.host,
            port=self.port,
            ssl=self.ssl,
            collection=self.collection,
            dimension=self.dimension,
            **kwargs,
        )


# ─────────────────────────────────────────────────────────────────────────────
# Results & State
# ─────────────────────────────────────────────────────────────────────────────


class BackendState(str, Enum):
    UNINITIALIZED = "uninitialized"
    REMOTE_CONNECTED = "remote_connected"
    LOCAL_ONLY = "local_only"


@dataclass
class SimilarCode:
    """A chunk returned by find_similar_code."""

    file_id: str
    content: str
    similarity: float
    start_line: int | None = None
    end_line: int | None = None
    file_path: str | None = None

    def to_dict(self) -> dict:
        return {
            "file_id": self.file_id,
            "content": self.content,
            "similarity": self.similarity,
            "start_line": self.start_line,
            "end_line": self.end_line,
            "file_path": self.file_path,
        }


@dataclass
class _Entry:
    vector: list[float]
    chunk: Chunk
    related_files: list[str] = field(default_factory=list)


def dedupe_by_file(results: Iterable[SimilarCode]) -> list[SimilarCode]:
    """Keep the first (highest ranked) result per file_id."""
    seen: set[str] = set()
    unique = []
    for result in results:
        if result.file_id in seen:
            continue
        seen.add(result.file_id)
        unique.append(result)
    return unique


# ─────────────────────────────────────────────────────────────────────────────
# SimilarityIndex
# ─────────────────────────────────────────────────────────────────────────────


class SimilarityIndex:
    """
    Chunk store answering top-k similarity queries.

    Construct one per process (or per test) and share the handle. All
    public operations are coroutines; chromadb calls run in the default
    executor so they do not block the event loop.
    """

    def __init__(
        self,
        settings: IndexSettings | None = None,
        remote: RemoteStore | None = None,
    ):
        """
        Args:
            settings: Tunables; defaults to IndexSettings().
            remote: Remote store to mirror into. When omitted it is built
                from settings, and stays None without an API key.
        """
        self.settings = settings or IndexSettings()
        self.remote = remote if remote is not None else self.settings.make_remote()
        self.state = BackendState.UNINITIALIZED
        self.structure = ProjectStructure()
        self._entries: list[_Entry] = []
        self._lock = asyncio.Lock()

    # ── backend selection ────────────────────────────────────────────────

    async def _run_remote(self, func, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(func, *args, **kwargs))

    def _degrade(self, operation: str, error: Exception) -> None:
        if self.state is not BackendState.LOCAL_ONLY:
            logger.warning("Remote %s failed, using local index for this session: %s", operation, error)
        self.state = BackendState.LOCAL_ONLY

    async def connect(self) -> BackendState:
        """Run the remote handshake once; later calls return the cached state."""
        if self.state is not BackendState.UNINITIALIZED:
            return self.state
        return await self.reconnect()

    async def reconnect(self) -> BackendState:
        """Re-run the remote handshake regardless of the current state."""
        if self.remote is None:
            logger.info("No remote vector store configured, using local index")
            self.state = BackendState.LOCAL_ONLY
            return self.state

        try:
            await self._run_remote(self.remote.connect)
        except RemoteStoreError as e:
            self._degrade("handshake", e)
            return self.state

        logger.info("Connected to remote vector store collection %s", self.remote.collection_name)
        self.state = BackendState.REMOTE_CONNECTED
        return self.state

    @property
    def remote_connected(self) -> bool:
        return self.state is BackendState.REMOTE_CONNECTED

    # ── project structure ────────────────────────────────────────────────

    def initialize_project_structure(self, files: Iterable[Mapping[str, str]]) -> None:
        """Register project files ({name, path}) for the folder tree."""
        self.structure.initialize(files)

    def get_folder_structure(self, file_ids: Iterable[str] | None = None) -> str:
        """Folder tree plus resolved imports of the given files."""
        return self.structure.render(file_ids)

    # ── indexing ─────────────────────────────────────────────────────────

    async def add_to_index(
        self,
        file_id: str,
        content: str,
        file_path: str | None = None,
    ) -> int:
        """
        Chunk, vectorize and store a file.

        Chunks already indexed for the same file are kept; call clear() to
        start over.

        Returns:
            Number of chunks indexed.
        """
        await self.connect()

        related: list[str] = []
        if file_path:
            related = sorted(self.structure.record_file(file_id, file_path, content))

        chunks = chunk_text(content, file_id, file_path, self.settings.chunk_size)
        if not chunks:
            logger.debug("File %s is empty, nothing to index", file_id)
            return 0

        entries = [
            _Entry(frequency_vector(c.text, self.settings.dimension), c, related)
            for c in chunks
        ]

        batch_size = self.settings.batch_size
        total_batches = (len(entries) + batch_size - 1) // batch_size
        for batch_no, offset in enumerate(range(0, len(entries), batch_size), start=1):
            batch = entries[offset : offset + batch_size]

            if self.remote_connected:
                ids = [f"{file_id}-{offset + j}" for j in range(len(batch))]
                metadatas = []
                for entry in batch:
                    meta = entry.chunk.metadata()
                    if entry.related_files:
                        meta["related_files"] = entry.related_files
                    metadatas.append(meta)
                try:
                    await self._run_remote(
                        self.remote.upsert, ids, [e.vector for e in batch], metadatas
                    )
                    logger.info(
                        "Upserted batch %d/%d of %s (%d chunks)",
                        batch_no, total_batches, file_id, len(batch),
                    )
                    continue
                except RemoteStoreError as e:
                    self._degrade("upsert", e)

            async with self._lock:
                self._entries.extend(batch)
            logger.info(
                "Stored batch %d/%d of %s locally (%d chunks)",
                batch_no, total_batches, file_id, len(batch),
            )

        return len(entries)

    # ── querying ─────────────────────────────────────────────────────────

    def _score_local(
        self,
        query: str,
        query_vector: list[float],
        file_ids: set[str] | None,
    ) -> list[SimilarCode]:
        results = []
        for entry in list(self._entries):
            chunk = entry.chunk
            if file_ids is not None and chunk.file_id not in file_ids:
                continue
            similarity = score_texts(
                query,
                chunk.text,
                self.settings.scoring,
                self.settings.dimension,
                query_vector=query_vector,
                text_vector=entry.vector,
            )
            results.append(SimilarCode(
                file_id=chunk.file_id,
                content=chunk.text,
                similarity=similarity,
                start_line=chunk.start_line,
                end_line=chunk.end_line,
                file_path=chunk.file_path,
            ))
        return results

    async def _query_remote(
        self,
        query: str,
        query_vector: list[float],
        k: int,
        file_ids: set[str] | None,
    ) -> list[SimilarCode] | None:
        """
        Nearest chunks from the remote store, or None if the query failed.

        The store ranks by cosine distance. In overlap mode the candidates
        are re-scored here so they compare with local overlap scores.
        """
        top_k = k * DEDUPE_OVERFETCH if self.settings.dedupe_by_file else k
        try:
            matches = await self._run_remote(
                self.remote.query,
                query_vector,
                top_k,
                sorted(file_ids) if file_ids is not None else None,
            )
        except RemoteStoreError as e:
            self._degrade("query", e)
            return None

        results = []
        for m in matches:
            content = m.metadata.get("text", "")
            similarity = m.similarity
            if self.settings.scoring == SCORING_OVERLAP:
                similarity = score_texts(query, content, SCORING_OVERLAP, self.settings.dimension)
            results.append(SimilarCode(
                file_id=str(m.metadata.get("file_id", "")),
                content=content,
                similarity=similarity,
                start_line=m.metadata.get("start_line"),
                end_line=m.metadata.get("end_line"),
                file_path=m.metadata.get("file_path"),
            ))
        return results

    async def find_similar_code(
        self,
        query: str,
        k: int = DEFAULT_TOP_K,
        file_ids: Iterable[str] | None = None,
    ) -> list[SimilarCode]:
        """
        Return up to k stored chunks most similar to query, best first.

        Args:
            query: Free text to match against indexed code.
            k: Maximum number of results.
            file_ids: Only consider chunks from these files.

        Returns:
            Results sorted by descending similarity. With dedupe_by_file set,
            at most one chunk per file. Empty if local scoring fails.
        """
        if k <= 0:
            return []

        wanted = set(file_ids) if file_ids is not None else None
        if wanted is not None and not wanted:
            return []

        await self.connect()

        try:
            query_vector = frequency_vector(query, self.settings.dimension)

            candidates: list[SimilarCode] = []
            if self.remote_connected:
                remote_results = await self._query_remote(query, query_vector, k, wanted)
                if remote_results is not None:
                    candidates.extend(remote_results)
            candidates.extend(self._score_local(query, query_vector, wanted))

            # sort is stable: ties keep remote order, then insertion order
            candidates.sort(key=lambda r: r.similarity, reverse=True)
            if self.settings.dedupe_by_file:
                candidates = dedupe_by_file(candidates)
            return candidates[:k]
        except Exception:
            logger.exception("Similarity search failed for query %.60r", query)
            return []

    # ── maintenance ──────────────────────────────────────────────────────

    async def clear(self) -> None:
        """Remove every indexed chunk, locally and remotely."""
        await self.connect()

        async with self._lock:
            self._entries.clear()
            self.structure.clear()

        if self.remote_connected:
            try:
                await self._run_remote(self.remote.delete_all)
                logger.info("Cleared remote collection %s", self.remote.collection_name)
            except RemoteStoreError as e:
                self._degrade("delete-all", e)

    def local_chunks(self) -> list[Chunk]:
        """Chunks held in memory, in insertion order."""
        return [e.chunk for e in self._entries]

    async def stats(self) -> dict:
        remote_chunks = None
        if self.remote_connected:
            try:
                remote_chunks = await self._run_remote(self.remote.count)
            except RemoteStoreError as e:
                self._degrade("count", e)
        return {
            "state": self.state.value,
            "local_chunks": len(self._entries),
            "remote_chunks": remote_chunks,
            "files": len({e.chunk.file_id for e in self._entries}),
            "dedupe_by_file": self.settings.dedupe_by_file,
            "scoring": self.settings.scoring,
            "chunk_size": self.settings.chunk_size,
            "dimension": self.settings.dimension,
        }
