"""
Remote vector store backed by a chromadb server.

Every method raises RemoteStoreError on failure; SimilarityIndex decides
what to do about it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass

import chromadb
from chromadb.config import DEFAULT_DATABASE, DEFAULT_TENANT

from casepal.errors import RemoteStoreError

logger = logging.getLogger(__name__)

DEFAULT_COLLECTION = "casepal-code"
TOKEN_HEADER = "x-chroma-token"


@dataclass
class RemoteMatch:
    """One row of a remote top-k query."""

    id: str
    metadata: dict
    similarity: float


class RemoteStore:
    """
    A single chromadb collection used as the remote mirror of the index.

    The collection name is the namespace; it is created with cosine
    distance and tagged with the vector dimension.
    """

    def __init__(
        self,
        api_key: str,
        host: str = "localhost",
        port: int = 8000,
        ssl: bool = False,
        tenant: str = DEFAULT_TENANT,
        database: str = DEFAULT_DATABASE,
        collection: str = DEFAULT_COLLECTION,
        dimension: int = 3072,
    ):
        self.api_key = api_key
        self.host = host
        self.port = port
        self.ssl = ssl
        self.tenant = tenant
        self.database = database
        self.collection_name = collection
        self.dimension = dimension
        self.client = None
        self.collection = None

    def _create_collection(self):
        return self.client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine", "dimension": self.dimension},
        )

    def connect(self) -> None:
        """
        Handshake with the server and make sure the collection exists.

        A collection built for a different dimension is dropped and
        recreated empty.
        """
        try:
            self.client = chromadb.HttpClient(
                host=self.host,
                port=self.port,
                ssl=self.ssl,
                headers={TOKEN_HEADER: self.api_key},
                tenant=self.tenant,
                database=self.database,
            )
            self.client.heartbeat()

            existing = {
                c if isinstance(c, str) else c.name
                for c in self.client.list_collections()
            }
            if self.collection_name in existing:
                collection = self.client.get_collection(self.collection_name)
                stored_dim = (collection.metadata or {}).get("dimension")
                if stored_dim is not None and stored_dim != self.dimension:
                    logger.warning(
                        "Collection %s has dimension %s, expected %s; recreating",
                        self.collection_name, stored_dim, self.dimension,
                    )
                    self.client.delete_collection(self.collection_name)
                    collection = self._create_collection()
            else:
                logger.info("Creating collection %s (dimension %d)", self.collection_name, self.dimension)
                collection = self._create_collection()
        except Exception as e:
            self.client = None
            raise RemoteStoreError(f"chromadb handshake with {self.host}:{self.port} failed: {e}") from e

        self.collection = collection

    def _require_collection(self):
        if self.collection is None:
            raise RemoteStoreError("Remote store is not connected")
        return self.collection

    def upsert(
        self,
        ids: list[str],
        vectors: list[list[float]],
        metadatas: list[dict],
    ) -> None:
        collection = self._require_collection()
        rows = []
        for meta in metadatas:
            row = dict(meta)
            related = row.get("related_files")
            if related is not None:
                # chromadb metadata values must be scalars
                row["related_files"] = json.dumps(list(related))
            rows.append(row)
        try:
            collection.upsert(
                ids=ids,
                embeddings=vectors,
                documents=[row["text"] for row in rows],
                metadatas=rows,
            )
        except Exception as e:
            raise RemoteStoreError(f"upsert of {len(ids)} vectors failed: {e}") from e

    def query(
        self,
        vector: list[float],
        top_k: int,
        file_ids: list[str] | None = None,
    ) -> list[RemoteMatch]:
        """Top-k nearest chunks; similarity is 1 - cosine distance."""
        collection = self._require_collection()
        if file_ids is not None and not file_ids:
            return []
        where = {"file_id": {"$in": list(file_ids)}} if file_ids is not None else None
        try:
            results = collection.query(
                query_embeddings=[vector],
                n_results=top_k,
                where=where,
                include=["metadatas", "distances"],
            )
        except Exception as e:
            raise RemoteStoreError(f"query failed: {e}") from e

        ids = (results.get("ids") or [[]])[0]
        metadatas = (results.get("metadatas") or [[]])[0]
        distances = (results.get("distances") or [[]])[0]

        matches = []
        for i, chunk_id in enumerate(ids):
            meta = dict(metadatas[i] or {}) if i < len(metadatas) else {}
            related = meta.get("related_files")
            if isinstance(related, str):
                meta["related_files"] = json.loads(related)
            dist = distances[i] if i < len(distances) else 1.0
            matches.append(RemoteMatch(id=chunk_id, metadata=meta, similarity=1 - dist))
        return matches

    def delete_all(self) -> None:
        """Drop every vector by recreating the collection."""
        if self.client is None:
            raise RemoteStoreError("Remote store is not connected")
        try:
            self.client.delete_collection(self.collection_name)
            self.collection = self._create_collection()
        except Exception as e:
            self.collection = None
            raise RemoteStoreError(f"delete-all on {self.collection_name} failed: {e}") from e

    def count(self) -> int:
        collection = self._require_collection()
        try:
            return collection.count()
        except Exception as e:
            raise RemoteStoreError(f"count failed: {e}") from e
