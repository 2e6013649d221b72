"""
Retrieval: semantic search over the persisted component documentation index.

The index is built offline into a ChromaDB persistent directory; this module only
opens it and answers "given a query, return ranked passages".
"""

import asyncio
import logging
from pathlib import Path
from typing import Any

import chromadb
from chromadb.config import Settings as ChromaSettings

from ..errors import IndexUnavailable
from ..settings import get_settings

logger = logging.getLogger(__name__)


class RetrievalIndex:
    """Process-wide handle on the documentation collection. Immutable once loaded."""

    def __init__(self, storage_dir: Path | None = None, collection_name: str | None = None) -> None:
        settings = get_settings()
        self._storage_dir = Path(storage_dir or settings.storage_dir)
        self._collection_name = collection_name or settings.collection_name
        self._collection: Any = None
        self._lock = asyncio.Lock()

    @property
    def loaded(self) -> bool:
        return self._collection is not None

    def _open_collection(self) -> Any:
        if not self._storage_dir.exists():
            raise IndexUnavailable(f"Index storage not found: {self._storage_dir}")
        try:
            client = chromadb.PersistentClient(
                path=str(self._storage_dir),
                settings=ChromaSettings(anonymized_telemetry=False),
            )
            return client.get_collection(self._collection_name)
        except Exception as e:
            raise IndexUnavailable(
                f"Failed to open collection {self._collection_name!r}: {e}"
            ) from e

    async def load(self) -> None:
        """Open the persisted collection. Idempotent; concurrent callers share one load.

        Raises:
            IndexUnavailable: storage is missing or the collection cannot be opened.
        """
        if self._collection is not None:
            return
        async with self._lock:
            if self._collection is not None:
                return
            logger.info(
                "[retrieval:load] IN  storage_dir=%s collection=%s",
                self._storage_dir,
                self._collection_name,
            )
            self._collection = await asyncio.to_thread(self._open_collection)
            logger.info("[retrieval:load] OUT collection ready")

    def _search(self, text: str, top_k: int) -> list[dict[str, Any]]:
        results = self._collection.query(
            query_texts=[text],
            n_results=top_k,
            include=["documents", "metadatas", "distances"],
        )
        ids = (results.get("ids") or [[]])[0]
        documents = (results.get("documents") or [[]])[0]
        metadatas = (results.get("metadatas") or [[]])[0]
        distances = (results.get("distances") or [[]])[0]

        passages = []
        for i, doc_id in enumerate(ids):
            metadata = metadatas[i] if i < len(metadatas) and metadatas[i] else {}
            distance = distances[i] if i < len(distances) else 0.0
            passages.append(
                {
                    "id": doc_id,
                    "text": documents[i] if i < len(documents) else "",
                    "score": 1.0 - float(distance),
                    "source": metadata.get("source", ""),
                }
            )
        return passages

    async def query(self, text: str, top_k: int | None = None) -> list[dict[str, Any]]:
        """Return up to top_k passages ranked by similarity to text."""
        if self._collection is None:
            raise IndexUnavailable("Retrieval index is not loaded")
        k = top_k or get_settings().similarity_top_k
        logger.info("[retrieval:query] IN  query=%r top_k=%d", text, k)
        passages = await asyncio.to_thread(self._search, text, k)
        logger.info(
            "[retrieval:query] OUT passages=%d first_sources=%s",
            len(passages),
            [p["source"] for p in passages[:5]],
        )
        return passages
