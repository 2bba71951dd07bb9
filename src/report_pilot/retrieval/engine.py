"""
Retrieval Engine
================

Keeps the hybrid index in sync with the context store and answers
retrieval queries. Reindexing can run synchronously or be dispatched to a
worker pool so the triggering write never waits on it.
"""

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Iterable, Optional

import structlog

from report_pilot.catalog import ContextStore
from report_pilot.models import DocType, RagDocument, RetrievalResult
from report_pilot.retrieval.documents import build_documents
from report_pilot.retrieval.embeddings import Embedder, HashingEmbedder
from report_pilot.retrieval.index import HybridIndex, IndexReport, RetrievalFilters

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SyncReport:
    """Outcome of reindexing one data source."""

    data_source_id: str
    indexed: int
    unchanged: int
    removed: int
    unembedded: int


class RetrievalEngine:
    """Retrieval over the schema, semantic, policy and example corpus."""

    def __init__(
        self,
        store: ContextStore,
        embedder: Optional[Embedder] = None,
        index: Optional[HybridIndex] = None,
        max_workers: int = 2,
    ) -> None:
        self.store = store
        self.index_store = index or HybridIndex(embedder or HashingEmbedder())
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reindex")
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()

    def index(self, document: RagDocument) -> IndexReport:
        return self.index_store.index(document)

    def retrieve(
        self,
        query: str,
        k: int,
        data_source_id: str,
        doc_types: Optional[Iterable[DocType]] = None,
    ) -> RetrievalResult:
        filters = RetrievalFilters(
            data_source_id=data_source_id,
            doc_types=frozenset(doc_types) if doc_types else None,
        )
        return self.index_store.retrieve(query, k, filters)

    def reindex(self, data_source_id: str) -> SyncReport:
        """Rebuild the document set of one data source from the context store."""
        documents = build_documents(self.store, data_source_id)
        indexed = unchanged = unembedded = 0
        for document in documents:
            report = self.index_store.index(document)
            if report.changed:
                indexed += 1
            else:
                unchanged += 1
            if not report.embedded:
                unembedded += 1

        current = {document.doc_id for document in documents}
        stale = self.index_store.document_ids(data_source_id) - current
        for doc_id in stale:
            self.index_store.remove(data_source_id, doc_id)

        report = SyncReport(
            data_source_id=data_source_id,
            indexed=indexed,
            unchanged=unchanged,
            removed=len(stale),
            unembedded=unembedded,
        )
        logger.info(
            "reindex_completed",
            data_source_id=data_source_id,
            indexed=indexed,
            unchanged=unchanged,
            removed=len(stale),
            unembedded=unembedded,
        )
        return report

    def trigger_reindex(self, data_source_id: str) -> Future:
        """Dispatch a reindex without waiting for it. Failures are only logged."""
        future = self._executor.submit(self._reindex_quietly, data_source_id)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        logger.debug("reindex_dispatched", data_source_id=data_source_id)
        return future

    def _reindex_quietly(self, data_source_id: str) -> Optional[SyncReport]:
        try:
            return self.reindex(data_source_id)
        except Exception:
            logger.exception("reindex_failed", data_source_id=data_source_id)
            return None

    def _forget(self, future: Future) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def drain(self, timeout: Optional[float] = None) -> None:
        """Block until every dispatched reindex has finished."""
        with self._pending_lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)
