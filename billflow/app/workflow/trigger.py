"""
Pipeline triggering

start() hands a document to a small pool of worker threads and returns
immediately. A document already waiting in the queue is not queued twice;
the execution lease takes care of a document that is queued while a run
for it is still in flight.
"""
import queue
import threading
from typing import List, Set

from billflow.core.models.database import Document
from billflow.core.models.document_store import DocumentStore
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)

_STOP = object()


class PipelineTaskQueue:
    """Queue of document ids drained by daemon worker threads"""

    def __init__(self, engine, workers: int = 2):
        self.engine = engine
        self.workers = max(1, int(workers))
        self._queue: "queue.Queue" = queue.Queue()
        self._pending: Set[str] = set()
        self._pending_lock = threading.Lock()
        self._threads: List[threading.Thread] = []
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self):
        with self._lock:
            if self.running:
                return
            self._threads = [
                threading.Thread(
                    target=self._work,
                    name=f"billflow-pipeline-{index}",
                    daemon=True,
                )
                for index in range(self.workers)
            ]
            for thread in self._threads:
                thread.start()
        logger.info(f"Pipeline task queue started with {self.workers} workers")

    def stop(self, timeout: float = 5.0):
        with self._lock:
            threads = list(self._threads)
            for _ in threads:
                self._queue.put(_STOP)
        for thread in threads:
            thread.join(timeout=timeout)
        with self._lock:
            self._threads = []
        logger.info("Pipeline task queue stopped")

    def submit(self, document_id: str) -> bool:
        """
        Queue a document for processing

        Returns:
            False when the document is already waiting in the queue
        """
        with self._pending_lock:
            if document_id in self._pending:
                logger.info(f"{document_id} already queued; skipping duplicate trigger")
                return False
            self._pending.add(document_id)
        self._queue.put(document_id)
        return True

    def pending(self) -> Set[str]:
        with self._pending_lock:
            return set(self._pending)

    def wait_idle(self):
        """Block until every queued document has been processed"""
        self._queue.join()

    def run_pending(self):
        """Drain the queue on the calling thread (used when no workers run)"""
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            self._process(item)

    def _work(self):
        while True:
            item = self._queue.get()
            if item is _STOP:
                self._queue.task_done()
                return
            self._process(item)

    def _process(self, document_id):
        with self._pending_lock:
            self._pending.discard(document_id)
        try:
            self.engine.run(document_id)
        except Exception as e:
            logger.error(f"Pipeline run for {document_id} crashed: {e}", exc_info=e)
        finally:
            self._queue.task_done()


class TriggerController:
    """Starts and restarts processing for documents"""

    def __init__(self, store: DocumentStore, task_queue: PipelineTaskQueue):
        self.store = store
        self.task_queue = task_queue

    def start(self, document_id: str) -> bool:
        """Begin or resume processing asynchronously"""
        queued = self.task_queue.submit(document_id)
        if queued:
            logger.info(f"Triggered processing for {document_id}")
        return queued

    def retry(self, document_id: str, caller_id: str) -> Document:
        """
        Reset a document to the first stage and start it again

        Args:
            document_id: Document to retry
            caller_id: Caller; must own the document

        Returns:
            The document in its reset state

        Raises:
            DocumentNotFoundError: If no such document exists
            OwnershipError: If caller_id is not the owner
            InvalidTransitionError: If the document is CONFIRMED
        """
        document = self.store.reset_for_retry(document_id, caller_id)
        self.start(document_id)
        return document

    def drain(self):
        """Process queued work synchronously when no workers are running"""
        if self.task_queue.running:
            self.task_queue.wait_idle()
        else:
            self.task_queue.run_pending()
