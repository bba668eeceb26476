"""
Recovery sweep for stalled documents

A run can die without finishing (process restart, crashed worker). The
document then sits IN_PROGRESS with an expired or missing lease. The
sweep resumes the oldest of them, one at a time, within a time budget.
"""
import threading
import time
from typing import Callable, List, Optional

from pydantic import BaseModel, Field

from billflow.core.models.document_store import DocumentStore
from billflow.core.utils.logging_config import get_logger

logger = get_logger(__name__)


class SweepReport(BaseModel):
    """Outcome of one sweep"""
    limit: int
    selected: List[str] = Field(default_factory=list)
    processed: List[str] = Field(default_factory=list)
    deferred: List[str] = Field(default_factory=list)
    timed_out: bool = False


class RecoverySweeper:
    """
    Resumes IN_PROGRESS documents that no run currently holds

    Args:
        store: Document store
        engine: Stage engine
        default_limit: Documents per sweep when no limit is given
        max_limit: Upper bound for any requested limit
        time_budget_seconds: No new document is started after this much time
        clock: Monotonic seconds, injectable for tests
    """

    def __init__(
        self,
        store: DocumentStore,
        engine,
        default_limit: int = 3,
        max_limit: int = 10,
        time_budget_seconds: float = 50.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.store = store
        self.engine = engine
        self.default_limit = default_limit
        self.max_limit = max_limit
        self.time_budget_seconds = time_budget_seconds
        self.clock = clock

    def clamp_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            limit = self.default_limit
        return max(1, min(int(limit), self.max_limit))

    def sweep(self, limit: Optional[int] = None, target_id: Optional[str] = None) -> SweepReport:
        """
        Resume stalled documents, oldest first

        Args:
            limit: Maximum documents to select (clamped to [1, max_limit])
            target_id: Resume exactly this document instead of selecting

        Returns:
            SweepReport listing selected, processed and deferred ids
        """
        effective_limit = self.clamp_limit(limit)
        if target_id:
            selected = [target_id]
        else:
            selected = self.store.list_stalled(effective_limit)

        report = SweepReport(limit=effective_limit, selected=selected)
        if not selected:
            logger.info("Sweep found no stalled documents")
            return report

        started_at = self.clock()
        for index, document_id in enumerate(selected):
            if self.clock() - started_at >= self.time_budget_seconds:
                report.timed_out = True
                report.deferred = selected[index:]
                logger.warning(f"Sweep time budget spent; deferring {len(report.deferred)} documents")
                break
            self.engine.run(document_id)
            report.processed.append(document_id)

        logger.info(
            f"Sweep processed {len(report.processed)}/{len(selected)} documents "
            f"(limit {effective_limit})"
        )
        return report


class SweepScheduler:
    """Runs the recovery sweep on a fixed interval in a daemon thread"""

    def __init__(self, sweeper: RecoverySweeper, interval_seconds: float):
        self.sweeper = sweeper
        self.interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()

    def start(self):
        if self.interval_seconds <= 0:
            logger.info("Sweep scheduler disabled")
            return
        with self._lock:
            if self._thread and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run_loop,
                name="billflow-sweep-scheduler",
                daemon=True,
            )
            self._thread.start()
        logger.info(f"Sweep scheduler running every {self.interval_seconds}s")

    def stop(self):
        self._stop_event.set()
        with self._lock:
            thread = self._thread
        if thread and thread.is_alive():
            thread.join(timeout=2)

    def _run_loop(self):
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.sweeper.sweep()
            except Exception:
                logger.exception("Scheduled sweep failed")
