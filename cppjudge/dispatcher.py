import asyncio
import logging
from typing import Callable, Optional

from cppjudge.config import MAX_CONCURRENT_JUDGES, MAX_QUEUE_SIZE
from cppjudge.errors import DispatcherBusy, DispatcherClosed
from cppjudge.judge import Judge

logger = logging.getLogger(__name__)


class Dispatcher:
    """Hands new submissions to the judge without blocking the submitter.

    Submissions wait in a bounded queue and are graded by a fixed pool of
    worker tasks. Failures are logged; the submitter has already been answered.
    """

    def __init__(self, judge: Judge, workers: int = MAX_CONCURRENT_JUDGES, max_queue: int = MAX_QUEUE_SIZE):
        self.judge = judge
        self.workers = workers
        self.max_queue = max_queue
        self.queue: Optional[asyncio.Queue] = None
        self.in_flight = 0
        self.completed = 0
        self.failed = 0
        self.on_complete_callback: Optional[Callable] = None
        self._tasks = []

    @property
    def is_running(self) -> bool:
        return bool(self._tasks)

    @property
    def pending(self) -> int:
        return self.queue.qsize() if self.queue is not None else 0

    def set_on_complete_callback(self, callback: Callable[[int, bool], None]):
        self.on_complete_callback = callback

    async def start(self):
        if self._tasks:
            return
        self.queue = asyncio.Queue(maxsize=self.max_queue)
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"judge-worker-{n}")
            for n in range(self.workers)
        ]
        logger.info("Dispatcher started with %d workers (queue size %d)", self.workers, self.max_queue)

    def submit(self, submission_id: int):
        """Queue a submission for grading and return immediately."""
        if not self._tasks:
            raise DispatcherClosed("Dispatcher is not running")
        try:
            self.queue.put_nowait(submission_id)
        except asyncio.QueueFull:
            raise DispatcherBusy(f"Judge queue is full ({self.max_queue} pending)") from None
        logger.info("[Judge #%s] Queued (pending: %d)", submission_id, self.pending)

    async def join(self):
        """Wait until every queued submission has been graded."""
        if self.queue is not None:
            await self.queue.join()

    async def shutdown(self):
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Dispatcher shut down (%d pending dropped)", self.pending)

    async def _worker(self, n: int):
        while True:
            submission_id = await self.queue.get()
            self.in_flight += 1
            ok = False
            try:
                await self.judge.evaluate(submission_id)
                ok = True
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("[Judge #%s] Evaluation failed", submission_id)
            finally:
                self.in_flight -= 1
                if ok:
                    self.completed += 1
                else:
                    self.failed += 1
                self.queue.task_done()

            if self.on_complete_callback:
                try:
                    self.on_complete_callback(submission_id, ok)
                except Exception:
                    logger.exception("[Judge #%s] Completion callback failed", submission_id)
