"""
Request Dispatcher: runs classification requests one at a time on a dedicated worker thread.

Requests are served in arrival order and every request ends in exactly one
ClassificationResult delivered through its future, failures included.
"""
import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from typing import Any, Callable, Optional

from signlang.common.errors import ShutdownError
from signlang.common.model import ClassificationResult, RequestStatus
from signlang.common.util import generate_request_id
from signlang.worker.inference.inference_engine import InferenceEngine
from signlang.worker.inference.model_store import ModelHandle, ModelStore

logger = logging.getLogger(__name__)


class PendingResult:
    """Caller-side view of a submitted request."""

    def __init__(self, request_id: str, features: Any, meta: Optional[dict[str, Any]] = None):
        self.request_id = request_id
        self.features = features
        self.meta = meta
        self.status = RequestStatus.QUEUED
        self.future: Future[ClassificationResult] = Future()
        self.submitted_at = time.time()
        self.cancel_requested = False

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> ClassificationResult:
        return self.future.result(timeout)

    def add_done_callback(self, fn: Callable[[ClassificationResult], Any]) -> None:
        self.future.add_done_callback(lambda f: fn(f.result()))

    def __repr__(self):
        return f"PendingResult({self.request_id}, {self.status.value})"


class RequestDispatcher:
    def __init__(self, engine: InferenceEngine, handle: ModelHandle, store: Optional[ModelStore] = None):
        self.engine = engine
        self.handle = handle
        self.store = store
        self._queue: deque[PendingResult] = deque()
        self._active: dict[str, PendingResult] = {}
        self._running: Optional[PendingResult] = None
        self._cond = threading.Condition()
        self._shutdown = False
        self._thread: Optional[threading.Thread] = None

    def start(self):
        with self._cond:
            if self._shutdown:
                raise ShutdownError("Dispatcher has been shut down")
            if self._thread is not None:
                logger.error("RequestDispatcher.start() is called while the worker thread is already running!")
                raise RuntimeError("RequestDispatcher.start() is called while the worker thread is already running!")
            self._thread = threading.Thread(target=self._run, name="inference-worker", daemon=True)
        self._thread.start()
        logger.info("Inference worker thread started")

    def submit(self, features: Any, request_id: Optional[str] = None,
               meta: Optional[dict[str, Any]] = None) -> PendingResult:
        with self._cond:
            if self._shutdown:
                raise ShutdownError("Dispatcher has been shut down, not accepting requests")
            request_id = request_id or generate_request_id()
            if request_id in self._active:
                raise ValueError(f"Request {request_id} is already pending")
            pending = PendingResult(request_id, features, meta)
            self._active[request_id] = pending
            self._queue.append(pending)
            self._cond.notify()
        logger.debug(f"Queued request {request_id} (queue length {len(self._queue)})")
        return pending

    def cancel(self, request_id: str) -> bool:
        """True if a queued request was cancelled. A running request finishes and its result is discarded."""
        with self._cond:
            pending = self._active.get(request_id)
            if pending is None:
                return False
            if pending.status == RequestStatus.QUEUED:
                # Resolved when the worker reaches it, so delivery stays in submission order
                pending.status = RequestStatus.CANCELLED
                logger.info(f"Cancelled queued request {request_id}")
                return True
            if pending.status == RequestStatus.RUNNING:
                pending.cancel_requested = True
                logger.info(f"Request {request_id} is running, its result will be discarded")
            return False

    def get(self, request_id: str) -> Optional[PendingResult]:
        with self._cond:
            return self._active.get(request_id)

    @property
    def pending_count(self) -> int:
        with self._cond:
            return len(self._active)

    @property
    def is_shutdown(self) -> bool:
        return self._shutdown

    def _run(self):
        while True:
            with self._cond:
                while not self._queue and not self._shutdown:
                    self._cond.wait()
                if not self._queue:
                    break
                pending = self._queue.popleft()
                skipped = pending.status == RequestStatus.CANCELLED
                if not skipped:
                    pending.status = RequestStatus.RUNNING
                    self._running = pending

            if skipped:
                self._finish(pending, ClassificationResult(request_id=pending.request_id, status=RequestStatus.CANCELLED))
                continue

            result = self._execute(pending)
            with self._cond:
                self._running = None
                if pending.cancel_requested:
                    logger.info(f"Discarding result of cancelled request {pending.request_id}")
                    result = ClassificationResult(request_id=pending.request_id, status=RequestStatus.CANCELLED,
                                                  used_accelerator=result.used_accelerator, latency_ms=result.latency_ms)
            self._finish(pending, result)
        logger.info("Inference worker thread stopped.")

    def _execute(self, pending: PendingResult) -> ClassificationResult:
        logger.debug(f"Running request {pending.request_id}")
        try:
            outcome = self.engine.predict(self.handle, pending.features, pending.meta)
        except Exception as e:
            # One failed request must not take the worker down
            logger.error(f"Request {pending.request_id} failed: {type(e).__name__}: {e}")
            return ClassificationResult(request_id=pending.request_id, status=RequestStatus.FAILED,
                                        used_accelerator=self.handle.used_accelerator,
                                        error=f"{type(e).__name__}: {e}")
        return ClassificationResult(request_id=pending.request_id, status=RequestStatus.COMPLETED,
                                    predictions=outcome.predictions, used_accelerator=outcome.used_accelerator,
                                    latency_ms=outcome.latency_ms)

    def _finish(self, pending: PendingResult, result: ClassificationResult):
        with self._cond:
            pending.status = result.status
            self._active.pop(pending.request_id, None)
        pending.future.set_result(result)
        logger.debug(f"Request {pending.request_id} finished: {result.status.value}")

    def shutdown(self, timeout: Optional[float] = None):
        """
        Stop accepting requests, cancel queued ones, wait for the running one,
        then release the buffer pool and the model store.
        """
        with self._cond:
            if self._shutdown:
                return
            self._shutdown = True
            for pending in self._queue:
                if pending.status == RequestStatus.QUEUED:
                    pending.status = RequestStatus.CANCELLED
            self._cond.notify_all()
        logger.info("Shutting down dispatcher...")

        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                logger.error("Inference worker did not stop in time, keeping model resources alive")
                return
        else:
            # Never started: resolve whatever was queued
            while self._queue:
                pending = self._queue.popleft()
                self._finish(pending, ClassificationResult(request_id=pending.request_id, status=RequestStatus.CANCELLED))

        self.engine.pool.close()
        if self.store is not None:
            self.store.close()
        logger.info("Dispatcher shut down, model and buffers released.")
