"""Bounded FIFO admission control with a single worker thread.

Only one compression runs at a time process-wide; the encoder and codec
work is CPU and I/O heavy, so everything else waits in line or is
turned away once the line is full.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Optional

from integrations.errors import QueueFullError


@dataclass
class CompressionJob:
    task: Callable[[], Any]
    description: str = ""
    future: Future = field(default_factory=Future)
    submitted_at: float = field(default_factory=time.time)


class JobQueue:
    def __init__(self, capacity: int = 10, name: str = "compression-worker") -> None:
        self.capacity = capacity
        self.name = name
        self._pending: Deque[CompressionJob] = deque()
        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)
        self._running: Optional[CompressionJob] = None
        self._worker: Optional[threading.Thread] = None
        self._stopped = False

    def submit(self, task: Callable[[], Any], description: str = "") -> Future:
        """Admit ``task`` and return a future for its result.

        Raises QueueFullError immediately when ``capacity`` jobs are
        already waiting; the running job does not count against capacity.
        """
        with self._lock:
            if self._stopped:
                raise RuntimeError("Job queue has been shut down")
            if len(self._pending) >= self.capacity:
                logging.warning("Queue full (%d pending), rejecting %s", len(self._pending), description)
                raise QueueFullError("Server busy, try again later")

            job = CompressionJob(task=task, description=description)
            self._pending.append(job)
            self._ensure_worker()
            self._wakeup.notify()
            logging.info("Queued job %s (%d pending)", description, len(self._pending))
            return job.future

    def pending(self) -> int:
        with self._lock:
            return len(self._pending)

    def is_busy(self) -> bool:
        with self._lock:
            return self._running is not None

    def shutdown(self, wait: bool = True) -> None:
        """Stop after the current job; jobs still waiting are cancelled."""
        with self._lock:
            self._stopped = True
            abandoned = list(self._pending)
            self._pending.clear()
            self._wakeup.notify_all()
            worker = self._worker

        for job in abandoned:
            job.future.cancel()

        if wait and worker is not None and worker is not threading.current_thread():
            worker.join()

    def _ensure_worker(self) -> None:
        if self._worker is None or not self._worker.is_alive():
            self._worker = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._worker.start()

    def _run(self) -> None:
        while True:
            with self._lock:
                while not self._pending and not self._stopped:
                    self._wakeup.wait()
                if self._stopped:
                    return
                job = self._pending.popleft()
                self._running = job

            try:
                # Skipped if the caller cancelled while it was waiting
                if job.future.set_running_or_notify_cancel():
                    self._execute(job)
            finally:
                with self._lock:
                    self._running = None

    @staticmethod
    def _execute(job: CompressionJob) -> None:
        started = time.time()
        logging.info("Starting job %s (waited %.1fs)", job.description, started - job.submitted_at)
        try:
            result = job.task()
        except Exception as exc:
            logging.error("Job %s failed: %s", job.description, str(exc))
            job.future.set_exception(exc)
        else:
            job.future.set_result(result)
        logging.info("Finished job %s in %.1fs", job.description, time.time() - started)
