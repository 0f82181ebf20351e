"""In-process registry of running job handles."""

import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Dict, List, Optional


@dataclass
class JobHandle:
    job_id: int
    cancel_event: threading.Event = field(default_factory=threading.Event)
    future: Optional[Future] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def cancel(self):
        self.cancel_event.set()
        if self.future is not None:
            self.future.cancel()

    def done(self) -> bool:
        return self.future is not None and self.future.done()


class TaskRegistry:
    def __init__(self):
        self._lock = threading.Lock()
        self._handles: Dict[int, JobHandle] = {}

    def register(self, job_id: int, handle: JobHandle) -> bool:
        """Returns False if an unfinished handle for the job is already registered."""
        with self._lock:
            current = self._handles.get(job_id)
            if current is not None and not current.done():
                return False
            self._handles[job_id] = handle
            return True

    def unregister(self, job_id: int, handle: Optional[JobHandle] = None):
        with self._lock:
            if handle is None or self._handles.get(job_id) is handle:
                self._handles.pop(job_id, None)

    def get(self, job_id: int) -> Optional[JobHandle]:
        with self._lock:
            return self._handles.get(job_id)

    def cancel(self, job_id: int) -> bool:
        """Cancel the job's handle. Safe to call twice or for unknown jobs."""
        with self._lock:
            handle = self._handles.get(job_id)
        if handle is None:
            return False
        handle.cancel()
        return True

    def is_active(self, job_id: int) -> bool:
        with self._lock:
            handle = self._handles.get(job_id)
        return handle is not None and not handle.done()

    def active_jobs(self) -> List[int]:
        with self._lock:
            return [job_id for job_id, h in self._handles.items() if not h.done()]
