"""Job control: start, pause and remove download jobs in the background."""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Optional

from .config import AppConfig
from .db import QueueStore
from .downloader import Downloader
from .localizers import LocalizerRegistry
from .models import NotificationKind, Status
from .notifier import ProgressNotifier
from .registry import JobHandle, TaskRegistry
from .scheduler import FetchScheduler

logger = logging.getLogger("chapter_mirror")


class DownloadService:
    def __init__(self, config: AppConfig, store: QueueStore, downloader: Downloader,
                 registry: Optional[TaskRegistry] = None,
                 notifier: Optional[ProgressNotifier] = None,
                 localizers: Optional[LocalizerRegistry] = None,
                 network_check: Optional[Callable[[], bool]] = None):
        self.config = config
        self.store = store
        self.registry = registry or TaskRegistry()
        self.notifier = notifier or ProgressNotifier()
        self.scheduler = FetchScheduler(
            config, store, downloader, self.notifier,
            localizers=localizers, network_check=network_check,
        )
        self._pool = ThreadPoolExecutor(
            max_workers=config.download.max_parallel_jobs, thread_name_prefix="jobs",
        )
        self._futures: Dict[int, Future] = {}

    def start(self, job_id: int) -> bool:
        """Queue a job run. False if the job is unknown or already running."""
        if self.store.get_job(job_id) is None:
            logger.warning(f"[job {job_id}] Unknown job, not starting")
            return False

        handle = JobHandle(job_id)
        if not self.registry.register(job_id, handle):
            logger.info(f"[job {job_id}] Already running")
            return False

        requeued = self.store.requeue_job(job_id)
        if requeued:
            logger.info(f"[job {job_id}] Requeued {requeued} unfinished chapters")
        handle.future = self._pool.submit(self._run, job_id, handle)
        self._futures[job_id] = handle.future
        return True

    def _run(self, job_id: int, handle: JobHandle) -> bool:
        try:
            return self.scheduler.run_job(job_id, cancel_event=handle.cancel_event)
        finally:
            self.registry.unregister(job_id, handle)

    def pause(self, job_id: int):
        self.store.set_job_status(job_id, Status.PAUSED)
        self.store.set_queued_tasks_status(job_id, Status.PAUSED)
        self.registry.cancel(job_id)
        self.notifier.notify(job_id, NotificationKind.STOPPED)
        logger.info(f"[job {job_id}] Paused")

    def remove(self, job_id: int):
        self.registry.cancel(job_id)
        self.store.delete_job(job_id, purge_tasks=True)
        logger.info(f"[job {job_id}] Removed")

    def wait(self, job_id: int, timeout: Optional[float] = None) -> Optional[bool]:
        """Block until the job's latest run ends and return its result. None if never started."""
        future = self._futures.get(job_id)
        if future is None:
            return None
        return future.result(timeout=timeout)

    def shutdown(self, wait: bool = True):
        for job_id in self.registry.active_jobs():
            self.registry.cancel(job_id)
        self._pool.shutdown(wait=wait, cancel_futures=True)
