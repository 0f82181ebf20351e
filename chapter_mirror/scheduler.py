"""Drains a job's queued chapter tasks through a bounded worker pool."""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Callable, Optional
from urllib.parse import urlparse

from .config import AppConfig
from .db import QueueStore
from .downloader import Downloader
from .errors import FetchCancelled, LocalizationFailure, NetworkUnavailable
from .localizers import LocalizerRegistry, default_registry
from .localizers.base import chapter_file_name, save_document, writable_file_name
from .models import ChapterTask, Job, NotificationKind, Status
from .notifier import ProgressNotifier

logger = logging.getLogger("chapter_mirror")

ACTIVE_STATUSES = (Status.QUEUED, Status.RUNNING)


class FetchScheduler:
    def __init__(self, config: AppConfig, store: QueueStore, downloader: Downloader,
                 notifier: ProgressNotifier, localizers: Optional[LocalizerRegistry] = None,
                 network_check: Optional[Callable[[], bool]] = None):
        self.config = config
        self.store = store
        self.downloader = downloader
        self.notifier = notifier
        self.localizers = localizers or default_registry(config.sites)
        self.network_check = network_check or downloader.is_network_available

    def run_job(self, job_id: int, cancel_event: Optional[threading.Event] = None) -> bool:
        """Fetch every queued task of a job. Returns True if the job completed.

        Returns early, leaving the remaining tasks for the next run, when the
        network drops, the job is paused or removed, or ``cancel_event`` is set.
        """
        job = self.store.get_job(job_id)
        if job is None:
            logger.info(f"[job {job_id}] Not in the queue, nothing to do")
            return False

        try:
            self._ensure_network(job_id)
        except NetworkUnavailable as e:
            self._stop_job(job_id, e)
            return False

        tasks = self.store.list_queued_tasks(job_id)
        if not tasks:
            return self._finish_if_done(job_id)

        self.store.set_job_status(job_id, Status.RUNNING)
        self.notifier.notify(job_id, NotificationKind.UPDATE)

        workers = min(self.config.download.max_concurrency, len(tasks))
        logger.info(f"[job {job_id}] {len(tasks)} chapters queued, {workers} workers")

        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"job{job_id}")
        dispatched = False
        network_error = None
        try:
            for task in tasks:
                if cancel_event is not None and cancel_event.is_set():
                    logger.info(f"[job {job_id}] Cancelled, stopping dispatch")
                    break
                try:
                    self._ensure_network(job_id)
                except NetworkUnavailable as e:
                    network_error = e
                    break

                status = self.store.get_task_status(task.url)
                if status not in ACTIVE_STATUSES:
                    # Paused, stopped, or the job was removed
                    logger.info(f"[job {job_id}] {task.url} is {status}, stopping scan")
                    break
                if not self.store.claim_task(task.url):
                    continue

                future = executor.submit(self._run_task, job, task, cancel_event)
                if self.config.download.wait_for_each:
                    future.result()
            dispatched = True
        finally:
            executor.shutdown(wait=dispatched, cancel_futures=not dispatched)

        if network_error is not None:
            self._stop_job(job_id, network_error)
            return False
        return self._finish_if_done(job_id)

    def _ensure_network(self, job_id: int):
        if not self.network_check():
            raise NetworkUnavailable(f"No network route for job {job_id}")

    def _stop_job(self, job_id: int, error: NetworkUnavailable):
        logger.warning(f"[job {job_id}] {error}, stopping job")
        self.store.set_job_status(job_id, Status.STOPPED)
        self.store.set_queued_tasks_status(job_id, Status.STOPPED)
        self.notifier.notify(job_id, NotificationKind.STOPPED)

    def _finish_if_done(self, job_id: int) -> bool:
        job = self.store.get_job(job_id)
        if job is None:
            return False

        if self.store.count_pending(job_id) == 0:
            self.store.set_job_status(job_id, Status.COMPLETE)
            self.store.delete_job(job_id)
            self.notifier.notify(job_id, NotificationKind.COMPLETE)
            logger.info(f"[job {job_id}] Complete")
            return True

        if job.status == Status.RUNNING:
            self.store.set_job_status(job_id, Status.QUEUED)
            self.notifier.notify(job_id, NotificationKind.UPDATE)
        return False

    def _run_task(self, job: Job, task: ChapterTask, cancel_event: Optional[threading.Event]):
        try:
            self.notifier.notify(job.job_id, NotificationKind.UPDATE, task.url)
            path, redirected, title = self.fetch_chapter(job, task, cancel_event)
            self.store.set_task_result(task, str(path), redirected, title)
            self.notifier.notify(job.job_id, NotificationKind.COMPLETE, task.url)
            logger.info(f"[job {job.job_id}] Saved #{task.order_id} -> {path}")
        except FetchCancelled:
            logger.info(f"[job {job.job_id}] Cancelled: {task.url}")
            self.store.release_task(task.url)
        except Exception as e:  # noqa: BLE001
            logger.error(f"[job {job.job_id}] Failed: {task.url}: {e}")
            self.store.release_task(task.url)

    def fetch_chapter(self, job: Job, task: ChapterTask,
                      cancel_event: Optional[threading.Event] = None):
        """Fetch, localize and save one chapter. Returns (path, redirected_url or None, title)."""
        response = self.downloader.fetch(task.url, cancel_event=cancel_event)
        response.raise_for_status()

        final_url = str(response.url)
        host = response.url.host or urlparse(task.url).hostname or "unknown"
        host_dir = Path(self.config.data_dir) / writable_file_name(host)
        item_dir = host_dir / writable_file_name(job.name or f"job{job.job_id}")

        localizer = self.localizers.resolve(host)
        try:
            page = localizer.localize(response.text, final_url, host_dir, item_dir, self.downloader)
            title = page.title or final_url
            path = item_dir / chapter_file_name(task.order_id, title)
            save_document(page.html, path)
        except OSError as e:
            raise LocalizationFailure(f"Could not localize {final_url}: {e}") from e

        redirected = final_url if final_url != task.url else None
        return path, redirected, title
