"""Scheduler tests.

Mocking strategy:
- ``respx`` serves the chapter pages; the real Downloader and resilience chain
  sit in between, with retry sleeps replaced by a no-op.
- Reachability is a plain callable, so "network down" needs no socket tricks.
"""

from __future__ import annotations

import threading
from pathlib import Path
from typing import List

import httpx
import pytest
import respx

from chapter_mirror.db import QueueStore
from chapter_mirror.downloader import Downloader
from chapter_mirror.models import NotificationKind, Status
from chapter_mirror.notifier import ProgressNotifier, drain
from chapter_mirror.scheduler import FetchScheduler

HOST = "https://novel.example.com"


def _page(n: int) -> str:
    return (
        f"<html><head><title>Chapter {n}</title></head>"
        f"<body><div class='chapter-content'><p>Text of chapter {n}</p></div></body></html>"
    )


def _urls(count: int) -> List[str]:
    return [f"{HOST}/chapter-{n}" for n in range(1, count + 1)]


@pytest.fixture()
def downloader(config):
    d = Downloader(config, sleep=lambda s: None)
    yield d
    d.close()


@pytest.fixture()
def notifier() -> ProgressNotifier:
    return ProgressNotifier()


def _scheduler(config, store, downloader, notifier, online=True) -> FetchScheduler:
    return FetchScheduler(config, store, downloader, notifier, network_check=lambda: online)


def _serve_chapters(requested: list):
    """respx side effect serving chapter N for /chapter-N and recording the order."""

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        n = int(str(request.url).rsplit("-", 1)[1])
        return httpx.Response(200, html=_page(n))

    return handler


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestRunJob:
    def test_three_chapters_complete_the_job(self, config, store: QueueStore, downloader, notifier) -> None:
        job = store.add_job(f"{HOST}/story", "My Novel")
        store.add_tasks(job.job_id, _urls(3))
        events = notifier.subscribe()
        requested: list = []

        with respx.mock:
            respx.get(url__startswith=f"{HOST}/chapter-").mock(side_effect=_serve_chapters(requested))
            done = _scheduler(config, store, downloader, notifier).run_job(job.job_id)

        assert done is True
        assert sorted(requested) == sorted(_urls(3))
        assert store.get_job(job.job_id) is None

        tasks = store.list_tasks(job.job_id)
        assert all(t.status == Status.COMPLETE for t in tasks)
        for t in tasks:
            assert Path(t.local_file_path).exists()
        assert Path(tasks[0].local_file_path) == (
            Path(config.data_dir) / "novel.example.com" / "MyNovel" / "0-Chapter1.html"
        )

        completes = [n for n in drain(events) if n.kind == NotificationKind.COMPLETE]
        assert sorted(n.task_url for n in completes if n.task_url) == sorted(_urls(3))
        assert [n for n in completes if n.task_url is None] != []
        assert len(completes) == 4

    def test_network_down_stops_job_without_fetching(self, config, store, downloader, notifier) -> None:
        job = store.add_job(f"{HOST}/story", "My Novel")
        store.add_tasks(job.job_id, _urls(5))
        events = notifier.subscribe()

        with respx.mock(assert_all_called=False) as mock:
            route = mock.get(url__startswith=HOST).mock(return_value=httpx.Response(200))
            done = _scheduler(config, store, downloader, notifier, online=False).run_job(job.job_id)

        assert done is False
        assert route.call_count == 0
        assert store.get_job(job.job_id).status == Status.STOPPED
        assert [t.status for t in store.list_tasks(job.job_id)] == [Status.STOPPED] * 5
        notes = drain(events)
        assert len(notes) == 1
        assert notes[0].kind == NotificationKind.STOPPED

    def test_finished_tasks_never_refetched(self, config, store, downloader, notifier) -> None:
        job = store.add_job(f"{HOST}/story")
        urls = _urls(3)
        store.add_tasks(job.job_id, urls)
        store.set_task_result(store.get_task(urls[0]), "/already/there.html")
        requested: list = []

        with respx.mock:
            respx.get(url__startswith=f"{HOST}/chapter-").mock(side_effect=_serve_chapters(requested))
            _scheduler(config, store, downloader, notifier).run_job(job.job_id)

        assert urls[0] not in requested
        assert store.get_task(urls[0]).local_file_path == "/already/there.html"

    def test_dispatch_follows_order_id(self, config, store, downloader, notifier) -> None:
        config.download.wait_for_each = True
        job = store.add_job(f"{HOST}/story")
        urls = [f"{HOST}/chapter-{n}" for n in (7, 2, 9, 4)]
        store.add_tasks(job.job_id, urls)
        requested: list = []

        with respx.mock:
            respx.get(url__startswith=f"{HOST}/chapter-").mock(side_effect=_serve_chapters(requested))
            _scheduler(config, store, downloader, notifier).run_job(job.job_id)

        assert requested == urls

    def test_failing_task_does_not_abort_siblings(self, config, store, downloader, notifier) -> None:
        job = store.add_job(f"{HOST}/story")
        urls = _urls(3)
        store.add_tasks(job.job_id, urls)

        with respx.mock:
            respx.get(urls[0]).mock(return_value=httpx.Response(200, html=_page(1)))
            respx.get(urls[1]).mock(return_value=httpx.Response(500))
            respx.get(urls[2]).mock(return_value=httpx.Response(200, html=_page(3)))
            done = _scheduler(config, store, downloader, notifier).run_job(job.job_id)

        assert done is False
        assert store.get_task(urls[0]).status == Status.COMPLETE
        assert store.get_task(urls[2]).status == Status.COMPLETE
        failed = store.get_task(urls[1])
        assert failed.status == Status.QUEUED
        assert failed.local_file_path is None
        assert store.get_job(job.job_id).status == Status.QUEUED

    def test_redirect_recorded_and_host_taken_from_final_url(self, config, store, downloader, notifier) -> None:
        job = store.add_job(f"{HOST}/story", "Moved")
        store.add_tasks(job.job_id, [f"{HOST}/chapter-1"])
        final = "https://mirror.example.net/read/1"

        with respx.mock:
            respx.get(f"{HOST}/chapter-1").mock(
                return_value=httpx.Response(302, headers={"Location": final})
            )
            respx.get(final).mock(return_value=httpx.Response(200, html=_page(1)))
            _scheduler(config, store, downloader, notifier).run_job(job.job_id)

        task = store.get_task(f"{HOST}/chapter-1")
        assert task.redirected_url == final
        assert task.title == "Chapter 1"
        assert "mirror.example.net" in task.local_file_path

    def test_site_localizer_selected_by_host(self, config, store, downloader, notifier) -> None:
        url = "https://www.royalroad.com/fiction/1/chapter/1"
        job = store.add_job("https://www.royalroad.com/fiction/1", "RR")
        store.add_tasks(job.job_id, [url])
        html = (
            "<html><head><title>RR 1</title></head><body><nav>menu</nav>"
            "<div class='chapter-content'><p>story</p></div><footer>foot</footer></body></html>"
        )

        with respx.mock:
            respx.get(url).mock(return_value=httpx.Response(200, html=html))
            _scheduler(config, store, downloader, notifier).run_job(job.job_id)

        saved = Path(store.get_task(url).local_file_path).read_text()
        assert "story" in saved
        assert "menu" not in saved
        assert "foot" not in saved


# ---------------------------------------------------------------------------
# Early exits
# ---------------------------------------------------------------------------

class TestEarlyExit:
    def test_unknown_job(self, config, store, downloader, notifier) -> None:
        assert _scheduler(config, store, downloader, notifier).run_job(999) is False

    def test_cancelled_before_dispatch(self, config, store, downloader, notifier) -> None:
        job = store.add_job(f"{HOST}/story")
        store.add_tasks(job.job_id, _urls(2))
        cancel = threading.Event()
        cancel.set()

        with respx.mock(assert_all_called=False) as mock:
            route = mock.get(url__startswith=HOST).mock(return_value=httpx.Response(200))
            done = _scheduler(config, store, downloader, notifier).run_job(job.job_id, cancel_event=cancel)

        assert done is False
        assert route.call_count == 0
        assert store.count_pending(job.job_id) == 2

    def test_paused_job_is_not_fetched(self, config, store, downloader, notifier) -> None:
        job = store.add_job(f"{HOST}/story")
        store.add_tasks(job.job_id, _urls(2))
        store.set_job_status(job.job_id, Status.PAUSED)
        store.set_queued_tasks_status(job.job_id, Status.PAUSED)

        with respx.mock(assert_all_called=False) as mock:
            route = mock.get(url__startswith=HOST).mock(return_value=httpx.Response(200))
            done = _scheduler(config, store, downloader, notifier).run_job(job.job_id)

        assert done is False
        assert route.call_count == 0
        assert store.get_job(job.job_id).status == Status.PAUSED

    def test_all_done_job_completes_immediately(self, config, store, downloader, notifier) -> None:
        job = store.add_job(f"{HOST}/story")
        store.add_tasks(job.job_id, _urls(1))
        store.set_task_result(store.get_task(_urls(1)[0]), "/done.html")
        events = notifier.subscribe()

        assert _scheduler(config, store, downloader, notifier).run_job(job.job_id) is True
        assert store.get_job(job.job_id) is None
        assert [n.kind for n in drain(events)] == [NotificationKind.COMPLETE]


# ---------------------------------------------------------------------------
# Stopping mid-run
# ---------------------------------------------------------------------------

class TestMidRunStop:
    def test_network_drop_stops_remaining_chapters(self, config, store, downloader, notifier) -> None:
        config.download.wait_for_each = True
        job = store.add_job(f"{HOST}/story")
        urls = _urls(4)
        store.add_tasks(job.job_id, urls)
        events = notifier.subscribe()
        checks = iter([True, True, True])
        requested: list = []

        with respx.mock(assert_all_called=False) as mock:
            mock.get(url__startswith=f"{HOST}/chapter-").mock(side_effect=_serve_chapters(requested))
            done = FetchScheduler(
                config, store, downloader, notifier, network_check=lambda: next(checks, False),
            ).run_job(job.job_id)

        assert done is False
        assert requested == urls[:2]
        assert [t.status for t in store.list_tasks(job.job_id)] == [
            Status.COMPLETE, Status.COMPLETE, Status.STOPPED, Status.STOPPED,
        ]
        assert store.get_job(job.job_id).status == Status.STOPPED
        assert [n.kind for n in drain(events)].count(NotificationKind.STOPPED) == 1

    def test_pause_during_scan_stops_dispatch(self, config, store, downloader, notifier) -> None:
        config.download.wait_for_each = True
        job = store.add_job(f"{HOST}/story")
        urls = _urls(3)
        store.add_tasks(job.job_id, urls)
        requested: list = []
        serve = _serve_chapters(requested)

        def pause_after_first(request: httpx.Request) -> httpx.Response:
            store.set_job_status(job.job_id, Status.PAUSED)
            store.set_queued_tasks_status(job.job_id, Status.PAUSED)
            return serve(request)

        with respx.mock(assert_all_called=False) as mock:
            mock.get(url__startswith=f"{HOST}/chapter-").mock(side_effect=pause_after_first)
            done = _scheduler(config, store, downloader, notifier).run_job(job.job_id)

        assert done is False
        assert requested == urls[:1]
        assert store.get_task(urls[0]).status == Status.COMPLETE
        assert [store.get_task_status(u) for u in urls[1:]] == [Status.PAUSED, Status.PAUSED]
        assert store.get_job(job.job_id).status == Status.PAUSED
