"""CLI entry point."""

import argparse
import os
import queue
import threading

from dotenv import load_dotenv

from .config import load_config
from .db import QueueStore
from .downloader import Downloader
from .logger import setup_logger
from .models import NotificationKind
from .notifier import ProgressNotifier
from .service import DownloadService


def add_job(store: QueueStore, source_url: str, chapters_file: str, name: str = ""):
    """Create (or extend) a job from a file of chapter URLs, one per line, in reading order."""
    with open(chapters_file) as f:
        urls = [line.strip() for line in f if line.strip() and not line.startswith("#")]

    job = store.add_job(source_url, name)
    added = store.add_tasks(job.job_id, urls)
    print(f"Job {job.job_id}: {job.name or job.source_url}")
    print(f"  {added} new chapters queued ({len(urls) - added} already known)")
    return job


def print_progress(notifications, stop: threading.Event):
    while not stop.is_set():
        try:
            n = notifications.get(timeout=0.5)
        except queue.Empty:
            continue
        if n.task_url is None:
            print(f"[job {n.job_id}] {n.kind.value}")
        elif n.kind == NotificationKind.COMPLETE:
            print(f"[job {n.job_id}]   done  {n.task_url}")


def run_jobs(config, store: QueueStore, job_ids):
    notifier = ProgressNotifier()
    subscription = notifier.subscribe()
    stop = threading.Event()
    printer = threading.Thread(target=print_progress, args=(subscription, stop), daemon=True)
    printer.start()

    downloader = Downloader(config)
    service = DownloadService(config, store, downloader, notifier=notifier)
    try:
        for job_id in job_ids:
            service.start(job_id)
        for job_id in job_ids:
            service.wait(job_id)
    except KeyboardInterrupt:
        print("\nInterrupted, pausing jobs...")
        for job_id in job_ids:
            service.pause(job_id)
        raise
    finally:
        service.shutdown(wait=False)
        downloader.close()
        stop.set()
        printer.join(timeout=2)


def show_stats(store: QueueStore):
    print("\n" + "=" * 70)
    print("  CHAPTER QUEUE")
    print("=" * 70)
    print(f"{'Job':<6} {'Name':<30} {'Status':<12} {'Count':>8}")
    print("-" * 70)

    total = 0
    for job_id, name, status, count in store.get_stats():
        print(f"{job_id:<6} {name[:30]:<30} {status:<12} {count:>8}")
        total += count

    print("-" * 70)
    print(f"{'TOTAL':<6} {'':30} {'':12} {total:>8}")
    print()


def main():
    load_dotenv()

    parser = argparse.ArgumentParser(description="Chapter Mirror - offline chapter downloader")
    parser.add_argument("--add", type=str, metavar="URL",
                        help="Add a work by its source URL (needs --chapters)")
    parser.add_argument("--chapters", type=str, metavar="FILE",
                        help="File with one chapter URL per line, in reading order")
    parser.add_argument("--name", type=str, default="",
                        help="Display name for the work, used as its folder name")
    parser.add_argument("--run", type=int, nargs="?", const=-1, default=None, metavar="JOB_ID",
                        help="Download a job, or every job when no id is given")
    parser.add_argument("--pause", type=int, metavar="JOB_ID", help="Pause a job")
    parser.add_argument("--remove", type=int, metavar="JOB_ID",
                        help="Remove a job and all its chapter records")
    parser.add_argument("--stats", action="store_true", help="Show queue statistics")
    parser.add_argument("--config", type=str,
                        default=os.environ.get("CHAPTER_MIRROR_CONFIG", "config.yaml"),
                        help="Path to config file")
    args = parser.parse_args()

    config = load_config(args.config)
    setup_logger(config.log_dir, os.environ.get("CHAPTER_MIRROR_LOG_LEVEL"))
    store = QueueStore(config.db_path)

    if args.add:
        if not args.chapters:
            parser.error("--add requires --chapters")
        add_job(store, args.add, args.chapters, args.name)

    if args.pause is not None:
        DownloadService(config, store, Downloader(config)).pause(args.pause)
        print(f"Job {args.pause} paused.")

    if args.remove is not None:
        DownloadService(config, store, Downloader(config)).remove(args.remove)
        print(f"Job {args.remove} removed.")

    if args.run is not None:
        job_ids = [args.run] if args.run >= 0 else [j.job_id for j in store.list_jobs()]
        if not job_ids:
            print("Nothing queued.")
        else:
            print("Chapter Mirror")
            print(f"Data directory: {config.data_dir}")
            print(f"Database: {config.db_path}")
            run_jobs(config, store, job_ids)

    if args.stats or args.run is not None:
        show_stats(store)


if __name__ == "__main__":
    main()
