"""SQLite queue store tracking jobs and their chapter tasks."""

import sqlite3
import threading
from typing import Iterable, List, Optional, Tuple

from .models import ChapterTask, Job, Status


class QueueStore:
    def __init__(self, db_path: str = "chapters.db"):
        self.db_path = db_path
        self._local = threading.local()
        self._init_db()

    @property
    def _conn(self) -> sqlite3.Connection:
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self._local.conn = sqlite3.connect(self.db_path, timeout=30)
            self._local.conn.row_factory = sqlite3.Row
            self._local.conn.execute("PRAGMA journal_mode=WAL")
        return self._local.conn

    def _init_db(self):
        conn = self._conn
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                source_url TEXT NOT NULL,
                name TEXT DEFAULT '',
                status TEXT DEFAULT 'Queued',
                chapter_urls_cached INTEGER DEFAULT 0,
                created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(source_url)
            );

            CREATE TABLE IF NOT EXISTS chapter_tasks (
                url TEXT PRIMARY KEY,
                job_id INTEGER NOT NULL,
                order_id INTEGER NOT NULL,
                status TEXT DEFAULT 'Queued',
                local_file_path TEXT,
                redirected_url TEXT,
                title TEXT,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                UNIQUE(job_id, order_id)
            );

            CREATE INDEX IF NOT EXISTS idx_tasks_job ON chapter_tasks(job_id);
            CREATE INDEX IF NOT EXISTS idx_tasks_status ON chapter_tasks(status);
        """)
        conn.commit()

    def close(self):
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    # -- jobs -------------------------------------------------------------

    def add_job(self, source_url: str, name: str = "") -> Job:
        self._conn.execute(
            "INSERT OR IGNORE INTO jobs (source_url, name) VALUES (?, ?)",
            (source_url, name),
        )
        self._conn.commit()
        row = self._conn.execute("SELECT * FROM jobs WHERE source_url = ?", (source_url,)).fetchone()
        return self._job(row)

    def get_job(self, job_id: int) -> Optional[Job]:
        row = self._conn.execute("SELECT * FROM jobs WHERE id = ?", (job_id,)).fetchone()
        return self._job(row) if row else None

    def list_jobs(self) -> List[Job]:
        rows = self._conn.execute("SELECT * FROM jobs ORDER BY id").fetchall()
        return [self._job(r) for r in rows]

    def set_job_status(self, job_id: int, status: Status):
        self._conn.execute(
            "UPDATE jobs SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (Status(status).value, job_id),
        )
        self._conn.commit()

    def set_chapter_urls_cached(self, job_id: int, cached: bool = True):
        self._conn.execute(
            "UPDATE jobs SET chapter_urls_cached = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (int(cached), job_id),
        )
        self._conn.commit()

    def delete_job(self, job_id: int, purge_tasks: bool = False):
        """Remove the job's queue record; ``purge_tasks`` also drops its chapter rows."""
        self._conn.execute("DELETE FROM jobs WHERE id = ?", (job_id,))
        if purge_tasks:
            self._conn.execute("DELETE FROM chapter_tasks WHERE job_id = ?", (job_id,))
        self._conn.commit()

    def requeue_job(self, job_id: int) -> int:
        """Put every unfinished task of a job back to Queued. Returns rows touched."""
        cur = self._conn.execute(
            """UPDATE chapter_tasks SET status = ?, updated_at = CURRENT_TIMESTAMP
               WHERE job_id = ? AND local_file_path IS NULL AND status != ?""",
            (Status.QUEUED.value, job_id, Status.QUEUED.value),
        )
        self._conn.execute(
            "UPDATE jobs SET status = ?, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (Status.QUEUED.value, job_id),
        )
        self._conn.commit()
        return cur.rowcount

    # -- tasks ------------------------------------------------------------

    def add_tasks(self, job_id: int, urls: Iterable[str]) -> int:
        """Append chapter URLs to a job, continuing its order ids. Returns rows inserted."""
        row = self._conn.execute(
            "SELECT COALESCE(MAX(order_id), -1) AS last FROM chapter_tasks WHERE job_id = ?",
            (job_id,),
        ).fetchone()
        order_id = row["last"] + 1
        inserted = 0
        for url in urls:
            cur = self._conn.execute(
                "INSERT OR IGNORE INTO chapter_tasks (url, job_id, order_id) VALUES (?, ?, ?)",
                (url, job_id, order_id),
            )
            if cur.rowcount:
                inserted += 1
                order_id += 1
        self._conn.execute(
            "UPDATE jobs SET chapter_urls_cached = 1, updated_at = CURRENT_TIMESTAMP WHERE id = ?",
            (job_id,),
        )
        self._conn.commit()
        return inserted

    def list_queued_tasks(self, job_id: int) -> List[ChapterTask]:
        rows = self._conn.execute(
            """SELECT * FROM chapter_tasks
               WHERE job_id = ? AND status = ? AND local_file_path IS NULL
               ORDER BY order_id""",
            (job_id, Status.QUEUED.value),
        ).fetchall()
        return [self._task(r) for r in rows]

    def list_tasks(self, job_id: int) -> List[ChapterTask]:
        rows = self._conn.execute(
            "SELECT * FROM chapter_tasks WHERE job_id = ? ORDER BY order_id", (job_id,)
        ).fetchall()
        return [self._task(r) for r in rows]

    def get_task(self, url: str) -> Optional[ChapterTask]:
        row = self._conn.execute("SELECT * FROM chapter_tasks WHERE url = ?", (url,)).fetchone()
        return self._task(row) if row else None

    def get_task_status(self, task_url: str) -> Optional[Status]:
        """Current status, or None when the task or its parent job is gone."""
        row = self._conn.execute(
            """SELECT t.status FROM chapter_tasks t
               JOIN jobs j ON j.id = t.job_id
               WHERE t.url = ?""",
            (task_url,),
        ).fetchone()
        return Status(row["status"]) if row else None

    def claim_task(self, task_url: str) -> bool:
        """Atomically move a task from Queued to Running. False if someone else got it."""
        cur = self._conn.execute(
            """UPDATE chapter_tasks SET status = ?, updated_at = CURRENT_TIMESTAMP
               WHERE url = ? AND status = ? AND local_file_path IS NULL""",
            (Status.RUNNING.value, task_url, Status.QUEUED.value),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def release_task(self, task_url: str) -> bool:
        """Return a Running task to Queued after a failed attempt."""
        cur = self._conn.execute(
            """UPDATE chapter_tasks SET status = ?, updated_at = CURRENT_TIMESTAMP
               WHERE url = ? AND status = ?""",
            (Status.QUEUED.value, task_url, Status.RUNNING.value),
        )
        self._conn.commit()
        return cur.rowcount == 1

    def set_queued_tasks_status(self, job_id: int, status: Status) -> int:
        cur = self._conn.execute(
            """UPDATE chapter_tasks SET status = ?, updated_at = CURRENT_TIMESTAMP
               WHERE job_id = ? AND status = ?""",
            (Status(status).value, job_id, Status.QUEUED.value),
        )
        self._conn.commit()
        return cur.rowcount

    def set_task_result(self, task: ChapterTask, local_file_path: str,
                        redirected_url: Optional[str] = None, title: Optional[str] = None):
        # An existing local_file_path is never replaced.
        self._conn.execute(
            """UPDATE chapter_tasks SET status = ?,
                      local_file_path = COALESCE(local_file_path, ?),
                      redirected_url = ?, title = ?, updated_at = CURRENT_TIMESTAMP
               WHERE url = ?""",
            (Status.COMPLETE.value, local_file_path, redirected_url, title, task.url),
        )
        self._conn.commit()

    def count_pending(self, job_id: int) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS cnt FROM chapter_tasks WHERE job_id = ? AND local_file_path IS NULL",
            (job_id,),
        ).fetchone()
        return row["cnt"]

    def get_stats(self) -> List[Tuple]:
        rows = self._conn.execute(
            """SELECT t.job_id, COALESCE(j.name, ''), t.status, COUNT(*) AS cnt
               FROM chapter_tasks t LEFT JOIN jobs j ON j.id = t.job_id
               GROUP BY t.job_id, t.status ORDER BY t.job_id, t.status"""
        ).fetchall()
        return [tuple(r) for r in rows]

    @staticmethod
    def _job(row: sqlite3.Row) -> Job:
        return Job(
            job_id=row["id"],
            source_url=row["source_url"],
            name=row["name"] or "",
            status=Status(row["status"]),
            chapter_urls_cached=bool(row["chapter_urls_cached"]),
            created_at=row["created_at"],
        )

    @staticmethod
    def _task(row: sqlite3.Row) -> ChapterTask:
        return ChapterTask(
            url=row["url"],
            job_id=row["job_id"],
            order_id=row["order_id"],
            status=Status(row["status"]),
            local_file_path=row["local_file_path"],
            redirected_url=row["redirected_url"],
            title=row["title"],
        )
