"""Fan-out of progress notifications to independent subscribers.

Every subscriber owns a bounded queue. Delivery is at-least-once per
subscriber while it keeps up; a subscriber whose queue stays full past the put
timeout loses that notification, and the drop is logged.
"""

import logging
import queue
import threading
from typing import List, Optional

from .models import Notification, NotificationKind

logger = logging.getLogger("chapter_mirror")


class ProgressNotifier:
    def __init__(self, maxsize: int = 1000, put_timeout: float = 5.0):
        self.maxsize = maxsize
        self.put_timeout = put_timeout
        self._subscribers: List[queue.Queue] = []
        self._lock = threading.Lock()

    def subscribe(self, maxsize: Optional[int] = None) -> queue.Queue:
        q = queue.Queue(maxsize=self.maxsize if maxsize is None else maxsize)
        with self._lock:
            self._subscribers.append(q)
        return q

    def unsubscribe(self, q: queue.Queue):
        with self._lock:
            if q in self._subscribers:
                self._subscribers.remove(q)

    def publish(self, notification: Notification):
        with self._lock:
            subscribers = list(self._subscribers)
        for q in subscribers:
            try:
                q.put(notification, timeout=self.put_timeout)
            except queue.Full:
                logger.warning(f"Subscriber queue full, dropped {notification}")

    def notify(self, job_id: int, kind: NotificationKind, task_url: Optional[str] = None):
        self.publish(Notification(job_id=job_id, kind=NotificationKind(kind), task_url=task_url))


def drain(q: queue.Queue) -> List[Notification]:
    """Everything currently waiting in a subscriber queue, without blocking."""
    items = []
    while True:
        try:
            items.append(q.get_nowait())
        except queue.Empty:
            return items
