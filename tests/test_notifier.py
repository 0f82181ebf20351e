"""Progress notifier fan-out."""

from __future__ import annotations

from chapter_mirror.models import Notification, NotificationKind
from chapter_mirror.notifier import ProgressNotifier, drain


class TestProgressNotifier:
    def test_every_subscriber_gets_every_message(self) -> None:
        notifier = ProgressNotifier()
        a, b = notifier.subscribe(), notifier.subscribe()
        notifier.notify(1, NotificationKind.UPDATE, "https://x.example.com/1")
        notifier.notify(1, NotificationKind.COMPLETE)

        expected = [
            Notification(1, NotificationKind.UPDATE, "https://x.example.com/1"),
            Notification(1, NotificationKind.COMPLETE, None),
        ]
        assert drain(a) == expected
        assert drain(b) == expected

    def test_unsubscribed_queue_gets_nothing(self) -> None:
        notifier = ProgressNotifier()
        q = notifier.subscribe()
        notifier.unsubscribe(q)
        notifier.notify(1, NotificationKind.STOPPED)
        assert drain(q) == []

    def test_full_subscriber_drops_without_blocking_others(self) -> None:
        notifier = ProgressNotifier(put_timeout=0.01)
        slow = notifier.subscribe(maxsize=1)
        fast = notifier.subscribe()
        for n in range(3):
            notifier.notify(n, NotificationKind.UPDATE)
        assert len(drain(slow)) == 1
        assert [m.job_id for m in drain(fast)] == [0, 1, 2]

    def test_kind_accepts_plain_string(self) -> None:
        notifier = ProgressNotifier()
        q = notifier.subscribe()
        notifier.notify(5, "Stopped")
        assert drain(q)[0].kind is NotificationKind.STOPPED
