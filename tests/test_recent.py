"""Tests for the bounded recent-messages buffer."""

from concurrent.futures import ThreadPoolExecutor

from circlepay.bot.recent import RecentMessages
from circlepay.models.schemas import ReceivedMessage


def _msg(i):
    return ReceivedMessage(user_id=f"u{i}", text=f"message {i}")


class TestRecentMessages:
    def test_oldest_entry_is_evicted(self):
        recent = RecentMessages(max_size=3)
        for i in range(5):
            recent.add(_msg(i))

        assert len(recent) == 3
        assert [m.text for m in recent.snapshot()] == ["message 2", "message 3", "message 4"]

    def test_snapshot_is_a_copy(self):
        recent = RecentMessages(max_size=3)
        recent.add(_msg(0))
        snapshot = recent.snapshot()
        recent.add(_msg(1))

        assert len(snapshot) == 1
        assert len(recent.snapshot()) == 2

    def test_concurrent_adds_stay_bounded(self):
        recent = RecentMessages(max_size=50)
        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(lambda i: recent.add(_msg(i)), range(500)))

        assert len(recent) == 50
