import threading
from collections import deque

from circlepay.models.schemas import ReceivedMessage


class RecentMessages:
    """Bounded log of inbound messages; the oldest entry is dropped first."""

    def __init__(self, max_size: int = 100):
        self._messages: deque[ReceivedMessage] = deque(maxlen=max_size)
        self._lock = threading.Lock()

    def add(self, message: ReceivedMessage) -> None:
        with self._lock:
            self._messages.append(message)

    def snapshot(self) -> list[ReceivedMessage]:
        """Copy of the buffer, oldest first."""
        with self._lock:
            return list(self._messages)

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)
