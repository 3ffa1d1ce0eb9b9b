import threading


class IdGenerator:
    """
    Monotonic id source for Datums.
    One instance is shared by everything that writes to a given Event Log.
    """

    def __init__(self, last: int = 0):
        self._last = last
        self._lock = threading.Lock()

    @property
    def last(self) -> int:
        return self._last

    def next(self) -> int:
        with self._lock:
            self._last += 1
            return self._last

    def reset(self, last: int):
        """
        The next allocated id will be `last + 1`.
        Only called when a snapshot is restored.
        """
        with self._lock:
            self._last = last
