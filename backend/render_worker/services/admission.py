import threading


class AdmissionController:
    """
    Bounded counter of in-flight render slots.

    `try_acquire()` never blocks: a caller at the ceiling is rejected and
    expected to fail fast. Every successful acquire must be paired with
    exactly one `release()`. The count is process-local and resets on restart.
    """

    def __init__(self, limit: int = 1):
        if limit < 1:
            raise ValueError("Admission limit must be at least 1")
        self.limit = limit
        self._active = 0
        self._lock = threading.Lock()

    @property
    def active(self) -> int:
        return self._active

    def try_acquire(self) -> bool:
        with self._lock:
            if self._active >= self.limit:
                return False
            self._active += 1
            return True

    def release(self) -> None:
        with self._lock:
            if self._active <= 0:
                raise RuntimeError("release() called without a matching acquire")
            self._active -= 1
