import json
import socket
import threading
import time
from typing import Callable, Optional

import urllib3
from minio.error import InvalidResponseError

from render_worker.config import get_settings
from render_worker.logging_config import get_logger
from render_worker.services.storage import StorageService


logger = get_logger(__name__)


class PublishError(Exception):
    """Upload failed and will not be retried."""

    def __init__(self, message: str, attempts: int = 1):
        super().__init__(message)
        self.attempts = attempts


class TransientPublishError(PublishError):
    """Upload failed with a transient network fault; retries are exhausted."""


# Markers of a storage proxy answering with an error page or a truncated body
_TRANSIENT_MARKERS = (
    "<!doctype",
    "<html",
    "unexpected token",
    "non-xml response",
    "json parse",
    "expecting value",
    "econnreset",
    "etimedout",
    "enotfound",
    "connection reset",
    "connection aborted",
    "timed out",
    "name or service not known",
    "temporary failure in name resolution",
)

_TRANSIENT_TYPES = (
    json.JSONDecodeError,
    InvalidResponseError,
    ConnectionError,
    TimeoutError,
    socket.gaierror,
    urllib3.exceptions.ProtocolError,
    urllib3.exceptions.TimeoutError,
    urllib3.exceptions.NewConnectionError,
    urllib3.exceptions.MaxRetryError,
)


def is_transient_error(exc: BaseException) -> bool:
    """HTML error pages, unparseable responses and connection/DNS/timeout faults."""
    if isinstance(exc, _TRANSIENT_TYPES):
        return True
    text = str(exc).lower()
    return any(marker in text for marker in _TRANSIENT_MARKERS)


class ResilientPublisher:
    """
    Uploads rendered videos with a concurrency gate and retry/backoff.

    Callers over the gate's ceiling wait in a sleep loop rather than being
    rejected. Transient faults are retried `max_retries` times with delays of
    base, 2*base, 4*base... seconds; anything else propagates immediately.
    """

    def __init__(
        self,
        storage: Optional[StorageService] = None,
        *,
        max_concurrent: Optional[int] = None,
        wait_interval: Optional[float] = None,
        max_retries: Optional[int] = None,
        base_backoff: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        cfg = get_settings().publish
        self.storage = storage if storage is not None else StorageService()
        self.max_concurrent = max_concurrent if max_concurrent is not None else cfg.max_concurrent_uploads
        self.wait_interval = wait_interval if wait_interval is not None else cfg.wait_interval_seconds
        self.max_retries = max_retries if max_retries is not None else cfg.max_retries
        self.base_backoff = base_backoff if base_backoff is not None else cfg.base_backoff_seconds
        self._sleep = sleep
        self._active = 0
        self._lock = threading.Lock()

    @property
    def active(self) -> int:
        return self._active

    def _enter(self) -> None:
        while True:
            with self._lock:
                if self._active < self.max_concurrent:
                    self._active += 1
                    return
            self._sleep(self.wait_interval)

    def _leave(self) -> None:
        with self._lock:
            self._active -= 1

    def backoff_delay(self, retry: int) -> float:
        """Delay before retry number `retry` (1-based)."""
        return self.base_backoff * (2 ** (retry - 1))

    def publish(self, job_id: str, file_path: str) -> str:
        """
        Upload `file_path` as the video for `job_id`.

        Returns:
            Public URL of the uploaded video

        Raises:
            TransientPublishError: transient faults persisted past every retry
            PublishError: non-transient failure
        """
        self._enter()
        try:
            return self._publish_with_retry(job_id, file_path)
        finally:
            self._leave()

    def _publish_with_retry(self, job_id: str, file_path: str) -> str:
        attempt = 0
        while True:
            attempt += 1
            try:
                url = self.storage.upload_video(job_id, file_path)
                logger.info("video_published", job_id=job_id, attempt=attempt, url=url)
                return url
            except Exception as e:
                if not is_transient_error(e):
                    logger.error("publish_failed", job_id=job_id, attempt=attempt, error=str(e))
                    raise PublishError(f"Upload failed: {e}", attempts=attempt) from e

                retry = attempt
                if retry > self.max_retries:
                    logger.error("publish_retries_exhausted", job_id=job_id, attempts=attempt, error=str(e))
                    raise TransientPublishError(
                        f"Upload failed after {self.max_retries} retries: {e}",
                        attempts=attempt,
                    ) from e

                delay = self.backoff_delay(retry)
                logger.warning(
                    "publish_transient_error",
                    job_id=job_id,
                    attempt=attempt,
                    retry_in_seconds=delay,
                    error=str(e),
                )
                self._sleep(delay)
