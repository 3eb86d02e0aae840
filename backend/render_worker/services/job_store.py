import copy
import json
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import redis
from redis.exceptions import WatchError

from render_worker.config import get_settings
from render_worker.logging_config import get_logger
from render_worker.models import JobOutput, JobStatus, TERMINAL_STATUSES


logger = get_logger(__name__)

ApplyFn = Callable[[Dict[str, Any]], bool]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_job_data(job_id: str, status: JobStatus, **fields: Any) -> Dict[str, Any]:
    now = _now()
    data = {
        "job_id": job_id,
        "parent_story_id": None,
        "owner_id": None,
        "title": "",
        "status": status.value,
        "output": None,
        "error_message": None,
        "created_at": now,
        "updated_at": now,
    }
    data.update({k: v for k, v in fields.items() if v is not None})
    return data


class BaseJobStore:
    """
    Job and story records.

    State transitions are expressed as apply functions; subclasses provide the
    atomic read-modify-write. Once a job is terminal (COMPLETED/FAILED) regular
    updates are ignored; only an explicit claim (`mark_processing`) re-enters it.
    """

    rate_limit_message = "Rate limit exceeded (429) - too many concurrent requests"

    def _update_job_atomic(
        self,
        job_id: str,
        apply_fn: ApplyFn,
        *,
        allow_terminal: bool = False,
        create: Optional[Dict[str, Any]] = None,
    ) -> bool:
        raise NotImplementedError

    def create_job(
        self,
        job_id: str,
        parent_story_id: str,
        owner_id: Optional[str] = None,
        title: str = "",
    ) -> Dict[str, Any]:
        raise NotImplementedError

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def oldest_queued(self) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def save_story(self, story_id: str, story: Dict[str, Any], *, kind: str = "story") -> None:
        raise NotImplementedError

    def get_story(self, story_id: str, *, kind: str = "story") -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    def get_status(self, job_id: str) -> Optional[str]:
        job = self.get_job(job_id)
        return job.get("status") if job else None

    def mark_processing(
        self,
        job_id: str,
        parent_story_id: Optional[str] = None,
        owner_id: Optional[str] = None,
        title: Optional[str] = None,
    ) -> bool:
        """Claim a job for an orchestration run; creates the record for synchronous submissions."""

        def apply(job_data: Dict[str, Any]) -> bool:
            old_status = job_data.get("status")
            job_data["status"] = JobStatus.PROCESSING.value
            job_data["error_message"] = None
            job_data["output"] = None
            if parent_story_id:
                job_data["parent_story_id"] = parent_story_id
            if owner_id and not job_data.get("owner_id"):
                job_data["owner_id"] = owner_id
            if title:
                job_data["title"] = title
            logger.info("job_status_change", job_id=job_id, old=old_status, new=JobStatus.PROCESSING.value)
            return True

        seed = _new_job_data(
            job_id,
            JobStatus.PROCESSING,
            parent_story_id=parent_story_id,
            owner_id=owner_id,
            title=title,
        )
        return self._update_job_atomic(job_id, apply, allow_terminal=True, create=seed)

    def complete_job_if_not_failed(
        self,
        job_id: str,
        output: JobOutput,
        title: Optional[str] = None,
    ) -> bool:
        """
        Only set COMPLETED if current status is not FAILED.

        Returns True if update applied, False if job missing or already terminal.
        """

        def apply(job_data: Dict[str, Any]) -> bool:
            if job_data.get("status") == JobStatus.FAILED.value:
                return False
            job_data["status"] = JobStatus.COMPLETED.value
            job_data["output"] = output.model_dump()
            job_data["error_message"] = None
            if title:
                job_data["title"] = title
            return True

        return self._update_job_atomic(job_id, apply)

    def fail_job_if_not_completed(
        self,
        job_id: str,
        error_message: str,
        owner_id: Optional[str] = None,
        create_if_missing: bool = False,
    ) -> bool:
        """
        Only set FAILED if current status is not COMPLETED.

        When `owner_id` is given, the update only applies to a record owned by
        that owner. With `create_if_missing` a failed record is written for a
        job that was never persisted. Returns True if update applied.
        """

        def apply(job_data: Dict[str, Any]) -> bool:
            if job_data.get("status") == JobStatus.COMPLETED.value:
                return False
            if owner_id and job_data.get("owner_id") and job_data["owner_id"] != owner_id:
                return False
            job_data["status"] = JobStatus.FAILED.value
            job_data["error_message"] = error_message
            job_data["output"] = None
            return True

        seed = _new_job_data(job_id, JobStatus.PROCESSING, owner_id=owner_id) if create_if_missing else None
        return self._update_job_atomic(job_id, apply, create=seed)

    def fail_rate_limited(
        self,
        job_id: str,
        owner_id: Optional[str] = None,
        create_if_missing: bool = False,
    ) -> bool:
        """Mark a job rejected by the admission ceiling as failed.

        Unlike regular updates this also overrides a stale FAILED record, so the
        caller never sees a dangling queued/processing row. With
        `create_if_missing` a first-seen job gets a failed record.
        """

        def apply(job_data: Dict[str, Any]) -> bool:
            if job_data.get("status") == JobStatus.COMPLETED.value:
                return False
            if owner_id and job_data.get("owner_id") and job_data["owner_id"] != owner_id:
                return False
            job_data["status"] = JobStatus.FAILED.value
            job_data["error_message"] = self.rate_limit_message
            job_data["output"] = None
            return True

        seed = _new_job_data(job_id, JobStatus.PROCESSING, owner_id=owner_id) if create_if_missing else None
        return self._update_job_atomic(job_id, apply, allow_terminal=True, create=seed)

    def complete_story(self, story_id: str) -> bool:
        story = self.get_story(story_id)
        if story is None:
            return False
        story["status"] = JobStatus.COMPLETED.value
        story["updated_at"] = _now()
        self.save_story(story_id, story)
        return True


class JobStore(BaseJobStore):
    """
    Redis-backed record store.

    Jobs are JSON documents under `job:<id>`; queued job ids are kept in a
    sorted set scored by creation time so the oldest queued job is one ZRANGE.
    """

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self.settings = get_settings()
        self.redis = redis_client if redis_client is not None else redis.from_url(self.settings.redis_url)
        self.job_prefix = "job:"
        self.queued_index = "jobs:queued"

    def _job_key(self, job_id: str) -> str:
        return f"{self.job_prefix}{job_id}"

    def _story_key(self, story_id: str, kind: str) -> str:
        return f"{kind}:{story_id}"

    def _update_job_atomic(
        self,
        job_id: str,
        apply_fn: ApplyFn,
        *,
        allow_terminal: bool = False,
        create: Optional[Dict[str, Any]] = None,
        max_retries: int = 10,
    ) -> bool:
        """
        Atomically update a job using Redis WATCH/MULTI.

        Returns:
            True if an update was applied, False if job missing, terminal, or no-op.
        """
        key = self._job_key(job_id)

        for _ in range(max_retries):
            pipe = self.redis.pipeline()
            try:
                pipe.watch(key)
                raw = pipe.get(key)
                if raw:
                    job_data = json.loads(raw)
                elif create is not None:
                    job_data = copy.deepcopy(create)
                else:
                    pipe.unwatch()
                    return False

                if job_data.get("status") in TERMINAL_STATUSES and not allow_terminal:
                    pipe.unwatch()
                    return False

                if not apply_fn(job_data):
                    pipe.unwatch()
                    return False

                job_data["updated_at"] = _now()

                pipe.multi()
                pipe.set(key, json.dumps(job_data))
                if job_data["status"] == JobStatus.QUEUED.value:
                    score = datetime.fromisoformat(job_data["created_at"]).timestamp()
                    pipe.zadd(self.queued_index, {job_id: score})
                else:
                    pipe.zrem(self.queued_index, job_id)
                pipe.execute()
                logger.debug("job_updated", job_id=job_id, status=job_data["status"])
                return True
            except WatchError:
                # Another writer updated the key; retry.
                continue
            finally:
                pipe.reset()

        logger.warning("job_update_gave_up", job_id=job_id, retries=max_retries)
        return False

    def create_job(
        self,
        job_id: str,
        parent_story_id: str,
        owner_id: Optional[str] = None,
        title: str = "",
    ) -> Dict[str, Any]:
        job_data = _new_job_data(
            job_id,
            JobStatus.QUEUED,
            parent_story_id=parent_story_id,
            owner_id=owner_id,
            title=title,
        )
        score = datetime.fromisoformat(job_data["created_at"]).timestamp()
        pipe = self.redis.pipeline()
        pipe.set(self._job_key(job_id), json.dumps(job_data))
        pipe.zadd(self.queued_index, {job_id: score})
        pipe.execute()
        return job_data

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        data = self.redis.get(self._job_key(job_id))
        if data:
            return json.loads(data)
        return None

    def oldest_queued(self) -> Optional[Dict[str, Any]]:
        for raw_id in self.redis.zrange(self.queued_index, 0, 0):
            job_id = raw_id.decode("utf-8") if isinstance(raw_id, bytes) else raw_id
            job = self.get_job(job_id)
            if job is None:
                # Stale index entry (record deleted); drop it and let the next cycle look again.
                self.redis.zrem(self.queued_index, job_id)
                return None
            return job
        return None

    def save_story(self, story_id: str, story: Dict[str, Any], *, kind: str = "story") -> None:
        self.redis.set(self._story_key(story_id, kind), json.dumps(story))

    def get_story(self, story_id: str, *, kind: str = "story") -> Optional[Dict[str, Any]]:
        data = self.redis.get(self._story_key(story_id, kind))
        if data:
            return json.loads(data)
        return None

    def delete_job(self, job_id: str) -> None:
        pipe = self.redis.pipeline()
        pipe.delete(self._job_key(job_id))
        pipe.zrem(self.queued_index, job_id)
        pipe.execute()


class InMemoryJobStore(BaseJobStore):
    """Process-local record store with the same semantics as `JobStore`."""

    def __init__(self):
        self._jobs: Dict[str, Dict[str, Any]] = {}
        self._stories: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    def _update_job_atomic(
        self,
        job_id: str,
        apply_fn: ApplyFn,
        *,
        allow_terminal: bool = False,
        create: Optional[Dict[str, Any]] = None,
    ) -> bool:
        with self._lock:
            current = self._jobs.get(job_id)
            if current is None:
                if create is None:
                    return False
                current = copy.deepcopy(create)
            job_data = copy.deepcopy(current)
            if job_data.get("status") in TERMINAL_STATUSES and not allow_terminal:
                return False
            if not apply_fn(job_data):
                return False
            job_data["updated_at"] = _now()
            self._jobs[job_id] = job_data
            return True

    def create_job(
        self,
        job_id: str,
        parent_story_id: str,
        owner_id: Optional[str] = None,
        title: str = "",
    ) -> Dict[str, Any]:
        job_data = _new_job_data(
            job_id,
            JobStatus.QUEUED,
            parent_story_id=parent_story_id,
            owner_id=owner_id,
            title=title,
        )
        with self._lock:
            self._jobs[job_id] = job_data
        return copy.deepcopy(job_data)

    def get_job(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job else None

    def oldest_queued(self) -> Optional[Dict[str, Any]]:
        with self._lock:
            queued = [j for j in self._jobs.values() if j["status"] == JobStatus.QUEUED.value]
            if not queued:
                return None
            oldest = min(queued, key=lambda j: j["created_at"])
            return copy.deepcopy(oldest)

    def save_story(self, story_id: str, story: Dict[str, Any], *, kind: str = "story") -> None:
        with self._lock:
            self._stories[f"{kind}:{story_id}"] = copy.deepcopy(story)

    def get_story(self, story_id: str, *, kind: str = "story") -> Optional[Dict[str, Any]]:
        with self._lock:
            story = self._stories.get(f"{kind}:{story_id}")
            return copy.deepcopy(story) if story else None


def build_job_store() -> BaseJobStore:
    """Construct the configured record store."""
    settings = get_settings()
    if settings.storage.record_store == "memory":
        logger.warning("using_in_memory_record_store")
        return InMemoryJobStore()
    return JobStore()
