"""
Queue Poller - standalone job discovery.

Every interval the oldest `queued` record is re-checked and, if still queued,
run through the orchestrator. One job per cycle.

The claim is read-then-act: two pollers sharing one record store can both
see the same job as queued between the re-check and `mark_processing`. Run a
single poller per store.
"""

import threading
from typing import Any, Dict, Optional

from render_worker.config import get_settings
from render_worker.logging_config import get_logger, setup_logging
from render_worker.models import Job, JobStatus
from render_worker.services.job_store import BaseJobStore, build_job_store
from render_worker.services.orchestrator import JobOrchestrator
from render_worker.services.storage import StorageService


logger = get_logger(__name__)

STORY_NOT_FOUND = "story or storyboard not found"


class QueuePoller:
    def __init__(
        self,
        store: BaseJobStore,
        orchestrator: JobOrchestrator,
        interval_seconds: Optional[float] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else get_settings().worker.poll_interval_seconds
        )

    def load_script(self, story_id: str) -> Optional[Any]:
        """Script from the parent story, falling back to its storyboard."""
        for kind in ("story", "storyboard"):
            record: Optional[Dict[str, Any]] = self.store.get_story(story_id, kind=kind) if story_id else None
            if record and record.get("script"):
                return record["script"]
        return None

    def run_once(self) -> Optional[str]:
        """
        Process at most one queued job.

        Returns:
            The job id that was handled, or None if the cycle was skipped
        """
        candidate = self.store.oldest_queued()
        if not candidate:
            return None

        job_id = candidate["job_id"]
        if self.store.get_status(job_id) != JobStatus.QUEUED.value:
            logger.info("poll_skipped_already_claimed", job_id=job_id)
            return None

        story_id = candidate.get("parent_story_id") or ""
        script = self.load_script(story_id)
        if script is None:
            logger.warning("poll_story_missing", job_id=job_id, story_id=story_id)
            self.store.fail_job_if_not_completed(job_id, STORY_NOT_FOUND)
            return job_id

        job = Job(
            job_id=job_id,
            parent_story_id=story_id,
            owner_id=candidate.get("owner_id"),
            title=candidate.get("title") or "",
            script=script,
        )
        outcome = self.orchestrator.process(job)
        logger.info("poll_job_finished", job_id=job_id, status=outcome.status.value)
        return job_id

    def run(self, stop_event: Optional[threading.Event] = None) -> None:
        """Main poller loop; sleeps one interval after every cycle."""
        stop_event = stop_event or threading.Event()
        logger.info("poller_started", interval_seconds=self.interval_seconds)

        while not stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.error("poller_cycle_failed", error=str(e), exc_info=True)
            stop_event.wait(self.interval_seconds)

        logger.info("poller_stopped")


def build_poller() -> QueuePoller:
    store = build_job_store()
    storage = StorageService()
    if not storage.ensure_bucket():
        logger.warning("storage_not_ready")
    return QueuePoller(store, JobOrchestrator(store, storage=storage))


def main():
    """Entry point for the standalone poller."""
    setup_logging()
    poller = build_poller()
    try:
        poller.run()
    except KeyboardInterrupt:
        logger.info("poller_shutting_down")


if __name__ == "__main__":
    main()
