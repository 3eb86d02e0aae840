import json
import os
import time
from typing import Any, Callable, Dict, Optional

from render_worker.config import get_settings
from render_worker.logging_config import get_logger
from render_worker.models import Job, JobOutcome, JobOutput, JobStatus, RenderResult
from render_worker.services.finalizer import Finalizer
from render_worker.services.job_store import BaseJobStore
from render_worker.services.notifier import Notifier
from render_worker.services.publisher import ResilientPublisher
from render_worker.services.renderer import ModerationBlockedError, RendererService
from render_worker.services.script_processor import (
    append_credit_beat,
    caption_lang,
    is_uuid,
    replace_images_with_fallback,
    sanitize_image_prompts,
    validate_job,
)
from render_worker.services.storage import StorageService
from render_worker.services.workspace import Workspace, create_workspace, release_workspace


logger = get_logger(__name__)


def _write_script(path: str, script: Dict[str, Any]) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(script, f, ensure_ascii=False, indent=2)


class JobOrchestrator:
    """
    Drives one job from `processing` to a terminal state.

    `process()` never raises: every failure is persisted on the job record,
    sent to the notifier and returned as a failed `JobOutcome`. The workspace
    is removed on every path.
    """

    def __init__(
        self,
        store: BaseJobStore,
        *,
        storage: Optional[StorageService] = None,
        renderer: Optional[RendererService] = None,
        publisher: Optional[ResilientPublisher] = None,
        finalizer: Optional[Finalizer] = None,
        notifier: Optional[Notifier] = None,
        temp_root: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = get_settings()
        self.store = store
        self.storage = storage if storage is not None else StorageService()
        self.renderer = renderer or RendererService()
        self.publisher = publisher or ResilientPublisher(self.storage)
        self.finalizer = finalizer or Finalizer()
        self.notifier = notifier or Notifier()
        self.temp_root = temp_root
        self.clock = clock

    def process(self, job: Job) -> JobOutcome:
        started = self.clock()
        workspace: Optional[Workspace] = None
        log = logger.bind(job_id=job.job_id, story_id=job.parent_story_id)

        try:
            script = validate_job(job)

            self.store.mark_processing(
                job.job_id,
                parent_story_id=job.parent_story_id,
                owner_id=job.owner_id,
                title=job.title,
            )
            log.info("job_processing")

            workspace = create_workspace(job.job_id, self.temp_root)
            lang = caption_lang(script)

            output: Optional[JobOutput] = None
            if self._existing_video(job.job_id):
                output = self._reuse_existing(job, workspace, started)
            if output is None:
                output = self._render_and_publish(job, script, workspace, lang, started)

            if not self.store.complete_job_if_not_failed(job.job_id, output, title=job.title):
                log.warning("job_completion_not_applied")
            self._complete_story(job.parent_story_id)

            log.info(
                "job_completed",
                url=output.public_url,
                duration_seconds=output.duration_seconds,
                processing_seconds=output.processing_seconds,
            )
            return JobOutcome(job_id=job.job_id, status=JobStatus.COMPLETED, output=output)

        except Exception as e:
            message = str(e) or e.__class__.__name__
            log.error("job_failed", error=message, error_type=e.__class__.__name__)
            self._persist_failure(job, message)
            self.notifier.notify_failure(
                job.job_id,
                message,
                parent_story_id=job.parent_story_id,
                title=job.title,
            )
            return JobOutcome(job_id=job.job_id, status=JobStatus.FAILED, error_message=message)

        finally:
            release_workspace(workspace)

    def _render_and_publish(
        self,
        job: Job,
        script: Dict[str, Any],
        workspace: Workspace,
        lang: Optional[str],
        started: float,
    ) -> JobOutput:
        script = sanitize_image_prompts(script)
        script = append_credit_beat(script)
        _write_script(workspace.script_path, script)

        render_started = self.clock()
        result = self._render(script, workspace, lang)
        render_seconds = self.clock() - render_started

        public_url = self.publisher.publish(job.job_id, result.video_path)

        return self.finalizer.finalize(
            result.video_path,
            public_url,
            processing_seconds=self.clock() - started,
            render_seconds=render_seconds,
        )

    def _render(self, script: Dict[str, Any], workspace: Workspace, lang: Optional[str]) -> RenderResult:
        """
        Render the script, re-rendering with placeholder images while the
        image provider's moderation rejects beats. A final attempt replaces
        every generated image; non-moderation errors propagate at once.
        """
        try:
            return self.renderer.render(workspace.script_path, workspace.output_path, lang)
        except ModerationBlockedError as e:
            last = e

        max_retries = self.settings.rendering.moderation_max_retries
        working = script
        replaced = set()
        for retry in range(1, max_retries + 1):
            if last.failed_indexes:
                replaced.update(last.failed_indexes)
                working = replace_images_with_fallback(working, last.failed_indexes)
            else:
                working = replace_images_with_fallback(working)
            retry_path = workspace.file(f"script_retry_{retry}.json")
            _write_script(retry_path, working)
            logger.info("moderation_retry", job_id=workspace.job_id, retry=retry, replaced=sorted(replaced))
            try:
                return self.renderer.render(retry_path, workspace.output_path, lang)
            except ModerationBlockedError as e:
                last = e

        logger.warning("moderation_final_fallback", job_id=workspace.job_id)
        final_path = workspace.file("script_final_fallback.json")
        _write_script(final_path, replace_images_with_fallback(script))
        return self.renderer.render(final_path, workspace.output_path, lang)

    def _existing_video(self, job_id: str) -> bool:
        try:
            return self.storage.video_exists(job_id)
        except Exception as e:
            logger.warning("existing_video_check_failed", job_id=job_id, error=str(e))
            return False

    def _reuse_existing(self, job: Job, workspace: Workspace, started: float) -> Optional[JobOutput]:
        """Finalized output of the already published video, or None to render fresh."""
        try:
            self.storage.download_video(job.job_id, workspace.output_path)
        except Exception as e:
            logger.warning("existing_video_download_failed", job_id=job.job_id, error=str(e))
            if os.path.exists(workspace.output_path):
                os.remove(workspace.output_path)
            return None
        logger.info("existing_video_reused", job_id=job.job_id)
        return self.finalizer.finalize(
            workspace.output_path,
            self.storage.video_url(job.job_id),
            processing_seconds=self.clock() - started,
            reused_existing=True,
        )

    def _complete_story(self, story_id: str) -> None:
        try:
            self.store.complete_story(story_id)
        except Exception as e:
            logger.warning("story_completion_failed", story_id=story_id, error=str(e))

    def _persist_failure(self, job: Job, message: str) -> None:
        if not job.job_id:
            return
        try:
            self.store.fail_job_if_not_completed(
                job.job_id, message, create_if_missing=is_uuid(job.job_id)
            )
        except Exception as e:
            logger.error("job_failure_not_persisted", job_id=job.job_id, error=str(e))
