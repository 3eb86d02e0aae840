import os
import tempfile
import unittest

from render_worker.models import JobStatus
from render_worker.services.finalizer import Finalizer
from render_worker.services.job_store import InMemoryJobStore
from render_worker.services.orchestrator import JobOrchestrator
from render_worker.services.publisher import ResilientPublisher
from render_worker.services.renderer import ModerationBlockedError, RenderError, RenderTimeoutError

from support import (
    JOB_ID,
    STORY_ID,
    FakeNotifier,
    FakeRenderer,
    FakeStorage,
    fixed_prober,
    sample_job,
    sample_script,
)


class BrokenDownloadStorage(FakeStorage):
    def download_video(self, job_id: str, file_path: str) -> str:
        os.makedirs(os.path.dirname(file_path), exist_ok=True)
        with open(file_path, "wb") as f:
            f.write(b"\x00" * 16)
        raise OSError("connection reset during download")


class OrchestratorTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = InMemoryJobStore()
        self.storage = FakeStorage()
        self.renderer = FakeRenderer()
        self.notifier = FakeNotifier()
        self.sleeps = []

    def tearDown(self) -> None:
        self.tmp.cleanup()

    def orchestrator(self) -> JobOrchestrator:
        publisher = ResilientPublisher(self.storage, sleep=self.sleeps.append)
        return JobOrchestrator(
            self.store,
            storage=self.storage,
            renderer=self.renderer,
            publisher=publisher,
            finalizer=Finalizer(fixed_prober(1920, 1080, 12.0)),
            notifier=self.notifier,
            temp_root=self.tmp.name,
        )

    def assertWorkspacesGone(self) -> None:
        self.assertEqual(os.listdir(self.tmp.name), [])


class TestHappyPath(OrchestratorTestCase):
    def test_end_to_end(self) -> None:
        self.store.save_story(STORY_ID, {"script": sample_script(), "status": "processing"})

        outcome = self.orchestrator().process(sample_job())

        self.assertTrue(outcome.succeeded)
        self.assertEqual(outcome.output.duration_seconds, 12)
        self.assertEqual(outcome.output.resolution, "1920x1080")
        self.assertEqual(outcome.output.size_megabytes, 1.0)
        self.assertEqual(outcome.output.public_url, self.storage.video_url(JOB_ID))

        job = self.store.get_job(JOB_ID)
        self.assertEqual(job["status"], JobStatus.COMPLETED.value)
        self.assertEqual(job["output"]["duration_seconds"], 12)
        self.assertEqual(job["title"], "The Quiet Street")
        self.assertEqual(self.store.get_story(STORY_ID)["status"], "completed")

        self.assertEqual(len(self.storage.uploads), 1)
        self.assertEqual(self.notifier.calls, [])
        self.assertWorkspacesGone()

    def test_renderer_receives_credit_beat(self) -> None:
        self.orchestrator().process(sample_job(script=sample_script(beats=3)))

        script = self.renderer.calls[0]["script"]
        self.assertEqual(len(script["beats"]), 4)
        self.assertEqual(script["beats"][-1]["text"], "")
        self.assertTrue(self.renderer.calls[0]["script_path"].endswith("script.json"))

    def test_caption_language_is_forwarded(self) -> None:
        job = sample_job(script=sample_script(captionParams={"lang": "ja"}))
        self.orchestrator().process(job)
        self.assertEqual(self.renderer.calls[0]["lang"], "ja")

    def test_existing_video_is_reused(self) -> None:
        self.storage.existing.add(JOB_ID)

        outcome = self.orchestrator().process(sample_job())

        self.assertTrue(outcome.succeeded)
        self.assertTrue(outcome.output.reused_existing)
        self.assertEqual(outcome.output.phase_timings.total_render_seconds, 0)
        self.assertEqual(self.renderer.calls, [])
        self.assertEqual(self.storage.uploads, [])
        self.assertWorkspacesGone()

    def test_failed_download_of_existing_video_renders_fresh(self) -> None:
        self.storage = BrokenDownloadStorage(existing={JOB_ID})

        outcome = self.orchestrator().process(sample_job())

        self.assertTrue(outcome.succeeded)
        self.assertFalse(outcome.output.reused_existing)
        self.assertEqual(len(self.renderer.calls), 1)
        self.assertEqual(len(self.storage.uploads), 1)
        self.assertEqual(self.store.get_status(JOB_ID), JobStatus.COMPLETED.value)
        self.assertWorkspacesGone()

    def test_transient_upload_errors_are_retried(self) -> None:
        self.storage.errors = [ConnectionResetError("ECONNRESET")]
        outcome = self.orchestrator().process(sample_job())
        self.assertTrue(outcome.succeeded)
        self.assertEqual(self.sleeps, [2.0])


class TestFailures(OrchestratorTestCase):
    def test_invalid_script_never_reaches_renderer(self) -> None:
        outcome = self.orchestrator().process(sample_job(script={"beats": []}))

        self.assertEqual(outcome.status, JobStatus.FAILED)
        self.assertEqual(self.renderer.calls, [])
        self.assertEqual(self.store.get_status(JOB_ID), JobStatus.FAILED.value)
        self.assertEqual(len(self.notifier.calls), 1)

    def test_malformed_id_is_rejected(self) -> None:
        outcome = self.orchestrator().process(sample_job(job_id="../etc"))
        self.assertFalse(outcome.succeeded)
        self.assertIn("Invalid job id", outcome.error_message)
        self.assertEqual(self.renderer.calls, [])
        self.assertIsNone(self.store.get_job("../etc"))
        self.assertWorkspacesGone()

    def test_render_failure_is_persisted_and_notified(self) -> None:
        self.renderer.effects = [RenderError(message="renderer failed (exit 1):\nboom", returncode=1)]

        outcome = self.orchestrator().process(sample_job())

        self.assertFalse(outcome.succeeded)
        job = self.store.get_job(JOB_ID)
        self.assertEqual(job["status"], JobStatus.FAILED.value)
        self.assertIn("boom", job["error_message"])
        self.assertIsNone(job["output"])
        self.assertEqual(self.notifier.calls[0]["job_id"], JOB_ID)
        self.assertEqual(self.notifier.calls[0]["parent_story_id"], STORY_ID)
        self.assertEqual(len(self.renderer.calls), 1)
        self.assertEqual(self.storage.uploads, [])
        self.assertWorkspacesGone()

    def test_render_timeout(self) -> None:
        self.renderer.effects = [RenderTimeoutError(message="Renderer timed out after 600s", timeout_seconds=600)]
        outcome = self.orchestrator().process(sample_job())
        self.assertEqual(outcome.error_message, "Renderer timed out after 600s")
        self.assertWorkspacesGone()

    def test_publish_exhaustion_fails_job(self) -> None:
        self.storage.errors = [TimeoutError("timed out") for _ in range(4)]

        outcome = self.orchestrator().process(sample_job())

        self.assertFalse(outcome.succeeded)
        self.assertEqual(self.sleeps, [2.0, 4.0, 8.0])
        self.assertEqual(self.store.get_status(JOB_ID), JobStatus.FAILED.value)
        self.assertWorkspacesGone()


class TestModerationFallback(OrchestratorTestCase):
    def test_blocked_beats_are_replaced_and_rerendered(self) -> None:
        self.renderer.effects = [ModerationBlockedError(message="blocked", failed_indexes=[1])]

        outcome = self.orchestrator().process(sample_job(script=sample_script(beats=3)))

        self.assertTrue(outcome.succeeded)
        self.assertEqual(len(self.renderer.calls), 2)
        retry = self.renderer.calls[1]
        self.assertTrue(retry["script_path"].endswith("script_retry_1.json"))
        beats = retry["script"]["beats"]
        self.assertEqual(beats[1]["image"]["source"]["kind"], "url")
        self.assertNotIn("imagePrompt", beats[1])
        self.assertIn("imagePrompt", beats[0])

    def test_final_attempt_replaces_every_image(self) -> None:
        self.renderer.effects = [ModerationBlockedError(message="blocked", failed_indexes=[0]) for _ in range(6)]

        outcome = self.orchestrator().process(sample_job())

        self.assertTrue(outcome.succeeded)
        self.assertEqual(len(self.renderer.calls), 7)
        final = self.renderer.calls[-1]
        self.assertTrue(final["script_path"].endswith("script_final_fallback.json"))
        for beat in final["script"]["beats"][:-1]:
            self.assertNotIn("imagePrompt", beat)

    def test_other_error_during_retry_is_fatal(self) -> None:
        self.renderer.effects = [
            ModerationBlockedError(message="blocked", failed_indexes=[]),
            RenderError(message="renderer failed (exit 137). Likely out of memory in the worker container."),
        ]

        outcome = self.orchestrator().process(sample_job())

        self.assertFalse(outcome.succeeded)
        self.assertIn("out of memory", outcome.error_message)
        self.assertEqual(len(self.renderer.calls), 2)
        self.assertWorkspacesGone()


if __name__ == "__main__":
    unittest.main()
