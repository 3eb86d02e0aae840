import time
import unittest

from render_worker.models import JobOutput, JobStatus
from render_worker.services.job_store import InMemoryJobStore

from support import JOB_ID, STORY_ID


def _output() -> JobOutput:
    return JobOutput(
        public_url="http://cdn/v.mp4",
        duration_seconds=12,
        resolution="1920x1080",
        size_megabytes=1.5,
        processing_seconds=30,
    )


class TestJobTransitions(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryJobStore()

    def test_completed_is_not_flipped_to_failed(self) -> None:
        self.store.create_job(JOB_ID, STORY_ID)
        self.store.mark_processing(JOB_ID)
        self.assertTrue(self.store.complete_job_if_not_failed(JOB_ID, _output(), title="T"))

        self.assertFalse(self.store.fail_job_if_not_completed(JOB_ID, "late error"))
        job = self.store.get_job(JOB_ID)
        self.assertEqual(job["status"], JobStatus.COMPLETED.value)
        self.assertEqual(job["output"]["resolution"], "1920x1080")
        self.assertEqual(job["title"], "T")

    def test_failed_is_not_flipped_to_completed(self) -> None:
        self.store.create_job(JOB_ID, STORY_ID)
        self.assertTrue(self.store.fail_job_if_not_completed(JOB_ID, "cancelled"))
        self.assertFalse(self.store.complete_job_if_not_failed(JOB_ID, _output()))
        self.assertEqual(self.store.get_status(JOB_ID), JobStatus.FAILED.value)

    def test_mark_processing_creates_missing_record(self) -> None:
        self.assertTrue(self.store.mark_processing(JOB_ID, STORY_ID, owner_id="u1", title="T"))
        job = self.store.get_job(JOB_ID)
        self.assertEqual(job["status"], JobStatus.PROCESSING.value)
        self.assertEqual(job["parent_story_id"], STORY_ID)
        self.assertEqual(job["owner_id"], "u1")

    def test_failure_for_unknown_job_needs_create_flag(self) -> None:
        self.assertFalse(self.store.fail_job_if_not_completed(JOB_ID, "boom"))
        self.assertIsNone(self.store.get_job(JOB_ID))
        self.assertTrue(self.store.fail_job_if_not_completed(JOB_ID, "boom", create_if_missing=True))
        self.assertEqual(self.store.get_job(JOB_ID)["error_message"], "boom")

    def test_rate_limit_respects_owner(self) -> None:
        self.store.create_job(JOB_ID, STORY_ID, owner_id="owner-a")
        self.assertFalse(self.store.fail_rate_limited(JOB_ID, owner_id="owner-b"))
        self.assertEqual(self.store.get_status(JOB_ID), JobStatus.QUEUED.value)

        self.assertTrue(self.store.fail_rate_limited(JOB_ID, owner_id="owner-a"))
        job = self.store.get_job(JOB_ID)
        self.assertEqual(job["status"], JobStatus.FAILED.value)
        self.assertEqual(job["error_message"], "Rate limit exceeded (429) - too many concurrent requests")

    def test_rate_limit_leaves_completed_jobs(self) -> None:
        self.store.mark_processing(JOB_ID, STORY_ID)
        self.store.complete_job_if_not_failed(JOB_ID, _output())
        self.assertFalse(self.store.fail_rate_limited(JOB_ID))

    def test_rate_limit_creates_record_for_first_seen_job(self) -> None:
        self.assertFalse(self.store.fail_rate_limited(JOB_ID, owner_id="u1"))
        self.assertIsNone(self.store.get_job(JOB_ID))

        self.assertTrue(self.store.fail_rate_limited(JOB_ID, owner_id="u1", create_if_missing=True))
        job = self.store.get_job(JOB_ID)
        self.assertEqual(job["status"], JobStatus.FAILED.value)
        self.assertEqual(job["owner_id"], "u1")
        self.assertEqual(job["error_message"], "Rate limit exceeded (429) - too many concurrent requests")


class TestQueueAndStories(unittest.TestCase):
    def setUp(self) -> None:
        self.store = InMemoryJobStore()

    def test_oldest_queued(self) -> None:
        self.assertIsNone(self.store.oldest_queued())
        self.store.create_job("a", STORY_ID)
        time.sleep(0.002)
        self.store.create_job("b", STORY_ID)
        self.assertEqual(self.store.oldest_queued()["job_id"], "a")

        self.store.mark_processing("a")
        self.assertEqual(self.store.oldest_queued()["job_id"], "b")

    def test_complete_story(self) -> None:
        self.assertFalse(self.store.complete_story(STORY_ID))
        self.store.save_story(STORY_ID, {"script": {"beats": []}, "status": "processing"})
        self.assertTrue(self.store.complete_story(STORY_ID))
        self.assertEqual(self.store.get_story(STORY_ID)["status"], "completed")

    def test_story_kinds_are_separate(self) -> None:
        self.store.save_story(STORY_ID, {"script": {"beats": [1]}}, kind="storyboard")
        self.assertIsNone(self.store.get_story(STORY_ID))
        self.assertIsNotNone(self.store.get_story(STORY_ID, kind="storyboard"))


if __name__ == "__main__":
    unittest.main()
