"""
Redis-backed smoke test for atomic job status transitions and the queued index.

Run from repo root:
  python backend/scripts/job_atomic_smoke.py
"""

from __future__ import annotations

import sys
import threading
import time
import uuid


def main() -> int:
    # Allow `from render_worker...` imports when running directly from repo root.
    sys.path.insert(0, "backend")

    from render_worker.models import JobOutput, JobStatus  # noqa: WPS433
    from render_worker.services.job_store import JobStore  # noqa: WPS433

    store = JobStore()
    store.redis.ping()
    print("redis:ping ok")

    story_id = str(uuid.uuid4())
    output = JobOutput(
        public_url="http://localhost:9000/videos/videos/smoke.mp4",
        duration_seconds=1,
        resolution="1920x1080",
        size_megabytes=0.1,
        processing_seconds=1,
    )

    # 1) Completed should not flip to failed
    job1 = str(uuid.uuid4())
    store.create_job(job1, story_id)
    store.mark_processing(job1)
    store.complete_job_if_not_failed(job1, output)
    applied = store.fail_job_if_not_completed(job1, "late error")
    print("test1 late-fail-applied", applied)
    assert store.get_status(job1) == JobStatus.COMPLETED.value
    assert applied is False

    # 2) Failed should not flip to completed
    job2 = str(uuid.uuid4())
    store.create_job(job2, story_id)
    store.fail_job_if_not_completed(job2, "cancelled")
    applied2 = store.complete_job_if_not_failed(job2, output)
    print("test2 complete-after-fail-applied", applied2)
    assert store.get_status(job2) == JobStatus.FAILED.value
    assert applied2 is False

    # 3) Oldest queued comes first and leaves the index once claimed
    job3 = str(uuid.uuid4())
    store.create_job(job3, story_id)
    time.sleep(0.01)
    job4 = str(uuid.uuid4())
    store.create_job(job4, story_id)
    oldest = store.oldest_queued()
    print("test3 oldest", oldest and oldest["job_id"])
    assert oldest is not None and oldest["job_id"] == job3
    store.mark_processing(job3)
    assert store.oldest_queued()["job_id"] == job4

    # 4) Concurrency: one completes, one fails; final is terminal and stable.
    results = []

    def do_complete() -> None:
        results.append(("complete", store.complete_job_if_not_failed(job4, output)))

    def do_fail() -> None:
        time.sleep(0.01)
        results.append(("fail", store.fail_job_if_not_completed(job4, "boom")))

    store.mark_processing(job4)
    t1 = threading.Thread(target=do_complete)
    t2 = threading.Thread(target=do_fail)
    t1.start()
    t2.start()
    t1.join()
    t2.join()

    print("test4 results", results)
    print("test4 final status", store.get_status(job4))
    assert store.get_status(job4) in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)

    # Cleanup
    for job_id in (job1, job2, job3, job4):
        store.delete_job(job_id)

    print("OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
