"""Shared fakes for the render worker tests."""

import json
import os
from typing import List, Optional

from render_worker.models import Job, MediaInfo, RenderResult


JOB_ID = "0f8fad5b-d9cb-469f-a165-70867728950e"
STORY_ID = "7c9e6679-7425-40de-944b-e07fc1f90ae7"


def sample_script(beats: int = 2, **extra) -> dict:
    script = {
        "$mulmocast": {"version": "1.0"},
        "imageParams": {"style": "anime"},
        "speechParams": {"speakers": {"Narrator": {"voiceId": "alloy"}, "Hero": {"voiceId": "echo"}}},
        "beats": [
            {"speaker": "Narrator", "text": f"line {i}", "imagePrompt": f"a quiet street, scene {i}"}
            for i in range(beats)
        ],
    }
    script.update(extra)
    return script


def sample_job(**overrides) -> Job:
    fields = {
        "job_id": JOB_ID,
        "parent_story_id": STORY_ID,
        "owner_id": "user-1",
        "title": "The Quiet Street",
        "script": sample_script(),
    }
    fields.update(overrides)
    return Job(**fields)


class FakeStorage:
    def __init__(self, existing: Optional[set] = None):
        self.existing = set(existing or ())
        self.uploads: List[tuple] = []
        self.errors: List[Exception] = []

    def ensure_bucket(self) -> bool:
        return True

    def upload_video(self, job_id: str, file_path: str) -> str:
        if self.errors:
            raise self.errors.pop(0)
        self.uploads.append((job_id, file_path))
        self.existing.add(job_id)
        return self.video_url(job_id)

    def video_exists(self, job_id: str) -> bool:
        return job_id in self.existing

    def download_video(self, job_id: str, file_path: str) -> str:
        os.makedirs(os.path.dirname(file_path), exist_ok=True)
        with open(file_path, "wb") as f:
            f.write(b"\x00" * 2048)
        return file_path

    def video_url(self, job_id: str) -> str:
        return f"http://storage.test/videos/videos/{job_id}.mp4"


class FakeRenderer:
    """Writes a small file to the output path; `effects` are raised in order first."""

    def __init__(self, effects: Optional[list] = None, size: int = 1024 * 1024):
        self.effects = list(effects or [])
        self.size = size
        self.calls: List[dict] = []

    def render(self, script_path: str, output_path: str, lang: Optional[str] = None) -> RenderResult:
        with open(script_path, encoding="utf-8") as f:
            script = json.load(f)
        self.calls.append({"script_path": script_path, "script": script, "lang": lang})
        if self.effects:
            raise self.effects.pop(0)
        os.makedirs(os.path.dirname(output_path), exist_ok=True)
        with open(output_path, "wb") as f:
            f.write(b"\x00" * self.size)
        return RenderResult(video_path=output_path, total_seconds=20.0)


class FakeNotifier:
    def __init__(self):
        self.calls: List[dict] = []

    def notify_failure(self, job_id, error, parent_story_id=None, title=None) -> bool:
        self.calls.append({"job_id": job_id, "error": error, "parent_story_id": parent_story_id, "title": title})
        return False


def fixed_prober(width: int = 1920, height: int = 1080, duration: float = 12.0):
    def probe(path: str) -> MediaInfo:
        return MediaInfo(width=width, height=height, duration_seconds=duration)
    return probe
