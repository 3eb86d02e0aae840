from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any
from enum import Enum
from dataclasses import dataclass


class JobStatus(str, Enum):
    """Status of a render job."""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = {JobStatus.COMPLETED.value, JobStatus.FAILED.value}


# =============================================================================
# Scene script (renderer input format)
# =============================================================================

class Beat(BaseModel):
    """One narrated unit of a scene script. Unknown renderer keys are preserved."""
    model_config = ConfigDict(extra="allow")

    speaker: str = ""
    text: str = ""
    imageDescription: Optional[str] = None
    imagePrompt: Optional[str] = None
    image: Optional[Dict[str, Any]] = None


class CaptionParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    lang: Optional[str] = None


class SpeechParams(BaseModel):
    model_config = ConfigDict(extra="allow")

    speakers: Dict[str, Any] = Field(default_factory=dict)


class SceneScript(BaseModel):
    """Validation model for an incoming scene script."""
    model_config = ConfigDict(extra="allow")

    beats: List[Beat] = Field(..., min_length=1)
    imageParams: Optional[Dict[str, Any]] = None
    speechParams: Optional[SpeechParams] = None
    captionParams: Optional[CaptionParams] = None


# =============================================================================
# Jobs
# =============================================================================

class EstimatedPhaseTimings(BaseModel):
    """
    Per-phase render timings.

    The renderer does not report phase boundaries, so these values are a fixed
    proportional split of total render wall-clock time. They are estimates, not
    measurements; `estimated` is always True for renderer-produced values.
    """
    image_generation_seconds: int = 0
    audio_generation_seconds: int = 0
    video_processing_seconds: int = 0
    total_render_seconds: int = 0
    estimated: bool = True


class JobOutput(BaseModel):
    """Output record of a completed job."""
    public_url: str
    duration_seconds: int
    resolution: str
    size_megabytes: float
    processing_seconds: int
    phase_timings: EstimatedPhaseTimings = Field(default_factory=EstimatedPhaseTimings)
    reused_existing: bool = False


class Job(BaseModel):
    """The unit of work passed through the orchestrator."""
    job_id: str
    parent_story_id: str
    owner_id: Optional[str] = None
    title: str = ""
    script: Optional[Any] = None
    status: JobStatus = JobStatus.QUEUED
    output: Optional[JobOutput] = None
    error_message: Optional[str] = None


class JobOutcome(BaseModel):
    """Terminal result of one orchestration run."""
    job_id: str
    status: JobStatus
    output: Optional[JobOutput] = None
    error_message: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == JobStatus.COMPLETED


# =============================================================================
# Webhook surface
# =============================================================================

def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


class VideoGenerationPayload(BaseModel):
    """
    `payload` of a video_generation webhook.

    Fields are accepted as sent; a malformed identifier must still reach the
    orchestrator so the job fails instead of being dropped.
    """
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    job_id: Optional[Any] = Field(None, alias="jobId")
    parent_story_id: Optional[Any] = Field(None, alias="parentStoryId")
    owner_id: Optional[Any] = Field(None, alias="ownerId")
    title: Optional[Any] = None
    script: Optional[Any] = None

    @property
    def job_id_text(self) -> str:
        return _as_text(self.job_id)

    @property
    def owner_id_text(self) -> Optional[str]:
        return None if self.owner_id is None else str(self.owner_id)

    def to_job(self) -> Job:
        return Job(
            job_id=self.job_id_text,
            parent_story_id=_as_text(self.parent_story_id),
            owner_id=self.owner_id_text,
            title=_as_text(self.title),
            script=self.script,
            status=JobStatus.PROCESSING,
        )


# --- Internal Dataclass Models ---

@dataclass
class MediaInfo:
    """Stream metadata read back from a rendered file."""
    width: int
    height: int
    duration_seconds: float

    @property
    def resolution(self) -> str:
        return f"{self.width}x{self.height}"


@dataclass
class RenderResult:
    """A located renderer output and its wall-clock render time."""
    video_path: str
    total_seconds: float
