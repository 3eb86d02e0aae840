import os
from typing import Callable, Optional

from render_worker.logging_config import get_logger
from render_worker.models import EstimatedPhaseTimings, JobOutput, MediaInfo
from render_worker.services.media_probe import MediaProbeError, probe_video


logger = get_logger(__name__)

DEFAULT_DURATION_SECONDS = 30
DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080

# Share of render wall-clock time attributed to each phase
IMAGE_PHASE_SHARE = 0.65
AUDIO_PHASE_SHARE = 0.20
VIDEO_PHASE_SHARE = 0.15


def estimate_phase_timings(total_seconds: float) -> EstimatedPhaseTimings:
    total = round(total_seconds)
    return EstimatedPhaseTimings(
        image_generation_seconds=round(total * IMAGE_PHASE_SHARE),
        audio_generation_seconds=round(total * AUDIO_PHASE_SHARE),
        video_processing_seconds=round(total * VIDEO_PHASE_SHARE),
        total_render_seconds=total,
        estimated=True,
    )


class Finalizer:
    """Turns a published video file into the job's output record."""

    def __init__(self, prober: Optional[Callable[[str], MediaInfo]] = None):
        self.prober = prober or probe_video

    def probe(self, video_path: str) -> MediaInfo:
        """Probe stream metadata; any failure falls back to 30s at 1920x1080."""
        try:
            return self.prober(video_path)
        except MediaProbeError as e:
            logger.warning("media_probe_failed", path=video_path, error=str(e))
        except Exception as e:
            logger.warning("media_probe_failed", path=video_path, error=str(e), exc_info=True)
        return MediaInfo(width=DEFAULT_WIDTH, height=DEFAULT_HEIGHT, duration_seconds=DEFAULT_DURATION_SECONDS)

    def finalize(
        self,
        video_path: str,
        public_url: str,
        processing_seconds: float,
        render_seconds: Optional[float] = None,
        reused_existing: bool = False,
    ) -> JobOutput:
        info = self.probe(video_path)
        size_bytes = os.path.getsize(video_path) if os.path.exists(video_path) else 0

        if render_seconds is None:
            timings = EstimatedPhaseTimings()
        else:
            timings = estimate_phase_timings(render_seconds)

        return JobOutput(
            public_url=public_url,
            duration_seconds=round(info.duration_seconds),
            resolution=info.resolution,
            size_megabytes=round(size_bytes / 1024 / 1024, 2),
            processing_seconds=round(processing_seconds),
            phase_timings=timings,
            reused_existing=reused_existing,
        )
