import json
from dataclasses import dataclass
from typing import Optional

from render_worker.models import MediaInfo
from render_worker.services.process_utils import ProcessError, run_capture


@dataclass
class MediaProbeError(Exception):
    """Raised when ffprobe cannot read stream metadata from a file."""
    message: str
    path: str = ""
    stderr: str = ""

    def __str__(self) -> str:
        return self.message


def probe_video(path: str, *, ffprobe: str = "ffprobe", timeout: Optional[float] = 30.0) -> MediaInfo:
    """
    Read width, height and duration of the first video stream.

    Args:
        path: Local media file
        ffprobe: ffprobe executable
        timeout: Seconds before the probe is abandoned

    Returns:
        MediaInfo with the duration in seconds (unrounded)
    """
    cmd = [
        ffprobe,
        "-v", "error",
        "-select_streams", "v:0",
        "-show_entries", "stream=width,height,duration",
        "-of", "json",
        path,
    ]
    try:
        proc = run_capture(cmd, name="ffprobe", timeout=timeout)
    except ProcessError as e:
        raise MediaProbeError(message=str(e), path=path, stderr=e.stderr)

    try:
        data = json.loads(proc.stdout or "{}")
    except json.JSONDecodeError as e:
        raise MediaProbeError(message=f"ffprobe returned invalid JSON: {e}", path=path)

    streams = data.get("streams") or []
    if not streams:
        raise MediaProbeError(message="No video stream found", path=path)

    stream = streams[0]
    try:
        width = int(stream["width"])
        height = int(stream["height"])
        duration = float(stream["duration"])
    except (KeyError, TypeError, ValueError) as e:
        raise MediaProbeError(message=f"Incomplete stream metadata: {e}", path=path)

    return MediaInfo(width=width, height=height, duration_seconds=duration)
