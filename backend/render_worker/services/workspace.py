import os
import shutil
import uuid
from dataclasses import dataclass

from render_worker.config import get_settings
from render_worker.logging_config import get_logger


logger = get_logger(__name__)


@dataclass
class Workspace:
    """Per-run scratch directory for one job."""
    job_id: str
    path: str

    @property
    def script_path(self) -> str:
        return os.path.join(self.path, "script.json")

    @property
    def output_dir(self) -> str:
        return os.path.join(self.path, "output")

    @property
    def output_path(self) -> str:
        return os.path.join(self.output_dir, f"{self.job_id}.mp4")

    def file(self, name: str) -> str:
        return os.path.join(self.path, name)


def create_workspace(job_id: str, root: str = None) -> Workspace:
    """Create a fresh directory under the temp root; never reused across runs."""
    base = root or get_settings().temp_dir
    # Suffix keeps two runs of the same job id apart.
    path = os.path.abspath(os.path.join(base, f"{job_id}-{uuid.uuid4().hex[:8]}"))
    os.makedirs(os.path.join(path, "output"), exist_ok=False)
    logger.debug("workspace_created", job_id=job_id, path=path)
    return Workspace(job_id=job_id, path=path)


def release_workspace(workspace: Workspace) -> None:
    """Remove the workspace recursively. Never raises."""
    if workspace is None:
        return
    try:
        if os.path.exists(workspace.path):
            shutil.rmtree(workspace.path)
        logger.debug("workspace_released", job_id=workspace.job_id)
    except OSError as e:
        logger.warning("workspace_cleanup_failed", job_id=workspace.job_id, path=workspace.path, error=str(e))
