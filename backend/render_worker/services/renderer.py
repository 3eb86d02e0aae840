import os
import shlex
import shutil
import time
from dataclasses import dataclass, field
from typing import List, Optional

from render_worker.config import get_settings
from render_worker.logging_config import get_logger
from render_worker.models import RenderResult
from render_worker.services.process_utils import ProcessError, run_capture, sanitize_output
from render_worker.services.script_processor import is_moderation_failure, parse_failed_image_indexes


logger = get_logger(__name__)


@dataclass
class RenderError(Exception):
    """
    Renderer subprocess failure.
    - message: sanitized text safe for job.error_message
    - output: captured stdout+stderr (capped) for logs
    """
    message: str
    output: str = ""
    returncode: Optional[int] = None

    def __str__(self) -> str:
        return self.message


@dataclass
class RenderTimeoutError(RenderError):
    timeout_seconds: float = 0


@dataclass
class ModerationBlockedError(RenderError):
    """Image generation was rejected by the provider's safety system."""
    failed_indexes: List[int] = field(default_factory=list)


@dataclass
class OutputNotFoundError(RenderError):
    candidates: List[str] = field(default_factory=list)


class RendererService:
    """
    Drives the external scene-script renderer.

    `<command> <script> -o <output dir> [-c <lang>]`, run from the renderer's
    working directory with a hard timeout.
    """

    def __init__(
        self,
        command: Optional[str] = None,
        working_dir: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
    ):
        cfg = get_settings().rendering
        self.command = shlex.split(command or cfg.command)
        self.working_dir = working_dir if working_dir is not None else cfg.working_dir
        self.timeout_seconds = timeout_seconds if timeout_seconds is not None else cfg.render_timeout_seconds
        self.max_output_bytes = cfg.max_output_bytes
        self.caption_flag = cfg.caption_flag

    def build_command(self, script_path: str, output_dir: str, lang: Optional[str] = None) -> List[str]:
        cmd = [*self.command, os.path.abspath(script_path), "-o", os.path.abspath(output_dir)]
        if lang:
            cmd += [self.caption_flag, lang]
        return cmd

    def render(self, script_path: str, output_path: str, lang: Optional[str] = None) -> RenderResult:
        """
        Render `script_path` and move the produced file to `output_path`.

        Raises:
            RenderTimeoutError: renderer exceeded its timeout
            ModerationBlockedError: an image was rejected by moderation
            RenderError: any other non-zero exit
            OutputNotFoundError: renderer exited 0 but no video was found
        """
        output_dir = os.path.dirname(os.path.abspath(output_path))
        os.makedirs(output_dir, exist_ok=True)
        cmd = self.build_command(script_path, output_dir, lang)

        cwd = self.working_dir if self.working_dir and os.path.isdir(self.working_dir) else None
        logger.info("render_started", script=script_path, cwd=cwd, caption_lang=lang)

        started = time.monotonic()
        try:
            run_capture(
                cmd,
                name="renderer",
                timeout=self.timeout_seconds,
                cwd=cwd,
                max_output_bytes=self.max_output_bytes,
            )
        except ProcessError as e:
            output = e.combined_output
            if e.timed_out:
                raise RenderTimeoutError(
                    message=f"Renderer timed out after {self.timeout_seconds}s",
                    output=output,
                    timeout_seconds=self.timeout_seconds,
                )
            if is_moderation_failure(output):
                failed = parse_failed_image_indexes(output)
                logger.warning("render_moderation_blocked", failed_indexes=failed)
                raise ModerationBlockedError(
                    message="Image generation blocked by moderation",
                    output=output,
                    returncode=e.returncode,
                    failed_indexes=failed,
                )
            raise RenderError(message=e.message, output=output, returncode=e.returncode)
        elapsed = time.monotonic() - started

        video_path = self.locate_output(script_path, output_path, lang)
        logger.info("render_finished", seconds=round(elapsed), video=video_path)
        return RenderResult(video_path=video_path, total_seconds=elapsed)

    def output_candidates(self, script_path: str, output_path: str, lang: Optional[str] = None) -> List[str]:
        output_dir = os.path.dirname(os.path.abspath(output_path))
        stem = os.path.splitext(os.path.basename(script_path))[0]
        candidates = []
        if lang:
            candidates.append(os.path.join(output_dir, f"{stem}__{lang}.mp4"))
        candidates.append(os.path.join(output_dir, f"{stem}.mp4"))
        candidates.append(os.path.join(output_dir, "script.mp4"))
        candidates.append(os.path.abspath(output_path))
        return candidates

    def locate_output(self, script_path: str, output_path: str, lang: Optional[str] = None) -> str:
        """First existing candidate wins and is moved to the canonical path."""
        target = os.path.abspath(output_path)
        candidates = self.output_candidates(script_path, output_path, lang)
        for candidate in candidates:
            if os.path.exists(candidate):
                if candidate != target:
                    shutil.move(candidate, target)
                return target

        listing = sorted(os.listdir(os.path.dirname(target))) if os.path.isdir(os.path.dirname(target)) else []
        logger.error("render_output_missing", candidates=candidates, found=listing)
        raise OutputNotFoundError(
            message="output not produced",
            output=sanitize_output("\n".join(listing)),
            candidates=candidates,
        )
