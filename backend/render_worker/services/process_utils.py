import re
import subprocess
from dataclasses import dataclass
from typing import Optional, Sequence


@dataclass
class ProcessError(Exception):
    """
    Typed external-process failure.
    - message: sanitized/shortened text safe for job.error_message
    - stderr/stdout: full (buffer-capped) output for server logs/debugging
    - cmd: the command executed
    """
    message: str
    stderr: str = ""
    stdout: str = ""
    returncode: Optional[int] = None
    cmd: Optional[list[str]] = None
    timed_out: bool = False

    def __str__(self) -> str:
        return self.message

    @property
    def combined_output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


# Noise that node/yarn based CLIs print around the real error
_NOISE_PATTERNS = [
    re.compile(r"^yarn run v[\d.]+", re.IGNORECASE),
    re.compile(r"^\$ ", re.IGNORECASE),
    re.compile(r"^info Visit https://yarnpkg\.com", re.IGNORECASE),
    re.compile(r"^Done in [\d.]+s\.?$", re.IGNORECASE),
    re.compile(r"^ffprobe version\b", re.IGNORECASE),
    re.compile(r"^built with\b", re.IGNORECASE),
    re.compile(r"^configuration:", re.IGNORECASE),
]


def tail_text(s: str, *, max_lines: int = 25, max_chars: int = 4000) -> str:
    if not s:
        return ""
    t = s.replace("\r\n", "\n").replace("\r", "\n")
    lines = [ln for ln in t.split("\n") if ln.strip()]
    tail = lines[-max_lines:] if len(lines) > max_lines else lines
    out = "\n".join(tail).strip()
    if len(out) > max_chars:
        out = out[-max_chars:]
    return out


def sanitize_output(output: str, max_lines: int = 25, max_chars: int = 4000) -> str:
    """
    Keep the error understandable but short:
    - take the last N lines (CLIs usually print the real reason near the end)
    - trim overly long lines and total size
    - remove common noisy prefixes
    """
    if not output:
        return "no output captured"

    tail = tail_text(output, max_lines=max_lines, max_chars=max_chars * 2).split("\n")

    cleaned: list[str] = []
    for ln in tail:
        ln = ln.strip()
        if not ln:
            continue
        if any(p.match(ln) for p in _NOISE_PATTERNS):
            continue
        if len(ln) > 500:
            ln = ln[:500] + "…"
        cleaned.append(ln)

    out = "\n".join(cleaned).strip()
    if not out:
        out = "no useful output"

    if len(out) > max_chars:
        out = out[-max_chars:]
    return out


def _cap(text: Optional[str], max_bytes: Optional[int]) -> str:
    if not text:
        return ""
    if max_bytes is None:
        return text
    encoded = text.encode("utf-8", errors="replace")
    if len(encoded) <= max_bytes:
        return text
    # Keep the tail; that is where failures are reported.
    return encoded[-max_bytes:].decode("utf-8", errors="replace")


def _to_text(value) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def run_capture(
    cmd: Sequence[str],
    *,
    name: str,
    timeout: Optional[float] = None,
    cwd: Optional[str] = None,
    max_output_bytes: Optional[int] = None,
    check: bool = True,
) -> subprocess.CompletedProcess:
    """
    Run an external tool with robust defaults:
    - no stdin, so a tool waiting for input cannot hang the worker
    - capture output for diagnostics (capped at `max_output_bytes` per stream)
    - optionally raise ProcessError with sanitized output
    """
    cmd_list = [str(c) for c in cmd]
    if not cmd_list:
        raise ValueError(f"Empty {name} command")

    try:
        proc = subprocess.run(
            cmd_list,
            capture_output=True,
            stdin=subprocess.DEVNULL,
            encoding="utf-8",
            errors="replace",
            timeout=timeout,
            cwd=cwd,
            check=False,
        )
    except subprocess.TimeoutExpired as e:
        raise ProcessError(
            message=f"{name} timed out after {timeout}s",
            stderr=_cap(_to_text(e.stderr), max_output_bytes),
            stdout=_cap(_to_text(e.stdout), max_output_bytes),
            cmd=cmd_list,
            timed_out=True,
        )
    except FileNotFoundError:
        raise ProcessError(
            message=f"{name} executable not found: {cmd_list[0]}",
            cmd=cmd_list,
        )

    stdout = _cap(proc.stdout, max_output_bytes)
    stderr = _cap(proc.stderr, max_output_bytes)
    proc.stdout = stdout
    proc.stderr = stderr

    if check and proc.returncode != 0:
        rc = proc.returncode
        # Container OOM kills arrive as SIGKILL with no output.
        likely_oom = rc in (137, -9)
        if not stderr and not stdout:
            extra = "Likely out of memory in the worker container." if likely_oom else "No output captured."
            msg = f"{name} failed (exit {rc}). {extra}"
        else:
            msg = f"{name} failed (exit {rc}):\n{sanitize_output(stderr or stdout)}"

        raise ProcessError(
            message=msg,
            stderr=stderr,
            stdout=stdout,
            returncode=rc,
            cmd=cmd_list,
        )

    return proc
