"""
Script Processor Service - Validates scene scripts and prepares them for the renderer.

Every transformation works on a deep copy; the caller's script is never mutated.
"""

import copy
import json
import re
from typing import Any, Dict, Iterable, List, Optional

from pydantic import ValidationError

from render_worker.config import get_settings
from render_worker.logging_config import get_logger
from render_worker.models import Job, SceneScript


logger = get_logger(__name__)

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# Prompts that image-generation moderation tends to reject
SENSITIVE_KEYWORDS = [
    # explicit
    "全裸", "ヌード", "nude", "naked", "裸", "ヌーディスト", "露出",
    "性的", "sexual", "セックス", "sex", "エロ", "ero", "porn",
    "下着", "underwear", "lingerie", "ビキニ", "bikini",
    # violence
    "暴力", "violence", "血", "blood", "gore", "流血",
    "銃", "gun", "武器", "weapon", "刃物", "knife",
    "殺", "kill", "murder", "殺人",
    "戦争", "war", "爆発", "explosion",
    # drugs
    "ドラッグ", "drug", "薬物", "麻薬", "cocaine", "marijuana",
    "覚醒剤", "アルコール中毒", "alcoholism",
    # self-harm
    "自殺", "suicide", "自傷", "self-harm",
    "飛び降り", "jump", "首吊り", "hanging",
    # other
    "テロ", "terror", "terrorism",
    "差別", "discrimination", "人種差別", "racism",
]

MODERATION_MARKERS = (
    "moderation_blocked",
    "Request was rejected as a result of the safety system",
)

_FAILED_IMAGE_RE = re.compile(r"} image (\d+)")


class ScriptValidationError(ValueError):
    """Fatal input error: malformed identifiers or scene script."""


def is_uuid(value: Optional[str]) -> bool:
    return bool(value) and bool(UUID_RE.match(value))


def validate_job(job: Job) -> Dict[str, Any]:
    """
    Validate identifiers and script of a job.

    Returns:
        A deep copy of the script as a plain dict, ready for transformation

    Raises:
        ScriptValidationError: on any malformed input
    """
    if not is_uuid(job.job_id):
        raise ScriptValidationError(f"Invalid job id format: {job.job_id!r}")
    if not is_uuid(job.parent_story_id):
        raise ScriptValidationError(f"Invalid story id format: {job.parent_story_id!r}")

    raw = job.script
    if raw is None:
        raise ScriptValidationError("Script is missing")
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as e:
            raise ScriptValidationError(f"Script is not valid JSON: {e}")
    if not isinstance(raw, dict):
        raise ScriptValidationError("Script must be a JSON object")

    try:
        SceneScript.model_validate(raw)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(p) for p in first.get("loc", ()))
        raise ScriptValidationError(f"Invalid script at {location or 'root'}: {first.get('msg', str(e))}")

    return copy.deepcopy(raw)


def caption_lang(script: Dict[str, Any]) -> Optional[str]:
    params = script.get("captionParams") or {}
    lang = params.get("lang") if isinstance(params, dict) else None
    return lang or None


def is_sensitive_prompt(prompt: Any) -> bool:
    if not prompt or not isinstance(prompt, str):
        return False
    lowered = prompt.lower()
    return any(k.lower() in lowered for k in SENSITIVE_KEYWORDS)


def _image_prompt(beat: Dict[str, Any]) -> Optional[str]:
    image = beat.get("image")
    if isinstance(image, dict):
        source = image.get("source")
        if isinstance(source, dict):
            return source.get("prompt")
    return None


def sanitize_image_prompts(script: Dict[str, Any]) -> Dict[str, Any]:
    """Drop image fields from beats whose prompt hits a sensitive keyword."""
    processed = copy.deepcopy(script)
    removed: List[int] = []

    for index, beat in enumerate(processed.get("beats") or []):
        if not isinstance(beat, dict):
            continue
        if is_sensitive_prompt(beat.get("imagePrompt")) or is_sensitive_prompt(_image_prompt(beat)):
            beat.pop("imagePrompt", None)
            beat.pop("imageOptions", None)
            beat.pop("image", None)
            removed.append(index)

    if removed:
        logger.info("sensitive_image_prompts_removed", beats=removed)
    return processed


def _fallback_image(url: str) -> Dict[str, Any]:
    return {"type": "image", "source": {"kind": "url", "url": url}}


def append_credit_beat(script: Dict[str, Any], image_url: Optional[str] = None) -> Dict[str, Any]:
    """
    Append the closing credit beat.

    Speaker is the first configured voice, else the first beat's speaker, else "".
    """
    processed = copy.deepcopy(script)
    beats = processed.setdefault("beats", [])

    speakers = ((processed.get("speechParams") or {}).get("speakers")) or {}
    if speakers:
        speaker = next(iter(speakers))
    elif beats and isinstance(beats[0], dict):
        speaker = beats[0].get("speaker") or ""
    else:
        speaker = ""

    beats.append({
        "speaker": speaker,
        "text": "",
        "duration": 1,
        "image": _fallback_image(image_url or get_settings().rendering.credit_image_url),
    })
    return processed


def replace_images_with_fallback(
    script: Dict[str, Any],
    indexes: Optional[Iterable[int]] = None,
    image_url: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Swap generated images for the placeholder image.

    With `indexes`, exactly those beats are replaced. Without, every beat that
    would generate an image from a prompt is replaced.
    """
    url = image_url or get_settings().rendering.fallback_image_url
    processed = copy.deepcopy(script)
    wanted = set(indexes) if indexes is not None else None
    replaced: List[int] = []

    for index, beat in enumerate(processed.get("beats") or []):
        if not isinstance(beat, dict):
            continue
        if wanted is not None:
            hit = index in wanted
        else:
            hit = bool(beat.get("imagePrompt") or _image_prompt(beat))
        if not hit:
            continue
        beat.pop("imagePrompt", None)
        beat.pop("imageOptions", None)
        beat["image"] = _fallback_image(url)
        replaced.append(index)

    logger.info("images_replaced_with_fallback", beats=replaced)
    return processed


def is_moderation_failure(output: str) -> bool:
    return any(marker in (output or "") for marker in MODERATION_MARKERS)


def parse_failed_image_indexes(output: str) -> List[int]:
    """
    Find beats whose image generation was blocked.

    The renderer prints `} image N` as each image starts and a bare `> image`
    when the image step aborts; the last `} image N` before each abort marks the
    failing beat (zero-based).
    """
    failed = set()
    lines = [ln.strip() for ln in (output or "").split("\n")]
    for i, line in enumerate(lines):
        if line != "> image":
            continue
        for prev in reversed(lines[:i]):
            match = _FAILED_IMAGE_RE.search(prev)
            if match:
                failed.add(int(match.group(1)))
                break
    return sorted(failed)
