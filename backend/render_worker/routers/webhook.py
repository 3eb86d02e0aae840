"""
Render webhook endpoint.

In synchronous mode each `video_generation` request runs the whole job before
the response is written; the admission controller bounds how many run at once.
"""

import json
from typing import Any, Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from render_worker.logging_config import get_logger
from render_worker.models import VideoGenerationPayload
from render_worker.services.script_processor import is_uuid


router = APIRouter()
logger = get_logger(__name__)

VIDEO_GENERATION = "video_generation"


def _parse_body(raw: bytes) -> Any:
    return json.loads(raw.decode("utf-8"))


def _video_payload(body: Any) -> Optional[VideoGenerationPayload]:
    """
    The payload of a video_generation request, or None for any other type.

    A missing or malformed payload still yields a (blank) payload so the job
    fails validation instead of being acknowledged.
    """
    if not isinstance(body, dict) or body.get("type") != VIDEO_GENERATION:
        return None
    payload = body.get("payload")
    return VideoGenerationPayload.model_validate(payload if isinstance(payload, dict) else {})


def _fail_rate_limited(store, raw: bytes) -> None:
    try:
        payload = _video_payload(_parse_body(raw))
    except (ValueError, UnicodeDecodeError):
        return
    if payload is None or not payload.job_id_text:
        return
    job_id = payload.job_id_text
    try:
        store.fail_rate_limited(job_id, owner_id=payload.owner_id_text, create_if_missing=is_uuid(job_id))
        logger.info("job_failed_rate_limited", job_id=job_id)
    except Exception as e:
        logger.error("rate_limit_status_update_failed", job_id=job_id, error=str(e))


@router.post("/webhook")
async def receive_webhook(request: Request):
    state = request.app.state
    settings = state.settings

    if settings.worker.standalone:
        return {"success": True, "message": "WATCH mode - webhook ignored"}

    raw = await request.body()
    admission = state.admission

    if not admission.try_acquire():
        logger.warning("admission_rejected", active=admission.active, limit=admission.limit)
        await run_in_threadpool(_fail_rate_limited, state.store, raw)
        return JSONResponse(
            status_code=429,
            content={
                "error": "Rate limit exceeded - too many concurrent requests",
                "activeRequests": admission.active,
                "maxRequests": admission.limit,
            },
        )

    try:
        try:
            body = _parse_body(raw)
        except (ValueError, UnicodeDecodeError):
            return JSONResponse(status_code=400, content={"error": "Invalid JSON"})

        payload = _video_payload(body)
        if payload is None:
            return {"success": True, "message": "Webhook received but no action needed"}

        job = payload.to_job()
        logger.info("webhook_job_received", job_id=job.job_id, story_id=job.parent_story_id)

        try:
            outcome = await run_in_threadpool(state.orchestrator.process, job)
        except Exception as e:
            message = f"Processing error: {e}"
            logger.error("webhook_processing_error", job_id=job.job_id, error=str(e), exc_info=True)
            if job.job_id:
                try:
                    await run_in_threadpool(
                        state.store.fail_job_if_not_completed, job.job_id, message, None, is_uuid(job.job_id)
                    )
                except Exception as store_err:
                    logger.error("job_failure_not_persisted", job_id=job.job_id, error=str(store_err))
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": str(e), "jobId": job.job_id},
            )

        if not outcome.succeeded:
            return JSONResponse(
                status_code=500,
                content={"success": False, "error": outcome.error_message, "jobId": job.job_id},
            )

        return {
            "success": True,
            "message": "Video generation completed",
            "jobId": job.job_id,
            "publicUrl": outcome.output.public_url if outcome.output else None,
        }
    finally:
        admission.release()
