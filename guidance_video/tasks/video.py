import threading
import time

import structlog

from guidance_video.core.exceptions import JobNotFoundError, JobStateError
from guidance_video.models import Completed, Failed
from guidance_video.services import JobStore, Pipeline, TranscodeCancelled, TranscodeFailure
from guidance_video.worker import JobTicket

logger = structlog.get_logger()

CANCELLED_MESSAGE = "Processing cancelled"


def process_video(store: JobStore, pipeline: Pipeline, ticket: JobTicket, cancel: threading.Event) -> dict:
    """Run the pipeline for one job and record its single terminal transition."""
    job_id = str(ticket.job_id)
    logger.info("job_started", job_id=job_id, challenge_id=ticket.challenge_id)
    start_time = time.time()

    try:
        if cancel.is_set():
            raise TranscodeCancelled(CANCELLED_MESSAGE)
        result = pipeline.process(ticket.job_id, ticket.raw_path, ticket.challenge_id, cancel=cancel)

    except TranscodeCancelled:
        logger.info("processing_cancelled", job_id=job_id)
        outcome = Failed(error_message=CANCELLED_MESSAGE)

    except TranscodeFailure as e:
        logger.error("processing_failed", job_id=job_id, error=str(e))
        outcome = Failed(error_message=_error_message(e))

    except Exception as e:
        logger.error("processing_error", job_id=job_id, error=str(e), error_type=type(e).__name__)
        outcome = Failed(error_message=_error_message(e, prefix=f"Processing failed: {type(e).__name__}"))

    else:
        outcome = Completed(
            processed_path=result.processed_path,
            duration=result.duration,
            file_size=result.file_size,
            completed_at=result.published_at,
        )

    processing_time = round(time.time() - start_time, 2)
    recorded = _record(store, ticket, outcome)

    return {
        "status": "success" if isinstance(outcome, Completed) else "failed",
        "job_id": job_id,
        "recorded": recorded,
        "processing_time": processing_time,
        "error": getattr(outcome, "error_message", None),
    }


def _record(store: JobStore, ticket: JobTicket, outcome: Completed | Failed) -> bool:
    try:
        if isinstance(outcome, Completed):
            store.complete(ticket.job_id, outcome)
        else:
            store.fail(ticket.job_id, outcome)
    except (JobStateError, JobNotFoundError) as e:
        logger.warning("job_transition_rejected", job_id=str(ticket.job_id), error=str(e))
        return False
    except Exception as e:
        # The row stays in processing; startup recovery fails it.
        logger.error("job_record_failed", job_id=str(ticket.job_id), error=str(e))
        return False
    return True


def _error_message(error: Exception, prefix: str | None = None) -> str:
    detail = str(error).strip()
    if prefix:
        detail = f"{prefix}: {detail}" if detail else prefix
    return (detail or "Processing failed")[:500]
