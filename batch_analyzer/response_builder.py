"""
Response envelopes for the analyze endpoint, and the classification table
mapping pipeline failures to HTTP errors.
"""
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Sequence, Tuple

from werkzeug.exceptions import HTTPException

from .exceptions import AnalyzerError, UpstreamFormatError, UploadValidationError
from .models import AnalysisOutcome, BatchEnvelope, BatchMeta, BatchSummary

logger = logging.getLogger(__name__)

INTERNAL_ERROR = "Internal server error"


def new_batch_id() -> str:
    return f"batch_{uuid.uuid4().hex[:8]}"


def new_batch_meta(total_images: int, batch_id: Optional[str] = None) -> BatchMeta:
    return BatchMeta(
        batch_id=batch_id or new_batch_id(),
        processed_at=datetime.now(timezone.utc),
        total_images=total_images,
    )


def build_envelope(meta: BatchMeta, outcomes: Sequence[AnalysisOutcome],
                   summary: BatchSummary) -> BatchEnvelope:
    if len(outcomes) != meta.total_images:
        raise ValueError(
            f"Batch {meta.batch_id} has {len(outcomes)} results for {meta.total_images} images")
    return BatchEnvelope(meta=meta, results=list(outcomes), summary=summary)


def _error_body(error: str, details: Optional[str] = None) -> Dict[str, Any]:
    body = {'error': error}
    if details and details != error:
        body['details'] = details
    return body


def map_error(error: BaseException) -> Tuple[int, Dict[str, Any]]:
    """Classify a pipeline failure as ``(status, {error, details?})``.

    Validation failures are 400, unparseable collaborator output is 502,
    werkzeug HTTP errors keep their own code, everything else is 500.
    """
    if isinstance(error, UploadValidationError):
        return 400, _error_body(error.error, str(error))

    if isinstance(error, UpstreamFormatError):
        return 502, _error_body(error.error, str(error))

    if isinstance(error, AnalyzerError):
        return error.status_code, _error_body(error.error, str(error))

    if isinstance(error, HTTPException):
        return error.code or 500, _error_body(error.name, error.description)

    return 500, _error_body(INTERNAL_ERROR, str(error) or type(error).__name__)
