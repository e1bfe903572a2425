"""
Batch fan-out: one concurrent collaborator call per uploaded file.

Every call is settled into a CallSuccess or CallFailure before it touches the
result, so one bad image never fails the batch. Outcomes are written into
slots indexed by upload position, never appended in completion order.
"""
import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from .exceptions import AnalyzerError, NoFilesProvided
from .models import (
    AnalysisOutcome, CallFailure, CallResult, CallSuccess, OutcomeKind, UploadedFile
)
from .schemas import coerce_analysis

logger = logging.getLogger(__name__)

AnalyzeFn = Callable[[bytes, str], Awaitable[Dict[str, Any]]]


def image_id_for(index: int) -> str:
    """Position-derived id: the first upload is img_1"""
    return f"img_{index + 1}"


def outcome_from_result(image_id: str, result: CallResult) -> AnalysisOutcome:
    if isinstance(result, CallSuccess):
        return AnalysisOutcome(
            image_id=image_id,
            kind=result.kind,
            confidence=result.confidence,
            payload=result.payload,
        )
    return AnalysisOutcome(
        image_id=image_id,
        kind=OutcomeKind.ERROR,
        confidence=0.0,
        payload={'warnings': [result.reason]},
    )


class BatchOrchestrator:
    """Runs the collaborator over a batch of files with per-item isolation"""

    def __init__(self, analyze: AnalyzeFn, timeout: Optional[float] = None,
                 max_concurrent: int = 0, expose_error_details: bool = False):
        self.analyze = analyze
        self.timeout = timeout
        self.max_concurrent = max_concurrent
        self.expose_error_details = expose_error_details

    @classmethod
    def from_config(cls, analyze: AnalyzeFn, cfg) -> "BatchOrchestrator":
        return cls(
            analyze,
            timeout=cfg.analysis_timeout,
            max_concurrent=cfg.max_concurrent_requests,
            expose_error_details=cfg.expose_error_details,
        )

    async def run(self, files: Sequence[UploadedFile]) -> List[AnalysisOutcome]:
        """Analyse every file concurrently and return outcomes in upload order"""
        if not files:
            raise NoFilesProvided()

        semaphore = asyncio.Semaphore(self.max_concurrent) if self.max_concurrent > 0 else None
        slots: List[Optional[AnalysisOutcome]] = [None] * len(files)

        async def settle_into(index: int, uploaded: UploadedFile):
            image_id = image_id_for(index)
            if semaphore is not None:
                async with semaphore:
                    result = await self._settle(image_id, uploaded)
            else:
                result = await self._settle(image_id, uploaded)
            slots[index] = outcome_from_result(image_id, result)

        start_time = time.time()
        await asyncio.gather(*(settle_into(i, f) for i, f in enumerate(files)))

        failed = sum(1 for outcome in slots if outcome.is_error)
        logger.info(
            f"Analysed {len(files)} image(s) in {time.time() - start_time:.2f}s ({failed} failed)")
        return slots

    async def _settle(self, image_id: str, uploaded: UploadedFile) -> CallResult:
        """Run one collaborator call; never raises"""
        try:
            call = self.analyze(uploaded.content, uploaded.media_type)
            if self.timeout:
                raw = await asyncio.wait_for(call, timeout=self.timeout)
            else:
                raw = await call
            return coerce_analysis(raw)
        except Exception as e:
            reason = self._failure_reason(e)
            logger.error(f"Error processing {image_id} ({uploaded.original_name}): {e!r}")
            return CallFailure(reason=reason, error_type=type(e).__name__)

    def _failure_reason(self, error: Exception) -> str:
        """User-visible warning for a failed item"""
        if isinstance(error, asyncio.TimeoutError):
            return f"Image analysis timed out after {self.timeout:g}s"
        if isinstance(error, AnalyzerError) or self.expose_error_details:
            return str(error) or type(error).__name__
        return f"Image analysis failed ({type(error).__name__})"
