"""
Data model for one analysis batch: uploaded files, per-image outcomes,
the derived summary and the response envelope.
"""
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union


class OutcomeKind(Enum):
    """Classification of one analysed image"""
    TICKET = "ticket"
    VEHICLE = "vehicle"
    UNKNOWN = "unknown"
    ERROR = "error"

    @classmethod
    def from_raw(cls, value: Any) -> "OutcomeKind":
        """Map a collaborator-reported type; anything unrecognised is unknown.

        The collaborator cannot report ERROR, that kind is reserved for
        failed calls.
        """
        if isinstance(value, str):
            normalized = value.strip().lower()
            for kind in (cls.TICKET, cls.VEHICLE):
                if kind.value == normalized:
                    return kind
        return cls.UNKNOWN


@dataclass(frozen=True)
class UploadedFile:
    """One accepted file part from the multipart upload"""
    field_name: str
    original_name: str
    media_type: str
    content: bytes = field(repr=False)

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class CallSuccess:
    """Settled collaborator call that produced a usable analysis"""
    kind: OutcomeKind
    confidence: float
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CallFailure:
    """Settled collaborator call that failed, with a user-visible reason"""
    reason: str
    error_type: str = "Exception"


CallResult = Union[CallSuccess, CallFailure]


@dataclass
class AnalysisOutcome:
    """Result for one image, always present even when analysis failed"""
    image_id: str
    kind: OutcomeKind
    confidence: float
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_error(self) -> bool:
        return self.kind is OutcomeKind.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            'image_id': self.image_id,
            'type': self.kind.value,
            'confidence': self.confidence,
            'data': self.payload,
        }


@dataclass
class CombinedTotal:
    amount: float
    currency: str

    def to_dict(self) -> Dict[str, Any]:
        return {'amount': self.amount, 'currency': self.currency}


@dataclass
class BatchSummary:
    """Statistics derived from the outcomes of one batch"""
    total_tickets: int = 0
    vehicles_detected: int = 0
    vehicle_types: Dict[str, int] = field(default_factory=dict)
    combined_total: Optional[CombinedTotal] = None

    def to_dict(self) -> Dict[str, Any]:
        summary = {
            'total_tickets': self.total_tickets,
            'vehicles_detected': self.vehicles_detected,
            'vehicle_types': dict(self.vehicle_types),
        }
        # Absent rather than null when the currency rule does not hold
        if self.combined_total is not None:
            summary['combined_total'] = self.combined_total.to_dict()
        return summary


@dataclass
class BatchMeta:
    batch_id: str
    processed_at: datetime
    total_images: int

    def to_dict(self) -> Dict[str, Any]:
        processed_at = self.processed_at.isoformat(timespec='milliseconds')
        if processed_at.endswith('+00:00'):
            processed_at = processed_at[:-len('+00:00')] + 'Z'
        return {
            'batch_id': self.batch_id,
            'processed_at': processed_at,
            'total_images': self.total_images,
        }


@dataclass
class BatchEnvelope:
    meta: BatchMeta
    results: List[AnalysisOutcome]
    summary: BatchSummary

    def to_dict(self) -> Dict[str, Any]:
        return {
            'meta': self.meta.to_dict(),
            'results': [outcome.to_dict() for outcome in self.results],
            'summary': self.summary.to_dict(),
        }
