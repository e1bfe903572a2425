"""
Payload shapes the vision collaborator must return for tickets and vehicles.

Models are lenient: unknown keys are kept, missing keys get null/empty
defaults and numbers printed as strings ("13,38") are coerced. Only a
structurally wrong payload (e.g. ``items`` that is not a list) is rejected.
"""
import re
from typing import Annotated, Any, Dict, List, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, ValidationError, field_validator

from .exceptions import UpstreamFormatError
from .models import CallSuccess, OutcomeKind


def _coerce_number(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        cleaned = re.sub(r"[^\d,.\-]", "", value)
        if ',' in cleaned and '.' in cleaned:
            # The separator that comes last is the decimal point
            if cleaned.rfind(',') > cleaned.rfind('.'):
                cleaned = cleaned.replace('.', '').replace(',', '.')
            else:
                cleaned = cleaned.replace(',', '')
        elif cleaned.count(',') == 1:
            cleaned = cleaned.replace(',', '.')
        else:
            cleaned = cleaned.replace(',', '')
        try:
            return float(cleaned)
        except ValueError:
            return None
    return None


def _coerce_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip() or None
    return str(value)


Number = Annotated[Optional[float], BeforeValidator(_coerce_number)]
Text = Annotated[Optional[str], BeforeValidator(_coerce_text)]


class _Payload(BaseModel):
    model_config = ConfigDict(extra='allow')


class _WarningsMixin(_Payload):
    raw_text: str = ""
    warnings: List[str] = Field(default_factory=list)

    @field_validator('raw_text', mode='before')
    @classmethod
    def raw_text_string(cls, value):
        return "" if value is None else str(value)

    @field_validator('warnings', mode='before')
    @classmethod
    def warnings_list(cls, value):
        if value is None:
            return []
        if isinstance(value, str):
            return [value]
        if isinstance(value, list):
            return [str(w) for w in value if w is not None]
        return value


class Merchant(_Payload):
    name: Text = None
    address: Text = None
    vat_number: Text = None


class TicketInfo(_Payload):
    date: Text = None
    time: Text = None
    currency: Text = None
    currency_inferred: bool = False

    @field_validator('currency', mode='after')
    @classmethod
    def upper_currency(cls, value):
        return value.upper() if value else value

    @field_validator('currency_inferred', mode='before')
    @classmethod
    def inferred_flag(cls, value):
        if isinstance(value, str):
            return value.strip().lower() in ('true', '1', 'yes')
        return bool(value)


class TicketItem(_Payload):
    name: Text = None
    quantity: Number = None
    unit_price: Number = None
    total_price: Number = None
    category: Text = None
    confidence: Number = None


class TaxLine(_Payload):
    name: Text = None
    rate: Number = None
    base: Number = None
    amount: Number = None


class Totals(_Payload):
    subtotal: Number = None
    tax: Number = None
    tax_lines: List[TaxLine] = Field(default_factory=list)
    total: Number = None

    @field_validator('tax_lines', mode='before')
    @classmethod
    def null_tax_lines(cls, value):
        return [] if value is None else value


class TicketData(_WarningsMixin):
    merchant: Merchant = Field(default_factory=Merchant)
    ticket: TicketInfo = Field(default_factory=TicketInfo)
    items: List[TicketItem] = Field(default_factory=list)
    totals: Totals = Field(default_factory=Totals)

    @field_validator('merchant', 'ticket', 'totals', mode='before')
    @classmethod
    def null_sections(cls, value):
        return {} if value is None else value

    @field_validator('items', mode='before')
    @classmethod
    def null_items(cls, value):
        return [] if value is None else value


class Vehicle(_Payload):
    license_plate: Text = None
    plate_visible: bool = False
    plate_unreadable_reason: Text = None
    country: Text = None
    vehicle_type: Text = None
    brand: Text = None
    model: Text = None
    color: Text = None

    @field_validator('license_plate', mode='after')
    @classmethod
    def compact_plate(cls, value):
        return value.replace(' ', '').upper() if value else value

    @field_validator('plate_visible', mode='before')
    @classmethod
    def visible_flag(cls, value):
        if isinstance(value, str):
            return value.strip().lower() in ('true', '1', 'yes')
        return bool(value)


class BoundingBox(_Payload):
    x: Number = None
    y: Number = None
    width: Number = None
    height: Number = None


class Detection(_Payload):
    bounding_box: Optional[BoundingBox] = None


class VehicleData(_WarningsMixin):
    vehicle: Vehicle = Field(default_factory=Vehicle)
    detection: Detection = Field(default_factory=Detection)

    @field_validator('vehicle', 'detection', mode='before')
    @classmethod
    def null_sections(cls, value):
        return {} if value is None else value


_PAYLOAD_MODELS = {
    OutcomeKind.TICKET: TicketData,
    OutcomeKind.VEHICLE: VehicleData,
}


def normalize_payload(kind: OutcomeKind, data: Any) -> Dict[str, Any]:
    """Validate a collaborator ``data`` object against the shape for ``kind``.

    Raises UpstreamFormatError when the payload cannot be used.
    """
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise UpstreamFormatError(
            f"Model returned {type(data).__name__} where an object was expected for 'data'")

    model = _PAYLOAD_MODELS.get(kind)
    if model is None:
        return dict(data)

    try:
        return model.model_validate(data).model_dump()
    except ValidationError as e:
        raise UpstreamFormatError(
            f"Model returned a {kind.value} payload that does not match the expected shape: "
            f"{e.error_count()} invalid field(s)")


def coerce_analysis(raw: Any) -> CallSuccess:
    """Turn a collaborator answer ``{type, confidence, data}`` into a CallSuccess.

    A missing type becomes unknown, a missing or unparseable confidence
    becomes 0 and confidence is clamped into [0, 1].
    """
    if not isinstance(raw, dict):
        raise UpstreamFormatError(
            f"Model returned {type(raw).__name__} where a JSON object was expected")

    kind = OutcomeKind.from_raw(raw.get('type'))
    confidence = _coerce_number(raw.get('confidence'))
    confidence = min(1.0, max(0.0, confidence)) if confidence is not None else 0.0

    return CallSuccess(
        kind=kind,
        confidence=confidence,
        payload=normalize_payload(kind, raw.get('data')),
    )
