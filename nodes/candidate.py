"""
Extraction Candidate - Structured Contract Data Awaiting Review

A candidate is either:
- StructuredCandidate: the model returned parseable JSON, normalised into
  the complete ExtractionFields tree (every key present, unknowns None)
- UnparsedCandidate: the model response could not be parsed; the raw text
  is kept so a reviewer can still salvage it. Persisted as {"_raw": text}.

Review edits are typed (FieldEdit, DeliverableEdit, DeliverableListEdit)
and validated against the section dataclasses. The review UI's dotted
paths ("payment.total_amount") are parsed into these by parse_edit_path().
"""

import copy
import re
from dataclasses import asdict, dataclass, field, fields as dataclass_fields
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Union


RAW_RESPONSE_KEY = "_raw"


class InvalidEditError(ValueError):
    """Raised when a review edit addresses an unknown section, field or index."""


# ============================================================================
# Value Coercion
# ============================================================================

_NUMBER_CLEANUP = re.compile(r"[,$\s]")


def _as_number(value: Any) -> Any:
    """Numbers pass through; numeric strings like "$5,000" become floats."""
    if value is None or isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value
    if isinstance(value, str):
        cleaned = _NUMBER_CLEANUP.sub("", value)
        if not cleaned:
            return None
        try:
            return float(cleaned)
        except ValueError:
            return value
    return value


def _as_int(value: Any) -> Any:
    number = _as_number(value)
    if isinstance(number, float) and number.is_integer():
        return int(number)
    return number


def _as_bool(value: Any) -> Any:
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "yes"):
            return True
        if lowered in ("false", "no"):
            return False
        if lowered == "":
            return None
    return value


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [value]


def _as_text(value: Any) -> Any:
    if isinstance(value, str):
        return value if value.strip() else None
    return value


# ============================================================================
# Sections
# ============================================================================

@dataclass
class Payment:
    total_amount: Optional[float] = None
    currency: Optional[str] = None
    schedule: Optional[str] = None
    method: Optional[str] = None


@dataclass
class DeliverableItem:
    platform: Optional[str] = None
    content_type: Optional[str] = None
    quantity: Optional[int] = None
    description: Optional[str] = None
    due_date: Optional[str] = None


@dataclass
class UsageRights:
    duration: Optional[str] = None
    exclusivity: Optional[bool] = None
    platforms: List[str] = field(default_factory=list)
    paid_ads_allowed: Optional[bool] = None
    whitelisting_allowed: Optional[bool] = None


@dataclass
class Approval:
    process: Optional[str] = None
    timeline: Optional[str] = None


@dataclass
class Exclusivity:
    restricted_brands: Optional[Any] = None
    duration: Optional[str] = None


@dataclass
class Termination:
    notice_period: Optional[str] = None
    kill_fee: Optional[Any] = None


@dataclass
class SpecialTerms:
    performance_bonus: Optional[Any] = None
    affiliate_code: Optional[str] = None
    discount_code: Optional[str] = None
    notes: Optional[str] = None


@dataclass
class ContractDates:
    contract_start: Optional[str] = None
    contract_end: Optional[str] = None
    signing_deadline: Optional[str] = None


# Per-field coercion applied on load and on edit; unlisted fields use _as_text
FIELD_COERCERS: Dict[str, Callable[[Any], Any]] = {
    "total_amount": _as_number,
    "quantity": _as_int,
    "exclusivity": _as_bool,
    "paid_ads_allowed": _as_bool,
    "whitelisting_allowed": _as_bool,
    "platforms": _as_list,
}


def _coerce(field_name: str, value: Any) -> Any:
    return FIELD_COERCERS.get(field_name, _as_text)(value)


def _section_from_dict(section_cls, data: Any):
    data = data if isinstance(data, Mapping) else {}
    kwargs = {f.name: _coerce(f.name, data.get(f.name)) for f in dataclass_fields(section_cls)}
    return section_cls(**kwargs)


class Section(Enum):
    """Addressable sections of ExtractionFields."""
    PAYMENT = "payment"
    DELIVERABLES = "deliverables"
    USAGE_RIGHTS = "usage_rights"
    APPROVAL = "approval"
    EXCLUSIVITY = "exclusivity"
    TERMINATION = "termination"
    SPECIAL_TERMS = "special_terms"
    DATES = "dates"


SECTION_TYPES = {
    Section.PAYMENT: Payment,
    Section.DELIVERABLES: DeliverableItem,
    Section.USAGE_RIGHTS: UsageRights,
    Section.APPROVAL: Approval,
    Section.EXCLUSIVITY: Exclusivity,
    Section.TERMINATION: Termination,
    Section.SPECIAL_TERMS: SpecialTerms,
    Section.DATES: ContractDates,
}


def section_field_names(section: Section) -> List[str]:
    return [f.name for f in dataclass_fields(SECTION_TYPES[section])]


@dataclass
class ExtractionFields:
    """The complete contract field tree. Shape is always complete."""
    payment: Payment = field(default_factory=Payment)
    deliverables: List[DeliverableItem] = field(default_factory=list)
    usage_rights: UsageRights = field(default_factory=UsageRights)
    approval: Approval = field(default_factory=Approval)
    exclusivity: Exclusivity = field(default_factory=Exclusivity)
    termination: Termination = field(default_factory=Termination)
    special_terms: SpecialTerms = field(default_factory=SpecialTerms)
    dates: ContractDates = field(default_factory=ContractDates)

    @classmethod
    def from_dict(cls, data: Any) -> "ExtractionFields":
        """Build from any (possibly partial or malformed) mapping."""
        data = data if isinstance(data, Mapping) else {}
        raw_items = data.get("deliverables")
        items = raw_items if isinstance(raw_items, list) else []
        return cls(
            payment=_section_from_dict(Payment, data.get("payment")),
            deliverables=[
                _section_from_dict(DeliverableItem, item)
                for item in items
                if isinstance(item, Mapping)
            ],
            usage_rights=_section_from_dict(UsageRights, data.get("usage_rights")),
            approval=_section_from_dict(Approval, data.get("approval")),
            exclusivity=_section_from_dict(Exclusivity, data.get("exclusivity")),
            termination=_section_from_dict(Termination, data.get("termination")),
            special_terms=_section_from_dict(SpecialTerms, data.get("special_terms")),
            dates=_section_from_dict(ContractDates, data.get("dates")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# Candidate Variants
# ============================================================================

@dataclass
class StructuredCandidate:
    fields: ExtractionFields

    @property
    def is_structured(self) -> bool:
        return True

    def to_dict(self) -> Dict[str, Any]:
        return self.fields.to_dict()


@dataclass
class UnparsedCandidate:
    raw_text: str

    @property
    def is_structured(self) -> bool:
        return False

    def to_dict(self) -> Dict[str, Any]:
        return {RAW_RESPONSE_KEY: self.raw_text}


Candidate = Union[StructuredCandidate, UnparsedCandidate]


def candidate_from_dict(data: Optional[Mapping[str, Any]]) -> Optional[Candidate]:
    """Rebuild a candidate from persisted extracted_data."""
    if data is None:
        return None
    if RAW_RESPONSE_KEY in data:
        return UnparsedCandidate(raw_text=str(data[RAW_RESPONSE_KEY]))
    return StructuredCandidate(fields=ExtractionFields.from_dict(data))


# ============================================================================
# Review Edits
# ============================================================================

@dataclass
class FieldEdit:
    """Set one field of a non-list section."""
    section: Section
    field: str
    value: Any

    def __post_init__(self):
        if self.section is Section.DELIVERABLES:
            raise InvalidEditError("Use DeliverableEdit or DeliverableListEdit for deliverables")
        if self.field not in section_field_names(self.section):
            raise InvalidEditError(f"Unknown field {self.section.value}.{self.field}")


@dataclass
class DeliverableEdit:
    """Set one field of the deliverable at index."""
    index: int
    field: str
    value: Any

    def __post_init__(self):
        if self.field not in section_field_names(Section.DELIVERABLES):
            raise InvalidEditError(f"Unknown deliverable field: {self.field}")
        if self.index < 0:
            raise InvalidEditError(f"Invalid deliverable index: {self.index}")


@dataclass
class DeliverableListEdit:
    """Replace the deliverable list (adds and removals)."""
    items: List[Mapping[str, Any]]


Edit = Union[FieldEdit, DeliverableEdit, DeliverableListEdit]


def parse_edit_path(path: str, value: Any) -> Edit:
    """
    Parse a dotted review path into a typed edit.

    "payment.total_amount"      -> FieldEdit
    "deliverables.0.due_date"   -> DeliverableEdit
    "deliverables"              -> DeliverableListEdit
    """
    parts = [p for p in (path or "").split(".") if p]
    if not parts:
        raise InvalidEditError("Empty edit path")

    try:
        section = Section(parts[0])
    except ValueError:
        raise InvalidEditError(f"Unknown section: {parts[0]}") from None

    if section is Section.DELIVERABLES:
        if len(parts) == 1:
            if not isinstance(value, list):
                raise InvalidEditError("deliverables must be replaced with a list")
            return DeliverableListEdit(items=value)
        if len(parts) == 3 and parts[1].isdigit():
            return DeliverableEdit(index=int(parts[1]), field=parts[2], value=value)
        raise InvalidEditError(f"Invalid deliverable path: {path}")

    if len(parts) != 2:
        raise InvalidEditError(f"Invalid edit path: {path}")
    return FieldEdit(section=section, field=parts[1], value=value)


def apply_edits(fields: ExtractionFields, edits: List[Edit]) -> ExtractionFields:
    """Return a copy of fields with edits applied in order."""
    updated = copy.deepcopy(fields)
    for edit in edits:
        if isinstance(edit, FieldEdit):
            target = getattr(updated, edit.section.value)
            setattr(target, edit.field, _coerce(edit.field, edit.value))
        elif isinstance(edit, DeliverableEdit):
            if edit.index >= len(updated.deliverables):
                raise InvalidEditError(f"No deliverable at index {edit.index}")
            setattr(
                updated.deliverables[edit.index],
                edit.field,
                _coerce(edit.field, edit.value),
            )
        elif isinstance(edit, DeliverableListEdit):
            updated.deliverables = [
                _section_from_dict(DeliverableItem, item)
                for item in edit.items
                if isinstance(item, Mapping)
            ]
        else:
            raise InvalidEditError(f"Unsupported edit: {edit!r}")
    return updated
