"""
Confidence Scorer - Rule-Based Extraction Quality Tiers

Assigns a coarse confidence tier to each extracted value and to a whole
contract candidate. The tiers are explainable proxies for extraction
quality, not statistical probabilities:

Per field (first rule that applies):
1. None, empty or whitespace-only string -> NONE
2. number or boolean                     -> HIGH
3. YYYY-MM-DD date string                -> HIGH
4. any other string under 50 characters  -> HIGH
5. longer free text                      -> MEDIUM
6. non-empty list                        -> HIGH
7. anything else (objects, empty lists)  -> MEDIUM

Overall: fraction of KEY_FIELDS that are filled, mapped through
ratio_to_tier().
"""

import re
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple


class ConfidenceTier(Enum):
    """Ordinal confidence levels for extracted data."""
    NONE = "none"  # Not found
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _TIER_ORDER.index(self)

    def __lt__(self, other: "ConfidenceTier") -> bool:
        if not isinstance(other, ConfidenceTier):
            return NotImplemented
        return self.rank < other.rank

    @classmethod
    def from_string(cls, value: Optional[str]) -> "ConfidenceTier":
        """Parse a stored tier; unknown or missing values read as NONE."""
        for tier in cls:
            if tier.value == (value or "").strip().lower():
                return tier
        return cls.NONE


_TIER_ORDER = [ConfidenceTier.NONE, ConfidenceTier.LOW, ConfidenceTier.MEDIUM, ConfidenceTier.HIGH]

ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

# Strings shorter than this are treated as short structured values
SHORT_TEXT_LIMIT = 50

HIGH_RATIO_THRESHOLD = 0.7  # strictly greater than
MEDIUM_RATIO_THRESHOLD = 0.4  # greater than or equal


def field_confidence(value: Any) -> ConfidenceTier:
    """Confidence tier for a single extracted value, decided by its shape."""
    if value is None:
        return ConfidenceTier.NONE
    if isinstance(value, str) and value.strip() == "":
        return ConfidenceTier.NONE
    if isinstance(value, (bool, int, float)):
        return ConfidenceTier.HIGH
    if isinstance(value, str):
        if ISO_DATE_PATTERN.match(value):
            return ConfidenceTier.HIGH
        if len(value) < SHORT_TEXT_LIMIT:
            return ConfidenceTier.HIGH
        return ConfidenceTier.MEDIUM
    if isinstance(value, list) and len(value) > 0:
        return ConfidenceTier.HIGH
    return ConfidenceTier.MEDIUM


def ratio_to_tier(ratio: float) -> ConfidenceTier:
    if ratio > HIGH_RATIO_THRESHOLD:
        return ConfidenceTier.HIGH
    if ratio >= MEDIUM_RATIO_THRESHOLD:
        return ConfidenceTier.MEDIUM
    return ConfidenceTier.LOW


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = data.get(name)
    return value if isinstance(value, Mapping) else {}


def _deliverables_present(data: Mapping[str, Any]) -> Any:
    items = data.get("deliverables")
    return items if isinstance(items, list) and len(items) > 0 else None


# Representative fields used for the whole-candidate tier
KEY_FIELDS: List[Tuple[str, Callable[[Mapping[str, Any]], Any]]] = [
    ("payment.total_amount", lambda d: _section(d, "payment").get("total_amount")),
    ("payment.schedule", lambda d: _section(d, "payment").get("schedule")),
    ("deliverables", _deliverables_present),
    ("usage_rights.duration", lambda d: _section(d, "usage_rights").get("duration")),
    ("usage_rights.exclusivity", lambda d: _section(d, "usage_rights").get("exclusivity")),
    ("dates.contract_start", lambda d: _section(d, "dates").get("contract_start")),
    ("dates.contract_end", lambda d: _section(d, "dates").get("contract_end")),
    ("approval.process", lambda d: _section(d, "approval").get("process")),
    ("termination.notice_period", lambda d: _section(d, "termination").get("notice_period")),
    ("exclusivity.duration", lambda d: _section(d, "exclusivity").get("duration")),
]


def _as_mapping(fields: Any) -> Mapping[str, Any]:
    if hasattr(fields, "to_dict"):
        return fields.to_dict()
    if isinstance(fields, Mapping):
        return fields
    return {}


def filled_ratio(fields: Any) -> float:
    """Fraction of KEY_FIELDS holding a non-null value."""
    data = _as_mapping(fields)
    filled = sum(1 for _, getter in KEY_FIELDS if getter(data) is not None)
    return filled / len(KEY_FIELDS)


def overall_confidence(fields: Any) -> ConfidenceTier:
    """
    Whole-candidate tier for a structured contract extraction.

    Accepts an ExtractionFields instance or its dict form.
    """
    return ratio_to_tier(filled_ratio(fields))


def annotate_fields(fields: Any) -> Dict[str, Any]:
    """
    Per-field tiers mirroring the candidate shape, for the review view.

    {"payment": {"total_amount": "high", ...}, "deliverables": [{...}], ...}
    """
    data = _as_mapping(fields)
    annotated: Dict[str, Any] = {}
    for name, value in data.items():
        if isinstance(value, Mapping):
            annotated[name] = {
                key: field_confidence(inner).value for key, inner in value.items()
            }
        elif isinstance(value, list) and all(isinstance(v, Mapping) for v in value):
            annotated[name] = [
                {key: field_confidence(inner).value for key, inner in item.items()}
                for item in value
            ]
        else:
            annotated[name] = field_confidence(value).value
    return annotated
