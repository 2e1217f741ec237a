"""
Review Node - Human-in-the-Loop Contract Review and Merge

A reviewer sees the extracted candidate with per-field confidence, edits it,
then approves. Approval:
1. Persists the edited fields as the contract's extracted_data and marks
   the contract reviewed
2. Auto-populates a small fixed set of deal fields, never overwriting a
   value a human already entered
3. Optionally (separate explicit action) materializes the candidate
   deliverables as deliverable records with normalized enums

A failure writing the deal after the contract was saved is logged and
reported back; the contract update stands.
"""

import logging
import re
from typing import Any, Dict, List, Optional

from deal_storage import RecordNotFoundError, Storage
from nodes.candidate import (
    Edit,
    ExtractionFields,
    StructuredCandidate,
    UnparsedCandidate,
    apply_edits,
    candidate_from_dict,
)
from nodes.confidence import ConfidenceTier, annotate_fields
from state import ContractRecord, DealRecord, DeliverableRecord

logger = logging.getLogger(__name__)


VALID_PLATFORMS = [
    "tiktok", "youtube", "instagram", "twitter", "blog",
    "newsletter", "podcast", "snapchat", "other",
]

VALID_CONTENT_TYPES = [
    "video", "post", "story", "reel", "short", "blog_post",
    "newsletter_mention", "podcast_integration", "event_appearance", "custom",
]

ISO_DATE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class ContractNotReviewableError(Exception):
    """The contract holds no structured candidate to review or approve."""


# ============================================================================
# Review View
# ============================================================================

def build_review_view(contract: ContractRecord) -> Dict[str, Any]:
    """
    What the review UI renders for a contract.

    Structured candidates carry per-field tiers; unparsed ones expose the
    raw model text so the reviewer can salvage it by hand.
    """
    candidate = candidate_from_dict(contract.get("extracted_data"))
    view: Dict[str, Any] = {
        "contract_id": contract["id"],
        "deal_id": contract.get("deal_id"),
        "confidence": contract.get("extraction_confidence") or ConfidenceTier.NONE.value,
        "extraction_status": contract.get("extraction_status", "none"),
        "reviewed": bool(contract.get("reviewed")),
        "structured": False,
        "candidate": None,
        "raw_text": None,
        "field_confidence": None,
    }

    if isinstance(candidate, StructuredCandidate):
        data = candidate.to_dict()
        view["structured"] = True
        view["candidate"] = data
        view["field_confidence"] = annotate_fields(data)
    elif isinstance(candidate, UnparsedCandidate):
        view["raw_text"] = candidate.raw_text
    return view


def load_structured_fields(contract: ContractRecord) -> ExtractionFields:
    candidate = candidate_from_dict(contract.get("extracted_data"))
    if isinstance(candidate, StructuredCandidate):
        return candidate.fields
    raise ContractNotReviewableError(
        f"Contract {contract.get('id')} has no structured extraction to review"
    )


def save_edits(storage: Storage, contract_id: str, edits: List[Edit]) -> Dict[str, Any]:
    """Apply edits to the stored candidate without approving it."""
    contract = storage.contracts.require(contract_id)
    fields = apply_edits(load_structured_fields(contract), edits)
    updated = storage.contracts.update(contract_id, {"extracted_data": fields.to_dict()})
    return build_review_view(updated)


# ============================================================================
# Deal Auto-Population
# ============================================================================

def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value == 0
    return False


def latest_due_date(fields: ExtractionFields) -> Optional[str]:
    """Maximal YYYY-MM-DD due date among deliverables (ISO sorts lexically)."""
    dates = [
        item.due_date for item in fields.deliverables
        if isinstance(item.due_date, str) and ISO_DATE.match(item.due_date)
    ]
    return max(dates) if dates else None


def compute_deal_updates(deal: DealRecord, fields: ExtractionFields) -> Dict[str, Any]:
    """
    Deal fields to write from an approved extraction.

    Only value, signed_date and delivery_deadline are considered, and each
    only when the deal's current value is empty, zero or unset.
    """
    updates: Dict[str, Any] = {}

    total = fields.payment.total_amount
    if isinstance(total, (int, float)) and not isinstance(total, bool) and total > 0:
        if _is_empty(deal.get("value")):
            updates["value"] = total

    start = fields.dates.contract_start
    if not _is_empty(start) and _is_empty(deal.get("signed_date")):
        updates["signed_date"] = start

    if _is_empty(deal.get("delivery_deadline")):
        deadline = latest_due_date(fields)
        if deadline:
            updates["delivery_deadline"] = deadline

    return updates


def approve_contract(
    storage: Storage,
    contract_id: str,
    fields: Optional[ExtractionFields] = None,
) -> Dict[str, Any]:
    """
    Approve a reviewed candidate.

    Args:
        storage: Record storage
        contract_id: Contract to approve
        fields: Edited fields; defaults to the stored candidate

    Returns:
        dict with the updated contract, the deal updates applied, and
        deal_update_error when the deal write failed
    """
    contract = storage.contracts.require(contract_id)
    if fields is None:
        fields = load_structured_fields(contract)

    contract = storage.contracts.update(contract_id, {
        "extracted_data": fields.to_dict(),
        "extraction_status": "reviewed",
        "reviewed": True,
    })
    logger.info(f"Contract {contract_id} approved")

    result: Dict[str, Any] = {
        "contract": contract,
        "deal_updates": {},
        "deal_update_error": None,
    }

    deal_id = contract.get("deal_id")
    if not deal_id:
        return result

    try:
        deal = storage.deals.require(deal_id)
        updates = compute_deal_updates(deal, fields)
        if updates:
            storage.deals.update(deal_id, updates)
            logger.info(f"Deal {deal_id} auto-populated: {sorted(updates)}")
        result["deal_updates"] = updates
    except (RecordNotFoundError, OSError) as e:
        # Contract approval is not rolled back
        logger.error(f"Failed to update deal {deal_id} after approving contract {contract_id}: {e}")
        result["deal_update_error"] = str(e)

    return result


# ============================================================================
# Deliverable Materialization
# ============================================================================

def normalize_platform(platform: Optional[str]) -> str:
    lowered = (platform or "").strip().lower()
    return lowered if lowered in VALID_PLATFORMS else "other"


def normalize_content_type(content_type: Optional[str]) -> str:
    """Unknown types, and the literal "other", become "custom"."""
    lowered = (content_type or "").strip().lower()
    if lowered in VALID_CONTENT_TYPES:
        return lowered
    return "custom"


def deliverable_title(platform: Optional[str], content_type: Optional[str], description: Optional[str]) -> str:
    if description and description.strip():
        return description.strip()
    label = " ".join(part for part in (platform, content_type) if part and part.strip())
    return label or "Deliverable"


def materialize_deliverables(storage: Storage, contract_id: str, user_id: str) -> List[DeliverableRecord]:
    """Create one deliverable record per candidate deliverable."""
    contract = storage.contracts.require(contract_id)
    fields = load_structured_fields(contract)

    created: List[DeliverableRecord] = []
    for index, item in enumerate(fields.deliverables):
        record = storage.deliverables.insert({
            "deal_id": contract.get("deal_id"),
            "user_id": user_id,
            "title": deliverable_title(item.platform, item.content_type, item.description),
            "platform": normalize_platform(item.platform),
            "content_type": normalize_content_type(item.content_type),
            "due_date": item.due_date or None,
            "status": "not_started",
            "sort_order": index,
        })
        created.append(record)

    logger.info(f"Created {len(created)} deliverable(s) from contract {contract_id}")
    return created
