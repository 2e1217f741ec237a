from typing import TypedDict, List, Dict, Optional, Any


# ============================================================================
# Persisted Records (one JSON document per row in deal_storage)
# ============================================================================

class UserRecord(TypedDict, total=False):
    """
    A creator account.

    subscription_tier: 'free' | 'pro' | 'elite'
    forwarding_address: per-user inbound address brands email deals to
    """
    id: str
    email: str
    subscription_tier: str
    forwarding_address: Optional[str]
    created_at: str
    updated_at: str


class DealRecord(TypedDict, total=False):
    """
    A brand deal in the creator's pipeline.

    Only value, signed_date and delivery_deadline are ever written by the
    extraction review step, and only when empty.
    """
    id: str
    user_id: str
    brand_id: Optional[str]
    contact_id: Optional[str]
    title: str
    status: str  # 'lead', 'negotiating', 'signed', 'in_progress', 'completed', ...
    value: float
    currency: str
    source: str  # 'manual', 'email', 'referral', ...
    signed_date: Optional[str]  # YYYY-MM-DD
    delivery_deadline: Optional[str]  # YYYY-MM-DD
    notes: Optional[str]
    archived: bool
    created_at: str
    updated_at: str


class DeliverableRecord(TypedDict, total=False):
    """A piece of content owed to a brand under a deal."""
    id: str
    deal_id: str
    user_id: str
    title: str
    platform: str  # see nodes.review.VALID_PLATFORMS
    content_type: str  # see nodes.review.VALID_CONTENT_TYPES
    due_date: Optional[str]
    status: str  # 'not_started', 'in_progress', 'submitted', 'approved', 'published'
    sort_order: int
    created_at: str
    updated_at: str


class ContractRecord(TypedDict, total=False):
    """
    An uploaded contract file attached to a deal.

    extraction_status follows: none -> extracting -> extracted -> reviewed
    """
    id: str
    deal_id: str
    user_id: str
    file_url: str  # key inside the deal-files bucket
    file_name: Optional[str]
    file_size: Optional[int]
    extracted_data: Optional[Dict[str, Any]]
    extraction_confidence: str  # 'none' | 'low' | 'medium' | 'high'
    extraction_status: str
    reviewed: bool
    created_at: str
    updated_at: str


class ExtractionAttemptRecord(TypedDict, total=False):
    """One run of the contract LLM pipeline; used for monthly quota counting."""
    id: str
    user_id: str
    contract_id: str
    confidence: str
    created_at: str


class EmailAttachmentInfo(TypedDict):
    filename: str
    url: str
    size: int
    mime_type: str


class ParsedDeliverable(TypedDict):
    platform: str
    type: Optional[str]


class ParsedDate(TypedDict):
    label: str  # 'deadline' | 'launch'
    date: str  # YYYY-MM-DD


class EmailRecord(TypedDict, total=False):
    """A brand email received through the forwarding address."""
    id: str
    user_id: str
    deal_id: Optional[str]
    message_id: Optional[str]
    from_email: str
    from_name: Optional[str]
    subject: Optional[str]
    body_text: Optional[str]
    body_html: Optional[str]
    attachments: List[EmailAttachmentInfo]
    parsed_brand_name: Optional[str]
    parsed_contact_name: Optional[str]
    parsed_budget: Optional[float]
    parsed_deliverables: Optional[List[ParsedDeliverable]]
    parsed_dates: Optional[List[ParsedDate]]
    parsed_confidence: str
    processed: bool
    linked_to_deal: bool
    received_at: str
    created_at: str


class BrandRecord(TypedDict, total=False):
    id: str
    user_id: str
    name: str
    created_at: str


class ContactRecord(TypedDict, total=False):
    id: str
    user_id: str
    brand_id: str
    name: str
    email: Optional[str]
    created_at: str


# ============================================================================
# Contract Extraction Graph State
# ============================================================================

class ContractExtractionState(TypedDict, total=False):
    """
    State passed between the nodes of the contract extraction graph.
    Each node returns a partial update of this dict.
    """
    # Input
    contract_id: str
    file_name: str
    file_bytes: bytes

    # Document text extractor output
    text_status: str  # 'text' | 'no_text' | 'unreadable'
    document_text: Optional[str]
    text_error: Optional[str]

    # LLM extractor output
    extracted_data: Optional[Dict[str, Any]]
    confidence: str

    # Outcome surfaced to the caller
    message: Optional[str]
