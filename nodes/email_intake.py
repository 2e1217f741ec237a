"""
Email Intake Node - Forwarding Addresses, Inbound Webhook, Inbox Actions

Brands' emails reach a creator through a per-user forwarding address
(deals-<hash>@<domain>). The inbound webhook resolves the recipient to a
user, runs the heuristic parser, stores attachments and the email, and
always answers success for unknown recipients so the mail provider does
not retry.

Inbox actions turn a stored email into a lead deal, link it to an
existing deal, or dismiss it.
"""

import base64
import binascii
import hashlib
import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from deal_storage import RecordNotFoundError, Storage, StorageError, utc_now
from nodes.email_parser import EmailParserConfig, parse_email
from state import (
    BrandRecord,
    ContactRecord,
    DealRecord,
    EmailAttachmentInfo,
    EmailRecord,
    ParsedDate,
    UserRecord,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Forwarding Addresses
# ============================================================================

def generate_forwarding_address(user_id: str, domain: str) -> str:
    """Deterministic, lowercase forwarding address for a user."""
    digest = hashlib.sha1(user_id.encode("utf-8")).hexdigest()[:8]
    return f"deals-{digest}@{domain.lower()}"


def assign_forwarding_address(storage: Storage, user_id: str, domain: str) -> str:
    """Store the user's forwarding address (idempotent)."""
    user = storage.users.require(user_id)
    address = generate_forwarding_address(user_id, domain)
    if user.get("forwarding_address") != address:
        storage.users.update(user_id, {"forwarding_address": address})
    return address


def find_user_by_forwarding_address(storage: Storage, address: str) -> Optional[UserRecord]:
    return storage.users.find_one(forwarding_address=address.strip().lower())


# ============================================================================
# Webhook Payload
# ============================================================================

class InboundAttachment(BaseModel):
    name: str
    content: str = ""  # base64
    content_type: str = "application/octet-stream"
    content_length: int = 0


class InboundEmail(BaseModel):
    """Provider-neutral inbound email payload."""
    from_address: str = ""
    from_display_name: Optional[str] = None
    to_addresses: List[str] = Field(default_factory=list)
    original_recipient: Optional[str] = None
    subject: Optional[str] = None
    text_body: Optional[str] = None
    html_body: Optional[str] = None
    attachments: List[InboundAttachment] = Field(default_factory=list)
    received_at: Optional[str] = None
    message_id: Optional[str] = None

    @classmethod
    def from_postmark(cls, body: Dict[str, Any]) -> "InboundEmail":
        """Normalise a Postmark inbound webhook body."""
        sender = body.get("FromFull") or {}
        return cls(
            from_address=sender.get("Email") or body.get("From") or "",
            from_display_name=sender.get("Name") or None,
            to_addresses=[t.get("Email", "") for t in body.get("ToFull") or [] if t.get("Email")],
            original_recipient=body.get("OriginalRecipient") or None,
            subject=body.get("Subject") or None,
            text_body=body.get("TextBody") or None,
            html_body=body.get("HtmlBody") or None,
            attachments=[
                InboundAttachment(
                    name=a.get("Name", "attachment"),
                    content=a.get("Content", ""),
                    content_type=a.get("ContentType", "application/octet-stream"),
                    content_length=a.get("ContentLength", 0),
                )
                for a in body.get("Attachments") or []
            ],
            received_at=body.get("Date") or None,
            message_id=body.get("MessageID") or None,
        )

    @classmethod
    def from_payload(cls, body: Dict[str, Any]) -> "InboundEmail":
        if "FromFull" in body or "ToFull" in body:
            return cls.from_postmark(body)
        return cls.model_validate(body)

    def recipient(self) -> Optional[str]:
        """Original recipient, else the first To address."""
        address = self.original_recipient or (self.to_addresses[0] if self.to_addresses else "")
        address = (address or "").strip().lower()
        return address or None


class MissingRecipientError(ValueError):
    """The webhook payload names no recipient at all."""


# ============================================================================
# Webhook Processing
# ============================================================================

def store_attachments(storage: Storage, user_id: str, email: InboundEmail) -> List[EmailAttachmentInfo]:
    """Save attachments to the email-attachments bucket; skip failures."""
    stored: List[EmailAttachmentInfo] = []
    stamp = int(utc_now().timestamp() * 1000)
    for attachment in email.attachments:
        key = f"{user_id}/emails/{stamp}-{attachment.name}"
        try:
            data = base64.b64decode(attachment.content, validate=True)
            storage.email_attachments.upload(key, data)
        except (binascii.Error, StorageError) as e:
            logger.warning(f"Skipping attachment {attachment.name}: {e}")
            continue
        stored.append({
            "filename": attachment.name,
            "url": key,
            "size": attachment.content_length or len(data),
            "mime_type": attachment.content_type,
        })
    return stored


def process_inbound_email(
    storage: Storage,
    email: InboundEmail,
    parser_config: Optional[EmailParserConfig] = None,
) -> Dict[str, Any]:
    """
    Handle one inbound webhook delivery.

    Returns:
        {"message": ...} plus "email_id" when stored

    Raises:
        MissingRecipientError: no recipient in the payload
    """
    recipient = email.recipient()
    if not recipient:
        raise MissingRecipientError("No recipient")

    logger.info(f"Inbound email for {recipient} from {email.from_address}")
    user = find_user_by_forwarding_address(storage, recipient)
    if user is None:
        logger.info(f"No user for forwarding address {recipient}")
        return {"message": "No matching user"}

    parsed = parse_email(
        email.from_address,
        email.from_display_name,
        email.subject,
        email.text_body,
        parser_config,
    )

    record = storage.emails.insert({
        "user_id": user["id"],
        "deal_id": None,
        "message_id": email.message_id,
        "from_email": email.from_address,
        "from_name": email.from_display_name,
        "subject": email.subject,
        "body_text": email.text_body,
        "body_html": email.html_body,
        "attachments": store_attachments(storage, user["id"], email),
        "parsed_brand_name": parsed.brand_name,
        "parsed_contact_name": parsed.contact_name,
        "parsed_budget": parsed.budget,
        "parsed_deliverables": parsed.deliverables or None,
        "parsed_dates": parsed.dates or None,
        "parsed_confidence": parsed.confidence.value,
        "processed": False,
        "linked_to_deal": False,
        "received_at": email.received_at or utc_now().isoformat(),
    })
    logger.info(f"Stored email {record['id']} (confidence {parsed.confidence.value})")
    return {"message": "Email received", "email_id": record["id"]}


# ============================================================================
# Inbox Actions
# ============================================================================

def _require_owned_email(storage: Storage, email_id: str, user_id: Optional[str]) -> EmailRecord:
    email = storage.emails.require(email_id)
    if user_id is not None and email.get("user_id") != user_id:
        raise RecordNotFoundError("emails", email_id)
    return email


def find_or_create_brand(storage: Storage, user_id: str, name: str) -> BrandRecord:
    """Case-insensitive name match within the user's brands."""
    for brand in storage.brands.find(user_id=user_id):
        if (brand.get("name") or "").lower() == name.lower():
            return brand
    return storage.brands.insert({"user_id": user_id, "name": name})


def first_deadline(parsed_dates: Optional[List[ParsedDate]]) -> Optional[str]:
    for item in parsed_dates or []:
        if item.get("label") == "deadline":
            return item.get("date")
    return None


def list_inbox(storage: Storage, user_id: str) -> List[EmailRecord]:
    """The user's emails, newest first."""
    emails = storage.emails.find(user_id=user_id)
    return sorted(emails, key=lambda e: e.get("received_at") or "", reverse=True)


def create_deal_from_email(storage: Storage, email_id: str, user_id: Optional[str] = None) -> DealRecord:
    """Create a lead deal (plus brand and contact) from a parsed email."""
    email = _require_owned_email(storage, email_id, user_id)
    owner = email["user_id"]

    brand_id = None
    brand_name = email.get("parsed_brand_name")
    if brand_name:
        brand_id = find_or_create_brand(storage, owner, brand_name)["id"]

    contact_id = None
    contact_name = email.get("parsed_contact_name")
    if contact_name and brand_id:
        contact: ContactRecord = storage.contacts.insert({
            "user_id": owner,
            "brand_id": brand_id,
            "name": contact_name,
            "email": email.get("from_email"),
        })
        contact_id = contact["id"]

    deal = storage.deals.insert({
        "user_id": owner,
        "brand_id": brand_id,
        "contact_id": contact_id,
        "title": email.get("subject") or f"Deal from {brand_name or email.get('from_email')}",
        "status": "lead",
        "value": email.get("parsed_budget") or 0,
        "currency": "USD",
        "source": "email",
        "signed_date": None,
        "delivery_deadline": first_deadline(email.get("parsed_dates")),
        "notes": None,
        "archived": False,
    })

    storage.emails.update(email_id, {
        "processed": True,
        "linked_to_deal": True,
        "deal_id": deal["id"],
    })
    logger.info(f"Created deal {deal['id']} from email {email_id}")
    return deal


def link_email_to_deal(storage: Storage, email_id: str, deal_id: str, user_id: Optional[str] = None) -> EmailRecord:
    _require_owned_email(storage, email_id, user_id)
    deal = storage.deals.require(deal_id)
    if user_id is not None and deal.get("user_id") != user_id:
        raise RecordNotFoundError("deals", deal_id)
    return storage.emails.update(email_id, {
        "processed": True,
        "linked_to_deal": True,
        "deal_id": deal_id,
    })


def dismiss_email(storage: Storage, email_id: str, user_id: Optional[str] = None) -> EmailRecord:
    _require_owned_email(storage, email_id, user_id)
    return storage.emails.update(email_id, {"processed": True})
