"""
FastAPI Server for the Creator Deal Intel API

Provides endpoints for:
- Receiving inbound brand emails (webhook) and working the inbox
- Running AI contract extraction
- Reviewing, editing and approving extracted contract data
- Creating deliverables from an approved contract
- Fetching a deal with its deliverables and contracts

Collaborators (storage, contract extraction service) are built by
create_app() and kept on app.state. Run with:

    uvicorn server:create_app --factory
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from config import AppConfig, ConfigError
from deal_storage import RecordNotFoundError, Storage, StorageError
from main import build_contract_graph
from nodes.candidate import DeliverableEdit, Edit, InvalidEditError, apply_edits, parse_edit_path
from nodes.contract_extractor import ContractExtractor, LLMCallError
from nodes.contract_pipeline import (
    ContractAlreadyReviewedError,
    ContractExtractionService,
    DocumentUnreadableError,
    ExtractionInProgressError,
)
from nodes.email_intake import (
    InboundEmail,
    MissingRecipientError,
    create_deal_from_email,
    dismiss_email,
    link_email_to_deal,
    list_inbox,
    process_inbound_email,
)
from nodes.feature_gates import FeatureNotAvailableError, QuotaExceededError
from nodes.review import (
    ContractNotReviewableError,
    approve_contract,
    build_review_view,
    load_structured_fields,
    materialize_deliverables,
    save_edits,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Pydantic Models for API
# ============================================================================

class ExtractRequest(BaseModel):
    """Contract to extract; both fields are required (checked explicitly)."""
    contract_id: Optional[str] = None
    file_url: Optional[str] = None


class PathEdit(BaseModel):
    """One review edit addressed by dotted path, e.g. payment.total_amount."""
    path: str
    value: Any = None


class DeliverableFieldEdit(BaseModel):
    index: int
    field: str
    value: Any = None


class ReviewEdits(BaseModel):
    """Edits submitted from the review UI."""
    edits: List[PathEdit] = []
    deliverable_edits: List[DeliverableFieldEdit] = []

    def to_typed(self) -> List[Edit]:
        typed: List[Edit] = [parse_edit_path(e.path, e.value) for e in self.edits]
        typed.extend(
            DeliverableEdit(index=e.index, field=e.field, value=e.value)
            for e in self.deliverable_edits
        )
        return typed


class LinkRequest(BaseModel):
    deal_id: str


# ============================================================================
# Error Mapping
# ============================================================================

def error_response(status_code: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message, **extra})


def register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(RecordNotFoundError)
    async def not_found(request: Request, exc: RecordNotFoundError):
        return error_response(404, f"{exc.table.rstrip('s').capitalize()} not found")

    @app.exception_handler(StorageError)
    async def storage_error(request: Request, exc: StorageError):
        logger.warning(f"Storage error: {exc}")
        return error_response(404, "Failed to download file")

    @app.exception_handler(FeatureNotAvailableError)
    async def feature_not_available(request: Request, exc: FeatureNotAvailableError):
        return error_response(403, exc.message)

    @app.exception_handler(QuotaExceededError)
    async def quota_exceeded(request: Request, exc: QuotaExceededError):
        return error_response(429, exc.message, limit_reached=True, used=exc.used, limit=exc.limit)

    @app.exception_handler(ExtractionInProgressError)
    async def in_progress(request: Request, exc: ExtractionInProgressError):
        return error_response(409, exc.message)

    @app.exception_handler(ContractAlreadyReviewedError)
    async def already_reviewed(request: Request, exc: ContractAlreadyReviewedError):
        return error_response(409, exc.message)

    @app.exception_handler(ContractNotReviewableError)
    async def not_reviewable(request: Request, exc: ContractNotReviewableError):
        return error_response(409, str(exc))

    @app.exception_handler(DocumentUnreadableError)
    async def unreadable(request: Request, exc: DocumentUnreadableError):
        return error_response(422, "Failed to parse PDF", details=exc.message)

    @app.exception_handler(InvalidEditError)
    async def invalid_edit(request: Request, exc: InvalidEditError):
        return error_response(422, str(exc))

    @app.exception_handler(LLMCallError)
    async def llm_failed(request: Request, exc: LLMCallError):
        return error_response(502, "Contract extraction failed. Please try again.")


# ============================================================================
# App Factory
# ============================================================================

def create_app(
    config: Optional[AppConfig] = None,
    storage: Optional[Storage] = None,
    extractor: Optional[ContractExtractor] = None,
    text_extractor: Optional[Callable[[bytes, str], Any]] = None,
) -> FastAPI:
    """
    Build the API.

    Raises:
        ConfigError: no extractor given and the LLM provider is not configured
    """
    config = config or AppConfig.from_env()
    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    storage = storage or Storage(config.storage_dir)
    if extractor is None:
        try:
            extractor = ContractExtractor.from_config()
        except ConfigError as e:
            logger.error(f"Contract extractor not configured: {e}")
            raise

    app = FastAPI(
        title="Creator Deal Intel API",
        description="Email intake, contract extraction and review for creator brand deals",
        version="0.1.0",
    )

    # CORS for the dashboard frontend
    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.config = config
    app.state.storage = storage
    app.state.extraction_service = ContractExtractionService(
        storage, build_contract_graph(storage, extractor, text_extractor)
    )

    register_error_handlers(app)

    def get_storage(request: Request) -> Storage:
        return request.app.state.storage

    def current_user(
        request: Request,
        x_user_id: Optional[str] = Header(default=None),
    ) -> Dict[str, Any]:
        if not x_user_id:
            raise HTTPException(status_code=401, detail="Unauthorized")
        user = request.app.state.storage.users.get(x_user_id)
        if user is None:
            raise HTTPException(status_code=401, detail="Unauthorized")
        return user

    def owned_contract(storage: Storage, contract_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
        contract = storage.contracts.require(contract_id)
        if contract.get("user_id") != user["id"]:
            raise RecordNotFoundError("contracts", contract_id)
        return contract

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    @app.get("/api/health")
    def health_check():
        """Health check endpoint."""
        return {"status": "healthy", "service": "creator-deal-intel"}

    # ------------------------------------------------------------------
    # Email intake
    # ------------------------------------------------------------------

    @app.post("/api/email/inbound")
    def inbound_email(payload: Dict[str, Any], storage: Storage = Depends(get_storage)):
        """Inbound webhook; unknown recipients still get a 200."""
        try:
            email = InboundEmail.from_payload(payload)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Invalid payload: {e.error_count()} error(s)")
        try:
            return process_inbound_email(storage, email)
        except MissingRecipientError:
            raise HTTPException(status_code=400, detail="No recipient")

    @app.get("/api/emails")
    def get_inbox(user=Depends(current_user), storage: Storage = Depends(get_storage)):
        return list_inbox(storage, user["id"])

    @app.post("/api/emails/{email_id}/deal")
    def email_to_deal(email_id: str, user=Depends(current_user), storage: Storage = Depends(get_storage)):
        return create_deal_from_email(storage, email_id, user["id"])

    @app.post("/api/emails/{email_id}/link")
    def email_link(
        email_id: str,
        body: LinkRequest,
        user=Depends(current_user),
        storage: Storage = Depends(get_storage),
    ):
        return link_email_to_deal(storage, email_id, body.deal_id, user["id"])

    @app.post("/api/emails/{email_id}/dismiss")
    def email_dismiss(email_id: str, user=Depends(current_user), storage: Storage = Depends(get_storage)):
        return dismiss_email(storage, email_id, user["id"])

    # ------------------------------------------------------------------
    # Contract extraction
    # ------------------------------------------------------------------

    @app.post("/api/contracts/extract")
    def extract_contract(body: ExtractRequest, request: Request, user=Depends(current_user)):
        """Run AI extraction for a contract the user owns."""
        if not body.contract_id or not body.file_url:
            raise HTTPException(status_code=400, detail="Missing contract_id or file_url")
        service: ContractExtractionService = request.app.state.extraction_service
        return service.run(user["id"], body.contract_id, body.file_url)

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    @app.get("/api/contracts/{contract_id}/review")
    def get_review(contract_id: str, user=Depends(current_user), storage: Storage = Depends(get_storage)):
        return build_review_view(owned_contract(storage, contract_id, user))

    @app.patch("/api/contracts/{contract_id}/review")
    def patch_review(
        contract_id: str,
        body: ReviewEdits,
        user=Depends(current_user),
        storage: Storage = Depends(get_storage),
    ):
        """Save edits without approving."""
        contract = owned_contract(storage, contract_id, user)
        if contract.get("reviewed"):
            raise ContractAlreadyReviewedError(contract_id)
        return save_edits(storage, contract_id, body.to_typed())

    @app.post("/api/contracts/{contract_id}/approve")
    def approve(
        contract_id: str,
        body: Optional[ReviewEdits] = None,
        user=Depends(current_user),
        storage: Storage = Depends(get_storage),
    ):
        """Apply any final edits, mark reviewed, auto-populate the deal."""
        contract = owned_contract(storage, contract_id, user)
        fields = load_structured_fields(contract)
        if body is not None:
            fields = apply_edits(fields, body.to_typed())
        result = approve_contract(storage, contract_id, fields)
        return {
            "review": build_review_view(result["contract"]),
            "deal_updates": result["deal_updates"],
            "deal_update_error": result["deal_update_error"],
        }

    @app.post("/api/contracts/{contract_id}/deliverables")
    def create_deliverables(contract_id: str, user=Depends(current_user), storage: Storage = Depends(get_storage)):
        owned_contract(storage, contract_id, user)
        created = materialize_deliverables(storage, contract_id, user["id"])
        return {"created": len(created), "deliverables": created}

    # ------------------------------------------------------------------
    # Deals
    # ------------------------------------------------------------------

    @app.get("/api/deals/{deal_id}")
    def get_deal(deal_id: str, user=Depends(current_user), storage: Storage = Depends(get_storage)) -> Dict[str, Any]:
        """Deal with its deliverables (in sort order) and contracts."""
        deal = storage.deals.require(deal_id)
        if deal.get("user_id") != user["id"]:
            raise HTTPException(status_code=404, detail="Deal not found")
        deliverables = sorted(
            storage.deliverables.find(deal_id=deal_id),
            key=lambda d: d.get("sort_order", 0),
        )
        return {
            **deal,
            "deliverables": deliverables,
            "contracts": storage.contracts.find(deal_id=deal_id),
        }

    return app
