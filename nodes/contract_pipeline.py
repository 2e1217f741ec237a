"""
Contract Pipeline - Graph Nodes and the Extraction Service

Graph nodes (wired into a StateGraph by main.build_contract_graph):
- document_text: bytes -> plain text via Docling
- contract_extraction: one LLM call -> candidate + confidence
- persist: write extracted_data/confidence onto the contract
- persist_no_text: scanned document, write confidence "none"

ContractExtractionService.run() wraps the graph with the request-level
rules: tier and monthly quota checks, ownership, the reviewed-contract
lock, a per-contract in-flight guard, status restore on failure, and the
extraction attempt ledger used for quota counting.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Set

from deal_storage import RecordNotFoundError, Storage, utc_now
from nodes.confidence import ConfidenceTier
from nodes.contract_extractor import ContractExtractor
from nodes.document_text import TextExtractionResult, TextStatus, extract_document_text
from nodes.feature_gates import check_extraction_allowed, is_quota_capped, month_window
from state import ContractExtractionState, ExtractionAttemptRecord, UserRecord

logger = logging.getLogger(__name__)


NO_TEXT_ERROR = "No text found in PDF (may be a scanned document)"


class ExtractionInProgressError(Exception):
    """Another extraction for the same contract has not finished yet."""

    code = "extraction_in_progress"

    def __init__(self, contract_id: str):
        self.contract_id = contract_id
        self.message = "Extraction already in progress for this contract"
        super().__init__(self.message)


class ContractAlreadyReviewedError(Exception):
    """Reviewed contracts are locked against re-extraction."""

    code = "contract_reviewed"

    def __init__(self, contract_id: str):
        self.contract_id = contract_id
        self.message = "Contract has already been reviewed"
        super().__init__(self.message)


class DocumentUnreadableError(Exception):
    """The uploaded file is not a readable PDF."""

    code = "unreadable_document"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


# ============================================================================
# In-Flight Guard
# ============================================================================

class InFlightGuard:
    """Process-local set of contract ids with an extraction running."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Set[str] = set()

    def acquire(self, key: str) -> bool:
        with self._lock:
            if key in self._active:
                return False
            self._active.add(key)
            return True

    def release(self, key: str) -> None:
        with self._lock:
            self._active.discard(key)

    def is_active(self, key: str) -> bool:
        with self._lock:
            return key in self._active


# ============================================================================
# Graph Nodes
# ============================================================================

def make_document_text_node(
    text_extractor: Callable[[bytes, str], TextExtractionResult] = extract_document_text,
) -> Callable[[ContractExtractionState], dict]:
    def document_text_node(state: ContractExtractionState) -> dict:
        result = text_extractor(state["file_bytes"], state.get("file_name") or "contract.pdf")
        return {
            "text_status": result.status.value,
            "document_text": result.text if result.has_text else None,
            "text_error": None if result.has_text else result.message,
        }

    return document_text_node


def make_contract_extraction_node(extractor: ContractExtractor) -> Callable[[ContractExtractionState], dict]:
    def contract_extraction_node(state: ContractExtractionState) -> dict:
        extraction = extractor.extract(state["document_text"] or "")
        return {
            "extracted_data": extraction.extracted_data,
            "confidence": extraction.confidence.value,
        }

    return contract_extraction_node


def make_persist_node(storage: Storage) -> Callable[[ContractExtractionState], dict]:
    def persist_node(state: ContractExtractionState) -> dict:
        storage.contracts.update(state["contract_id"], {
            "extracted_data": state["extracted_data"],
            "extraction_confidence": state["confidence"],
            "extraction_status": "extracted",
            "reviewed": False,
        })
        return {"message": None}

    return persist_node


def make_persist_no_text_node(storage: Storage) -> Callable[[ContractExtractionState], dict]:
    def persist_no_text_node(state: ContractExtractionState) -> dict:
        storage.contracts.update(state["contract_id"], {
            "extracted_data": None,
            "extraction_confidence": ConfidenceTier.NONE.value,
            "extraction_status": "extracted",
            "reviewed": False,
        })
        return {
            "extracted_data": None,
            "confidence": ConfidenceTier.NONE.value,
            "message": NO_TEXT_ERROR,
        }

    return persist_no_text_node


def route_after_text(state: ContractExtractionState) -> str:
    """Next node after text extraction; "end" for unreadable files."""
    status = state.get("text_status")
    if status == TextStatus.TEXT.value:
        return "contract_extraction"
    if status == TextStatus.NO_TEXT.value:
        return "persist_no_text"
    return "end"


# ============================================================================
# Service
# ============================================================================

class ContractExtractionService:
    """Request-level orchestration around the compiled extraction graph."""

    def __init__(
        self,
        storage: Storage,
        graph: Any,
        guard: Optional[InFlightGuard] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.storage = storage
        self.graph = graph
        self.guard = guard or InFlightGuard()
        self.clock = clock

    def check_quota(self, user: UserRecord) -> None:
        """Tier and monthly quota checks; no side effects."""
        tier = user.get("subscription_tier") or "free"
        used = 0
        if tier != "free" and is_quota_capped(tier):
            start, end = month_window(self.clock())
            used = self.storage.count_extraction_attempts(user["id"], start, end)
        check_extraction_allowed(tier, used)

    def run(self, user_id: str, contract_id: str, file_url: str) -> Dict[str, Any]:
        """
        Extract one contract.

        Returns:
            {"extracted_data", "confidence"} plus "error" for scanned documents

        Raises:
            RecordNotFoundError, FeatureNotAvailableError, QuotaExceededError,
            ContractAlreadyReviewedError, ExtractionInProgressError,
            StorageError, DocumentUnreadableError, LLMCallError
        """
        user = self.storage.users.require(user_id)
        self.check_quota(user)

        contract = self.storage.contracts.require(contract_id)
        if contract.get("user_id") != user_id:
            raise RecordNotFoundError("contracts", contract_id)
        if contract.get("reviewed"):
            raise ContractAlreadyReviewedError(contract_id)

        if not self.guard.acquire(contract_id):
            raise ExtractionInProgressError(contract_id)

        previous_status = contract.get("extraction_status") or "none"
        try:
            file_bytes = self.storage.deal_files.download(file_url)
            self.storage.contracts.update(contract_id, {"extraction_status": "extracting"})
            logger.info(f"Extracting contract {contract_id} for user {user_id}")

            try:
                final_state = self.graph.invoke({
                    "contract_id": contract_id,
                    "file_name": contract.get("file_name") or file_url.rsplit("/", 1)[-1],
                    "file_bytes": file_bytes,
                })
                if final_state.get("text_status") == TextStatus.UNREADABLE.value:
                    raise DocumentUnreadableError(final_state.get("text_error") or "Failed to parse PDF")
            except Exception:
                self.storage.contracts.update(contract_id, {"extraction_status": previous_status})
                raise
        finally:
            self.guard.release(contract_id)

        confidence = final_state["confidence"]
        attempt: ExtractionAttemptRecord = {
            "user_id": user_id,
            "contract_id": contract_id,
            "confidence": confidence,
        }
        self.storage.extraction_attempts.insert(attempt)
        logger.info(f"Contract {contract_id} extracted with confidence {confidence}")

        response: Dict[str, Any] = {
            "extracted_data": final_state.get("extracted_data"),
            "confidence": confidence,
        }
        if final_state.get("message"):
            response["error"] = final_state["message"]
        return response
