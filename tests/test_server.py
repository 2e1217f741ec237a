"""
API tests through FastAPI's TestClient

The app is built with temp-dir storage, a MagicMock chat model and a fake
text extractor, so no Docling, provider key or network is needed.
"""

import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient

from config import AppConfig
from nodes.contract_extractor import ContractExtractor
from nodes.document_text import TextExtractionResult
from nodes.email_intake import assign_forwarding_address
from server import create_app


class FakeTextExtractor:
    """Returns a fixed result; swap `result` per test."""

    def __init__(self):
        self.result = TextExtractionResult.with_text("BRAND PARTNERSHIP AGREEMENT", page_count=1)

    def __call__(self, data, filename):
        return self.result


@pytest.fixture
def llm(sample_extraction):
    llm = MagicMock()
    llm.invoke.return_value = SimpleNamespace(content=json.dumps(sample_extraction))
    return llm


@pytest.fixture
def text_extractor():
    return FakeTextExtractor()


@pytest.fixture
def client(tmp_path, storage, llm, text_extractor):
    app = create_app(
        config=AppConfig(storage_dir=str(tmp_path / "unused"), forwarding_domain="inbox.example.com"),
        storage=storage,
        extractor=ContractExtractor(llm),
        text_extractor=text_extractor,
    )
    return TestClient(app)


@pytest.fixture
def auth(pro_user):
    return {"X-User-Id": pro_user["id"]}


@pytest.fixture
def deal(storage, pro_user):
    return storage.deals.insert({
        "user_id": pro_user["id"],
        "title": "Spring campaign",
        "status": "negotiating",
        "value": 1200,
        "signed_date": None,
        "delivery_deadline": None,
    })


@pytest.fixture
def contract(storage, pro_user, deal):
    key = f"{pro_user['id']}/agreement.pdf"
    storage.deal_files.upload(key, b"%PDF-1.7 fake")
    return storage.contracts.insert({
        "user_id": pro_user["id"],
        "deal_id": deal["id"],
        "file_name": "agreement.pdf",
        "file_url": key,
        "extracted_data": None,
        "extraction_confidence": None,
        "extraction_status": "none",
        "reviewed": False,
    })


def extract(client, auth, contract):
    return client.post(
        "/api/contracts/extract",
        json={"contract_id": contract["id"], "file_url": contract["file_url"]},
        headers=auth,
    )


class TestHealthAndAuth:

    def test_health(self, client):
        response = client.get("/api/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_user_header(self, client):
        response = client.get("/api/emails")
        assert response.status_code == 401
        assert response.json() == {"error": "Unauthorized"}

    def test_unknown_user(self, client):
        response = client.get("/api/emails", headers={"X-User-Id": "ghost"})
        assert response.status_code == 401


class TestExtractEndpoint:

    def test_success(self, client, auth, contract, storage):
        response = extract(client, auth, contract)

        assert response.status_code == 200
        body = response.json()
        assert body["confidence"] == "high"
        assert body["extracted_data"]["payment"]["total_amount"] == 5000
        assert storage.contracts.get(contract["id"])["extraction_status"] == "extracted"

    def test_missing_fields(self, client, auth):
        response = client.post("/api/contracts/extract", json={"contract_id": "c1"}, headers=auth)
        assert response.status_code == 400
        assert response.json() == {"error": "Missing contract_id or file_url"}

    def test_unknown_contract(self, client, auth):
        response = client.post(
            "/api/contracts/extract",
            json={"contract_id": "nope", "file_url": "x.pdf"},
            headers=auth,
        )
        assert response.status_code == 404
        assert response.json() == {"error": "Contract not found"}

    def test_missing_file(self, client, auth, contract):
        response = client.post(
            "/api/contracts/extract",
            json={"contract_id": contract["id"], "file_url": "gone.pdf"},
            headers=auth,
        )
        assert response.status_code == 404
        assert response.json() == {"error": "Failed to download file"}

    def test_free_tier_forbidden(self, client, auth, contract, storage, pro_user):
        storage.users.update(pro_user["id"], {"subscription_tier": "free"})
        response = extract(client, auth, contract)

        assert response.status_code == 403
        assert "Pro or Elite" in response.json()["error"]

    def test_quota_exhausted(self, client, auth, contract, storage, pro_user):
        for _ in range(50):
            storage.extraction_attempts.insert({
                "user_id": pro_user["id"], "contract_id": "other", "confidence": "high",
            })
        response = extract(client, auth, contract)

        assert response.status_code == 429
        body = response.json()
        assert body["limit_reached"] is True
        assert body["used"] == 50
        assert body["limit"] == 50

    def test_malformed_model_response_still_200(self, client, auth, contract, llm):
        llm.invoke.return_value = SimpleNamespace(content="Here is a summary instead of JSON.")
        response = extract(client, auth, contract)

        assert response.status_code == 200
        assert response.json() == {
            "extracted_data": {"_raw": "Here is a summary instead of JSON."},
            "confidence": "low",
        }

    def test_scanned_pdf(self, client, auth, contract, text_extractor):
        text_extractor.result = TextExtractionResult.no_text(page_count=2)
        response = extract(client, auth, contract)

        assert response.status_code == 200
        body = response.json()
        assert body["confidence"] == "none"
        assert body["extracted_data"] is None
        assert "scanned" in body["error"]

    def test_unreadable_pdf(self, client, auth, contract, text_extractor, storage):
        text_extractor.result = TextExtractionResult.password_protected()
        response = extract(client, auth, contract)

        assert response.status_code == 422
        assert response.json()["error"] == "Failed to parse PDF"
        assert storage.contracts.get(contract["id"])["extraction_status"] == "none"

    def test_model_failure(self, client, auth, contract, llm, storage):
        llm.invoke.side_effect = RuntimeError("rate limited")
        response = extract(client, auth, contract)

        assert response.status_code == 502
        assert storage.contracts.get(contract["id"])["extraction_status"] == "none"

    def test_in_progress(self, client, auth, contract):
        client.app.state.extraction_service.guard.acquire(contract["id"])
        response = extract(client, auth, contract)
        assert response.status_code == 409

    def test_reviewed_contract(self, client, auth, contract, storage):
        storage.contracts.update(contract["id"], {"reviewed": True})
        response = extract(client, auth, contract)
        assert response.status_code == 409


class TestReviewEndpoints:

    @pytest.fixture
    def extracted(self, client, auth, contract):
        assert extract(client, auth, contract).status_code == 200
        return contract

    def test_get_review(self, client, auth, extracted):
        response = client.get(f"/api/contracts/{extracted['id']}/review", headers=auth)

        assert response.status_code == 200
        body = response.json()
        assert body["structured"] is True
        assert body["field_confidence"]["payment"]["total_amount"] == "high"

    def test_other_user_cannot_see_review(self, client, extracted, storage):
        stranger = storage.users.insert({"email": "x@example.com", "subscription_tier": "pro"})
        response = client.get(
            f"/api/contracts/{extracted['id']}/review", headers={"X-User-Id": stranger["id"]}
        )
        assert response.status_code == 404

    def test_patch_review(self, client, auth, extracted, storage):
        response = client.patch(
            f"/api/contracts/{extracted['id']}/review",
            json={
                "edits": [{"path": "payment.total_amount", "value": 5500}],
                "deliverable_edits": [{"index": 0, "field": "due_date", "value": "2025-04-15"}],
            },
            headers=auth,
        )

        assert response.status_code == 200
        stored = storage.contracts.get(extracted["id"])["extracted_data"]
        assert stored["payment"]["total_amount"] == 5500
        assert stored["deliverables"][0]["due_date"] == "2025-04-15"
        assert storage.contracts.get(extracted["id"])["reviewed"] is False

    def test_patch_invalid_path(self, client, auth, extracted):
        response = client.patch(
            f"/api/contracts/{extracted['id']}/review",
            json={"edits": [{"path": "payment.tip", "value": 1}]},
            headers=auth,
        )
        assert response.status_code == 422

    def test_approve_keeps_human_deal_value(self, client, auth, extracted, deal, storage):
        response = client.post(f"/api/contracts/{extracted['id']}/approve", headers=auth)

        assert response.status_code == 200
        body = response.json()
        assert body["review"]["reviewed"] is True
        assert body["review"]["confidence"] == "high"
        assert "value" not in body["deal_updates"]

        updated = storage.deals.get(deal["id"])
        assert updated["value"] == 1200
        assert updated["signed_date"] == "2025-03-01"
        assert updated["delivery_deadline"] == "2025-05-20"

    def test_approve_with_final_edits(self, client, auth, extracted, storage):
        response = client.post(
            f"/api/contracts/{extracted['id']}/approve",
            json={"edits": [{"path": "dates.contract_start", "value": "2025-03-10"}]},
            headers=auth,
        )

        assert response.status_code == 200
        assert storage.contracts.get(extracted["id"])["extracted_data"]["dates"]["contract_start"] == "2025-03-10"

    def test_patch_after_approval_rejected(self, client, auth, extracted):
        client.post(f"/api/contracts/{extracted['id']}/approve", headers=auth)
        response = client.patch(
            f"/api/contracts/{extracted['id']}/review",
            json={"edits": [{"path": "payment.total_amount", "value": 1}]},
            headers=auth,
        )
        assert response.status_code == 409

    def test_approve_unparsed_candidate(self, client, auth, extracted, storage):
        storage.contracts.update(extracted["id"], {"extracted_data": {"_raw": "?"}})
        response = client.post(f"/api/contracts/{extracted['id']}/approve", headers=auth)
        assert response.status_code == 409

    def test_create_deliverables_and_fetch_deal(self, client, auth, extracted, deal):
        response = client.post(f"/api/contracts/{extracted['id']}/deliverables", headers=auth)
        assert response.status_code == 200
        assert response.json()["created"] == 3

        response = client.get(f"/api/deals/{deal['id']}", headers=auth)
        body = response.json()
        assert [d["sort_order"] for d in body["deliverables"]] == [0, 1, 2]
        assert body["deliverables"][1]["platform"] == "other"
        assert len(body["contracts"]) == 1


class TestEmailEndpoints:

    @pytest.fixture
    def forwarding(self, storage, pro_user):
        return assign_forwarding_address(storage, pro_user["id"], "inbox.example.com")

    def test_inbound_postmark(self, client, auth, forwarding):
        response = client.post("/api/email/inbound", json={
            "FromFull": {"Email": "amy@northpeak.com", "Name": "Amy Ross"},
            "ToFull": [{"Email": forwarding}],
            "Subject": "TikTok collab",
            "TextBody": "We have $1,500 for a TikTok video.\n\nThanks,\nAmy Ross",
        })

        assert response.status_code == 200
        assert response.json()["message"] == "Email received"

        inbox = client.get("/api/emails", headers=auth).json()
        assert len(inbox) == 1
        assert inbox[0]["parsed_budget"] == 1500

    def test_unknown_recipient_is_200(self, client):
        response = client.post("/api/email/inbound", json={
            "from_address": "amy@northpeak.com",
            "to_addresses": ["deals-00000000@inbox.example.com"],
        })
        assert response.status_code == 200
        assert response.json() == {"message": "No matching user"}

    def test_no_recipient_is_400(self, client):
        response = client.post("/api/email/inbound", json={"from_address": "amy@northpeak.com"})
        assert response.status_code == 400

    def test_invalid_payload_is_400(self, client):
        response = client.post("/api/email/inbound", json={"to_addresses": 5})
        assert response.status_code == 400

    def test_email_to_deal_link_dismiss(self, client, auth, forwarding, deal):
        for subject in ["First", "Second"]:
            client.post("/api/email/inbound", json={
                "from_address": "amy@northpeak.com",
                "to_addresses": [forwarding],
                "subject": subject,
            })
        first, second = client.get("/api/emails", headers=auth).json()

        created = client.post(f"/api/emails/{first['id']}/deal", headers=auth)
        assert created.status_code == 200
        assert created.json()["status"] == "lead"

        linked = client.post(f"/api/emails/{second['id']}/link", json={"deal_id": deal["id"]}, headers=auth)
        assert linked.json()["deal_id"] == deal["id"]

        dismissed = client.post(f"/api/emails/{second['id']}/dismiss", headers=auth)
        assert dismissed.json()["processed"] is True

    def test_unknown_email(self, client, auth):
        response = client.post("/api/emails/nope/deal", headers=auth)
        assert response.status_code == 404
        assert response.json() == {"error": "Email not found"}
