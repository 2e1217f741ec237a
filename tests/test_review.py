"""
Tests for the Review Node (review view, approval merge, deliverables)
"""

from unittest.mock import patch

import pytest
from nodes.candidate import ExtractionFields, parse_edit_path
from nodes.review import (
    ContractNotReviewableError,
    approve_contract,
    build_review_view,
    compute_deal_updates,
    deliverable_title,
    latest_due_date,
    materialize_deliverables,
    normalize_content_type,
    normalize_platform,
    save_edits,
)


@pytest.fixture
def deal(storage, pro_user):
    return storage.deals.insert({
        "user_id": pro_user["id"],
        "title": "Spring campaign",
        "value": 0,
        "signed_date": None,
        "delivery_deadline": None,
    })


@pytest.fixture
def contract(storage, pro_user, deal, sample_extraction):
    return storage.contracts.insert({
        "user_id": pro_user["id"],
        "deal_id": deal["id"],
        "file_name": "agreement.pdf",
        "file_url": f"{pro_user['id']}/agreement.pdf",
        "extracted_data": sample_extraction,
        "extraction_confidence": "high",
        "extraction_status": "extracted",
        "reviewed": False,
    })


class TestBuildReviewView:

    def test_structured_view(self, contract):
        view = build_review_view(contract)

        assert view["structured"] is True
        assert view["confidence"] == "high"
        assert view["candidate"]["payment"]["total_amount"] == 5000
        assert view["field_confidence"]["payment"]["total_amount"] == "high"
        assert view["raw_text"] is None

    def test_unparsed_view_exposes_raw_text(self, contract):
        contract["extracted_data"] = {"_raw": "model said something odd"}
        contract["extraction_confidence"] = "low"
        view = build_review_view(contract)

        assert view["structured"] is False
        assert view["raw_text"] == "model said something odd"
        assert view["candidate"] is None
        assert view["field_confidence"] is None

    def test_never_extracted(self, contract):
        contract["extracted_data"] = None
        contract["extraction_confidence"] = None
        view = build_review_view(contract)

        assert view["confidence"] == "none"
        assert view["structured"] is False
        assert view["raw_text"] is None


class TestSaveEdits:

    def test_edit_persisted_without_approving(self, storage, contract):
        view = save_edits(storage, contract["id"], [parse_edit_path("payment.total_amount", 6500)])

        stored = storage.contracts.get(contract["id"])
        assert stored["extracted_data"]["payment"]["total_amount"] == 6500
        assert stored["reviewed"] is False
        assert view["candidate"]["payment"]["total_amount"] == 6500

    def test_unparsed_contract_not_editable(self, storage, contract):
        storage.contracts.update(contract["id"], {"extracted_data": {"_raw": "x"}})
        with pytest.raises(ContractNotReviewableError):
            save_edits(storage, contract["id"], [])


class TestComputeDealUpdates:

    def test_empty_deal_filled(self, sample_extraction):
        fields = ExtractionFields.from_dict(sample_extraction)
        updates = compute_deal_updates({"value": 0, "signed_date": "", "delivery_deadline": None}, fields)

        assert updates == {
            "value": 5000,
            "signed_date": "2025-03-01",
            "delivery_deadline": "2025-05-20",
        }

    def test_human_value_not_overwritten(self, sample_extraction):
        fields = ExtractionFields.from_dict(sample_extraction)
        updates = compute_deal_updates({"value": 1200}, fields)

        assert "value" not in updates

    def test_existing_dates_kept(self, sample_extraction):
        fields = ExtractionFields.from_dict(sample_extraction)
        deal = {"value": 0, "signed_date": "2025-01-15", "delivery_deadline": "2025-12-31"}
        assert compute_deal_updates(deal, fields) == {"value": 5000}

    def test_zero_total_not_written(self):
        fields = ExtractionFields.from_dict({"payment": {"total_amount": 0}})
        assert compute_deal_updates({"value": None}, fields) == {}

    def test_non_numeric_total_not_written(self):
        fields = ExtractionFields.from_dict({"payment": {"total_amount": "five thousand"}})
        assert "value" not in compute_deal_updates({}, fields)

    def test_latest_due_date_skips_non_iso(self):
        fields = ExtractionFields.from_dict({"deliverables": [
            {"due_date": "2025-04-01"},
            {"due_date": "end of May"},
            {"due_date": "2025-05-20"},
            {"due_date": None},
        ]})
        assert latest_due_date(fields) == "2025-05-20"


class TestApproveContract:

    def test_approve_marks_reviewed_and_fills_deal(self, storage, contract, deal):
        result = approve_contract(storage, contract["id"])

        stored = storage.contracts.get(contract["id"])
        assert stored["reviewed"] is True
        assert stored["extraction_status"] == "reviewed"
        assert stored["extraction_confidence"] == "high"

        updated_deal = storage.deals.get(deal["id"])
        assert updated_deal["value"] == 5000
        assert updated_deal["signed_date"] == "2025-03-01"
        assert updated_deal["delivery_deadline"] == "2025-05-20"
        assert result["deal_update_error"] is None

    def test_human_deal_value_survives_approval(self, storage, contract, deal):
        storage.deals.update(deal["id"], {"value": 1200})
        approve_contract(storage, contract["id"])

        assert storage.deals.get(deal["id"])["value"] == 1200

    def test_edited_fields_saved(self, storage, contract, sample_extraction):
        fields = ExtractionFields.from_dict(sample_extraction)
        fields.payment.total_amount = 4500
        approve_contract(storage, contract["id"], fields)

        assert storage.contracts.get(contract["id"])["extracted_data"]["payment"]["total_amount"] == 4500

    def test_missing_deal_reported_not_raised(self, storage, contract, deal):
        storage.deals.delete(deal["id"])
        result = approve_contract(storage, contract["id"])

        assert result["deal_update_error"]
        assert storage.contracts.get(contract["id"])["reviewed"] is True

    def test_deal_write_failure_reported(self, storage, contract):
        with patch.object(storage.deals, "update", side_effect=OSError("disk full")):
            result = approve_contract(storage, contract["id"])

        assert "disk full" in result["deal_update_error"]
        assert storage.contracts.get(contract["id"])["reviewed"] is True

    def test_contract_without_deal(self, storage, contract):
        storage.contracts.update(contract["id"], {"deal_id": None})
        result = approve_contract(storage, contract["id"])
        assert result["deal_updates"] == {}

    def test_unparsed_contract_needs_fields(self, storage, contract):
        storage.contracts.update(contract["id"], {"extracted_data": {"_raw": "???"}})
        with pytest.raises(ContractNotReviewableError):
            approve_contract(storage, contract["id"])


class TestDeliverables:

    def test_normalize_platform(self):
        assert normalize_platform("YouTube") == "youtube"
        assert normalize_platform("Reddit") == "other"
        assert normalize_platform(None) == "other"

    def test_normalize_content_type(self):
        assert normalize_content_type("Reel") == "reel"
        assert normalize_content_type("other") == "custom"
        assert normalize_content_type("livestream") == "custom"

    def test_title_falls_back_to_raw_values(self):
        assert deliverable_title("Reddit", "other", "") == "Reddit other"
        assert deliverable_title("youtube", "video", "  Unboxing  ") == "Unboxing"

    def test_title_without_platform_or_type(self):
        assert deliverable_title(None, None, None) == "Deliverable"
        assert deliverable_title(None, "video", "") == "video"

    def test_materialize_bare_deliverable(self, storage, contract, pro_user):
        storage.contracts.update(contract["id"], {"extracted_data": {"deliverables": [{}]}})
        created = materialize_deliverables(storage, contract["id"], pro_user["id"])

        assert created[0]["title"] == "Deliverable"
        assert created[0]["platform"] == "other"
        assert created[0]["content_type"] == "custom"

    def test_materialize(self, storage, contract, deal, pro_user):
        created = materialize_deliverables(storage, contract["id"], pro_user["id"])

        assert len(created) == 3
        first, second, third = created
        assert first["title"] == "Dedicated review video"
        assert first["platform"] == "youtube"
        assert second["title"] == "Reddit other"
        assert second["platform"] == "other"
        assert second["content_type"] == "custom"
        assert third["due_date"] is None
        assert [d["sort_order"] for d in created] == [0, 1, 2]
        assert all(d["status"] == "not_started" for d in created)
        assert all(d["deal_id"] == deal["id"] for d in created)
        assert len(storage.deliverables.find(deal_id=deal["id"])) == 3
