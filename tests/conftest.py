import pytest

from deal_storage import Storage


@pytest.fixture
def storage(tmp_path):
    """Fresh JSON-file storage rooted in a temp directory."""
    return Storage(tmp_path / "storage")


@pytest.fixture
def pro_user(storage):
    return storage.users.insert({
        "email": "creator@example.com",
        "subscription_tier": "pro",
        "forwarding_address": None,
    })


@pytest.fixture
def sample_extraction():
    """A fully populated contract extraction as the model would return it."""
    return {
        "payment": {
            "total_amount": 5000,
            "currency": "USD",
            "schedule": "50% upfront, 50% on delivery",
            "method": "bank transfer",
        },
        "deliverables": [
            {
                "platform": "youtube",
                "content_type": "video",
                "quantity": 1,
                "description": "Dedicated review video",
                "due_date": "2025-04-01",
            },
            {
                "platform": "Reddit",
                "content_type": "other",
                "quantity": 2,
                "description": "",
                "due_date": "2025-05-20",
            },
            {
                "platform": "instagram",
                "content_type": "story",
                "quantity": 3,
                "description": None,
                "due_date": None,
            },
        ],
        "usage_rights": {
            "duration": "6 months",
            "exclusivity": True,
            "platforms": ["youtube", "instagram"],
            "paid_ads_allowed": False,
            "whitelisting_allowed": False,
        },
        "approval": {"process": "Brand reviews drafts", "timeline": "48 hours"},
        "exclusivity": {"restricted_brands": ["CompetitorCo"], "duration": "30 days"},
        "termination": {"notice_period": "14 days", "kill_fee": "50%"},
        "special_terms": {
            "performance_bonus": None,
            "affiliate_code": None,
            "discount_code": "CREATOR10",
            "notes": None,
        },
        "dates": {
            "contract_start": "2025-03-01",
            "contract_end": "2025-09-01",
            "signing_deadline": None,
        },
    }
