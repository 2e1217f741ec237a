"""
Contract Extractor Node - LLM-Based Contract Field Extraction

Sends contract text to a chat model with a fixed prompt carrying the literal
target JSON schema, then parses the response defensively:

1. Strip a leading ``` fence (optionally tagged json) and a trailing fence
2. json.loads the remainder; a JSON object becomes a StructuredCandidate
   scored by nodes.confidence
3. Anything else becomes an UnparsedCandidate holding the verbatim
   response, with confidence LOW. A malformed response never raises.

Provider or network failures on the single model call are wrapped in
LLMCallError so the caller can leave the contract untouched.

The chat model is built once by build_llm() at process bootstrap and
injected into ContractExtractor; nothing here constructs clients per call.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from typing import Any, Optional

from langchain_core.messages import HumanMessage, SystemMessage

from config import ConfigError
from nodes.candidate import (
    Candidate,
    ExtractionFields,
    StructuredCandidate,
    UnparsedCandidate,
)
from nodes.confidence import ConfidenceTier, overall_confidence
from nodes.document_text import DEFAULT_MAX_CONTRACT_CHARS, truncate_for_llm

logger = logging.getLogger(__name__)


class LLMCallError(Exception):
    """The model call itself failed (provider, network, auth)."""


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class ContractExtractorConfig:
    """Configuration for contract extraction."""

    llm_provider: str = "anthropic"  # "anthropic", "openai"
    llm_model: str = "claude-sonnet-4-20250514"
    llm_temperature: float = 0.0
    llm_max_tokens: int = 4096

    # Contracts longer than this are truncated before the model call
    max_contract_chars: int = DEFAULT_MAX_CONTRACT_CHARS

    # Mock mode for local runs without an API key
    use_mock: bool = False

    @classmethod
    def from_env(cls) -> "ContractExtractorConfig":
        return cls(
            llm_provider=os.getenv("LLM_PROVIDER", "anthropic").lower(),
            llm_model=os.getenv("LLM_MODEL", "claude-sonnet-4-20250514"),
            llm_temperature=float(os.getenv("LLM_TEMPERATURE", "0")),
            llm_max_tokens=int(os.getenv("LLM_MAX_TOKENS", "4096")),
            max_contract_chars=int(os.getenv("MAX_CONTRACT_CHARS", str(DEFAULT_MAX_CONTRACT_CHARS))),
            use_mock=os.getenv("USE_MOCK_EXTRACTOR", "false").lower() == "true",
        )


# ============================================================================
# Prompt
# ============================================================================

EXTRACTION_SYSTEM_PROMPT = (
    "You read influencer and creator brand deal contracts and return the "
    "requested fields as a single JSON object. Never add commentary."
)

CONTRACT_EXTRACTION_PROMPT = """Extract the following information from this brand deal contract and return ONLY valid JSON with no other text.

Contract text:
---
{CONTRACT_TEXT}
---

Return this exact JSON structure (use null for any field you cannot find):
{
  "payment": {
    "total_amount": null,
    "currency": "USD",
    "schedule": null,
    "method": null
  },
  "deliverables": [
    {
      "platform": "<tiktok|youtube|instagram|twitter|blog|newsletter|podcast|snapchat|other>",
      "content_type": "<video|post|story|reel|short|blog_post|newsletter_mention|podcast_integration|event_appearance|other>",
      "quantity": 1,
      "description": "",
      "due_date": null
    }
  ],
  "usage_rights": {
    "duration": null,
    "exclusivity": false,
    "platforms": [],
    "paid_ads_allowed": false,
    "whitelisting_allowed": false
  },
  "approval": {
    "process": null,
    "timeline": null
  },
  "exclusivity": {
    "restricted_brands": null,
    "duration": null
  },
  "termination": {
    "notice_period": null,
    "kill_fee": null
  },
  "special_terms": {
    "performance_bonus": null,
    "affiliate_code": null,
    "discount_code": null,
    "notes": null
  },
  "dates": {
    "contract_start": null,
    "contract_end": null,
    "signing_deadline": null
  }
}

Dates must be YYYY-MM-DD."""


def build_prompt(document_text: str) -> str:
    # str.replace, not format(): the template holds literal JSON braces
    return CONTRACT_EXTRACTION_PROMPT.replace("{CONTRACT_TEXT}", document_text)


# ============================================================================
# Model Construction
# ============================================================================

MOCK_RESPONSE = """```json
{
  "payment": {"total_amount": 2500, "currency": "USD", "schedule": "50% upfront, 50% on publish", "method": "bank transfer"},
  "deliverables": [
    {"platform": "youtube", "content_type": "video", "quantity": 1, "description": "Dedicated review video", "due_date": "2025-04-01"},
    {"platform": "instagram", "content_type": "story", "quantity": 3, "description": null, "due_date": "2025-04-08"}
  ],
  "usage_rights": {"duration": "6 months", "exclusivity": false, "platforms": ["youtube", "instagram"], "paid_ads_allowed": true, "whitelisting_allowed": false},
  "approval": {"process": "Draft review by brand", "timeline": "48 hours"},
  "exclusivity": {"restricted_brands": null, "duration": null},
  "termination": {"notice_period": "14 days", "kill_fee": null},
  "special_terms": {"performance_bonus": null, "affiliate_code": null, "discount_code": "CREATOR10", "notes": null},
  "dates": {"contract_start": "2025-03-01", "contract_end": "2025-09-01", "signing_deadline": null}
}
```"""


def build_llm(config: Optional[ContractExtractorConfig] = None) -> Any:
    """
    Construct the chat model for the configured provider.

    Raises:
        ConfigError: unknown provider or missing API key
    """
    config = config or ContractExtractorConfig.from_env()

    if config.use_mock:
        from langchain_core.language_models.fake_chat_models import FakeListChatModel

        logger.info("Using mock contract extraction model")
        return FakeListChatModel(responses=[MOCK_RESPONSE])

    if config.llm_provider == "anthropic":
        if not os.getenv("ANTHROPIC_API_KEY"):
            raise ConfigError("ANTHROPIC_API_KEY not set")
        from langchain_anthropic import ChatAnthropic

        return ChatAnthropic(  # type: ignore[call-arg]
            model_name=config.llm_model,
            temperature=config.llm_temperature,
            max_tokens=config.llm_max_tokens,
        )

    if config.llm_provider == "openai":
        if not os.getenv("OPENAI_API_KEY"):
            raise ConfigError("OPENAI_API_KEY not set")
        from langchain_openai import ChatOpenAI

        return ChatOpenAI(
            model=config.llm_model,
            temperature=config.llm_temperature,
            max_completion_tokens=config.llm_max_tokens,
        )

    raise ConfigError(f"Unknown LLM provider: {config.llm_provider}")


# ============================================================================
# Response Parsing
# ============================================================================

_LEADING_FENCE = re.compile(r"^\s*```(?:json)?\s*", re.IGNORECASE)
_TRAILING_FENCE = re.compile(r"\s*```\s*$")


def strip_code_fence(text: str) -> str:
    """Remove a leading ```/```json marker and a trailing ``` marker."""
    text = _LEADING_FENCE.sub("", text, count=1)
    text = _TRAILING_FENCE.sub("", text, count=1)
    return text.strip()


def parse_model_response(text: str) -> Candidate:
    """Parse a model response into a candidate; never raises."""
    try:
        parsed = json.loads(strip_code_fence(text))
    except (json.JSONDecodeError, TypeError) as e:
        logger.warning(f"Model response is not valid JSON, keeping raw text: {e}")
        return UnparsedCandidate(raw_text=text)

    if not isinstance(parsed, dict):
        logger.warning(f"Model returned JSON {type(parsed).__name__}, expected an object")
        return UnparsedCandidate(raw_text=text)

    return StructuredCandidate(fields=ExtractionFields.from_dict(parsed))


def candidate_confidence(candidate: Candidate) -> ConfidenceTier:
    if isinstance(candidate, StructuredCandidate):
        return overall_confidence(candidate.fields)
    return ConfidenceTier.LOW


def response_text(response: Any) -> str:
    """Plain text of a chat model response (string or content blocks)."""
    content = getattr(response, "content", response)
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, str):
                parts.append(block)
            elif isinstance(block, dict) and block.get("type") == "text":
                parts.append(block.get("text", ""))
        return "".join(parts)
    return str(content)


# ============================================================================
# Extractor
# ============================================================================

@dataclass
class ContractExtraction:
    """Result of one extraction call."""
    candidate: Candidate
    confidence: ConfidenceTier
    raw_response: str

    @property
    def extracted_data(self) -> dict:
        return self.candidate.to_dict()


class ContractExtractor:
    """Runs the extraction prompt against an injected chat model."""

    def __init__(self, llm: Any, config: Optional[ContractExtractorConfig] = None):
        self.llm = llm
        self.config = config or ContractExtractorConfig()

    @classmethod
    def from_config(cls, config: Optional[ContractExtractorConfig] = None) -> "ContractExtractor":
        config = config or ContractExtractorConfig.from_env()
        return cls(build_llm(config), config)

    def extract(self, document_text: str) -> ContractExtraction:
        """
        Extract contract fields from document text.

        Exactly one model invocation per call.

        Raises:
            LLMCallError: the model call failed
        """
        text = truncate_for_llm(document_text, self.config.max_contract_chars)
        messages = [
            SystemMessage(content=EXTRACTION_SYSTEM_PROMPT),
            HumanMessage(content=build_prompt(text)),
        ]

        try:
            response = self.llm.invoke(messages)
        except Exception as e:
            logger.error(f"Contract extraction model call failed: {e}")
            raise LLMCallError(str(e)) from e

        raw = response_text(response)
        candidate = parse_model_response(raw)
        confidence = candidate_confidence(candidate)
        logger.info(
            f"Contract extraction finished: structured={candidate.is_structured}, "
            f"confidence={confidence.value}"
        )
        return ContractExtraction(candidate=candidate, confidence=confidence, raw_response=raw)
