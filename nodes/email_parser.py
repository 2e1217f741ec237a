"""
Email Parser Node - Heuristic Brand Deal Extraction

Turns a raw inbound brand email into a partial deal record without any
external calls:
- brand_name: sender domain, "on behalf of X" phrases, or a company-like
  display name
- contact_name: the display name, or a signature line after a closing
- budget: dollar amounts, "5k" shorthand, amounts after compensation words
- deliverables: platform keywords plus an associated content type
- dates: deadline and launch dates

Every rule is a pure function that returns None/empty when it finds
nothing, so parse_email() never raises. The keyword tables are module
level so tests can enumerate them.
"""

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Pattern, Tuple

from nodes.confidence import ConfidenceTier, ratio_to_tier
from state import ParsedDate, ParsedDeliverable


# ============================================================================
# Configuration
# ============================================================================

CONSUMER_MAIL_DOMAINS = [
    "gmail.com", "yahoo.com", "hotmail.com", "outlook.com",
    "aol.com", "icloud.com", "mail.com", "protonmail.com",
    "live.com", "msn.com",
]

MAX_PLAUSIBLE_BUDGET = 10_000_000


@dataclass
class EmailParserConfig:
    """
    Heuristic knobs for the parser.

    budget_strategy:
      "max"   - the largest amount mentioned is the headline budget (default)
      "first" - the first plausible amount in pattern order wins
    """
    blocked_domains: List[str] = field(default_factory=lambda: list(CONSUMER_MAIL_DOMAINS))
    max_budget: float = MAX_PLAUSIBLE_BUDGET
    budget_strategy: str = "max"


# ============================================================================
# Keyword Tables
# ============================================================================

PLATFORM_KEYWORDS: Dict[str, List[str]] = {
    "youtube": ["youtube", "yt", "youtube video", "youtube short"],
    "instagram": ["instagram", "ig", "insta", "instagram reel", "instagram story", "instagram post"],
    "tiktok": ["tiktok", "tik tok", "tiktok video"],
    "twitter": ["twitter", "x.com", "tweet"],
    "blog": ["blog", "blog post", "article", "written content"],
    "newsletter": ["newsletter", "email blast", "email newsletter"],
    "podcast": ["podcast", "podcast episode", "podcast mention"],
    "snapchat": ["snapchat", "snap"],
}

# Keyword found next to a platform -> canonical content type (first match wins)
CONTENT_TYPE_KEYWORDS: Dict[str, str] = {
    "video": "video",
    "reel": "reel",
    "reels": "reel",
    "story": "story",
    "stories": "story",
    "post": "post",
    "short": "short",
    "shorts": "short",
    "blog post": "blog_post",
    "article": "blog_post",
    "mention": "newsletter_mention",
    "integration": "podcast_integration",
}

COMPANY_MARKER_PATTERN = re.compile(
    r"\b(team|inc|llc|ltd|co|corp|media|agency|group|studio|labs?)\b",
    re.IGNORECASE,
)

# Legal/organisational suffixes removed when a display name is used as the brand
COMPANY_SUFFIX_PATTERN = re.compile(
    r"\b(team|inc\.?|llc|ltd\.?|co\.?|corp\.?)\b",
    re.IGNORECASE,
)

BEHALF_PATTERN = re.compile(
    r"(?:on behalf of|representing|from)\s+([A-Z][A-Za-z0-9\s&]+?)(?:\.|,|\n|$)"
)

SIGNATURE_PATTERN = re.compile(
    r"(?i:best|thanks|regards|cheers|sincerely),?[ \t]*\n\s*([A-Z][a-z]+(?:[ \t]+[A-Z][a-z]+)?)"
)


# ============================================================================
# Brand & Contact
# ============================================================================

def extract_domain(email_address: str) -> Optional[str]:
    """Lowercased domain part of an address, or None."""
    if not email_address or "@" not in email_address:
        return None
    domain = email_address.rsplit("@", 1)[1].strip().lower().rstrip(">")
    return domain or None


def is_company_name(display_name: Optional[str]) -> bool:
    return bool(display_name and COMPANY_MARKER_PATTERN.search(display_name))


def brand_from_domain(from_address, display_name, text, config) -> Optional[str]:
    domain = extract_domain(from_address)
    if not domain or domain in config.blocked_domains:
        return None
    label = domain.split(".")[0]
    if not label:
        return None
    return label[0].upper() + label[1:]


def brand_from_phrases(from_address, display_name, text, config) -> Optional[str]:
    match = BEHALF_PATTERN.search(text)
    if match:
        return match.group(1).strip() or None
    return None


def brand_from_display_name(from_address, display_name, text, config) -> Optional[str]:
    if not is_company_name(display_name):
        return None
    stripped = COMPANY_SUFFIX_PATTERN.sub("", display_name or "")
    stripped = re.sub(r"\s+", " ", stripped).strip(" .,-&")
    return stripped or None


# Evaluated in order; the first rule returning a name wins
BRAND_RULES: List[Tuple[str, Callable[..., Optional[str]]]] = [
    ("sender_domain", brand_from_domain),
    ("behalf_phrase", brand_from_phrases),
    ("company_display_name", brand_from_display_name),
]


def extract_brand_name(
    from_address: str,
    display_name: Optional[str],
    text: str,
    config: Optional[EmailParserConfig] = None,
) -> Optional[str]:
    """Brand rules in precedence order: domain, phrases, display name."""
    config = config or EmailParserConfig()
    for _, rule in BRAND_RULES:
        brand = rule(from_address, display_name, text, config)
        if brand:
            return brand
    return None


def extract_contact_name(display_name: Optional[str], text: str) -> Optional[str]:
    """Sender display name unless it looks like a company; else the signature."""
    if display_name and not is_company_name(display_name):
        return display_name.strip()

    match = SIGNATURE_PATTERN.search(text)
    if match:
        return match.group(1)
    return None


# ============================================================================
# Budget
# ============================================================================

MONEY_PATTERNS: List[Tuple[str, Pattern[str]]] = [
    ("currency_symbol", re.compile(r"\$\s?([\d,]+(?:\.\d{2})?)\s*(?:USD)?")),
    ("k_shorthand", re.compile(r"\$\s?(\d+(?:\.\d{1,2})?)\s*[kK]\b")),
    (
        "compensation_keyword",
        re.compile(
            r"\b(?:budget|rate|fee|compensation|payment|pay|offer(?:ing)?)\s*(?:of|is|:)?\s*\$?\s*([\d,]+(?:\.\d{2})?)",
            re.IGNORECASE,
        ),
    ),
    ("usd_prefix", re.compile(r"USD\s*([\d,]+(?:\.\d{2})?)")),
]


# Thousands suffix directly after a matched figure ("$5k", "budget is 5K")
_THOUSANDS_SUFFIX = re.compile(r"\s*[kK]\b")


def find_budget_amounts(text: str, config: Optional[EmailParserConfig] = None) -> List[float]:
    """Every plausible amount matched by MONEY_PATTERNS, in the order they appear in the text."""
    config = config or EmailParserConfig()
    found: List[Tuple[int, float]] = []
    for _, pattern in MONEY_PATTERNS:
        for match in pattern.finditer(text):
            raw = match.group(1).replace(",", "")
            try:
                amount = float(raw)
            except ValueError:
                continue
            # "$5k" means $5,000; "$1200k" is left alone
            if _THOUSANDS_SUFFIX.match(text, match.end(1)) and amount < 1000:
                amount *= 1000
            if 0 < amount < config.max_budget:
                found.append((match.start(1), amount))
    # Same start position: the fuller reading ("$5.5k" over "$5") comes first
    found.sort(key=lambda item: (item[0], -item[1]))
    return [amount for _, amount in found]


def extract_budget(text: str, config: Optional[EmailParserConfig] = None) -> Optional[float]:
    config = config or EmailParserConfig()
    amounts = find_budget_amounts(text, config)
    if not amounts:
        return None
    if config.budget_strategy == "first":
        return amounts[0]
    # Heuristic: the largest figure mentioned is usually the total
    return max(amounts)


# ============================================================================
# Deliverables
# ============================================================================

def _keyword_pattern(keyword: str) -> str:
    return r"\b" + r"\s+".join(re.escape(part) for part in keyword.split()) + r"\b"


def _contains_keyword(text_lower: str, keyword: str) -> bool:
    return re.search(_keyword_pattern(keyword), text_lower) is not None


def detect_content_type(text_lower: str, platform_keyword: str) -> Optional[str]:
    """
    Content type mentioned next to a platform keyword:
    "<platform> <type>" or "<type> on <platform>".
    """
    platform_part = _keyword_pattern(platform_keyword)
    for type_keyword, content_type in CONTENT_TYPE_KEYWORDS.items():
        type_part = _keyword_pattern(type_keyword)
        pattern = rf"(?:{platform_part}\s+{type_part}|{type_part}\s+(?:on\s+)?{platform_part})"
        if re.search(pattern, text_lower, re.IGNORECASE):
            return content_type
    return None


def extract_deliverables(text_lower: str) -> List[ParsedDeliverable]:
    """One entry per platform mentioned, with its content type if found."""
    found: List[ParsedDeliverable] = []
    for platform, keywords in PLATFORM_KEYWORDS.items():
        matched = [kw for kw in keywords if _contains_keyword(text_lower, kw)]
        if not matched:
            continue
        content_type = None
        for keyword in matched:
            content_type = detect_content_type(text_lower, keyword)
            if content_type:
                break
        found.append({"platform": platform, "type": content_type})
    return found


# ============================================================================
# Dates
# ============================================================================

_DEADLINE_LEAD = r"\b(?:deadline|due(?:\s+date)?|by|before|no later than)\s*:?\s*"
_LAUNCH_LEAD = r"\b(?:launch|go(?:\s+live)?|publish|post)\s*(?:date|on)?\s*:?\s*"
_LONG_DATE = r"(\w+\s+\d{1,2}(?:st|nd|rd|th)?,?\s*\d{4})"
_NUMERIC_DATE = r"(\d{1,2}/\d{1,2}/\d{2,4})"

DATE_PATTERNS: List[Tuple[str, Pattern[str]]] = [
    ("deadline", re.compile(_DEADLINE_LEAD + _LONG_DATE, re.IGNORECASE)),
    ("deadline", re.compile(_DEADLINE_LEAD + _NUMERIC_DATE, re.IGNORECASE)),
    ("launch", re.compile(_LAUNCH_LEAD + _LONG_DATE, re.IGNORECASE)),
    ("launch", re.compile(_LAUNCH_LEAD + _NUMERIC_DATE, re.IGNORECASE)),
]

_LONG_DATE_FORMATS = ["%B %d %Y", "%b %d %Y"]


def parse_date_text(raw: str) -> Optional[date]:
    """Parse "March 15th, 2025" or "3/15/2025" (month first); None if invalid."""
    raw = raw.strip()
    numeric = re.fullmatch(r"(\d{1,2})/(\d{1,2})/(\d{2,4})", raw)
    if numeric:
        month, day, year = (int(g) for g in numeric.groups())
        if year < 100:
            year += 2000
        try:
            return date(year, month, day)
        except ValueError:
            return None

    cleaned = re.sub(r"(\d)(st|nd|rd|th)\b", r"\1", raw, flags=re.IGNORECASE)
    cleaned = re.sub(r"[,\s]+", " ", cleaned).strip()
    for fmt in _LONG_DATE_FORMATS:
        try:
            return datetime.strptime(cleaned, fmt).date()
        except ValueError:
            continue
    return None


def extract_dates(text: str) -> List[ParsedDate]:
    dates: List[ParsedDate] = []
    for label, pattern in DATE_PATTERNS:
        for match in pattern.finditer(text):
            parsed = parse_date_text(match.group(1))
            if parsed:
                dates.append({"label": label, "date": parsed.isoformat()})
    return dates


# ============================================================================
# Result & Entry Point
# ============================================================================

@dataclass
class EmailCandidate:
    """Structured deal signals pulled from one email."""
    brand_name: Optional[str] = None
    contact_name: Optional[str] = None
    budget: Optional[float] = None
    deliverables: List[ParsedDeliverable] = field(default_factory=list)
    dates: List[ParsedDate] = field(default_factory=list)
    confidence: ConfidenceTier = ConfidenceTier.NONE

    source = "email"

    def signals_found(self) -> int:
        return sum([
            self.brand_name is not None,
            self.contact_name is not None,
            self.budget is not None,
            len(self.deliverables) > 0,
            len(self.dates) > 0,
        ])

    def to_dict(self) -> Dict[str, object]:
        return {
            "source": self.source,
            "brand_name": self.brand_name,
            "contact_name": self.contact_name,
            "budget": self.budget,
            "deliverables": [dict(d) for d in self.deliverables],
            "dates": [dict(d) for d in self.dates],
            "confidence": self.confidence.value,
        }


EMAIL_SIGNAL_COUNT = 5


def email_confidence(candidate: EmailCandidate) -> ConfidenceTier:
    """Overall tier for an email: share of the five signals that were found."""
    found = candidate.signals_found()
    if found == 0:
        return ConfidenceTier.NONE
    return ratio_to_tier(found / EMAIL_SIGNAL_COUNT)


def parse_email(
    from_address: str,
    from_display_name: Optional[str],
    subject: Optional[str],
    body_text: Optional[str],
    config: Optional[EmailParserConfig] = None,
) -> EmailCandidate:
    """
    Parse a brand email into an EmailCandidate.

    Pure and total: the same inputs always give the same output and a
    missing signal is simply None/empty.
    """
    config = config or EmailParserConfig()
    display_name = (from_display_name or "").strip() or None
    text = "\n".join(part for part in (subject, body_text) if part)
    text_lower = text.lower()

    candidate = EmailCandidate(
        brand_name=extract_brand_name(from_address or "", display_name, text, config),
        contact_name=extract_contact_name(display_name, text),
        budget=extract_budget(text, config),
        deliverables=extract_deliverables(text_lower),
        dates=extract_dates(text),
    )
    candidate.confidence = email_confidence(candidate)
    return candidate
