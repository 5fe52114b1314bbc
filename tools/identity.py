import re
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Sequence, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit

# Legal-entity boilerplate and stop words that never identify a business.
GENERIC_TOKENS = frozenset({
    "inc", "llc", "co", "corp", "corporation", "company", "companies",
    "group", "associates", "assoc", "association", "enterprise", "enterprises",
    "ltd", "limited", "pc", "plc", "pllc", "llp",
    "and", "for", "with", "the", "of", "in", "near", "at", "to", "by", "on",
    "a", "an", "amp", "system",
})

_CAMEL_BOUNDARY = re.compile(r"([a-z])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")


def _split_words(value: str) -> List[str]:
    separated = _CAMEL_BOUNDARY.sub(r"\1 \2", value).lower()
    return [word for word in _NON_ALNUM.split(separated) if word]


def _dedupe(tokens: Iterable[str]) -> List[str]:
    seen = set()
    ordered = []
    for token in tokens:
        if token not in seen:
            seen.add(token)
            ordered.append(token)
    return ordered


def tokenize_query(query: str) -> List[str]:
    """
    Split a free-text query into distinctive lowercase tokens.

    Tokens shorter than three characters are only kept when nothing longer
    survives; purely numeric tokens and boilerplate words are always dropped.
    """
    base = [word for word in _split_words(query or "") if word not in GENERIC_TOKENS]
    kept = [word for word in base if len(word) >= 3 and not word.isdigit()]
    if not kept:
        kept = [word for word in base if len(word) >= 2 and not word.isdigit()]
    return _dedupe(kept)


def derive_identity_tokens(company: Optional[str]) -> Tuple[List[str], List[str]]:
    """
    Derive identity tokens from a company name.

    Args:
        company: Company name as it appears on the lead

    Returns:
        Tuple of (tokens, strong_tokens). A single-word name such as
        "BrightPath" yields the collapsed word "brightpath" as a strong token
        plus its camel-case parts.
    """
    if not company or not company.strip():
        return [], []

    trimmed = company.strip()
    collapsed = re.sub(r"[^a-z0-9]", "", trimmed.lower())
    strong: List[str] = []
    if not re.search(r"\s", trimmed) and len(collapsed) >= 4 and not collapsed.isdigit():
        strong.append(collapsed)

    words = [
        word for word in _split_words(trimmed)
        if not word.isdigit() and word not in GENERIC_TOKENS
    ]
    tokens = [word for word in words if len(word) >= 3]
    if not tokens:
        tokens = [word for word in words if len(word) >= 2]

    return _dedupe(strong + tokens), strong


@dataclass(frozen=True)
class MatchPolicy:
    """
    Thresholds for accepting a candidate listing.

    The defaults were tuned against observed false positives and are
    heuristics; callers may loosen or tighten them.
    """

    max_required_matches: int = 2
    # Relaxed text-proxy pass keeps only this many required tokens.
    relaxed_required_tokens: int = 1
    snippet_radius: int = 250
    max_text_candidates: int = 5
    page_prefix_chars: int = 5000


@dataclass
class IdentityMatcher:
    """Checks whether a piece of text plausibly names the queried business."""

    identity_tokens: List[str]
    required_tokens: List[str]
    min_required: int
    query_tokens: List[str] = field(default_factory=list)

    @classmethod
    def for_company(cls, query: str, company: Optional[str], policy: Optional[MatchPolicy] = None) -> "IdentityMatcher":
        policy = policy or MatchPolicy()
        query_tokens = tokenize_query(query)
        company_tokens, strong_tokens = derive_identity_tokens(company)
        identity = company_tokens or query_tokens
        required = _dedupe(strong_tokens or company_tokens)
        min_required = min(policy.max_required_matches, len(required))
        return cls(
            identity_tokens=identity,
            required_tokens=required,
            min_required=min_required,
            query_tokens=query_tokens,
        )

    def matched(self, text: str, tokens: Sequence[str]) -> List[str]:
        lowered = text.lower()
        return [token for token in tokens if token in lowered]

    def matches(self, text: Optional[str]) -> bool:
        if not text:
            return False
        if not self.identity_tokens:
            return True
        found = self.matched(text, self.identity_tokens)
        if not found:
            return False
        if self.min_required == 0:
            return True
        return len(self.matched(text, self.required_tokens)) >= self.min_required

    def matches_any(self, *texts: Optional[str]) -> bool:
        return any(self.matches(text) for text in texts)


_LISTING_NOISE_PARAMS = frozenset({"authuser", "hl", "entry", "sa", "ved", "ei", "source"})


def normalize_key(value: Optional[str]) -> Optional[str]:
    """Lowercase and collapse whitespace; None for blank input."""
    if not value:
        return None
    collapsed = re.sub(r"\s+", " ", value).strip().lower()
    return collapsed or None


def normalize_url_key(url: Optional[str]) -> Optional[str]:
    """Canonical form of a listing URL: tracking params dropped, the rest sorted."""
    if not url or not url.strip():
        return None
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return normalize_key(url)
    if not parts.netloc:
        return normalize_key(url)
    params = sorted(
        (k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if k.lower() not in _LISTING_NOISE_PARAMS
    )
    query = f"?{urlencode(params)}" if params else ""
    path = parts.path.rstrip("/")
    return f"{parts.netloc.lower()}{path}{query}"
