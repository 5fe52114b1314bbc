import re
from datetime import date
from typing import Dict, Iterable, Optional
from urllib.parse import parse_qs, urlsplit, urlunsplit

from loguru import logger

from graph.models import CleanedLead, Lead
from graph.state import LeadState

WEBSITE_FIELDS = ("website", "website_url", "url", "domain", "homepage")
INDUSTRY_FIELDS = ("industry", "vertical", "segment", "category")
LOCATION_FIELDS = ("location", "city", "state", "province", "country", "region", "address")
EMAIL_FIELDS = ("email", "email_address", "contact_email")
PHONE_FIELDS = ("phone", "phone_number", "contact_phone", "mobile", "cell", "telephone", "tel")
FOUNDED_FIELDS = ("founded", "year_founded", "founded_year", "established", "since")

URL_IN_TEXT = re.compile(r"https?://[^\s\"'<>()]+", re.IGNORECASE)
YEAR = re.compile(r"(?:19|20)\d{2}")


def first_value(record: Dict[str, str], keys: Iterable[str]) -> Optional[str]:
    for key in keys:
        value = (record.get(key) or "").strip()
        if value:
            return value
    return None


def normalize_website(raw: Optional[str]) -> Optional[str]:
    """``example.com/about#team`` -> ``https://example.com/about``; localhost and bad ports are rejected."""
    if not raw or not raw.strip():
        return None
    value = raw.strip()
    if not value.lower().startswith("http"):
        value = f"https://{value}"
    try:
        parts = urlsplit(value)
        port = parts.port
    except ValueError:
        return None
    host = (parts.hostname or "").lower()
    if not host or host == "localhost" or " " in parts.netloc or port == 0:
        return None
    path = "" if parts.path in ("", "/") else parts.path
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, parts.query, ""))


def website_from_email(raw: Optional[str]) -> Optional[str]:
    if not raw or "@" not in raw:
        return None
    domain = raw.strip().lower().split("@", 1)[1]
    return normalize_website(domain) if domain else None


def normalize_phone(raw: Optional[str]) -> Optional[str]:
    if not raw:
        return None
    digits = re.sub(r"[^0-9]", "", raw)
    if len(digits) < 7 or len(digits) > 15:
        return None
    if len(digits) == 10:
        return f"+1{digits}"
    return f"+{digits}"


def combine_location(record: Dict[str, str]) -> Optional[str]:
    parts = []
    for key in LOCATION_FIELDS:
        value = (record.get(key) or "").strip()
        if value and value not in parts:
            parts.append(value)
    return ", ".join(parts) or None


def years_in_business(record: Dict[str, str], today: Optional[date] = None) -> Optional[int]:
    founded = first_value(record, FOUNDED_FIELDS)
    if not founded:
        return None
    match = YEAR.search(founded)
    if not match:
        return None
    current = (today or date.today()).year
    year = int(match.group(0))
    if year > current:
        return None
    return current - year


def is_maps_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    host = (parts.hostname or "").lower()
    path = parts.path.lower()
    if host == "maps.app.goo.gl":
        return True
    if host == "goo.gl" and path.startswith("/maps"):
        return True
    maps_hint = "maps" in host or "/maps" in path or "cid" in parse_qs(parts.query)
    return "google." in host and maps_hint


def detect_maps_url(record: Dict[str, str]) -> Optional[str]:
    for value in record.values():
        for candidate in URL_IN_TEXT.findall(value or ""):
            candidate = candidate.rstrip("),.;")
            if is_maps_url(candidate):
                return candidate
    return None


def clean_lead_record(lead: Lead, today: Optional[date] = None) -> CleanedLead:
    """
    Deterministically normalize a lead.

    Top-level lead fields and raw ingestion fields are merged, raw fields
    winning only where the lead itself is blank.
    """
    record = dict(lead.raw_fields)
    for key in ("company", "industry", "website", "location", "notes"):
        value = getattr(lead, key)
        if value and not (record.get(key) or "").strip():
            record[key] = value

    primary_website = normalize_website(first_value(record, WEBSITE_FIELDS))
    email = first_value(record, EMAIL_FIELDS)
    derived_website = None if primary_website else website_from_email(email)
    location = combine_location(record)
    maps_url = detect_maps_url(record)
    phone = normalize_phone(first_value(record, PHONE_FIELDS))

    provenance = {
        "website": "csv" if primary_website else "derived" if derived_website else "unknown",
        "location": "csv" if location else "unknown",
        "maps_url": "csv" if maps_url else "unknown",
        "phone": "csv" if phone else "unknown",
    }

    return CleanedLead(
        lead_id=first_value(record, ("lead_id", "id")) or lead.id,
        company=first_value(record, ("company_name", "company", "account")) or "Unknown Company",
        industry=first_value(record, INDUSTRY_FIELDS),
        website=primary_website or derived_website,
        location=location,
        notes=record.get("notes") or None,
        email=email,
        phone=phone,
        maps_url=maps_url,
        years_in_business=years_in_business(record, today),
        raw_fields=lead.raw_fields,
        provenance=provenance,
    )


def apply_ai_fields(cleaned: CleanedLead, fields: Dict[str, str]) -> CleanedLead:
    """Overlay model-suggested identity fields, tagging them as derived."""
    updates = {}
    provenance = dict(cleaned.provenance)
    for key, value in fields.items():
        if key == "website":
            value = normalize_website(value)
        elif key == "phone":
            value = normalize_phone(value)
        elif key == "maps_url" and not is_maps_url(value):
            value = None
        if value and value != getattr(cleaned, key):
            updates[key] = value
            provenance[key] = "derived"
    if not updates:
        return cleaned
    return cleaned.model_copy(update={**updates, "provenance": provenance})


async def clean(state: LeadState, services) -> LeadState:
    """Normalize the lead, optionally letting the model tidy identity fields."""
    services.check_cancelled()
    lead = state["lead"]
    trace = state["trace"]
    started = services.clock()

    cleaned = clean_lead_record(lead)
    if state.get("use_cleaner"):
        fields, usage = await services.llm.normalize_lead(cleaned)
        services.usage.add("cleaning", usage)
        if fields:
            cleaned = apply_ai_fields(cleaned, fields)
            logger.info(f"AI cleaner revised {sorted(fields)} for lead {lead.id}")

    trace.cleaned = cleaned
    trace.timings["clean"] = services.clock() - started
    state["cleaned"] = cleaned
    return state
