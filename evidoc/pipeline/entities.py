"""Entity extraction: dates, amounts, parties, addresses, emails and phones."""

from __future__ import annotations

import logging
import re
from datetime import datetime

from dateutil import parser as date_parser

from .base import call_capability
from .llm import CompletionProvider, parse_json_response
from .types import (
    ExtractedAmount,
    ExtractedDate,
    ExtractedEntities,
    ExtractedParty,
    PartyType,
)

logger = logging.getLogger(__name__)

CONTEXT_CHARS = 30
PARTIES_MAX_CHARS = 6000

_MONTHS = "January|February|March|April|May|June|July|August|September|October|November|December"

DATE_PATTERNS = [
    # MM/DD/YYYY or MM-DD-YYYY
    re.compile(r"\b(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})\b"),
    # YYYY-MM-DD
    re.compile(r"\b(\d{4})-(\d{2})-(\d{2})\b"),
    # January 1, 2024
    re.compile(rf"\b({_MONTHS})\s+(\d{{1,2}}),?\s+(\d{{4}})\b", re.IGNORECASE),
    # 1 January 2024
    re.compile(rf"\b(\d{{1,2}})\s+({_MONTHS})\s+(\d{{4}})\b", re.IGNORECASE),
    # Jan 1, 2024
    re.compile(r"\b(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec)[a-z]*\.?\s+(\d{1,2}),?\s+(\d{4})\b", re.IGNORECASE),
]

AMOUNT_PATTERNS = [
    re.compile(r"\$\s?([\d,]+\.?\d*)"),
    re.compile(r"([\d,]+\.?\d*)\s*(?:USD|dollars?)\b", re.IGNORECASE),
]

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")

PHONE_PATTERNS = [
    re.compile(r"\(\d{3}\)\s?\d{3}[-.\s]?\d{4}"),
    re.compile(r"\b\d{3}[-.\s]\d{3}[-.\s]\d{4}\b"),
    re.compile(r"\+1\s?\d{3}\s?\d{3}\s?\d{4}"),
]

ADDRESS_PATTERN = re.compile(
    r"\b\d{1,6}\s+(?:[A-Z][A-Za-z]*\.?\s+){1,4}"
    r"(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Drive|Dr|Lane|Ln|Way|Court|Ct|Place|Pl|Parkway|Pkwy)\b\.?"
    r"(?:,?\s+(?:Suite|Ste|Apt|Unit)\.?\s*#?\w+)?"
    r"(?:,\s*[A-Z][a-zA-Z]+(?:\s[A-Z][a-zA-Z]+)*)?"
    r"(?:,\s*[A-Z]{2})?"
    r"(?:\s+\d{5}(?:-\d{4})?)?"
)

ORGANIZATION_PATTERN = re.compile(
    r"\b((?:[A-Z][\w&'\-]*\s+){0,4}[A-Z][\w&'\-]*,?\s+"
    r"(?:Inc|LLC|L\.L\.C|Corp|Corporation|Ltd|Limited|LLP|Company|Co|Bank|Group))\b\.?"
)

# Labels match in any case; the name must be capitalized words on the same line
ROLE_LABEL_PATTERN = re.compile(
    r"^[ \t]*(buyer|seller|landlord|tenant|claimant|respondent|customer|vendor|client|"
    r"contractor|employer|employee|bill to|sold to|from|to)[ \t]*:[ \t]*"
    r"(?-i:([A-Z][\w&'.\-]*(?:[ \t]+[A-Z][\w&'.\-]*){0,4}))",
    re.IGNORECASE | re.MULTILINE,
)

_ORG_SUFFIX = re.compile(r"\b(?:Inc|LLC|L\.L\.C|Corp|Corporation|Ltd|Limited|LLP|Company|Co|Bank|Group)\.?$")


def _context(text: str, start: int, end: int) -> str:
    snippet = text[max(0, start - CONTEXT_CHARS):min(len(text), end + CONTEXT_CHARS)]
    return re.sub(r"\s+", " ", snippet).strip()


def normalize_date(raw: str) -> str | None:
    """Normalize a matched date to ISO 8601, or None if it is not a real date."""
    try:
        parsed = date_parser.parse(raw, fuzzy=True, default=datetime(2000, 1, 1))
    except (ValueError, OverflowError):
        return None
    return parsed.date().isoformat()


def extract_dates(text: str) -> list[ExtractedDate]:
    dates = []
    seen = set()
    for pattern in DATE_PATTERNS:
        for match in pattern.finditer(text):
            raw = match.group()
            normalized = normalize_date(raw)
            if normalized and normalized not in seen:
                seen.add(normalized)
                dates.append(ExtractedDate(
                    value=raw,
                    normalized=normalized,
                    context=_context(text, match.start(), match.end()),
                ))
    return dates


def extract_amounts(text: str) -> list[ExtractedAmount]:
    """Dollar amounts, largest first."""
    amounts = []
    seen = set()
    for pattern in AMOUNT_PATTERNS:
        for match in pattern.finditer(text):
            raw = match.group()
            try:
                value = float(match.group(1).replace(",", ""))
            except ValueError:
                continue
            if value > 0 and raw not in seen:
                seen.add(raw)
                amounts.append(ExtractedAmount(
                    value=value,
                    currency="USD",
                    raw=raw,
                    context=_context(text, match.start(), match.end()),
                ))

    amounts.sort(key=lambda a: a.value, reverse=True)
    return amounts


def extract_emails(text: str) -> list[str]:
    return list(dict.fromkeys(m.group().lower() for m in EMAIL_PATTERN.finditer(text)))


def extract_phones(text: str) -> list[str]:
    phones = {}
    for pattern in PHONE_PATTERNS:
        for match in pattern.finditer(text):
            digits = re.sub(r"[^\d+]", "", match.group())
            if len(digits) >= 10:
                phones.setdefault(match.group(), None)
    return list(phones)


def extract_addresses(text: str) -> list[str]:
    return list(dict.fromkeys(re.sub(r"\s+", " ", m.group()).strip() for m in ADDRESS_PATTERN.finditer(text)))


def extract_parties_heuristic(text: str) -> list[ExtractedParty]:
    """Parties from labelled lines and company-name suffixes."""
    parties: dict[str, ExtractedParty] = {}

    for match in ROLE_LABEL_PATTERN.finditer(text):
        role = match.group(1).lower()
        name = match.group(2).strip().rstrip(",.")
        party_type = PartyType.ORGANIZATION if _ORG_SUFFIX.search(name) else PartyType.PERSON
        if role in ("from", "to", "bill to", "sold to"):
            role = None
        parties.setdefault(name.lower(), ExtractedParty(name=name, type=party_type, role=role))

    for match in ORGANIZATION_PATTERN.finditer(text):
        name = match.group(1).strip()
        parties.setdefault(name.lower(), ExtractedParty(name=name, type=PartyType.ORGANIZATION))

    return list(parties.values())


def extract_entities_quick(text: str) -> ExtractedEntities:
    """Regex-only extraction; parties are left empty."""
    return ExtractedEntities(
        dates=extract_dates(text),
        amounts=extract_amounts(text),
        parties=[],
        addresses=extract_addresses(text),
        emails=extract_emails(text),
        phones=extract_phones(text),
    )


def build_parties_prompt(text: str) -> str:
    return f"""Extract the names of parties (people and organizations) mentioned in this document. Focus on parties involved in the dispute, transaction, or agreement.

Document text:
\"\"\"
{text[:PARTIES_MAX_CHARS]}
\"\"\"

Respond with a JSON object with a single key "parties" holding an array of objects, each with:
- "name": The party's name
- "type": Either "person" or "organization"
- "role": Their role if apparent (e.g., "buyer", "seller", "claimant", "defendant", "landlord", "tenant")

Only include parties that are clearly named. Respond with only the JSON object, no other text. If no parties are found, return {{"parties": []}}."""


def parse_parties(data: dict) -> list[ExtractedParty]:
    parties = []
    for p in data.get("parties") or []:
        if not isinstance(p, dict):
            continue
        name = p.get("name")
        if not name or not isinstance(name, str):
            continue
        raw_type = p.get("type")
        party_type = PartyType(raw_type) if raw_type in ("person", "organization") else PartyType.UNKNOWN
        role = p.get("role")
        parties.append(ExtractedParty(name=name.strip(), type=party_type, role=role if isinstance(role, str) else None))
    return parties


class EntityExtractor:
    """Extract structured entities from document text.

    Regex handles dates, amounts, contacts and addresses. Parties come from
    the completion provider when one is configured, otherwise from labelled
    lines and company suffixes.
    """

    def __init__(
        self,
        provider: CompletionProvider | None = None,
        timeout: float | None = 60.0,
        max_retries: int = 0,
    ):
        self.provider = provider
        self.timeout = timeout
        self.max_retries = max_retries

    async def extract(self, text: str) -> ExtractedEntities:
        entities = extract_entities_quick(text)
        entities.parties = await self.extract_parties(text)
        logger.debug(
            "Extracted %d dates, %d amounts, %d parties",
            len(entities.dates), len(entities.amounts), len(entities.parties),
        )
        return entities

    async def extract_parties(self, text: str) -> list[ExtractedParty]:
        if self.provider is None:
            return extract_parties_heuristic(text)

        content = await call_capability(
            self.provider.complete,
            build_parties_prompt(text),
            max_tokens=512,
            stage="entities",
            timeout=self.timeout,
            max_retries=self.max_retries,
        )
        return parse_parties(parse_json_response(content, stage="entities"))
