"""
Service Address Normalization and Matching

Parses free-text service addresses into street/city/state/zip, normalizes them
(case, punctuation, unit designators, street suffix abbreviations) and scores
two addresses for equivalence. Used to merge new approvals into an existing
job at the same location.

Matching is biased toward precision: a false merge attaches one customer's work
to the wrong job, while a missed merge only creates a duplicate job.
"""

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Optional

from rapidfuzz import fuzz

logger = logging.getLogger(__name__)

HIGH_CONFIDENCE_SCORE = 0.9
MEDIUM_CONFIDENCE_SCORE = 0.8
REVIEW_MIN_SCORE = 0.7

# Street line carries most of the signal; city/state/zip mostly confirm it
STREET_WEIGHT = 0.7
LOCALITY_WEIGHT = 0.3

US_STATES = {
    'AL': 'Alabama', 'AK': 'Alaska', 'AZ': 'Arizona', 'AR': 'Arkansas', 'CA': 'California',
    'CO': 'Colorado', 'CT': 'Connecticut', 'DE': 'Delaware', 'FL': 'Florida', 'GA': 'Georgia',
    'HI': 'Hawaii', 'ID': 'Idaho', 'IL': 'Illinois', 'IN': 'Indiana', 'IA': 'Iowa',
    'KS': 'Kansas', 'KY': 'Kentucky', 'LA': 'Louisiana', 'ME': 'Maine', 'MD': 'Maryland',
    'MA': 'Massachusetts', 'MI': 'Michigan', 'MN': 'Minnesota', 'MS': 'Mississippi', 'MO': 'Missouri',
    'MT': 'Montana', 'NE': 'Nebraska', 'NV': 'Nevada', 'NH': 'New Hampshire', 'NJ': 'New Jersey',
    'NM': 'New Mexico', 'NY': 'New York', 'NC': 'North Carolina', 'ND': 'North Dakota', 'OH': 'Ohio',
    'OK': 'Oklahoma', 'OR': 'Oregon', 'PA': 'Pennsylvania', 'RI': 'Rhode Island', 'SC': 'South Carolina',
    'SD': 'South Dakota', 'TN': 'Tennessee', 'TX': 'Texas', 'UT': 'Utah', 'VT': 'Vermont',
    'VA': 'Virginia', 'WA': 'Washington', 'WV': 'West Virginia', 'WI': 'Wisconsin', 'WY': 'Wyoming',
    'DC': 'District of Columbia'
}

# Reverse mapping for lookups
STATE_NAMES_TO_ABBREV = {v.lower(): k for k, v in US_STATES.items()}

STREET_SUFFIXES = {
    "street": "st",
    "avenue": "ave",
    "boulevard": "blvd",
    "road": "rd",
    "drive": "dr",
    "lane": "ln",
    "court": "ct",
    "circle": "cir",
    "place": "pl",
    "parkway": "pkwy",
    "terrace": "ter",
    "highway": "hwy",
    "trail": "trl",
    "square": "sq",
    "crossing": "xing",
    "extension": "ext",
    "mountain": "mtn",
    "point": "pt",
}

DIRECTIONALS = {
    "north": "n",
    "south": "s",
    "east": "e",
    "west": "w",
    "northeast": "ne",
    "northwest": "nw",
    "southeast": "se",
    "southwest": "sw",
}

COUNTRY_WORDS = {"usa", "us", "u.s.a", "u.s", "united states", "united states of america"}

_UNIT_RE = re.compile(
    r"(?:\b(?:apt|apartment|unit|suite|ste|bldg|building|fl|floor|rm|room|lot|spc|space)\b\.?\s*#?|#)"
    r"\s*[a-z0-9][a-z0-9-]*",
    re.IGNORECASE,
)
_UNIT_ONLY_RE = re.compile(rf"\s*{_UNIT_RE.pattern}\s*", re.IGNORECASE)
_ZIP_RE = re.compile(r"\d{5}(?:-\d{4})?")
_PUNCTUATION_RE = re.compile(r"[^\w\s-]")
_STREET_NUMBER_RE = re.compile(r"^\d+[a-z]?\b")
_SUFFIX_ABBREVS = set(STREET_SUFFIXES.values())
_DIRECTIONAL_ABBREVS = set(DIRECTIONALS.values())


@dataclass(frozen=True)
class PostalAddress:
    """Address components with original casing (what tax lookups and billing need)"""

    street: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""


@dataclass(frozen=True)
class CanonicalAddress:
    """Lowercased, abbreviation-standardized address used for comparisons"""

    street: str = ""
    city: str = ""
    state: str = ""
    zip: str = ""

    @property
    def locality(self) -> str:
        return " ".join(p for p in (self.city, self.state, self.zip) if p)

    @property
    def full(self) -> str:
        return " ".join(p for p in (self.street, self.locality) if p)


@dataclass(frozen=True)
class StreetParts:
    number: str = ""
    pre_directional: str = ""
    name: str = ""
    suffix: str = ""
    post_directional: str = ""


@dataclass(frozen=True)
class AddressMatch:
    job_id: int
    job_address: str
    score: float  # 0.0 to 1.0
    method: str  # exact, fuzzy
    confidence: str  # high, medium, low


def state_abbrev(value: Optional[str]) -> str:
    """Return the two-letter abbreviation for a state name or abbreviation, else ''"""
    if not value:
        return ""
    cleaned = value.strip().rstrip(".").upper()
    if cleaned in US_STATES:
        return cleaned
    return STATE_NAMES_TO_ABBREV.get(cleaned.lower(), "")


def _peel_state_zip(text: str, require_zip: bool = False) -> tuple[str, str, str]:
    """Split trailing 'NC 28801' / 'North Carolina' off a chunk of address text"""
    tokens = text.split()
    zip_code = ""
    state = ""

    if tokens and _ZIP_RE.fullmatch(tokens[-1]):
        zip_code = tokens.pop()[:5]
    elif require_zip:
        return text, "", ""

    # Multi-word names first ("district of columbia", "north carolina")
    for size in (3, 2, 1):
        if len(tokens) >= size:
            abbrev = state_abbrev(" ".join(tokens[-size:]))
            if abbrev:
                state = abbrev
                del tokens[-size:]
                break

    return " ".join(tokens), state, zip_code


def parse_address(address: Optional[str]) -> PostalAddress:
    """
    Best-effort split of a single-line address into components.

    Expected shape is "214 Alta Vista Dr, Candler, NC 28715" but any comma layout,
    missing parts or a comma-less line degrade to whatever can be recovered.
    """
    if not address or not isinstance(address, str):
        return PostalAddress()

    parts = [p.strip() for p in address.split(",") if p.strip()]
    if parts and parts[-1].lower().rstrip(".") in COUNTRY_WORDS:
        parts.pop()
    # Unit designators on their own line ("Apt 4") carry no location info
    parts = [p for p in parts if not _UNIT_ONLY_RE.fullmatch(p)]
    if not parts:
        return PostalAddress()

    if len(parts) == 1:
        street, state, zip_code = _peel_state_zip(parts[0], require_zip=True)
        return PostalAddress(street=street, state=state, zip=zip_code)

    head, state, zip_code = _peel_state_zip(parts[-1])
    if head:
        parts[-1] = head
    else:
        parts.pop()

    # State and ZIP may be split across the last two parts ("Candler, NC, 28715")
    if not state and len(parts) > 1:
        head, state, _ = _peel_state_zip(parts[-1])
        if state:
            if head:
                parts[-1] = head
            else:
                parts.pop()

    street = " ".join(parts[:-1]) if len(parts) > 1 else parts[0]
    city = parts[-1] if len(parts) > 1 else ""
    return PostalAddress(street=street, city=city, state=state, zip=zip_code)


def _clean(text: str) -> str:
    text = _PUNCTUATION_RE.sub(" ", text.lower())
    return re.sub(r"\s+", " ", text).strip()


def _normalize_street(street: str) -> str:
    street = _UNIT_RE.sub(" ", street.lower())
    words = _clean(street).split()
    words = [DIRECTIONALS.get(w, STREET_SUFFIXES.get(w, w)) for w in words]
    # Leading article ("The Commons") is noise
    if len(words) > 1 and words[0] in ("the", "a", "an"):
        words = words[1:]
    return " ".join(words)


def normalize_address(address: Optional[str]) -> CanonicalAddress:
    """Canonical form for comparisons. Never raises."""
    try:
        parsed = parse_address(address)
        return CanonicalAddress(
            street=_normalize_street(parsed.street),
            city=_clean(parsed.city),
            state=parsed.state.lower(),
            zip=parsed.zip,
        )
    except Exception as e:  # Malformed input degrades to an empty address
        logger.warning(f"⚠️ Could not normalize address {address!r}: {e}")
        return CanonicalAddress()


def split_street(street: str) -> StreetParts:
    """'10 n market st' -> number '10', pre 'n', name 'market', suffix 'st'"""
    words = street.split()
    number = words.pop(0) if words and _STREET_NUMBER_RE.fullmatch(words[0]) else ""

    post_directional = ""
    if len(words) > 1 and words[-1] in _DIRECTIONAL_ABBREVS:
        post_directional = words.pop()
    suffix = ""
    if len(words) > 1 and words[-1] in _SUFFIX_ABBREVS:
        suffix = words.pop()
    pre_directional = ""
    if len(words) > 1 and words[0] in _DIRECTIONAL_ABBREVS:
        pre_directional = words.pop(0)

    return StreetParts(
        number=number,
        pre_directional=pre_directional,
        name=" ".join(words),
        suffix=suffix,
        post_directional=post_directional,
    )


def _locality_score(a: CanonicalAddress, b: CanonicalAddress) -> float:
    """
    City similarity, confirmed by ZIP when both sides have one.

    A missing city only passes when both ZIPs agree; a lone state never
    confirms a locality.
    """
    if a.state and b.state and a.state != b.state:
        return 0.0

    city_score = fuzz.ratio(a.city, b.city) / 100.0 if a.city and b.city else None
    zip_score = (1.0 if a.zip == b.zip else 0.0) if a.zip and b.zip else None
    if city_score is None and zip_score != 1.0:
        return 0.0

    known = [s for s in (city_score, zip_score) if s is not None]
    return sum(known) / len(known)


def score_addresses(a: CanonicalAddress, b: CanonicalAddress) -> float:
    """Similarity in [0, 1] between two canonical addresses"""
    if not a.full or not b.full:
        return 0.0
    if a.full == b.full:
        return 1.0
    if not a.street or not b.street:
        return 0.0

    # House number, directionals and suffix must agree exactly; only the name is fuzzy
    parts_a, parts_b = split_street(a.street), split_street(b.street)
    if (
        parts_a.number != parts_b.number
        or parts_a.pre_directional != parts_b.pre_directional
        or parts_a.suffix != parts_b.suffix
        or parts_a.post_directional != parts_b.post_directional
    ):
        return 0.0

    street_score = fuzz.ratio(parts_a.name, parts_b.name) / 100.0
    return round(STREET_WEIGHT * street_score + LOCALITY_WEIGHT * _locality_score(a, b), 4)


def confidence_for(score: float) -> str:
    if score >= HIGH_CONFIDENCE_SCORE:
        return "high"
    if score >= MEDIUM_CONFIDENCE_SCORE:
        return "medium"
    return "low"


def _score_jobs(candidate: str, jobs: Iterable[dict]) -> list[AddressMatch]:
    normalized_candidate = normalize_address(candidate)
    if not normalized_candidate.full:
        return []

    scored = []
    for job in jobs:
        job_address = job.get("address") or ""
        normalized_job = normalize_address(job_address)
        if normalized_job.full == normalized_candidate.full:
            scored.append(AddressMatch(job["id"], job_address, 1.0, "exact", "high"))
            continue
        score = score_addresses(normalized_candidate, normalized_job)
        scored.append(AddressMatch(job["id"], job_address, score, "fuzzy", confidence_for(score)))

    # Stable sort keeps caller order (newest job first) on ties
    scored.sort(key=lambda m: m.score, reverse=True)
    return scored


def match_address_to_job(
    candidate: Optional[str],
    jobs: Iterable[dict],
    min_score: float = HIGH_CONFIDENCE_SCORE,
) -> Optional[AddressMatch]:
    """
    Best matching job for an address, or None.

    Args:
        candidate: Free-text address to look up
        jobs: Iterable of {"id": ..., "address": ...}
        min_score: Minimum score for the best match to be returned

    Returns:
        The single highest-scoring match at or above min_score
    """
    if not candidate or not candidate.strip():
        return None

    scored = _score_jobs(candidate, jobs)
    if not scored or scored[0].score < min_score:
        return None
    return scored[0]


def find_all_matches(
    candidate: Optional[str],
    jobs: Iterable[dict],
    min_score: float = REVIEW_MIN_SCORE,
) -> list[AddressMatch]:
    """All matches above a (lower) review threshold, best first"""
    if not candidate or not candidate.strip():
        return []
    return [m for m in _score_jobs(candidate, jobs) if m.score >= min_score]
