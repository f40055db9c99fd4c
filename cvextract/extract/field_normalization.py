"""
Field Normalization Utilities

Heuristics and normalizers applied to values the LLM extracted from a CV.
The goal is to catch structurally plausible but semantically wrong answers
(a job title in the name fields, a malformed e-mail) and to bring the rest
into one comparable format.

Key normalizations:
1. Name sanity - job-title and company-name detection, name shape rules
2. Phone - region-aware parsing to E.164 via `phonenumbers`
3. Language level - free text to CEFR (A1-C2) or "native"
4. Canton - Swiss canton names (de/fr/it/en) to two-letter codes
"""

import logging
import re
from dataclasses import dataclass
from typing import Optional, Sequence

import phonenumbers

logger = logging.getLogger(__name__)


# =============================================================================
# NAME SANITY
# =============================================================================

JOB_TITLE_PATTERNS = [
    re.compile(
        r"^(senior|junior|lead|head|chief|principal|staff)?\s*"
        r"(software|system|data|cloud|devops|frontend|backend|fullstack|full-stack|mobile|web|"
        r"platform|infrastructure|security|network|database|ml|ai|machine\s*learning)?\s*"
        r"(engineer|developer|architect|analyst|scientist|specialist|consultant|manager|"
        r"director|administrator|coordinator|designer|lead|owner)$",
        re.IGNORECASE,
    ),
    re.compile(
        r"^(project|product|program|delivery|account|sales|marketing|hr|human\s*resources|"
        r"finance|operations|business|technical|engineering|it|information\s*technology)?\s*"
        r"(manager|director|lead|head|coordinator|specialist|analyst|consultant|officer|executive)$",
        re.IGNORECASE,
    ),
    re.compile(r"^(c[etfio]o|vp|vice\s*president|svp|evp|md|managing\s*director)$", re.IGNORECASE),
    re.compile(r"^(scrum\s*master|agile\s*coach|tech\s*lead|team\s*lead|squad\s*lead)$", re.IGNORECASE),
    re.compile(r"^(intern|trainee|apprentice|working\s*student|werkstudent)$", re.IGNORECASE),
    re.compile(r"^(freelancer|contractor|consultant|berater)$", re.IGNORECASE),
]

COMPANY_PATTERNS = [
    re.compile(r"\b(gmbh|ag|inc|ltd|llc|corp|company|co\.|sarl|sa|kg|ohg|ug|se|plc|nv|bv)\b", re.IGNORECASE),
    re.compile(r"\b(bank|consulting|solutions|services|systems|group|holding|partners|associates)\b", re.IGNORECASE),
]

INVALID_NAME_CHARS = re.compile(r"[@#$%^&*()+=\[\]{}|\\<>/]")

MAX_JOB_TITLE_LENGTH = 50


def is_likely_job_title(text: str) -> bool:
    normalized = text.strip()
    if len(normalized) > MAX_JOB_TITLE_LENGTH:
        return False
    return any(p.search(normalized) for p in JOB_TITLE_PATTERNS)


def is_likely_company_name(text: str) -> bool:
    return any(p.search(text) for p in COMPANY_PATTERNS)


def is_valid_person_name(first_name: Optional[str], last_name: Optional[str]) -> bool:
    """
    Check that a first/last name pair looks like a person.

    Rejects job titles (either part or the combination), company names,
    lengths outside 2-30 (first) / 2-40 (last), digits, and special
    characters.
    """
    if not first_name or not last_name:
        return False

    if is_likely_job_title(first_name) or is_likely_job_title(last_name):
        return False
    if is_likely_job_title(f"{first_name} {last_name}"):
        return False
    if is_likely_company_name(first_name) or is_likely_company_name(last_name):
        return False

    if len(first_name) < 2 or len(last_name) < 2:
        return False
    if len(first_name) > 30 or len(last_name) > 40:
        return False

    if re.search(r"\d", first_name) or re.search(r"\d", last_name):
        return False

    if INVALID_NAME_CHARS.search(first_name) or INVALID_NAME_CHARS.search(last_name):
        return False

    return True


# =============================================================================
# EMAIL / PHONE
# =============================================================================

EMAIL_REGEX = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

DEFAULT_PHONE_REGIONS = ("CH", "DE", "AT", "FR", "IT", "GB", "US")


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_REGEX.match(email))


@dataclass
class PhoneNormalization:
    """Result of trying to normalize a phone number."""
    original: str
    normalized: Optional[str]     # E.164, None when no region accepted it
    region: Optional[str]         # region that parsed it

    @property
    def valid(self) -> bool:
        return self.normalized is not None


def normalize_phone(
    phone: str,
    regions: Sequence[str] = DEFAULT_PHONE_REGIONS,
) -> PhoneNormalization:
    """
    Normalize a phone number to E.164.

    Regions are tried in order; the first one under which the number is
    valid wins. Numbers written with a leading + parse the same under any
    region.

    Example:
        >>> normalize_phone("079 123 45 67").normalized
        '+41791234567'
    """
    for region in regions:
        try:
            parsed = phonenumbers.parse(phone, region)
        except phonenumbers.NumberParseException:
            continue
        if phonenumbers.is_valid_number(parsed):
            formatted = phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
            return PhoneNormalization(original=phone, normalized=formatted, region=region)

    logger.debug(f"Phone {phone!r} not valid in any of {list(regions)}")
    return PhoneNormalization(original=phone, normalized=None, region=None)


# =============================================================================
# LANGUAGE LEVEL (CEFR)
# =============================================================================

CEFR_LEVELS = ["A1", "A2", "B1", "B2", "C1", "C2"]

NATIVE_KEYWORDS = [
    "muttersprache",
    "muttersprachlich",
    "native",
    "mother tongue",
    "langue maternelle",
    "madrelingua",
    "first language",
]

# Longer phrases first so "upper intermediate" wins over "intermediate"
LEVEL_KEYWORDS = [
    ("upper intermediate", "B2"),
    ("gute kenntnisse", "B2"),
    ("verhandlungssicher", "C1"),
    ("grundkenntnisse", "A2"),
    ("fortgeschritten", "C1"),
    ("intermediate", "B1"),
    ("mittelstufe", "B1"),
    ("elementary", "A2"),
    ("proficient", "C1"),
    ("fliessend", "C2"),
    ("fließend", "C2"),
    ("anfänger", "A1"),
    ("beginner", "A1"),
    ("advanced", "C1"),
    ("fluent", "C2"),
    ("basic", "A2"),
]


def parse_cefr_level(text: Optional[str]) -> Optional[str]:
    """Map a free-text proficiency to a CEFR level or "native"."""
    if not text:
        return None

    upper = text.strip().upper()
    for level in CEFR_LEVELS:
        if level in upper:
            return level

    lower = upper.lower()
    if any(kw in lower for kw in NATIVE_KEYWORDS):
        return "native"

    for keyword, level in LEVEL_KEYWORDS:
        if keyword in lower:
            return level

    return None


# =============================================================================
# SWISS CANTONS
# =============================================================================

CANTON_CODES = {
    "AG": ["AARGAU", "ARGOVIE", "ARGOVIA"],
    "AR": ["APPENZELL AUSSERRHODEN"],
    "AI": ["APPENZELL INNERRHODEN"],
    "BL": ["BASEL-LANDSCHAFT", "BASEL LANDSCHAFT", "BÂLE-CAMPAGNE"],
    "BS": ["BASEL-STADT", "BASEL STADT", "BÂLE-VILLE"],
    "BE": ["BERN", "BERNE"],
    "FR": ["FREIBURG", "FRIBOURG", "FRIBORGO"],
    "GE": ["GENF", "GENÈVE", "GENEVA", "GINEVRA"],
    "GL": ["GLARUS", "GLARISE", "GLARONA"],
    "GR": ["GRAUBÜNDEN", "GRISONS", "GRIGIONI"],
    "JU": ["JURA"],
    "LU": ["LUZERN", "LUCERNE", "LUCERNA"],
    "NE": ["NEUENBURG", "NEUCHÂTEL"],
    "NW": ["NIDWALDEN"],
    "OW": ["OBWALDEN"],
    "SH": ["SCHAFFHAUSEN", "SCHAFFHOUSE", "SCIAFFUSA"],
    "SZ": ["SCHWYZ"],
    "SO": ["SOLOTHURN"],
    "SG": ["ST. GALLEN", "SANKT GALLEN", "SAINT-GALL", "SAN GALLO"],
    "TG": ["THURGAU", "THURGOVIE", "TURGOVIA"],
    "TI": ["TESSIN", "TICINO"],
    "UR": ["URI"],
    "VD": ["WAADT", "VAUD"],
    "VS": ["WALLIS", "VALAIS", "VALLESE"],
    "ZG": ["ZUG", "ZOUG", "ZUGO"],
    "ZH": ["ZÜRICH", "ZURICH", "ZURIGO"],
}

_CANTON_LOOKUP = {
    name: code
    for code, names in CANTON_CODES.items()
    for name in [code] + names
}


def normalize_canton(canton: Optional[str]) -> Optional[str]:
    """Two-letter canton code, or None when the name is not a Swiss canton."""
    if not canton:
        return None
    return _CANTON_LOOKUP.get(canton.strip().upper())
