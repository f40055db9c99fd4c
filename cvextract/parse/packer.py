"""
Line Corpus Builder.

Flattens a document layout (pages -> lines, key/value pairs, detected
sections) into a token-budgeted, line-identified corpus for a single LLM
call. Every line gets a stable id ``p<page>_l<index>`` assigned once, here,
and never renumbered afterwards; completeness accounting and evidence
references all key on these ids.

Grouping:
1. Header lines: the first N lines of page 1
2. Contact lines: any line matching an e-mail, phone or URL pattern
3. Sections: a line matching the section-header vocabulary opens a named
   section; following lines are appended until the next header
4. Key/value pairs: kept only when the key matches the field allowlist

Token budgeting pares back low-value sections (skills, certificates) first,
then the remaining sections, and always terminates: when every section is at
its floor the overage is accepted.

Usage:
    from cvextract.parse import CorpusPacker

    packer = CorpusPacker()
    corpus = packer.pack(document_rep)
    print(corpus.estimated_tokens, len(corpus.all_lines()))

    corpus = packer.pack_raw_text(cv_text, page_count=2)
"""

import logging
import math
import re
from typing import Optional

import tiktoken

from ..config import PackerConfig
from .models import (
    DocumentLine,
    DocumentRep,
    PackedCorpus,
    PackedKvp,
    PackedLine,
    PackedSection,
)

logger = logging.getLogger(__name__)


TIKTOKEN_ENCODING = "cl100k_base"


# =============================================================================
# Patterns
# =============================================================================

EMAIL_PATTERN = re.compile(r"[a-zA-Z0-9._%+-]+@[a-zA-Z0-9.-]+\.[a-zA-Z]{2,}")
PHONE_PATTERN = re.compile(r"(\+?\d{1,3}[-.\s]?)?\(?\d{2,4}\)?[-.\s]?\d{3,4}[-.\s]?\d{3,4}")
URL_PATTERN = re.compile(r"https?://[^\s]+|linkedin\.com|xing\.com|github\.com", re.IGNORECASE)

KEY_VALUE_LINE = re.compile(r"^([^:]+):\s*(.+)$")

SECTION_HEADERS: dict[str, list[str]] = {
    "experience": [
        r"^berufserfahrung$",
        r"^work\s*experience$",
        r"^experience$",
        r"^employment\s*history$",
        r"^professional\s*experience$",
        r"^arbeitserfahrung$",
        r"^berufliche\s*laufbahn$",
        r"^karriere$",
    ],
    "education": [
        r"^ausbildung$",
        r"^education$",
        r"^academic\s*background$",
        r"^schulbildung$",
        r"^studium$",
        r"^qualifikationen$",
        r"^academic$",
    ],
    "skills": [
        r"^skills$",
        r"^fähigkeiten$",
        r"^kenntnisse$",
        r"^kompetenzen$",
        r"^technical\s*skills$",
        r"^it[-\s]*kenntnisse$",
        r"^expertisen?$",
    ],
    "languages": [
        r"^sprachen$",
        r"^languages$",
        r"^sprachkenntnisse$",
        r"^language\s*skills$",
    ],
    "certificates": [
        r"^zertifikate$",
        r"^certifications?$",
        r"^certificates$",
        r"^weiterbildung$",
    ],
    "profile": [
        r"^profil$",
        r"^profile$",
        r"^summary$",
        r"^zusammenfassung$",
        r"^about\s*me$",
        r"^über\s*mich$",
    ],
}

_COMPILED_SECTION_HEADERS = {
    name: [re.compile(p, re.IGNORECASE) for p in patterns]
    for name, patterns in SECTION_HEADERS.items()
}

RELEVANT_KVP_KEYS = [
    "name", "vorname", "nachname", "first name", "last name", "firstname", "lastname",
    "email", "e-mail", "mail",
    "phone", "telefon", "tel", "mobile", "handy", "mobil",
    "address", "adresse", "street", "strasse", "straße",
    "city", "stadt", "ort", "plz", "zip", "postal",
    "nationality", "nationalität", "staatsangehörigkeit",
    "date of birth", "geburtsdatum", "birthday",
    "linkedin", "xing", "github",
]

# Trimmed first under the token cap
LOW_VALUE_SECTIONS = ("skills", "certificates")

# Ascending value: earlier sections are trimmed first in the second pass
SECTION_VALUE_ORDER = [
    "certificates",
    "skills",
    "profile",
    "languages",
    "content",
    "education",
    "experience",
]

RAW_TEXT_SECTION = "content"


# =============================================================================
# Helpers
# =============================================================================

def line_id(page: int, index: int) -> str:
    """Stable line identifier for the index-th line on a page."""
    return f"p{page}_l{index}"


def kvp_line_id(key: str) -> str:
    return "kvp_" + re.sub(r"\s+", "_", key.strip().lower())


def is_contact_line(text: str) -> bool:
    return bool(
        EMAIL_PATTERN.search(text)
        or PHONE_PATTERN.search(text)
        or URL_PATTERN.search(text)
    )


def detect_section_type(text: str) -> Optional[str]:
    """Return the section name if the line is a section header."""
    normalized = text.strip()
    for section, patterns in _COMPILED_SECTION_HEADERS.items():
        if any(p.search(normalized) for p in patterns):
            return section
    return None


def is_relevant_key(key: str) -> bool:
    normalized = key.strip().lower()
    return any(k in normalized for k in RELEVANT_KVP_KEYS)


def estimate_tokens(text: str, chars_per_token: float = 3.5) -> int:
    """Character-length token heuristic."""
    return math.ceil(len(text) / chars_per_token)


# =============================================================================
# Packer
# =============================================================================

class CorpusPacker:
    """
    Builds PackedCorpus objects from layout results or raw text.

    Limits come from PackerConfig; the token estimator is either the
    character heuristic or tiktoken's cl100k_base encoding.
    """

    def __init__(self, config: Optional[PackerConfig] = None):
        self.config = config or PackerConfig()
        self._tokenizer = None
        if self.config.token_estimator == "tiktoken":
            self._tokenizer = tiktoken.get_encoding(TIKTOKEN_ENCODING)

    def count_tokens(self, text: str) -> int:
        """Count tokens in text."""
        if self._tokenizer is not None:
            return len(self._tokenizer.encode(text))
        return estimate_tokens(text, self.config.chars_per_token)

    # -------------------------------------------------------------------------
    # Layout input
    # -------------------------------------------------------------------------

    def pack(self, document: DocumentRep) -> PackedCorpus:
        """Pack a layout analysis result."""
        cfg = self.config

        all_lines: list[PackedLine] = []
        for page in document.pages:
            for idx, line in enumerate(page.lines):
                all_lines.append(self._packed(line, page.page_number, idx))

        header_lines = [l for l in all_lines if l.page == 1][: cfg.header_lines_limit]

        contact_lines: list[PackedLine] = []
        for line in all_lines:
            if len(contact_lines) >= cfg.contact_lines_limit:
                break
            if is_contact_line(line.text):
                contact_lines.append(line)

        kvp = self._relevant_pairs(
            (kv.key, kv.value, kv.page, kv.confidence)
            for kv in document.key_value_pairs
        )

        sections: list[PackedSection] = []
        current: Optional[PackedSection] = None
        total_section_lines = 0
        for line in all_lines:
            section_type = detect_section_type(line.text)
            if section_type:
                if current is not None and current.lines:
                    sections.append(current)
                current = PackedSection(name=section_type)
                continue
            if current is not None and total_section_lines < cfg.section_lines_limit:
                current.lines.append(line)
                total_section_lines += 1
        if current is not None and current.lines:
            sections.append(current)

        corpus = PackedCorpus(
            header_lines=header_lines,
            contact_lines=contact_lines,
            kvp=kvp,
            sections=sections,
            detected_languages=[l.locale for l in document.detected_languages],
            total_pages=document.total_pages,
            token_hard_cap=cfg.token_hard_cap,
        )
        corpus.estimated_tokens = self._estimate(corpus)

        if corpus.estimated_tokens > cfg.token_hard_cap:
            self._truncate(corpus)

        logger.debug(
            f"Packed {len(all_lines)} lines into {len(corpus.all_lines())} corpus lines "
            f"({corpus.estimated_tokens} est. tokens, {len(sections)} sections)"
        )
        return corpus

    # -------------------------------------------------------------------------
    # Raw text input
    # -------------------------------------------------------------------------

    def pack_raw_text(self, text: str, page_count: int = 1) -> PackedCorpus:
        """
        Pack plain text (no layout information).

        Everything lives on page 1. Header = first lines up to
        raw_text_header_lines; when no section header is found, the lines
        after the header go into a generic "content" section.
        """
        cfg = self.config
        header_limit = min(cfg.header_lines_limit, cfg.raw_text_header_lines)
        texts = [t.strip() for t in text.split("\n") if t.strip()]

        lines = [PackedLine(line_id=line_id(1, idx), page=1, text=t) for idx, t in enumerate(texts)]

        header_lines = lines[:header_limit]
        contact_lines = [l for l in lines if is_contact_line(l.text)][: cfg.contact_lines_limit]

        pairs = []
        for line in lines:
            match = KEY_VALUE_LINE.match(line.text)
            if match and match.group(1).strip() and match.group(2).strip():
                pairs.append((match.group(1).strip(), match.group(2).strip(), 1, 1.0))
        kvp = self._relevant_pairs(pairs)

        sections: list[PackedSection] = []
        current: Optional[PackedSection] = None
        total_section_lines = 0
        for line in lines:
            section_type = detect_section_type(line.text)
            if section_type:
                if current is not None and current.lines:
                    sections.append(current)
                current = PackedSection(name=section_type)
            elif current is not None and total_section_lines < cfg.section_lines_limit:
                current.lines.append(line)
                total_section_lines += 1
        if current is not None and current.lines:
            sections.append(current)

        if not sections and len(lines) > header_limit:
            sections.append(
                PackedSection(
                    name=RAW_TEXT_SECTION,
                    lines=lines[header_limit:][: cfg.section_lines_limit],
                )
            )

        corpus = PackedCorpus(
            header_lines=header_lines,
            contact_lines=contact_lines,
            kvp=kvp,
            sections=sections,
            total_pages=page_count,
            token_hard_cap=cfg.token_hard_cap,
        )
        corpus.estimated_tokens = self._estimate(corpus)
        if corpus.estimated_tokens > cfg.token_hard_cap:
            self._truncate(corpus)
        return corpus

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    @staticmethod
    def _packed(line: DocumentLine, page: int, index: int) -> PackedLine:
        return PackedLine(
            line_id=line_id(page, index),
            page=page,
            text=line.text,
            confidence=line.confidence,
        )

    def _relevant_pairs(self, pairs) -> list[PackedKvp]:
        kvp: list[PackedKvp] = []
        used_ids: set[str] = set()
        for key, value, page, confidence in pairs:
            if len(kvp) >= self.config.kvp_limit:
                break
            if not is_relevant_key(key):
                continue
            base_id = kvp_line_id(key)
            candidate = base_id
            n = 2
            while candidate in used_ids:
                candidate = f"{base_id}_{n}"
                n += 1
            used_ids.add(candidate)
            kvp.append(
                PackedKvp(line_id=candidate, key=key, value=value, page=page, confidence=confidence)
            )
        return kvp

    def _estimate(self, corpus: PackedCorpus) -> int:
        total = sum(self.count_tokens(l.text) for l in corpus.header_lines)
        total += sum(self.count_tokens(l.text) for l in corpus.contact_lines)
        total += sum(self.count_tokens(kv.key + kv.value) for kv in corpus.kvp)
        total += sum(
            self.count_tokens(l.text) for section in corpus.sections for l in section.lines
        )
        return total + self.config.prompt_overhead_tokens

    def _truncate(self, corpus: PackedCorpus) -> None:
        """Pare back sections until under the cap or every section hits its floor."""
        cfg = self.config
        excess = corpus.estimated_tokens - cfg.token_hard_cap
        removed: list[PackedLine] = []

        for section in reversed(corpus.sections):
            if section.name not in LOW_VALUE_SECTIONS:
                continue
            while len(section.lines) > cfg.low_value_floor and excess > 0:
                line = section.lines.pop()
                removed.append(line)
                excess -= self.count_tokens(line.text)

        def value_rank(section: PackedSection) -> int:
            if section.name in SECTION_VALUE_ORDER:
                return SECTION_VALUE_ORDER.index(section.name)
            return len(SECTION_VALUE_ORDER)

        for section in sorted(corpus.sections, key=value_rank):
            while len(section.lines) > cfg.section_floor and excess > 0:
                line = section.lines.pop()
                removed.append(line)
                excess -= self.count_tokens(line.text)

        before = corpus.estimated_tokens
        corpus.estimated_tokens = self._estimate(corpus)

        # Lines also kept as header/contact lines are still in the corpus
        remaining = {l.line_id for l in corpus.all_lines()}
        corpus.truncated_line_ids = [l.line_id for l in removed if l.line_id not in remaining]

        if corpus.estimated_tokens > cfg.token_hard_cap:
            logger.warning(
                f"Corpus still over token cap after truncation "
                f"({corpus.estimated_tokens} > {cfg.token_hard_cap}), accepting overage"
            )
        else:
            logger.info(
                f"Truncated corpus from {before} to {corpus.estimated_tokens} est. tokens "
                f"({len(removed)} lines removed)"
            )
