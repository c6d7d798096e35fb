"""
Heuristic Extractor.

Zero-network field extraction from document text: document type by
keyword scoring, date normalization, amount, counterparty name and title.
Every field comes back as a Signal with source=heuristic.
"""
from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from pathlib import Path
from typing import Iterable, Optional

from rapidfuzz.distance import Levenshtein

from docsorter.models.analysis import (
    UNCLASSIFIED,
    FieldName,
    Signal,
    SignalSource,
)

logger = logging.getLogger(__name__)


# =============================================================================
# Document Type Keywords (declaration order breaks ties)
# =============================================================================

DOCUMENT_TYPE_KEYWORDS: dict[str, tuple[str, ...]] = {
    "Invoice": ("invoice", "bill", "billing", "amount due", "payment due", "total amount", "invoice number", "billed to"),
    "Resume": ("resume", "cv", "curriculum vitae", "professional summary", "work experience", "education", "skills", "objective"),
    "Contract": ("contract", "agreement", "terms and conditions", "service agreement", "partnership agreement", "nda", "non-disclosure"),
    "Statement": ("statement", "account statement", "bank statement", "balance", "account balance", "transaction history"),
    "Receipt": ("receipt", "payment received", "thank you for your payment", "transaction", "purchase confirmation"),
    "Proposal": ("proposal", "project proposal", "business proposal", "scope of work", "deliverables"),
    "Report": ("report", "analysis", "findings", "conclusions", "executive summary", "monthly report"),
    "Letter": ("dear", "sincerely", "yours truly", "letter", "correspondence", "memo"),
    "Tax Document": ("tax return", "w-2", "1099", "irs", "federal tax", "state tax", "deduction"),
    "Legal Document": ("legal", "court", "lawsuit", "litigation", "attorney", "lawyer", "legal notice"),
}

KEYWORD_SCORE = 10
TYPE_SCORE_FLOOR = 5
MIN_TYPE_CONFIDENCE = 0.1

# Amounts are only read from documents where a grand total is expected
AMOUNT_DOC_TYPES = frozenset({"Invoice", "Receipt"})

_KEYWORD_PATTERNS: dict[str, list[re.Pattern]] = {
    doc_type: [re.compile(rf"\b{re.escape(keyword)}\b", re.IGNORECASE) for keyword in keywords]
    for doc_type, keywords in DOCUMENT_TYPE_KEYWORDS.items()
}


# =============================================================================
# Date Patterns
# =============================================================================

MONTH_NAMES = {
    "january": 1, "february": 2, "march": 3, "april": 4,
    "may": 5, "june": 6, "july": 7, "august": 8,
    "september": 9, "october": 10, "november": 11, "december": 12,
}
_MONTH_ALTERNATION = "|".join(MONTH_NAMES)

# ISO first so an already-normalized date is never read as MM-DD-YY
ISO_DATE_PATTERN = re.compile(r"\b((?:19|20)\d\d)[/\-.](\d{1,2})[/\-.](\d{1,2})\b")
NUMERIC_DATE_PATTERN = re.compile(r"\b(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4}|\d{2})\b")
MONTH_FIRST_PATTERN = re.compile(rf"\b({_MONTH_ALTERNATION})\s+(\d{{1,2}})(?:st|nd|rd|th)?,?\s+((?:19|20)\d\d)\b", re.IGNORECASE)
DAY_FIRST_PATTERN = re.compile(rf"\b(\d{{1,2}})(?:st|nd|rd|th)?\s+({_MONTH_ALTERNATION}),?\s+((?:19|20)\d\d)\b", re.IGNORECASE)

DATE_CONTEXT_PATTERN = re.compile(r"\b(date|dated|issued|created|due|effective|generated|printed)\b", re.IGNORECASE)


# =============================================================================
# Amount / Client / Title Patterns
# =============================================================================

CURRENCY_AMOUNT_PATTERN = re.compile(r"[$€£]\s?(\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)")
LABELED_AMOUNT_PATTERN = re.compile(
    r"\b(?:total|amount|balance)\b[^\d$€£\n]{0,20}[$€£]?\s?(\d{1,3}(?:,\d{3})+(?:\.\d{1,2})?|\d+(?:\.\d{1,2})?)",
    re.IGNORECASE,
)

_NAME_CAPTURE = r"([A-Za-z0-9&.,'\- ]{2,80})"
CLIENT_PATTERNS = [
    re.compile(rf"\b(bill\s*to|billed\s*to|invoice\s*to|to)\s*[:\-]\s*{_NAME_CAPTURE}", re.IGNORECASE),
    re.compile(rf"\b(from|vendor|supplier|company|client)\s*[:\-]\s*{_NAME_CAPTURE}", re.IGNORECASE),
    re.compile(rf"\b(customer|account\s*holder|payee)\s*[:\-]\s*{_NAME_CAPTURE}", re.IGNORECASE),
]
# Labels that name the counterparty directly rank above generic ones
WEAK_CLIENT_LABELS = frozenset({"to", "from", "company"})

FUZZY_MATCH_THRESHOLD = 0.6
MIN_FUZZY_TOKEN_LENGTH = 4

TITLE_EXCLUDE_PATTERN = re.compile(r"\b(page|of)\b", re.IGNORECASE)
ALL_CAPS_PATTERN = re.compile(r"^[A-Z\s]+$")
BARE_INTEGER_PATTERN = re.compile(r"^\d+$")


# =============================================================================
# Client Directory
# =============================================================================

class ClientDirectory:
    """Ordered, read-only list of known counterparty names."""

    def __init__(self, names: Iterable[str] = ()):
        cleaned = []
        for name in names:
            if isinstance(name, str) and name.strip():
                cleaned.append(name.strip())
        self._names: tuple[str, ...] = tuple(cleaned)

    @property
    def names(self) -> tuple[str, ...]:
        return self._names

    def __len__(self) -> int:
        return len(self._names)

    def __iter__(self):
        return iter(self._names)

    @classmethod
    def from_file(cls, path: Path) -> "ClientDirectory":
        """
        Load the directory from JSON.

        Accepts {"clients": [...]} or a bare list. Returns an empty
        directory if the file is missing or invalid.
        """
        path = Path(path)
        if not path.exists():
            logger.info(f"Client directory not found at {path}, using empty list")
            return cls()

        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Invalid client directory file {path}: {e}")
            return cls()

        names = data.get("clients", []) if isinstance(data, dict) else data
        if not isinstance(names, list):
            logger.error(f"Client directory {path} has no client list")
            return cls()

        directory = cls(names)
        logger.info(f"Loaded {len(directory)} clients from {path}")
        return directory


def similarity(a: str, b: str) -> float:
    """Normalized edit-distance similarity: (longer - distance) / longer."""
    longer = max(len(a), len(b))
    if longer == 0:
        return 1.0
    distance = Levenshtein.distance(a, b)
    return (longer - distance) / longer


def fuzzy_match_client(candidates: Iterable[str], directory: ClientDirectory,
                       threshold: float = FUZZY_MATCH_THRESHOLD) -> Optional[tuple[str, float]]:
    """
    Find the directory entry closest to any of the candidate strings.

    Returns (canonical_name, similarity) for the best score at or above
    threshold. Earlier directory entries win ties.
    """
    if not len(directory):
        return None

    best_name = None
    best_score = 0.0
    lowered = [c.lower() for c in candidates]
    for name in directory:
        target = name.lower()
        for candidate in lowered:
            score = similarity(candidate, target)
            if score > best_score:
                best_score = score
                best_name = name

    if best_name is not None and best_score >= threshold:
        return best_name, best_score
    return None


# =============================================================================
# Field Extraction
# =============================================================================

def normalize_content(text: str) -> str:
    """Collapse all whitespace, including newlines, to single spaces."""
    return re.sub(r"\s+", " ", (text or "").replace("\r", " ")).strip()


def split_lines(text: str) -> list[str]:
    return [line.strip() for line in re.split(r"\r?\n", text or "") if line.strip()]


def classify_type(content: str) -> tuple[str, float]:
    """
    Score each category by keyword presence.

    Each keyword found adds KEYWORD_SCORE. The best total must exceed
    TYPE_SCORE_FLOOR; an equal total never displaces an earlier category.

    Returns:
        (document_type, confidence)
    """
    best_type = UNCLASSIFIED
    best_score = 0
    best_matches = 0

    for doc_type, patterns in _KEYWORD_PATTERNS.items():
        matches = sum(1 for pattern in patterns if pattern.search(content))
        score = matches * KEYWORD_SCORE
        if score > best_score:
            best_type = doc_type
            best_score = score
            best_matches = matches

    if best_score <= TYPE_SCORE_FLOOR:
        return UNCLASSIFIED, 0.0

    confidence = max(min(best_matches / 10, 1.0), MIN_TYPE_CONFIDENCE)
    return best_type, confidence


def _format_date(year: int, month: int, day: int) -> Optional[str]:
    if year < 100:
        year += 2000
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


def _resolve_numeric(a: int, b: int, year: int) -> Optional[str]:
    # A component above 12 must be the day; otherwise month comes first
    if a > 12 and b <= 12:
        return _format_date(year, b, a)
    if a <= 12:
        return _format_date(year, a, b)
    return None


def _date_from_match(pattern: re.Pattern, match: re.Match) -> Optional[str]:
    groups = match.groups()
    try:
        if pattern is ISO_DATE_PATTERN:
            return _format_date(int(groups[0]), int(groups[1]), int(groups[2]))
        if pattern is NUMERIC_DATE_PATTERN:
            return _resolve_numeric(int(groups[0]), int(groups[1]), int(groups[2]))
        if pattern is MONTH_FIRST_PATTERN:
            return _format_date(int(groups[2]), MONTH_NAMES[groups[0].lower()], int(groups[1]))
        if pattern is DAY_FIRST_PATTERN:
            return _format_date(int(groups[2]), MONTH_NAMES[groups[1].lower()], int(groups[0]))
    except (ValueError, KeyError):
        return None
    return None


DATE_PATTERNS = (ISO_DATE_PATTERN, NUMERIC_DATE_PATTERN, MONTH_FIRST_PATTERN, DAY_FIRST_PATTERN)


def find_date(text: str) -> Optional[tuple[str, re.Match]]:
    """Return the first valid date in pattern order, with its match."""
    for pattern in DATE_PATTERNS:
        for match in pattern.finditer(text or ""):
            normalized = _date_from_match(pattern, match)
            if normalized:
                return normalized, match
    return None


def normalize_date(text: str) -> Optional[str]:
    """
    Normalize a date string to YYYY-MM-DD.

    Returns None when no supported pattern yields a valid date.
    """
    found = find_date(text)
    return found[0] if found else None


def extract_date(text: str) -> Optional[Signal]:
    found = find_date(text)
    if not found:
        return None

    value, match = found
    # Confidence depends on a date label appearing on the same line
    line_start = text.rfind("\n", 0, match.start()) + 1
    line_end = text.find("\n", match.end())
    line = text[line_start:line_end if line_end != -1 else len(text)]
    confidence = 0.9 if DATE_CONTEXT_PATTERN.search(line) else 0.7
    return Signal(FieldName.date, value, confidence, SignalSource.heuristic)


def _parse_amount(raw: str) -> Optional[float]:
    try:
        return float(raw.replace(",", ""))
    except ValueError:
        return None


def extract_amount(text: str) -> Optional[Signal]:
    """
    Largest figure among currency tokens and labeled amount phrases.

    The largest figure is taken to be the grand total.
    """
    currency = [_parse_amount(m.group(1)) for m in CURRENCY_AMOUNT_PATTERN.finditer(text)]
    labeled = [_parse_amount(m.group(1)) for m in LABELED_AMOUNT_PATTERN.finditer(text)]
    currency = [a for a in currency if a is not None]
    labeled = [a for a in labeled if a is not None]

    if not currency and not labeled:
        return None

    value = max(currency + labeled)
    confidence = 0.9 if value in labeled else 0.6
    return Signal(FieldName.amount, value, confidence, SignalSource.heuristic)


def extract_labeled_client(lines: list[str]) -> Optional[Signal]:
    for pattern in CLIENT_PATTERNS:
        for line in lines:
            match = pattern.search(line)
            if not match:
                continue
            label = re.sub(r"\s+", " ", match.group(1).lower())
            name = re.sub(r"[^\w\s\-&.,']", "", match.group(2)).strip(" .,-")
            if 2 < len(name) < 100:
                confidence = 0.6 if label in WEAK_CLIENT_LABELS else 0.8
                return Signal(FieldName.client_name, name, confidence, SignalSource.heuristic)
    return None


def _fuzzy_candidates(content: str, directory: ClientDirectory) -> list[str]:
    words = content.split()
    candidates = [w.strip(".,:;()") for w in words if len(w.strip(".,:;()")) >= MIN_FUZZY_TOKEN_LENGTH]
    # Multi-word names are compared against windows of the same width
    widths = {len(name.split()) for name in directory if len(name.split()) > 1}
    for width in sorted(widths):
        for i in range(len(words) - width + 1):
            candidates.append(" ".join(words[i:i + width]))
    return candidates


def extract_client_name(text: str, directory: ClientDirectory) -> Optional[Signal]:
    signal = extract_labeled_client(split_lines(text))
    if signal:
        return signal

    content = normalize_content(text)
    matched = fuzzy_match_client(_fuzzy_candidates(content, directory), directory)
    if matched:
        name, score = matched
        return Signal(FieldName.client_name, name, score, SignalSource.heuristic)
    return None


def extract_title(lines: list[str]) -> Optional[Signal]:
    for index, line in enumerate(lines):
        if not (5 < len(line) < 100):
            continue
        if BARE_INTEGER_PATTERN.match(line) or ALL_CAPS_PATTERN.match(line):
            continue
        if TITLE_EXCLUDE_PATTERN.search(line):
            continue
        confidence = 0.6 if index < 3 else 0.4
        return Signal(FieldName.title, line, confidence, SignalSource.heuristic)
    return None


# =============================================================================
# Extractor
# =============================================================================

@dataclass
class HeuristicResult:
    """All heuristic signals for one document."""

    signals: dict[FieldName, Signal] = field(default_factory=dict)
    overall_confidence: float = 0.0

    @property
    def doc_type(self) -> str:
        signal = self.signals.get(FieldName.type)
        return signal.value if signal else UNCLASSIFIED


class HeuristicExtractor:
    """Runs every field extractor over a document text."""

    def __init__(self, client_directory: Optional[ClientDirectory] = None):
        self.client_directory = client_directory or ClientDirectory()

    def extract(self, text: str) -> HeuristicResult:
        """
        Extract all fields.

        A type signal is always present (Unclassified at 0.0), so the
        overall confidence of a document without a recognizable type is
        pulled down and the AI gate opens.
        """
        result = HeuristicResult()
        if not text or not text.strip():
            result.signals[FieldName.type] = Signal(FieldName.type, UNCLASSIFIED, 0.0, SignalSource.heuristic)
            return result

        content = normalize_content(text)
        lines = split_lines(text)

        doc_type, type_confidence = classify_type(content)
        result.signals[FieldName.type] = Signal(FieldName.type, doc_type, type_confidence, SignalSource.heuristic)

        extractors = [
            (FieldName.date, lambda: extract_date(text)),
            (FieldName.client_name, lambda: extract_client_name(text, self.client_directory)),
            (FieldName.title, lambda: extract_title(lines)),
        ]
        if doc_type in AMOUNT_DOC_TYPES:
            extractors.append((FieldName.amount, lambda: extract_amount(text)))

        for field_name, extractor in extractors:
            try:
                signal = extractor()
            except Exception as e:
                logger.error(f"Heuristic extraction of {field_name.value} failed: {e}")
                signal = None
            if signal is not None:
                result.signals[field_name] = signal

        confidences = [s.confidence for s in result.signals.values()]
        result.overall_confidence = min(max(sum(confidences) / len(confidences), 0.0), 1.0)

        logger.debug(
            f"Heuristics: type={doc_type} ({type_confidence:.2f}), "
            f"fields={[f.value for f in result.signals]}, overall={result.overall_confidence:.2f}"
        )
        return result
