"""
De-identification engine.

Pattern-based redaction of identifying substrings from free text before it
leaves the device. Pure: no I/O, no state shared between calls.

Passes run in a fixed order, each on the output of the previous one:

    identity -> names -> contact -> addresses -> financial -> dates -> locations

Changing that order changes results. Each match is replaced by a numbered,
category-tagged token (``[NAME_1]``, ``[EMAIL_2]``). Numbering restarts on
every ``deidentify`` call. Tokens are bracket-delimited and contain no
pattern-relevant characters, so they never re-trigger a detector.

Levels (each a superset of the previous):
  MINIMAL         health-insurance numbers, national IDs, payment cards
  FEDERAL         + names, emails, phone numbers
  REGIONAL        + driver's licences, postal codes, street addresses,
                  bank accounts, dates generalized to the year
  FULL_ANONYMOUS  + location names, dates removed outright
"""

import re
from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Optional, Sequence, Tuple

from vault.app.models.deidentification import (
    ComplianceLevel,
    DeidentificationResult,
    IdentifierType,
    RemovedEntity,
)
from vault.app.services.hashing import sha256_text

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_UPPER = "A-ZÀ-ÖØ-Ý"
_LOWER = "a-zß-öø-ÿ"

HEALTH_CARD_PATTERN = re.compile(r"\b[A-Z]{4}\s?\d{8}\b")
NATIONAL_ID_PATTERN = re.compile(r"\b\d{3}[-.\s]?\d{3}[-.\s]?\d{3}\b")
DRIVERS_LICENSE_PATTERN = re.compile(r"\b[A-Z]\d{4}[-\s]?\d{6}[-\s]?\d{2,3}\b")

FULL_NAME_PATTERN = re.compile(rf"\b[{_UPPER}][{_LOWER}]+\s+[{_UPPER}][{_LOWER}]+\b")
COMMON_SURNAMES = (
    "Tremblay", "Gagnon", "Roy", "Côté", "Bouchard", "Gauthier", "Morin",
    "Lavoie", "Fortin", "Gagné", "Ouellet", "Pelletier", "Bélanger",
    "Lévesque", "Bergeron", "Leblanc", "Paquette", "Girard", "Simard",
    "Boucher", "Caron", "Beaulieu", "Cloutier", "Dubé", "Poirier",
)
SURNAME_PATTERN = re.compile(r"\b(?:" + "|".join(map(re.escape, COMMON_SURNAMES)) + r")\b")

EMAIL_PATTERN = re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b")
PHONE_PATTERN = re.compile(
    r"(?<![\w+])(?:\+?1[-.\s]?)?(?:\(\d{3}\)|\d{3})[-.\s]?\d{3}[-.\s]?\d{4}\b"
)

POSTAL_CODE_PATTERN = re.compile(r"\b[A-Z]\d[A-Z]\s?\d[A-Z]\d\b")
STREET_ADDRESS_PATTERN = re.compile(
    r"\b\d{1,5}(?:-\d{1,5})?,?\s+"
    r"(?:"
    rf"(?i:rue|avenue|av\.|boulevard|boul\.|chemin|ch\.|route|rang|place|montée|côte)"
    rf"\s+[\w{_UPPER}{_LOWER}'’.-]+(?:\s+[{_UPPER}][\w{_LOWER}'’.-]*)*"
    r"|"
    rf"(?:[{_UPPER}][\w{_LOWER}'’-]*\s+){{1,3}}"
    r"(?:Street|St|Avenue|Ave|Road|Rd|Boulevard|Blvd|Drive|Dr|Lane|Ln|Way|Court|Ct)\b\.?"
    r")"
)

PAYMENT_CARD_PATTERN = re.compile(r"\b(?:\d{4}[-.\s]?){3}\d{4}\b")
BANK_ACCOUNT_PATTERN = re.compile(r"\b\d{5}[-\s]\d{3}[-\s]\d{7,12}\b")

_EN_MONTHS = (
    "January|February|March|April|May|June|July|August|September|October|November|December"
)
_FR_MONTHS = "janvier|février|fevrier|mars|avril|mai|juin|juillet|août|aout|septembre|octobre|novembre|décembre|decembre"
DATE_PATTERNS = (
    re.compile(r"\b\d{4}[/.-]\d{1,2}[/.-]\d{1,2}\b"),
    re.compile(r"\b\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}\b"),
    re.compile(rf"\b(?:{_EN_MONTHS})\s+\d{{1,2}}(?:st|nd|rd|th)?,?\s+\d{{4}}\b"),
    re.compile(rf"\b\d{{1,2}}\s+(?:{_EN_MONTHS}),?\s+\d{{4}}\b"),
    re.compile(rf"\b(?:1er|\d{{1,2}})\s+(?:{_FR_MONTHS})\s+\d{{4}}\b", re.IGNORECASE),
    re.compile(rf"\b(?:{_FR_MONTHS})\s+\d{{1,2}},?\s+\d{{4}}\b", re.IGNORECASE),
)
_YEAR_PATTERN = re.compile(r"(?<!\d)(\d{4})(?!\d)")

CITIES = (
    "Montréal", "Montreal", "Québec", "Quebec", "Laval", "Gatineau",
    "Longueuil", "Sherbrooke", "Saguenay", "Lévis", "Levis",
    "Trois-Rivières", "Trois-Rivieres", "Terrebonne", "Rimouski",
)
LOCATION_PATTERN = re.compile(
    r"\b(?:" + "|".join(map(re.escape, sorted(CITIES, key=len, reverse=True))) + r")\b"
)


@dataclass(frozen=True)
class Detector:
    entity_type: IdentifierType
    label: str
    patterns: Tuple["re.Pattern[str]", ...]
    confidence: float


HEALTH_CARD = Detector(IdentifierType.HEALTH_INSURANCE_NUMBER, "HEALTH_CARD", (HEALTH_CARD_PATTERN,), 0.95)
NATIONAL_ID = Detector(IdentifierType.NATIONAL_ID, "SIN", (NATIONAL_ID_PATTERN,), 0.8)
DRIVERS_LICENSE = Detector(IdentifierType.DRIVERS_LICENSE, "LICENSE", (DRIVERS_LICENSE_PATTERN,), 0.9)
NAME = Detector(IdentifierType.NAME, "NAME", (FULL_NAME_PATTERN, SURNAME_PATTERN), 0.6)
EMAIL = Detector(IdentifierType.EMAIL, "EMAIL", (EMAIL_PATTERN,), 0.95)
PHONE = Detector(IdentifierType.PHONE, "PHONE", (PHONE_PATTERN,), 0.9)
POSTAL_CODE = Detector(IdentifierType.POSTAL_CODE, "POSTAL", (POSTAL_CODE_PATTERN,), 0.95)
STREET_ADDRESS = Detector(IdentifierType.STREET_ADDRESS, "ADDRESS", (STREET_ADDRESS_PATTERN,), 0.85)
PAYMENT_CARD = Detector(IdentifierType.PAYMENT_CARD, "CARD", (PAYMENT_CARD_PATTERN,), 0.85)
BANK_ACCOUNT = Detector(IdentifierType.BANK_ACCOUNT, "ACCOUNT", (BANK_ACCOUNT_PATTERN,), 0.75)
DATE_GENERALIZED = Detector(IdentifierType.DATE, "DATE_GENERALIZED", DATE_PATTERNS, 0.7)
DATE_REMOVED = Detector(IdentifierType.DATE, "DATE", DATE_PATTERNS, 0.8)
LOCATION = Detector(IdentifierType.LOCATION, "LOCATION", (LOCATION_PATTERN,), 0.9)

# Fixed pass order. Within a pass, detectors run top to bottom.
PASSES: Tuple[Tuple[str, Tuple[Detector, ...]], ...] = (
    ("identity", (HEALTH_CARD, NATIONAL_ID, DRIVERS_LICENSE)),
    ("names", (NAME,)),
    ("contact", (EMAIL, PHONE)),
    ("addresses", (POSTAL_CODE, STREET_ADDRESS)),
    ("financial", (PAYMENT_CARD, BANK_ACCOUNT)),
    ("dates", (DATE_GENERALIZED, DATE_REMOVED)),
    ("locations", (LOCATION,)),
)

_MINIMAL = frozenset({HEALTH_CARD, NATIONAL_ID, PAYMENT_CARD})
_FEDERAL = _MINIMAL | {NAME, EMAIL, PHONE}
_REGIONAL_BASE = _FEDERAL | {DRIVERS_LICENSE, POSTAL_CODE, STREET_ADDRESS, BANK_ACCOUNT}

LEVEL_DETECTORS: Dict[ComplianceLevel, FrozenSet[Detector]] = {
    ComplianceLevel.MINIMAL: _MINIMAL,
    ComplianceLevel.FEDERAL: _FEDERAL,
    ComplianceLevel.REGIONAL: _REGIONAL_BASE | {DATE_GENERALIZED},
    ComplianceLevel.FULL_ANONYMOUS: _REGIONAL_BASE | {DATE_REMOVED, LOCATION},
}

# Extra sweeps over the output in case a replacement exposed a new match.
_MAX_SWEEPS = 3


def detectors_for(level: ComplianceLevel) -> List[Detector]:
    """Active detectors for ``level`` in pass order."""
    active = LEVEL_DETECTORS[ComplianceLevel(level)]
    return [detector for _, group in PASSES for detector in group if detector in active]


class _Redaction:
    """Working text plus, per character, its offset in the original (None for token text)."""

    def __init__(self, text: str):
        self.text = text
        self.origin: List[Optional[int]] = list(range(len(text)))
        self.counters: Dict[IdentifierType, int] = {}
        self.entities: List[RemovedEntity] = []

    def _next_token(self, detector: Detector, matched: str) -> str:
        if detector is DATE_GENERALIZED:
            year = _YEAR_PATTERN.search(matched)
            return f"[DATE_GENERALIZED_{year.group(1)}]" if year else "[DATE_GENERALIZED]"
        count = self.counters.get(detector.entity_type, 0) + 1
        self.counters[detector.entity_type] = count
        return f"[{detector.label}_{count}]"

    def _original_span(self, start: int, end: int) -> Tuple[int, int]:
        known = [offset for offset in self.origin[start:end] if offset is not None]
        if not known:
            return start, end
        return known[0], known[-1] + 1

    def apply(self, detector: Detector) -> None:
        for pattern in detector.patterns:
            matches = list(pattern.finditer(self.text))
            if not matches:
                continue

            pieces: List[str] = []
            origin: List[Optional[int]] = []
            cursor = 0
            for match in matches:
                start, end = match.span()
                token = self._next_token(detector, match.group(0))
                original_start, original_end = self._original_span(start, end)
                self.entities.append(
                    RemovedEntity(
                        entity_type=detector.entity_type,
                        original_text=match.group(0),
                        start=original_start,
                        end=original_end,
                        replacement=token,
                        confidence=detector.confidence,
                    )
                )
                pieces.append(self.text[cursor:start])
                origin.extend(self.origin[cursor:start])
                pieces.append(token)
                origin.extend([None] * len(token))
                cursor = end

            pieces.append(self.text[cursor:])
            origin.extend(self.origin[cursor:])
            self.text = "".join(pieces)
            self.origin = origin


def _first_match(text: str, detectors: Sequence[Detector]) -> Optional[Detector]:
    for detector in detectors:
        if any(pattern.search(text) for pattern in detector.patterns):
            return detector
    return None


class DeidentificationEngine:
    """
    Stateless de-identification service.

    Usage:
        engine = DeidentificationEngine()
        result = engine.deidentify(text, ComplianceLevel.FEDERAL)
        assert engine.verify_compliance(result.cleaned_text, ComplianceLevel.FEDERAL)
    """

    def deidentify(self, text: str, level: ComplianceLevel) -> DeidentificationResult:
        level = ComplianceLevel(level)
        detectors = detectors_for(level)
        redaction = _Redaction(text)

        for detector in detectors:
            redaction.apply(detector)

        for _ in range(_MAX_SWEEPS):
            remaining = _first_match(redaction.text, detectors)
            if remaining is None:
                break
            for detector in detectors:
                redaction.apply(detector)

        return DeidentificationResult(
            original_hash=sha256_text(text),
            cleaned_text=redaction.text,
            removed_entities=redaction.entities,
            compliance_level=level,
        )

    def verify_compliance(self, text: str, level: ComplianceLevel) -> bool:
        """True when no detector targeted by ``level`` matches ``text``."""
        return _first_match(text, detectors_for(ComplianceLevel(level))) is None

    def remaining_categories(self, text: str, level: ComplianceLevel) -> List[IdentifierType]:
        """Categories that still match, in pass order, without duplicates."""
        found: List[IdentifierType] = []
        for detector in detectors_for(ComplianceLevel(level)):
            if detector.entity_type in found:
                continue
            if any(pattern.search(text) for pattern in detector.patterns):
                found.append(detector.entity_type)
        return found
