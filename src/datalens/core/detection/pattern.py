"""
Regex pattern strategy.

Runs compiled patterns against sampled values and scales confidence by
the share of samples that matched:

    confidence = base x (0.7 + 0.3 x match_rate)

A sample counts once per PII type even if several patterns of that type
match it (a 10-digit Indian mobile also looks like a US number).
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Pattern, Tuple

from datalens.core.constants import PATTERN_BASE_CONFIDENCE
from datalens.core.types import DetectionMethod, PIICategory, PIIType, Sensitivity

from .base import BaseStrategy, DetectionInput, DetectionResult
from .registry import register_strategy


@dataclass(frozen=True)
class PIIPattern:
    name: str
    category: PIICategory
    pii_type: PIIType
    sensitivity: Sensitivity
    regex: Pattern[str]


PII_PATTERNS: Tuple[PIIPattern, ...] = (
    PIIPattern(
        "email", PIICategory.CONTACT, PIIType.EMAIL, Sensitivity.MEDIUM,
        re.compile(r"^[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}$", re.IGNORECASE),
    ),
    PIIPattern(
        "phone_india", PIICategory.CONTACT, PIIType.PHONE, Sensitivity.MEDIUM,
        re.compile(r"^(?:\+?91[\s\-]?)?[6-9]\d{9}$"),
    ),
    PIIPattern(
        "phone_us", PIICategory.CONTACT, PIIType.PHONE, Sensitivity.MEDIUM,
        re.compile(r"^(?:\+?1[\s.\-]?)?\(?[2-9]\d{2}\)?[\s.\-]?\d{3}[\s.\-]?\d{4}$"),
    ),
    PIIPattern(
        "aadhaar", PIICategory.GOVERNMENT_ID, PIIType.AADHAAR, Sensitivity.CRITICAL,
        re.compile(r"^[2-9]\d{3}[\s\-]?\d{4}[\s\-]?\d{4}$"),
    ),
    PIIPattern(
        "pan", PIICategory.GOVERNMENT_ID, PIIType.PAN, Sensitivity.HIGH,
        re.compile(r"^[A-Z]{5}[0-9]{4}[A-Z]$"),
    ),
    PIIPattern(
        "credit_card", PIICategory.FINANCIAL, PIIType.CREDIT_CARD, Sensitivity.CRITICAL,
        re.compile(
            r"^(?:4\d{3}|5[1-5]\d{2}|3[47]\d{2}|6(?:011|5\d{2}))"
            r"[\s\-]?\d{4}[\s\-]?\d{4}[\s\-]?\d{4}$"
        ),
    ),
    PIIPattern(
        "ssn", PIICategory.GOVERNMENT_ID, PIIType.SSN, Sensitivity.CRITICAL,
        re.compile(r"^\d{3}-\d{2}-\d{4}$"),
    ),
    PIIPattern(
        "ip_v4", PIICategory.BEHAVIORAL, PIIType.IP_ADDRESS, Sensitivity.LOW,
        re.compile(
            r"^(?:(?:25[0-5]|2[0-4]\d|[01]?\d\d?)\.){3}(?:25[0-5]|2[0-4]\d|[01]?\d\d?)$"
        ),
    ),
    PIIPattern(
        "mac_address", PIICategory.BEHAVIORAL, PIIType.MAC_ADDRESS, Sensitivity.LOW,
        re.compile(r"^(?:[0-9A-Fa-f]{2}[:\-]){5}[0-9A-Fa-f]{2}$"),
    ),
    PIIPattern(
        "dob", PIICategory.IDENTITY, PIIType.DATE_OF_BIRTH, Sensitivity.MEDIUM,
        re.compile(r"^(?:\d{1,2}[/\-]\d{1,2}[/\-]\d{2,4}|\d{4}[/\-]\d{1,2}[/\-]\d{1,2})$"),
    ),
    PIIPattern(
        "passport_india", PIICategory.GOVERNMENT_ID, PIIType.PASSPORT, Sensitivity.HIGH,
        re.compile(r"^[A-Z][1-9]\d{6}[1-9]$"),
    ),
)


@register_strategy
class PatternStrategy(BaseStrategy):
    """Matches sample values against known identifier formats."""

    name = "pattern"
    method = DetectionMethod.REGEX
    weight = 0.90

    def __init__(
        self,
        weight: float | None = None,
        patterns: Tuple[PIIPattern, ...] = PII_PATTERNS,
    ) -> None:
        super().__init__(weight=weight)
        self._patterns = patterns

    def detect(self, data: DetectionInput) -> List[DetectionResult]:
        samples = [s.strip() for s in data.samples if s and s.strip()]
        if not samples:
            return []

        # PIIType -> (pattern of first match, matched sample count)
        counts: Dict[PIIType, Tuple[PIIPattern, int]] = {}
        for sample in samples:
            seen_types = set()
            for pattern in self._patterns:
                if pattern.pii_type in seen_types:
                    continue
                if pattern.regex.match(sample):
                    seen_types.add(pattern.pii_type)
                    first, matches = counts.get(pattern.pii_type, (pattern, 0))
                    counts[pattern.pii_type] = (first, matches + 1)

        results = []
        for pattern, matches in counts.values():
            rate = matches / len(samples)
            results.append(
                DetectionResult(
                    category=pattern.category,
                    pii_type=pattern.pii_type,
                    sensitivity=pattern.sensitivity,
                    confidence=PATTERN_BASE_CONFIDENCE * (0.7 + 0.3 * rate),
                    method=self.method,
                    reasoning=f"Regex pattern '{pattern.name}' matched {matches}/{len(samples)} samples",
                )
            )
        return results
