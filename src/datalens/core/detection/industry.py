"""
Industry pattern packs.

Sector-specific identifiers (provider numbers, SWIFT codes, employee ids)
are only meaningful when the tenant's industry is known, so this
strategy stays silent unless ``DetectionInput.industry`` is set.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Pattern

from datalens.core.constants import INDUSTRY_CONFIDENCE_CAP
from datalens.core.types import DetectionMethod, PIICategory, PIIType, Sensitivity

from .base import BaseStrategy, DetectionInput, DetectionResult
from .registry import register_strategy


@dataclass(frozen=True)
class IndustryPattern:
    name: str
    regex: Pattern[str]
    pii_type: PIIType
    category: PIICategory
    sensitivity: Sensitivity


INDUSTRY_PACKS: Dict[str, List[IndustryPattern]] = {
    "healthcare": [
        IndustryPattern(
            "NPI (National Provider Identifier)", re.compile(r"^\d{10}$"),
            PIIType.NATIONAL_ID, PIICategory.PROFESSIONAL, Sensitivity.MEDIUM,
        ),
        IndustryPattern(
            "DEA Number", re.compile(r"^[A-Z]{2}\d{7}$"),
            PIIType.NATIONAL_ID, PIICategory.PROFESSIONAL, Sensitivity.HIGH,
        ),
        IndustryPattern(
            "ICD-10 Code", re.compile(r"^[A-Z][0-9][0-9A-Z](?:\.[0-9A-Z]{1,4})?$"),
            PIIType.MEDICAL_RECORD, PIICategory.HEALTH, Sensitivity.MEDIUM,
        ),
    ],
    "bfsi": [
        IndustryPattern(
            "SWIFT/BIC Code", re.compile(r"^[A-Z]{6}[A-Z0-9]{2}(?:[A-Z0-9]{3})?$"),
            PIIType.BANK_ACCOUNT, PIICategory.FINANCIAL, Sensitivity.MEDIUM,
        ),
        IndustryPattern(
            "IBAN", re.compile(r"^[A-Z]{2}\d{2}[A-Z0-9]{11,30}$"),
            PIIType.BANK_ACCOUNT, PIICategory.FINANCIAL, Sensitivity.HIGH,
        ),
        IndustryPattern(
            "IFSC Code", re.compile(r"^[A-Z]{4}0[A-Z0-9]{6}$"),
            PIIType.BANK_ACCOUNT, PIICategory.FINANCIAL, Sensitivity.MEDIUM,
        ),
    ],
    "hr": [
        IndustryPattern(
            "Employee ID", re.compile(r"^EMP-?\d{3,6}$", re.IGNORECASE),
            PIIType.NATIONAL_ID, PIICategory.PROFESSIONAL, Sensitivity.LOW,
        ),
    ],
}


def normalize_industry(industry: str) -> str:
    """Map free-text industry names onto a pattern pack key."""
    value = industry.strip().lower()
    if "health" in value or "medical" in value:
        return "healthcare"
    if "financ" in value or "bank" in value or "bfsi" in value or "insur" in value:
        return "bfsi"
    if value == "hr" or "human" in value or "recru" in value:
        return "hr"
    return value


@register_strategy
class IndustryStrategy(BaseStrategy):
    """Matches samples against the pattern pack for the tenant's industry."""

    name = "industry"
    method = DetectionMethod.INDUSTRY
    weight = 0.90

    def __init__(self, weight: float | None = None) -> None:
        super().__init__(weight=weight)
        self._packs = INDUSTRY_PACKS

    def detect(self, data: DetectionInput) -> List[DetectionResult]:
        if not data.industry:
            return []
        patterns = self._packs.get(normalize_industry(data.industry))
        if not patterns:
            return []

        samples = [s.strip() for s in data.samples if s and s.strip()]
        if not samples:
            return []

        results = []
        for pattern in patterns:
            matches = sum(1 for s in samples if pattern.regex.match(s))
            if matches == 0:
                continue
            results.append(
                DetectionResult(
                    category=pattern.category,
                    pii_type=pattern.pii_type,
                    sensitivity=pattern.sensitivity,
                    confidence=min(matches / len(samples), INDUSTRY_CONFIDENCE_CAP),
                    method=self.method,
                    reasoning=f"Matched industry pattern: {pattern.name}",
                )
            )
        return results
