"""Runs every registered strategy against a field and merges their verdicts."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from datalens.core.constants import REVIEW_THRESHOLD
from datalens.core.types import (
    DetectionMethod,
    PIICategory,
    PIIType,
    ReviewRoute,
    Sensitivity,
    route_by_confidence,
)

from .base import BaseStrategy, DetectionInput, DetectionResult

logger = logging.getLogger(__name__)


@dataclass
class StrategyOutcome:
    """What one strategy did for one field."""

    name: str
    method: DetectionMethod
    found: bool = False
    results: int = 0
    duration_ms: float = 0.0
    error: Optional[str] = None


@dataclass
class MergedDetection:
    """One (category, type) candidate after weighting across strategies."""

    category: PIICategory
    pii_type: PIIType
    sensitivity: Sensitivity
    confidence: float
    methods: List[DetectionMethod]
    reasoning: str
    requires_review: bool

    @property
    def primary_method(self) -> DetectionMethod:
        return self.methods[0]

    @property
    def route(self) -> ReviewRoute:
        return route_by_confidence(self.confidence)


@dataclass
class DetectionReport:
    """Merged verdict for one field."""

    column_name: str
    detections: List[MergedDetection] = field(default_factory=list)
    strategies: List[StrategyOutcome] = field(default_factory=list)
    duration_ms: float = 0.0

    @property
    def top_match(self) -> Optional[MergedDetection]:
        return self.detections[0] if self.detections else None

    @property
    def is_pii(self) -> bool:
        return self.top_match is not None


@dataclass
class _Group:
    category: PIICategory
    pii_type: PIIType
    sensitivity: Sensitivity
    methods: List[DetectionMethod] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)
    weighted_sum: float = 0.0
    total_weight: float = 0.0


class ComposableDetector:
    """
    Chains detection strategies and merges their results.

    Results are grouped by (category, type). Each group's final
    confidence is the weighted mean of its contributors' confidences
    using the strategies' weights. Sensitivity is raised to the highest
    contributor's level. The report's detections are sorted by final
    confidence, highest first, and the first is the top match.

    The detector applies no threshold of its own: any top match makes
    the field PII. Callers decide whether low-confidence matches persist.
    """

    def __init__(
        self,
        strategies: Sequence[BaseStrategy],
        multi_method_boost: bool = False,
    ):
        self._strategies = list(strategies)
        self._multi_method_boost = multi_method_boost

    @property
    def strategy_names(self) -> List[str]:
        return [s.name for s in self._strategies]

    async def detect(self, data: DetectionInput) -> DetectionReport:
        """Async wrapper around detect_sync via a worker thread."""
        return await asyncio.to_thread(self.detect_sync, data)

    def detect_sync(self, data: DetectionInput) -> DetectionReport:
        """Run all strategies on one field (synchronous entry point)."""
        start = time.perf_counter()
        report = DetectionReport(column_name=data.column_name)
        tagged: List[Tuple[DetectionResult, float]] = []

        for strategy in self._strategies:
            outcome = StrategyOutcome(name=strategy.name, method=strategy.method)
            strategy_start = time.perf_counter()
            try:
                results = strategy.detect(data)
            except Exception as e:  # Broad on purpose: one strategy must not abort the others
                logger.warning(
                    "Strategy %s failed on column %s: %s", strategy.name, data.column_name, e
                )
                outcome.error = str(e)
                results = []
            outcome.duration_ms = (time.perf_counter() - strategy_start) * 1000
            outcome.found = bool(results)
            outcome.results = len(results)
            report.strategies.append(outcome)

            tagged.extend((r, strategy.weight) for r in results)

        report.detections = self._merge(tagged)
        report.duration_ms = (time.perf_counter() - start) * 1000
        return report

    def _merge(self, tagged: List[Tuple[DetectionResult, float]]) -> List[MergedDetection]:
        # Insertion-ordered dict keeps strategy registration order for methods
        groups: Dict[Tuple[PIICategory, PIIType], _Group] = {}

        for result, weight in tagged:
            key = (result.category, result.pii_type)
            group = groups.get(key)
            if group is None:
                group = _Group(
                    category=result.category,
                    pii_type=result.pii_type,
                    sensitivity=result.sensitivity,
                )
                groups[key] = group

            if result.method not in group.methods:
                group.methods.append(result.method)
            group.reasons.append(result.reasoning)
            group.weighted_sum += weight * result.confidence
            group.total_weight += weight
            if result.sensitivity.rank > group.sensitivity.rank:
                group.sensitivity = result.sensitivity

        merged = []
        for group in groups.values():
            if group.total_weight <= 0:
                continue
            confidence = group.weighted_sum / group.total_weight
            if self._multi_method_boost:
                confidence = boost_multi_method(confidence, len(group.methods))
            confidence = min(confidence, 1.0)

            merged.append(
                MergedDetection(
                    category=group.category,
                    pii_type=group.pii_type,
                    sensitivity=group.sensitivity,
                    confidence=confidence,
                    methods=group.methods,
                    reasoning=merge_reasoning(group.reasons),
                    requires_review=confidence < REVIEW_THRESHOLD,
                )
            )

        # Stable sort: ties keep first-seen order
        merged.sort(key=lambda d: d.confidence, reverse=True)
        return merged


def boost_multi_method(confidence: float, method_count: int) -> float:
    """Raise confidence when independent methods agree: 2 -> +5%, 3+ -> +10%."""
    if method_count >= 3:
        return confidence * 1.10
    if method_count == 2:
        return confidence * 1.05
    return confidence


def merge_reasoning(reasons: Sequence[str]) -> str:
    """De-duplicate non-empty reasons and join them with '; '."""
    unique: List[str] = []
    for reason in reasons:
        if reason and reason not in unique:
            unique.append(reason)
    return "; ".join(unique)
