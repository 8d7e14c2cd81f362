"""
Tests for the composable PII detector and its built-in strategies.

Tests focus on:
- Weighted merging of identical (category, type) candidates
- Top match selection and method ordering
- Failure isolation between strategies
- Heuristic, pattern and industry strategies on realistic columns
"""

from typing import List

import pytest

from datalens.core.detection import (
    BaseStrategy,
    ComposableDetector,
    DetectionInput,
    DetectionResult,
    build_detector,
    get_strategy_names,
)
from datalens.core.detection.composable import boost_multi_method, merge_reasoning
from datalens.core.detection.heuristic import HeuristicStrategy, normalize_column_name
from datalens.core.detection.industry import IndustryStrategy, normalize_industry
from datalens.core.detection.pattern import PatternStrategy
from datalens.core.types import (
    DetectionMethod,
    PIICategory,
    PIIType,
    ReviewRoute,
    Sensitivity,
    route_by_confidence,
)
from datalens.server.config import DetectionSettings


class FixedStrategy(BaseStrategy):
    """Returns canned results; not registered globally."""

    name = "fixed"

    def __init__(self, results: List[DetectionResult], method: DetectionMethod,
                 weight: float = 1.0) -> None:
        super().__init__(weight=weight)
        self.method = method
        self._results = results

    def detect(self, data: DetectionInput) -> List[DetectionResult]:
        return list(self._results)


class ExplodingStrategy(BaseStrategy):
    name = "exploding"

    def __init__(self, error: Exception = None) -> None:
        super().__init__()
        self._error = error or RuntimeError("model not loaded")

    def detect(self, data: DetectionInput) -> List[DetectionResult]:
        raise self._error


def _result(confidence: float, method: DetectionMethod,
            pii_type: PIIType = PIIType.EMAIL,
            category: PIICategory = PIICategory.CONTACT,
            sensitivity: Sensitivity = Sensitivity.MEDIUM,
            reasoning: str = "") -> DetectionResult:
    return DetectionResult(
        category=category,
        pii_type=pii_type,
        sensitivity=sensitivity,
        confidence=confidence,
        method=method,
        reasoning=reasoning,
    )


class TestComposableMerge:
    """Weighted merging across strategies."""

    def test_equal_weights_average_confidences(self):
        """0.8 and 0.6 from two equally weighted strategies merge to 0.7."""
        detector = ComposableDetector([
            FixedStrategy([_result(0.8, DetectionMethod.REGEX)], DetectionMethod.REGEX),
            FixedStrategy([_result(0.6, DetectionMethod.HEURISTIC)], DetectionMethod.HEURISTIC),
        ])

        report = detector.detect_sync(DetectionInput(column_name="email"))

        assert report.is_pii
        assert len(report.detections) == 1
        assert report.top_match.confidence == pytest.approx(0.7)
        assert report.top_match.pii_type == PIIType.EMAIL

    def test_weights_skew_the_average(self):
        detector = ComposableDetector([
            FixedStrategy([_result(0.9, DetectionMethod.REGEX)], DetectionMethod.REGEX, weight=0.9),
            FixedStrategy([_result(0.3, DetectionMethod.HEURISTIC)], DetectionMethod.HEURISTIC, weight=0.3),
        ])

        report = detector.detect_sync(DetectionInput(column_name="x"))

        expected = (0.9 * 0.9 + 0.3 * 0.3) / (0.9 + 0.3)
        assert report.top_match.confidence == pytest.approx(expected)

    def test_methods_follow_registration_order(self):
        """Element 0 of methods is the primary method."""
        detector = ComposableDetector([
            FixedStrategy([_result(0.5, DetectionMethod.HEURISTIC)], DetectionMethod.HEURISTIC),
            FixedStrategy([_result(0.9, DetectionMethod.REGEX)], DetectionMethod.REGEX),
        ])

        top = detector.detect_sync(DetectionInput(column_name="email")).top_match

        assert top.methods == [DetectionMethod.HEURISTIC, DetectionMethod.REGEX]
        assert top.primary_method == DetectionMethod.HEURISTIC

    def test_highest_confidence_group_is_top_match(self):
        detector = ComposableDetector([
            FixedStrategy(
                [
                    _result(0.4, DetectionMethod.REGEX, PIIType.PHONE),
                    _result(0.9, DetectionMethod.REGEX, PIIType.EMAIL),
                ],
                DetectionMethod.REGEX,
            ),
        ])

        report = detector.detect_sync(DetectionInput(column_name="contact"))

        assert [d.pii_type for d in report.detections] == [PIIType.EMAIL, PIIType.PHONE]
        assert report.top_match.pii_type == PIIType.EMAIL

    def test_sensitivity_raised_to_highest_contributor(self):
        detector = ComposableDetector([
            FixedStrategy([_result(0.8, DetectionMethod.REGEX, sensitivity=Sensitivity.LOW)],
                          DetectionMethod.REGEX),
            FixedStrategy([_result(0.8, DetectionMethod.AI, sensitivity=Sensitivity.CRITICAL)],
                          DetectionMethod.AI),
        ])

        top = detector.detect_sync(DetectionInput(column_name="x")).top_match

        assert top.sensitivity == Sensitivity.CRITICAL

    def test_no_candidates_means_not_pii(self):
        detector = ComposableDetector([FixedStrategy([], DetectionMethod.REGEX)])

        report = detector.detect_sync(DetectionInput(column_name="created_at"))

        assert not report.is_pii
        assert report.top_match is None

    def test_low_confidence_is_still_pii(self):
        """The detector applies no threshold; callers do."""
        detector = ComposableDetector([
            FixedStrategy([_result(0.05, DetectionMethod.REGEX)], DetectionMethod.REGEX),
        ])

        report = detector.detect_sync(DetectionInput(column_name="x"))

        assert report.is_pii
        assert report.top_match.requires_review

    def test_failing_strategy_does_not_stop_others(self):
        detector = ComposableDetector([
            ExplodingStrategy(),
            FixedStrategy([_result(0.9, DetectionMethod.REGEX)], DetectionMethod.REGEX),
        ])

        report = detector.detect_sync(DetectionInput(column_name="email"))

        assert report.is_pii
        assert report.strategies[0].error == "model not loaded"
        assert report.strategies[1].found

    def test_unexpected_strategy_error_is_isolated(self):
        detector = ComposableDetector([
            ExplodingStrategy(KeyError("missing")),
            HeuristicStrategy(),
            PatternStrategy(),
        ])

        report = detector.detect_sync(DetectionInput(column_name="email"))

        assert report.is_pii
        assert report.top_match.pii_type == PIIType.EMAIL
        assert report.strategies[0].error == "'missing'"
        assert not report.strategies[0].found

    def test_reasoning_is_deduplicated(self):
        detector = ComposableDetector([
            FixedStrategy([_result(0.8, DetectionMethod.REGEX, reasoning="same")], DetectionMethod.REGEX),
            FixedStrategy([_result(0.8, DetectionMethod.HEURISTIC, reasoning="same")],
                          DetectionMethod.HEURISTIC),
        ])

        top = detector.detect_sync(DetectionInput(column_name="x")).top_match

        assert top.reasoning == "same"

    def test_boost_applies_only_when_enabled(self):
        strategies = [
            FixedStrategy([_result(0.8, DetectionMethod.REGEX)], DetectionMethod.REGEX),
            FixedStrategy([_result(0.8, DetectionMethod.HEURISTIC)], DetectionMethod.HEURISTIC),
        ]

        plain = ComposableDetector(strategies).detect_sync(DetectionInput(column_name="x"))
        boosted = ComposableDetector(strategies, multi_method_boost=True).detect_sync(
            DetectionInput(column_name="x")
        )

        assert plain.top_match.confidence == pytest.approx(0.8)
        assert boosted.top_match.confidence == pytest.approx(0.84)

    @pytest.mark.asyncio
    async def test_async_detect_matches_sync(self):
        detector = ComposableDetector([
            FixedStrategy([_result(0.8, DetectionMethod.REGEX)], DetectionMethod.REGEX),
        ])

        report = await detector.detect(DetectionInput(column_name="email"))

        assert report.top_match.confidence == pytest.approx(0.8)


class TestMergeHelpers:

    def test_boost_multi_method(self):
        assert boost_multi_method(0.5, 1) == 0.5
        assert boost_multi_method(0.5, 2) == pytest.approx(0.525)
        assert boost_multi_method(0.5, 3) == pytest.approx(0.55)

    def test_merge_reasoning_skips_empty(self):
        assert merge_reasoning(["a", "", "b", "a"]) == "a; b"


class TestHeuristicStrategy:
    """Column name matching."""

    @pytest.mark.parametrize("column,pii_type", [
        ("email", PIIType.EMAIL),
        ("Email_Address", PIIType.EMAIL),
        ("phone_number", PIIType.PHONE),
        ("date-of-birth", PIIType.DATE_OF_BIRTH),
        ("SSN", PIIType.SSN),
    ])
    def test_known_columns(self, column, pii_type):
        results = HeuristicStrategy().detect(DetectionInput(column_name=column))

        assert len(results) == 1
        assert results[0].pii_type == pii_type
        assert results[0].method == DetectionMethod.HEURISTIC

    def test_unknown_column(self):
        assert HeuristicStrategy().detect(DetectionInput(column_name="created_at")) == []

    def test_normalize_column_name(self):
        assert normalize_column_name("E-Mail Address") == "emailaddress"


class TestPatternStrategy:
    """Sample value matching."""

    def test_email_samples(self):
        results = PatternStrategy().detect(DetectionInput(
            column_name="c1",
            samples=["alice@example.com", "bob@example.org"],
        ))

        assert [r.pii_type for r in results] == [PIIType.EMAIL]
        assert results[0].confidence == pytest.approx(0.9)

    def test_partial_match_lowers_confidence(self):
        results = PatternStrategy().detect(DetectionInput(
            column_name="c1",
            samples=["alice@example.com", "not an email"],
        ))

        assert results[0].confidence == pytest.approx(0.9 * (0.7 + 0.3 * 0.5))

    def test_no_samples_no_opinion(self):
        assert PatternStrategy().detect(DetectionInput(column_name="email")) == []

    def test_blank_samples_ignored(self):
        assert PatternStrategy().detect(DetectionInput(column_name="x", samples=["  ", ""])) == []


class TestIndustryStrategy:

    def test_requires_industry(self):
        data = DetectionInput(column_name="code", samples=["HDFC0001234"])
        assert IndustryStrategy().detect(data) == []

    def test_bfsi_pack(self):
        data = DetectionInput(column_name="code", samples=["HDFC0001234"], industry="Banking")

        results = IndustryStrategy().detect(data)

        assert any(r.pii_type == PIIType.BANK_ACCOUNT for r in results)

    def test_normalize_industry(self):
        assert normalize_industry("Health Care") == "healthcare"
        assert normalize_industry("Insurance") == "bfsi"
        assert normalize_industry("Human Resources") == "hr"


class TestBuildDetector:

    def test_all_registered_strategies_enabled_by_default(self):
        detector = build_detector(DetectionSettings())

        assert detector.strategy_names == get_strategy_names()

    def test_enabled_strategies_filter(self):
        detector = build_detector(DetectionSettings(enabled_strategies=["heuristic"]))

        assert detector.strategy_names == ["heuristic"]

    def test_email_column_with_samples(self):
        detector = build_detector(DetectionSettings())

        report = detector.detect_sync(DetectionInput(
            column_name="email",
            samples=["alice@example.com", "bob@example.com"],
        ))

        top = report.top_match
        assert top.pii_type == PIIType.EMAIL
        assert top.category == PIICategory.CONTACT
        assert top.primary_method == DetectionMethod.HEURISTIC
        assert DetectionMethod.REGEX in top.methods


class TestConfidenceRouting:

    @pytest.mark.parametrize("confidence,route", [
        (0.99, ReviewRoute.AUTO_VERIFY),
        (0.95, ReviewRoute.AUTO_VERIFY),
        (0.85, ReviewRoute.QUICK_VERIFY),
        (0.50, ReviewRoute.MANUAL_REVIEW),
        (0.10, ReviewRoute.LOW_CONFIDENCE),
    ])
    def test_route_by_confidence(self, confidence, route):
        assert route_by_confidence(confidence) == route
