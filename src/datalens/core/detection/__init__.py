"""
PII detection engine.

Strategies register themselves on import; ``build_detector`` assembles
the composable detector from the registry and the detection settings.
"""

from typing import TYPE_CHECKING, Optional

# Import order is registration order, which is the merge order of methods
from . import heuristic  # noqa: F401
from . import pattern  # noqa: F401
from . import industry  # noqa: F401
from .base import BaseStrategy, ColumnContext, DetectionInput, DetectionResult
from .composable import (
    ComposableDetector,
    DetectionReport,
    MergedDetection,
    StrategyOutcome,
)
from .registry import (
    create_all_strategies,
    create_strategy,
    get_registered_strategies,
    get_strategy_names,
    register_strategy,
)

if TYPE_CHECKING:
    from datalens.server.config import DetectionSettings

__all__ = [
    "BaseStrategy",
    "ColumnContext",
    "ComposableDetector",
    "DetectionInput",
    "DetectionReport",
    "DetectionResult",
    "MergedDetection",
    "StrategyOutcome",
    "build_detector",
    "create_all_strategies",
    "create_strategy",
    "get_registered_strategies",
    "get_strategy_names",
    "register_strategy",
]


def build_detector(settings: Optional["DetectionSettings"] = None) -> ComposableDetector:
    """Create a detector from detection settings (global settings when omitted)."""
    if settings is None:
        from datalens.server.config import get_settings
        settings = get_settings().detection

    strategies = create_all_strategies(
        weights=settings.weights,
        enabled=settings.enabled_strategies,
    )
    return ComposableDetector(strategies, multi_method_boost=settings.multi_method_boost)
