"""
Base strategy interface for the DataLens detection engine.

All strategies inherit from BaseStrategy and implement detect().
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from datalens.core.types import DetectionMethod, PIICategory, PIIType, Sensitivity


@dataclass(frozen=True)
class ColumnContext:
    """A neighbouring column, given to strategies that reason about relationships."""

    name: str
    data_type: str = ""


@dataclass
class DetectionInput:
    """Everything a strategy may inspect about one field."""

    column_name: str
    data_type: str = ""
    nullable: bool = True
    table_name: str = ""
    schema_name: str = ""
    samples: List[str] = field(default_factory=list)
    adjacent_columns: List[ColumnContext] = field(default_factory=list)
    industry: Optional[str] = None


@dataclass
class DetectionResult:
    """One PII candidate produced by a single strategy."""

    category: PIICategory
    pii_type: PIIType
    sensitivity: Sensitivity
    confidence: float
    method: DetectionMethod
    reasoning: str = ""


class BaseStrategy(ABC):
    """
    Base class for all detection strategies.

    Each strategy:
    - Has a unique name, a detection method tag and a merge weight
    - Takes a DetectionInput for one field
    - Returns zero (no opinion) or more DetectionResult candidates
    - Keeps no state between detect() calls

    Attributes:
        name: Unique identifier for the strategy
        method: DetectionMethod recorded on its results
        weight: Weight of this strategy's confidence when merging (0.0-1.0)
    """

    name: str = "base"
    method: DetectionMethod = DetectionMethod.HEURISTIC
    weight: float = 1.0

    def __init__(self, weight: Optional[float] = None) -> None:
        if weight is not None:
            if not 0.0 < weight <= 1.0:
                raise ValueError(f"Strategy weight must be in (0, 1], got {weight}")
            self.weight = weight

    @abstractmethod
    def detect(self, data: DetectionInput) -> List[DetectionResult]:
        """
        Inspect one field.

        Args:
            data: Column metadata and sample values

        Returns:
            List of candidates, possibly empty
        """
        pass

    def is_available(self) -> bool:
        """
        Check if the strategy is ready to use.

        Override for strategies that need external resources
        (models loaded, API keys configured, etc.)
        """
        return True

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r}, weight={self.weight})"
