"""
DataLens core: domain types, constants and the PII detection engine.
"""

from .types import (
    DataSourceType,
    DetectionMethod,
    DSRStatus,
    DSRType,
    PIICategory,
    PIIType,
    ScanStatus,
    ScanType,
    Sensitivity,
    TaskStatus,
)

__all__ = [
    "DataSourceType",
    "DetectionMethod",
    "DSRStatus",
    "DSRType",
    "PIICategory",
    "PIIType",
    "ScanStatus",
    "ScanType",
    "Sensitivity",
    "TaskStatus",
]
