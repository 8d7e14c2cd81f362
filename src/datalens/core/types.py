"""
Core domain types for DataLens.

This module defines the enumerations shared by connectors, the detection
engine, the scan orchestrator and the DSR executor:
- PII taxonomy: PIICategory, PIIType, Sensitivity, DetectionMethod
- Data sources: DataSourceType, DeletionMode, ConnectionStatus, EntityType
- Scans: ScanType, ScanStatus
- Subject requests: DSRType, DSRStatus, TaskStatus, VerificationStatus

All enums are ``str`` subclasses so their values are stored as plain
strings in the database and serialized as-is in JSON payloads.
"""

import logging
from enum import Enum
from typing import Dict, FrozenSet

__all__ = [
    # PII taxonomy
    "PIICategory",
    "PIIType",
    "Sensitivity",
    "DetectionMethod",
    "ReviewRoute",
    "SENSITIVITY_ORDER",
    "route_by_confidence",
    # Data sources
    "DataSourceType",
    "DeletionMode",
    "ConnectionStatus",
    "EntityType",
    "normalize_data_source_type",
    # Scans
    "ScanType",
    "ScanStatus",
    # Subject requests
    "DSRType",
    "DSRStatus",
    "TaskStatus",
    "VerificationStatus",
    "SUCCESS_TASK_STATUSES",
]

logger = logging.getLogger(__name__)


# =============================================================================
# PII TAXONOMY
# =============================================================================


class PIICategory(str, Enum):
    """Broad class of personal data."""
    IDENTITY = "IDENTITY"
    CONTACT = "CONTACT"
    FINANCIAL = "FINANCIAL"
    HEALTH = "HEALTH"
    BIOMETRIC = "BIOMETRIC"
    GENETIC = "GENETIC"
    LOCATION = "LOCATION"
    BEHAVIORAL = "BEHAVIORAL"
    PROFESSIONAL = "PROFESSIONAL"
    GOVERNMENT_ID = "GOVERNMENT_ID"
    MINOR = "MINOR"


class PIIType(str, Enum):
    """Specific kind of identifier within a category."""
    NAME = "NAME"
    EMAIL = "EMAIL"
    PHONE = "PHONE"
    ADDRESS = "ADDRESS"
    AADHAAR = "AADHAAR"
    PAN = "PAN"
    PASSPORT = "PASSPORT"
    SSN = "SSN"
    NATIONAL_ID = "NATIONAL_ID"
    DATE_OF_BIRTH = "DATE_OF_BIRTH"
    GENDER = "GENDER"
    BANK_ACCOUNT = "BANK_ACCOUNT"
    CREDIT_CARD = "CREDIT_CARD"
    IP_ADDRESS = "IP_ADDRESS"
    MAC_ADDRESS = "MAC_ADDRESS"
    DEVICE_ID = "DEVICE_ID"
    BIOMETRIC = "BIOMETRIC"
    MEDICAL_RECORD = "MEDICAL_RECORD"
    PHOTO = "PHOTO"
    SIGNATURE = "SIGNATURE"


class Sensitivity(str, Enum):
    """Sensitivity tier, ordered LOW < MEDIUM < HIGH < CRITICAL."""
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"

    @property
    def rank(self) -> int:
        return SENSITIVITY_ORDER[self]


SENSITIVITY_ORDER: Dict[Sensitivity, int] = {
    Sensitivity.LOW: 1,
    Sensitivity.MEDIUM: 2,
    Sensitivity.HIGH: 3,
    Sensitivity.CRITICAL: 4,
}


class DetectionMethod(str, Enum):
    """How a classification was produced."""
    AI = "AI"
    REGEX = "REGEX"
    HEURISTIC = "HEURISTIC"
    INDUSTRY = "INDUSTRY"
    MANUAL = "MANUAL"


class ReviewRoute(str, Enum):
    """Human review lane for a merged detection."""
    AUTO_VERIFY = "AUTO_VERIFY"        # >= 0.95
    QUICK_VERIFY = "QUICK_VERIFY"      # 0.80 - 0.95
    MANUAL_REVIEW = "MANUAL_REVIEW"    # 0.50 - 0.80
    LOW_CONFIDENCE = "LOW_CONFIDENCE"  # < 0.50


def route_by_confidence(confidence: float) -> ReviewRoute:
    """Pick the review lane for a final confidence score."""
    if confidence >= 0.95:
        return ReviewRoute.AUTO_VERIFY
    if confidence >= 0.80:
        return ReviewRoute.QUICK_VERIFY
    if confidence >= 0.50:
        return ReviewRoute.MANUAL_REVIEW
    return ReviewRoute.LOW_CONFIDENCE


# =============================================================================
# DATA SOURCES
# =============================================================================


class DataSourceType(str, Enum):
    """Backend technology of a data source."""
    POSTGRESQL = "POSTGRESQL"
    MYSQL = "MYSQL"
    SQLSERVER = "SQLSERVER"
    SQLITE = "SQLITE"
    MONGODB = "MONGODB"
    S3 = "S3"
    ONEDRIVE = "ONEDRIVE"
    MICROSOFT_365 = "MICROSOFT_365"
    OUTLOOK = "OUTLOOK"
    FILE_UPLOAD = "FILE_UPLOAD"


# Legacy and user-entered spellings seen in stored rows
_DATA_SOURCE_ALIASES: Dict[str, DataSourceType] = {
    "POSTGRES": DataSourceType.POSTGRESQL,
    "PG": DataSourceType.POSTGRESQL,
    "MSSQL": DataSourceType.SQLSERVER,
    "SQL_SERVER": DataSourceType.SQLSERVER,
    "MONGO": DataSourceType.MONGODB,
    "AWS_S3": DataSourceType.S3,
    "M365": DataSourceType.MICROSOFT_365,
    "OFFICE365": DataSourceType.MICROSOFT_365,
    "ONE_DRIVE": DataSourceType.ONEDRIVE,
    "EXCHANGE": DataSourceType.OUTLOOK,
    "M365_MAIL": DataSourceType.OUTLOOK,
    "OUTLOOK_365": DataSourceType.OUTLOOK,
    "FILE": DataSourceType.FILE_UPLOAD,
    "UPLOAD": DataSourceType.FILE_UPLOAD,
}


def normalize_data_source_type(value: "str | DataSourceType") -> str:
    """
    Normalize a stored data source type to its canonical value.

    Handles casing, surrounding whitespace, hyphens/spaces and a small
    set of aliases. Unknown values are returned upper-cased so the caller
    can report them.
    """
    if isinstance(value, DataSourceType):
        return value.value
    key = value.strip().upper().replace("-", "_").replace(" ", "_")
    if key in DataSourceType.__members__:
        return DataSourceType[key].value
    alias = _DATA_SOURCE_ALIASES.get(key)
    if alias is not None:
        return alias.value
    return key


class DeletionMode(str, Enum):
    """Whether ERASURE may call the backend's delete directly."""
    AUTO = "AUTO"
    MANUAL = "MANUAL"


class ConnectionStatus(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"
    TESTING = "TESTING"


class EntityType(str, Enum):
    TABLE = "TABLE"
    VIEW = "VIEW"
    COLLECTION = "COLLECTION"
    FOLDER = "FOLDER"
    FILE = "FILE"


# =============================================================================
# SCANS
# =============================================================================


class ScanType(str, Enum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class ScanStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# =============================================================================
# DATA SUBJECT REQUESTS
# =============================================================================


class DSRType(str, Enum):
    ACCESS = "ACCESS"
    ERASURE = "ERASURE"
    CORRECTION = "CORRECTION"
    PORTABILITY = "PORTABILITY"
    NOMINATION = "NOMINATION"
    APPEAL = "APPEAL"


class DSRStatus(str, Enum):
    PENDING = "PENDING"
    IDENTITY_VERIFICATION = "IDENTITY_VERIFICATION"
    APPROVED = "APPROVED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"
    VERIFIED = "VERIFIED"
    VERIFICATION_FAILED = "VERIFICATION_FAILED"


class TaskStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    VERIFIED = "VERIFIED"
    FAILED = "FAILED"
    MANUAL_ACTION_REQUIRED = "MANUAL_ACTION_REQUIRED"


# Task states that count as success when aggregating a DSR
SUCCESS_TASK_STATUSES: FrozenSet[TaskStatus] = frozenset({
    TaskStatus.COMPLETED,
    TaskStatus.VERIFIED,
    TaskStatus.MANUAL_ACTION_REQUIRED,
})


class VerificationStatus(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
