"""
Core constants for DataLens.

Defaults, limits and timeouts used across connectors, detection and
execution. Runtime-tunable values are mirrored in ``server.config``;
the numbers here are the fallbacks and hard caps.
"""

__all__ = [
    # Scanning
    "DEFAULT_SAMPLE_LIMIT",
    "DEFAULT_MAX_CONCURRENT_SCANS",
    "MAX_OBJECTS_PER_BUCKET",
    "MAX_SAMPLE_CHARS",
    "MAX_DOCUMENT_SAMPLE",
    # Detection
    "REVIEW_THRESHOLD",
    "HEURISTIC_CONFIDENCE",
    "PATTERN_BASE_CONFIDENCE",
    "INDUSTRY_CONFIDENCE_CAP",
    # DSR
    "DEFAULT_DSR_CONCURRENCY",
    "DEFAULT_SLA_DAYS",
    "MAX_CLASSIFICATIONS_PER_SOURCE",
    # Timeouts
    "CONNECTOR_CALL_TIMEOUT",
    "CONNECTOR_CONNECT_TIMEOUT",
]

# --- SCANNING ---
DEFAULT_SAMPLE_LIMIT = 10             # Values sampled per field
DEFAULT_MAX_CONCURRENT_SCANS = 3      # RUNNING scans per tenant
MAX_OBJECTS_PER_BUCKET = 1000         # S3 objects enumerated per scan
MAX_SAMPLE_CHARS = 1000               # Text sampled from an uploaded file
MAX_DOCUMENT_SAMPLE = 10              # Documents read to infer a collection schema

# --- DETECTION ---
REVIEW_THRESHOLD = 0.80               # Merged detections below this need review
HEURISTIC_CONFIDENCE = 0.70           # Column name match alone
PATTERN_BASE_CONFIDENCE = 0.90        # Regex match, scaled by match rate
INDUSTRY_CONFIDENCE_CAP = 0.95

# --- DSR ---
DEFAULT_DSR_CONCURRENCY = 5           # Tasks (connector sessions) in flight per DSR
DEFAULT_SLA_DAYS = 30
MAX_CLASSIFICATIONS_PER_SOURCE = 1000

# --- TIMEOUTS (seconds) ---
CONNECTOR_CALL_TIMEOUT = 30.0
CONNECTOR_CONNECT_TIMEOUT = 10.0
