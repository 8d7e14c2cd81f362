"""
DataLens - PII discovery and data subject request execution

This package provides:
- Connectors: one contract over SQL, MongoDB, S3, OneDrive and uploaded files
- Detection: composable PII detection strategies
- Services: scan orchestration, discovery and DSR execution
- Jobs: database-backed queue and worker
"""

__version__ = "0.4.0"
