"""
DataLens server infrastructure.

This module provides the process-level plumbing shared by services and
workers:
- Settings (pydantic-settings + YAML)
- Database engine, models and repositories
- Structured logging
- Event publication and audit logging
- Prometheus metrics
"""
