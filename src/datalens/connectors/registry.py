"""Connector registry.

Maps a data source type to the factory that builds its connector. The
scan path and the DSR path both resolve connectors here; stored type
strings are normalized first so ``"postgres"``, ``"PostgreSQL"`` and
``"POSTGRESQL"`` resolve to the same factory.

The registry is built once at startup and only read afterwards.
"""

from __future__ import annotations

import logging
from collections.abc import Callable

from datalens.core.types import DataSourceType, normalize_data_source_type
from datalens.exceptions import UnsupportedConnectorError

from .base import Connector

logger = logging.getLogger(__name__)

ConnectorFactory = Callable[[], Connector]


class ConnectorRegistry:
    """Data source type -> connector factory."""

    def __init__(self) -> None:
        self._factories: dict[str, ConnectorFactory] = {}

    def register(self, source_type: "str | DataSourceType", factory: ConnectorFactory) -> None:
        key = normalize_data_source_type(source_type)
        if key in self._factories:
            logger.info(f"Replacing connector factory for {key}")
        self._factories[key] = factory

    def create(self, source_type: "str | DataSourceType") -> Connector:
        """Build a fresh connector for *source_type*.

        Raises:
            UnsupportedConnectorError: No factory registered for the type
        """
        key = normalize_data_source_type(source_type)
        factory = self._factories.get(key)
        if factory is None:
            raise UnsupportedConnectorError(
                f"Unsupported data source type: {source_type}",
                source_type=key,
                supported=self.supported_types(),
            )
        return factory()

    def supports(self, source_type: "str | DataSourceType") -> bool:
        return normalize_data_source_type(source_type) in self._factories

    def supported_types(self) -> list[str]:
        return sorted(self._factories)

    def __len__(self) -> int:
        return len(self._factories)
