"""Strategy plugin registry with decorator-based registration.

Strategies register themselves via the ``@register_strategy`` class
decorator. Registration order is preserved and becomes the order in which
the composable detector runs them, which in turn decides the order of
``methods`` on a merged detection.

Usage::

    from datalens.core.detection.registry import register_strategy

    @register_strategy
    class MyStrategy(BaseStrategy):
        name = "my_strategy"
        ...

    # At startup:
    from datalens.core.detection.registry import create_all_strategies
    strategies = create_all_strategies(weights={"my_strategy": 0.5})
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, List, Mapping, Optional, Sequence, Type

if TYPE_CHECKING:
    from .base import BaseStrategy

logger = logging.getLogger(__name__)

_REGISTRY: Dict[str, Type[BaseStrategy]] = {}


def register_strategy(cls: Type[BaseStrategy]) -> Type[BaseStrategy]:
    """Class decorator that registers a strategy by its ``name`` attribute.

    Raises ``ValueError`` if *name* is missing, still ``"base"``, or already
    taken by another class.
    """
    name = getattr(cls, "name", None)
    if not name or name == "base":
        raise ValueError(
            f"Strategy {cls.__name__} must define a unique 'name' class attribute"
        )
    if name in _REGISTRY:
        raise ValueError(
            f"Strategy name {name!r} already registered by {_REGISTRY[name].__name__}"
        )
    _REGISTRY[name] = cls
    return cls


def get_registered_strategies() -> Dict[str, Type[BaseStrategy]]:
    """Return a snapshot of all registered strategy classes."""
    return dict(_REGISTRY)


def get_strategy_names() -> List[str]:
    """Return the names of all registered strategies in registration order."""
    return list(_REGISTRY.keys())


def create_strategy(name: str, **kwargs: object) -> BaseStrategy:
    """Instantiate a registered strategy by *name*.

    Raises ``KeyError`` if the name is unknown.
    """
    if name not in _REGISTRY:
        raise KeyError(
            f"Unknown strategy: {name!r}. Available: {list(_REGISTRY.keys())}"
        )
    return _REGISTRY[name](**kwargs)


def create_all_strategies(
    weights: Optional[Mapping[str, float]] = None,
    enabled: Optional[Sequence[str]] = None,
) -> List[BaseStrategy]:
    """Instantiate every registered (and enabled) strategy that reports ``is_available()``.

    Args:
        weights: Optional per-strategy weight overrides keyed by name
        enabled: Optional allow-list of strategy names; ``None`` enables all
    """
    weights = weights or {}
    strategies: list[BaseStrategy] = []
    for name, cls in _REGISTRY.items():
        if enabled is not None and name not in enabled:
            continue
        try:
            strategy = cls(weight=weights.get(name))
        except (TypeError, ValueError) as exc:
            logger.warning("Failed to create strategy %s: %s", name, exc)
            continue
        if strategy.is_available():
            strategies.append(strategy)
        else:
            logger.info("Strategy %s is not available, skipping", name)
    return strategies
