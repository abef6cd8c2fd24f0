"""freshline package exports."""

from __future__ import annotations

from importlib import import_module
from typing import Any

__all__ = [
    "ConnectionManager",
    "DataAccessFacade",
    "Debouncer",
    "FreshlineClient",
    "PolicyEvaluator",
    "Principal",
    "SearchSession",
    "TTLCache",
    "ThrottledBuffer",
]

_EXPORTS = {
    "ConnectionManager": "freshline.realtime.connection",
    "DataAccessFacade": "freshline.data.facade",
    "Debouncer": "freshline.shaping.debounce",
    "FreshlineClient": "freshline.client",
    "PolicyEvaluator": "freshline.access.policy",
    "Principal": "freshline.access.policy",
    "SearchSession": "freshline.data.search",
    "TTLCache": "freshline.core.cache",
    "ThrottledBuffer": "freshline.shaping.throttle",
}


def __getattr__(name: str) -> Any:
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(name)
    attr = getattr(import_module(module_name), name)
    globals()[name] = attr
    return attr


def __dir__() -> list[str]:
    return sorted(set(globals()) | set(__all__))
