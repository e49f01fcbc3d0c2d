from __future__ import annotations

from typing import Any, Callable

# Named filter points
WEB_SERVICE_PARAMS = "web-service-params"  # query params, before the control code is attached
REQUEST_ARGS = "ajax-args"  # httpx request kwargs, right before dispatch

Filter = Callable[..., Any]


class FilterPipeline:
    """
    Ordered interceptors keyed by filter name.

    Each filter receives the current value plus the extra args given to apply()
    and must return the (possibly new) value. Lower priority runs first; equal
    priorities keep insertion order.
    """
    def __init__(self):
        self._filters: dict[str, list[tuple[int, int, Filter]]] = {}
        self._seq = 0

    def add_filter(self, name: str, fn: Filter, priority: int = 10) -> None:
        self._seq += 1
        entries = self._filters.setdefault(name, [])
        entries.append((priority, self._seq, fn))
        entries.sort(key=lambda e: (e[0], e[1]))

    def remove_filter(self, name: str, fn: Filter) -> bool:
        entries = self._filters.get(name, [])
        kept = [e for e in entries if e[2] is not fn]
        self._filters[name] = kept
        return len(kept) != len(entries)

    def has_filters(self, name: str) -> bool:
        return bool(self._filters.get(name))

    def apply(self, name: str, value: Any, *args: Any) -> Any:
        for _prio, _seq, fn in self._filters.get(name, []):
            value = fn(value, *args)
            if value is None:
                raise ValueError(f"filter {fn!r} on '{name}' returned None")
        return value
