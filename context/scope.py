"""
Variable Scope — layered lookup over a conversation's variables.

Two tiers:
  - defaults: global settings variables merged with the flow's global/flow
    tier defaults. Read-only (MappingProxyType) and shared by every
    conversation on the same flow version.
  - session:  the conversation's own values (user_data). Seeded from the
    flow's session-tier defaults and mutated by input, menu, and api nodes.

Lookups never raise. A missing name resolves to "" so templates and
conditions degrade to empty text instead of failing the conversation.
"""
from __future__ import annotations

import copy
from types import MappingProxyType
from typing import Any, Mapping, Optional

from utils.templating import get_nested_value, interpolate


class VariableScope:

    def __init__(self, defaults: Optional[Mapping[str, Any]] = None, session: Optional[dict[str, Any]] = None):
        if defaults is None:
            defaults = MappingProxyType({})
        elif not isinstance(defaults, MappingProxyType):
            defaults = MappingProxyType(dict(defaults))
        self._defaults: Mapping[str, Any] = defaults
        self._session: dict[str, Any] = session if session is not None else {}

    @classmethod
    def restore(cls, defaults: Mapping[str, Any], snapshot: Optional[dict[str, Any]]) -> VariableScope:
        """Rehydrate from a persisted snapshot. The snapshot is copied, not aliased."""
        return cls(defaults, copy.deepcopy(snapshot or {}))

    @property
    def defaults(self) -> Mapping[str, Any]:
        return self._defaults

    def _layers(self):
        return (self._session, self._defaults)

    def get(self, name: str, default: Any = "") -> Any:
        name = (name or "").strip()
        if not name:
            return default
        for layer in self._layers():
            if name in layer:
                value = layer[name]
                return default if value is None else value

        head, _, rest = name.partition(".")
        if rest:
            for layer in self._layers():
                if head in layer:
                    value = get_nested_value({head: layer[head]}, name)
                    return default if value is None else value
        return default

    def has(self, name: str) -> bool:
        return any(name in layer for layer in self._layers())

    def set(self, name: str, value: Any) -> None:
        """Write to the session tier. Defaults are never modified."""
        self._session[name] = value

    def update(self, values: Mapping[str, Any]) -> None:
        for k, v in values.items():
            self.set(k, v)

    def render(self, template: Any) -> str:
        """Substitute {{name}} placeholders. Unresolved names render as ''."""
        if template is None:
            return ""
        return interpolate(str(template), self.get)

    def render_value(self, value: Any) -> Any:
        """Render every string inside a nested dict/list structure."""
        if isinstance(value, str):
            return self.render(value)
        if isinstance(value, dict):
            return {k: self.render_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.render_value(v) for v in value]
        return value

    def snapshot(self) -> dict[str, Any]:
        return copy.deepcopy(self._session)

    def as_dict(self) -> dict[str, Any]:
        merged = dict(self._defaults)
        merged.update(self._session)
        return merged

    def __repr__(self) -> str:
        return f"<VariableScope session={len(self._session)} defaults={len(self._defaults)}>"
