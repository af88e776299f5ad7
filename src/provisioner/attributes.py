"""Resolved-attributes table shared across reconciliation branches.

Each descriptor records the remote-assigned attributes its dependents need
(connection names, service account emails, pinned secret versions) exactly
once, after it reaches Ready. The graph guarantees a single writer per key,
so the only synchronization needed is a point-wise insert.
"""

from __future__ import annotations

import threading
from collections.abc import Mapping
from typing import Any

from .binding import SecretMaterial
from .descriptors import AttributeRef, SecretRef

# Placeholder rendered for attributes that only exist after apply
UNKNOWN = "(known after apply)"


class UnresolvedReference(KeyError):
    """Raised when a reference points at an attribute not yet recorded."""

    def __init__(self, ref: AttributeRef) -> None:
        super().__init__(str(ref))
        self.ref = ref


class AttributeTable:
    """Append-only mapping of descriptor id to resolved attributes."""

    def __init__(self) -> None:
        self._values: dict[str, dict[str, Any]] = {}
        self._lock = threading.Lock()

    def __contains__(self, descriptor_id: object) -> bool:
        return descriptor_id in self._values

    def record(self, descriptor_id: str, attributes: Mapping[str, Any]) -> None:
        """Record attributes for a descriptor.

        Raises:
            ValueError: If the descriptor already recorded attributes.
            TypeError: If a value is secret material.
        """
        for name, value in attributes.items():
            if isinstance(value, (SecretMaterial, SecretRef)):
                raise TypeError(
                    f"Refusing to record secret material as attribute '{descriptor_id}.{name}'"
                )

        with self._lock:
            if descriptor_id in self._values:
                raise ValueError(f"Attributes for '{descriptor_id}' are already recorded")
            self._values[descriptor_id] = dict(attributes)

    def get(self, descriptor_id: str, attribute: str) -> Any:
        try:
            return self._values[descriptor_id][attribute]
        except KeyError as e:
            raise UnresolvedReference(AttributeRef(descriptor_id, attribute)) from e

    def attributes(self, descriptor_id: str) -> dict[str, Any]:
        return dict(self._values.get(descriptor_id, {}))

    def snapshot(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            return {k: dict(v) for k, v in self._values.items()}

    def resolve(self, value: Any) -> Any:
        """Replace every AttributeRef in value with its recorded attribute.

        SecretRefs are left in place for the binding engine.

        Raises:
            UnresolvedReference: If a referenced attribute is missing.
        """
        return self._substitute(value, strict=True)

    def resolve_partial(self, value: Any) -> Any:
        """Like resolve(), but missing attributes become UNKNOWN."""
        return self._substitute(value, strict=False)

    def _substitute(self, value: Any, *, strict: bool) -> Any:
        if isinstance(value, AttributeRef):
            if strict:
                return self.get(value.descriptor_id, value.attribute)
            try:
                return self.get(value.descriptor_id, value.attribute)
            except UnresolvedReference:
                return UNKNOWN
        if isinstance(value, Mapping):
            return {k: self._substitute(v, strict=strict) for k, v in value.items()}
        if isinstance(value, list):
            return [self._substitute(v, strict=strict) for v in value]
        if isinstance(value, tuple):
            return tuple(self._substitute(v, strict=strict) for v in value)
        return value


def strip_secrets(value: Any) -> Any:
    """Drop SecretRef-valued entries so diffs never involve secret values."""
    if isinstance(value, Mapping):
        return {
            k: strip_secrets(v) for k, v in value.items() if not isinstance(v, SecretRef)
        }
    if isinstance(value, list):
        return [strip_secrets(v) for v in value if not isinstance(v, SecretRef)]
    if isinstance(value, tuple):
        return tuple(strip_secrets(v) for v in value if not isinstance(v, SecretRef))
    return value
