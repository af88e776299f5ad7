"""Diff normalization rules engine for drift detection.

The reconciler compares the body it would send for a descriptor with the
resource the provider returns. Remote APIs echo values back in slightly
different shapes, so a naive comparison reports drift that is only
syntactic. This module normalizes both sides before comparing.

DESIGN PHILOSOPHY:
- Subset comparison: only fields the descriptor declares are compared;
  server-populated fields (etags, timestamps, defaults) never count as drift
- Semantic equivalence: empty array ≡ null ≡ missing
- Type coercion: "100" vs 100, "true" vs true (proto3 JSON renders int64 as string)
- Order independence for collections whose order carries no meaning

COMMON FALSE POSITIVES HANDLED:
1. Empty list/dict/string vs missing property
2. Cloud SQL returns dataDiskSizeGb as a string
3. Enum case differences ("DOCKER" vs "docker")
4. Cloud Run env entries returned in a different order
5. Trailing slashes in URLs
6. minInstanceCount: 0 and readOnly: false omitted from proto3 JSON
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .descriptors import ResourceKind

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], {}, "", null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Boolean normalization: "true", "True", True are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Numeric string normalization: "100" == 100
    NUMERIC_STRING = "numeric_string"

    # Case normalization for enums/strings
    CASE_INSENSITIVE = "case_insensitive"

    # URL normalization (trailing slashes, scheme case)
    URL_NORMALIZE = "url_normalize"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"

    # Proto3 defaults: 0 and false are omitted from JSON responses
    PROTO_DEFAULT = "proto_default"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Resource kind to match, or "*" for every kind
        path_pattern: Property path pattern (dotted, supports * and **)
        normalization_type: Type of normalization to apply
        reason: Human-readable explanation
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    reason: str = ""

    def matches(self, kind: str, path: str) -> bool:
        """Check if this rule applies to a resource kind and path."""
        if self.kind != "*" and self.kind != kind:
            return False
        return self.path_pattern in ("*", "**") or _glob_match(path, self.path_pattern)


def _glob_match(value: str, pattern: str) -> bool:
    """Simple glob matching with * (one segment) and ** (any depth)."""
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i:i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        else:
            regex_pattern += re.escape(pattern[i])
            i += 1
    regex_pattern += "$"
    return re.match(regex_pattern, value) is not None


def _sort_key(item: Any) -> str:
    if isinstance(item, Mapping) and "name" in item:
        return str(item["name"])
    return json.dumps(item, sort_keys=True, default=str)


DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        kind="*",
        path_pattern="**",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="APIs omit empty collections from responses",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="int64 fields are serialized as strings in JSON responses",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean flags may round-trip as strings",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**",
        normalization_type=NormalizationType.PROTO_DEFAULT,
        reason="Google APIs omit zero and false values from responses",
    ),
    NormalizationRule(
        kind=ResourceKind.ARTIFACT_REPOSITORY.value,
        path_pattern="format",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Repository format enum is case-insensitive",
    ),
    NormalizationRule(
        kind=ResourceKind.STORAGE_BUCKET.value,
        path_pattern="location",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Bucket locations are returned upper-case",
    ),
    NormalizationRule(
        kind=ResourceKind.STORAGE_BUCKET.value,
        path_pattern="storageClass",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Storage class enum is case-insensitive",
    ),
    NormalizationRule(
        kind=ResourceKind.COMPUTE_SERVICE.value,
        path_pattern="template.containers.*.env",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Environment variable order has no meaning",
    ),
    NormalizationRule(
        kind=ResourceKind.COMPUTE_SERVICE.value,
        path_pattern="template.volumes",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Volume order has no meaning",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**Url",
        normalization_type=NormalizationType.URL_NORMALIZE,
        reason="Trailing slashes are not significant",
    ),
]


class DiffNormalizer:
    """Compares desired bodies with observed resources, ignoring syntax-only differences."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        self._rules: list[NormalizationRule] = []
        if enable_default_rules:
            self._rules.extend(DEFAULT_NORMALIZATION_RULES)
        if rules:
            self._rules.extend(rules)

    def normalize_value(self, value: Any, kind: str, path: str) -> Any:
        """Normalize a scalar or collection based on applicable rules."""
        normalized = value
        for rule in self._rules:
            if rule.matches(kind, path):
                normalized = self._apply_normalization(normalized, rule.normalization_type)
        return normalized

    def _apply_normalization(self, value: Any, normalization: NormalizationType) -> Any:
        match normalization:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return self._normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return self._normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return self._normalize_numeric_string(value)
            case NormalizationType.CASE_INSENSITIVE:
                return value.lower() if isinstance(value, str) else value
            case NormalizationType.URL_NORMALIZE:
                return self._normalize_url(value)
            case NormalizationType.ARRAY_UNORDERED:
                return self._normalize_array_order(value)
            case NormalizationType.PROTO_DEFAULT:
                return self._normalize_proto_default(value)
            case _:
                return value

    def _normalize_empty(self, value: Any) -> Any:
        """[], {}, "" and null all become None."""
        if value in ("", None) or (isinstance(value, (list, dict, tuple)) and not value):
            return None
        return value

    def _normalize_boolean(self, value: Any) -> bool | Any:
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        return value

    def _normalize_numeric_string(self, value: Any) -> int | float | Any:
        if isinstance(value, str) and re.fullmatch(r"-?\d+(\.\d+)?", value):
            return float(value) if "." in value else int(value)
        return value

    def _normalize_url(self, value: Any) -> str | Any:
        if isinstance(value, str) and value.lower().startswith(("http://", "https://")):
            scheme_end = value.index("://")
            return value[:scheme_end].lower() + value[scheme_end:].rstrip("/")
        return value

    def _normalize_proto_default(self, value: Any) -> Any:
        if value is False:
            return None
        if isinstance(value, (int, float)) and not isinstance(value, bool) and value == 0:
            return None
        return value

    def _normalize_array_order(self, value: Any) -> Any:
        if isinstance(value, (list, tuple)):
            return sorted(value, key=_sort_key)
        return value

    def diff(
        self,
        kind: ResourceKind | str,
        desired: Mapping[str, Any],
        observed: Mapping[str, Any] | None,
    ) -> list[str]:
        """Return dotted paths where observed diverges from desired.

        Only paths present in desired are compared.
        """
        kind_name = kind.value if isinstance(kind, ResourceKind) else kind
        changed: list[str] = []
        self._compare(kind_name, "", desired, observed or {}, changed)
        if changed:
            logger.debug(
                "Drift detected",
                extra={"kind": kind_name, "changed_paths": changed},
            )
        return changed

    def _compare(
        self,
        kind: str,
        path: str,
        desired: Any,
        observed: Any,
        changed: list[str],
    ) -> None:
        desired = self.normalize_value(desired, kind, path) if path else desired
        observed = self.normalize_value(observed, kind, path) if path else observed

        if isinstance(desired, Mapping):
            if observed is not None and not isinstance(observed, Mapping):
                changed.append(path or "<root>")
                return
            observed = observed or {}
            for key, value in desired.items():
                child = f"{path}.{key}" if path else str(key)
                self._compare(kind, child, value, observed.get(key), changed)
            return

        if isinstance(desired, (list, tuple)):
            if not isinstance(observed, (list, tuple)) or len(observed) != len(desired):
                changed.append(path)
                return
            before = len(changed)
            for index, (want, have) in enumerate(zip(desired, observed, strict=True)):
                self._compare(kind, f"{path}.{index}", want, have, changed)
            if len(changed) > before:
                # Report the collection once rather than each element
                del changed[before:]
                changed.append(path)
            return

        if desired != observed:
            changed.append(path)

