"""Field normalization for drift comparison.

Desired field values and the values a provider reports back are often
syntactically different but semantically equal. Comparing them naively
would classify every cycle as an Update and the engine would never converge.

COMMON FALSE POSITIVES HANDLED:
1. Empty list / empty mapping / empty string / null / missing
2. String "true" vs boolean true
3. Numeric strings ("3" vs 3)
4. Case differences in SKU and VM size names
5. Ordering of unordered collections (availability zones, tags)

Rules match on resource kind and a dotted field path; `*` matches one path
segment and `**` matches any number of segments.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import ResourceKind

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """Types of normalization operations."""

    # Empty equivalence: [], {}, "", null, missing are equivalent
    EMPTY_EQUIVALENCE = "empty_equivalence"

    # Boolean normalization: "true", "True", True, 1 are equivalent
    BOOLEAN_NORMALIZE = "boolean_normalize"

    # Numeric string normalization: "100" == 100
    NUMERIC_STRING = "numeric_string"

    # Case normalization for enums/strings
    CASE_INSENSITIVE = "case_insensitive"

    # Array order independence
    ARRAY_UNORDERED = "array_unordered"

    # Default value equivalence
    DEFAULT_VALUE = "default_value"


@dataclass(frozen=True)
class NormalizationRule:
    """A single normalization rule.

    Attributes:
        kind: Resource kind to match ("*" for all kinds)
        path_pattern: Dotted field path pattern (supports * and **)
        normalization_type: Type of normalization to apply
        params: Additional parameters for the normalization
        reason: Human-readable explanation
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, kind: ResourceKind, path: str) -> bool:
        """Check if this rule applies to a kind and field path."""
        if self.kind != "*" and self.kind.lower() != kind.value.lower():
            return False
        return self.path_pattern == "*" or _glob_match(path.lower(), self.path_pattern.lower())


def _glob_match(value: str, pattern: str) -> bool:
    """Simple glob matching with * and ** support."""
    regex_pattern = "^"
    i = 0
    while i < len(pattern):
        if pattern[i : i + 3] == "**.":
            # Zero or more leading segments
            regex_pattern += "(?:.*\\.)?"
            i += 3
        elif pattern[i : i + 2] == "**":
            regex_pattern += ".*"
            i += 2
        elif pattern[i] == "*":
            regex_pattern += "[^.]*"
            i += 1
        else:
            regex_pattern += re.escape(pattern[i])
            i += 1
    regex_pattern += "$"

    return bool(re.match(regex_pattern, value))


# Default normalization rules for managed-cluster resources
DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    NormalizationRule(
        kind="*",
        path_pattern="**",
        normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        reason="Empty collections equal null/missing",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.enabled",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Boolean enabled flags may be string or bool",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.enable_*",
        normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        reason="Feature toggles may be string or bool",
    ),
    NormalizationRule(
        kind="NodePool",
        path_pattern="**.*_count",
        normalization_type=NormalizationType.NUMERIC_STRING,
        reason="Node counts may be rendered as strings",
    ),
    NormalizationRule(
        kind="NodePool",
        path_pattern="vm_size",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="VM size names are case-insensitive",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.sku",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="SKU names may have case variations",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="location",
        normalization_type=NormalizationType.CASE_INSENSITIVE,
        reason="Region names are case-insensitive",
    ),
    NormalizationRule(
        kind="*",
        path_pattern="**.zones",
        normalization_type=NormalizationType.ARRAY_UNORDERED,
        reason="Zone order doesn't matter",
    ),
    NormalizationRule(
        kind="LogWorkspace",
        path_pattern="retention_days",
        normalization_type=NormalizationType.DEFAULT_VALUE,
        params={"default": 30},
        reason="Workspace retention defaults to 30 days",
    ),
]


class FieldNormalizer:
    """Normalizes field values so semantically equal values compare equal."""

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

    def normalize_value(self, value: Any, kind: ResourceKind, path: str) -> Any:
        """Normalize a value (recursively) based on applicable rules."""
        if isinstance(value, dict):
            value = {
                key: self.normalize_value(item, kind, f"{path}.{key}")
                for key, item in value.items()
            }
            # Drop members that normalized to nothing so {a: []} == {}
            value = {key: item for key, item in value.items() if item is not None}

        normalized = value
        for rule in self._rules:
            if rule.matches(kind, path):
                normalized = self._apply_normalization(normalized, rule)
        return normalized

    def _apply_normalization(self, value: Any, rule: NormalizationRule) -> Any:
        match rule.normalization_type:
            case NormalizationType.EMPTY_EQUIVALENCE:
                return self._normalize_empty(value)
            case NormalizationType.BOOLEAN_NORMALIZE:
                return self._normalize_boolean(value)
            case NormalizationType.NUMERIC_STRING:
                return self._normalize_numeric_string(value)
            case NormalizationType.CASE_INSENSITIVE:
                return value.lower() if isinstance(value, str) else value
            case NormalizationType.ARRAY_UNORDERED:
                return self._normalize_array_order(value)
            case NormalizationType.DEFAULT_VALUE:
                return rule.params.get("default") if value is None else value
            case _:
                return value

    def _normalize_empty(self, value: Any) -> Any:
        """[], {}, "", null all become None for comparison."""
        if isinstance(value, str | list | tuple | dict) and len(value) == 0:
            return None
        return value

    def _normalize_boolean(self, value: Any) -> bool | Any:
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            if value.lower() in ("true", "yes", "1", "on"):
                return True
            if value.lower() in ("false", "no", "0", "off"):
                return False
        if isinstance(value, int):
            if value == 1:
                return True
            if value == 0:
                return False
        return value

    def _normalize_numeric_string(self, value: Any) -> int | float | Any:
        if isinstance(value, str):
            try:
                if "." in value:
                    return float(value)
                return int(value)
            except ValueError:
                pass
        return value

    def _normalize_array_order(self, value: Any) -> list[Any] | Any:
        if isinstance(value, list | tuple):
            return sorted(value, key=lambda x: str(x))
        return value

    def are_equivalent(self, a: Any, b: Any, kind: ResourceKind, path: str) -> bool:
        """Check if two values are semantically equivalent."""
        return self.normalize_value(a, kind, path) == self.normalize_value(b, kind, path)

    def changed_fields(
        self,
        kind: ResourceKind,
        desired: dict[str, Any],
        applied: dict[str, Any],
    ) -> set[str]:
        """Top-level field names whose values differ after normalization."""
        changed: set[str] = set()
        for name in set(desired) | set(applied):
            before, after = applied.get(name), desired.get(name)
            if not self.are_equivalent(after, before, kind, name):
                changed.add(name)
            elif before != after:
                logger.debug(
                    "Change normalized away",
                    extra={"kind": kind.value, "path": name, "before": before, "after": after},
                )
        return changed

