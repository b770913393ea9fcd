from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Mapping, Optional, Union


Scalar = Union[str, int, float, bool]


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @classmethod
    def parse(cls, value: Any, default: Optional["Severity"] = None) -> "Severity":
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        try:
            return cls(text)
        except ValueError:
            if default is not None:
                return default
            raise


# Top-level attributes visible to rules, checked before metadata.
TOP_LEVEL_FIELDS = ("id", "timestamp", "source", "severity", "category", "description", "host")


def is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float, bool))


@dataclass(frozen=True)
class SecurityEvent:
    """
    A normalized security event as delivered to the matcher.

    `metadata` only holds scalar values (str/int/float/bool). It is exposed
    as a read-only mapping so an event cannot change while rules run on it.
    """
    id: str
    timestamp: datetime
    source: str
    severity: Severity
    category: str
    description: str = ""
    host: str = ""
    metadata: Mapping[str, Scalar] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, "severity", Severity.parse(self.severity))
        for key, value in self.metadata.items():
            if not is_scalar(value):
                raise TypeError(f"metadata[{key!r}] must be a scalar, got {type(value).__name__}")
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))


def resolve_field(event: SecurityEvent, name: str) -> Optional[Scalar]:
    """
    Look a rule field up on an event: top-level attributes first, then
    metadata. Returns None when the field is absent.
    """
    if name in TOP_LEVEL_FIELDS:
        value = getattr(event, name)
        if isinstance(value, datetime):
            return value.isoformat()
        if isinstance(value, Severity):
            return value.value
        return value
    return event.metadata.get(name)
