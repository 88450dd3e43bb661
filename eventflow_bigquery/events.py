"""
Event records and property lookup.

The row mapper never touches a record directly; it asks a lookup function for
a named value and gets back either the value or ``MISSING``. ``None`` is a
real value (an explicit null) and is not the same thing as ``MISSING``.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional


class _Missing:
    """Sentinel for a property that does not exist on a record."""

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING = _Missing()

# (record, name) -> value or MISSING
PropertyLookup = Callable[[Any, str], Any]


@dataclass
class EventData:
    """An event as delivered by the hosting pipeline."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    provider_name: Optional[str] = None
    level: Optional[str] = None
    keywords: int = 0
    payload: Dict[str, Any] = field(default_factory=dict)
    metadata: List[Dict[str, Any]] = field(default_factory=list)

    def try_get_property_value(self, name: str) -> Any:
        """Look up a payload property first, then the standard event properties."""
        if name in self.payload:
            return self.payload[name]

        standard = {
            "Timestamp": self.timestamp,
            "ProviderName": self.provider_name,
            "Level": self.level,
            "Keywords": self.keywords,
        }
        if name in standard:
            return standard[name]
        return MISSING

    def add_payload_property(self, name: str, value: Any) -> None:
        self.payload[name] = value


def lookup_property(record: Any, name: str) -> Any:
    """
    Default property lookup.

    EventData uses its own lookup, mappings are looked up by key and any other
    object by attribute.
    """
    if isinstance(record, EventData):
        return record.try_get_property_value(name)
    if isinstance(record, Mapping):
        return record[name] if name in record else MISSING
    return getattr(record, name, MISSING)
