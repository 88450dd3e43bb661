"""
Table id templates.

A table id may contain one or more placeholders in braces that are replaced
with the current UTC time, which gives automatic table rotation:

    "accesslog_{yyyyMMdd}"  ->  "accesslog_20240115"
    "events_{%Y%m}"         ->  "events_202401"

Patterns containing '%' are handed to strftime, anything else is read as a
.NET-style custom date pattern.
"""

import logging
import re
from datetime import datetime, timezone
from typing import Callable, Optional

from google.cloud import bigquery

PLACEHOLDER_PATTERN = re.compile(r"\{([^{}]+)\}")

MONTH_NAMES = ["January", "February", "March", "April", "May", "June", "July",
               "August", "September", "October", "November", "December"]
DAY_NAMES = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]


def _format_token(ch: str, count: int, instant: datetime) -> str:
    if ch == "y":
        if count <= 2:
            year = instant.year % 100
            return f"{year:0{count}d}"
        return f"{instant.year:0{count}d}"
    if ch == "M":
        if count == 1:
            return str(instant.month)
        if count == 2:
            return f"{instant.month:02d}"
        name = MONTH_NAMES[instant.month - 1]
        return name[:3] if count == 3 else name
    if ch == "d":
        if count == 1:
            return str(instant.day)
        if count == 2:
            return f"{instant.day:02d}"
        name = DAY_NAMES[instant.weekday()]
        return name[:3] if count == 3 else name
    if ch == "H":
        return f"{instant.hour:0{min(count, 2)}d}"
    if ch == "h":
        hour = instant.hour % 12 or 12
        return f"{hour:0{min(count, 2)}d}"
    if ch == "m":
        return f"{instant.minute:0{min(count, 2)}d}"
    if ch == "s":
        return f"{instant.second:0{min(count, 2)}d}"
    if ch == "f":
        return f"{instant.microsecond:06d}"[:min(count, 6)]
    if ch == "t":
        marker = "AM" if instant.hour < 12 else "PM"
        return marker[:count]
    # Not a format letter: keep literally
    return ch * count


def format_dotnet_datetime(pattern: str, instant: datetime) -> str:
    """Format ``instant`` with a .NET custom date and time pattern (yyyyMMdd, HH, ...)."""
    out = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]

        # Quoted literal
        if ch in ("'", '"'):
            end = pattern.find(ch, i + 1)
            if end == -1:
                end = len(pattern)
            out.append(pattern[i + 1:end])
            i = end + 1
            continue

        # Escaped character
        if ch == "\\" and i + 1 < len(pattern):
            out.append(pattern[i + 1])
            i += 2
            continue

        count = 1
        while i + count < len(pattern) and pattern[i + count] == ch:
            count += 1
        out.append(_format_token(ch, count, instant))
        i += count

    return "".join(out)


def format_placeholder(pattern: str, instant: datetime) -> str:
    """Default placeholder formatter: strftime for '%' patterns, .NET style otherwise."""
    if "%" in pattern:
        return instant.strftime(pattern)
    return format_dotnet_datetime(pattern, instant)


def _utc(instant: datetime) -> datetime:
    if instant.tzinfo is None:
        return instant.replace(tzinfo=timezone.utc)
    return instant.astimezone(timezone.utc)


class TableIdExpander:
    """
    Resolves the table id template to the current table name.

    Templates without placeholders are expanded once and frozen. When the
    expanded name changes, ``on_change(previous, current)`` is called so the
    table existence check can run again for the new table.
    """

    def __init__(
        self,
        project_id: str,
        dataset_id: str,
        template: str,
        formatter: Callable[[str, datetime], str] = format_placeholder,
        on_change: Optional[Callable[[Optional[str], str], None]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.project_id = project_id
        self.dataset_id = dataset_id
        self.template = template
        self.formatter = formatter
        self.on_change = on_change
        self.clock = clock
        self.logger = logging.getLogger(__name__)

        self.expandable = PLACEHOLDER_PATTERN.search(template) is not None
        self.expanded_name: Optional[str] = None

    def expand(self, now: Optional[datetime] = None, force: bool = False) -> str:
        """Return the current table name, recomputing it for templated ids."""
        if self.expanded_name is not None and not (force or self.expandable):
            return self.expanded_name

        instant = _utc(now or self.clock())
        expanded = PLACEHOLDER_PATTERN.sub(
            lambda m: self.formatter(m.group(1), instant),
            self.template,
        )

        if expanded != self.expanded_name:
            previous = self.expanded_name
            self.expanded_name = expanded
            if previous is not None:
                self.logger.info(f"Table id rotated: {previous} -> {expanded}")
            if self.on_change is not None:
                self.on_change(previous, expanded)

        return expanded

    @property
    def table_ref(self) -> bigquery.TableReference:
        """Reference to the current table (expands on first use)."""
        name = self.expanded_name if self.expanded_name is not None else self.expand()
        dataset_ref = bigquery.DatasetReference(self.project_id, self.dataset_id)
        return dataset_ref.table(name)

    @property
    def full_table_id(self) -> str:
        return f"{self.project_id}.{self.dataset_id}.{self.expanded_name}"
