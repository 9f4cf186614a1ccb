"""
ICS export of resolved calendar items
"""

from datetime import datetime, timezone
from typing import Iterable, Optional

from models.calendar import CalendarItem, to_utc

PRODID = "-//MyZenTribe//Calendar//EN"
UID_DOMAIN = "myzentribe.com"
LINE_OCTETS = 75


def format_ics_datetime(value: datetime) -> str:
    return to_utc(value).strftime("%Y%m%dT%H%M%SZ")


def escape_ics(text: str) -> str:
    return (
        text.replace("\\", "\\\\")
        .replace(";", "\\;")
        .replace(",", "\\,")
        .replace("\r\n", "\\n")
        .replace("\n", "\\n")
    )


def fold_ics_line(line: str) -> str:
    """Fold a content line into CRLF + space continuations of at most 75 octets

    Splits only between characters so multi-byte UTF-8 sequences stay whole.
    """
    if len(line.encode("utf-8")) <= LINE_OCTETS:
        return line
    parts = []
    current = ""
    size = 0
    limit = LINE_OCTETS
    for char in line:
        width = len(char.encode("utf-8"))
        if size + width > limit:
            parts.append(current)
            # continuation lines spend one octet on the leading space
            current, size, limit = " ", 1, LINE_OCTETS
        current += char
        size += width
    parts.append(current)
    return "\r\n".join(parts)


def instance_uid(item: CalendarItem) -> str:
    if item.source == "event" and item.is_recurring:
        return f"{item.event_id}-{format_ics_datetime(item.start)}@{UID_DOMAIN}"
    return f"{item.event_id}@{UID_DOMAIN}"


def export_ics(items: Iterable[CalendarItem], now: Optional[datetime] = None) -> str:
    """Render items as a VCALENDAR document (CRLF line endings)

    Recurring occurrences are exported as standalone VEVENTs, each with its
    own UID, since the series rule itself is not part of the export. Long
    lines are folded.
    """
    stamp = format_ics_datetime(now or datetime.now(timezone.utc))
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
    ]

    for item in items:
        lines.append("BEGIN:VEVENT")
        lines.append(f"UID:{instance_uid(item)}")
        lines.append(f"DTSTAMP:{stamp}")
        if item.all_day:
            lines.append(f"DTSTART;VALUE=DATE:{item.start.strftime('%Y%m%d')}")
            lines.append(f"DTEND;VALUE=DATE:{item.end.strftime('%Y%m%d')}")
        else:
            lines.append(f"DTSTART:{format_ics_datetime(item.start)}")
            lines.append(f"DTEND:{format_ics_datetime(item.end)}")
        lines.append(f"SUMMARY:{escape_ics(item.title)}")
        if item.description:
            lines.append(f"DESCRIPTION:{escape_ics(item.description)}")
        if item.location:
            lines.append(f"LOCATION:{escape_ics(item.location)}")
        if item.is_cancelled:
            lines.append("STATUS:CANCELLED")
        lines.append("END:VEVENT")

    lines.append("END:VCALENDAR")
    return "\r\n".join(fold_ics_line(line) for line in lines) + "\r\n"
