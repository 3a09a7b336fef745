"""
Predicates and enumeration-with-filter helpers.

A predicate is a callable taking one enumerated item (a dict mirroring the
vendor response) and returning bool. Builders cover the comparisons admin
scripts keep repeating: domain suffix, boolean flag, date cutoff, list
membership and substring (e.g. OU path).
"""

from __future__ import annotations

import csv
import logging
import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, Callable, Iterable, Iterator, Optional

logger = logging.getLogger("m365_admin_toolkit.filters")

Predicate = Callable[[dict], bool]

_MS_JSON_DATE = re.compile(r"^/Date\((-?\d+)(?:[+-]\d{4})?\)/$")
_FRACTION = re.compile(r"\.(\d+)")


def _six_digit_fraction(text: str) -> str:
    # .NET round-trip format has 7 fractional digits; fromisoformat wants 6
    return _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), text, count=1)


def get_field(item: dict, field: str) -> Any:
    """Look up a field, following dotted paths (signInActivity.lastSignInDateTime)."""
    value: Any = item
    for part in field.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def parse_datetime(value: Any, assume_utc: bool = True) -> Optional[datetime]:
    """
    Parse the date shapes the services return: ISO-8601 (Graph), PowerShell's
    /Date(ms)/ JSON form, or a datetime. Naive values are taken as UTC unless
    assume_utc is False, in which case they are returned naive.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, str):
        match = _MS_JSON_DATE.match(value.strip())
        if match:
            return datetime.fromtimestamp(int(match.group(1)) / 1000, tz=timezone.utc)
        try:
            dt = datetime.fromisoformat(_six_digit_fraction(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    else:
        return None
    if dt.tzinfo is None and assume_utc:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


# ── Predicate builders ──────────────────────────────────────────────────────

def suffix_match(field: str, suffixes: Iterable[str]) -> Predicate:
    """Case-insensitive suffix match, e.g. UPN ends with '@contoso.com'."""
    wanted = tuple(s.lower() for s in suffixes)

    def predicate(item: dict) -> bool:
        value = get_field(item, field)
        return isinstance(value, str) and value.lower().endswith(wanted)
    return predicate


def flag(field: str, expected: bool = True) -> Predicate:
    def predicate(item: dict) -> bool:
        return bool(get_field(item, field)) is expected
    return predicate


def older_than(
    field: str,
    days: int,
    now: Optional[datetime] = None,
    include_missing: bool = False,
) -> Predicate:
    """
    True when the date in field is before now - days.
    Items with no date (never signed in) match only with include_missing.
    """
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)

    def predicate(item: dict) -> bool:
        dt = parse_datetime(get_field(item, field))
        if dt is None:
            return include_missing
        return dt < cutoff
    return predicate


def in_list(field: str, values: Iterable[str]) -> Predicate:
    wanted = {v.lower() for v in values}

    def predicate(item: dict) -> bool:
        value = get_field(item, field)
        return isinstance(value, str) and value.lower() in wanted
    return predicate


def contains(field: str, fragment: str) -> Predicate:
    fragment = fragment.lower()

    def predicate(item: dict) -> bool:
        value = get_field(item, field)
        return isinstance(value, str) and fragment in value.lower()
    return predicate


def all_of(*predicates: Predicate) -> Predicate:
    return lambda item: all(p(item) for p in predicates)


def any_of(*predicates: Predicate) -> Predicate:
    return lambda item: any(p(item) for p in predicates)


def match_all(item: dict) -> bool:
    return True


# ── Applying predicates ─────────────────────────────────────────────────────

def _safe_test(predicate: Predicate, item: dict) -> bool:
    try:
        return predicate(item)
    except Exception as e:
        logger.warning(f"Filter raised on item, excluded: {type(e).__name__}: {e}")
        return False


def filter_items(items: Iterable[dict], predicate: Predicate) -> Iterator[dict]:
    for item in items:
        if _safe_test(predicate, item):
            yield item


async def filter_stream(items: AsyncIterable[dict], predicate: Predicate) -> AsyncIterator[dict]:
    """Filter a paged async enumeration (e.g. GraphClient.get_all_pages_stream)."""
    async for item in items:
        if _safe_test(predicate, item):
            yield item


# ── Identity lists ──────────────────────────────────────────────────────────

IDENTITY_COLUMNS = ("UserPrincipalName", "Identity", "Mail", "PrimarySmtpAddress", "Path")


def load_identities(path: str | Path) -> list[str]:
    """
    Read identities (UPNs, mailboxes, paths) from a text or CSV file.
    CSV files use the first known identity column, else the first column.
    Blank lines and '#' comments are ignored; duplicates keep first position.
    """
    path = Path(path)
    with open(path, "r", encoding="utf-8-sig", newline="") as fh:
        if path.suffix.lower() == ".csv":
            reader = csv.reader(fh)
            header = next(reader, [])
            column = next((header.index(c) for c in IDENTITY_COLUMNS if c in header), None)
            if column is None:
                # No header: the first row is data
                values = [header[0]] if header else []
                column = 0
            else:
                values = []
            values.extend(row[column] for row in reader if len(row) > column)
        else:
            values = fh.read().splitlines()

    return dedupe(v.strip() for v in values if v.strip() and not v.strip().startswith("#"))


def dedupe(values: Iterable[str]) -> list[str]:
    """Drop case-insensitive duplicates, keeping first position."""
    seen = set()
    unique = []
    for value in values:
        if value.lower() not in seen:
            seen.add(value.lower())
            unique.append(value)
    return unique
