from __future__ import annotations

import sedate

from dateutil.parser import isoparse
from uuid import UUID

from allotment.modules import errors


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime


def as_instant(value: datetime) -> datetime:
    """ Returns the given timezone-aware datetime as UTC instant.

    Wall-clock (naive) datetimes are refused, since it is not possible to
    tell which instant they are meant to describe.

    """
    if value.tzinfo is None or value.utcoffset() is None:
        raise errors.NotTimezoneAware(value)

    return sedate.to_timezone(value, 'UTC')


def parse_instant(value: str | datetime) -> datetime:
    """ Parses an ISO-8601 timestamp (as sent by clients) into an UTC
    instant. The timestamp must carry an offset.

    """
    if isinstance(value, str):
        try:
            value = isoparse(value)
        except ValueError:
            raise errors.InvalidWindow(value) from None

    return as_instant(value)


def prepare_window(start: datetime, end: datetime) -> tuple[datetime, datetime]:
    """ Normalizes the half-open window [start, end) to UTC instants and
    makes sure it is not empty.

    """
    start, end = as_instant(start), as_instant(end)

    if start >= end:
        raise errors.InvalidWindow(start, end)

    return start, end


def overlaps(
    start: datetime,
    end: datetime,
    other_start: datetime,
    other_end: datetime
) -> bool:
    """ True if the half-open windows [start, end) and [other_start,
    other_end) share at least one instant. Windows touching at their
    boundaries do not overlap.

    Note that sedate.overlaps treats the end as inclusive, which is not
    what we want here.

    """
    return start < other_end and other_start < end


def hours(start: datetime, end: datetime) -> float:
    return (end - start).total_seconds() / 3600


def peak_usage(windows: Iterable[tuple[datetime, datetime, int]]) -> int:
    """ Returns the highest summed quantity found at any single instant
    over the given (start, end, quantity) windows.

    Ends sort before starts at the same instant, so back-to-back windows
    are never counted together.

    """
    changes = []
    for start, end, quantity in windows:
        changes.append((start, 1, quantity))
        changes.append((end, 0, -quantity))

    peak = current = 0
    for _, _, delta in sorted(changes, key=lambda c: (c[0], c[1])):
        current += delta
        peak = max(peak, current)

    return peak


def as_uuid(value: UUID | str) -> UUID | None:
    """ Returns the given id as UUID or None, if it is not a valid id. """

    if isinstance(value, UUID):
        return value

    try:
        return UUID(str(value))
    except ValueError:
        return None
