from __future__ import annotations

from allotment.modules.utils import hours, overlaps


from typing import NamedTuple
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from datetime import datetime


class Timespan(NamedTuple):
    """ A half-open window [start, end) of UTC instants. """

    start: datetime
    end: datetime

    def overlaps(self, other: Timespan) -> bool:
        return overlaps(self.start, self.end, other.start, other.end)

    def contains(self, other: Timespan) -> bool:
        return self.start <= other.start and other.end <= self.end

    @property
    def hours(self) -> float:
        return hours(self.start, self.end)
