from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import types
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import relationship
from sqlalchemy.orm import Mapped
from sqlalchemy.schema import CheckConstraint
from sqlalchemy.schema import ForeignKey
from sqlalchemy.schema import Index

from allotment.db.models.base import ORMBase
from allotment.db.models.timespan import Timespan
from allotment.db.models.timestamp import TimestampMixin


from typing import Literal
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from allotment.db.models import Allocation


EventStatus = Literal['draft', 'published', 'cancelled']
EVENT_STATUSES: tuple[EventStatus, ...] = ('draft', 'published', 'cancelled')


class Event(TimestampMixin, ORMBase):
    """ The window during which resources are allocated.

    Events are owned by the calendar of the consumer. Allotment only knows
    what it needs to look up windows and to produce its reports. The window
    is half-open: an event ending at 10:00 and one starting at 10:00 do not
    overlap.

    Cancelled events hold no capacity. Their allocations are kept, but
    ignored by availability checks and reports.

    """

    __tablename__ = 'events'

    id: Mapped[UUID] = mapped_column(primary_key=True)

    title: Mapped[str] = mapped_column(types.Text())

    start: Mapped[datetime]

    end: Mapped[datetime]

    status: Mapped[EventStatus] = mapped_column(
        types.Enum(*EVENT_STATUSES, name='event_status'),
        default='published'
    )

    organization_id: Mapped[UUID | None]

    #: events may be nested within a parent event (e.g. the sessions of a
    #: conference), the containment is checked by the reports only
    parent_id: Mapped[UUID | None] = mapped_column(
        ForeignKey('events.id', ondelete='SET NULL')
    )

    #: number of attendees the event is planned for
    capacity: Mapped[int] = mapped_column(default=0)

    allow_external_attendees: Mapped[bool] = mapped_column(default=False)

    parent: Mapped[Event | None] = relationship(
        remote_side=[id],
        back_populates='children'
    )

    children: Mapped[list[Event]] = relationship(back_populates='parent')

    allocations: Mapped[list[Allocation]] = relationship(
        back_populates='event',
        cascade='all, delete-orphan'
    )

    attendances: Mapped[list[Attendance]] = relationship(
        back_populates='event',
        cascade='all, delete-orphan'
    )

    __table_args__ = (
        CheckConstraint('start < "end"', name='window_check'),
        Index('event_window_ix', 'start', 'end'),
        Index('event_parent_ix', 'parent_id'),
    )

    def __init__(self) -> None:
        # NOTE: Avoid auto-generated __init__, the mypy plugin is
        #       deprecated and cannot be used with newer versions.
        pass

    def __repr__(self) -> str:
        return f'<Event {self.title!r} {self.start} - {self.end}>'

    @property
    def window(self) -> Timespan:
        return Timespan(self.start, self.end)

    @property
    def is_cancelled(self) -> bool:
        return self.status == 'cancelled'


class Attendance(TimestampMixin, ORMBase):
    """ The registration of a person for an event. Attendances without user
    are external guests.

    """

    __tablename__ = 'attendances'

    id: Mapped[UUID] = mapped_column(primary_key=True)

    user_id: Mapped[UUID | None]

    event_id: Mapped[UUID] = mapped_column(
        ForeignKey('events.id', ondelete='CASCADE')
    )

    checked_in_at: Mapped[datetime | None]

    event: Mapped[Event] = relationship(back_populates='attendances')

    __table_args__ = (
        Index('attendance_event_ix', 'event_id'),
        Index('attendance_user_ix', 'user_id'),
    )

    def __init__(self) -> None:
        pass

    @property
    def is_external(self) -> bool:
        return self.user_id is None
