""" Integrity and usage reports over the allocations, events and attendances
of a database.

The reports only read. They take no locks and may therefore see a slightly
outdated state while allocations are being changed. Rows which cannot be
evaluated (for example an attendance of an event which no longer exists)
are left out of a report instead of failing it.

All rows are named tuples, use ``row._asdict()`` to serialize them.

"""
from __future__ import annotations

import logging

from collections import defaultdict
from itertools import combinations
from itertools import groupby
from sqlalchemy import case
from sqlalchemy import func
from sqlalchemy.orm import aliased

from allotment.context.core import ContextServicesMixin
from allotment.db.availability import POLICIES, Usage, consumable_horizon
from allotment.db.models import Attendance, Event, Resource
from allotment.db.queries import Queries
from allotment.modules.utils import hours, peak_usage


from typing import Literal
from typing import NamedTuple
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from allotment.context.core import Context
    from allotment.db.queries import Booking


log = logging.getLogger('allotment')


ConstraintViolationType = Literal[
    'exclusive_double_booking',
    'shareable_over_allocation',
    'consumable_excess',
]
HierarchyViolationType = Literal['starts_before_parent', 'ends_after_parent']
FillStatus = Literal[
    'over-filled', 'well-filled', 'moderately-filled', 'under-filled'
]

VIOLATIONS: dict[str, ConstraintViolationType] = {
    'exclusive': 'exclusive_double_booking',
    'shareable': 'shareable_over_allocation',
    'consumable': 'consumable_excess',
}


class DoubleBooking(NamedTuple):
    user_id: UUID
    first_event_id: UUID
    first_title: str
    first_start: datetime
    first_end: datetime
    second_event_id: UUID
    second_title: str
    second_start: datetime
    second_end: datetime


class ConstraintViolation(NamedTuple):
    resource_id: UUID
    resource_name: str
    violation: ConstraintViolationType
    event_id: UUID
    event_title: str
    start: datetime
    end: datetime
    requested_quantity: int
    total_quantity: int
    allocated_quantity: int
    concurrent_usage: int
    max_concurrent_usage: int | None


class HierarchyViolation(NamedTuple):
    event_id: UUID
    event_title: str
    start: datetime
    end: datetime
    parent_id: UUID
    parent_title: str
    parent_start: datetime
    parent_end: datetime
    violation: HierarchyViolationType


class ResourceUtilization(NamedTuple):
    organization_id: UUID | None
    resource_id: UUID
    resource_name: str
    resource_type: str
    booked_hours: float
    peak_concurrent_usage: int
    max_capacity: int
    underutilized: bool


class ExternalAttendees(NamedTuple):
    event_id: UUID
    title: str
    start: datetime
    end: datetime
    capacity: int
    allow_external_attendees: bool
    external_attendee_count: int


class CapacityUtilization(NamedTuple):
    event_id: UUID
    title: str
    start: datetime
    end: datetime
    capacity: int
    attendance_count: int
    utilization_percentage: float
    fill_status: FillStatus


class ShowUpRate(NamedTuple):
    event_id: UUID
    title: str
    start: datetime
    end: datetime
    total_registrations: int
    checked_in_count: int
    show_up_rate: float


def fill_status(percentage: float) -> FillStatus:
    if percentage > 100:
        return 'over-filled'
    if percentage >= 80:
        return 'well-filled'
    if percentage >= 50:
        return 'moderately-filled'
    return 'under-filled'


def percentage(part: int, total: int) -> float:
    return round(part / total * 100, 2) if total else 0.0


class Reports(ContextServicesMixin):
    """ Reports over the whole database of a context. """

    def __init__(self, context: Context, queries: Queries | None = None):
        self.context = context
        self.queries = queries or Queries(context)

    def double_booked_users(self) -> list[DoubleBooking]:
        """ Returns one row per pair of events a user is registered for
        which overlap. Cancelled events are ignored.

        """
        query = self.session.query(Attendance.user_id, Event)
        query = query.join(Event, Attendance.event_id == Event.id)
        query = query.filter(Attendance.user_id.isnot(None))
        query = self.queries.active_events(query)
        query = query.order_by(Attendance.user_id, Event.start, Event.id)

        rows = []

        for user_id, group in groupby(query, key=lambda row: row[0]):
            # several registrations for the same event count once
            events = list({event.id: event for _, event in group}.values())

            for first, second in combinations(events, 2):
                if not first.window.overlaps(second.window):
                    continue

                rows.append(DoubleBooking(
                    user_id,
                    first.id, first.title, first.start, first.end,
                    second.id, second.title, second.start, second.end
                ))

        return rows

    def violated_constraints(self) -> list[ConstraintViolation]:
        """ Checks every booking against the other bookings of its resource,
        using the same rules as the allocator.

        A booking violates the constraints of its resource if the allocator
        would refuse it, were it booked now. Both sides of a double booking
        are therefore reported.

        Draws on consumables are taken from the allocations, not from the
        ledger, so allocations written without the allocator are covered.

        """
        rows = []

        resources = self.session.query(Resource)
        resources = resources.order_by(Resource.name, Resource.id)

        for resource in resources:
            bookings = self.queries.drawn(resource.id)

            if not bookings:
                continue

            if resource.is_consumable:
                changes = self.queries.stock_changes(resource.id)
            else:
                changes = []

            for own in self.group_by_event(bookings).values():
                row = self.violation(resource, own, bookings, changes)

                if row is not None:
                    rows.append(row)

        return rows

    @staticmethod
    def group_by_event(bookings: list[Booking]) -> dict[UUID, list[Booking]]:
        grouped: dict[UUID, list[Booking]] = defaultdict(list)

        for booking in bookings:
            grouped[booking.event.id].append(booking)

        return grouped

    def violation(
        self,
        resource: Resource,
        own: list[Booking],
        bookings: list[Booking],
        changes: list[tuple[datetime, int]]
    ) -> ConstraintViolation | None:

        event = own[0].event
        demand = sum(b.allocation.quantity for b in own)

        others = [b for b in bookings if b.event.id != event.id]
        overlapping = [b for b in others if b.window.overlaps(event.window)]
        concurrent = len({b.event.id for b in overlapping})

        if resource.is_consumable:
            _, stock, drawn = consumable_horizon(
                resource.total_quantity,
                changes,
                [(b.event.start, b.allocation.quantity) for b in others],
                event.start
            )
            usage = Usage(stock, drawn, concurrent)
        else:
            usage = Usage(
                resource.total_quantity,
                sum(b.allocation.quantity for b in overlapping),
                concurrent
            )

        verdict = POLICIES[resource.type].check(resource, usage, demand)

        if verdict.available:
            return None

        return ConstraintViolation(
            resource.id,
            resource.name,
            VIOLATIONS[resource.type],
            event.id,
            event.title,
            event.start,
            event.end,
            demand,
            usage.total_quantity,
            usage.allocated_quantity + demand,
            usage.concurrent_usage + 1,
            resource.max_concurrent_usage
        )

    def parent_child_violations(self) -> list[HierarchyViolation]:
        """ Returns the events which are not within the window of their
        parent. An event starting before its parent is reported as such,
        even if it also ends after it.

        """
        parent = aliased(Event)

        query = self.session.query(Event, parent)
        query = query.outerjoin(parent, Event.parent_id == parent.id)
        query = query.filter(Event.parent_id.isnot(None))
        query = self.queries.active_events(query)
        query = query.order_by(Event.start, Event.id)

        rows = []

        for child, parent_event in query:
            if parent_event is None:
                log.debug(
                    'Skipping event %s, its parent %s does not exist',
                    child.id, child.parent_id
                )
                continue

            if parent_event.window.contains(child.window):
                continue

            violation: HierarchyViolationType
            if child.start < parent_event.start:
                violation = 'starts_before_parent'
            else:
                violation = 'ends_after_parent'

            rows.append(HierarchyViolation(
                child.id, child.title, child.start, child.end,
                parent_event.id, parent_event.title,
                parent_event.start, parent_event.end,
                violation
            ))

        return rows

    def resource_utilization(
        self,
        organization_id: UUID | None = None,
        threshold: float | None = None
    ) -> list[ResourceUtilization]:
        """ Returns the usage of each resource per organization.

        The organization of a booking is the one of its event. Resources of
        an organization which were never booked are listed with zero usage.

        :threshold:
            Resources booked for fewer hours are flagged as underutilized.
            Defaults to the ``underutilization_threshold`` setting.

        """
        if threshold is None:
            threshold = self.context.get_setting('underutilization_threshold')

        resources = self.session.query(Resource)
        resources = resources.order_by(Resource.name, Resource.id)

        rows = []

        for resource in resources:
            by_organization: dict[UUID | None, list[Booking]]
            by_organization = defaultdict(list)

            for booking in self.queries.drawn(resource.id):
                by_organization[booking.event.organization_id].append(
                    booking)

            if not resource.is_global:
                by_organization.setdefault(resource.organization_id, [])

            if resource.is_shareable and resource.max_concurrent_usage:
                capacity = resource.max_concurrent_usage
            else:
                capacity = resource.total_quantity

            for org, bookings in by_organization.items():
                if organization_id is not None and org != organization_id:
                    continue

                windows = {b.event.id: b.event.window for b in bookings}
                booked = sum(hours(*window) for window in windows.values())
                peak = peak_usage(
                    (b.event.start, b.event.end, b.allocation.quantity)
                    for b in bookings
                )

                rows.append(ResourceUtilization(
                    org,
                    resource.id,
                    resource.name,
                    resource.type,
                    booked,
                    peak,
                    capacity,
                    booked < threshold
                ))

        return rows

    def external_attendees(
        self,
        threshold: int | None = None
    ) -> list[ExternalAttendees]:
        """ Returns the events with at least ``threshold`` attendees without
        user account, the events with the most such attendees first.

        Defaults to the ``external_attendee_threshold`` setting.

        """
        if threshold is None:
            threshold = self.context.get_setting('external_attendee_threshold')

        count = func.count(Attendance.id)

        query = self.session.query(
            Event.id, Event.title, Event.start, Event.end, Event.capacity,
            Event.allow_external_attendees, count
        )
        query = query.join(Attendance, Attendance.event_id == Event.id)
        query = query.filter(Attendance.user_id.is_(None))
        query = self.queries.active_events(query)
        query = query.group_by(
            Event.id, Event.title, Event.start, Event.end, Event.capacity,
            Event.allow_external_attendees
        )
        query = query.having(count >= threshold)
        query = query.order_by(count.desc(), Event.start)

        return [ExternalAttendees(*row) for row in query]

    def _attendance_counts(
        self,
        organization_id: UUID | None
    ) -> list[tuple[Event, int, int]]:

        registered = func.count(Attendance.id)
        checked_in = func.count(case(
            (Attendance.checked_in_at.isnot(None), Attendance.id)
        ))

        query = self.session.query(Event, registered, checked_in)
        query = query.outerjoin(Attendance, Attendance.event_id == Event.id)
        query = self.queries.active_events(query)

        if organization_id is not None:
            query = query.filter(Event.organization_id == organization_id)

        query = query.group_by(Event.id)

        return [(event, int(r), int(c)) for event, r, c in query]

    def capacity_utilization(
        self,
        organization_id: UUID | None = None
    ) -> list[CapacityUtilization]:
        """ Returns the registrations of each event relative to its capacity,
        the fullest events first.

        """
        rows = []

        for event, registered, _ in self._attendance_counts(organization_id):
            filled = percentage(registered, event.capacity)

            rows.append(CapacityUtilization(
                event.id, event.title, event.start, event.end,
                event.capacity, registered, filled,
                fill_status(filled) if event.capacity else 'under-filled'
            ))

        rows.sort(key=lambda row: (
            -row.utilization_percentage, -row.start.timestamp()
        ))

        return rows

    def show_up_rate(
        self,
        organization_id: UUID | None = None
    ) -> list[ShowUpRate]:
        """ Returns the share of registered attendees who checked in, for all
        events with registrations.

        """
        rows = [
            ShowUpRate(
                event.id, event.title, event.start, event.end,
                registered, checked_in, percentage(checked_in, registered)
            )
            for event, registered, checked_in
            in self._attendance_counts(organization_id)
            if registered
        ]

        rows.sort(key=lambda row: (-row.show_up_rate, -row.start.timestamp()))

        return rows
