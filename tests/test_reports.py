from __future__ import annotations

import pytest

from datetime import datetime
from pytz import utc
from uuid import uuid4 as new_uuid

from allotment.db.models import Allocation
from allotment.db.reports import fill_status, percentage


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from allotment.db.allocator import Allocator
    from allotment.db.models import Event, Resource


def at(hour: int, minute: int = 0, day: int = 1) -> datetime:
    return datetime(2024, 5, day, hour, minute, tzinfo=utc)


def book(
    allocator: Allocator,
    resource: Resource,
    event: Event,
    quantity: int = 1
) -> Allocation:
    """ Writes an allocation without checking the capacity, the way
    imported or hand-edited records end up in the database.

    """
    allocation = Allocation()
    allocation.id = new_uuid()
    allocation.resource = resource
    allocation.event = event
    allocation.quantity = quantity

    allocator.session.add(allocation)
    allocator.session.flush()

    return allocation


@pytest.mark.parametrize('value,status', [
    (125.0, 'over-filled'),
    (100.0, 'well-filled'),
    (80.0, 'well-filled'),
    (79.99, 'moderately-filled'),
    (50.0, 'moderately-filled'),
    (49.99, 'under-filled'),
    (0.0, 'under-filled'),
])
def test_fill_status(value: float, status: str) -> None:
    assert fill_status(value) == status


def test_percentage() -> None:
    assert percentage(1, 3) == 33.33
    assert percentage(3, 0) == 0.0
    assert percentage(5, 4) == 125.0


def test_double_booked_users(allocator: Allocator) -> None:
    user, other = new_uuid(), new_uuid()

    first = allocator.add_event('First', at(9), at(10))
    second = allocator.add_event('Second', at(9, 30), at(10, 30))
    third = allocator.add_event('Third', at(10, 30), at(11))
    cancelled = allocator.add_event(
        'Cancelled', at(9), at(10), status='cancelled')

    for event in (first, first, second, third, cancelled):
        allocator.add_attendance(event.id, user)

    allocator.add_attendance(first.id, other)
    allocator.add_attendance(second.id)
    allocator.add_attendance(second.id)
    allocator.commit()

    rows = allocator.reports.double_booked_users()
    assert len(rows) == 1

    row = rows[0]
    assert row.user_id == user
    assert row.first_event_id == first.id
    assert row.first_title == 'First'
    assert row.second_event_id == second.id
    assert row.second_start == at(9, 30)
    assert row.second_end == at(10, 30)


def test_violated_constraints(allocator: Allocator) -> None:
    room = allocator.catalog.add('Room', 'exclusive')
    hall = allocator.catalog.add(
        'Hall', 'shareable', total_quantity=10, max_concurrent_usage=1)
    paper = allocator.catalog.add('Paper', 'consumable', total_quantity=10)
    tidy = allocator.catalog.add('Tidy', 'exclusive')

    morning = allocator.add_event('Morning', at(9), at(11))
    noon = allocator.add_event('Noon', at(10), at(12))
    tomorrow = allocator.add_event('Tomorrow', at(9, day=2), at(10, day=2))

    book(allocator, room, morning)
    book(allocator, room, noon)

    book(allocator, hall, morning, 2)
    book(allocator, hall, noon, 2)

    book(allocator, paper, morning, 8)
    book(allocator, paper, tomorrow, 8)

    book(allocator, tidy, morning)
    book(allocator, tidy, tomorrow)
    allocator.commit()

    rows = allocator.reports.violated_constraints()

    assert [(r.resource_name, r.violation, r.event_title) for r in rows] == [
        ('Hall', 'shareable_over_allocation', 'Morning'),
        ('Hall', 'shareable_over_allocation', 'Noon'),
        ('Paper', 'consumable_excess', 'Morning'),
        ('Paper', 'consumable_excess', 'Tomorrow'),
        ('Room', 'exclusive_double_booking', 'Morning'),
        ('Room', 'exclusive_double_booking', 'Noon'),
    ]

    hall_row = rows[0]
    assert hall_row.requested_quantity == 2
    assert hall_row.total_quantity == 10
    assert hall_row.allocated_quantity == 4
    assert hall_row.concurrent_usage == 2
    assert hall_row.max_concurrent_usage == 1

    paper_row = rows[2]
    assert paper_row.requested_quantity == 8
    assert paper_row.allocated_quantity == 16

    room_row = rows[4]
    assert room_row.start == at(9)
    assert room_row.end == at(11)
    assert room_row.allocated_quantity == 2
    assert room_row.max_concurrent_usage is None

    # cancelling one side resolves the double booking
    noon.status = 'cancelled'
    allocator.commit()

    names = {r.resource_name for r in allocator.reports.violated_constraints()}
    assert names == {'Paper'}


def test_allocator_never_violates_constraints(allocator: Allocator) -> None:
    hall = allocator.catalog.add(
        'Hall', 'shareable', total_quantity=10, max_concurrent_usage=2)

    for start, end in ((9, 11), (10, 12), (12, 13)):
        event = allocator.add_event('Talk', at(start), at(end))
        allocator.allocate(hall.id, event.id, 4)

    assert allocator.reports.violated_constraints() == []


def test_parent_child_violations(allocator: Allocator) -> None:
    parent = allocator.add_event('Conference', at(9), at(17))

    early = allocator.add_event(
        'Early', at(8), at(10), parent_id=parent.id)
    late = allocator.add_event(
        'Late', at(16), at(18), parent_id=parent.id)
    allocator.add_event(
        'Inside', at(10), at(11), parent_id=parent.id)
    allocator.add_event(
        'Cancelled', at(7), at(8), parent_id=parent.id, status='cancelled')
    allocator.add_event(
        'Both', at(8, 30), at(18), parent_id=parent.id)
    allocator.commit()

    rows = allocator.reports.parent_child_violations()

    assert [(r.event_title, r.violation) for r in rows] == [
        ('Early', 'starts_before_parent'),
        ('Both', 'starts_before_parent'),
        ('Late', 'ends_after_parent'),
    ]

    assert rows[0].event_id == early.id
    assert rows[0].parent_id == parent.id
    assert rows[0].parent_title == 'Conference'
    assert rows[0].parent_start == at(9)
    assert rows[0].parent_end == at(17)
    assert rows[2].event_id == late.id


def test_resource_utilization(allocator: Allocator) -> None:
    org, other = new_uuid(), new_uuid()

    room = allocator.catalog.add('Room', 'exclusive')
    hall = allocator.catalog.add(
        'Hall', 'shareable', total_quantity=10, max_concurrent_usage=3)
    allocator.catalog.add('Storage', 'exclusive', organization_id=org)

    keynote = allocator.add_event('Keynote', at(9), at(11), organization_id=org)
    panel = allocator.add_event('Panel', at(10), at(12), organization_id=org)
    visit = allocator.add_event('Visit', at(13), at(14), organization_id=other)

    allocator.allocate(room.id, keynote.id)
    allocator.allocate(room.id, visit.id)
    allocator.allocate(hall.id, keynote.id, 2)
    allocator.allocate(hall.id, panel.id, 3)

    rows = allocator.reports.resource_utilization()

    assert [(r.resource_name, r.organization_id) for r in rows] == [
        ('Hall', org),
        ('Room', org),
        ('Room', other),
        ('Storage', org),
    ]

    hall_row, room_row, visit_row, storage_row = rows

    assert hall_row.resource_type == 'shareable'
    assert hall_row.booked_hours == 4.0
    assert hall_row.peak_concurrent_usage == 5
    assert hall_row.max_capacity == 3
    assert hall_row.underutilized

    assert room_row.booked_hours == 2.0
    assert room_row.peak_concurrent_usage == 1
    assert room_row.max_capacity == 1

    assert visit_row.booked_hours == 1.0

    assert storage_row.booked_hours == 0.0
    assert storage_row.peak_concurrent_usage == 0
    assert storage_row.underutilized

    rows = allocator.reports.resource_utilization(org, threshold=2.0)
    assert {r.organization_id for r in rows} == {org}
    assert [r.underutilized for r in rows] == [False, False, True]


def test_external_attendees(allocator: Allocator) -> None:
    open_day = allocator.add_event(
        'Open Day', at(9), at(12), allow_external_attendees=True)
    lecture = allocator.add_event('Lecture', at(13), at(14), capacity=30)
    small = allocator.add_event('Small', at(15), at(16))

    for _ in range(4):
        allocator.add_attendance(open_day.id)

    for _ in range(3):
        allocator.add_attendance(lecture.id)

    allocator.add_attendance(lecture.id, new_uuid())
    allocator.add_attendance(small.id)
    allocator.commit()

    rows = allocator.reports.external_attendees(threshold=2)

    assert [(r.title, r.external_attendee_count) for r in rows] == [
        ('Open Day', 4),
        ('Lecture', 3),
    ]
    assert rows[0].allow_external_attendees
    assert not rows[1].allow_external_attendees
    assert rows[1].capacity == 30

    # the default threshold is ten
    assert allocator.reports.external_attendees() == []


def test_capacity_utilization(allocator: Allocator) -> None:
    counts = {
        'Full': (10, 9),
        'Crowded': (4, 5),
        'Empty': (0, 1),
        'Half': (10, 5),
    }

    org = new_uuid()

    for hour, (title, (capacity, registered)) in enumerate(counts.items()):
        event = allocator.add_event(
            title, at(8 + hour), at(9 + hour),
            capacity=capacity, organization_id=org
        )
        for _ in range(registered):
            allocator.add_attendance(event.id, new_uuid())

    allocator.add_event('Elsewhere', at(9), at(10), capacity=10)
    allocator.commit()

    rows = allocator.reports.capacity_utilization(org)

    assert [
        (r.title, r.attendance_count, r.utilization_percentage, r.fill_status)
        for r in rows
    ] == [
        ('Crowded', 5, 125.0, 'over-filled'),
        ('Full', 9, 90.0, 'well-filled'),
        ('Half', 5, 50.0, 'moderately-filled'),
        ('Empty', 1, 0.0, 'under-filled'),
    ]

    rows = allocator.reports.capacity_utilization()
    assert len(rows) == 5
    assert rows[-1].title == 'Elsewhere'


def test_show_up_rate(allocator: Allocator) -> None:
    workshop = allocator.add_event('Workshop', at(9), at(10))
    seminar = allocator.add_event('Seminar', at(11), at(12))
    allocator.add_event('Nobody', at(13), at(14))

    for checked_in in (True, True, True, False):
        allocator.add_attendance(
            workshop.id, new_uuid(), at(9) if checked_in else None)

    allocator.add_attendance(seminar.id, new_uuid())
    allocator.add_attendance(seminar.id)
    allocator.commit()

    rows = allocator.reports.show_up_rate()

    assert [
        (r.title, r.total_registrations, r.checked_in_count, r.show_up_rate)
        for r in rows
    ] == [
        ('Workshop', 4, 3, 75.0),
        ('Seminar', 2, 0, 0.0),
    ]
