""" Computes how much of a resource is left for a window.

Every resource type has its own capacity policy, found in :data:`POLICIES`.
A policy first takes a snapshot of the bookings that count against a
request (:meth:`CapacityPolicy.snapshot`) and then decides on the request
using nothing but that snapshot (:meth:`CapacityPolicy.check`). The check
step is pure, so the rules of each type can be tested without a database.

Exclusive and shareable resources are time-shared. Only bookings whose
event overlaps the requested window count against it.

Consumables are depleted instead. A booking draws its quantity when its
event starts and the stock never comes back by itself, only through the
inventory ledger (restocks, adjustments, returns and releases). Therefore
every earlier booking counts against a consumable, whether its event
overlaps the requested window or not. See :func:`consumable_horizon`.

"""
from __future__ import annotations

import logging

from allotment.context.core import ContextServicesMixin
from allotment.db.catalog import Catalog
from allotment.db.queries import Queries
from allotment.modules import errors
from allotment.modules.utils import prepare_window


from typing import Any
from typing import ClassVar
from typing import NamedTuple
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Iterable
    from collections.abc import Sequence
    from datetime import datetime
    from uuid import UUID

    from allotment.context.core import Context
    from allotment.db.models import Resource
    from allotment.db.models.resource import ResourceType
    from allotment.db.queries import Booking


log = logging.getLogger('allotment')


class Conflict(NamedTuple):
    """ An event holding the resource during the requested window.

    Conflicts are informational. A window may overlap other bookings and
    still be available if there is enough capacity left.

    """

    event_id: UUID
    title: str
    start: datetime
    end: datetime
    allocated_quantity: int

    def as_dict(self) -> dict[str, Any]:
        return {
            'eventId': str(self.event_id),
            'eventTitle': self.title,
            'startTime': self.start.isoformat(),
            'endTime': self.end.isoformat(),
            'allocatedQuantity': self.allocated_quantity,
        }


class AvailabilityDetails(NamedTuple):
    total_quantity: int
    allocated_quantity: int
    remaining_quantity: int
    current_concurrent_usage: int
    max_concurrent_usage: int | None = None
    remaining_concurrent_capacity: int | None = None

    def as_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            'totalQuantity': self.total_quantity,
            'allocatedQuantity': self.allocated_quantity,
            'remainingQuantity': self.remaining_quantity,
            'currentConcurrentUsage': self.current_concurrent_usage,
        }

        if self.max_concurrent_usage is not None:
            result['maxConcurrentUsage'] = self.max_concurrent_usage

        if self.remaining_concurrent_capacity is not None:
            result['remainingConcurrentCapacity'] = (
                self.remaining_concurrent_capacity)

        return result


class Verdict(NamedTuple):
    """ The outcome of the check step of a policy. """

    available: bool
    available_quantity: int
    details: AvailabilityDetails


class AvailabilityResult(NamedTuple):
    resource_id: UUID
    requested_quantity: int
    available: bool
    available_quantity: int
    conflicts: tuple[Conflict, ...]
    details: AvailabilityDetails

    @property
    def concurrency_exhausted(self) -> bool:
        remaining = self.details.remaining_concurrent_capacity
        return remaining is not None and remaining < 1

    @property
    def reason(self) -> str:
        """ Explains the verdict in one sentence. """

        if self.available:
            return (
                f'{self.requested_quantity} of {self.available_quantity} '
                f'remaining are available'
            )

        if self.concurrency_exhausted:
            return (
                f'The limit of {self.details.max_concurrent_usage} '
                f'concurrent bookings is reached'
            )

        return (
            f'Requested {self.requested_quantity}, but only '
            f'{max(0, self.details.remaining_quantity)} remaining'
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            'available': self.available,
            'availableQuantity': self.available_quantity,
            'conflicts': [conflict.as_dict() for conflict in self.conflicts],
            'availabilityDetails': self.details.as_dict(),
        }


class Usage(NamedTuple):
    """ What counts against a request, as seen by a policy. """

    total_quantity: int
    allocated_quantity: int
    concurrent_usage: int


def conflicts_of(bookings: Iterable[Booking]) -> tuple[Conflict, ...]:
    """ Returns one conflict per event, with the quantities of several
    allocations of the same event summed up.

    """
    by_event: dict[UUID, Conflict] = {}

    for allocation, event in bookings:
        if event.id in by_event:
            previous = by_event[event.id]
            by_event[event.id] = previous._replace(
                allocated_quantity=(
                    previous.allocated_quantity + allocation.quantity)
            )
        else:
            by_event[event.id] = Conflict(
                event.id,
                event.title,
                event.start,
                event.end,
                allocation.quantity
            )

    return tuple(by_event.values())


def consumable_horizon(
    opening_stock: int,
    stock_changes: Iterable[tuple[datetime, int]],
    draws: Iterable[tuple[datetime, int]],
    start: datetime
) -> tuple[datetime, int, int]:
    """ Finds the instant at or after start at which the least of a
    consumable is left.

    A new draw at ``start`` is permanent, so it has to fit at every later
    instant as well, not just at the start. The balance only changes when
    the stock changes or when a booking draws from it, so these are the
    only instants which need to be looked at.

    Returns the (horizon, stock, drawn) triple, where stock is the opening
    stock plus all changes up to the horizon and drawn is the sum of all
    draws up to the horizon. Ties are resolved in favour of the earliest
    instant.

    """
    changes = sorted(stock_changes)
    draws = sorted(draws)

    instants = sorted({start} | {
        date for date, _ in changes if date > start
    } | {
        date for date, _ in draws if date > start
    })

    stock = opening_stock
    drawn = 0
    lowest: tuple[datetime, int, int] | None = None
    c = d = 0

    for horizon in instants:
        while c < len(changes) and changes[c][0] <= horizon:
            stock += changes[c][1]
            c += 1

        while d < len(draws) and draws[d][0] <= horizon:
            drawn += draws[d][1]
            d += 1

        if lowest is None or stock - drawn < lowest[1] - lowest[2]:
            lowest = (horizon, stock, drawn)

    assert lowest is not None
    return lowest


class CapacityPolicy:
    """ The capacity rules of one resource type. """

    type: ClassVar[ResourceType]

    def snapshot(
        self,
        queries: Queries,
        resource: Resource,
        start: datetime,
        bookings: Sequence[Booking],
        exclude_event_id: UUID | None
    ) -> Usage:
        """ Returns what counts against a request, given the bookings
        overlapping the requested window.

        """
        return Usage(
            total_quantity=resource.total_quantity,
            allocated_quantity=sum(b.allocation.quantity for b in bookings),
            concurrent_usage=len({b.event.id for b in bookings})
        )

    def check(
        self,
        resource: Resource,
        usage: Usage,
        quantity: int
    ) -> Verdict:
        remaining = usage.total_quantity - usage.allocated_quantity

        return Verdict(
            available=remaining >= quantity,
            available_quantity=max(0, remaining),
            details=AvailabilityDetails(
                total_quantity=usage.total_quantity,
                allocated_quantity=usage.allocated_quantity,
                remaining_quantity=remaining,
                current_concurrent_usage=usage.concurrent_usage
            )
        )


class ExclusivePolicy(CapacityPolicy):
    """ At most ``total_quantity`` units may be held by overlapping
    bookings.

    """

    type = 'exclusive'


class ShareablePolicy(CapacityPolicy):
    """ The quantity rule of exclusive resources, plus a cap on the number
    of events using the resource at the same time. Several allocations of
    one event count as one booking.

    """

    type = 'shareable'

    def check(
        self,
        resource: Resource,
        usage: Usage,
        quantity: int
    ) -> Verdict:
        verdict = super().check(resource, usage, quantity)

        maximum = resource.max_concurrent_usage or 0
        remaining_concurrent = maximum - usage.concurrent_usage
        available = verdict.available and remaining_concurrent >= 1

        return Verdict(
            available=available,
            available_quantity=(
                verdict.available_quantity if remaining_concurrent >= 1
                else 0
            ),
            details=verdict.details._replace(
                max_concurrent_usage=maximum,
                remaining_concurrent_capacity=remaining_concurrent
            )
        )


class ConsumablePolicy(CapacityPolicy):
    """ Consumables are used up by the bookings drawing from them.

    Unlike the time-shared types, all earlier draws recorded in the
    inventory ledger count against a request, not just the ones
    overlapping its window. The request is evaluated at the instant where
    the least stock is left (see :func:`consumable_horizon`).

    """

    type = 'consumable'

    def snapshot(
        self,
        queries: Queries,
        resource: Resource,
        start: datetime,
        bookings: Sequence[Booking],
        exclude_event_id: UUID | None
    ) -> Usage:
        _, stock, drawn = consumable_horizon(
            resource.total_quantity,
            queries.stock_changes(resource.id),
            queries.draws(resource.id, exclude_event_id),
            start
        )

        return Usage(
            total_quantity=stock,
            allocated_quantity=drawn,
            concurrent_usage=len({b.event.id for b in bookings})
        )


POLICIES: dict[ResourceType, CapacityPolicy] = {
    policy.type: policy for policy in (
        ExclusivePolicy(),
        ShareablePolicy(),
        ConsumablePolicy(),
    )
}


def validate_quantity(quantity: int) -> int:
    if isinstance(quantity, bool) or not isinstance(quantity, int):
        raise errors.InvalidQuantity(quantity)

    if quantity < 1:
        raise errors.InvalidQuantity(quantity)

    return quantity


class AvailabilityCalculator(ContextServicesMixin):
    """ Answers whether a quantity of a resource is available for a window.

    Checks take no locks. The allocator runs the same calculation within
    the serialized scope of its mutations.

    """

    def __init__(
        self,
        context: Context,
        queries: Queries | None = None,
        catalog: Catalog | None = None
    ):
        self.context = context
        self.queries = queries or Queries(context)
        self.catalog = catalog or Catalog(context)

    def check(
        self,
        resource_id: UUID | str,
        start: datetime,
        end: datetime,
        quantity: int = 1,
        exclude_event_id: UUID | None = None,
        organization_id: UUID | None = None
    ) -> AvailabilityResult:
        """ Checks if the given quantity of the resource is available for
        the half-open window [start, end).

        :exclude_event_id:
            The allocations of this event are ignored. Used to check an
            event against its own bookings when they are changed.

        :organization_id:
            The organization of the caller. Resources it may not see raise
            :class:`~allotment.modules.errors.UnknownResource`.

        """
        start, end = prepare_window(start, end)
        quantity = validate_quantity(quantity)
        resource = self.catalog.get(resource_id, organization_id)

        return self.evaluate(resource, start, end, quantity, exclude_event_id)

    def evaluate(
        self,
        resource: Resource,
        start: datetime,
        end: datetime,
        quantity: int,
        exclude_event_id: UUID | None = None
    ) -> AvailabilityResult:
        """ Runs the policy of the given resource for a validated request.
        """
        policy = POLICIES[resource.type]

        bookings = self.queries.overlapping(
            resource.id, start, end, exclude_event_id
        )
        usage = policy.snapshot(
            self.queries, resource, start, bookings, exclude_event_id
        )
        verdict = policy.check(resource, usage, quantity)

        return AvailabilityResult(
            resource_id=resource.id,
            requested_quantity=quantity,
            available=verdict.available,
            available_quantity=verdict.available_quantity,
            conflicts=conflicts_of(bookings),
            details=verdict.details
        )
