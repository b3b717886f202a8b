from __future__ import annotations

import logging

from sqlalchemy import func
from sqlalchemy.sql import and_, or_

from allotment.context.core import ContextServicesMixin
from allotment.db.models import Allocation, Event, InventoryTransaction
from allotment.db.models.inventory import DRAW_TYPES


from typing import NamedTuple
from typing import TypeVar
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from datetime import datetime
    from sqlalchemy.orm import Query
    from uuid import UUID

    from allotment.context.core import Context
    from allotment.db.models import Timespan

_T = TypeVar('_T')


log = logging.getLogger('allotment')


class Booking(NamedTuple):
    """ An allocation together with the event it belongs to. """

    allocation: Allocation
    event: Event

    @property
    def window(self) -> Timespan:
        return self.event.window


class Queries(ContextServicesMixin):
    """ Contains the queries shared by the availability calculator, the
    allocator, the inventory and the reports.

    Some contained methods require the current context (for the session).
    Some contained methods do not require any context, they are marked
    as staticmethods.

    """

    def __init__(self, context: Context):
        self.context = context

    @staticmethod
    def active_events(query: Query[_T]) -> Query[_T]:
        """ Limits the given query to events which are not cancelled. The
        query must include the :class:`~allotment.db.models.Event` entity.

        """
        return query.filter(Event.status != 'cancelled')

    @staticmethod
    def events_overlapping(
        query: Query[_T],
        start: datetime,
        end: datetime
    ) -> Query[_T]:
        """ Limits the given query to the events overlapping the half-open
        window [start, end).

        """
        return query.filter(and_(Event.start < end, start < Event.end))

    def bookings(
        self,
        resource_id: UUID,
        exclude_event_id: UUID | None = None
    ) -> Query[tuple[Allocation, Event]]:
        query = self.session.query(Allocation, Event)
        query = query.join(Event, Allocation.event_id == Event.id)
        query = query.filter(Allocation.resource_id == resource_id)
        query = self.active_events(query)

        if exclude_event_id is not None:
            query = query.filter(Event.id != exclude_event_id)

        return query.order_by(Event.start, Event.id, Allocation.id)

    def overlapping(
        self,
        resource_id: UUID,
        start: datetime,
        end: datetime,
        exclude_event_id: UUID | None = None
    ) -> list[Booking]:
        """ Returns the bookings of the given resource whose event overlaps
        the window [start, end), ordered by event start.

        Allocations of cancelled events and of the excluded event are left
        out. The result is read with a single statement.

        """
        query = self.bookings(resource_id, exclude_event_id)
        query = self.events_overlapping(query, start, end)

        return [Booking(*row) for row in query]

    def drawn(
        self,
        resource_id: UUID,
        exclude_event_id: UUID | None = None
    ) -> list[Booking]:
        """ Returns all bookings of the given resource, regardless of their
        window, ordered by event start.

        For consumables these are the draws on the stock.

        """
        return [
            Booking(*row)
            for row in self.bookings(resource_id, exclude_event_id)
        ]

    def event_demand(
        self,
        event_id: UUID,
        resource_id: UUID,
        exclude_allocation_id: UUID | None = None
    ) -> int:
        """ Returns the summed quantity the given event holds on the given
        resource, optionally leaving out one allocation.

        """
        query = self.session.query(
            func.coalesce(func.sum(Allocation.quantity), 0)
        )
        query = query.filter(Allocation.event_id == event_id)
        query = query.filter(Allocation.resource_id == resource_id)

        if exclude_allocation_id is not None:
            query = query.filter(Allocation.id != exclude_allocation_id)

        return int(query.scalar() or 0)

    def inventory_transactions(
        self,
        resource_id: UUID,
        start: datetime | None = None,
        end: datetime | None = None
    ) -> Query[InventoryTransaction]:
        """ Returns the ledger of the given resource ordered by date. The
        end is inclusive, as a transaction at a given instant is part of
        the stock at that instant.

        """
        query = self.session.query(InventoryTransaction)
        query = query.filter(InventoryTransaction.resource_id == resource_id)

        if start is not None:
            query = query.filter(InventoryTransaction.transaction_date >= start)

        if end is not None:
            query = query.filter(InventoryTransaction.transaction_date <= end)

        return query.order_by(
            InventoryTransaction.transaction_date,
            InventoryTransaction.created
        )

    def ledger(self, resource_id: UUID) -> list[InventoryTransaction]:
        """ Returns the ledger of the given resource ordered by date, without
        the draws and releases of cancelled events.

        """
        query = self.inventory_transactions(resource_id)
        query = query.outerjoin(
            Event, InventoryTransaction.related_event_id == Event.id
        )
        query = query.filter(or_(
            InventoryTransaction.type.notin_(DRAW_TYPES),
            Event.id.is_(None),
            Event.status != 'cancelled'
        ))

        return query.all()

    def stock_changes(self, resource_id: UUID) -> list[tuple[datetime, int]]:
        """ Returns the (date, delta) pairs of the restocks, adjustments and
        returns of a resource.

        """
        return [
            (t.transaction_date, t.quantity)
            for t in self.ledger(resource_id)
            if t.type not in DRAW_TYPES
        ]

    def draws(
        self,
        resource_id: UUID,
        exclude_event_id: UUID | None = None
    ) -> list[tuple[datetime, int]]:
        """ Returns the (date, quantity) pairs the bookings of a consumable
        drew from its stock. Releases are negative.

        """
        return [
            (t.transaction_date, -t.quantity)
            for t in self.ledger(resource_id)
            if t.type in DRAW_TYPES
            if exclude_event_id is None
            or t.related_event_id != exclude_event_id
        ]
