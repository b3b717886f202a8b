from __future__ import annotations

import logging
import sedate

from uuid import uuid4 as new_uuid

from allotment.context.core import ContextServicesMixin
from allotment.db.availability import validate_quantity
from allotment.db.catalog import Catalog
from allotment.db.models import Event, InventoryTransaction, Resource
from allotment.db.models.inventory import DRAW_TYPES
from allotment.db.queries import Queries
from allotment.modules import errors, events
from allotment.modules.utils import as_instant, as_uuid


from typing import NamedTuple
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from datetime import datetime
    from uuid import UUID

    from allotment.context.core import Context
    from allotment.db.models.inventory import TransactionType


log = logging.getLogger('allotment')


class LedgerEntry(NamedTuple):
    """ A point on the timeline of a consumable, with the balance after
    it. Entries of the types ``allocation`` and ``release`` belong to
    bookings, all others were recorded through the inventory.

    """

    date: datetime
    quantity: int
    type: str
    event_id: UUID | None
    running_balance: int


class Shortage(NamedTuple):
    resource_id: UUID
    resource_name: str
    date: datetime
    running_balance: int


class Inventory(ContextServicesMixin):
    """ Keeps the stock of consumable resources.

    The stock of a consumable is its opening stock (the ``total_quantity``
    of the resource) plus the restocks, adjustments and returns recorded
    here. The balance is the stock minus what bookings have drawn from it.
    The allocator writes these draws to the same ledger (see :meth:`draw`
    and :meth:`release`), so every balance follows from the ledger alone.

    Like the allocations, the ledger of a resource is only changed while
    holding the lock of the resource. Every change is committed.

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

    def consumable(
        self,
        resource_id: UUID | str,
        lock: bool = False
    ) -> Resource:
        resource = self.catalog.get(resource_id, lock=lock)

        if not resource.is_consumable:
            raise errors.NotConsumableError(resource_id)

        return resource

    def _instant(self, date: datetime | None) -> datetime:
        return sedate.utcnow() if date is None else as_instant(date)

    def _stock_level(self, resource: Resource, at: datetime) -> int:
        return resource.total_quantity + sum(
            delta for date, delta in self.queries.stock_changes(resource.id)
            if date <= at
        )

    def _balance(self, resource: Resource, at: datetime) -> int:
        return resource.total_quantity + sum(
            t.quantity for t in self.queries.ledger(resource.id)
            if t.transaction_date <= at
        )

    def _write(
        self,
        resource: Resource,
        type: TransactionType,
        quantity: int,
        date: datetime,
        event_id: UUID | None = None,
        notes: str | None = None,
        created_by: str | None = None
    ) -> InventoryTransaction:

        transaction = InventoryTransaction()
        transaction.id = new_uuid()
        transaction.resource_id = resource.id
        transaction.type = type
        transaction.quantity = quantity
        transaction.transaction_date = date
        transaction.related_event_id = event_id
        transaction.notes = notes
        transaction.created_by = created_by

        self.session.add(transaction)
        self.session.flush()

        log.info('Recorded %s of %+d on %s', type, quantity, resource.id)

        events.on_inventory_changed(self.context, transaction)

        return transaction

    def draw(
        self,
        resource: Resource,
        event: Event,
        quantity: int
    ) -> InventoryTransaction:
        """ Records the draw of a booking, taking effect when its event
        starts.

        Only to be called by the allocator, which holds the lock of the
        resource and has checked the quantity against the stock.

        """
        return self._write(
            resource, 'allocation', -quantity, event.start, event.id
        )

    def release(
        self,
        resource: Resource,
        event: Event,
        quantity: int
    ) -> InventoryTransaction:
        """ Gives back what a booking drew when it is lowered or removed.

        A release takes effect when the event starts, or now if the event
        has started already. Draws that took place stay in the history.

        Only to be called by the allocator, which holds the lock of the
        resource.

        """
        return self._write(
            resource, 'release', quantity, max(event.start, sedate.utcnow()),
            event.id
        )

    def _record(
        self,
        resource_id: UUID | str,
        type: TransactionType,
        quantity: int | None,
        date: datetime | None,
        event_id: UUID | None = None,
        notes: str | None = None,
        created_by: str | None = None,
        level: int | None = None
    ) -> InventoryTransaction:

        date = self._instant(date)

        if event_id is not None:
            uuid = as_uuid(event_id)
            if uuid is None or self.session.get(Event, uuid) is None:
                raise errors.UnknownEvent(event_id)
            event_id = uuid

        def record() -> InventoryTransaction:
            resource = self.consumable(resource_id, lock=True)

            if level is not None:
                delta = level - self._balance(resource, date)
            else:
                assert quantity is not None
                delta = quantity

            return self._write(
                resource, type, delta, date, event_id, notes, created_by
            )

        return self.serialized([resource_id], record)

    def restock(
        self,
        resource_id: UUID | str,
        quantity: int,
        date: datetime | None = None,
        notes: str | None = None,
        created_by: str | None = None
    ) -> InventoryTransaction:
        """ Adds the given quantity to the stock, effective at the given date
        (now by default).

        A restock does not cover draws of events starting before its date.

        """
        validate_quantity(quantity)

        return self._record(
            resource_id, 'restock', quantity, date,
            notes=notes, created_by=created_by
        )

    def adjust(
        self,
        resource_id: UUID | str,
        new_level: int,
        date: datetime | None = None,
        notes: str | None = None,
        created_by: str | None = None
    ) -> InventoryTransaction:
        """ Corrects the balance to the given level, for example after
        counting the stock. The difference to the balance is recorded, even
        if there is none, so the count shows up in the history.

        """
        if isinstance(new_level, bool) or not isinstance(new_level, int):
            raise errors.InvalidQuantity(new_level)

        if new_level < 0:
            raise errors.InvalidQuantity(new_level)

        return self._record(
            resource_id, 'adjustment', None, date,
            notes=notes, created_by=created_by, level=new_level
        )

    def return_stock(
        self,
        resource_id: UUID | str,
        quantity: int,
        event_id: UUID | None = None,
        date: datetime | None = None,
        notes: str | None = None,
        created_by: str | None = None
    ) -> InventoryTransaction:
        """ Returns unused supplies to the stock, optionally naming the event
        they were drawn for.

        """
        validate_quantity(quantity)

        return self._record(
            resource_id, 'return', quantity, date,
            event_id=event_id, notes=notes, created_by=created_by
        )

    def stock_level(
        self,
        resource_id: UUID | str,
        at: datetime | None = None
    ) -> int:
        """ The opening stock plus the restocks, adjustments and returns up
        to the given date.

        """
        resource = self.consumable(resource_id)
        return self._stock_level(resource, self._instant(at))

    def projected_balance(
        self,
        resource_id: UUID | str,
        at: datetime | None = None
    ) -> int:
        """ The opening stock plus the whole ledger up to the given date,
        that is the stock level minus what bookings have drawn by then.

        """
        resource = self.consumable(resource_id)
        return self._balance(resource, self._instant(at))

    def current_balance(self, resource_id: UUID | str) -> int:
        return self.projected_balance(resource_id)

    def history(
        self,
        resource_id: UUID | str,
        start: datetime | None = None,
        end: datetime | None = None
    ) -> list[InventoryTransaction]:
        resource = self.consumable(resource_id)

        return self.queries.inventory_transactions(
            resource.id,
            start=None if start is None else as_instant(start),
            end=None if end is None else as_instant(end)
        ).all()

    def running_balance(self, resource_id: UUID | str) -> list[LedgerEntry]:
        """ Returns the ledger of the given consumable ordered by date, each
        entry with the balance after it.

        Changes of the stock come before draws taking effect at the same
        instant.

        """
        resource = self.consumable(resource_id)

        ledger = sorted(
            self.queries.ledger(resource.id),
            key=lambda t: (t.transaction_date, t.type in DRAW_TYPES)
        )

        balance = resource.total_quantity
        entries = []

        for t in ledger:
            balance += t.quantity
            entries.append(LedgerEntry(
                t.transaction_date, t.quantity, t.type, t.related_event_id,
                balance
            ))

        return entries

    def shortages(
        self,
        resource_id: UUID | str | None = None
    ) -> list[Shortage]:
        """ Returns the points in time at which the balance of a consumable
        is negative. Looks at all consumables if no resource is given.

        """
        if resource_id is not None:
            resources = [self.consumable(resource_id)]
        else:
            query = self.session.query(Resource)
            query = query.filter(Resource.type == 'consumable')
            resources = query.order_by(Resource.name, Resource.id).all()

        return [
            Shortage(resource.id, resource.name, entry.date,
                     entry.running_balance)
            for resource in resources
            for entry in self.running_balance(resource.id)
            if entry.running_balance < 0
        ]
