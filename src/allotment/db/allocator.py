from __future__ import annotations

import logging

from uuid import uuid4 as new_uuid

from allotment.context.core import ContextServicesMixin
from allotment.db.availability import AvailabilityCalculator
from allotment.db.availability import validate_quantity
from allotment.db.catalog import Catalog
from allotment.db.inventory import Inventory
from allotment.db.models import Allocation, Attendance, Event
from allotment.db.models import InventoryTransaction, ORMBase, Resource
from allotment.db.models.event import EVENT_STATUSES
from allotment.db.queries import Queries
from allotment.db.reports import Reports
from allotment.modules import errors, events
from allotment.modules.utils import as_instant, as_uuid, prepare_window


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime
    from typing_extensions import Self
    from uuid import UUID

    from allotment.context.core import Context
    from allotment.db.availability import AvailabilityResult
    from allotment.db.models.event import EventStatus


log = logging.getLogger('allotment')


class Allocator(ContextServicesMixin):
    """ The Allocator books resources for events. It is the main part of
    the API.

    Every change of an allocation is checked against the capacity of its
    resource and written within the same serialized scope (see
    :meth:`~allotment.context.core.ContextServicesMixin.serialized`), after
    which it is committed. Two concurrent bookings of the same resource can
    therefore not both see the same remaining capacity.

    """

    def __init__(self, context: Context):
        """ Initializes a new Allocator instance.

        :context:
            The :class:`allotment.context.core.Context` this allocator should
            operate on. Acquire a context by using
            :func:`allotment.context.registry.Registry.register_context`.

        """
        self.context = context
        self.queries = Queries(context)
        self.catalog = Catalog(context)
        self.calculator = AvailabilityCalculator(
            context, self.queries, self.catalog
        )
        self.inventory = Inventory(context, self.queries, self.catalog)
        self.reports = Reports(context, self.queries)

    def clone(self) -> Self:
        """ Clones the allocator. The result will be a new allocator using
        the same context.

        """
        return self.__class__(self.context)

    def clear_cache(self) -> None:
        super().clear_cache()

        for part in (self.queries, self.catalog, self.calculator,
                     self.inventory, self.reports):
            part.clear_cache()

    def setup_database(self) -> None:
        """ Creates the tables and indices required for allotment. This
        needs to be called once per database. Multiple invocations won't hurt
        but they are unnecessary.

        """
        ORMBase.metadata.create_all(self.session.bind)

    def extinguish_records(self) -> None:
        """ WARNING:
        Completely removes all records of allotment from the database. That
        means all resources, events, attendances, allocations and inventory
        transactions!

        """
        self.session.query(InventoryTransaction).delete('fetch')
        self.session.query(Allocation).delete('fetch')
        self.session.query(Attendance).delete('fetch')
        self.session.query(Event).update({'parent_id': None}, 'fetch')
        self.session.query(Event).delete('fetch')
        self.session.query(Resource).delete('fetch')

    def allocation_by_id(self, id: UUID | str) -> Allocation:
        uuid = as_uuid(id)
        allocation = uuid and self.session.query(Allocation).filter(
            Allocation.id == uuid
        ).populate_existing().one_or_none()

        if allocation is None:
            raise errors.UnknownAllocation(id)

        return allocation

    def event_by_id(self, id: UUID | str) -> Event:
        uuid = as_uuid(id)
        event = uuid and self.session.get(Event, uuid)

        if event is None:
            raise errors.UnknownEvent(id)

        return event

    def allocations_by_event(self, event_id: UUID | str) -> list[Allocation]:
        event = self.event_by_id(event_id)

        query = self.session.query(Allocation)
        query = query.filter(Allocation.event_id == event.id)

        return query.order_by(Allocation.created, Allocation.id).all()

    def allocations_by_resource(
        self,
        resource_id: UUID | str,
        start: datetime | None = None,
        end: datetime | None = None
    ) -> list[Allocation]:
        """ Returns the allocations of the given resource, optionally limited
        to the events overlapping the given window, ordered by event start.

        """
        resource = self.catalog.get(resource_id)

        query = self.session.query(Allocation)
        query = query.join(Event, Allocation.event_id == Event.id)
        query = query.filter(Allocation.resource_id == resource.id)

        if start is not None and end is not None:
            start, end = prepare_window(start, end)
            query = self.queries.events_overlapping(query, start, end)

        return query.order_by(Event.start, Allocation.id).all()

    def check_availability(
        self,
        resource_id: UUID | str,
        start: datetime,
        end: datetime,
        quantity: int = 1,
        exclude_event_id: UUID | None = None,
        organization_id: UUID | None = None
    ) -> AvailabilityResult:
        """ Checks the availability of a resource without booking it. See
        :meth:`allotment.db.availability.AvailabilityCalculator.check`.

        """
        return self.calculator.check(
            resource_id, start, end, quantity,
            exclude_event_id=exclude_event_id,
            organization_id=organization_id
        )

    def _ensure_capacity(
        self,
        resource: Resource,
        event: Event,
        quantity: int,
        exclude_allocation_id: UUID | None = None
    ) -> AvailabilityResult:
        """ Raises if the event cannot hold the given quantity on top of its
        other allocations of the resource.

        The event is excluded from the snapshot and requests its whole
        demand instead, so its current bookings are not counted twice.

        """
        if event.is_cancelled:
            raise errors.EventCancelled(event.id)

        demand = quantity + self.queries.event_demand(
            event.id, resource.id, exclude_allocation_id
        )

        result = self.calculator.evaluate(
            resource, event.start, event.end, demand,
            exclude_event_id=event.id
        )

        if not result.available:
            raise errors.InsufficientCapacity(result)

        return result

    def _allocate(
        self,
        event: Event,
        resource_id: UUID | str,
        quantity: int
    ) -> Allocation:
        resource = self.catalog.get(
            resource_id, event.organization_id, lock=True
        )

        self._ensure_capacity(resource, event, quantity)

        allocation = Allocation()
        allocation.id = new_uuid()
        allocation.resource = resource
        allocation.event = event
        allocation.quantity = quantity

        self.session.add(allocation)
        self.session.flush()

        if resource.is_consumable:
            self.inventory.draw(resource, event, quantity)

        log.info(
            'Allocated %d of %s to %s', quantity, resource.id, event.id
        )

        events.on_allocation_added(self.context, allocation)

        return allocation

    def allocate(
        self,
        resource_id: UUID | str,
        event_id: UUID | str,
        quantity: int = 1
    ) -> Allocation:
        """ Books the given quantity of a resource for the window of an
        event.

        The resource must be visible to the organization of the event.
        Raises :class:`~allotment.modules.errors.InsufficientCapacity` with
        the availability result attached if the quantity does not fit.

        """
        validate_quantity(quantity)

        def allocate() -> Allocation:
            event = self.event_by_id(event_id)
            return self._allocate(event, resource_id, quantity)

        return self.serialized([resource_id], allocate)

    def change_allocation(
        self,
        allocation_id: UUID | str,
        quantity: int | None = None,
        resource_id: UUID | str | None = None
    ) -> Allocation:
        """ Changes the quantity and/or the resource of an allocation.

        The change is validated as if the allocation was removed and booked
        anew. Lowering the quantity on the same resource is always accepted,
        even if the resource is overbooked.

        """
        if quantity is not None:
            validate_quantity(quantity)

        current = self.allocation_by_id(allocation_id)
        keys = {str(current.resource_id)}

        if resource_id is not None:
            keys.add(str(as_uuid(resource_id) or resource_id))

        def change() -> Allocation:
            allocation = self.allocation_by_id(allocation_id)

            if str(allocation.resource_id) not in keys:
                # the allocation was moved while we were waiting
                raise errors.ConcurrencyConflict(
                    [str(allocation.resource_id)]
                )

            event = allocation.event
            old_resource_id = allocation.resource_id
            old_quantity = allocation.quantity

            new_quantity = old_quantity if quantity is None else quantity
            resource = self.catalog.get(
                old_resource_id if resource_id is None else resource_id,
                event.organization_id,
                lock=True
            )

            same_resource = resource.id == old_resource_id
            if not same_resource or new_quantity > old_quantity:
                self._ensure_capacity(
                    resource, event, new_quantity,
                    exclude_allocation_id=allocation.id
                )

            old_resource = allocation.resource
            allocation.resource = resource
            allocation.quantity = new_quantity
            self.session.flush()

            if not same_resource:
                if old_resource.is_consumable:
                    self.inventory.release(old_resource, event, old_quantity)
                if resource.is_consumable:
                    self.inventory.draw(resource, event, new_quantity)
            elif resource.is_consumable and new_quantity > old_quantity:
                self.inventory.draw(
                    resource, event, new_quantity - old_quantity)
            elif resource.is_consumable and new_quantity < old_quantity:
                self.inventory.release(
                    resource, event, old_quantity - new_quantity)

            log.info(
                'Changed allocation %s from %d of %s to %d of %s',
                allocation.id, old_quantity, old_resource_id,
                new_quantity, resource.id
            )

            events.on_allocation_changed(
                self.context, allocation,
                old_resource_id=old_resource_id,
                old_quantity=old_quantity
            )

            return allocation

        return self.serialized(keys, change)

    def remove_allocation(self, allocation_id: UUID | str) -> None:
        """ Releases an allocation. """

        current = self.allocation_by_id(allocation_id)
        keys = [current.resource_id]

        def remove() -> None:
            allocation = self.allocation_by_id(allocation_id)

            events.on_allocation_removed(self.context, allocation)

            if allocation.resource.is_consumable:
                self.inventory.release(
                    allocation.resource, allocation.event, allocation.quantity)

            allocation.event.allocations.remove(allocation)
            self.session.delete(allocation)

            log.info('Removed allocation %s', allocation.id)

        self.serialized(keys, remove)

    def _add_event(
        self,
        title: str,
        start: datetime,
        end: datetime,
        organization_id: UUID | None = None,
        parent_id: UUID | str | None = None,
        status: EventStatus = 'published',
        capacity: int = 0,
        allow_external_attendees: bool = False
    ) -> Event:

        start, end = prepare_window(start, end)

        if status not in EVENT_STATUSES:
            raise errors.ValidationFailed(f'Unknown status: {status}')

        if isinstance(capacity, bool) or not isinstance(capacity, int):
            raise errors.InvalidQuantity(capacity)

        if capacity < 0:
            raise errors.InvalidQuantity(capacity)

        parent = None if parent_id is None else self.event_by_id(parent_id)

        event = Event()
        event.id = new_uuid()
        event.title = title
        event.start = start
        event.end = end
        event.status = status
        event.organization_id = organization_id
        event.parent = parent
        event.capacity = capacity
        event.allow_external_attendees = allow_external_attendees

        self.session.add(event)
        self.session.flush()

        return event

    def add_event(
        self,
        title: str,
        start: datetime,
        end: datetime,
        organization_id: UUID | None = None,
        parent_id: UUID | str | None = None,
        status: EventStatus = 'published',
        capacity: int = 0,
        allow_external_attendees: bool = False
    ) -> Event:
        """ Adds an event. The event is flushed, not committed.

        Events are owned by the consumer. Allotment only needs them to know
        the window of the allocations.

        """
        return self._add_event(
            title, start, end, organization_id, parent_id, status,
            capacity, allow_external_attendees
        )

    def add_attendance(
        self,
        event_id: UUID | str,
        user_id: UUID | None = None,
        checked_in_at: datetime | None = None
    ) -> Attendance:
        """ Registers an attendee for an event (an external guest if no
        user is given). The attendance is flushed, not committed.

        """
        if checked_in_at is not None:
            checked_in_at = as_instant(checked_in_at)

        event = self.event_by_id(event_id)

        attendance = Attendance()
        attendance.id = new_uuid()
        attendance.user_id = user_id
        attendance.event = event
        attendance.checked_in_at = checked_in_at

        self.session.add(attendance)
        self.session.flush()

        return attendance

    def remove_event(self, event_id: UUID | str) -> None:
        """ Removes the event together with its allocations and attendances.
        What its allocations drew from consumables is released.

        """

        event = self.event_by_id(event_id)
        keys = {allocation.resource_id for allocation in event.allocations}

        def remove() -> None:
            event = self.event_by_id(event_id)

            for allocation in event.allocations:
                events.on_allocation_removed(self.context, allocation)

                if allocation.resource.is_consumable:
                    self.inventory.release(
                        allocation.resource, event, allocation.quantity)

            self.session.flush()
            self.session.delete(event)

            log.info('Removed event %s', event.id)

        self.serialized(keys, remove)

    def create_event_with_allocations(
        self,
        title: str,
        start: datetime,
        end: datetime,
        allocations: Iterable[tuple[UUID | str, int]],
        organization_id: UUID | None = None,
        parent_id: UUID | str | None = None,
        status: EventStatus = 'published',
        capacity: int = 0,
        allow_external_attendees: bool = False
    ) -> Event:
        """ Creates an event and books the given (resource id, quantity)
        pairs for it. Either all of it is written or nothing is.

        With the ``native_transactions`` setting this happens in a single
        transaction holding the locks of all resources involved. Otherwise
        the event is written first and removed again if one of its
        allocations fails. If that removal fails as well, the failure is
        logged and passed to :data:`allotment.modules.events.on_compensation_failed`.

        In both cases the error of the failing allocation is raised.

        """
        items = [
            (resource_id, validate_quantity(quantity))
            for resource_id, quantity in allocations
        ]

        event_args = (
            title, start, end, organization_id, parent_id, status,
            capacity, allow_external_attendees
        )

        if self.context.get_setting('native_transactions'):

            def create() -> Event:
                event = self._add_event(*event_args)

                for resource_id, quantity in items:
                    self._allocate(event, resource_id, quantity)

                return event

            return self.serialized([r for r, _ in items], create)

        event = self._add_event(*event_args)
        self.commit()

        event_id = event.id

        try:
            for resource_id, quantity in items:
                self.allocate(resource_id, event_id, quantity)
        except Exception as e:
            self.compensate(event_id, e)
            raise

        return self.event_by_id(event_id)

    def compensate(self, event_id: UUID, error: Exception) -> None:
        """ Removes an event whose allocations could not all be written.

        A failure to remove it does not replace the given error. It is logged
        and published, and set on the given error as ``compensation_failure``.

        """
        try:
            self.remove_event(event_id)
        except Exception as cleanup_error:
            failure = errors.CompensationFailure(event_id, cleanup_error)

            log.error(
                'Could not remove event %s after a failed allocation',
                event_id, exc_info=cleanup_error
            )

            error.compensation_failure = failure  # type: ignore[attr-defined]

            try:
                events.on_compensation_failed(self.context, failure)
            except Exception:
                log.exception('A compensation failure subscriber failed')
        else:
            log.info('Removed event %s after a failed allocation', event_id)
