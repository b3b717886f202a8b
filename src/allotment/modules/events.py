""" Events are called by the :class:`allotment.db.allocator.Allocator` and
the :class:`allotment.db.inventory.Inventory` whenever the ledger changes.

To subscribe::

    from allotment.modules import events

    def on_allocation_added(context, allocation):
        pass

    events.on_allocation_added.append(on_allocation_added)

To unsubscribe::

    events.on_allocation_added.remove(on_allocation_added)

Subscribers are called in the order they were added, before the surrounding
transaction is committed. An exception raised by a subscriber aborts the
change.
"""
from __future__ import annotations


from typing import overload
from typing import Protocol
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from typing_extensions import ParamSpec
    from uuid import UUID

    from allotment.context.core import Context
    from allotment.db.models import Allocation, InventoryTransaction
    from allotment.modules.errors import CompensationFailure

    _P = ParamSpec('_P')


class Event(list['Callable[_P, object]']):
    """ A list of callables. Calling an instance calls each item in
    ascending order by index.

    """
    # NOTE: The overloads only bind the `ParamSpec` of callback protocols
    @overload
    def __init__(self, f: type[Callable[_P, object]]) -> None: ...
    @overload
    def __init__(self) -> None: ...

    def __init__(self, f: object = None) -> None:
        return

    def __call__(self, *args: _P.args, **kwargs: _P.kwargs) -> None:
        for f in self:
            f(*args, **kwargs)


on_allocation_added: Event[Context, Allocation] = Event()
""" Called when an allocation has been validated and written, with the
following arguments:

    :context:
        The :class:`allotment.context.core.Context` used.

    :allocation:
        The new :class:`allotment.db.models.Allocation`.

"""


class _OnAllocationChangedCallback(Protocol):
    def __call__(
        self,
        context: Context,
        allocation: Allocation,
        /,
        old_resource_id: UUID,
        old_quantity: int
    ) -> None: ...


on_allocation_changed = Event(_OnAllocationChangedCallback)
""" Called when the quantity or the resource of an allocation changed:

    :context:
        The :class:`allotment.context.core.Context` used.

    :allocation:
        The changed :class:`allotment.db.models.Allocation`.

    :old_resource_id:
        The resource the allocation pointed to before.

    :old_quantity:
        The quantity before the change.

"""

on_allocation_removed: Event[Context, Allocation] = Event()
""" Called before an allocation is deleted:

    :context:
        The :class:`allotment.context.core.Context` used.

    :allocation:
        The :class:`allotment.db.models.Allocation` being removed.

"""

on_inventory_changed: Event[Context, InventoryTransaction] = Event()
""" Called when a transaction is appended to the inventory ledger:

    :context:
        The :class:`allotment.context.core.Context` used.

    :transaction:
        The new :class:`allotment.db.models.InventoryTransaction`.

"""

on_compensation_failed: Event[Context, CompensationFailure] = Event()
""" Called when an event orphaned by a failed allocation could not be
removed again. The event has to be cleaned up by hand:

    :context:
        The :class:`allotment.context.core.Context` used.

    :failure:
        The :class:`allotment.modules.errors.CompensationFailure` with the
        id of the orphaned event and the underlying exception.

"""
