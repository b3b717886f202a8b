from __future__ import annotations

from allotment.db.allocator import Allocator
from allotment.db.availability import AvailabilityCalculator
from allotment.db.catalog import Catalog
from allotment.db.inventory import Inventory
from allotment.db.reports import Reports


from typing import Any
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from allotment.context.core import Context


def new_allocator(
    context: Context | str,
    settings: dict[str, Any] | None = None
) -> Allocator:
    """ Creates a new allocator for the given context (or the name of a
    registered context). The given settings are applied to the context
    first, replacing the current ones.

    """
    if isinstance(context, str):
        import allotment
        context = allotment.registry.get_context(context)

    for name, value in (settings or {}).items():
        context.set_setting(name, value)

    return Allocator(context)


__all__ = (
    'Allocator',
    'AvailabilityCalculator',
    'Catalog',
    'Inventory',
    'Reports',
    'new_allocator',
)
