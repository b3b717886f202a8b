from __future__ import annotations

from uuid import UUID

from sqlalchemy import types
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import relationship
from sqlalchemy.orm import Mapped
from sqlalchemy.schema import CheckConstraint
from sqlalchemy.schema import Index

from allotment.db.models.base import ORMBase
from allotment.db.models.timestamp import TimestampMixin


from typing import Any
from typing import Literal
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from sqlalchemy.sql import ColumnElement

    from allotment.db.models import Allocation, InventoryTransaction


ResourceType = Literal['exclusive', 'shareable', 'consumable']
RESOURCE_TYPES: tuple[ResourceType, ...] = (
    'exclusive', 'shareable', 'consumable'
)


class Resource(TimestampMixin, ORMBase):
    """ Something that can be booked for events.

    What the quantity means depends on the type of the resource:

    :exclusive:
        A single item (or a fixed set of identical items) which is either
        in use or not during a window. ``total_quantity`` is usually 1.

    :shareable:
        A pool which several events may use at the same time.
        ``total_quantity`` is the pool size, ``max_concurrent_usage`` caps
        the number of events using it at any single instant.

    :consumable:
        Supplies which are used up. ``total_quantity`` is the opening stock,
        later changes are recorded in the inventory ledger.

    Resources without organization are global and visible to all
    organizations.

    """

    __tablename__ = 'resources'

    #: the id of the resource
    id: Mapped[UUID] = mapped_column(primary_key=True)

    name: Mapped[str] = mapped_column(types.Text())

    description: Mapped[str | None] = mapped_column(types.Text())

    type: Mapped[ResourceType] = mapped_column(
        types.Enum(*RESOURCE_TYPES, name='resource_type')
    )

    #: single item, pool size or opening stock, depending on the type
    total_quantity: Mapped[int] = mapped_column(default=1)

    #: only set for shareable resources
    max_concurrent_usage: Mapped[int | None]

    #: the owning organization, NULL for global resources
    organization_id: Mapped[UUID | None]

    #: custom data reserved for the user
    data: Mapped[dict[str, Any] | None]

    allocations: Mapped[list[Allocation]] = relationship(
        back_populates='resource',
        passive_deletes=True
    )

    inventory_transactions: Mapped[list[InventoryTransaction]] = (
        relationship(back_populates='resource', passive_deletes=True)
    )

    __table_args__ = (
        CheckConstraint(
            'total_quantity >= 0',
            name='total_quantity_check'
        ),
        CheckConstraint(
            "(type = 'shareable' AND max_concurrent_usage IS NOT NULL "
            "AND max_concurrent_usage >= 1) OR "
            "(type != 'shareable' AND max_concurrent_usage IS NULL)",
            name='max_concurrent_usage_check'
        ),
        Index('resource_organization_ix', 'organization_id'),
    )

    def __init__(self) -> None:
        # NOTE: Avoid auto-generated __init__, the mypy plugin is
        #       deprecated and cannot be used with newer versions.
        pass

    def __repr__(self) -> str:
        return f'<Resource {self.name!r} ({self.type})>'

    @hybrid_property
    def is_global(self) -> bool:
        return self.organization_id is None

    @is_global.inplace.expression
    @classmethod
    def _is_global_expression(cls) -> ColumnElement[bool]:
        return cls.organization_id.is_(None)

    @property
    def is_shareable(self) -> bool:
        return self.type == 'shareable'

    @property
    def is_consumable(self) -> bool:
        return self.type == 'consumable'
