from __future__ import annotations

from datetime import datetime
from uuid import UUID

from sqlalchemy import types
from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import relationship
from sqlalchemy.orm import Mapped
from sqlalchemy.schema import ForeignKey
from sqlalchemy.schema import Index

from allotment.db.models.base import ORMBase
from allotment.db.models.timestamp import TimestampMixin


from typing import Literal
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from allotment.db.models import Resource


TransactionType = Literal[
    'restock', 'adjustment', 'return', 'allocation', 'release'
]
TRANSACTION_TYPES: tuple[TransactionType, ...] = (
    'restock', 'adjustment', 'return', 'allocation', 'release'
)

#: written by the allocator, the others by the inventory
DRAW_TYPES: tuple[TransactionType, ...] = ('allocation', 'release')


class InventoryTransaction(TimestampMixin, ORMBase):
    """ A change of the stock of a consumable resource.

    The ledger is append-only. Corrections are recorded as adjustments,
    existing transactions are never changed.

    Bookings of consumables are part of the ledger as well. An
    ``allocation`` draws from the stock when its event starts. A
    ``release`` gives a draw back when an allocation is lowered or
    removed, not before the event starts and never before it is written.
    Balances of the past therefore stay as they were recorded.

    """

    __tablename__ = 'inventory_transactions'

    id: Mapped[UUID] = mapped_column(primary_key=True)

    resource_id: Mapped[UUID] = mapped_column(ForeignKey('resources.id'))

    #: the signed change of the stock
    quantity: Mapped[int]

    type: Mapped[TransactionType] = mapped_column(
        types.Enum(*TRANSACTION_TYPES, name='inventory_transaction_type')
    )

    #: the instant at which the change takes effect
    transaction_date: Mapped[datetime]

    related_event_id: Mapped[UUID | None] = mapped_column(
        ForeignKey('events.id', ondelete='SET NULL')
    )

    notes: Mapped[str | None] = mapped_column(types.Text())

    created_by: Mapped[str | None]

    resource: Mapped[Resource] = relationship(
        back_populates='inventory_transactions'
    )

    __table_args__ = (
        Index(
            'inventory_resource_date_ix',
            'resource_id', 'transaction_date'
        ),
    )

    def __init__(self) -> None:
        pass

    def __repr__(self) -> str:
        return (
            f'<InventoryTransaction {self.type} {self.quantity:+d} '
            f'at {self.transaction_date}>'
        )
