from __future__ import annotations

from uuid import UUID

from sqlalchemy.orm import mapped_column
from sqlalchemy.orm import relationship
from sqlalchemy.orm import Mapped
from sqlalchemy.schema import CheckConstraint
from sqlalchemy.schema import ForeignKey
from sqlalchemy.schema import Index

from allotment.db.models.base import ORMBase
from allotment.db.models.timestamp import TimestampMixin


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from allotment.db.models import Event, Resource


class Allocation(TimestampMixin, ORMBase):
    """ Books a quantity of a resource for the window of an event.

    Allocations are the source of truth for what is committed. There may
    be several allocations of the same resource to one event. They count
    as one booking with the summed quantity.

    Allocations are removed together with their event, never with their
    resource.

    """

    __tablename__ = 'allocations'

    id: Mapped[UUID] = mapped_column(primary_key=True)

    resource_id: Mapped[UUID] = mapped_column(ForeignKey('resources.id'))

    event_id: Mapped[UUID] = mapped_column(
        ForeignKey('events.id', ondelete='CASCADE')
    )

    quantity: Mapped[int]

    resource: Mapped[Resource] = relationship(back_populates='allocations')

    event: Mapped[Event] = relationship(back_populates='allocations')

    __table_args__ = (
        CheckConstraint('quantity > 0', name='quantity_check'),
        Index('allocation_resource_ix', 'resource_id', 'event_id'),
        Index('allocation_event_ix', 'event_id'),
    )

    def __init__(self) -> None:
        # NOTE: Avoid auto-generated __init__, the mypy plugin is
        #       deprecated and cannot be used with newer versions.
        pass

    def __repr__(self) -> str:
        return (
            f'<Allocation {self.quantity}x {self.resource_id} '
            f'for {self.event_id}>'
        )
