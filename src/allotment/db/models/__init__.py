from allotment.db.models.base import ORMBase
from allotment.db.models.resource import Resource
from allotment.db.models.event import Attendance, Event
from allotment.db.models.allocation import Allocation
from allotment.db.models.inventory import InventoryTransaction
from allotment.db.models.timespan import Timespan


__all__ = (
    'ORMBase',
    'Allocation',
    'Attendance',
    'Event',
    'InventoryTransaction',
    'Resource',
    'Timespan',
)
