from allotment.db.models.types.json_type import JSON
from allotment.db.models.types.utcdatetime import UTCDateTime
from allotment.db.models.types.uuid_type import SoftUUID, UUID


__all__ = ('JSON', 'SoftUUID', 'UTCDateTime', 'UUID')
