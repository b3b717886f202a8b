from __future__ import annotations

import uuid

from sqlalchemy import types

from allotment.modules.utils import as_uuid


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from sqlalchemy.engine import Dialect

    _Base = types.TypeDecorator['SoftUUID']
else:
    _Base = types.TypeDecorator


class SoftUUID(uuid.UUID):
    """ An UUID which is equal to its string forms as well, so ids passed
    around as strings (``str(id)`` or ``id.hex``) can be compared with the
    ids read from the database.

    """

    def __eq__(self, other: object) -> bool:
        if isinstance(other, str):
            other = as_uuid(other)

        return isinstance(other, uuid.UUID) and self.int == other.int

    def __ne__(self, other: object) -> bool:
        return not self == other

    def __hash__(self) -> int:
        return hash(self.int)


class UUID(_Base):
    """ Ids of resources, events and allocations. Uses the native UUID type
    where there is one (CHAR(32) elsewhere). Strings are accepted on write,
    SoftUUIDs are returned on read.

    """

    impl = types.Uuid
    cache_ok = True

    def process_bind_param(
        self,
        value: uuid.UUID | str | None,
        dialect: Dialect
    ) -> uuid.UUID | None:
        return None if value is None else uuid.UUID(str(value))

    def process_result_value(
        self,
        value: uuid.UUID | None,
        dialect: Dialect
    ) -> SoftUUID | None:
        return None if value is None else SoftUUID(int=value.int)
