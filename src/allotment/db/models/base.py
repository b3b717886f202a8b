from __future__ import annotations

from datetime import datetime
from sqlalchemy import MetaData
from sqlalchemy.orm import registry
from sqlalchemy.orm import DeclarativeBase
from uuid import UUID as PythonUUID

from .types import JSON
from .types import UTCDateTime
from .types import UUID


from typing import Any


class ORMBase(DeclarativeBase):
    """ The base of all allotment models.

    Datetimes are stored as UTC instants, ids as UUIDs and free-form data
    as JSON, so the models only need to annotate their columns. Constraints
    and indices are named after their table, which keeps the names stable
    across databases.

    """

    registry = registry(
        metadata=MetaData(naming_convention={
            'ix': '%(table_name)s_%(column_0_name)s_ix',
            'uq': '%(table_name)s_%(column_0_name)s_key',
            'ck': '%(table_name)s_%(constraint_name)s',
            'fk': '%(table_name)s_%(column_0_name)s_fkey',
            'pk': '%(table_name)s_pkey',
        }),
        type_annotation_map={
            datetime: UTCDateTime(timezone=False),
            dict[str, Any]: JSON,
            PythonUUID: UUID,
        }
    )
