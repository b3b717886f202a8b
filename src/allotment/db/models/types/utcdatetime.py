from __future__ import annotations

from pytz import utc
from sqlalchemy import types

from allotment.modules.utils import as_instant


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from datetime import datetime
    from sqlalchemy.engine import Dialect

    _Base = types.TypeDecorator[datetime]
else:
    _Base = types.TypeDecorator


class UTCDateTime(_Base):
    """ A column of instants.

    Values are written as naive UTC timestamps, which PostgreSQL and SQLite
    both store without shifting them. Naive values are refused on write
    (see :func:`allotment.modules.utils.as_instant`), as there is no telling
    which instant they describe. Values read are aware and in UTC.

    """

    impl = types.DateTime
    cache_ok = True

    def process_bind_param(  # type:ignore[override]
        self,
        value: datetime | None,
        dialect: Dialect
    ) -> datetime | None:
        return None if value is None else as_instant(value).replace(
            tzinfo=None)

    def process_result_value(
        self,
        value: datetime | None,
        dialect: Dialect
    ) -> datetime | None:
        return None if value is None else utc.localize(value)
