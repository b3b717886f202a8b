from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.pool import QueuePool
from sqlalchemy.orm import scoped_session, sessionmaker

from allotment.context.core import StoppableService


from typing import Any


SERIALIZABLE = 'SERIALIZABLE'


class SessionProvider(StoppableService):
    """ Global session utility. It provides a SERIALIZABLE session to
    allotment. If you want to override this provider, be sure to set the
    isolation_level to SERIALIZABLE as well.

    Capacity checks assume that concurrent transactions on the same resource
    cannot both commit based on the same snapshot. Without SERIALIZABLE
    connections, resources may be overbooked by separate processes.

    SQLite is accepted for local development and tests. It has no row locks,
    so only the in-process locks of the context protect it.

    """

    def __init__(
        self,
        dsn: str,
        engine_config: dict[str, Any] | None = None,
        session_config: dict[str, Any] | None = None
    ):
        self.dsn = dsn
        engine_config = dict(engine_config or {})

        if self.is_postgres:
            self.assert_valid_postgres_version(dsn)
            engine_config.setdefault('poolclass', QueuePool)
            engine_config.setdefault('pool_size', 5)
            engine_config.setdefault('max_overflow', 5)
        elif self.is_sqlite:
            # sessions are thread-local, connections are handed around
            engine_config.setdefault(
                'connect_args', {'check_same_thread': False}
            )

        self.engine = create_engine(
            dsn,
            isolation_level=SERIALIZABLE,
            **engine_config
        )

        self.session = scoped_session(sessionmaker(
            bind=self.engine, **(session_config or {})
        ))

    @property
    def backend_name(self) -> str:
        return make_url(self.dsn).get_backend_name()

    @property
    def is_postgres(self) -> bool:
        return self.backend_name == 'postgresql'

    @property
    def is_sqlite(self) -> bool:
        return self.backend_name == 'sqlite'

    def stop_service(self) -> None:
        """ Called by the allotment context when the session provider is
        being discarded (mostly in testing).

        This makes sure that replacing the session provider on the context
        doesn't leave behind any idle connections.

        """

        self.session.remove()
        self.engine.dispose()

    def get_postgres_version(self, dsn: str) -> tuple[str, int]:
        """ Returns the postgres version as a tuple (string, integer).

        Uses its own connection to be independent from any session.

        """
        assert 'postgres' in dsn, 'Not a postgres database'

        query = text("""
            SELECT current_setting('server_version'),
                   current_setting('server_version_num')
        """)

        engine = create_engine(dsn)

        try:
            with engine.connect() as connection:
                result = connection.execute(query).first()
            assert result is not None
            version, number = result
            return version, int(number)
        finally:
            engine.dispose()

    def assert_valid_postgres_version(self, dsn: str) -> str:
        v, n = self.get_postgres_version(dsn)

        if n < 90100:
            raise RuntimeError(f'PostgreSQL 9.1+ is required, got {v}')

        return dsn
