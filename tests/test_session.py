from __future__ import annotations

import allotment
import pytest
import time

from datetime import datetime
from psycopg2.extensions import TransactionRollbackError
from pytz import utc
from sqlalchemy.exc import DBAPIError
from threading import Event, Thread

from allotment.context.session import SessionProvider
from allotment.db.allocator import Allocator
from allotment.db.models import Allocation
from allotment.modules import errors


from typing import Any
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable


class SessionId(Thread):
    def __init__(self, dsn: str) -> None:
        Thread.__init__(self)
        self.session_id: int | None = None
        self.dsn = dsn

    def run(self) -> None:
        context = allotment.registry.register_context(
            str(id(self)), replace=True)
        context.set_setting('dsn', self.dsn)
        allocator = Allocator(context)
        self.session_id = id(allocator.session)

        # make sure the thread runs long enough for both threads to
        # exist at the same time, since the docs states:
        # "Two objects with non-overlapping lifetimes may have the same
        # id() value."
        time.sleep(0.1)

        allocator.close()
        allocator.session_provider.stop_service()


class ExceptionThread(Thread):
    def __init__(self, call: Callable[[], object]) -> None:
        Thread.__init__(self)
        self.call = call
        self.exception: Exception | None = None

    def run(self) -> None:
        try:
            self.call()
        except Exception as e:
            self.exception = e


def test_stop_unused_session(dsn: str) -> None:
    provider = SessionProvider(dsn)
    provider.stop_service()  # should not throw any exceptions


def test_sessionstore(dsn: str) -> None:
    t1 = SessionId(dsn)
    t2 = SessionId(dsn)

    t1.start()
    t2.start()

    t1.join()
    t2.join()

    assert t1.session_id is not None
    assert t2.session_id is not None
    assert t1.session_id != t2.session_id


def test_backend_detection() -> None:
    # no connection is made by these
    provider = SessionProvider.__new__(SessionProvider)

    provider.dsn = 'postgresql://user@localhost/db'
    assert provider.is_postgres
    assert not provider.is_sqlite

    provider.dsn = 'sqlite:///test.db'
    assert provider.is_sqlite
    assert not provider.is_postgres


def test_concurrent_allocations(allocator: Allocator) -> None:
    room = allocator.catalog.add('Room', 'exclusive')
    first = allocator.add_event(
        'First',
        datetime(2024, 5, 1, 9, tzinfo=utc),
        datetime(2024, 5, 1, 10, tzinfo=utc)
    )
    second = allocator.add_event(
        'Second',
        datetime(2024, 5, 1, 9, 30, tzinfo=utc),
        datetime(2024, 5, 1, 10, 30, tzinfo=utc)
    )
    allocator.commit()

    room_id, first_id, second_id = room.id, first.id, second.id

    def allocate(event_id: object) -> Callable[[], object]:
        def run() -> None:
            # every thread gets its own session from the provider
            clone = allocator.clone()
            try:
                clone.allocate(room_id, event_id)  # type: ignore[arg-type]
            finally:
                clone.close()
        return run

    t1 = ExceptionThread(allocate(first_id))
    t2 = ExceptionThread(allocate(second_id))

    t1.start()
    t2.start()

    t1.join()
    t2.join()

    exceptions = [e for e in (t1.exception, t2.exception) if e]

    assert len(exceptions) == 1
    assert isinstance(exceptions[0], errors.InsufficientCapacity)

    allocator.session.expire_all()
    assert allocator.session.query(Allocation).count() == 1


def test_serialization_failures_are_retried(allocator: Allocator) -> None:
    attempts = []

    def operation() -> str:
        attempts.append(1)

        if len(attempts) < 3:
            raise DBAPIError(
                'SELECT 1', {}, TransactionRollbackError('could not serialize')
            )

        return 'done'

    assert allocator.serialized(['key'], operation) == 'done'
    assert len(attempts) == 3


def test_serialization_failures_give_up(allocator: Allocator) -> None:
    attempts = []

    def operation() -> None:
        attempts.append(1)
        raise DBAPIError(
            'SELECT 1', {}, TransactionRollbackError('could not serialize')
        )

    with pytest.raises(errors.ConcurrencyConflict) as e:
        allocator.serialized(['key'], operation)

    assert e.value.keys == ('key', )
    assert len(attempts) == allocator.context.get_setting('lock_retries')


def test_other_database_errors_are_passed_on(allocator: Allocator) -> None:
    attempts = []

    def operation() -> None:
        attempts.append(1)
        raise DBAPIError('SELECT 1', {}, Exception('syntax error'))

    with pytest.raises(DBAPIError):
        allocator.serialized(['key'], operation)

    assert len(attempts) == 1


@pytest.mark.parametrize('allocator_settings', [
    {'lock_timeout': 0.05, 'lock_retries': 2}
])
def test_lock_timeout(
    allocator: Allocator,
    allocator_settings: dict[str, Any]
) -> None:
    room = allocator.catalog.add('Room', 'exclusive')
    event = allocator.add_event(
        'Meeting',
        datetime(2024, 5, 1, 9, tzinfo=utc),
        datetime(2024, 5, 1, 10, tzinfo=utc)
    )
    allocator.commit()

    locked = Event()
    release = Event()

    def hold() -> None:
        with allocator.lock_manager.hold([str(room.id)]):
            locked.set()
            release.wait()

    thread = Thread(target=hold)
    thread.start()
    locked.wait()

    try:
        with pytest.raises(errors.ConcurrencyConflict) as e:
            allocator.allocate(room.id, event.id)

        assert e.value.keys == (str(room.id), )
        assert not isinstance(e.value, errors.LockTimeout)
    finally:
        release.set()
        thread.join()

    # once released, the resource may be booked again
    assert allocator.allocate(room.id, event.id).quantity == 1
