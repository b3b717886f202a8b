from __future__ import annotations

import os
import pytest
from _pytest.fixtures import FixtureLookupError

from allotment import new_allocator, registry
# FIXME: Switch to pytest-postgresql, testing.postgresql is unmaintained
from testing.postgresql import Postgresql  # type: ignore[import-untyped]
from uuid import uuid4 as new_uuid


from typing import Any
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Generator
    from allotment.db.allocator import Allocator


def new_test_allocator(
    dsn: str,
    context_name: str | None = None,
    settings: dict[str, Any] | None = None
) -> Allocator:

    context_name = context_name or new_uuid().hex

    context = registry.register_context(context_name, replace=True)
    context.set_setting('dsn', dsn)

    return new_allocator(context, settings)


@pytest.fixture
def allocator(
    request: pytest.FixtureRequest,
    dsn: str
) -> Generator[Allocator, None, None]:

    # clear the events before each test
    from allotment.modules import events
    for event in (e for e in dir(events) if e.startswith('on_')):
        del getattr(events, event)[:]

    try:
        context = request.getfixturevalue('allocator_context')
    except FixtureLookupError:
        context = None

    try:
        settings = request.getfixturevalue('allocator_settings')
    except FixtureLookupError:
        settings = None

    allocator = new_test_allocator(dsn, context, settings)

    yield allocator

    allocator.rollback()
    allocator.extinguish_records()
    allocator.commit()
    allocator.close()
    allocator.session_provider.stop_service()


@pytest.fixture(scope="session")
def dsn(
    tmp_path_factory: pytest.TempPathFactory
) -> Generator[str, None, None]:

    postgres = None
    url = os.environ.get('ALLOTMENT_TEST_DSN')

    if not url:
        try:
            postgres = Postgresql()
        except RuntimeError:
            # no postgres server installed, fall back to a sqlite file
            path = tmp_path_factory.mktemp('allotment') / 'test.db'
            url = f'sqlite:///{path}'
        else:
            url = postgres.url()

    allocator = new_test_allocator(url)
    allocator.setup_database()
    allocator.commit()

    yield url

    allocator.close()
    allocator.session_provider.stop_service()

    if postgres is not None:
        postgres.stop()
