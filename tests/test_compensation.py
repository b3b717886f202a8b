from __future__ import annotations

import logging
import pytest

from datetime import datetime
from mock import patch
from pytz import utc

from allotment.db.models import Allocation, Event
from allotment.modules import errors, events


from typing import Any
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from allotment.db.allocator import Allocator


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2024, 5, 1, hour, minute, tzinfo=utc)


def test_create_event_with_allocations(allocator: Allocator) -> None:
    room = allocator.catalog.add('Room', 'exclusive')
    chairs = allocator.catalog.add('Chairs', 'exclusive', total_quantity=20)
    allocator.commit()

    event = allocator.create_event_with_allocations(
        'Workshop', at(9), at(12),
        [(room.id, 1), (str(chairs.id), 12)],
        capacity=12
    )

    allocator.rollback()

    assert event.title == 'Workshop'
    assert event.capacity == 12
    assert sorted(a.quantity for a in event.allocations) == [1, 12]


def test_create_event_rolls_back_natively(allocator: Allocator) -> None:
    room = allocator.catalog.add('Room', 'exclusive')
    chairs = allocator.catalog.add('Chairs', 'exclusive', total_quantity=20)
    allocator.commit()

    with pytest.raises(errors.InsufficientCapacity):
        allocator.create_event_with_allocations(
            'Workshop', at(9), at(12), [(room.id, 1), (chairs.id, 21)]
        )

    assert allocator.session.query(Event).count() == 0
    assert allocator.session.query(Allocation).count() == 0


def test_create_event_validates_first(allocator: Allocator) -> None:
    room = allocator.catalog.add('Room', 'exclusive')
    allocator.commit()

    with pytest.raises(errors.InvalidQuantity):
        allocator.create_event_with_allocations(
            'Workshop', at(9), at(12), [(room.id, 0)]
        )

    with pytest.raises(errors.UnknownResource):
        allocator.create_event_with_allocations(
            'Workshop', at(9), at(12), [(room.id, 1), ('unknown', 1)]
        )

    assert allocator.session.query(Event).count() == 0


@pytest.mark.parametrize('allocator_settings', [
    {'native_transactions': False}
])
def test_create_event_compensates(
    allocator: Allocator,
    allocator_settings: dict[str, Any]
) -> None:
    room = allocator.catalog.add('Room', 'exclusive')
    chairs = allocator.catalog.add('Chairs', 'exclusive', total_quantity=20)
    allocator.commit()

    event = allocator.create_event_with_allocations(
        'Workshop', at(9), at(12), [(room.id, 1), (chairs.id, 10)]
    )
    assert len(event.allocations) == 2

    with pytest.raises(errors.InsufficientCapacity) as e:
        allocator.create_event_with_allocations(
            'Overlap', at(11), at(13), [(chairs.id, 10), (room.id, 1)]
        )

    assert not hasattr(e.value, 'compensation_failure')

    allocator.session.expire_all()
    assert allocator.session.query(Event).count() == 1
    assert allocator.session.query(Allocation).count() == 2


@pytest.mark.parametrize('allocator_settings', [
    {'native_transactions': False}
])
def test_failed_compensation(
    allocator: Allocator,
    allocator_settings: dict[str, Any],
    caplog: pytest.LogCaptureFixture
) -> None:
    room = allocator.catalog.add('Room', 'exclusive')
    allocator.commit()

    failures: list[errors.CompensationFailure] = []
    events.on_compensation_failed.append(
        lambda context, failure: failures.append(failure))

    def broken_subscriber(context: Any, failure: Any) -> None:
        raise RuntimeError('subscriber failed')

    events.on_compensation_failed.append(broken_subscriber)

    with patch.object(
        allocator, 'remove_event', side_effect=RuntimeError('cleanup failed')
    ):
        with caplog.at_level(logging.INFO, logger='allotment'):
            with pytest.raises(errors.InsufficientCapacity) as e:
                allocator.create_event_with_allocations(
                    'Orphan', at(9), at(10), [(room.id, 2)]
                )

    failure = e.value.compensation_failure  # type: ignore[attr-defined]
    assert isinstance(failure, errors.CompensationFailure)
    assert str(failure.cause) == 'cleanup failed'
    assert failures == [failure]

    messages = [r.getMessage() for r in caplog.records]
    assert any('Could not remove event' in m for m in messages)
    assert 'A compensation failure subscriber failed' in messages

    # the orphaned event remains and has to be cleaned up by hand
    orphan = allocator.event_by_id(failure.event_id)
    assert orphan.title == 'Orphan'
    assert orphan.allocations == []
