from __future__ import annotations


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Collection
    from uuid import UUID

    from allotment.db.availability import AvailabilityResult


class AllotmentError(Exception):
    pass


class ContextAlreadyExists(AllotmentError):
    pass


class UnknownContext(AllotmentError):
    pass


class ContextIsLocked(AllotmentError):
    pass


class UnknownService(AllotmentError):
    pass


class NotFound(AllotmentError):
    pass


class UnknownResource(NotFound):
    pass


class UnknownEvent(NotFound):
    pass


class UnknownAllocation(NotFound):
    pass


class ValidationFailed(AllotmentError):
    pass


class NotTimezoneAware(ValidationFailed):
    pass


class InvalidWindow(ValidationFailed):
    pass


class InvalidQuantity(ValidationFailed):
    pass


class InvalidResourceError(ValidationFailed):
    pass


class NotConsumableError(ValidationFailed):
    pass


class EventCancelled(ValidationFailed):
    """ Cancelled events hold no capacity, so they cannot be booked. Their
    allocations may still be removed.

    """


class InsufficientCapacity(ValidationFailed):
    """ Raised when an allocation does not fit. The availability result
    that led to the rejection is attached, so the caller can explain which
    constraint was binding.

    """

    __slots__ = ('result',)

    def __init__(self, result: AvailabilityResult):
        super().__init__(result.reason)
        self.result = result


class ConcurrencyConflict(AllotmentError):
    """ The mutation could not be serialized against concurrent mutations
    of the same resource. Retrying the request later is safe.

    """

    __slots__ = ('keys',)

    def __init__(self, keys: Collection[str]):
        super().__init__(', '.join(keys))
        self.keys = tuple(keys)


class LockTimeout(ConcurrencyConflict):
    pass


class CompensationFailure(AllotmentError):
    """ The cleanup of an event orphaned by a failed allocation did not
    succeed. It is logged and attached to the error of the allocation, it is
    never raised itself.

    """

    __slots__ = ('event_id', 'cause')

    def __init__(self, event_id: UUID, cause: BaseException):
        super().__init__(f'Could not remove event {event_id}: {cause}')
        self.event_id = event_id
        self.cause = cause
