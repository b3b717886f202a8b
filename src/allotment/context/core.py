from __future__ import annotations

import allotment
import enum
import logging
import threading
from contextlib import contextmanager
from functools import cached_property
from psycopg2.extensions import TransactionRollbackError
from sqlalchemy.exc import DBAPIError

from allotment.modules import errors
from allotment.modules.utils import as_uuid


from typing import Any
from typing import Literal
from typing import TypeVar
from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Callable
    from collections.abc import Collection
    from collections.abc import Iterator
    from sqlalchemy.orm import Session
    from typing_extensions import TypeAlias
    from uuid import UUID

    from allotment.context.locking import LockManager
    from allotment.context.registry import Registry
    from allotment.context.session import SessionProvider
    from allotment.db.models import Resource

_T = TypeVar('_T')


log = logging.getLogger('allotment')


class _Marker(enum.Enum):
    missing = enum.auto()
    required = enum.auto()


missing_t: TypeAlias = Literal[_Marker.missing]  # noqa: PYI042
required_t: TypeAlias = Literal[_Marker.required]  # noqa: PYI042
missing: missing_t = _Marker.missing
required: required_t = _Marker.required


def is_serialization_failure(error: DBAPIError) -> bool:
    """ True if the database aborted the transaction because it could not
    be serialized against a concurrent one (SQLSTATE 40001/40P01).

    """
    return isinstance(error.orig, TransactionRollbackError)


class StoppableService:
    """ Services inheriting from this class have their stop_service method
    called when the service is replaced on its context.

    """

    def stop_service(self) -> None:
        pass


class ContextServicesMixin:
    """ Gives access to the services of the context. Expects the class
    using the mixin to provide self.context.

    """

    context: Context

    @cached_property
    def is_resource_visible(
        self
    ) -> Callable[[Resource, UUID | None], bool]:
        return self.context.get_service('visibility').is_resource_visible  # type: ignore[no-any-return]

    def clear_cache(self) -> None:
        """ Clears the cached services of the mixin. """

        try:
            del self.is_resource_visible
        except AttributeError:
            pass

    @property
    def session_provider(self) -> SessionProvider:
        return self.context.get_service('session_provider')  # type: ignore[no-any-return]

    @property
    def lock_manager(self) -> LockManager:
        return self.context.get_service('lock_manager')  # type: ignore[no-any-return]

    @property
    def session(self) -> Session:
        """ Returns the session of the current thread. """
        return self.session_provider.session()  # type: ignore[no-any-return]

    def close(self) -> None:
        """ Closes the session of the current thread. """
        self.session.close()

    def commit(self) -> None:
        self.session.commit()

    def rollback(self) -> None:
        self.session.rollback()

    def serialized(
        self,
        resource_ids: Collection[UUID],
        operation: Callable[[], _T]
    ) -> _T:
        """ Runs the given operation as one serializable unit for the given
        resources and commits it before the resources are released.

        The per-resource locks are held across read, check, write and
        commit. Lock timeouts and serialization failures reported by the
        database roll the session back and run the operation again, up to
        the ``lock_retries`` setting. After that a
        :class:`~allotment.modules.errors.ConcurrencyConflict` is raised.

        Any other error rolls back the session and is passed on.

        """
        keys = sorted({
            str(as_uuid(resource_id) or resource_id)
            for resource_id in resource_ids
        })
        retries = max(1, self.context.get_setting('lock_retries'))
        timeout = self.context.get_setting('lock_timeout')

        for attempt in range(1, retries + 1):
            try:
                with self.lock_manager.hold(keys, timeout):
                    try:
                        result = operation()
                        self.session.flush()
                        self.commit()
                    except BaseException:
                        self.rollback()
                        raise
                    return result
            except errors.LockTimeout:
                log.info(
                    'Lock timeout on %s (attempt %d of %d)',
                    ', '.join(keys), attempt, retries
                )
            except DBAPIError as e:
                if not is_serialization_failure(e):
                    raise
                log.info(
                    'Serialization failure on %s (attempt %d of %d)',
                    ', '.join(keys), attempt, retries
                )

        raise errors.ConcurrencyConflict(keys)


class Context:
    """ The context holds the settings (like the database connection string)
    and the services (like the session provider) used by allotment.

    Every consumer of the library registers its own context, so several
    consumers can live in a single process, each with its own database and
    settings. Lookups which the context cannot answer itself are passed on
    to its parent, the master context of the registry, which holds the
    defaults and is locked.

    Classes talking to the database cache services of the context freely.
    After changing a context you should create a fresh
    :class:`~allotment.db.allocator.Allocator` or call
    :meth:`~.ContextServicesMixin.clear_cache`.

    A context is registered as follows::

        from allotment import registry
        my_context = registry.register_context('my_app')
        my_context.set_setting('dsn', 'postgresql://...')

    """

    def __init__(
        self,
        name: str,
        registry: Registry | None = None,
        parent: Context | None = None,
        locked: bool = False
    ):
        self.name = name
        self.registry = registry or allotment.registry
        self.values: dict[str, Any] = {}
        self.parent = parent
        self.locked = locked
        self.thread_lock = threading.RLock()

    def __repr__(self) -> str:
        return f"<Allotment Context(name='{self.name}')>"

    @contextmanager
    def as_current_context(self) -> Iterator[None]:
        with self.registry.context(self.name):
            yield

    def switch_to(self) -> None:
        self.registry.switch_context(self.name)

    def lock(self) -> None:
        with self.thread_lock:
            self.locked = True

    def unlock(self) -> None:
        with self.thread_lock:
            self.locked = False

    def get(self, key: str) -> Any | missing_t:
        if key in self.values:
            return self.values[key]
        elif self.parent:
            return self.parent.get(key)
        else:
            return missing

    def set(self, key: str, value: Any) -> None:
        if self.locked:
            raise errors.ContextIsLocked

        with self.thread_lock:

            # replaced services get the chance to release their resources
            if isinstance(self.values.get(key), StoppableService):
                self.values[key].stop_service()

            self.values[key] = value

    def get_setting(self, name: str) -> Any:
        return self.get(f'settings.{name}')

    def set_setting(self, name: str, value: Any) -> None:
        with self.thread_lock:
            self.set(f'settings.{name}', value)

    def get_service(self, name: str) -> Any:
        service_id = f'service/{name}'
        factory = self.get(service_id)

        if factory is missing:
            raise errors.UnknownService(service_id)

        cache_id = f'service/{name}/cache'
        cache = self.get(cache_id)

        if cache is missing:
            return factory(self)

        # cached services are created once per context, on first use
        with self.thread_lock:
            if cache is required and self.values.get(cache_id) is None:
                self.set(cache_id, factory(self))

        return self.values[cache_id]

    def set_service(
        self,
        name: str,
        factory: Callable[..., Any],
        cache: bool = False
    ) -> None:
        with self.thread_lock:
            service_id = f'service/{name}'
            self.set(service_id, factory)

            if cache:
                self.set(f'service/{name}/cache', required)
