from __future__ import annotations

import threading

from contextlib import contextmanager

from allotment.modules import errors
from allotment.context.core import Context, StoppableService


from typing import TYPE_CHECKING
if TYPE_CHECKING:
    from collections.abc import Iterator


def create_default_registry() -> Registry:
    """ Creates the default registry for allotment. """

    from allotment.context.locking import LockManager
    from allotment.context.session import SessionProvider
    from allotment.context.settings import set_default_settings
    from allotment.context.visibility import Visibility

    registry = Registry()

    def session_provider(context: Context) -> SessionProvider:
        return SessionProvider(context.get_setting('dsn'))

    def lock_manager_factory(context: Context) -> LockManager:
        return LockManager()

    def visibility_factory(context: Context) -> Visibility:
        return Visibility()

    master = registry.master_context
    assert master is not None
    master.set_service('session_provider', session_provider, cache=True)
    master.set_service('lock_manager', lock_manager_factory, cache=True)
    master.set_service('visibility', visibility_factory)

    set_default_settings(master)

    master.lock()

    return registry


class Registry:
    """ Keeps the contexts by name and knows which one is current in the
    running thread. The master context, holding the defaults all other
    contexts fall back to, is created with the registry.

    allotment ships a global registry::

        from allotment import registry

    Applications avoiding global state create their own::

        from allotment.context.registry import create_default_registry
        registry = create_default_registry()

    """

    contexts: dict[str, Context]
    master_context: Context | None = None

    def __init__(self) -> None:
        self.thread_lock = threading.RLock()
        self.local = threading.local()
        self.contexts = {}
        self.master_context = self.register_context('master')

    @property
    def current_context(self) -> Context:
        """ The context of the running thread, master by default. """
        return getattr(self.local, 'current_context', self.master_context)  # type: ignore[no-any-return]

    def get_current_context(self) -> Context:
        return self.current_context

    def is_existing_context(self, name: str) -> bool:
        return name in self.contexts

    def get_context(self, name: str, autocreate: bool = False) -> Context:
        """ Returns the context with the given name. Unknown names raise
        :class:`~allotment.modules.errors.UnknownContext`, unless the
        context should be created on the fly.

        """
        with self.thread_lock:
            if name not in self.contexts:
                if not autocreate:
                    raise errors.UnknownContext(name)

                self.register_context(name)

            return self.contexts[name]

    def register_context(self, name: str, replace: bool = False) -> Context:
        """ Registers a new context with the given name and returns it.

        With ``replace=True`` an existing (unlocked) context of the same name
        is discarded. Its cached services are stopped first.

        """
        with self.thread_lock:
            existing = self.contexts.get(name)

            if existing is not None:
                if not replace:
                    raise errors.ContextAlreadyExists(name)

                if existing.locked:
                    raise errors.ContextIsLocked(name)

                self.stop_services(existing)

            context = self.contexts[name] = Context(
                name,
                registry=self,
                parent=self.master_context
            )

            return context

    def stop_services(self, context: Context) -> None:
        for value in context.values.values():
            if isinstance(value, StoppableService):
                value.stop_service()

    def switch_context(self, name: str) -> None:
        self.local.current_context = self.get_context(name)

    @contextmanager
    def context(self, name: str) -> Iterator[Context]:
        """ Makes the given context the current one within the with block.
        """
        previous = self.current_context
        self.local.current_context = self.get_context(name)

        try:
            yield self.local.current_context
        finally:
            self.local.current_context = previous
