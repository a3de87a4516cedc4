"""
Observer registration and dispatch for connection and fetch events.

Observers are called synchronously, in registration order, while the
response that triggered the event is being processed. An observer must
not block: coroutine functions may be registered and are scheduled as
tasks on the event loop instead of being awaited.
"""

import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .response_types import BodyInfo, FetchedMessage, MessageAttributes

__all__ = ['EventDispatcher', 'FetchMessage', 'FetchStream']

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Map event names to ordered lists of observers.

    Events named in *once_only* fire at most once for the lifetime of the
    dispatcher; later emits are ignored.
    """

    def __init__(self, once_only: Iterable[str] = (), loop: Optional[asyncio.AbstractEventLoop] = None):
        self._observers: Dict[str, List[Tuple[Callable, bool]]] = {}
        self._once_only = frozenset(once_only)
        self._fired = set()
        self._loop = loop

    def on(self, event: str, callback: Callable) -> Callable:
        """Call *callback* every time *event* is emitted.

        Returns *callback* so this can be used as a decorator.
        """
        self._observers.setdefault(event, []).append((callback, False))
        return callback

    def once(self, event: str, callback: Callable) -> Callable:
        """Call *callback* the next time *event* is emitted only."""
        self._observers.setdefault(event, []).append((callback, True))
        return callback

    def off(self, event: str, callback: Optional[Callable] = None) -> None:
        """Remove *callback*, or every observer of *event* if omitted."""
        if callback is None:
            self._observers.pop(event, None)
            return
        observers = self._observers.get(event, [])
        self._observers[event] = [(cb, once) for cb, once in observers if cb != callback]

    def listener_count(self, event: str) -> int:
        return len(self._observers.get(event, ()))

    def has_fired(self, event: str) -> bool:
        return event in self._fired

    def emit(self, event: str, *args) -> bool:
        """Call the observers of *event* with *args*.

        Returns False if the event is once-only and already fired, True
        otherwise. Exceptions raised by observers are logged and never
        propagate to the caller.
        """
        if event in self._once_only:
            if event in self._fired:
                logger.debug('Ignoring repeated %r event', event)
                return False
            self._fired.add(event)

        observers = self._observers.get(event)
        if not observers:
            return True
        if any(once for _, once in observers):
            self._observers[event] = [(cb, once) for cb, once in observers if not once]

        for callback, _ in list(observers):
            try:
                result = callback(*args)
            except Exception:
                logger.exception('Error in %r observer %r', event, callback)
                continue
            if asyncio.iscoroutine(result):
                self._schedule(event, result)
        return True

    def _schedule(self, event, coro) -> None:
        loop = self._loop
        if loop is None:
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                logger.warning('No event loop to run coroutine observer of %r', event)
                coro.close()
                return
        task = loop.create_task(coro)
        task.add_done_callback(_log_task_error)


def _log_task_error(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error('Coroutine observer failed', exc_info=exc)


class FetchMessage(EventDispatcher):
    """One message of a FETCH result.

    Emits ``body(data, info)`` for each body section, then
    ``attributes(attrs)`` and finally ``end()``.
    """

    def __init__(self, seqno: int, loop=None):
        super().__init__(once_only=('attributes', 'end'), loop=loop)
        self.seqno = seqno


class FetchStream(EventDispatcher):
    """Result of a FETCH command.

    Emits ``message(msg, seqno)`` for every message as its FETCH response
    arrives, then ``end()`` on success or ``error(exc)`` on failure.

    A FetchStream can also be awaited; it resolves to the list of
    :py:class:`FetchedMessage` collected in order of arrival.
    """

    def __init__(self, future: asyncio.Future, loop=None):
        super().__init__(once_only=('error', 'end'), loop=loop)
        self.future = future
        self.messages: List[FetchedMessage] = []
        self.tag: Optional[str] = None

    def __await__(self):
        return self.future.__await__()

    def deliver(self, attributes: MessageAttributes, bodies: List[Tuple[str, bytes]]) -> None:
        """Dispatch one parsed FETCH response."""
        msg = FetchMessage(attributes.seqno, self._loop)
        self.emit('message', msg, attributes.seqno)
        fetched = FetchedMessage(attributes.seqno, attributes)
        for which, data in bodies:
            fetched.bodies[which] = data
            msg.emit('body', data, BodyInfo(which, len(data)))
        msg.emit('attributes', attributes)
        msg.emit('end')
        self.messages.append(fetched)

    def finish(self, result=None) -> List[FetchedMessage]:
        self.emit('end')
        return self.messages

    def fail(self, exc: Exception) -> None:
        self.emit('error', exc)
