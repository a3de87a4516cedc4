"""
Tagged command queue.

Commands are written in submission order. Each gets a tag which is
never reused; tagged completions are matched by tag only, never by
arrival order. With pipelining enabled several non-exclusive commands
may be outstanding at once as long as they do not collect the same
kinds of untagged responses, otherwise a command is only written once
the previous one completed.
"""

import itertools
import logging
from collections import OrderedDict, deque
from typing import Callable, Deque, Dict, FrozenSet, Iterable, List, Optional

from . import exceptions
from .response_types import ContinuationRequest, TaggedResponse, UntaggedResponse
from .util import render_arguments

__all__ = ['PendingCommand', 'CommandPipeline', 'make_tag']

logger = logging.getLogger(__name__)

CRLF = b'\r\n'

_DIGITS = '0123456789abcdefghijklmnopqrstuvwxyz'

# Commands changing the connection state or consuming continuations
# never share the wire with another command.
EXCLUSIVE_COMMANDS = frozenset((
    'AUTHENTICATE', 'IDLE', 'SELECT', 'EXAMINE', 'CLOSE', 'UNSELECT', 'LOGIN', 'LOGOUT',
))


def make_tag(prefix: str, number: int) -> str:
    """Return *prefix* followed by *number* in base 36."""
    digits = []
    while True:
        number, rem = divmod(number, 36)
        digits.append(_DIGITS[rem])
        if not number:
            break
    return prefix + ''.join(reversed(digits)).upper()


class PendingCommand:
    """A command waiting to be written or for its tagged completion.

    :ivar tag: the command tag
    :ivar name: the command name, eg. ``'UID FETCH'``
    :ivar future: resolved with the result of *on_result* (or the
      :py:class:`TaggedResponse`) on OK, with :py:exc:`ServerError` on
      NO/BAD
    :ivar collect: names of the untagged responses this command gathers,
      eg. ``{'SEARCH'}``
    :ivar untagged: the collected untagged responses

    *on_untagged* returns False to decline a response it does not want;
    the response is then treated as unsolicited. *on_settle* is called
    with the tagged response when a cancelled command completes anyway,
    so that server side state changes are still applied.
    """

    def __init__(self, tag: str, name: str, args: Iterable[bytes], future,
                 collect: Iterable[str] = (), exclusive: bool = False,
                 interruptible: bool = False,
                 on_result: Optional[Callable] = None,
                 on_failure: Optional[Callable] = None,
                 on_untagged: Optional[Callable] = None,
                 on_continuation: Optional[Callable] = None,
                 on_sent: Optional[Callable] = None,
                 on_settle: Optional[Callable] = None,
                 literal_plus: bool = False):
        self.tag = tag
        self.name = name
        self.args = list(args)
        self.future = future
        self.collect: FrozenSet[str] = frozenset(c.upper() for c in collect)
        self.untagged: List[UntaggedResponse] = []
        self.interruptible = interruptible
        self.on_result = on_result
        self.on_failure = on_failure
        self.on_untagged = on_untagged
        self.on_continuation = on_continuation
        self.on_sent = on_sent
        self.on_settle = on_settle

        self.segments = render_arguments(self.args, literal_plus)
        self.exclusive = exclusive or len(self.segments) > 1 or name in EXCLUSIVE_COMMANDS
        self.next_segment = 0
        self.sent = False
        self.cancelled = False
        self.idling = False
        self.done_sent = False

    def __repr__(self):
        return '<PendingCommand %s %s>' % (self.tag, self.name)

    def first_line(self) -> bytes:
        line = self.tag.encode('ascii') + b' ' + self.name.encode('ascii')
        if self.segments[0]:
            line += b' ' + self.segments[0]
        return line


class CommandPipeline:
    """Queue commands, write them to the transport and match completions.

    *writer* is called with the bytes to send. *create_future* returns a
    new future for each command.
    """

    def __init__(self, writer: Callable[[bytes], None], create_future: Callable,
                 pipelining: bool = False, literal_plus: bool = False, tag_prefix: str = 'A'):
        self._writer = writer
        self._create_future = create_future
        self.pipelining = pipelining
        self.literal_plus = literal_plus
        self.tag_prefix = tag_prefix
        self._counter = itertools.count(1)
        self._queue: Deque[PendingCommand] = deque()
        self._in_flight: Dict[str, PendingCommand] = OrderedDict()
        self._sending: Optional[PendingCommand] = None
        self.on_drain: Optional[Callable[[], None]] = None

    @property
    def in_flight(self) -> List[PendingCommand]:
        return list(self._in_flight.values())

    @property
    def queued(self) -> List[PendingCommand]:
        return list(self._queue)

    @property
    def idle(self) -> Optional[PendingCommand]:
        """The in-flight interruptible (IDLE) command, if any."""
        for cmd in self._in_flight.values():
            if cmd.interruptible:
                return cmd
        return None

    @property
    def sending(self) -> Optional[PendingCommand]:
        """The command waiting for a continuation to send literal data."""
        return self._sending

    @property
    def busy(self) -> bool:
        return bool(self._queue or self._in_flight)

    def send(self, name: str, args: Iterable[bytes] = (), **kwargs) -> PendingCommand:
        """Queue command *name* with *args* and return its
        :py:class:`PendingCommand`.

        Arguments are bytes tokens; :py:class:`imapcore.util.Literal`
        arguments are sent as literals.
        """
        tag = make_tag(self.tag_prefix, next(self._counter))
        cmd = PendingCommand(tag, name, args, self._create_future(),
                             literal_plus=self.literal_plus, **kwargs)
        self._queue.append(cmd)
        logger.debug('Queued %s %s', tag, name)
        self.interrupt_idle()
        self._pump()
        return cmd

    def interrupt_idle(self) -> None:
        """End a running IDLE so queued commands can proceed."""
        cmd = self.idle
        if cmd is None or cmd.done_sent:
            return
        if cmd.idling:
            cmd.done_sent = True
            self._writer(b'DONE' + CRLF)

    def on_continuation(self, response: ContinuationRequest) -> None:
        cmd = self._sending
        if cmd is not None:
            cmd.next_segment += 1
            segment = cmd.segments[cmd.next_segment]
            if cmd.next_segment == len(cmd.segments) - 1:
                self._writer(segment + CRLF)
                self._sending = None
                self._pump()
            else:
                self._writer(segment)
            return

        for cmd in self._in_flight.values():
            if cmd.interruptible:
                cmd.idling = True
                if self._queue or cmd.cancelled:
                    self.interrupt_idle()
                return
            if cmd.on_continuation is not None:
                self._writer(cmd.on_continuation(cmd, response) + CRLF)
                return
        raise exceptions.ProtocolError('Unexpected continuation request: %r' % response.text)

    def on_tagged_response(self, response: TaggedResponse) -> None:
        cmd = self._in_flight.pop(response.tag, None)
        if cmd is None:
            raise exceptions.ProtocolError('Tagged response for unknown tag %r' % response.tag)
        if self._sending is cmd:
            self._sending = None

        if cmd.cancelled:
            logger.info('Dropping %s response for cancelled command %s %s',
                        response.status, cmd.tag, cmd.name)
            if cmd.on_settle is not None:
                cmd.on_settle(cmd, response)
        else:
            self._complete(cmd, response)

        self._pump()
        if not self.busy and self.on_drain is not None:
            self.on_drain()

    def route_untagged(self, response: UntaggedResponse) -> bool:
        """Hand *response* to the oldest in-flight command collecting its
        kind. Returns False if no command wants it.
        """
        for cmd in self._in_flight.values():
            if response.kind in cmd.collect:
                if cmd.cancelled:
                    return True
                if cmd.on_untagged is not None:
                    if cmd.on_untagged(cmd, response) is False:
                        continue
                else:
                    cmd.untagged.append(response)
                return True
        return False

    def cancel(self, tag: str) -> bool:
        """Withdraw the command with *tag*.

        A queued command is removed; an in-flight one is marked so that
        its late completion is dropped. Either way its future fails with
        :py:exc:`CancelledError`. Returns False for an unknown tag.
        """
        for cmd in self._queue:
            if cmd.tag == tag:
                self._queue.remove(cmd)
                break
        else:
            cmd = self._in_flight.get(tag)
            if cmd is None or cmd.cancelled:
                return False

        cmd.cancelled = True
        exc = exceptions.CancelledError('Command %s %s cancelled' % (cmd.tag, cmd.name))
        _fail_command(cmd, exc)
        logger.debug('Cancelled %s %s', cmd.tag, cmd.name)
        if cmd.interruptible:
            self.interrupt_idle()
        return True

    def fail_all(self, exc: Exception) -> None:
        """Fail every queued and in-flight command with *exc*."""
        pending = list(self._in_flight.values()) + list(self._queue)
        self._in_flight.clear()
        self._queue.clear()
        self._sending = None
        for cmd in pending:
            if not cmd.cancelled:
                _fail_command(cmd, exc)

    def _pump(self) -> None:
        while self._queue and self._sending is None:
            cmd = self._queue[0]
            if self._in_flight and not self._can_overlap(cmd):
                return
            self._queue.popleft()
            self._start(cmd)

    def _can_overlap(self, cmd: PendingCommand) -> bool:
        if not self.pipelining or cmd.exclusive:
            return False
        for other in self._in_flight.values():
            if other.exclusive or other.collect & cmd.collect:
                return False
        return True

    def _start(self, cmd: PendingCommand) -> None:
        self._in_flight[cmd.tag] = cmd
        cmd.sent = True
        if cmd.on_sent is not None:
            cmd.on_sent(cmd)
        line = cmd.first_line()
        if len(cmd.segments) > 1:
            self._sending = cmd
            self._writer(line)
        else:
            self._writer(line + CRLF)

    def _complete(self, cmd: PendingCommand, response: TaggedResponse) -> None:
        if response.status != 'OK':
            exc = exceptions.ServerError(response.text, response.status, response.code, cmd.name)
            _fail_command(cmd, exc)
            return

        try:
            result = cmd.on_result(cmd, response) if cmd.on_result else response
        except exceptions.ProtocolError as e:
            _fail_command(cmd, e)
            raise
        except exceptions.IMAPCoreError as e:
            _fail_command(cmd, e)
            return
        if not cmd.future.done():
            cmd.future.set_result(result)


def _fail_command(cmd: PendingCommand, exc: Exception) -> None:
    if cmd.on_failure is not None:
        cmd.on_failure(cmd, exc)
    if not cmd.future.done():
        cmd.future.set_exception(exc)
