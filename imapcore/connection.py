import asyncio
from datetime import datetime
from logging import getLogger, LoggerAdapter
from typing import Dict, FrozenSet, Iterable, List, Optional, Union

from . import exceptions
from .config import ConnectionConfig
from .datetime_util import datetime_to_INTERNALDATE
from .events import EventDispatcher, FetchStream
from .imap_utf7 import encode as encode_utf7
from .pipeline import CommandPipeline, PendingCommand
from .response_lexer import ResponseReader
from .response_parser import (
    parse_fetch_attributes, parse_list_item, parse_message_list, parse_namespace,
    parse_response_line, parse_status,
)
from .response_types import (
    ContinuationRequest, Mailbox, MailboxTreeNode, Namespaces, SearchIds, StatusResponse,
    TaggedResponse, UntaggedResponse,
)
from .search import build_fetch_items, build_search_criteria
from .state import ConnectionState, MailboxState, SessionState
from .util import (
    Literal, MessageSource, encode_string, join_message_ids, message_set_matcher,
    normalise_flags, normalise_keywords, quote_string, to_bytes, to_unicode,
)

logger = getLogger(__name__)

__all__ = ['IMAPConnection', 'SequenceNumberView', 'WireLoggerAdapter', 'require_capability',
           'DELETED', 'SEEN', 'ANSWERED', 'FLAGGED', 'DRAFT']

DELETED = '\\Deleted'
SEEN = '\\Seen'
ANSWERED = '\\Answered'
FLAGGED = '\\Flagged'
DRAFT = '\\Draft'

_DEFAULT_STATUS_ITEMS = ('MESSAGES', 'RECENT', 'UNSEEN', 'UIDVALIDITY', 'UIDNEXT')

AUTHENTICATED = (ConnectionState.AUTHENTICATED, ConnectionState.SELECTED)


def require_capability(capability):
    """Decorator raising CapabilityError when a capability is not available."""
    def actual_decorator(func):
        def wrapper(client, *args, **kwargs):
            if not client.server_supports(capability):
                raise exceptions.CapabilityError(
                    f"Server does not support {capability} capability"
                )
            return func(client, *args, **kwargs)
        wrapper.__name__ = func.__name__
        wrapper.__doc__ = func.__doc__
        return wrapper
    return actual_decorator


class IMAPConnection(asyncio.Protocol):
    """An IMAP client connection driven by an asyncio transport.

    The connection does not open sockets itself. Use it as the protocol
    of a transport, eg.::

        conn = IMAPConnection(ConnectionConfig(user='me', password='secret'))
        conn.once('ready', on_ready)
        await loop.create_connection(lambda: conn, 'imap.example.com', 143)

    Once the server greeting arrives the connection authenticates with
    the credentials of *config*, loads the server capabilities and
    namespaces and then emits ``ready``.

    Operations return an ``asyncio.Future``. Malformed arguments and
    operations invalid in the current state raise immediately (see
    :py:exc:`ValidationError`), anything else is reported through the
    future. Message operations use UIDs; the same operations working
    on sequence numbers are available on the *seq* attribute.

    Events (register observers with :py:meth:`on` and :py:meth:`once`):

    * ``ready()``: authenticated and ready for commands
    * ``error(exc)``: a fatal error occurred
    * ``end()``, ``close(had_error)``: the connection ended
    * ``alert(text)``: the server sent an ``[ALERT]``
    * ``mail(count)``: *count* new messages arrived in the selected mailbox
    * ``expunge(seqno)``: a message was expunged from the selected mailbox
    * ``uidvalidity(value)``: the UID validity of the selected mailbox changed
    * ``update(seqno, attributes)``: unsolicited message update, such as
      flag changes made by another client
    """

    def __init__(self, config: ConnectionConfig, loop: Optional[asyncio.AbstractEventLoop] = None):
        self.config = config
        self._loop = loop or asyncio.get_running_loop()
        self.events = EventDispatcher(once_only=('ready', 'error', 'end', 'close'), loop=self._loop)
        self.seq = SequenceNumberView(self)
        self.capabilities: FrozenSet[str] = frozenset()
        self.namespaces = Namespaces()
        self.delimiter: Optional[str] = None
        self.welcome: Optional[str] = None
        self.normalise_times = False

        self._session = SessionState()
        self._reader = ResponseReader()
        self._pipeline = CommandPipeline(self._write, self._loop.create_future,
                                         pipelining=config.pipelining)
        self._pipeline.on_drain = self._arm_keepalive
        self._transport = None
        self._mailbox: Optional[MailboxState] = None
        self._selecting = False
        self._greeted = False
        self._closed = False
        self._logout_cmd: Optional[PendingCommand] = None
        self._redact_next = False
        self._keepalive_handle = None
        self._idle_renew_handle = None
        self._renew_idle = False
        self._wire_log = WireLoggerAdapter(getLogger('imapcore.wire'), {})

    # Events

    def on(self, event, callback):
        return self.events.on(event, callback)

    def once(self, event, callback):
        return self.events.once(event, callback)

    def off(self, event, callback=None):
        self.events.off(event, callback)

    @property
    def state(self) -> ConnectionState:
        return self._session.state

    @property
    def mailbox(self) -> Optional[Mailbox]:
        """A copy of the currently selected mailbox, or None."""
        if self._mailbox is None or self.state is not ConnectionState.SELECTED:
            return None
        return self._mailbox.snapshot()

    def uid_for(self, seqno: int) -> Optional[int]:
        return self._mailbox.uid_for(seqno) if self._mailbox else None

    def seqno_for(self, uid: int) -> Optional[int]:
        return self._mailbox.seqno_for(uid) if self._mailbox else None

    def flags_for(self, uid: int):
        return self._mailbox.flags_for(uid) if self._mailbox else None

    def server_supports(self, capability: str) -> bool:
        """Return True if the server advertises *capability*."""
        return capability.upper() in self.capabilities

    # asyncio.Protocol

    def connection_made(self, transport):
        self._transport = transport
        self._session.transition(ConnectionState.CONNECTED)
        logger.debug('Connected to host %s:%s', self.config.host, self.config.port)

    def data_received(self, data: bytes):
        if self._closed:
            return
        try:
            for raw in self._reader.feed(data):
                self._handle_response(raw)
                if self._closed:
                    break
        except exceptions.ProtocolError as e:
            self._fail(e)

    def eof_received(self):
        logger.debug('Server closed its end of the connection')
        return False

    def connection_lost(self, exc):
        if self._closed:
            return
        if exc is not None:
            self._fail(exceptions.ConnectionClosedError('Connection lost: %s' % exc))
            return
        logout = self._logout_cmd
        if logout is not None and not logout.future.done():
            logout.future.set_result(None)
        if [cmd for cmd in self._pipeline.in_flight + self._pipeline.queued if cmd is not logout]:
            self._fail(exceptions.ConnectionClosedError('Connection closed by server'))
        else:
            self._shutdown()

    def handle_timeout(self, kind: str) -> None:
        """Report expiry of the transport's *kind* timer (``'connect'``,
        ``'auth'`` or ``'socket'``).

        This is fatal: every outstanding command fails with
        :py:exc:`imapcore.exceptions.TimeoutError`.
        """
        self._fail(exceptions.TimeoutError('Timed out (%s)' % kind, kind))

    # Lifecycle

    def end(self) -> asyncio.Future:
        """Logout and close the connection once the server confirmed."""
        self._require_connected()
        self._logout_cmd = self._command('LOGOUT', on_result=self._on_logout)
        return self._logout_cmd.future

    def destroy(self) -> None:
        """Close the connection immediately, without logging out.

        Outstanding commands fail with :py:exc:`ConnectionClosedError`.
        """
        self._shutdown()

    def cancel(self, future_or_tag) -> bool:
        """Withdraw a command, identified by its tag or by the future (or
        :py:class:`FetchStream`) returned for it.

        The command's future fails with :py:exc:`CancelledError`. A
        command already written to the server is not withdrawn there;
        its result is dropped when it arrives, but a cancelled SELECT,
        EXAMINE, CLOSE or UNSELECT still changes the connection state.
        """
        if isinstance(future_or_tag, str):
            tag = future_or_tag
        elif isinstance(future_or_tag, FetchStream):
            tag = future_or_tag.tag
        else:
            tag = None
            for cmd in self._pipeline.in_flight + self._pipeline.queued:
                if cmd.future is future_or_tag:
                    tag = cmd.tag
                    break
        if tag is None:
            return False
        return self._pipeline.cancel(tag)

    def noop(self) -> asyncio.Future:
        """Execute the NOOP command.

        This command returns immediately, and lets the server report
        updates of the selected mailbox through the ``mail``,
        ``expunge`` and ``update`` events.
        """
        self._require_connected()
        return self._command('NOOP', on_result=_response_text).future

    @require_capability('IDLE')
    def idle(self) -> asyncio.Future:
        """Put the server into IDLE mode.

        In this mode the server will return unsolicited responses
        about changes to the selected mailbox. They are delivered as
        events.

        IDLE ends when :py:meth:`idle_done` is called or any other
        command is issued; the returned future then resolves.

        See :rfc:`2177` for more information about the IDLE extension.
        """
        self._session.require(*AUTHENTICATED)
        return self._start_idle().future

    def idle_done(self) -> None:
        """Take the server out of IDLE mode."""
        self._pipeline.interrupt_idle()

    @require_capability('ID')
    def id_(self, parameters: Optional[Dict[str, str]] = None) -> asyncio.Future:
        """Issue the ID command, resolving to a dict of server
        implementation fields.

        *parameters* should be specified as a dictionary of field/value pairs,
        for example: ``{"name": "imapcore", "version": "1.0"}``
        """
        if parameters is None:
            args = [b'NIL']
        else:
            if not isinstance(parameters, dict):
                raise exceptions.ValidationError('parameters must be a dict or None')
            args = [b'(']
            for key, value in parameters.items():
                args.append(self._encode_string(key))
                args.append(b'NIL' if value is None else self._encode_string(value))
            args.append(b')')
        return self._command('ID', args, collect=('ID',), on_result=_on_id).future

    # Mailboxes

    def open_box(self, name: str, read_only: bool = False,
                 modifiers: Optional[Iterable[str]] = None) -> asyncio.Future:
        """Select the mailbox *name*.

        Future calls to methods such as search and fetch will act on
        the selected mailbox. The future resolves to a
        :py:class:`Mailbox` describing it.

        If *read_only* is ``True`` the mailbox is opened with EXAMINE
        and no changes can be made to it. *modifiers* are select
        parameters such as ``['CONDSTORE']``.
        """
        self._session.require(*AUTHENTICATED)
        args = [self._encode_mailbox(name)]
        if modifiers:
            mods = [to_bytes(m).upper() for m in modifiers]
            if b'CONDSTORE' in mods and not self.server_supports('CONDSTORE'):
                raise exceptions.CapabilityError('Server does not support CONDSTORE capability')
            args.append(b'(' + b' '.join(mods) + b')')

        def sent(cmd):
            self._mailbox = MailboxState(name, read_only, self.delimiter)
            self._selecting = True

        def selected(cmd, response):
            self._selecting = False
            if response.code == 'READ-ONLY':
                self._mailbox.mailbox.read_only = True
            elif response.code == 'READ-WRITE':
                self._mailbox.mailbox.read_only = False
            self._session.transition(ConnectionState.SELECTED)
            logger.debug('Selected mailbox %s', name)
            return self._mailbox.snapshot()

        def failed(cmd, exc):
            if isinstance(exc, exceptions.CancelledError) and cmd.sent:
                # The server still answers; settled() applies the outcome.
                return
            self._selecting = False
            if isinstance(exc, exceptions.ServerError):
                # A failed SELECT leaves no mailbox selected.
                self._mailbox = None
                if self.state is ConnectionState.SELECTED:
                    self._session.transition(ConnectionState.AUTHENTICATED)

        def settled(cmd, response):
            if response.status == 'OK':
                selected(cmd, response)
            else:
                failed(cmd, exceptions.ServerError(response.text, response.status,
                                                   response.code, cmd.name))

        command = 'EXAMINE' if read_only else 'SELECT'
        return self._command(command, args, on_sent=sent, on_result=selected,
                             on_failure=failed, on_settle=settled).future

    def close_box(self, auto_expunge: bool = True) -> asyncio.Future:
        """Close the currently selected mailbox.

        With *auto_expunge* messages flagged as ``\\Deleted`` are removed.
        Otherwise UNSELECT is used when supported, or the mailbox is
        re-opened read-only before it is closed.
        """
        self._require_selected()

        def closed(cmd, response):
            self._mailbox = None
            self._session.transition(ConnectionState.AUTHENTICATED)
            return response.text

        def settled(cmd, response):
            if response.status == 'OK':
                closed(cmd, response)

        if auto_expunge:
            return self._command('CLOSE', on_result=closed, on_settle=settled).future
        if self.server_supports('UNSELECT'):
            return self._command('UNSELECT', on_result=closed, on_settle=settled).future

        name = self._mailbox.name

        def examining(cmd):
            self._mailbox = MailboxState(name, True, self.delimiter)
            self._selecting = True

        def examined(cmd, response):
            self._selecting = False

        if not self._mailbox.mailbox.read_only:
            self._internal('EXAMINE', [self._encode_mailbox(name)], on_sent=examining,
                           on_result=examined, on_failure=examined)
        return self._command('CLOSE', on_result=closed, on_settle=settled).future

    def add_box(self, name: str) -> asyncio.Future:
        """Create the mailbox *name*."""
        self._session.require(*AUTHENTICATED)
        return self._command('CREATE', [self._encode_mailbox(name)], on_result=_response_text).future

    def del_box(self, name: str) -> asyncio.Future:
        """Delete the mailbox *name*."""
        self._session.require(*AUTHENTICATED)
        return self._command('DELETE', [self._encode_mailbox(name)], on_result=_response_text).future

    def rename_box(self, old_name: str, new_name: str) -> asyncio.Future:
        """Change the name of a mailbox.

        Renaming INBOX moves its messages to a new mailbox and leaves
        INBOX empty, see :rfc:`3501#section-6.3.5`.
        """
        self._session.require(*AUTHENTICATED)
        if self._mailbox is not None and self._mailbox.name == old_name:
            raise exceptions.ValidationError('Cannot rename the currently selected mailbox')
        args = [self._encode_mailbox(old_name), self._encode_mailbox(new_name)]
        return self._command('RENAME', args, on_result=_response_text).future

    def subscribe_box(self, name: str) -> asyncio.Future:
        self._session.require(*AUTHENTICATED)
        return self._command('SUBSCRIBE', [self._encode_mailbox(name)], on_result=_response_text).future

    def unsubscribe_box(self, name: str) -> asyncio.Future:
        self._session.require(*AUTHENTICATED)
        return self._command('UNSUBSCRIBE', [self._encode_mailbox(name)], on_result=_response_text).future

    def status(self, name: str, items: Optional[Iterable[str]] = None) -> asyncio.Future:
        """Return the status of the mailbox *name* as a
        :py:class:`Mailbox`.

        *items* selects the STATUS data items, by default message counts,
        UIDVALIDITY and UIDNEXT (plus HIGHESTMODSEQ when the server
        supports CONDSTORE).

        The status of the currently selected mailbox is not available:
        look at :py:attr:`mailbox` instead.
        """
        self._session.require(*AUTHENTICATED)
        if self._mailbox is not None and self._mailbox.name == name:
            raise exceptions.ValidationError('Cannot call status on the currently selected mailbox')
        if items is None:
            items = list(_DEFAULT_STATUS_ITEMS)
            if self.server_supports('CONDSTORE'):
                items.append('HIGHESTMODSEQ')
        what = [to_bytes(item).upper() for item in items]
        if not what:
            raise exceptions.ValidationError('No STATUS items specified')

        def status_result(cmd, response):
            for untagged in cmd.untagged:
                box_name, values = parse_status(untagged.data)
                if box_name == name or len(cmd.untagged) == 1:
                    return _mailbox_from_status(name, values)
            raise exceptions.ProtocolError('No STATUS response for %r' % name)

        args = [self._encode_mailbox(name), b'(' + b' '.join(what) + b')']
        return self._command('STATUS', args, collect=('STATUS',), on_result=status_result).future

    def get_boxes(self, ns_prefix: str = '') -> asyncio.Future:
        """Return the hierarchy of mailboxes below *ns_prefix* as a dict
        of name to :py:class:`MailboxTreeNode`.
        """
        return self._list('LIST', ns_prefix)

    def get_subscribed_boxes(self, ns_prefix: str = '') -> asyncio.Future:
        """As :py:meth:`get_boxes` for subscribed mailboxes only."""
        return self._list('LSUB', ns_prefix)

    def _list(self, command, ns_prefix):
        self._session.require(*AUTHENTICATED)

        def tree(cmd, response):
            return _build_mailbox_tree(parse_list_item(u.data) for u in cmd.untagged)

        args = [self._encode_mailbox(ns_prefix), b'"*"']
        return self._command(command, args, collect=(command,), on_result=tree).future

    # Messages

    def search(self, criteria) -> asyncio.Future:
        """Return a list of UIDs from the currently selected mailbox
        matching *criteria*.

        *criteria* should be a sequence of one or more criteria items,
        ANDed together. Example values::

            ['UNSEEN']
            [['FROM', 'a@b.com'], '!FLAGGED']
            [['SINCE', date(2005, 4, 3)], ['LARGER', 500]]
            [['OR', 'SEEN', ['SUBJECT', 'foo']]]
            [['X-GM-RAW', 'has:attachment']]

        Quoting and literal encoding are done as required; 8-bit
        criteria are sent with ``CHARSET UTF-8``.

        See :py:mod:`imapcore.search` and :rfc:`3501#section-6.4.4` for
        more details.

        The returned list of message ids will have a special *modseq*
        attribute. This is set if the server included a MODSEQ value
        to the search response (i.e. if a MODSEQ criteria was included
        in the search).
        """
        return self._search(criteria, uid=True)

    def fetch(self, source: MessageSource, options=None) -> FetchStream:
        """Retrieve the messages in *source* from the currently selected
        mailbox.

        *options* is a :py:class:`FetchOptions` (or a dict of its
        fields) selecting the body sections and attributes to fetch.

        Returns a :py:class:`FetchStream` emitting a ``message`` event per
        message; each message emits ``body`` events, then ``attributes``
        and ``end``. The stream can also be awaited to get the list of
        :py:class:`FetchedMessage`.

        Example::

            stream = conn.fetch([101, 102], {'bodies': 'TEXT'})
            stream.on('message', lambda msg, seqno: msg.on('body', on_body))
        """
        return self._fetch(source, options, uid=True)

    def copy(self, source: MessageSource, mailbox: str) -> asyncio.Future:
        """Copy one or more messages from the current mailbox to
        *mailbox*. Resolves to the text of the COPY response.
        """
        return self._copy(source, mailbox, uid=True)

    def move(self, source: MessageSource, mailbox: str) -> asyncio.Future:
        """Move messages to another mailbox.

        MOVE (:rfc:`6851`) is used when the server supports it. Otherwise
        the messages are copied, flagged as ``\\Deleted`` and expunged with
        UID EXPUNGE, which needs the UIDPLUS capability.
        """
        return self._move(source, mailbox, uid=True)

    def add_flags(self, source: MessageSource, flags) -> asyncio.Future:
        """Add *flags* to messages in the currently selected mailbox.

        *flags* is a flag or a sequence of flags; the leading backslash of
        system flags may be omitted (``'Seen'``).

        Resolves to the flags set for each modified message as
        ``{uid: (flag1, flag2, ...)}``.
        """
        return self._store_flags('+', source, flags, uid=True)

    def del_flags(self, source: MessageSource, flags) -> asyncio.Future:
        """Remove one or more *flags* from messages in the currently
        selected mailbox (see :py:meth:`add_flags`).
        """
        return self._store_flags('-', source, flags, uid=True)

    def set_flags(self, source: MessageSource, flags) -> asyncio.Future:
        """Replace the flags of messages in the currently selected
        mailbox (see :py:meth:`add_flags`).
        """
        return self._store_flags('', source, flags, uid=True)

    def add_keywords(self, source: MessageSource, keywords) -> asyncio.Future:
        """Add custom *keywords* to messages.

        Raises :py:exc:`ValidationError` for keywords the mailbox does not
        know yet if it does not accept new ones.
        """
        return self._store_keywords('+', source, keywords, uid=True)

    def del_keywords(self, source: MessageSource, keywords) -> asyncio.Future:
        return self._store_keywords('-', source, keywords, uid=True)

    def set_keywords(self, source: MessageSource, keywords) -> asyncio.Future:
        return self._store_keywords('', source, keywords, uid=True)

    def expunge(self, uids: Optional[MessageSource] = None) -> asyncio.Future:
        """Remove messages flagged as ``\\Deleted`` from the selected
        mailbox.

        With *uids* only those messages are removed, using UID EXPUNGE
        (requires UIDPLUS, see :rfc:`4315`). Resolves to the list of
        expunged sequence numbers, in the order the server reported them.
        """
        self._require_selected(writable=True)
        if uids is None:
            cmd = self._command('EXPUNGE', collect=('EXPUNGE',), on_result=_expunged)
        else:
            if not self.server_supports('UIDPLUS'):
                raise exceptions.CapabilityError('Server does not support UIDPLUS capability')
            cmd = self._command('UID EXPUNGE', [join_message_ids(uids)],
                                collect=('EXPUNGE',), on_result=_expunged)
        return cmd.future

    def append(self, data: Union[str, bytes], mailbox: Optional[str] = None,
               flags: Iterable[str] = (), date: Optional[datetime] = None) -> asyncio.Future:
        """Append a message to *mailbox* (defaults to the selected one).

        *data* should be the full message including headers; it is sent
        as a literal.

        *flags* should be a sequence of message flags to set. If not
        specified no flags will be set.

        *date* is an optional datetime instance specifying the
        date and time to set on the message. The server will set a
        time if it isn't specified. If *date* contains timezone
        information (tzinfo), this will be honoured. Otherwise the
        local machine's time zone sent to the server.

        Resolves to the text of the APPEND response.
        """
        self._session.require(*AUTHENTICATED)
        if mailbox is None:
            if self._mailbox is None:
                raise exceptions.ValidationError('No mailbox specified or selected')
            mailbox = self._mailbox.name
        if isinstance(flags, str):
            flags = [flags]
        args = [self._encode_mailbox(mailbox)]
        if flags:
            args.append(b'(' + ' '.join(_normalise_append_flags(flags)).encode('ascii') + b')')
        if date is not None:
            args.append(quote_string(datetime_to_INTERNALDATE(date).encode('ascii')))
        args.append(Literal(to_bytes(data)))
        return self._command('APPEND', args, on_result=_response_text).future

    # Gmail

    @require_capability('X-GM-EXT-1')
    def add_labels(self, source: MessageSource, labels) -> asyncio.Future:
        """Add Gmail *labels* to messages in the currently selected
        mailbox.

        Resolves to the label set for each modified message as
        ``{uid: (label1, label2, ...)}``.
        """
        return self._store_labels('+', source, labels, uid=True)

    @require_capability('X-GM-EXT-1')
    def del_labels(self, source: MessageSource, labels) -> asyncio.Future:
        """Remove Gmail *labels* from messages (see :py:meth:`add_labels`)."""
        return self._store_labels('-', source, labels, uid=True)

    @require_capability('X-GM-EXT-1')
    def set_labels(self, source: MessageSource, labels) -> asyncio.Future:
        """Replace the Gmail labels of messages (see :py:meth:`add_labels`)."""
        return self._store_labels('', source, labels, uid=True)

    # Message operation workers, shared with SequenceNumberView

    def _search(self, criteria, uid):
        self._require_selected()
        query = build_search_criteria(criteria, self.capabilities, self.config.literal_threshold)
        args = []
        if query.charset:
            args.extend([b'CHARSET', query.charset.encode('ascii')])
        args.extend(query.args)

        def search_result(cmd, response):
            data = ()
            for untagged in cmd.untagged:
                data += untagged.data
            return parse_message_list(data)

        return self._command(_uid_command('SEARCH', uid), args, collect=('SEARCH',),
                             on_result=search_result).future

    def _fetch(self, source, options, uid):
        self._require_selected()
        ids = join_message_ids(source)
        query = build_fetch_items(options, self.capabilities)
        args = [ids, query.items]
        if query.modifiers:
            args.append(query.modifiers)

        wanted = message_set_matcher(ids)

        def message(cmd, untagged):
            if not _in_message_set(untagged.attributes, uid, wanted):
                return False
            stream.deliver(untagged.attributes, untagged.bodies)

        def done(cmd, response):
            return stream.finish()

        def failed(cmd, exc):
            stream.fail(exc)

        cmd = self._command(_uid_command('FETCH', uid), args, collect=('FETCH',),
                            on_untagged=message, on_result=done, on_failure=failed)
        stream = FetchStream(cmd.future, self._loop)
        stream.tag = cmd.tag
        return stream

    def _copy(self, source, mailbox, uid):
        self._require_selected()
        args = [join_message_ids(source), self._encode_mailbox(mailbox)]
        return self._command(_uid_command('COPY', uid), args, on_result=_response_text).future

    def _move(self, source, mailbox, uid):
        self._require_selected(writable=True)
        ids = join_message_ids(source)
        dest = self._encode_mailbox(mailbox)
        if self.server_supports('MOVE'):
            return self._command(_uid_command('MOVE', uid), [ids, dest],
                                 collect=('EXPUNGE',), on_result=_response_text).future
        if not uid or not self.server_supports('UIDPLUS'):
            raise exceptions.CapabilityError(
                'Server supports neither MOVE nor UIDPLUS, messages cannot be moved safely')

        result = self._loop.create_future()

        def failed(cmd, exc):
            if not result.done():
                result.set_exception(exc)

        def expunged(cmd, response):
            if not result.done():
                result.set_result(response.text)

        def stored(cmd, response):
            self._internal('UID EXPUNGE', [ids], collect=('EXPUNGE',),
                           on_result=expunged, on_failure=failed)

        def copied(cmd, response):
            self._internal('UID STORE', [ids, b'+FLAGS.SILENT', b'(' + DELETED.encode('ascii') + b')'],
                           on_result=stored, on_failure=failed)

        self._internal('UID COPY', [ids, dest], on_result=copied, on_failure=failed)
        return result

    def _store_flags(self, mode, source, flags, uid):
        self._require_selected(writable=True)
        flags = normalise_flags(flags)
        if mode and not flags:
            raise exceptions.ValidationError('No flags specified')
        return self._store(mode + 'FLAGS', source, flags, uid, 'flags')

    def _store_keywords(self, mode, source, keywords, uid):
        self._require_selected(writable=True)
        keywords = normalise_keywords(keywords)
        if mode and not keywords:
            raise exceptions.ValidationError('No keywords specified')
        if mode != '-' and not self._mailbox.mailbox.new_keywords:
            unknown = set(keywords) - self._mailbox.known_keywords()
            if unknown:
                raise exceptions.ValidationError(
                    'Mailbox %s does not accept new keywords: %s'
                    % (self._mailbox.name, ', '.join(sorted(unknown))))
        return self._store(mode + 'FLAGS', source, keywords, uid, 'flags')

    def _store_labels(self, mode, source, labels, uid):
        self._require_selected()
        if isinstance(labels, (str, bytes)):
            labels = [labels]
        encoded = []
        for label in labels:
            label = to_unicode(label)
            if not label:
                raise exceptions.ValidationError('Empty label')
            if label.startswith('\\'):
                encoded.append(encode_utf7(label))
            else:
                encoded.append(quote_string(encode_utf7(label)))
        if mode and not encoded:
            raise exceptions.ValidationError('No labels specified')
        return self._store(mode + 'X-GM-LABELS', source, encoded, uid, 'x_gm_labels')

    def _store(self, item, source, values, uid, attribute):
        """Worker function for the various flag manipulation methods.

        *item* is the STORE data item to use (eg. '+FLAGS').
        """
        ids = join_message_ids(source)
        values = [to_bytes(v) for v in values]
        wanted = message_set_matcher(ids)
        result = {}

        def updated(cmd, untagged):
            # FETCHes for other messages are unsolicited updates.
            attrs = untagged.attributes
            if not _in_message_set(attrs, uid, wanted):
                return False
            value = getattr(attrs, attribute)
            if value is not None:
                result[attrs.uid if uid else attrs.seqno] = value

        def stored(cmd, response):
            return result

        args = [ids, item.encode('ascii'), b'(' + b' '.join(values) + b')']
        return self._command(_uid_command('STORE', uid), args, collect=('FETCH',),
                             on_untagged=updated, on_result=stored).future

    # Response handling

    def _handle_response(self, raw):
        self._log_incoming(raw)
        response = parse_response_line(raw)
        if not self._greeted:
            self._handle_greeting(response)
        elif isinstance(response, ContinuationRequest):
            self._pipeline.on_continuation(response)
        elif isinstance(response, TaggedResponse):
            if response.code == 'ALERT':
                self.events.emit('alert', response.text)
            self._pipeline.on_tagged_response(response)
        elif isinstance(response, StatusResponse):
            self._handle_status(response)
        else:
            self._handle_untagged(response)

    def _handle_greeting(self, response):
        if not isinstance(response, StatusResponse) or response.status not in ('OK', 'PREAUTH', 'BYE'):
            raise exceptions.ProtocolError('Invalid server greeting: %r' % (response,))
        self._greeted = True
        self.welcome = response.text
        if response.status == 'BYE':
            self._fail(exceptions.ConnectionClosedError('Server refused connection: %s' % response.text))
            return
        if response.code == 'CAPABILITY':
            self._set_capabilities(response.code_data)
        if response.status == 'PREAUTH':
            self._session.transition(ConnectionState.AUTHENTICATED)
            if self.capabilities:
                self._after_login(None)
            else:
                self._internal('CAPABILITY', collect=('CAPABILITY',),
                               on_result=lambda cmd, response: self._after_login(response))
        elif self.capabilities:
            self._login()
        else:
            self._internal('CAPABILITY', collect=('CAPABILITY',),
                           on_result=lambda cmd, response: self._login())

    def _handle_status(self, response):
        if response.code == 'ALERT':
            self.events.emit('alert', response.text)
        if response.status == 'BYE':
            logger.info('Server is closing the connection: %s', response.text)
        elif response.status == 'PREAUTH':
            raise exceptions.ProtocolError('PREAUTH outside of the server greeting')
        elif response.status in ('NO', 'BAD'):
            logger.warning('Server warning: %s %s', response.status, response.text)
        if response.code:
            self._apply_response_code(response.code, response.code_data)

    def _apply_response_code(self, code, data):
        if code == 'CAPABILITY':
            self._set_capabilities(data)
            return
        mailbox = self._mailbox
        if mailbox is None:
            return
        if code == 'UIDVALIDITY' and data:
            if mailbox.set_uidvalidity(data[0]):
                self.events.emit('uidvalidity', data[0])
        elif code == 'UIDNEXT' and data:
            mailbox.mailbox.uidnext = data[0]
        elif code == 'UNSEEN' and data:
            mailbox.mailbox.first_unseen = data[0]
        elif code == 'PERMANENTFLAGS' and data:
            mailbox.set_permanent_flags([to_unicode(f) for f in data[0] or ()])
        elif code == 'HIGHESTMODSEQ' and data:
            mailbox.mailbox.highest_modseq = data[0]
        elif code == 'NOMODSEQ':
            mailbox.mailbox.highest_modseq = None
        elif code == 'UIDNOTSTICKY':
            mailbox.mailbox.persistent_uids = False

    def _handle_untagged(self, response):
        kind = response.kind
        mailbox = self._mailbox
        events = []

        # The message table is updated before anything else sees the response.
        if kind == 'CAPABILITY':
            self._set_capabilities(response.data)
        elif kind == 'FLAGS':
            if mailbox is not None and response.data:
                mailbox.set_flags([to_unicode(f) for f in response.data[0] or ()])
        elif kind == 'FETCH':
            attrs, bodies = parse_fetch_attributes(response.number, response.data, self.normalise_times)
            response.attributes = attrs
            response.bodies = bodies
            if mailbox is not None:
                mailbox.apply_fetch(response.number, attrs)
        elif kind in ('EXISTS', 'RECENT', 'EXPUNGE'):
            if mailbox is None:
                logger.debug('Ignoring %s outside of a selected mailbox', kind)
            elif kind == 'EXISTS':
                new = mailbox.apply_exists(response.number)
                if new and not self._selecting:
                    events.append(('mail', new))
            elif kind == 'RECENT':
                mailbox.apply_recent(response.number)
            else:
                mailbox.apply_expunge(response.number)
                events.append(('expunge', response.number))

        routed = self._pipeline.route_untagged(response)
        if not routed:
            if kind == 'FETCH':
                events.append(('update', response.number, response.attributes))
            elif kind not in ('CAPABILITY', 'FLAGS', 'EXISTS', 'RECENT', 'EXPUNGE'):
                logger.debug('Unhandled untagged response %s', kind)

        for event in events:
            self.events.emit(*event)

    # Login

    def _login(self):
        config = self.config
        if config.xoauth2:
            self._authenticate('XOAUTH2', config.xoauth2)
        elif config.xoauth:
            self._authenticate('XOAUTH', config.xoauth)
        else:
            if self.server_supports('LOGINDISABLED'):
                self._fail(exceptions.CapabilityError('Server does not allow LOGIN (LOGINDISABLED)'))
                return
            args = [self._encode_string(config.user), self._encode_string(config.password)]
            self._internal('LOGIN', args, on_result=self._on_login, on_failure=self._on_login_failure)

    def _authenticate(self, mechanism, token):
        if not self.server_supports('AUTH=' + mechanism):
            self._fail(exceptions.CapabilityError(
                'Server does not support AUTH=%s authentication' % mechanism))
            return
        token = to_bytes(token)
        if self.server_supports('SASL-IR'):
            self._internal('AUTHENTICATE', [mechanism.encode('ascii'), token],
                           on_result=self._on_login, on_failure=self._on_login_failure)
            return

        answered = []

        def challenge(cmd, response):
            # An error challenge is answered with an empty response, the
            # server then fails the command.
            if answered:
                return b''
            answered.append(True)
            self._redact_next = True
            return token

        self._internal('AUTHENTICATE', [mechanism.encode('ascii')], on_continuation=challenge,
                       on_result=self._on_login, on_failure=self._on_login_failure)

    def _on_login(self, cmd, response):
        self._session.transition(ConnectionState.AUTHENTICATED)
        logger.debug('Logged in as %s', self.config.user)
        if response.code == 'CAPABILITY':
            self._set_capabilities(response.code_data)
            self._after_login(response)
        else:
            self.capabilities = frozenset()
            self._internal('CAPABILITY', collect=('CAPABILITY',),
                           on_result=lambda c, r: self._after_login(r))
        return response.text

    def _on_login_failure(self, cmd, exc):
        if isinstance(exc, exceptions.ServerError):
            self._fail(exc)

    def _after_login(self, response):
        if self.server_supports('NAMESPACE'):
            self._internal('NAMESPACE', collect=('NAMESPACE',),
                           on_result=self._on_namespace, on_failure=self._on_setup_failure)
        else:
            self._internal('LIST', [b'""', b'""'], collect=('LIST',),
                           on_result=self._on_delimiter, on_failure=self._on_setup_failure)

    def _on_namespace(self, cmd, response):
        if cmd.untagged:
            self.namespaces = parse_namespace(cmd.untagged[0].data)
            if self.namespaces.personal:
                self.delimiter = self.namespaces.personal[0].delimiter
        self._ready()

    def _on_delimiter(self, cmd, response):
        if cmd.untagged:
            _, self.delimiter, _ = parse_list_item(cmd.untagged[0].data)
        self._ready()

    def _on_setup_failure(self, cmd, exc):
        if isinstance(exc, exceptions.ServerError):
            logger.warning('%s failed: %s', cmd.name, exc)
            self._ready()

    def _ready(self):
        logger.debug('Connection ready')
        self.events.emit('ready')

    def _on_logout(self, cmd, response):
        self._shutdown()
        return response.text

    # Keepalive

    def _arm_keepalive(self):
        self._cancel_keepalive()
        policy = self.config.keepalive_policy
        if policy is None or self._closed or self._pipeline.busy:
            return
        if self.state not in AUTHENTICATED:
            return
        if self._renew_idle:
            self._renew_idle = False
            self._on_keepalive()
            return
        self._keepalive_handle = self._loop.call_later(policy.interval, self._on_keepalive)

    def _on_keepalive(self):
        self._keepalive_handle = None
        if self._closed or self._pipeline.busy:
            return
        policy = self.config.keepalive_policy
        if (self.state is ConnectionState.SELECTED and self.server_supports('IDLE')
                and not policy.force_noop):
            self._start_idle().future.add_done_callback(_consume_result)
            self._idle_renew_handle = self._loop.call_later(policy.idle_interval, self._on_idle_renew)
        else:
            self._internal('NOOP')

    def _on_idle_renew(self):
        self._idle_renew_handle = None
        if self._pipeline.idle is not None:
            self._renew_idle = True
            self._pipeline.interrupt_idle()

    def _start_idle(self):
        def finished(cmd, response):
            self._cancel_idle_renew()
            return response.text

        def failed(cmd, exc):
            self._cancel_idle_renew()

        return self._command('IDLE', interruptible=True, on_result=finished, on_failure=failed)

    def _cancel_idle_renew(self):
        if self._idle_renew_handle is not None:
            self._idle_renew_handle.cancel()
            self._idle_renew_handle = None

    def _cancel_keepalive(self):
        if self._keepalive_handle is not None:
            self._keepalive_handle.cancel()
            self._keepalive_handle = None

    # Plumbing

    def _command(self, name, args=(), **kwargs) -> PendingCommand:
        if self._closed:
            raise exceptions.IllegalStateError('Connection closed')
        self._cancel_keepalive()
        return self._pipeline.send(name, args, **kwargs)

    def _internal(self, name, args=(), **kwargs) -> PendingCommand:
        """Send a command issued by the connection itself. Nobody awaits
        its future so failures are only logged.
        """
        cmd = self._command(name, args, **kwargs)
        cmd.future.add_done_callback(_consume_result)
        return cmd

    def _write(self, data: bytes) -> None:
        if self._transport is None:
            raise exceptions.IllegalStateError('Not connected')
        sending = self._pipeline.sending
        if self._redact_next or (sending is not None and sending.name in ('LOGIN', 'AUTHENTICATE')
                                 and not data.startswith(sending.tag.encode('ascii'))):
            self._redact_next = False
            self._wire_log.debug('> **REDACTED**')
        else:
            self._wire_log.debug(b'> ' + data.rstrip(b'\r\n'))
        self._transport.write(data)

    def _log_incoming(self, raw):
        for chunk in raw:
            if isinstance(chunk, tuple):
                text, literal = chunk
                self._wire_log.debug(b'< %s <%d bytes>' % (text, len(literal)))
            else:
                self._wire_log.debug(b'< ' + chunk)

    def _set_capabilities(self, data):
        self.capabilities = frozenset(to_unicode(c).upper() for c in data if isinstance(c, bytes))
        self._pipeline.literal_plus = 'LITERAL+' in self.capabilities
        logger.debug('Server capabilities: %s', ' '.join(sorted(self.capabilities)))

    def _encode_mailbox(self, name: str) -> bytes:
        name = to_unicode(name)
        if name.upper() == 'INBOX':
            name = 'INBOX'
        return quote_string(encode_utf7(name))

    def _encode_string(self, value) -> bytes:
        return encode_string(value, self.config.literal_threshold)

    def _require_connected(self):
        if self._closed or self.state is ConnectionState.DISCONNECTED:
            raise exceptions.IllegalStateError('Not connected')

    def _require_selected(self, writable=False):
        self._session.require(ConnectionState.SELECTED)
        if writable and self._mailbox.mailbox.read_only:
            raise exceptions.IllegalStateError('Mailbox %s is read-only' % self._mailbox.name)

    def _shutdown(self):
        if self._closed:
            return
        self._closed = True
        self._cancel_keepalive()
        self._cancel_idle_renew()
        if self._pipeline.busy:
            self._pipeline.fail_all(exceptions.ConnectionClosedError('Connection closed'))
        self._session.transition(ConnectionState.DISCONNECTED)
        self._mailbox = None
        if self._transport is not None:
            self._transport.close()
        logger.debug('Connection closed')
        self.events.emit('end')
        self.events.emit('close', False)

    def _fail(self, exc: Exception) -> None:
        """Tear the connection down after a fatal error."""
        if self._closed:
            return
        logger.warning('Closing connection after fatal error: %s', exc)
        self._closed = True
        self._cancel_keepalive()
        self._cancel_idle_renew()
        self._pipeline.fail_all(exc)
        self._session.transition(ConnectionState.DISCONNECTED)
        self._mailbox = None
        if self._transport is not None:
            self._transport.close()
        self.events.emit('error', exc)
        self.events.emit('end')
        self.events.emit('close', True)


class SequenceNumberView:
    """Message operations addressing messages by sequence number instead
    of UID, available as ``conn.seq``.
    """

    def __init__(self, conn: IMAPConnection):
        self._conn = conn

    def search(self, criteria) -> asyncio.Future:
        return self._conn._search(criteria, uid=False)

    def fetch(self, source: MessageSource, options=None) -> FetchStream:
        return self._conn._fetch(source, options, uid=False)

    def copy(self, source: MessageSource, mailbox: str) -> asyncio.Future:
        return self._conn._copy(source, mailbox, uid=False)

    def move(self, source: MessageSource, mailbox: str) -> asyncio.Future:
        """Requires the MOVE capability: without UIDs a copy and
        expunge can not be limited to the moved messages.
        """
        return self._conn._move(source, mailbox, uid=False)

    def add_flags(self, source, flags):
        return self._conn._store_flags('+', source, flags, uid=False)

    def del_flags(self, source, flags):
        return self._conn._store_flags('-', source, flags, uid=False)

    def set_flags(self, source, flags):
        return self._conn._store_flags('', source, flags, uid=False)

    def add_keywords(self, source, keywords):
        return self._conn._store_keywords('+', source, keywords, uid=False)

    def del_keywords(self, source, keywords):
        return self._conn._store_keywords('-', source, keywords, uid=False)

    def set_keywords(self, source, keywords):
        return self._conn._store_keywords('', source, keywords, uid=False)

    def add_labels(self, source, labels):
        self._require_gmail()
        return self._conn._store_labels('+', source, labels, uid=False)

    def del_labels(self, source, labels):
        self._require_gmail()
        return self._conn._store_labels('-', source, labels, uid=False)

    def set_labels(self, source, labels):
        self._require_gmail()
        return self._conn._store_labels('', source, labels, uid=False)

    def _require_gmail(self):
        if not self._conn.server_supports('X-GM-EXT-1'):
            raise exceptions.CapabilityError('Server does not support X-GM-EXT-1 capability')


class WireLoggerAdapter(LoggerAdapter):
    """Adapter preventing IMAP secrets from going to the logging facility."""

    def process(self, msg, kwargs):
        if isinstance(msg, bytes):
            msg = msg.decode('ascii', 'replace')
        for command in ('LOGIN', 'AUTHENTICATE'):
            if msg.startswith('>') and (' %s ' % command) in msg:
                msg_start = msg.split(command)[0]
                msg = '{}{} **REDACTED**'.format(msg_start, command)
                break
        return super().process(msg, kwargs)


def _uid_command(name, uid):
    if uid:
        return 'UID ' + name
    return name


def _response_text(cmd, response):
    return response.text


def _expunged(cmd, response):
    return [untagged.number for untagged in cmd.untagged]


def _on_id(cmd, response):
    if not cmd.untagged:
        raise exceptions.ProtocolError('Missing ID response')
    data = cmd.untagged[0].data
    if not data or data[0] is None:
        return {}
    fields = data[0]
    if not isinstance(fields, tuple) or len(fields) % 2 != 0:
        raise exceptions.ProtocolError('Invalid ID response')
    return {to_unicode(fields[i]): (to_unicode(fields[i + 1]) if fields[i + 1] is not None else None)
            for i in range(0, len(fields), 2)}


def _in_message_set(attrs, uid, wanted):
    key = attrs.uid if uid else attrs.seqno
    return key is not None and wanted(key)


def _consume_result(future):
    if not future.cancelled() and future.exception() is not None:
        logger.debug('Internal command failed: %s', future.exception())


def _normalise_append_flags(flags):
    result = []
    for flag in flags:
        flag = to_unicode(flag)
        if flag.startswith('\\'):
            result.extend(normalise_flags(flag))
        else:
            result.extend(normalise_keywords(flag))
    return result


def _mailbox_from_status(name, values):
    box = Mailbox(name=name)
    box.messages.total = values.get('MESSAGES', 0)
    box.messages.new = values.get('RECENT', 0)
    box.messages.unseen = values.get('UNSEEN', 0)
    box.uidvalidity = values.get('UIDVALIDITY', 0)
    box.uidnext = values.get('UIDNEXT', 0)
    box.highest_modseq = values.get('HIGHESTMODSEQ')
    return box


def _build_mailbox_tree(items) -> Dict[str, MailboxTreeNode]:
    """Build the mailbox hierarchy from ``(flags, delimiter, name)``
    tuples.
    """
    tree: Dict[str, MailboxTreeNode] = {}
    for flags, delimiter, name in items:
        if name.upper() == 'INBOX':
            name = 'INBOX'
        parts = name.split(delimiter) if delimiter else [name]
        level = tree
        parent = None
        for i, part in enumerate(parts):
            node = level.get(part)
            if node is None:
                node = MailboxTreeNode(attribs=[], delimiter=delimiter, parent=parent)
                level[part] = node
            if i == len(parts) - 1:
                node.attribs = flags
                node.delimiter = delimiter
            else:
                if node.children is None:
                    node.children = {}
                level = node.children
                parent = node
    return tree
