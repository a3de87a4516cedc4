"""
Connection state machine and the per-mailbox message table.

:class:`MailboxState` is the only place where sequence numbers are
mapped to UIDs. Every untagged EXISTS, EXPUNGE, RECENT and FETCH is
applied here before anything else sees the response, so sequence
numbers handed to observers and command results are always current.
"""

import copy
import dataclasses
import enum
import logging
from typing import List, Optional, Sequence, Tuple

from . import exceptions
from .response_types import Mailbox, MessageAttributes

__all__ = ['ConnectionState', 'SessionState', 'CachedMessage', 'MailboxState']

logger = logging.getLogger(__name__)


class ConnectionState(enum.Enum):
    DISCONNECTED = 'disconnected'
    CONNECTED = 'connected'
    AUTHENTICATED = 'authenticated'
    SELECTED = 'selected'


_ALLOWED_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTED},
    ConnectionState.CONNECTED: {ConnectionState.AUTHENTICATED},
    ConnectionState.AUTHENTICATED: {ConnectionState.SELECTED},
    ConnectionState.SELECTED: {ConnectionState.SELECTED, ConnectionState.AUTHENTICATED},
}


class SessionState:
    """Track the IMAP connection state.

    States only move forward (``disconnected -> connected ->
    authenticated -> selected``) except that closing a mailbox goes back
    to ``authenticated`` and any state may drop to ``disconnected``.
    """

    def __init__(self):
        self.state = ConnectionState.DISCONNECTED

    def transition(self, new_state: ConnectionState) -> None:
        old_state = self.state
        if new_state is not ConnectionState.DISCONNECTED and \
                new_state not in _ALLOWED_TRANSITIONS[old_state]:
            raise exceptions.IllegalStateError(
                'Invalid state transition from %s to %s' % (old_state.value, new_state.value))
        self.state = new_state
        if old_state is not new_state:
            logger.debug('Connection state: %s -> %s', old_state.value, new_state.value)

    def require(self, *states: ConnectionState) -> None:
        """Raise :py:exc:`IllegalStateError` unless in one of *states*."""
        if self.state not in states:
            raise exceptions.IllegalStateError(
                'Command not allowed in %s state (requires %s)'
                % (self.state.value, ' or '.join(s.value for s in states)))


@dataclasses.dataclass
class CachedMessage:
    """A row of the sequence number table. *uid* is None until the
    server tells us.
    """
    uid: Optional[int] = None
    flags: Tuple[str, ...] = ()


class MailboxState:
    """The selected mailbox and its sequence number to UID table.

    Row *n - 1* of the table describes the message with sequence number
    *n*. Removing a row on EXPUNGE therefore renumbers every later
    message in the same step while leaving UIDs untouched.
    """

    def __init__(self, name: str, read_only: bool = False, delimiter: Optional[str] = None):
        self.mailbox = Mailbox(name=name, read_only=read_only, delimiter=delimiter)
        self._messages: List[CachedMessage] = []

    def __len__(self):
        return len(self._messages)

    @property
    def name(self) -> str:
        return self.mailbox.name

    def snapshot(self) -> Mailbox:
        """Return a copy of the mailbox description safe to hand out."""
        return copy.deepcopy(self.mailbox)

    def apply_exists(self, count: int) -> int:
        """Handle ``* n EXISTS``. Returns the number of new messages."""
        current = len(self._messages)
        if count < current:
            raise exceptions.ProtocolError(
                'EXISTS decreased from %d to %d without EXPUNGE' % (current, count))
        self._messages.extend(CachedMessage() for _ in range(count - current))
        self.mailbox.messages.total = count
        return count - current

    def apply_recent(self, count: int) -> None:
        self.mailbox.messages.new = count

    def apply_expunge(self, seqno: int) -> CachedMessage:
        """Handle ``* n EXPUNGE`` and return the removed row."""
        if not 1 <= seqno <= len(self._messages):
            raise exceptions.ProtocolError(
                'EXPUNGE of sequence number %d but mailbox holds %d messages'
                % (seqno, len(self._messages)))
        removed = self._messages.pop(seqno - 1)
        self.mailbox.messages.total = len(self._messages)
        return removed

    def apply_fetch(self, seqno: int, attrs: MessageAttributes) -> CachedMessage:
        """Record the UID and flags carried by a FETCH response."""
        if not 1 <= seqno <= len(self._messages):
            raise exceptions.ProtocolError(
                'FETCH for sequence number %d but mailbox holds %d messages'
                % (seqno, len(self._messages)))
        row = self._messages[seqno - 1]
        if attrs.uid is not None:
            row.uid = attrs.uid
        if attrs.flags is not None:
            row.flags = tuple(attrs.flags)
        return row

    def set_uidvalidity(self, value: int) -> bool:
        """Store a new UIDVALIDITY.

        Returns True if it replaced a different known value, in which
        case every cached UID is forgotten.
        """
        old = self.mailbox.uidvalidity
        self.mailbox.uidvalidity = value
        if old and old != value:
            logger.info('UIDVALIDITY of %s changed from %d to %d', self.name, old, value)
            self._messages = [CachedMessage() for _ in self._messages]
            return True
        return False

    def set_flags(self, flags: Sequence[str]) -> None:
        self.mailbox.flags = tuple(flags)

    def set_permanent_flags(self, flags: Sequence[str]) -> None:
        flags = tuple(flags)
        self.mailbox.new_keywords = '\\*' in flags
        self.mailbox.permanent_flags = tuple(f for f in flags if f != '\\*')
        self.mailbox.keywords = tuple(f for f in flags if not f.startswith('\\'))

    def known_keywords(self) -> frozenset:
        keywords = set(self.mailbox.keywords)
        keywords.update(f for f in self.mailbox.flags if not f.startswith('\\'))
        return frozenset(keywords)

    def uid_for(self, seqno: int) -> Optional[int]:
        if 1 <= seqno <= len(self._messages):
            return self._messages[seqno - 1].uid
        return None

    def seqno_for(self, uid: int) -> Optional[int]:
        for i, row in enumerate(self._messages):
            if row.uid == uid:
                return i + 1
        return None

    def flags_for(self, uid: int) -> Optional[Tuple[str, ...]]:
        seqno = self.seqno_for(uid)
        if seqno is None:
            return None
        return self._messages[seqno - 1].flags

    def uids(self) -> List[Optional[int]]:
        return [row.uid for row in self._messages]
