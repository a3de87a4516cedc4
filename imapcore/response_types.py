import dataclasses
from collections import namedtuple
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

__all__ = [
    'TaggedResponse', 'StatusResponse', 'UntaggedResponse', 'ContinuationRequest',
    'Address', 'Envelope', 'SearchIds', 'MessageAttributes', 'BodyInfo',
    'MessageCounts', 'Mailbox', 'MailboxTreeNode', 'NamespaceEntry', 'Namespaces',
    'FetchOptions', 'FetchedMessage',
]


@dataclasses.dataclass
class TaggedResponse:
    """Completion of the command identified by *tag*."""
    tag: str
    status: str
    text: str = ''
    code: Optional[str] = None
    code_data: Tuple = ()


@dataclasses.dataclass
class StatusResponse:
    """Untagged ``OK``, ``NO``, ``BAD``, ``BYE`` or ``PREAUTH`` response."""
    status: str
    text: str = ''
    code: Optional[str] = None
    code_data: Tuple = ()


@dataclasses.dataclass
class UntaggedResponse:
    """Untagged server data.

    *number* is set for message data such as ``* 23 EXISTS``; *data*
    holds the parsed remainder of the response. FETCH responses also
    carry their converted *attributes* and *bodies*.
    """
    kind: str
    number: Optional[int] = None
    data: Tuple = ()
    attributes: Optional['MessageAttributes'] = None
    bodies: List[Tuple[str, bytes]] = dataclasses.field(default_factory=list)


@dataclasses.dataclass
class ContinuationRequest:
    """``+`` line asking the client to continue a command."""
    text: bytes = b''


class Address(namedtuple('Address', 'name route mailbox host')):
    """
    Represents electronic mail addresses. Used to store addresses in
    :py:class:`Envelope`.

    :ivar name: The address "personal name".
    :ivar route: SMTP source route (rarely used).
    :ivar mailbox: Mailbox name (what comes just before the @ sign).
    :ivar host: The host/domain name.

    As an example, an address header that looks like::

        Mary Smith <mary@foo.com>

    would be represented as::

        Address(name=u'Mary Smith', route=None, mailbox=u'mary', host=u'foo.com')

    See :rfc:`2822` for more detail.
    """

    def __str__(self):
        if self.mailbox and self.host:
            address = self.mailbox.decode('utf-8', 'replace') + '@' + self.host.decode('utf-8', 'replace')
        else:
            address = (self.mailbox or b'').decode('utf-8', 'replace')
        if self.name:
            return '{} <{}>'.format(self.name.decode('utf-8', 'replace'), address)
        return address


class Envelope(namedtuple('Envelope', 'date subject from_ sender reply_to to '
                                      'cc bcc in_reply_to message_id')):
    """
    Represents envelope structures of messages. Returned when parsing
    ENVELOPE responses.

    :ivar date: A datetime instance that represents the "Date" header.
    :ivar subject: A string that contains the "Subject" header.
    :ivar from\\_: A tuple of Address objects that represent one or more
      addresses from the "From" header, or None if header does not exist.
    :ivar to: As for from\\_ but represents the "To" header.
    :ivar in_reply_to: A string that contains the "In-Reply-To" header.
    :ivar message_id: A string that holds the "Message-Id" header.

    See :rfc:`3501#section-7.4.2` and :rfc:`2822` for further details.
    """


class SearchIds(list):
    """
    Contains a list of message ids as returned by a SEARCH command.

    The *modseq* attribute will contain the MODSEQ value returned by the
    server (only if the SEARCH command sent involved the MODSEQ criteria).
    See :rfc:`4551` for more details.
    """

    def __init__(self, *args):
        super().__init__(*args)
        self.modseq = None


@dataclasses.dataclass
class MessageAttributes:
    """The non-body data items of one FETCH response.

    :ivar seqno: the (session local) sequence number of the message
    :ivar uid: the message UID, unique within a UID validity epoch
    :ivar flags: flags and keywords set on the message
    :ivar date: the INTERNALDATE of the message
    :ivar size: RFC822.SIZE
    :ivar struct: the raw BODYSTRUCTURE as nested tuples
    :ivar envelope: an :py:class:`Envelope`
    :ivar modseq: the message's MODSEQ (CONDSTORE)
    :ivar x_gm_thrid: Gmail thread id
    :ivar x_gm_msgid: Gmail message id
    :ivar x_gm_labels: Gmail labels
    :ivar extra: any other data item, keyed by its upper case name
    """
    seqno: int
    uid: Optional[int] = None
    flags: Optional[Tuple[str, ...]] = None
    date: Optional[datetime] = None
    size: Optional[int] = None
    struct: Optional[Tuple] = None
    envelope: Optional[Envelope] = None
    modseq: Optional[int] = None
    x_gm_thrid: Optional[str] = None
    x_gm_msgid: Optional[str] = None
    x_gm_labels: Optional[Tuple[str, ...]] = None
    extra: Dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class BodyInfo:
    """Describes a body section passed to ``body`` observers."""
    which: str
    size: int


@dataclasses.dataclass
class FetchedMessage:
    seqno: int
    attributes: MessageAttributes
    bodies: Dict[str, bytes] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class FetchOptions:
    """What to retrieve for each message of a FETCH.

    :ivar bodies: body section(s) to fetch, eg. ``'TEXT'``,
      ``'HEADER.FIELDS (FROM TO)'`` or ``''`` for the whole message
    :ivar struct: fetch BODYSTRUCTURE
    :ivar envelope: fetch ENVELOPE
    :ivar size: fetch RFC822.SIZE
    :ivar mark_seen: use ``BODY[...]`` instead of ``BODY.PEEK[...]``
    :ivar extensions: extra fetch items such as ``'MODSEQ'``
    :ivar modifiers: fetch modifiers, eg. ``{'changedsince': 1234}``
    """
    bodies: Any = None
    struct: bool = False
    envelope: bool = False
    size: bool = False
    mark_seen: bool = False
    extensions: List[str] = dataclasses.field(default_factory=list)
    modifiers: Dict[str, Any] = dataclasses.field(default_factory=dict)


@dataclasses.dataclass
class MessageCounts:
    total: int = 0
    new: int = 0
    unseen: int = 0


@dataclasses.dataclass
class Mailbox:
    """Summary of a mailbox as returned by ``open_box`` and ``status``.

    *uidvalidity* changes invalidate every UID previously seen for the
    mailbox. *first_unseen* is the sequence number reported by the
    ``[UNSEEN n]`` response code, not a count.
    """
    name: str
    read_only: bool = False
    delimiter: Optional[str] = None
    flags: Tuple[str, ...] = ()
    permanent_flags: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()
    new_keywords: bool = False
    persistent_uids: bool = True
    uidvalidity: int = 0
    uidnext: int = 0
    highest_modseq: Optional[int] = None
    first_unseen: Optional[int] = None
    messages: MessageCounts = dataclasses.field(default_factory=MessageCounts)


@dataclasses.dataclass
class MailboxTreeNode:
    """A mailbox in the hierarchy built from LIST/LSUB responses."""
    attribs: List[str]
    delimiter: Optional[str]
    children: Optional[Dict[str, 'MailboxTreeNode']] = None
    parent: Optional['MailboxTreeNode'] = dataclasses.field(default=None, repr=False, compare=False)


@dataclasses.dataclass
class NamespaceEntry:
    prefix: str
    delimiter: Optional[str]
    extensions: Optional[List[Dict[str, Any]]] = None


@dataclasses.dataclass
class Namespaces:
    """Namespaces of the account, see :rfc:`2342`."""
    personal: List[NamespaceEntry] = dataclasses.field(default_factory=list)
    other: List[NamespaceEntry] = dataclasses.field(default_factory=list)
    shared: List[NamespaceEntry] = dataclasses.field(default_factory=list)
