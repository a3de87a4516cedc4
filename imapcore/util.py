import base64
import logging
import re
from email.errors import HeaderParseError
from email.header import decode_header, make_header
from email.parser import HeaderParser
from typing import Callable, Dict, Iterable, List, Optional, Union

from . import exceptions

logger = logging.getLogger(__name__)

_MessageId = Union[int, str]
MessageSource = Union[_MessageId, Iterable[_MessageId]]

_RE_MESSAGE_RANGE = re.compile(r'^(\*|[1-9][0-9]*)(:(\*|[1-9][0-9]*))?$')
_ATOM_SPECIALS = frozenset(b'(){ %*"\\]')
_RE_FOLD = re.compile(r'\r?\n(?=[ \t])')


class Literal(bytes):
    """Hold data that must always be sent as an IMAP literal."""


def assert_imap_protocol(condition: bool, message: Optional[bytes] = None) -> None:
    if not condition:
        msg = 'Server replied with a response that violates the IMAP protocol'
        if message:
            msg += ': {}'.format(message.decode('ascii', 'replace'))
        raise exceptions.ProtocolError(msg)


def to_unicode(s: Union[str, bytes]) -> str:
    """Convert a bytes object to a unicode string."""
    if isinstance(s, bytes):
        return s.decode('utf-8', 'replace')
    return s


def to_bytes(s: Union[str, bytes, int]) -> bytes:
    """Convert a string, number or bytes to bytes."""
    if isinstance(s, bytes):
        return s
    if isinstance(s, int):
        return str(s).encode('ascii')
    return s.encode('utf-8')


def needs_literal(data: bytes, threshold: int) -> bool:
    """Return True if *data* can't travel as a quoted string."""
    if len(data) > threshold:
        return True
    return any(b < 0x20 or b >= 0x7f for b in data)


def quote_string(data: bytes) -> bytes:
    """Quote *data* as per :rfc:`3501#section-9` (quoted)."""
    data = data.replace(b'\\', b'\\\\').replace(b'"', b'\\"')
    return b'"' + data + b'"'


def encode_string(value: Union[str, bytes], threshold: int = 1024) -> bytes:
    """Encode a string argument as a quoted string or, when required, a
    :class:`Literal`.
    """
    data = to_bytes(value)
    if needs_literal(data, threshold):
        return Literal(data)
    return quote_string(data)


def render_arguments(args: Iterable[bytes], literal_plus: bool = False) -> List[bytes]:
    """Join command arguments into wire segments.

    Arguments are separated by a space, except just inside parentheses.
    A :class:`Literal` argument is announced as ``{n}`` and a new segment
    starts with its data: the caller must wait for a continuation request
    before writing it. With *literal_plus* the non-synchronising ``{n+}``
    form is used and everything stays in one segment.
    """
    segments = []
    current = bytearray()
    prev = None
    for arg in args:
        if prev is not None and prev != b'(' and arg != b')':
            current.extend(b' ')
        if isinstance(arg, Literal):
            if literal_plus:
                current.extend(b'{%d+}\r\n' % len(arg))
            else:
                current.extend(b'{%d}\r\n' % len(arg))
                segments.append(bytes(current))
                current = bytearray()
            current.extend(arg)
        else:
            current.extend(arg)
        prev = arg
    segments.append(bytes(current))
    return segments


def is_atom(data: bytes) -> bool:
    if not data:
        return False
    return not any(b <= 0x20 or b >= 0x7f or b in _ATOM_SPECIALS for b in data)


def join_message_ids(messages: MessageSource) -> bytes:
    """Convert a sequence of messages ids or a single message id into an
    id byte string for use with IMAP commands.

    Accepts integers, ranges such as ``'2504:2507'`` or ``'2504:*'``, ``'*'``
    and lists mixing both. Raises :py:exc:`ValidationError` for anything
    else.
    """
    if isinstance(messages, (int, str, bytes)):
        messages = [messages]
    parts = []
    for msg in messages:
        if isinstance(msg, bool):
            raise exceptions.ValidationError('Invalid message id: %r' % (msg,))
        if isinstance(msg, int):
            if msg <= 0:
                raise exceptions.ValidationError('Message ids must be positive: %d' % msg)
            parts.append(str(msg))
            continue
        text = to_unicode(msg).strip()
        for item in text.split(','):
            if not _RE_MESSAGE_RANGE.match(item):
                raise exceptions.ValidationError('Invalid message id or range: %r' % (msg,))
            parts.append(item)
    if not parts:
        raise exceptions.ValidationError('Empty message source')
    return ','.join(parts).encode('ascii')


def message_set_matcher(ids: bytes) -> Callable[[int], bool]:
    """Return a predicate telling whether a message id belongs to *ids*,
    a message set as returned by :py:func:`join_message_ids`.

    The largest id in the mailbox is unknown here, so ``*`` on its own
    matches every id and ``n:*`` every id from *n*.
    """
    ranges = []
    for item in to_unicode(ids).split(','):
        first, _, last = item.partition(':')
        ranges.append([None if b == '*' else int(b) for b in (first, last or first)])

    def contains(msg_id: int) -> bool:
        for first, last in ranges:
            if first is None and last is None:
                return True
            if first is None or last is None:
                if msg_id >= (last if first is None else first):
                    return True
            elif min(first, last) <= msg_id <= max(first, last):
                return True
        return False

    return contains


def normalise_flags(flags: Union[str, Iterable[str]]) -> List[str]:
    """Return *flags* as a list of system flags, adding the leading
    backslash when the caller left it out (``'Seen'`` -> ``'\\Seen'``).
    """
    if isinstance(flags, (str, bytes)):
        flags = [flags]
    result = []
    for flag in flags:
        flag = to_unicode(flag).strip()
        if not flag.startswith('\\'):
            flag = '\\' + flag
        if not is_atom(flag[1:].encode('ascii', 'replace')):
            raise exceptions.ValidationError('Invalid flag: %r' % flag)
        result.append(flag)
    return result


def normalise_keywords(keywords: Union[str, Iterable[str]]) -> List[str]:
    """Validate custom keywords; unlike flags they never start with a
    backslash.
    """
    if isinstance(keywords, (str, bytes)):
        keywords = [keywords]
    result = []
    for keyword in keywords:
        keyword = to_unicode(keyword).strip()
        if keyword.startswith('\\') or not is_atom(keyword.encode('ascii', 'replace')):
            raise exceptions.ValidationError('Invalid keyword: %r' % keyword)
        result.append(keyword)
    return result


def build_xoauth2_token(user: str, access_token: str, vendor: Optional[str] = None) -> str:
    """Build the base64 encoded SASL XOAUTH2 initial response.

    Yahoo requires the *vendor* part in the payload, Gmail does not.
    """
    auth_string = f'user={user}\1auth=Bearer {access_token}\1'
    if vendor:
        auth_string += f'vendor={vendor}\1'
    auth_string += '\1'
    return base64.b64encode(auth_string.encode('utf-8')).decode('ascii')


def parse_header(raw: Union[str, bytes], decode: bool = True) -> Dict[str, List[str]]:
    """Parse a block of message headers, such as the data returned for
    ``BODY[HEADER]``, into a dict mapping lowercased header names to the
    list of their values in order of appearance.

    Folded lines are unfolded. With *decode* MIME encoded words
    (:rfc:`2047`) are decoded; values that cannot be decoded are kept
    as they are.
    """
    message = HeaderParser().parsestr(to_unicode(raw), headersonly=True)
    headers: Dict[str, List[str]] = {}
    for name, value in message.items():
        value = _RE_FOLD.sub('', value)
        if decode:
            try:
                value = str(make_header(decode_header(value)))
            except (HeaderParseError, LookupError, UnicodeDecodeError) as e:
                logger.debug('Cannot decode %s header: %s', name, e)
        headers.setdefault(name.lower(), []).append(value)
    return headers
