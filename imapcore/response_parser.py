"""
Parsing for IMAP command responses with focus on FETCH responses as
returned by imapcore.

Initially inspired by http://effbot.org/zone/simple-iterator-parser.htm
"""

import logging
from typing import Iterator, List, Optional, Tuple, Union

from . import exceptions
from .datetime_util import parse_to_datetime
from .imap_utf7 import decode as decode_utf7
from .response_lexer import Chunk, TokenSource
from .response_types import (
    Address, ContinuationRequest, Envelope, MessageAttributes, NamespaceEntry,
    Namespaces, SearchIds, StatusResponse, TaggedResponse, UntaggedResponse,
)
from .util import assert_imap_protocol, is_atom, to_unicode

__all__ = [
    'parse_response', 'parse_response_line', 'parse_message_list',
    'parse_fetch_attributes', 'parse_list_item', 'parse_status', 'parse_namespace',
]

logger = logging.getLogger(__name__)

Response = Union[TaggedResponse, StatusResponse, UntaggedResponse, ContinuationRequest]

TAGGED_STATUSES = frozenset(('OK', 'NO', 'BAD'))
UNTAGGED_STATUSES = frozenset(('OK', 'NO', 'BAD', 'BYE', 'PREAUTH'))


def parse_response(data: List[Chunk]) -> Tuple:
    """Pull apart IMAP command responses.

    Returns nested tuples of appropriately typed objects.
    """
    if data == [b'']:
        return ()
    return tuple(gen_parsed_response(data))


def gen_parsed_response(text: List[Chunk]) -> Iterator:
    if not text:
        return
    src = TokenSource(text)

    token = None
    try:
        for token in src:
            yield atom(src, token)
    except exceptions.ProtocolError:
        raise
    except ValueError as err:
        raise exceptions.ProtocolError('%s: %r' % (err, token))


def parse_response_line(chunks: List[Chunk]) -> Response:
    """Classify one complete server response.

    Returns a :py:class:`TaggedResponse`, :py:class:`StatusResponse`,
    :py:class:`UntaggedResponse` or :py:class:`ContinuationRequest`. Raises
    :py:exc:`ProtocolError` if the response does not follow the IMAP
    grammar.
    """
    assert_imap_protocol(bool(chunks), b'empty response')
    first = _chunk_text(chunks[0])
    assert_imap_protocol(bool(first), b'empty response line')

    if first.startswith(b'+'):
        assert_imap_protocol(len(chunks) == 1, first)
        return ContinuationRequest(first[1:].strip())

    if first.startswith(b'* '):
        return _parse_untagged(chunks, first[2:])

    tag, _, rest = first.partition(b' ')
    assert_imap_protocol(is_atom(tag) and b'+' not in tag and b'*' not in tag, first)
    status, _, text = rest.partition(b' ')
    status = status.upper().decode('ascii', 'replace')
    assert_imap_protocol(status in TAGGED_STATUSES, first)
    assert_imap_protocol(len(chunks) == 1, first)
    code, code_data, text = _parse_resp_text(text)
    return TaggedResponse(tag.decode('ascii'), status, text, code, code_data)


def _parse_untagged(chunks: List[Chunk], rest: bytes) -> Response:
    word, _, tail = rest.partition(b' ')
    assert_imap_protocol(bool(word), rest)

    if word.isdigit():
        number = int(word)
        kind, _, tail = tail.partition(b' ')
        kind = kind.upper().decode('ascii', 'replace')
        assert_imap_protocol(kind.isalpha(), rest)
        data = parse_response(_replace_text(chunks, tail))
        if kind in ('EXISTS', 'RECENT', 'EXPUNGE'):
            assert_imap_protocol(not data, rest)
        elif kind == 'FETCH':
            assert_imap_protocol(len(data) == 1 and isinstance(data[0], tuple), rest)
            data = data[0]
        return UntaggedResponse(kind, number, data)

    status = word.upper().decode('ascii', 'replace')
    if status in UNTAGGED_STATUSES:
        assert_imap_protocol(len(chunks) == 1, rest)
        code, code_data, text = _parse_resp_text(tail)
        return StatusResponse(status, text, code, code_data)

    assert_imap_protocol(is_atom(word), rest)
    return UntaggedResponse(status, None, parse_response(_replace_text(chunks, tail)))


def _parse_resp_text(text: bytes) -> Tuple[Optional[str], Tuple, str]:
    text = text.strip()
    if not text.startswith(b'['):
        return None, (), to_unicode(text)
    end = text.find(b']')
    assert_imap_protocol(end > 1, text)
    name, _, args = text[1:end].partition(b' ')
    code = name.upper().decode('ascii', 'replace')
    code_data = parse_response([args]) if args else ()
    return code, code_data, to_unicode(text[end + 1:].strip())


def _chunk_text(chunk: Chunk) -> bytes:
    if isinstance(chunk, tuple):
        return chunk[0]
    return chunk


def _replace_text(chunks: List[Chunk], text: bytes) -> List[Chunk]:
    first = chunks[0]
    if isinstance(first, tuple):
        first = (text, first[1])
    else:
        first = text
    return [first] + list(chunks[1:])


def parse_message_list(data: Tuple) -> SearchIds:
    """Parse a list of message ids and return them as a list.

    parse_response is also capable of doing this but this is
    faster. This also has special handling of the optional MODSEQ part
    of a SEARCH response.

    The returned list is a SearchIds instance which has a *modseq*
    attribute which contains the MODSEQ response (if returned by the
    server).
    """
    ids = SearchIds()
    for item in data:
        if isinstance(item, tuple):
            assert_imap_protocol(len(item) == 2 and item[0].upper() == b'MODSEQ', b'invalid SEARCH response')
            ids.modseq = item[1]
            continue
        assert_imap_protocol(isinstance(item, int), b'invalid SEARCH response')
        ids.append(item)
    return ids


def parse_fetch_attributes(seqno: int, data: Tuple,
                           normalise_times: bool = False) -> Tuple[MessageAttributes, List[Tuple[str, bytes]]]:
    """Convert the data items of one ``* n FETCH (...)`` response.

    Returns the message attributes and the list of ``(which, data)``
    body sections, in the order the server sent them.
    """
    assert_imap_protocol(len(data) % 2 == 0, b'odd number of FETCH data items')

    attrs = MessageAttributes(seqno=seqno)
    bodies = []
    for i in range(0, len(data), 2):
        key, value = data[i], data[i + 1]
        assert_imap_protocol(isinstance(key, bytes), b'invalid FETCH data item name')
        name = key.upper()

        if name == b'UID':
            assert_imap_protocol(isinstance(value, int), b'invalid UID')
            attrs.uid = value
        elif name == b'FLAGS':
            attrs.flags = tuple(to_unicode(f) for f in _as_tuple(value))
        elif name == b'INTERNALDATE':
            attrs.date = _convert_INTERNALDATE(value, normalise_times)
        elif name == b'RFC822.SIZE':
            assert_imap_protocol(isinstance(value, int), b'invalid RFC822.SIZE')
            attrs.size = value
        elif name in (b'BODYSTRUCTURE', b'BODY'):
            attrs.struct = value
        elif name == b'ENVELOPE':
            attrs.envelope = _convert_ENVELOPE(value, normalise_times)
        elif name == b'MODSEQ':
            attrs.modseq = value[0] if isinstance(value, tuple) else value
        elif name == b'X-GM-THRID':
            attrs.x_gm_thrid = to_unicode(str(value) if isinstance(value, int) else value)
        elif name == b'X-GM-MSGID':
            attrs.x_gm_msgid = to_unicode(str(value) if isinstance(value, int) else value)
        elif name == b'X-GM-LABELS':
            attrs.x_gm_labels = tuple(_decode_label(label) for label in _as_tuple(value))
        elif name.startswith((b'BODY[', b'BINARY[')) or name.startswith(b'RFC822'):
            bodies.append((_body_section(name), value or b''))
        else:
            attrs.extra[to_unicode(name)] = value
    return attrs, bodies


def _as_tuple(value) -> Tuple:
    if value is None:
        return ()
    if isinstance(value, tuple):
        return value
    return (value,)


def _decode_label(label) -> str:
    if isinstance(label, int):
        return str(label)
    return decode_utf7(label)


def _body_section(name: bytes) -> str:
    if name == b'RFC822':
        return ''
    if name.startswith(b'RFC822.'):
        return to_unicode(name[7:])
    start = name.index(b'[')
    end = name.rindex(b']')
    return to_unicode(name[start + 1:end])


def _convert_INTERNALDATE(date_string, normalise_times=False):
    if date_string is None:
        return None
    try:
        return parse_to_datetime(date_string, normalise=normalise_times)
    except ValueError:
        # Some servers return junk.
        logger.warning('Unparsable INTERNALDATE %r', date_string)
        return None


def _convert_ENVELOPE(envelope_response, normalise_times=False):
    assert_imap_protocol(isinstance(envelope_response, tuple) and len(envelope_response) == 10,
                         b'invalid ENVELOPE')
    dt = None
    if envelope_response[0]:
        try:
            dt = parse_to_datetime(envelope_response[0], normalise=normalise_times)
        except ValueError:
            pass

    subject = envelope_response[1]

    # addresses contains a tuple of addresses
    # from, sender, reply_to, to, cc, bcc headers
    addr_tuples = envelope_response[2:8]
    addresses = []
    for addr_list in addr_tuples:
        addrs = []
        if addr_list:
            for addr_tuple in addr_list:
                if addr_tuple:
                    addrs.append(Address(*addr_tuple))
            addresses.append(tuple(addrs))
        else:
            addresses.append(None)

    return Envelope(
        dt, subject, *addresses, in_reply_to=envelope_response[8],
        message_id=envelope_response[9],
    )


def parse_list_item(data: Tuple) -> Tuple[List[str], Optional[str], str]:
    """Convert the data of a LIST or LSUB response to ``(flags, delimiter,
    name)`` with the name decoded from modified UTF-7.
    """
    assert_imap_protocol(len(data) == 3 and isinstance(data[0], tuple), b'invalid LIST response')
    flags, delimiter, name = data
    if isinstance(name, int):
        name = str(name).encode('ascii')
    return ([to_unicode(f) for f in flags],
            to_unicode(delimiter) if delimiter is not None else None,
            decode_utf7(name))


def parse_status(data: Tuple) -> Tuple[str, dict]:
    """Convert ``* STATUS name (MESSAGES 3 UIDNEXT 4)`` data to the
    mailbox name and a dict of items.
    """
    assert_imap_protocol(len(data) == 2 and isinstance(data[1], tuple), b'invalid STATUS response')
    name, items = data
    assert_imap_protocol(len(items) % 2 == 0, b'invalid STATUS response')
    if isinstance(name, int):
        name = str(name).encode('ascii')
    result = {}
    for i in range(0, len(items), 2):
        result[to_unicode(items[i]).upper()] = items[i + 1]
    return decode_utf7(name), result


def parse_namespace(data: Tuple) -> Namespaces:
    """Convert ``* NAMESPACE`` data, see :rfc:`2342`."""
    assert_imap_protocol(len(data) == 3, b'invalid NAMESPACE response')
    groups = []
    for group in data:
        entries = []
        for item in group or ():
            assert_imap_protocol(isinstance(item, tuple) and len(item) >= 2, b'invalid NAMESPACE response')
            prefix, delimiter = item[0], item[1]
            extensions = None
            if len(item) > 2:
                extensions = []
                for j in range(2, len(item) - 1, 2):
                    extensions.append({
                        'name': to_unicode(item[j]),
                        'params': [to_unicode(p) for p in _as_tuple(item[j + 1])],
                    })
            entries.append(NamespaceEntry(
                decode_utf7(prefix),
                to_unicode(delimiter) if delimiter is not None else None,
                extensions,
            ))
        groups.append(entries)
    return Namespaces(*groups)


def atom(src, token):
    if token == b'(':
        return parse_tuple(src)
    if token.upper() == b'NIL':
        return None
    if token[:1] == b'{':
        literal_len = int(token[1:-1].rstrip(b'+'))
        literal_text = src.current_literal
        if literal_text is None:
            raise exceptions.ProtocolError('No literal corresponds to %r' % token)
        if len(literal_text) != literal_len:
            raise exceptions.ProtocolError(
                'Expecting literal of size %d, got %d' % (literal_len, len(literal_text)))
        return literal_text
    if len(token) >= 2 and (token[:1] == token[-1:] == b'"'):
        return token[1:-1]
    if token.isdigit() and (token[:1] != b'0' or len(token) == 1):
        # this prevents converting items like 0123 to 123
        return int(token)
    if token == b')':
        raise exceptions.ProtocolError('Unexpected ")"')
    return token


def parse_tuple(src):
    out = []
    for token in src:
        if token == b')':
            return tuple(out)
        out.append(atom(src, token))
    # no terminator
    raise exceptions.ProtocolError('Tuple incomplete before "(%s"' % _fmt_tuple(out))


def _fmt_tuple(t):
    return ' '.join(str(item) for item in t)
