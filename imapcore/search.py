"""
Conversion of structured search criteria and fetch options to IMAP
command arguments.

Criteria are accepted in two shapes: the ``SearchCriterion`` dataclasses
defined here, or the list/string forms familiar from other IMAP client
libraries::

    ['UNSEEN']
    [['FROM', 'a@b.com'], '!FLAGGED']
    [['SINCE', date(2024, 1, 5)], ['LARGER', 500]]
    [['OR', 'SEEN', ['HEADER', 'X-Spam', 'yes']]]
    [['X-GM-RAW', 'has:attachment in:unread']]

Each element of the top level sequence is one criterion; the criteria
are ANDed together by the server.
"""

import dataclasses
import logging
from collections import namedtuple
from datetime import date
from typing import Any, Iterable, List, Union

from . import exceptions
from .datetime_util import format_criteria_date, parse_criteria_date
from .response_types import FetchOptions
from .util import (
    encode_string, is_atom, join_message_ids, needs_literal,
    render_arguments, to_bytes,
)

__all__ = [
    'Keyword', 'StringMatch', 'HeaderMatch', 'DateMatch', 'SizeMatch', 'ModSeq',
    'MessageSet', 'Extension', 'Not', 'Or', 'Group', 'SearchQuery', 'FetchQuery',
    'parse_criterion', 'build_search_criteria', 'format_search_criteria', 'build_fetch_items',
]

logger = logging.getLogger(__name__)

GMAIL_CAPABILITY = 'X-GM-EXT-1'

NO_PARAM_KEYS = frozenset((
    'ALL', 'ANSWERED', 'DELETED', 'DRAFT', 'FLAGGED', 'NEW', 'SEEN', 'RECENT', 'OLD',
    'UNANSWERED', 'UNDELETED', 'UNDRAFT', 'UNFLAGGED', 'UNSEEN',
))
STRING_KEYS = frozenset(('BCC', 'CC', 'FROM', 'SUBJECT', 'TO', 'BODY', 'TEXT', 'KEYWORD', 'UNKEYWORD'))
DATE_KEYS = frozenset(('BEFORE', 'ON', 'SINCE', 'SENTBEFORE', 'SENTON', 'SENTSINCE'))
SIZE_KEYS = frozenset(('LARGER', 'SMALLER'))
GMAIL_KEYS = frozenset(('X-GM-RAW', 'X-GM-THRID', 'X-GM-MSGID', 'X-GM-LABELS'))
_GMAIL_NUMERIC_KEYS = frozenset(('X-GM-THRID', 'X-GM-MSGID'))


@dataclasses.dataclass(frozen=True)
class Keyword:
    """Flag test without argument, eg. ``UNSEEN``."""
    name: str


@dataclasses.dataclass(frozen=True)
class StringMatch:
    """Substring match on a field, eg. ``FROM "a@b.com"``."""
    field: str
    value: Union[str, bytes]


@dataclasses.dataclass(frozen=True)
class HeaderMatch:
    name: str
    value: Union[str, bytes] = ''


@dataclasses.dataclass(frozen=True)
class DateMatch:
    """``BEFORE``, ``ON``, ``SINCE`` and their ``SENT*`` counterparts."""
    field: str
    value: date


@dataclasses.dataclass(frozen=True)
class SizeMatch:
    field: str
    value: int


@dataclasses.dataclass(frozen=True)
class ModSeq:
    """Messages with a MODSEQ of at least *value*, see :rfc:`4551`."""
    value: int


@dataclasses.dataclass(frozen=True)
class MessageSet:
    """A set of UIDs (``UID 1:5``) or sequence numbers (``2:*``)."""
    ids: Any
    uid: bool = False


@dataclasses.dataclass(frozen=True)
class Extension:
    """Vendor search key with a string argument, eg. ``X-GM-RAW``."""
    key: str
    value: Union[str, bytes, int]


@dataclasses.dataclass(frozen=True)
class Not:
    criterion: Any


@dataclasses.dataclass(frozen=True)
class Or:
    left: Any
    right: Any


@dataclasses.dataclass(frozen=True)
class Group:
    """Criteria ANDed together inside parentheses."""
    criteria: tuple


CRITERION_TYPES = (Keyword, StringMatch, HeaderMatch, DateMatch, SizeMatch, ModSeq,
                   MessageSet, Extension, Not, Or, Group)

SearchQuery = namedtuple('SearchQuery', 'args charset')
FetchQuery = namedtuple('FetchQuery', 'items modifiers')


def parse_criterion(obj):
    """Convert one criterion in list/string form to a ``SearchCriterion``.

    Keys may be prefixed with ``!`` to negate them. Raises
    :py:exc:`ValidationError` for unknown keys or bad arguments.
    """
    if isinstance(obj, CRITERION_TYPES):
        return obj
    if isinstance(obj, bool):
        raise exceptions.ValidationError('Invalid search criterion: %r' % (obj,))
    if isinstance(obj, int):
        return MessageSet(obj)
    if isinstance(obj, (str, bytes)):
        text = obj.decode('ascii') if isinstance(obj, bytes) else obj
        if _is_message_set(text):
            return MessageSet(text)
        negated, key = _split_negation(text)
        if key not in NO_PARAM_KEYS:
            raise exceptions.ValidationError('Unknown search key or key needs arguments: %r' % text)
        return _negate(Keyword(key), negated)
    if isinstance(obj, (list, tuple)):
        return _parse_list(list(obj))
    raise exceptions.ValidationError('Invalid search criterion: %r' % (obj,))


def _parse_list(items: List[Any]):
    if not items:
        raise exceptions.ValidationError('Empty search criterion')

    head = items[0]
    if isinstance(head, (list, tuple)) or isinstance(head, CRITERION_TYPES):
        return Group(tuple(parse_criterion(item) for item in items))
    if all(_is_message_id(item) for item in items):
        return MessageSet(tuple(items))
    if not isinstance(head, str):
        raise exceptions.ValidationError('Invalid search criterion: %r' % (items,))

    negated, key = _split_negation(head)
    args = items[1:]

    if key == 'OR':
        if negated or len(args) != 2:
            raise exceptions.ValidationError('OR takes exactly two criteria')
        return Or(parse_criterion(args[0]), parse_criterion(args[1]))
    if key in NO_PARAM_KEYS:
        _expect_args(key, args, 0)
        return _negate(Keyword(key), negated)
    if key in STRING_KEYS:
        _expect_args(key, args, 1)
        return _negate(StringMatch(key, _string_arg(key, args[0])), negated)
    if key == 'HEADER':
        if len(args) not in (1, 2):
            raise exceptions.ValidationError('HEADER takes a header name and a value')
        value = _string_arg(key, args[1]) if len(args) == 2 else ''
        return _negate(HeaderMatch(_string_arg(key, args[0]), value), negated)
    if key in DATE_KEYS:
        _expect_args(key, args, 1)
        return _negate(DateMatch(key, parse_criteria_date(args[0])), negated)
    if key in SIZE_KEYS:
        _expect_args(key, args, 1)
        return _negate(SizeMatch(key, _int_arg(key, args[0])), negated)
    if key == 'MODSEQ':
        _expect_args(key, args, 1)
        return _negate(ModSeq(_int_arg(key, args[0])), negated)
    if key == 'UID':
        if not args:
            raise exceptions.ValidationError('UID needs a message set')
        ids = args[0] if len(args) == 1 else tuple(args)
        return _negate(MessageSet(ids, uid=True), negated)
    if key in GMAIL_KEYS:
        _expect_args(key, args, 1)
        return _negate(Extension(key, args[0]), negated)
    raise exceptions.ValidationError('Unknown search key: %r' % head)


def _split_negation(text: str):
    text = text.strip()
    if text.startswith('!'):
        return True, text[1:].upper()
    return False, text.upper()


def _negate(criterion, negated: bool):
    if negated:
        return Not(criterion)
    return criterion


def _expect_args(key: str, args: List[Any], count: int) -> None:
    if len(args) != count:
        raise exceptions.ValidationError('%s takes %d argument(s), got %d' % (key, count, len(args)))


def _string_arg(key: str, value):
    if isinstance(value, (str, bytes)):
        return value
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    raise exceptions.ValidationError('%s needs a string argument, got %r' % (key, value))


def _int_arg(key: str, value) -> int:
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise exceptions.ValidationError('%s needs a non-negative integer, got %r' % (key, value))
    return value


def _is_message_id(item) -> bool:
    if isinstance(item, bool):
        return False
    if isinstance(item, int):
        return item > 0
    if isinstance(item, str):
        return _is_message_set(item)
    return False


def _is_message_set(text: str) -> bool:
    try:
        join_message_ids(text)
    except exceptions.ValidationError:
        return False
    return True


class _Renderer:

    def __init__(self, capabilities: Iterable[str], literal_threshold: int):
        self.capabilities = {c.upper() for c in capabilities}
        self.literal_threshold = literal_threshold
        self.charset = None
        self.args: List[bytes] = []

    def string(self, value) -> None:
        data = to_bytes(value)
        if any(b >= 0x80 for b in data):
            self.charset = 'UTF-8'
        self.args.append(encode_string(data, self.literal_threshold))

    def require(self, capability: str, what: str) -> None:
        if capability not in self.capabilities:
            raise exceptions.CapabilityError(
                f'Server does not support {capability} capability required by {what}')

    def render(self, criterion) -> None:
        if isinstance(criterion, Keyword):
            if criterion.name.upper() not in NO_PARAM_KEYS:
                raise exceptions.ValidationError('Unknown search key: %r' % criterion.name)
            self.args.append(criterion.name.upper().encode('ascii'))
        elif isinstance(criterion, StringMatch):
            field = criterion.field.upper()
            if field not in STRING_KEYS:
                raise exceptions.ValidationError('Unknown search key: %r' % criterion.field)
            self.args.append(field.encode('ascii'))
            if field in ('KEYWORD', 'UNKEYWORD'):
                keyword = to_bytes(criterion.value)
                if not is_atom(keyword):
                    raise exceptions.ValidationError('Invalid keyword: %r' % criterion.value)
                self.args.append(keyword)
            else:
                self.string(criterion.value)
        elif isinstance(criterion, HeaderMatch):
            self.args.append(b'HEADER')
            self.string(criterion.name)
            self.string(criterion.value)
        elif isinstance(criterion, DateMatch):
            field = criterion.field.upper()
            if field not in DATE_KEYS:
                raise exceptions.ValidationError('Unknown search key: %r' % criterion.field)
            self.args.append(field.encode('ascii'))
            self.args.append(format_criteria_date(parse_criteria_date(criterion.value)))
        elif isinstance(criterion, SizeMatch):
            field = criterion.field.upper()
            if field not in SIZE_KEYS:
                raise exceptions.ValidationError('Unknown search key: %r' % criterion.field)
            self.args.append(field.encode('ascii'))
            self.args.append(to_bytes(_int_arg(field, criterion.value)))
        elif isinstance(criterion, ModSeq):
            self.require('CONDSTORE', 'MODSEQ')
            self.args.append(b'MODSEQ')
            self.args.append(to_bytes(_int_arg('MODSEQ', criterion.value)))
        elif isinstance(criterion, MessageSet):
            if criterion.uid:
                self.args.append(b'UID')
            self.args.append(join_message_ids(criterion.ids))
        elif isinstance(criterion, Extension):
            key = criterion.key.upper()
            if key in GMAIL_KEYS:
                self.require(GMAIL_CAPABILITY, key)
            elif not is_atom(key.encode('ascii', 'replace')):
                raise exceptions.ValidationError('Invalid search key: %r' % criterion.key)
            self.args.append(key.encode('ascii'))
            value = criterion.value
            if key in _GMAIL_NUMERIC_KEYS and str(value).isdigit():
                self.args.append(to_bytes(str(value)))
            else:
                self.string(_string_arg(key, value))
        elif isinstance(criterion, Not):
            self.args.append(b'NOT')
            self.render_operand(criterion.criterion)
        elif isinstance(criterion, Or):
            self.args.append(b'OR')
            self.render_operand(criterion.left)
            self.render_operand(criterion.right)
        elif isinstance(criterion, Group):
            if not criterion.criteria:
                raise exceptions.ValidationError('Empty search criteria group')
            self.args.append(b'(')
            for item in criterion.criteria:
                self.render(parse_criterion(item))
            self.args.append(b')')
        else:
            self.render(parse_criterion(criterion))

    def render_operand(self, criterion) -> None:
        criterion = parse_criterion(criterion)
        if isinstance(criterion, Group) and len(criterion.criteria) == 1:
            criterion = parse_criterion(criterion.criteria[0])
        self.render(criterion)


def build_search_criteria(criteria, capabilities: Iterable[str] = (),
                          literal_threshold: int = 1024) -> SearchQuery:
    """Compile *criteria* to SEARCH arguments.

    Returns a ``SearchQuery`` whose *args* is a list of argument tokens
    (bytes, with :py:class:`Literal` instances for strings that have to be
    sent as literals) and whose *charset* is ``'UTF-8'`` when some string
    argument contains 8-bit data, None otherwise.

    Raises :py:exc:`ValidationError` when *criteria* is empty or
    malformed and :py:exc:`CapabilityError` when a criterion needs a
    capability missing from *capabilities*.
    """
    if isinstance(criteria, (str, bytes, int)) or isinstance(criteria, CRITERION_TYPES):
        criteria = [criteria]
    if not criteria:
        raise exceptions.ValidationError('No search criteria specified')

    renderer = _Renderer(capabilities, literal_threshold)
    for item in criteria:
        renderer.render(parse_criterion(item))
    return SearchQuery(renderer.args, renderer.charset)


def format_search_criteria(criteria, capabilities: Iterable[str] = (),
                           literal_threshold: int = 1024) -> str:
    """Return the wire text for *criteria*.

    >>> format_search_criteria([['FROM', 'a@b.com'], 'UNSEEN'])
    'FROM "a@b.com" UNSEEN'
    """
    query = build_search_criteria(criteria, capabilities, literal_threshold)
    return b''.join(render_arguments(query.args)).decode('utf-8', 'replace')


def build_fetch_items(options: Union[FetchOptions, dict, None],
                      capabilities: Iterable[str] = ()) -> FetchQuery:
    """Turn *options* into the FETCH item list and optional modifiers.

    ``UID``, ``FLAGS`` and ``INTERNALDATE`` are always requested. The
    Gmail attributes are added when the server advertises
    ``X-GM-EXT-1``.
    """
    options = _coerce_fetch_options(options)
    capabilities = {c.upper() for c in capabilities}

    items = [b'UID', b'FLAGS', b'INTERNALDATE']
    if options.size:
        items.append(b'RFC822.SIZE')
    if options.struct:
        items.append(b'BODYSTRUCTURE')
    if options.envelope:
        items.append(b'ENVELOPE')
    if GMAIL_CAPABILITY in capabilities:
        items.extend((b'X-GM-THRID', b'X-GM-MSGID', b'X-GM-LABELS'))

    for name in options.extensions or ():
        item = to_bytes(name).upper()
        if not is_atom(item):
            raise exceptions.ValidationError('Invalid fetch item: %r' % name)
        if item == b'MODSEQ' and 'CONDSTORE' not in capabilities:
            raise exceptions.CapabilityError('Server does not support CONDSTORE capability')
        if item not in items:
            items.append(item)

    prefix = b'BODY[' if options.mark_seen else b'BODY.PEEK['
    for section in _body_sections(options.bodies):
        items.append(prefix + section + b']')

    modifiers = None
    if options.modifiers:
        parts = []
        for key, value in options.modifiers.items():
            name = to_bytes(key).upper()
            if not is_atom(name):
                raise exceptions.ValidationError('Invalid fetch modifier: %r' % key)
            if name == b'CHANGEDSINCE':
                if 'CONDSTORE' not in capabilities:
                    raise exceptions.CapabilityError('Server does not support CONDSTORE capability')
                parts.append(name + b' ' + to_bytes(_int_arg('CHANGEDSINCE', value)))
            elif value is True:
                parts.append(name)
            else:
                parts.append(name + b' ' + to_bytes(_int_arg(key, value)))
        modifiers = b'(' + b' '.join(parts) + b')'

    return FetchQuery(b'(' + b' '.join(items) + b')', modifiers)


def _coerce_fetch_options(options) -> FetchOptions:
    if options is None:
        return FetchOptions()
    if isinstance(options, FetchOptions):
        return options
    if isinstance(options, dict):
        try:
            return FetchOptions(**options)
        except TypeError as e:
            raise exceptions.ValidationError(str(e))
    raise exceptions.ValidationError('Invalid fetch options: %r' % (options,))


def _body_sections(bodies) -> List[bytes]:
    if bodies is None:
        return []
    if isinstance(bodies, (str, bytes)):
        bodies = [bodies]
    sections = []
    for body in bodies:
        section = to_bytes(body).strip().upper()
        if needs_literal(section, 1024) or section.count(b'(') != section.count(b')') or b']' in section:
            raise exceptions.ValidationError('Invalid body section: %r' % (body,))
        sections.append(section)
    return sections
