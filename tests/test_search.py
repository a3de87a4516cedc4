from datetime import date, datetime

import pytest

from imapcore.exceptions import CapabilityError, ValidationError
from imapcore.response_types import FetchOptions
from imapcore.search import (
    DateMatch, Extension, Group, Keyword, MessageSet, Not, Or, SizeMatch, StringMatch,
    build_fetch_items, build_search_criteria, format_search_criteria, parse_criterion,
)
from imapcore.util import Literal

GMAIL = ('IMAP4rev1', 'X-GM-EXT-1')


class TestParseCriterion:

    def test_keyword(self):
        assert parse_criterion('UNSEEN') == Keyword('UNSEEN')
        assert parse_criterion('unseen') == Keyword('UNSEEN')

    def test_negated_keyword(self):
        assert parse_criterion('!flagged') == Not(Keyword('FLAGGED'))

    def test_message_sets(self):
        assert parse_criterion(5) == MessageSet(5)
        assert parse_criterion('2:*') == MessageSet('2:*')
        assert parse_criterion([1, '3:4']) == MessageSet((1, '3:4'))
        assert parse_criterion(['UID', '1:5']) == MessageSet('1:5', uid=True)

    def test_string_match(self):
        assert parse_criterion(['from', 'a@b.com']) == StringMatch('FROM', 'a@b.com')
        assert parse_criterion(['!SUBJECT', 'x']) == Not(StringMatch('SUBJECT', 'x'))

    def test_dates(self):
        expected = DateMatch('SINCE', date(2024, 1, 5))
        assert parse_criterion(['SINCE', date(2024, 1, 5)]) == expected
        assert parse_criterion(['SINCE', datetime(2024, 1, 5, 10, 30)]) == expected
        assert parse_criterion(['SINCE', '2024-01-05']) == expected
        assert parse_criterion(['SINCE', '5-Jan-2024']) == expected

    def test_size(self):
        assert parse_criterion(['LARGER', 500]) == SizeMatch('LARGER', 500)

    def test_or_and_group(self):
        assert parse_criterion(['OR', 'SEEN', ['FROM', 'x']]) == Or(Keyword('SEEN'), StringMatch('FROM', 'x'))
        assert parse_criterion([['FROM', 'x'], 'SEEN']) == Group((StringMatch('FROM', 'x'), Keyword('SEEN')))

    def test_gmail_key(self):
        assert parse_criterion(['X-GM-RAW', 'has:attachment']) == Extension('X-GM-RAW', 'has:attachment')

    def test_objects_pass_through(self):
        criterion = Not(Keyword('SEEN'))
        assert parse_criterion(criterion) is criterion

    @pytest.mark.parametrize('criterion', [
        'FROM',
        'NOPE',
        ['NOPE', 1],
        ['FROM'],
        ['FROM', 'a', 'b'],
        ['LARGER', 'big'],
        ['LARGER', -1],
        ['SINCE', 'yesterday'],
        ['OR', 'SEEN'],
        ['!OR', 'SEEN', 'DRAFT'],
        [],
        True,
        None,
        3.5,
    ])
    def test_invalid(self, criterion):
        with pytest.raises(ValidationError):
            parse_criterion(criterion)


class TestFormatSearchCriteria:

    def test_reference_case(self):
        assert format_search_criteria([['FROM', 'a@b.com'], 'UNSEEN']) == 'FROM "a@b.com" UNSEEN'

    def test_not(self):
        assert format_search_criteria(['!SEEN', ['!FROM', 'x']]) == 'NOT SEEN NOT FROM "x"'

    def test_or(self):
        assert format_search_criteria([['OR', 'SEEN', ['SUBJECT', 'foo']]]) == 'OR SEEN SUBJECT "foo"'

    def test_or_with_groups(self):
        criteria = [['OR', [['FROM', 'a'], 'UNSEEN'], 'FLAGGED']]
        assert format_search_criteria(criteria) == 'OR (FROM "a" UNSEEN) FLAGGED'

    def test_dates_and_sizes(self):
        criteria = [['SINCE', date(2005, 4, 3)], ['BEFORE', date(2005, 12, 25)], ['LARGER', 500]]
        assert format_search_criteria(criteria) == 'SINCE 03-Apr-2005 BEFORE 25-Dec-2005 LARGER 500'

    def test_header(self):
        assert format_search_criteria([['HEADER', 'X-Spam', 'yes']]) == 'HEADER "X-Spam" "yes"'

    def test_message_sets(self):
        assert format_search_criteria([5, '2:*']) == '5 2:*'
        assert format_search_criteria([[1, '3:4']]) == '1,3:4'
        assert format_search_criteria([['UID', [101, 102]]]) == 'UID 101,102'

    def test_keyword_argument_is_an_atom(self):
        assert format_search_criteria([['KEYWORD', '$Junk']]) == 'KEYWORD $Junk'
        with pytest.raises(ValidationError):
            format_search_criteria([['KEYWORD', 'two words']])

    def test_quoting(self):
        assert format_search_criteria([['SUBJECT', 'say "hi"']]) == r'SUBJECT "say \"hi\""'

    def test_dataclass_criteria(self):
        criteria = [Not(StringMatch('FROM', 'x')), Keyword('DELETED')]
        assert format_search_criteria(criteria) == 'NOT FROM "x" DELETED'

    def test_empty(self):
        with pytest.raises(ValidationError):
            format_search_criteria([])


class TestBuildSearchCriteria:

    def test_ascii_has_no_charset(self):
        query = build_search_criteria(['UNSEEN'])
        assert query.args == [b'UNSEEN']
        assert query.charset is None

    def test_8bit_string_is_a_literal(self):
        query = build_search_criteria([['SUBJECT', 'h\xe9llo']])
        assert query.charset == 'UTF-8'
        assert query.args == [b'SUBJECT', 'h\xe9llo'.encode('utf-8')]
        assert isinstance(query.args[1], Literal)
        assert format_search_criteria([['SUBJECT', 'h\xe9llo']]) == 'SUBJECT {6}\r\nh\xe9llo'

    def test_control_characters_need_a_literal(self):
        query = build_search_criteria([['BODY', 'a\r\nb']])
        assert isinstance(query.args[1], Literal)
        assert query.charset is None

    def test_literal_threshold(self):
        query = build_search_criteria([['FROM', 'abcd']], literal_threshold=3)
        assert isinstance(query.args[1], Literal)
        query = build_search_criteria([['FROM', 'abc']], literal_threshold=3)
        assert query.args[1] == b'"abc"'

    def test_gmail_keys_need_capability(self):
        with pytest.raises(CapabilityError):
            build_search_criteria([['X-GM-RAW', 'has:attachment']])

    def test_gmail_raw(self):
        assert format_search_criteria([['X-GM-RAW', 'has:attachment in:unread']], GMAIL) == \
            'X-GM-RAW "has:attachment in:unread"'

    def test_gmail_ids_are_numbers(self):
        assert format_search_criteria([['X-GM-THRID', 1278455344230334865]], GMAIL) == \
            'X-GM-THRID 1278455344230334865'

    def test_modseq_needs_condstore(self):
        with pytest.raises(CapabilityError):
            build_search_criteria([['MODSEQ', 5]])
        assert format_search_criteria([['MODSEQ', 5]], ['CONDSTORE']) == 'MODSEQ 5'


class TestBuildFetchItems:

    def test_defaults(self):
        assert build_fetch_items(None) == (b'(UID FLAGS INTERNALDATE)', None)

    def test_body_is_peeked(self):
        query = build_fetch_items({'bodies': 'TEXT'})
        assert query.items == b'(UID FLAGS INTERNALDATE BODY.PEEK[TEXT])'

    def test_all_options(self):
        options = FetchOptions(bodies=['HEADER.FIELDS (FROM TO)', ''], struct=True, envelope=True,
                               size=True, mark_seen=True)
        assert build_fetch_items(options).items == (
            b'(UID FLAGS INTERNALDATE RFC822.SIZE BODYSTRUCTURE ENVELOPE '
            b'BODY[HEADER.FIELDS (FROM TO)] BODY[])')

    def test_gmail_attributes(self):
        assert build_fetch_items(None, GMAIL).items == \
            b'(UID FLAGS INTERNALDATE X-GM-THRID X-GM-MSGID X-GM-LABELS)'

    def test_changedsince(self):
        with pytest.raises(CapabilityError):
            build_fetch_items({'modifiers': {'changedsince': 1234}})
        query = build_fetch_items({'modifiers': {'changedsince': 1234}, 'extensions': ['modseq']},
                                  ['CONDSTORE'])
        assert query.items == b'(UID FLAGS INTERNALDATE MODSEQ)'
        assert query.modifiers == b'(CHANGEDSINCE 1234)'

    @pytest.mark.parametrize('options', [
        42,
        {'nope': True},
        {'bodies': 'TEXT]'},
        {'bodies': 'HEADER.FIELDS (FROM'},
        {'extensions': ['BAD ITEM']},
    ])
    def test_invalid(self, options):
        with pytest.raises(ValidationError):
            build_fetch_items(options)
