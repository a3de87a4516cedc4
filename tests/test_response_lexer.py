import pytest

from imapcore.exceptions import ProtocolError
from imapcore.response_lexer import ResponseReader, TokenSource


def tokens(*chunks):
    return list(TokenSource(list(chunks)))


class TestResponseReader:

    def test_complete_lines(self):
        reader = ResponseReader()
        assert reader.feed(b'* 3 EXISTS\r\n* 1 RECENT\r\n') == [[b'* 3 EXISTS'], [b'* 1 RECENT']]
        assert not reader.has_partial

    def test_line_split_across_reads(self):
        reader = ResponseReader()
        assert reader.feed(b'* 3 EXI') == []
        assert reader.has_partial
        assert reader.feed(b'STS\r') == []
        assert reader.feed(b'\n') == [[b'* 3 EXISTS']]

    def test_literal_split_across_reads(self):
        reader = ResponseReader()
        assert reader.feed(b'* 1 FETCH (BODY[] {11}\r\nhello ') == []
        assert reader.waiting_for_literal
        assert reader.feed(b'world)\r\n') == [
            [(b'* 1 FETCH (BODY[] {11}', b'hello world'), b')'],
        ]
        assert not reader.waiting_for_literal

    def test_literal_containing_crlf(self):
        reader = ResponseReader()
        assert reader.feed(b'* 1 FETCH (BODY[] {8}\r\na\r\n\r\nb\r\n)\r\n') == [
            [(b'* 1 FETCH (BODY[] {8}', b'a\r\n\r\nb\r\n'), b')'],
        ]

    def test_zero_length_literal(self):
        reader = ResponseReader()
        assert reader.feed(b'* 1 FETCH (BODY[TEXT] {0}\r\n)\r\n') == [
            [(b'* 1 FETCH (BODY[TEXT] {0}', b''), b')'],
        ]

    def test_several_literals(self):
        reader = ResponseReader()
        data = b'* 2 FETCH (BODY[HEADER] {3}\r\nabc BODY[TEXT] {2}\r\nxy UID 9)\r\n'
        assert reader.feed(data) == [[
            (b'* 2 FETCH (BODY[HEADER] {3}', b'abc'),
            (b' BODY[TEXT] {2}', b'xy'),
            b' UID 9)',
        ]]

    def test_non_synchronising_literal(self):
        reader = ResponseReader()
        assert reader.feed(b'* 1 FETCH (BODY[] {2+}\r\nok)\r\n') == [
            [(b'* 1 FETCH (BODY[] {2+}', b'ok'), b')'],
        ]

    def test_reset(self):
        reader = ResponseReader()
        reader.feed(b'* 1 FETCH (BODY[] {10}\r\nabc')
        reader.reset()
        assert not reader.has_partial
        assert reader.feed(b'* OK\r\n') == [[b'* OK']]


class TestLexer:

    def test_atoms_and_parens(self):
        assert tokens(b'abc (def 12) NIL') == [b'abc', b'(', b'def', b'12', b')', b'NIL']

    def test_quoted_strings_keep_quotes(self):
        assert tokens(b'"a b" c') == [b'"a b"', b'c']

    def test_escaped_quote(self):
        assert tokens(b'"a\\"b"') == [b'"a"b"']

    def test_escaped_backslash(self):
        assert tokens(b'"a\\\\b"') == [b'"a\\b"']

    def test_bracketed_section_is_one_token(self):
        assert tokens(b'BODY[HEADER.FIELDS (TO FROM)] x') == [b'BODY[HEADER.FIELDS (TO FROM)]', b'x']

    def test_flags(self):
        assert tokens(b'(\\Seen \\*)') == [b'(', b'\\Seen', b'\\*', b')']

    def test_unterminated_quote(self):
        with pytest.raises(ProtocolError):
            tokens(b'"abc')

    def test_literal_is_exposed(self):
        src = TokenSource([(b'x {3}', b'abc'), b' y'])
        seen = []
        for tok in src:
            seen.append((tok, src.current_literal))
        assert seen == [(b'x', b'abc'), (b'{3}', b'abc'), (b'y', None)]
