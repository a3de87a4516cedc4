"""
Framing and lexing of IMAP server responses.

:class:`ResponseReader` turns the raw byte stream coming from the
transport into complete responses, taking care of lines and literals that
are split across reads. :class:`Lexer` and :class:`TokenSource` then split
a complete response into tokens for the parser.

A complete response is a list of chunks. Each chunk is either ``bytes``
(text without literals) or a ``(text, literal)`` tuple where *text* ends
with the ``{n}`` literal announcement and *literal* holds exactly *n*
bytes.
"""

import logging
import re
from typing import Iterator, List, Tuple, Union

from .util import assert_imap_protocol

__all__ = ['ResponseReader', 'TokenSource', 'Lexer']

logger = logging.getLogger(__name__)

CRLF = b'\r\n'

Chunk = Union[bytes, Tuple[bytes, bytes]]

_RE_LITERAL = re.compile(rb'\{(\d+)\+?\}$')

CTRL_CHARS = frozenset(c for c in range(32))
ALL_CHARS = frozenset(c for c in range(256))
SPECIALS = frozenset(c for c in b' ()%"[')
NON_SPECIALS = ALL_CHARS - SPECIALS - CTRL_CHARS
WHITESPACE = frozenset(c for c in b' \t\r\n')

BACKSLASH = ord('\\')
OPEN_SQUARE = ord('[')
CLOSE_SQUARE = ord(']')
DOUBLE_QUOTE = ord('"')


class ResponseReader:
    """Accumulate transport data and yield complete server responses.

    The reader is in line mode until a line ends with a ``{n}`` literal
    announcement. It then switches to fixed-length mode and consumes
    exactly *n* bytes before going back to line mode.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._chunks: List[Chunk] = []
        self._literal_text = None
        self._literal_size = 0

    def feed(self, data: bytes) -> List[List[Chunk]]:
        """Add *data* and return the responses completed by it (possibly
        none).
        """
        self._buffer.extend(data)
        responses = []
        while True:
            if self._literal_text is not None:
                if len(self._buffer) < self._literal_size:
                    break
                literal = bytes(self._buffer[:self._literal_size])
                del self._buffer[:self._literal_size]
                self._chunks.append((self._literal_text, literal))
                self._literal_text = None
                continue

            end = self._buffer.find(CRLF)
            if end < 0:
                break
            line = bytes(self._buffer[:end])
            del self._buffer[:end + 2]

            match = _RE_LITERAL.search(line)
            if match:
                self._literal_text = line
                self._literal_size = int(match.group(1))
                continue

            self._chunks.append(line)
            responses.append(self._chunks)
            self._chunks = []
        return responses

    @property
    def waiting_for_literal(self) -> bool:
        return self._literal_text is not None

    @property
    def has_partial(self) -> bool:
        """True when some bytes of an incomplete response are buffered."""
        return bool(self._buffer or self._chunks or self._literal_text is not None)

    def reset(self) -> None:
        self._buffer = bytearray()
        self._chunks = []
        self._literal_text = None
        self._literal_size = 0


class TokenSource:
    """
    A simple iterator for the Lexer class that also provides access to
    the current IMAP literal.
    """

    def __init__(self, chunks: List[Chunk]):
        self.lex = Lexer(chunks)
        self.src = iter(self.lex)

    @property
    def current_literal(self):
        return self.lex.current_literal

    def __iter__(self) -> Iterator[bytes]:
        return self.src


class Lexer:
    """
    A lexical analyzer class for IMAP responses.
    """

    def __init__(self, chunks: List[Chunk]):
        self.chunks = chunks
        self.current_literal = None

    def read_until(self, stream_i: 'PushableIterator', end_char: int, escape: bool = True) -> bytearray:
        token = bytearray()
        try:
            for nextchar in stream_i:
                if escape and nextchar == BACKSLASH:
                    escaper = nextchar
                    nextchar = next(stream_i)
                    if nextchar != escaper and nextchar != end_char:
                        token.append(escaper)  # Don't touch invalid escaping
                elif nextchar == end_char:
                    break
                token.append(nextchar)
            else:
                assert_imap_protocol(False, b"No closing '" + bytes([end_char]) + b"'")
        except StopIteration:
            assert_imap_protocol(False, b"No closing '" + bytes([end_char]) + b"'")
        token.append(end_char)
        return token

    def read_token_stream(self, stream_i: 'PushableIterator') -> Iterator[bytes]:
        whitespace = WHITESPACE
        wordchars = NON_SPECIALS
        read_until = self.read_until

        while True:
            # Whitespace
            for nextchar in stream_i:
                if nextchar not in whitespace:
                    stream_i.push(nextchar)
                    break

            # Non-whitespace
            token = bytearray()
            for nextchar in stream_i:
                if nextchar in wordchars:
                    token.append(nextchar)
                elif nextchar == OPEN_SQUARE:
                    token.append(nextchar)
                    token.extend(read_until(stream_i, CLOSE_SQUARE, escape=False))
                else:
                    if nextchar in whitespace:
                        yield bytes(token)
                    elif nextchar == DOUBLE_QUOTE:
                        assert_imap_protocol(not token)
                        token.append(nextchar)
                        token.extend(read_until(stream_i, nextchar))
                        yield bytes(token)
                    else:
                        # Other punctuation, eg. "(". This ends the current token.
                        if token:
                            yield bytes(token)
                        yield bytes([nextchar])
                    break
            else:
                if token:
                    yield bytes(token)
                break

    def __iter__(self) -> Iterator[bytes]:
        for chunk in self.chunks:
            if isinstance(chunk, tuple):
                text, self.current_literal = chunk
                assert_imap_protocol(text.endswith(b'}'), text)
            else:
                text, self.current_literal = chunk, None
            for tok in self.read_token_stream(PushableIterator(text)):
                yield tok


class PushableIterator:
    def __init__(self, it: bytes):
        self.it = iter(it)
        self.pushed: List[int] = []

    def __iter__(self) -> 'PushableIterator':
        return self

    def __next__(self) -> int:
        if self.pushed:
            return self.pushed.pop()
        return next(self.it)

    def push(self, item: int) -> None:
        self.pushed.append(item)
