# The modified UTF-7 encoding used for mailbox names, see
# :rfc:`3501#section-5.1.3`.
import binascii
from typing import List, Union

AMPERSAND_ORD = ord('&')
DASH_ORD = ord('-')


def encode(s: Union[str, bytes]) -> bytes:
    """Encode a folder name using IMAP modified UTF-7 encoding.

    Input is unicode; output is bytes. If
    non-unicode input is provided, the input is returned unchanged.
    """
    if not isinstance(s, str):
        return s

    res = bytearray()
    b64_buffer: List[str] = []

    def consume_b64_buffer(buf: List[str]) -> None:
        if buf:
            res.extend(b'&' + base64_utf7_encode(buf) + b'-')
            del buf[:]

    for c in s:
        ord_c = ord(c)
        # printable ascii case should not be modified
        if 0x20 <= ord_c <= 0x7E:
            consume_b64_buffer(b64_buffer)
            # Special case: & is used as shift character so we need to escape it in ASCII
            if c == '&':
                res.extend(b'&-')
            else:
                res.append(ord_c)
        else:
            b64_buffer.append(c)

    consume_b64_buffer(b64_buffer)
    return bytes(res)


def decode(s: Union[bytes, str]) -> str:
    """Decode a folder name from IMAP modified UTF-7 encoding to unicode.

    Input is bytes; output is always
    unicode. If non-bytes/str input is provided, the input is returned
    unchanged.
    """
    if isinstance(s, str):
        return s

    res = []
    b64_buffer = bytearray()
    for c in s:
        # Start of base64 encoded section
        if c == AMPERSAND_ORD and not b64_buffer:
            b64_buffer.append(c)
        # End of base64 encoded section
        elif c == DASH_ORD and b64_buffer:
            if len(b64_buffer) == 1:
                res.append('&')
            else:
                res.append(base64_utf7_decode(b64_buffer[1:]))
            b64_buffer = bytearray()
        elif b64_buffer:
            b64_buffer.append(c)
        else:
            res.append(chr(c))

    # Decode any remaining base64 data
    if b64_buffer:
        res.append(base64_utf7_decode(b64_buffer[1:]))

    return ''.join(res)


def base64_utf7_encode(buffer: List[str]) -> bytes:
    s = ''.join(buffer).encode('utf-16be')
    return binascii.b2a_base64(s).rstrip(b'\n=').replace(b'/', b',')


def base64_utf7_decode(s: bytearray) -> str:
    s_utf7 = b'+' + s.replace(b',', b'/') + b'-'
    return s_utf7.decode('utf-7')
