from datetime import datetime, timedelta, timezone

import pytest

from imapcore.exceptions import ProtocolError
from imapcore.response_parser import (
    parse_fetch_attributes, parse_list_item, parse_message_list, parse_namespace,
    parse_response, parse_response_line, parse_status,
)
from imapcore.response_types import (
    ContinuationRequest, NamespaceEntry, StatusResponse, TaggedResponse, UntaggedResponse,
)


class TestParseResponse:

    def test_empty(self):
        assert parse_response([b'']) == ()

    def test_types(self):
        assert parse_response([b'abc 12 NIL "quoted str" (1 (2 nil))']) == (
            b'abc', 12, None, b'quoted str', (1, (2, None)),
        )

    def test_leading_zero_is_not_an_int(self):
        assert parse_response([b'0123 0']) == (b'0123', 0)

    def test_literal(self):
        assert parse_response([(b'(BODY[] {5}', b'hello'), b')']) == ((b'BODY[]', b'hello'),)

    def test_literal_size_mismatch(self):
        with pytest.raises(ProtocolError):
            parse_response([(b'{6}', b'hello')])

    def test_unbalanced(self):
        with pytest.raises(ProtocolError):
            parse_response([b'(1 2'])
        with pytest.raises(ProtocolError):
            parse_response([b'1 2)'])


class TestParseResponseLine:

    def test_tagged(self):
        assert parse_response_line([b'A1 OK [READ-WRITE] SELECT completed']) == TaggedResponse(
            'A1', 'OK', 'SELECT completed', 'READ-WRITE', ())

    def test_tagged_failure(self):
        resp = parse_response_line([b'A12 NO [TRYCREATE] No such mailbox'])
        assert (resp.status, resp.code, resp.text) == ('NO', 'TRYCREATE', 'No such mailbox')

    def test_invalid_tagged_status(self):
        with pytest.raises(ProtocolError):
            parse_response_line([b'A1 MAYBE whatever'])

    def test_continuation(self):
        assert parse_response_line([b'+ Ready for literal']) == ContinuationRequest(b'Ready for literal')
        assert parse_response_line([b'+']) == ContinuationRequest(b'')

    def test_untagged_status_with_code(self):
        resp = parse_response_line([b'* OK [PERMANENTFLAGS (\\Deleted \\Seen \\*)] Limited'])
        assert resp == StatusResponse('OK', 'Limited', 'PERMANENTFLAGS', ((b'\\Deleted', b'\\Seen', b'\\*'),))

    def test_untagged_numeric_code(self):
        resp = parse_response_line([b'* OK [UIDVALIDITY 3857529045] UIDs valid'])
        assert resp.code_data == (3857529045,)

    def test_bye(self):
        resp = parse_response_line([b'* BYE Autologout; idle for too long'])
        assert resp == StatusResponse('BYE', 'Autologout; idle for too long')

    def test_exists(self):
        assert parse_response_line([b'* 23 EXISTS']) == UntaggedResponse('EXISTS', 23)

    def test_exists_with_data(self):
        with pytest.raises(ProtocolError):
            parse_response_line([b'* 23 EXISTS 4'])

    def test_fetch(self):
        resp = parse_response_line([b'* 12 FETCH (FLAGS (\\Seen) UID 4827313)'])
        assert resp.kind == 'FETCH'
        assert resp.number == 12
        assert resp.data == (b'FLAGS', (b'\\Seen',), b'UID', 4827313)

    def test_fetch_with_literal(self):
        resp = parse_response_line([(b'* 2 FETCH (UID 7 BODY[TEXT] {4}', b'body'), b')'])
        assert resp.data == (b'UID', 7, b'BODY[TEXT]', b'body')

    def test_untagged_data(self):
        resp = parse_response_line([b'* SEARCH 2 84 882'])
        assert resp == UntaggedResponse('SEARCH', None, (2, 84, 882))

    def test_empty_search(self):
        assert parse_response_line([b'* SEARCH']) == UntaggedResponse('SEARCH', None, ())

    @pytest.mark.parametrize('line', [b'', b'* ', b'A+1 OK x', b'* 3 (EXISTS)'])
    def test_malformed(self, line):
        with pytest.raises(ProtocolError):
            parse_response_line([line])


class TestParseMessageList:

    def test_ids(self):
        assert parse_message_list((101, 102)) == [101, 102]

    def test_empty(self):
        ids = parse_message_list(())
        assert ids == []
        assert ids.modseq is None

    def test_modseq(self):
        ids = parse_message_list((1, 5, (b'MODSEQ', 917162500)))
        assert ids == [1, 5]
        assert ids.modseq == 917162500

    def test_junk(self):
        with pytest.raises(ProtocolError):
            parse_message_list((b'abc',))


class TestParseFetchAttributes:

    def test_basic_items(self):
        attrs, bodies = parse_fetch_attributes(3, (
            b'UID', 101,
            b'FLAGS', (b'\\Seen', b'$Important'),
            b'INTERNALDATE', b'17-Jul-1996 02:44:25 -0700',
            b'RFC822.SIZE', 4286,
            b'MODSEQ', (12121231000,),
        ))
        assert bodies == []
        assert attrs.seqno == 3
        assert attrs.uid == 101
        assert attrs.flags == ('\\Seen', '$Important')
        assert attrs.date == datetime(1996, 7, 17, 2, 44, 25, tzinfo=timezone(timedelta(hours=-7)))
        assert attrs.size == 4286
        assert attrs.modseq == 12121231000

    def test_bodies_keep_server_order(self):
        attrs, bodies = parse_fetch_attributes(1, (
            b'BODY[HEADER.FIELDS (SUBJECT)]', b'Subject: hi\r\n\r\n',
            b'UID', 5,
            b'BODY[TEXT]', b'hello',
            b'RFC822', b'full',
        ))
        assert bodies == [
            ('HEADER.FIELDS (SUBJECT)', b'Subject: hi\r\n\r\n'),
            ('TEXT', b'hello'),
            ('', b'full'),
        ]
        assert attrs.uid == 5

    def test_nil_body(self):
        _, bodies = parse_fetch_attributes(1, (b'BODY[1]', None))
        assert bodies == [('1', b'')]

    def test_gmail_items(self):
        attrs, _ = parse_fetch_attributes(1, (
            b'X-GM-THRID', 1278455344230334865,
            b'X-GM-MSGID', 1278455344230334866,
            b'X-GM-LABELS', (b'\\Inbox', b'Entw&APw-rfe', 123),
        ))
        assert attrs.x_gm_thrid == '1278455344230334865'
        assert attrs.x_gm_msgid == '1278455344230334866'
        assert attrs.x_gm_labels == ('\\Inbox', 'Entwürfe', '123')

    def test_envelope(self):
        attrs, _ = parse_fetch_attributes(1, (b'ENVELOPE', (
            b'Wed, 17 Jul 1996 02:23:25 -0700', b'subject',
            ((b'Terry Gray', None, b'gray', b'cac.washington.edu'),), None, None,
            ((None, None, b'imap', b'cac.washington.edu'),), None, None, None, b'<B27397-0100000@cac>',
        )))
        env = attrs.envelope
        assert env.subject == b'subject'
        assert str(env.from_[0]) == 'Terry Gray <gray@cac.washington.edu>'
        assert env.sender is None
        assert str(env.to[0]) == 'imap@cac.washington.edu'
        assert env.message_id == b'<B27397-0100000@cac>'

    def test_unknown_items_go_to_extra(self):
        attrs, _ = parse_fetch_attributes(1, (b'X-CUSTOM', b'value'))
        assert attrs.extra == {'X-CUSTOM': b'value'}

    def test_odd_item_count(self):
        with pytest.raises(ProtocolError):
            parse_fetch_attributes(1, (b'UID',))


def test_parse_list_item():
    assert parse_list_item(((b'\\HasNoChildren',), b'/', b'Entw&APw-rfe')) == (
        ['\\HasNoChildren'], '/', 'Entwürfe')


def test_parse_list_item_nil_delimiter():
    assert parse_list_item(((), None, b'INBOX')) == ([], None, 'INBOX')


def test_parse_status():
    assert parse_status((b'blurdybloop', (b'MESSAGES', 231, b'uidnext', 44292))) == (
        'blurdybloop', {'MESSAGES': 231, 'UIDNEXT': 44292})


def test_parse_namespace():
    ns = parse_namespace((((b'', b'/'),), ((b'~', b'/'),), None))
    assert ns.personal == [NamespaceEntry('', '/')]
    assert ns.other == [NamespaceEntry('~', '/')]
    assert ns.shared == []
