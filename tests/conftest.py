import asyncio

import pytest

from imapcore import ConnectionConfig, IMAPConnection

from .fakes import FakeServer, FakeTransport

DEFAULT_CAPABILITIES = 'IMAP4rev1 IDLE NAMESPACE UIDPLUS ID'


@pytest.fixture
def loop():
    loop = asyncio.new_event_loop()
    yield loop
    loop.close()


@pytest.fixture
def make_server(loop):
    """Return a factory creating a connection wired to a fake server.

    With *login* the greeting and LOGIN exchange are played so the
    connection is ready when the factory returns.
    """
    def factory(capabilities=DEFAULT_CAPABILITIES, login=True, **config):
        config.setdefault('user', 'fred')
        config.setdefault('password', 'secret')
        config.setdefault('keepalive', False)
        conn = IMAPConnection(ConnectionConfig(**config), loop=loop)
        transport = FakeTransport()
        conn.connection_made(transport)
        server = FakeServer(conn, transport)
        if login:
            ready = []
            conn.once('ready', lambda: ready.append(True))
            server.send(b'* OK [CAPABILITY %s] IMAP4rev1 ready' % capabilities.encode('ascii'))
            server.complete(text='Logged in', code='CAPABILITY ' + capabilities)
            if 'NAMESPACE' in capabilities.split():
                server.complete(b'* NAMESPACE (("" "/")) NIL NIL')
            else:
                server.complete(b'* LIST (\\Noselect) "/" ""')
            assert ready == [True]
            transport.take()
        return server
    return factory


@pytest.fixture
def server(make_server):
    return make_server()


def select_inbox(server, exists=3, uids=(101, 102, 103)):
    """Open INBOX and learn the UIDs of its messages."""
    fut = server.conn.open_box('INBOX')
    server.complete(
        b'* FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)',
        b'* OK [PERMANENTFLAGS (\\Deleted \\Seen \\*)] Limited',
        b'* %d EXISTS' % exists,
        b'* 0 RECENT',
        b'* OK [UIDVALIDITY 3857529045] UIDs valid',
        b'* OK [UIDNEXT 4392] Predicted next UID',
        code='READ-WRITE', text='SELECT completed',
    )
    box = fut.result()
    if uids:
        server.conn.fetch('1:*')
        server.complete(*[b'* %d FETCH (UID %d FLAGS ())' % (i + 1, uid) for i, uid in enumerate(uids)])
    server.transport.take()
    return box


@pytest.fixture
def selected(server):
    select_inbox(server)
    return server
