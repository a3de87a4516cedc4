import asyncio

from imapcore.events import EventDispatcher, FetchStream
from imapcore.response_types import MessageAttributes


def test_observers_called_in_registration_order():
    events = EventDispatcher()
    calls = []
    events.on('mail', lambda n: calls.append(('first', n)))
    events.on('mail', lambda n: calls.append(('second', n)))
    events.emit('mail', 3)
    events.emit('mail', 1)
    assert calls == [('first', 3), ('second', 3), ('first', 1), ('second', 1)]


def test_once():
    events = EventDispatcher()
    calls = []
    events.once('alert', calls.append)
    events.emit('alert', 'a')
    events.emit('alert', 'b')
    assert calls == ['a']
    assert events.listener_count('alert') == 0


def test_off():
    events = EventDispatcher()
    calls = []
    events.on('mail', calls.append)
    events.on('expunge', calls.append)
    events.off('mail', calls.append)
    events.emit('mail', 1)
    events.off('expunge')
    events.emit('expunge', 2)
    assert calls == []


def test_once_only_events_fire_once():
    events = EventDispatcher(once_only=('close',))
    calls = []
    events.on('close', calls.append)
    assert events.emit('close', True)
    assert not events.emit('close', False)
    assert calls == [True]
    assert events.has_fired('close')


def test_observer_errors_are_contained(caplog):
    events = EventDispatcher()
    calls = []

    def broken(n):
        raise RuntimeError('boom')

    events.on('mail', broken)
    events.on('mail', calls.append)
    events.emit('mail', 1)
    assert calls == [1]
    assert 'boom' in caplog.text


def test_coroutine_observers_are_scheduled():
    loop = asyncio.new_event_loop()
    try:
        events = EventDispatcher(loop=loop)
        calls = []

        async def observer(n):
            calls.append(n)

        events.on('mail', observer)
        events.emit('mail', 7)
        assert calls == []
        loop.run_until_complete(asyncio.sleep(0))
        assert calls == [7]
    finally:
        loop.close()


def test_fetch_stream_event_order():
    loop = asyncio.new_event_loop()
    try:
        stream = FetchStream(loop.create_future(), loop)
        calls = []

        def on_message(msg, seqno):
            calls.append(('message', seqno))
            msg.on('body', lambda data, info: calls.append(('body', data, info.which, info.size)))
            msg.on('attributes', lambda attrs: calls.append(('attributes', attrs.uid)))
            msg.on('end', lambda: calls.append(('end',)))

        stream.on('message', on_message)
        stream.on('end', lambda: calls.append(('stream end',)))
        stream.deliver(MessageAttributes(4, uid=40), [('HEADER', b'h'), ('TEXT', b'body')])
        result = stream.finish()

        assert calls == [
            ('message', 4),
            ('body', b'h', 'HEADER', 1),
            ('body', b'body', 'TEXT', 4),
            ('attributes', 40),
            ('end',),
            ('stream end',),
        ]
        assert [m.bodies for m in result] == [{'HEADER': b'h', 'TEXT': b'body'}]
    finally:
        loop.close()


def test_fetch_stream_error():
    loop = asyncio.new_event_loop()
    try:
        stream = FetchStream(loop.create_future(), loop)
        errors = []
        stream.on('error', errors.append)
        exc = RuntimeError('failed')
        stream.fail(exc)
        stream.fail(exc)
        assert errors == [exc]
    finally:
        loop.close()
