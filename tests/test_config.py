import pytest

from imapcore.config import ConnectionConfig, Keepalive, Timeouts
from imapcore.exceptions import ValidationError


def test_defaults():
    config = ConnectionConfig(user='fred', password='secret')
    assert (config.host, config.port) == ('localhost', 143)
    assert config.timeouts == Timeouts(connect=10.0, auth=5.0, socket=0.0)
    assert config.keepalive_policy == Keepalive()
    assert not config.pipelining


def test_keepalive_disabled():
    assert ConnectionConfig(user='fred', password='x', keepalive=False).keepalive_policy is None


def test_custom_keepalive():
    policy = Keepalive(interval=30, idle_interval=600, force_noop=True)
    assert ConnectionConfig(user='fred', password='x', keepalive=policy).keepalive_policy is policy


def test_oauth_token_is_enough():
    ConnectionConfig(user='fred', xoauth2='dG9rZW4=')


@pytest.mark.parametrize('kwargs', [
    {'user': '', 'password': 'x'},
    {'user': 'fred'},
    {'user': 'fred', 'password': 'x', 'port': 0},
    {'user': 'fred', 'password': 'x', 'port': 70000},
    {'user': 'fred', 'password': 'x', 'port': True},
    {'user': 'fred', 'password': 'x', 'timeouts': Timeouts(auth=-1)},
    {'user': 'fred', 'password': 'x', 'keepalive': Keepalive(interval=0)},
    {'user': 'fred', 'password': 'x', 'keepalive': 'often'},
    {'user': 'fred', 'password': 'x', 'literal_threshold': 0},
])
def test_invalid(kwargs):
    with pytest.raises(ValidationError):
        ConnectionConfig(**kwargs)
