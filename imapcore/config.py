import dataclasses
from typing import Optional, Union

from . import exceptions

__all__ = ['Timeouts', 'Keepalive', 'ConnectionConfig']


@dataclasses.dataclass
class Timeouts:
    """Represents timeout configuration for an IMAP connection, in seconds.

    :ivar connect: maximum time to wait for the server greeting
    :ivar auth: maximum time to wait for authentication to complete
    :ivar socket: maximum time without any data from the server once
      connected, 0 to disable

    The timers themselves are run by the transport; their expiry is
    reported with :py:meth:`IMAPConnection.handle_timeout`.
    """
    connect: float = 10.0
    auth: float = 5.0
    socket: float = 0.0


@dataclasses.dataclass
class Keepalive:
    """Keepalive policy.

    :ivar interval: seconds of inactivity before a NOOP is sent or IDLE
      is started
    :ivar idle_interval: seconds after which an IDLE command is renewed
    :ivar force_noop: always use NOOP, even when the server supports IDLE
    """
    interval: float = 10.0
    idle_interval: float = 300.0
    force_noop: bool = False


@dataclasses.dataclass
class ConnectionConfig:
    """Credentials and options of an :py:class:`IMAPConnection`.

    One of *password*, *xoauth* (a ready XOAUTH token) or *xoauth2* (a
    base64 encoded XOAUTH2 initial response, see
    :py:func:`imapcore.util.build_xoauth2_token`) is required.

    *keepalive* is ``True`` for the default :py:class:`Keepalive`
    policy, ``False`` to disable keepalive, or a :py:class:`Keepalive`
    instance.

    *pipelining* allows several commands to be outstanding at once.

    String arguments longer than *literal_threshold* bytes are sent as
    literals.
    """
    user: str
    password: Optional[str] = None
    xoauth: Optional[str] = None
    xoauth2: Optional[str] = None
    host: str = 'localhost'
    port: int = 143
    timeouts: Timeouts = dataclasses.field(default_factory=Timeouts)
    keepalive: Union[bool, Keepalive] = True
    pipelining: bool = False
    literal_threshold: int = 1024

    def __post_init__(self):
        if not self.user:
            raise exceptions.ValidationError('A user name is required')
        if self.password is None and self.xoauth is None and self.xoauth2 is None:
            raise exceptions.ValidationError('One of password, xoauth or xoauth2 is required')
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not 0 < self.port < 65536:
            raise exceptions.ValidationError('Invalid port: %r' % (self.port,))
        for name in ('connect', 'auth', 'socket'):
            if getattr(self.timeouts, name) < 0:
                raise exceptions.ValidationError('Timeout %r must not be negative' % name)
        if self.keepalive is True:
            self.keepalive = Keepalive()
        if isinstance(self.keepalive, Keepalive):
            if self.keepalive.interval <= 0 or self.keepalive.idle_interval <= 0:
                raise exceptions.ValidationError('Keepalive intervals must be positive')
        elif self.keepalive is not False:
            raise exceptions.ValidationError('Invalid keepalive: %r' % (self.keepalive,))
        if self.literal_threshold < 1:
            raise exceptions.ValidationError('literal_threshold must be at least 1')

    @property
    def keepalive_policy(self) -> Optional[Keepalive]:
        """The active :py:class:`Keepalive`, or None when disabled."""
        if self.keepalive is False:
            return None
        return self.keepalive
