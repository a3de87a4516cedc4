import builtins
from typing import Optional

# Fatal errors (ProtocolError, TimeoutError) tear the connection down and fail
# every outstanding command. The others only affect the command that raised
# them.


class IMAPCoreError(Exception):
    """Base class for every error raised by imapcore."""


class ProtocolError(IMAPCoreError):
    """The server sent data that does not follow the IMAP grammar."""


class ConnectionClosedError(ProtocolError):
    """The transport went away while commands were still outstanding."""


class ServerError(IMAPCoreError):
    """A command completed with a tagged ``NO`` or ``BAD`` response.

    :ivar status: ``'NO'`` or ``'BAD'``
    :ivar code: the response code name (eg. ``'TRYCREATE'``) or None
    :ivar text: the human readable text sent by the server
    :ivar command: the name of the failed command
    """

    def __init__(self, text: str, status: str = 'NO', code: Optional[str] = None,
                 command: Optional[str] = None):
        super().__init__(text)
        self.text = text
        self.status = status
        self.code = code
        self.command = command


class TimeoutError(IMAPCoreError, builtins.TimeoutError):
    """A connection, authentication or socket timeout expired.

    *kind* names the timer that fired.
    """

    def __init__(self, message: str, kind: str = 'socket'):
        super().__init__(message)
        self.kind = kind


class ValidationError(IMAPCoreError, ValueError):
    """The caller supplied malformed criteria or options.

    Raised before anything is written to the transport.
    """


class CapabilityError(ValidationError):
    """The server does not advertise a capability the operation needs."""


class IllegalStateError(ValidationError):
    """The operation is not valid in the current connection state."""


class CancelledError(IMAPCoreError):
    """The caller withdrew the command before it completed."""
