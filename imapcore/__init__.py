from . import exceptions
from .config import *
from .connection import *
from .events import *
from .exceptions import (
    CancelledError, CapabilityError, ConnectionClosedError, IllegalStateError,
    IMAPCoreError, ProtocolError, ServerError, TimeoutError, ValidationError,
)
from .response_types import *
from .search import *
from .state import *
from .util import build_xoauth2_token, parse_header

__version__ = '0.1.0'
