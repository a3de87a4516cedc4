import re
from datetime import date, datetime, timedelta, timezone
from email.utils import parsedate_tz
from typing import Union

from . import exceptions

_SHORT_MONTHS = ' Jan Feb Mar Apr May Jun Jul Aug Sep Oct Nov Dec'.split(' ')
_RE_CRITERIA_DATE = re.compile(r'^(\d{1,2})-([A-Za-z]{3})-(\d{4})$')
_rfc822_dotted_time = re.compile('\\w+, ?\\d{1,2} \\w+ \\d\\d(\\d\\d)? \\d\\d?\\.\\d\\d?\\.\\d\\d?.*')


def _local_tz():
    return datetime.now(timezone.utc).astimezone().tzinfo


def datetime_to_native(dt: datetime) -> datetime:
    """Convert a timezone-aware datetime to a naive datetime in the local timezone."""
    if dt.tzinfo is None:
        return dt
    return dt.astimezone(_local_tz()).replace(tzinfo=None)


def parse_to_datetime(timestamp: bytes, normalise: bool = False) -> datetime:
    """Convert an IMAP datetime string to a datetime.

    Both INTERNALDATE (``17-Jul-1996 02:44:25 -0700``) and RFC 822 dates
    (as found in ENVELOPE responses) are understood.

    If normalise is True, then the returned datetime will be
    timezone-naive but adjusted to the local time. Otherwise the
    returned datetime carries the timezone information of the input.
    """
    text = timestamp.decode('ascii').strip()

    if _rfc822_dotted_time.match(text):
        text = text.replace('.', ':')

    parsed = parsedate_tz(text)
    if not parsed:
        raise ValueError(f'Invalid timestamp format: {text}')
    tz_offset = parsed[-1]
    if tz_offset is None:
        tz = None
    else:
        tz = timezone(timedelta(seconds=tz_offset))
    dt = datetime(*parsed[:6], tzinfo=tz)

    if normalise and dt.tzinfo is not None:
        return datetime_to_native(dt)
    return dt


def datetime_to_INTERNALDATE(dt: datetime) -> str:
    """Convert a datetime instance to a IMAP INTERNALDATE string.

    If timezone information is missing the current system
    timezone is used.
    """
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=_local_tz())

    offset = dt.utcoffset().total_seconds()
    sign = '+' if offset >= 0 else '-'
    offset_mins = abs(int(offset / 60))
    offset_hrs = offset_mins // 60
    offset_mins = offset_mins % 60

    return (f"{dt.day:02d}-{_SHORT_MONTHS[dt.month]}-{dt.year:04d} "
            f"{dt.hour:02d}:{dt.minute:02d}:{dt.second:02d} {sign}{offset_hrs:02d}{offset_mins:02d}")


def format_criteria_date(dt: Union[date, datetime]) -> bytes:
    """Format a date or datetime instance for use in IMAP search criteria."""
    return f"{dt.day:02d}-{_SHORT_MONTHS[dt.month]}-{dt.year:04d}".encode('ascii')


def parse_criteria_date(value: Union[str, date, datetime]) -> date:
    """Accept a date, a datetime, an ISO 8601 string or an IMAP
    ``dd-Mon-yyyy`` string and return a date.
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if not isinstance(value, str):
        raise exceptions.ValidationError('Expected a date, got %r' % (value,))

    text = value.strip()
    match = _RE_CRITERIA_DATE.match(text)
    if match:
        day, month, year = match.groups()
        month = month.capitalize()
        if month in _SHORT_MONTHS[1:]:
            try:
                return date(int(year), _SHORT_MONTHS.index(month), int(day))
            except ValueError:
                pass
        raise exceptions.ValidationError('Invalid date: %r' % value)
    try:
        return datetime.fromisoformat(text).date()
    except ValueError:
        raise exceptions.ValidationError('Invalid date: %r' % value)
