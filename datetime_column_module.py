"""
DateTime ('T') column codec.

The column holds two little-endian signed 32-bit integers:

    bytes 0..4   Julian day number (days since 1 January 4713 BC)
    bytes 4..8   milliseconds since midnight

A column filled with blanks is null and decodes to DATETIME_ABSENT.
"""

import datetime
import struct
from typing import Union

from column_module import ColumnCodec, NativeColumnType, Record

# Julian day number of 1900-01-01
JULIAN_DAY_1900 = 2415021
EPOCH_1900 = datetime.datetime(1900, 1, 1)
DATETIME_ABSENT = datetime.datetime.min
DATETIME_SIZE = 8


def julian_day_to_date(julian_day: int) -> datetime.date:
    """
    Convert a Julian day number to a Gregorian date.

    Args:
        julian_day: Julian Day Number

    Returns:
        The calendar date

    Raises:
        OverflowError: If the date falls outside datetime.date's range
    """
    return EPOCH_1900.date() + datetime.timedelta(days=julian_day - JULIAN_DAY_1900)


def date_to_julian_day(value: Union[datetime.date, datetime.datetime]) -> int:
    """Convert a date (or the date part of a datetime) to its Julian day number."""
    if isinstance(value, datetime.datetime):
        value = value.date()
    return (value - EPOCH_1900.date()).days + JULIAN_DAY_1900


class DateTimeColumn(ColumnCodec):
    """Packed Julian day + milliseconds timestamp ('T')."""

    absent = DATETIME_ABSENT
    fixed_size = DATETIME_SIZE

    def __init__(self, name: str, offset: int, size: int = DATETIME_SIZE):
        super().__init__(name, NativeColumnType.DATETIME, offset, size)

    def _decode_value(self, record: Record) -> datetime.datetime:
        julian_day, ms_of_day = struct.unpack_from('<ii', record, self.start)

        # Values before 1900 are returned as they are
        return EPOCH_1900 + datetime.timedelta(days=julian_day - JULIAN_DAY_1900,
                                               milliseconds=ms_of_day)


__all__ = [
    'DateTimeColumn',
    'julian_day_to_date', 'date_to_julian_day',
    'JULIAN_DAY_1900', 'EPOCH_1900', 'DATETIME_ABSENT', 'DATETIME_SIZE',
]
