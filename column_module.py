"""
Column value codecs for dBase (.DBF) records.

A codec knows where one column lives inside a record buffer and how its
bytes map onto a Python value. Every codec offers the same three
operations: decode(), is_null() and set_null(). Record buffers carry the
deletion flag at byte 0, so column offsets are stored relative to the
column data and the codecs add the +1 themselves.
"""

import logging
import struct
import codecs
import datetime
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Dict, Optional, Union

logger = logging.getLogger(__name__)

# Constants
BLANK = 0x20
END_OF_STRING = 0x00
DELETION_FLAG_SIZE = 1

Record = Union[bytes, bytearray, memoryview]


# Errors
class ColumnError(Exception):
    """Base class for column codec errors."""


class InvalidArgumentError(ColumnError, ValueError):
    """A codec was constructed with an unusable name, offset or size."""


class BoundaryFaultError(ColumnError, IndexError):
    """A record buffer is too short for the column being accessed."""


class NativeColumnType(Enum):
    """On-disk field types, keyed by the dBase type letter."""
    CHARACTER = 'C'
    NUMERIC = 'N'
    FLOAT = 'F'
    LOGICAL = 'L'
    DATE = 'D'
    MEMO = 'M'
    DATETIME = 'T'
    INTEGER = 'I'

    @classmethod
    def from_code(cls, code: str) -> 'NativeColumnType':
        """
        Look up a type by its field descriptor letter.

        Args:
            code: Single type letter, e.g. 'C' or 't'

        Returns:
            The matching NativeColumnType

        Raises:
            InvalidArgumentError: If the letter is not a supported type
        """
        try:
            return cls(code.upper())
        except (ValueError, AttributeError):
            raise InvalidArgumentError(f"Unsupported column type: {code!r}") from None


@dataclass(frozen=True)
class ColumnDescriptor:
    """Static layout of a single column."""
    name: str
    native_type: NativeColumnType
    offset: int  # relative to column data, deletion flag excluded
    size: int
    decimal_count: Optional[int] = None  # numeric columns only
    text_encoding: Optional[str] = None  # character columns only


class ColumnCodec:
    """
    Base codec holding a column's layout.

    Subclasses implement _decode_value() and, where the type has its own
    null marker, override is_null().
    """

    # Value returned by decode() for a null column
    absent = None
    # Width the type always has on disk, or None for variable width
    fixed_size: Optional[int] = None

    def __init__(self, name: str, native_type: NativeColumnType, offset: int, size: int,
                 decimal_count: Optional[int] = None, text_encoding: Optional[str] = None):
        if not name:
            raise InvalidArgumentError("Column name must not be empty")
        if offset < 0:
            raise InvalidArgumentError(f"Column {name}: offset must be >= 0, got {offset}")
        if size <= 0:
            raise InvalidArgumentError(f"Column {name}: size must be > 0, got {size}")
        if self.fixed_size is not None and size != self.fixed_size:
            raise InvalidArgumentError(
                f"Column {name}: {native_type.name} columns are {self.fixed_size} bytes, got {size}")

        self._descriptor = ColumnDescriptor(name, native_type, offset, size,
                                            decimal_count, text_encoding)
        logger.debug("Created %s codec for %s at offset %d (%d bytes)",
                     native_type.name, name, offset, size)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, offset={self.offset}, size={self.size})"

    @property
    def descriptor(self) -> ColumnDescriptor:
        return self._descriptor

    @property
    def name(self) -> str:
        return self._descriptor.name

    @property
    def native_type(self) -> NativeColumnType:
        return self._descriptor.native_type

    @property
    def offset(self) -> int:
        return self._descriptor.offset

    @property
    def size(self) -> int:
        return self._descriptor.size

    @property
    def decimal_count(self) -> Optional[int]:
        return self._descriptor.decimal_count

    @property
    def text_encoding(self) -> Optional[str]:
        return self._descriptor.text_encoding

    @property
    def start(self) -> int:
        """Absolute position of the column's first byte within a record."""
        return self._descriptor.offset + DELETION_FLAG_SIZE

    def _check_bounds(self, record: Record) -> None:
        end = self.start + self.size
        if len(record) < end:
            raise BoundaryFaultError(
                f"Column {self.name}: record is {len(record)} bytes, need at least {end}")

    def raw_bytes(self, record: Record) -> bytes:
        """Return a copy of this column's bytes from the record."""
        self._check_bounds(record)
        return bytes(record[self.start:self.start + self.size])

    def decode(self, record: Record) -> Any:
        """
        Decode this column's value from a record buffer.

        Args:
            record: One full record, deletion flag at byte 0

        Returns:
            The decoded value, or the type's absent value if the column is null

        Raises:
            BoundaryFaultError: If the record is shorter than the column's end
        """
        if self.is_null(record):
            return self.absent
        return self._decode_value(record)

    def _decode_value(self, record: Record) -> Any:
        raise NotImplementedError

    def is_null(self, record: Record) -> bool:
        """
        Check the blank-fill null convention.

        The column is null when all of its bytes are blanks. A 0x00 byte
        met before any other character ends the scan as a C string
        terminator would, so the rest counts as blank.
        """
        self._check_bounds(record)
        for i in range(self.start, self.start + self.size):
            b = record[i]
            if b == END_OF_STRING:
                break
            if b != BLANK:
                return False
        return True

    def _is_blank_filled(self, record: Record) -> bool:
        """Strict blank test for binary columns, where 0x00 is ordinary data."""
        self._check_bounds(record)
        return all(b == BLANK for b in record[self.start:self.start + self.size])

    def set_null(self, record: Union[bytearray, memoryview]) -> None:
        """Fill the column with blanks, leaving the rest of the record alone."""
        self._check_bounds(record)
        record[self.start:self.start + self.size] = bytes([BLANK]) * self.size
        logger.debug("Set %s to null", self.name)


class CharacterColumn(ColumnCodec):
    """Fixed-width text ('C')."""

    def __init__(self, name: str, offset: int, size: int, text_encoding: Optional[str]):
        if not text_encoding:
            raise InvalidArgumentError(f"Column {name}: character columns need a text encoding")
        try:
            codecs.lookup(text_encoding)
        except LookupError:
            raise InvalidArgumentError(f"Column {name}: unknown encoding {text_encoding!r}") from None
        super().__init__(name, NativeColumnType.CHARACTER, offset, size, None, text_encoding)

    def _decode_value(self, record: Record) -> str:
        data = self.raw_bytes(record)
        end = data.find(b'\x00')
        if end >= 0:
            data = data[:end]
        return data.decode(self.text_encoding, errors='replace').rstrip(' ')


class NumericColumn(ColumnCodec):
    """ASCII numbers ('N' and 'F')."""

    def __init__(self, name: str, offset: int, size: int, decimal_count: Optional[int] = None,
                 native_type: NativeColumnType = NativeColumnType.NUMERIC):
        if decimal_count is not None and decimal_count < 0:
            raise InvalidArgumentError(f"Column {name}: decimal count must be >= 0")
        super().__init__(name, native_type, offset, size, decimal_count, None)

    def _decode_value(self, record: Record) -> Optional[Union[int, Decimal]]:
        text = self.raw_bytes(record).split(b'\x00', 1)[0].decode('ascii', errors='replace').strip()
        try:
            value = Decimal(text)
        except InvalidOperation:
            # Overflowed fields are filled with '*'
            return None
        if not value.is_finite():
            return None
        if not self.decimal_count and value == value.to_integral_value():
            return int(value)
        return value


class LogicalColumn(ColumnCodec):
    """Single-byte boolean ('L')."""

    fixed_size = 1

    TRUE_CHARS = b'TtYy'
    FALSE_CHARS = b'FfNn'

    def __init__(self, name: str, offset: int, size: int = 1):
        super().__init__(name, NativeColumnType.LOGICAL, offset, size)

    def is_null(self, record: Record) -> bool:
        if super().is_null(record):
            return True
        return record[self.start] == ord('?')

    def _decode_value(self, record: Record) -> Optional[bool]:
        b = record[self.start]
        if b in self.TRUE_CHARS:
            return True
        if b in self.FALSE_CHARS:
            return False
        return None


class DateColumn(ColumnCodec):
    """Eight ASCII digits YYYYMMDD ('D')."""

    fixed_size = 8

    def __init__(self, name: str, offset: int, size: int = 8):
        super().__init__(name, NativeColumnType.DATE, offset, size)

    def _decode_value(self, record: Record) -> Optional[datetime.date]:
        text = self.raw_bytes(record).decode('ascii', errors='replace')
        if not text.isdigit():
            return None
        try:
            return datetime.date(int(text[0:4]), int(text[4:6]), int(text[6:8]))
        except ValueError:
            return None


class MemoColumn(ColumnCodec):
    """
    Pointer into the memo (.DBT) file ('M').

    dBase stores the starting block as ten ASCII digits; FoxPro-style
    tables use a 4-byte little-endian integer instead.
    """

    def __init__(self, name: str, offset: int, size: int = 10):
        super().__init__(name, NativeColumnType.MEMO, offset, size)

    def is_null(self, record: Record) -> bool:
        if self.size == 4:
            blank = self._is_blank_filled(record)
        else:
            blank = super().is_null(record)
        return blank or self._decode_value(record) == 0

    def _decode_value(self, record: Record) -> Optional[int]:
        data = self.raw_bytes(record)
        if self.size == 4:
            return struct.unpack('<I', data)[0]
        text = data.split(b'\x00', 1)[0].decode('ascii', errors='replace').strip()
        try:
            return int(text)
        except ValueError:
            return None


class IntegerColumn(ColumnCodec):
    """4-byte little-endian signed integer ('I')."""

    fixed_size = 4

    def __init__(self, name: str, offset: int, size: int = 4):
        super().__init__(name, NativeColumnType.INTEGER, offset, size)

    def is_null(self, record: Record) -> bool:
        return self._is_blank_filled(record)

    def _decode_value(self, record: Record) -> int:
        return struct.unpack_from('<i', record, self.start)[0]


def _datetime_codec(d: ColumnDescriptor) -> ColumnCodec:
    # Imported here, datetime_column_module builds on this module
    from datetime_column_module import DateTimeColumn
    return DateTimeColumn(d.name, d.offset, d.size)


_CODEC_FACTORIES: Dict[NativeColumnType, Callable[[ColumnDescriptor], ColumnCodec]] = {
    NativeColumnType.CHARACTER: lambda d: CharacterColumn(d.name, d.offset, d.size, d.text_encoding),
    NativeColumnType.NUMERIC: lambda d: NumericColumn(d.name, d.offset, d.size, d.decimal_count),
    NativeColumnType.FLOAT: lambda d: NumericColumn(d.name, d.offset, d.size, d.decimal_count,
                                                    NativeColumnType.FLOAT),
    NativeColumnType.LOGICAL: lambda d: LogicalColumn(d.name, d.offset, d.size),
    NativeColumnType.DATE: lambda d: DateColumn(d.name, d.offset, d.size),
    NativeColumnType.MEMO: lambda d: MemoColumn(d.name, d.offset, d.size),
    NativeColumnType.DATETIME: _datetime_codec,
    NativeColumnType.INTEGER: lambda d: IntegerColumn(d.name, d.offset, d.size),
}


def create_column_codec(descriptor: ColumnDescriptor) -> ColumnCodec:
    """
    Build the codec for a column descriptor.

    Args:
        descriptor: Column layout produced by the header reader

    Returns:
        A codec of the class matching descriptor.native_type

    Raises:
        InvalidArgumentError: If the descriptor is invalid for its type
    """
    factory = _CODEC_FACTORIES.get(descriptor.native_type)
    if factory is None:
        raise InvalidArgumentError(f"No codec for column type {descriptor.native_type!r}")
    return factory(descriptor)


__all__ = [
    'ColumnError', 'InvalidArgumentError', 'BoundaryFaultError',
    'NativeColumnType', 'ColumnDescriptor', 'ColumnCodec',
    'CharacterColumn', 'NumericColumn', 'LogicalColumn', 'DateColumn',
    'MemoColumn', 'IntegerColumn',
    'create_column_codec',
    'BLANK', 'END_OF_STRING', 'DELETION_FLAG_SIZE',
]
