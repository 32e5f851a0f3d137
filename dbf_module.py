"""
Reader for dBase (.DBF) tables built on the column codecs.

This module parses the file header into column codecs, streams raw
record buffers and decodes them into rows. Records can be modified in
place (for example by nulling a column) and written back.
"""

import os
import logging
import struct
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, Tuple

from column_module import (
    ColumnCodec, ColumnDescriptor, ColumnError, NativeColumnType,
    create_column_codec,
)

logger = logging.getLogger(__name__)

# Constants
DBF_MAX_FIELDS = 255
DBF_HEADER_SIZE = 32
DBF_FIELD_DESCRIPTOR_SIZE = 32
DBF_FIELD_TERMINATOR = 0x0D
DBF_DELETED_FLAG = ord('*')
DBF_MEMO_BLOCK_SIZE = 512
DBF_MEMO_TERMINATOR = 0x1A
DBF_MEMO_MAX_SIZE = 1048576
DBF_DEFAULT_ENCODING = 'cp437'

DBF_LANG_US = 0x01
DBF_LANG_WESTERN_EUROPE = 0x02
DBF_LANG_JAPAN = 0x7B

# dBase language driver id -> Python codec
DBF_LANGUAGE_ENCODINGS = {
    DBF_LANG_US: 'cp437',
    DBF_LANG_WESTERN_EUROPE: 'cp850',
    0x03: 'cp1252',  # Windows ANSI
    0x57: 'cp1252',  # ANSI
    0x64: 'cp852',   # Eastern European MS-DOS
    0x65: 'cp866',   # Russian MS-DOS
    0x66: 'cp865',   # Nordic MS-DOS
    0x67: 'cp861',   # Icelandic MS-DOS
    0x6A: 'cp737',   # Greek MS-DOS
    0x6B: 'cp857',   # Turkish MS-DOS
    DBF_LANG_JAPAN: 'cp932',
    0x7A: 'cp936',   # Chinese (PRC) Windows
    0x79: 'cp949',   # Korean Windows
    0x78: 'cp950',   # Chinese (Taiwan) Windows
    0x7C: 'cp874',   # Thai Windows
    0xC8: 'cp1250',  # Eastern European Windows
    0xC9: 'cp1251',  # Russian Windows
    0xCA: 'cp1254',  # Turkish Windows
    0xCB: 'cp1253',  # Greek Windows
}


# Data structures
@dataclass
class DBFColumn:
    """Represents a column/field in a DBF file."""
    name: str  # Field name (max 11 chars)
    field_type: str  # 'C', 'N', 'T', etc.
    length: int  # Field length in bytes
    decimals: int  # Number of decimal places (for numeric)
    offset: int = 0  # offset within column data; first field starts at 0


@dataclass
class DBFHeader:
    """Represents the header of a DBF file."""
    version: int = 0  # dBase version, e.g., 0x03 for dBase III
    year: int = 0  # Last update year (since 1900)
    month: int = 0  # Last update month
    day: int = 0  # Last update day
    record_count: int = 0  # Number of records
    header_size: int = 0  # Header size in bytes
    record_size: int = 0  # Record size in bytes, deletion flag included
    table_flags: int = 0  # dBase IV table flags
    language_driver: int = 0  # dBase IV language driver id
    fields: List[DBFColumn] = None  # Field descriptors
    field_count: int = 0  # Actual number of fields used

    def __post_init__(self):
        if self.fields is None:
            self.fields = []


class DBFFile:
    """An open DBF table and the codecs for its columns."""
    def __init__(self):
        self.file = None
        self.filename = ''
        self.memo_filename = None
        self.header = DBFHeader()
        self.encoding = DBF_DEFAULT_ENCODING
        self.codecs: List[ColumnCodec] = []
        self.is_open = False


# Helper functions
def read_dbf_header(file: BinaryIO) -> DBFHeader:
    """
    Read a DBF header from a file.

    Raises:
        ValueError: If the file is too short to hold a header
    """
    header = DBFHeader()

    # Read main file header (32 bytes)
    buf = file.read(DBF_HEADER_SIZE)
    if len(buf) < DBF_HEADER_SIZE:
        raise ValueError(f"Header is {len(buf)} bytes, expected {DBF_HEADER_SIZE}")
    header.version = buf[0]
    header.year = buf[1]
    header.month = buf[2]
    header.day = buf[3]
    header.record_count = struct.unpack("<L", buf[4:8])[0]
    header.header_size = struct.unpack("<H", buf[8:10])[0]
    header.record_size = struct.unpack("<H", buf[10:12])[0]
    header.table_flags = buf[28]
    header.language_driver = buf[29]

    # Read field descriptors until 0x0D (field descriptor terminator)
    fields = []
    while len(fields) < DBF_MAX_FIELDS:
        field_buf = file.read(DBF_FIELD_DESCRIPTOR_SIZE)
        if not field_buf or field_buf[0] == DBF_FIELD_TERMINATOR:
            break
        if len(field_buf) < DBF_FIELD_DESCRIPTOR_SIZE:
            raise ValueError("Truncated field descriptor")

        # Field name is null-terminated within 11 bytes
        field_name = field_buf[:11].split(b'\x00', 1)[0].decode('ascii', errors='replace')

        fields.append(DBFColumn(
            name=field_name.strip(),
            field_type=chr(field_buf[11]),
            length=field_buf[16],
            decimals=field_buf[17],
        ))

    header.fields = fields
    header.field_count = len(fields)

    # Calculate field offsets relative to column data
    offset = 0
    for field in header.fields:
        field.offset = offset
        offset += field.length

    if header.record_size != offset + 1:
        logger.warning("Header record size %d does not match field widths (%d)",
                       header.record_size, offset + 1)

    return header


def language_driver_encoding(language_driver: int, default: str = DBF_DEFAULT_ENCODING) -> str:
    """
    Get the Python codec name for a dBase language driver id.

    Args:
        language_driver: Language driver byte from the header
        default: Encoding used for unknown or unset drivers

    Returns:
        Codec name usable with bytes.decode()
    """
    return DBF_LANGUAGE_ENCODINGS.get(language_driver, default)


def build_column_codecs(header: DBFHeader, encoding: str) -> List[ColumnCodec]:
    """
    Create a codec for each field the codecs support.

    Fields with other types (general, picture, binary) are skipped.
    """
    result = []
    for field in header.fields[:header.field_count]:
        try:
            native_type = NativeColumnType.from_code(field.field_type)
        except ColumnError:
            logger.warning("Skipping field %s with unsupported type %r",
                           field.name, field.field_type)
            continue

        descriptor = ColumnDescriptor(
            name=field.name,
            native_type=native_type,
            offset=field.offset,
            size=field.length,
            decimal_count=field.decimals if native_type in (NativeColumnType.NUMERIC,
                                                            NativeColumnType.FLOAT) else None,
            text_encoding=encoding if native_type == NativeColumnType.CHARACTER else None,
        )
        result.append(create_column_codec(descriptor))
    return result


def _find_memo_file(filename: str) -> Optional[str]:
    """Find the .DBT companion of a table, trying both cases."""
    base, _ = os.path.splitext(filename)
    for ext in ('.DBT', '.dbt'):
        if os.path.exists(base + ext):
            return base + ext
    return None


# Main DBF functions
def dbf_file_open(filename: str, encoding: Optional[str] = None, readonly: bool = False) -> DBFFile:
    """
    Open an existing DBF file.

    Args:
        filename: The path to the DBF file (with or without extension)
        encoding: Text encoding for character fields; taken from the
            language driver when omitted
        readonly: Open without write access

    Returns:
        A DBFFile object representing the opened file

    Raises:
        IOError: If the file cannot be opened or its header is invalid
    """
    # Ensure the filename has .DBF extension
    if not filename.upper().endswith('.DBF'):
        filename = filename + '.DBF'

    dbf = DBFFile()
    dbf.filename = filename

    try:
        dbf.file = open(filename, "rb" if readonly else "rb+")
        dbf.header = read_dbf_header(dbf.file)
        dbf.encoding = encoding or language_driver_encoding(dbf.header.language_driver)
        dbf.codecs = build_column_codecs(dbf.header, dbf.encoding)
        dbf.memo_filename = _find_memo_file(filename)
        dbf.is_open = True
    except (OSError, ValueError) as e:
        if dbf.file:
            dbf.file.close()
        raise IOError(f"Error opening DBF file: {str(e)}") from e

    logger.info("Opened %s: %d records, %d fields, encoding %s",
                filename, dbf.header.record_count, dbf.header.field_count, dbf.encoding)
    return dbf


def dbf_file_close(dbf: DBFFile) -> None:
    """Close a DBF file."""
    if dbf and dbf.is_open and dbf.file:
        dbf.file.close()
        dbf.is_open = False


def _check_open(dbf: DBFFile) -> None:
    if not dbf or not dbf.is_open or not dbf.file:
        raise IOError("DBF file is not open")


def _check_row_index(dbf: DBFFile, row_index: int) -> None:
    if row_index < 0 or row_index >= dbf.header.record_count:
        raise IndexError(f"Row {row_index} out of range (0..{dbf.header.record_count - 1})")


def dbf_file_seek_to_row(dbf: DBFFile, row_index: int) -> None:
    """
    Seek to a specific row in the DBF file.

    Args:
        dbf: The DBF file object
        row_index: Zero-based row index
    """
    _check_open(dbf)

    # Calculate position: header + (row_index * record_size)
    position = dbf.header.header_size + (row_index * dbf.header.record_size)
    dbf.file.seek(position)


def dbf_file_read_record(dbf: DBFFile, row_index: int) -> bytearray:
    """
    Read the raw bytes of one row.

    Args:
        dbf: The DBF file object
        row_index: Zero-based row index

    Returns:
        The record buffer, deletion flag at byte 0

    Raises:
        IndexError: If row_index is outside the table
        IOError: If the file ends inside the record
    """
    _check_open(dbf)
    _check_row_index(dbf, row_index)

    dbf_file_seek_to_row(dbf, row_index)
    data = dbf.file.read(dbf.header.record_size)
    if len(data) < dbf.header.record_size:
        raise IOError(f"Row {row_index} truncated: {len(data)} of {dbf.header.record_size} bytes")
    return bytearray(data)


def dbf_file_write_record(dbf: DBFFile, row_index: int, record: bytes) -> None:
    """
    Overwrite one row with a modified record buffer.

    Args:
        dbf: The DBF file object
        row_index: Zero-based row index
        record: Full record buffer, deletion flag included

    Raises:
        IndexError: If row_index is outside the table
        ValueError: If the buffer length differs from the record size
    """
    _check_open(dbf)
    _check_row_index(dbf, row_index)
    if len(record) != dbf.header.record_size:
        raise ValueError(f"Record is {len(record)} bytes, expected {dbf.header.record_size}")

    dbf_file_seek_to_row(dbf, row_index)
    dbf.file.write(bytes(record))

    # Flush to disk
    dbf.file.flush()


def dbf_record_is_deleted(record: bytes) -> bool:
    """Check the deletion flag of a record buffer."""
    return len(record) > 0 and record[0] == DBF_DELETED_FLAG


def dbf_file_get_codec(dbf: DBFFile, field_name: str) -> ColumnCodec:
    """
    Find the codec for a field (case-insensitive).

    Raises:
        KeyError: If the table has no such decodable field
    """
    name = field_name.upper()
    for codec in dbf.codecs:
        if codec.name.upper() == name:
            return codec
    raise KeyError(field_name)


def dbf_file_decode_record(dbf: DBFFile, record: bytes) -> Dict[str, Any]:
    """Decode every supported field of a record into a dict keyed by field name."""
    return {codec.name: codec.decode(record) for codec in dbf.codecs}


def dbf_file_iter_rows(dbf: DBFFile, include_deleted: bool = False) -> Iterator[Dict[str, Any]]:
    """
    Iterate over the decoded rows of a table.

    Args:
        dbf: The DBF file object
        include_deleted: Also yield rows flagged as deleted

    Yields:
        One dict per row, keyed by field name
    """
    for row_index in range(dbf.header.record_count):
        record = dbf_file_read_record(dbf, row_index)
        if dbf_record_is_deleted(record) and not include_deleted:
            continue
        yield dbf_file_decode_record(dbf, record)


def dbf_file_set_field_null(dbf: DBFFile, record: bytearray, field_name: str) -> None:
    """Blank out one field of a record buffer in memory."""
    dbf_file_get_codec(dbf, field_name).set_null(record)


def dbf_file_get_date(dbf: DBFFile) -> Tuple[int, int, int]:
    """
    Get the last update date from a DBF file.

    Returns:
        A tuple of (year, month, day) where year is since 1900
    """
    if not dbf or not dbf.header:
        return (0, 0, 0)

    return (dbf.header.year, dbf.header.month, dbf.header.day)


def dbf_memo_read_text(dbf: DBFFile, start_block: Optional[int]) -> Optional[str]:
    """
    Read memo text for a memo field's block number.

    Format depends on how the block starts:
    - dBase IV+: 0xFFFF0800 marker, then a 4-byte length that includes
      the 8-byte block header
    - dBase III: raw text up to a 0x1A terminator

    Args:
        dbf: The DBF file object
        start_block: Block number decoded from a memo column

    Returns:
        The memo text, or None for an empty pointer or a block past the
        end of the memo file

    Raises:
        IOError: If the table has no memo file
    """
    if not start_block or start_block <= 0:
        return None
    if not dbf.memo_filename:
        raise IOError(f"No memo file for {dbf.filename}")

    with open(dbf.memo_filename, 'rb') as f:
        start_pos = start_block * DBF_MEMO_BLOCK_SIZE

        # Check if position is within file
        f.seek(0, 2)
        file_size = f.tell()
        if file_size <= start_pos:
            return None

        f.seek(start_pos)
        block_header = f.read(8)
        if block_header[:4] == b'\xff\xff\x08\x00' and len(block_header) == 8:
            memo_len = struct.unpack("<L", block_header[4:8])[0] - 8
            data = f.read(max(0, min(memo_len, DBF_MEMO_MAX_SIZE)))
        else:
            f.seek(start_pos)
            data = f.read(min(file_size - start_pos, DBF_MEMO_MAX_SIZE))
            terminator_pos = data.find(bytes([DBF_MEMO_TERMINATOR]))
            if terminator_pos >= 0:
                data = data[:terminator_pos]

    return data.decode(dbf.encoding, errors='replace')


__all__ = [
    'DBFColumn', 'DBFHeader', 'DBFFile',
    'read_dbf_header', 'language_driver_encoding', 'build_column_codecs',
    'dbf_file_open', 'dbf_file_close', 'dbf_file_seek_to_row',
    'dbf_file_read_record', 'dbf_file_write_record', 'dbf_record_is_deleted',
    'dbf_file_get_codec', 'dbf_file_decode_record', 'dbf_file_iter_rows',
    'dbf_file_set_field_null', 'dbf_file_get_date', 'dbf_memo_read_text',
    'DBF_DEFAULT_ENCODING', 'DBF_LANGUAGE_ENCODINGS', 'DBF_MEMO_BLOCK_SIZE',
    'DBF_LANG_US', 'DBF_LANG_WESTERN_EUROPE', 'DBF_LANG_JAPAN',
]
