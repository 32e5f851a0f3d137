"""
Test file for the DBF table reader.
Builds small DBF/DBT files byte by byte and reads them back through the column codecs.
"""

import io
import os
import datetime
import struct
import tempfile
import unittest
from decimal import Decimal

from column_module import BoundaryFaultError
from datetime_column_module import DATETIME_ABSENT, DateTimeColumn
from dbf_module import (
    DBFColumn,
    read_dbf_header, language_driver_encoding,
    dbf_file_open, dbf_file_close,
    dbf_file_read_record, dbf_file_write_record, dbf_record_is_deleted,
    dbf_file_get_codec, dbf_file_decode_record, dbf_file_iter_rows,
    dbf_file_set_field_null, dbf_file_get_date, dbf_memo_read_text,
    DBF_MEMO_BLOCK_SIZE, DBF_LANG_JAPAN, DBF_LANG_US, DBF_LANG_WESTERN_EUROPE,
)

FIELDS = [
    DBFColumn(name="ID", field_type="N", length=5, decimals=0),
    DBFColumn(name="NAME", field_type="C", length=12, decimals=0),
    DBFColumn(name="PRICE", field_type="N", length=8, decimals=2),
    DBFColumn(name="ACTIVE", field_type="L", length=1, decimals=0),
    DBFColumn(name="BORN", field_type="D", length=8, decimals=0),
    DBFColumn(name="STAMP", field_type="T", length=8, decimals=0),
    DBFColumn(name="NOTES", field_type="M", length=10, decimals=0),
]


def build_header(fields, record_count, version=0x83, language_driver=0x00):
    """Build the header bytes of a DBF file, terminator included."""
    record_size = 1 + sum(f.length for f in fields)
    header_size = 32 + 32 * len(fields) + 1

    buf = bytearray(32)
    buf[0] = version
    buf[1:4] = bytes([124, 5, 17])  # 2024-05-17
    buf[4:8] = struct.pack("<L", record_count)
    buf[8:10] = struct.pack("<H", header_size)
    buf[10:12] = struct.pack("<H", record_size)
    buf[29] = language_driver

    for field in fields:
        desc = bytearray(32)
        name = field.name.encode('ascii')
        desc[:len(name)] = name
        desc[11] = ord(field.field_type)
        desc[16] = field.length
        desc[17] = field.decimals
        buf += desc
    buf += b'\x0D'
    return bytes(buf)


def build_row(id_value, name, price, active, born, stamp, notes, deleted=False):
    """Build one record for FIELDS."""
    return (
        (b'*' if deleted else b' ')
        + id_value.rjust(5)
        + name.ljust(12)
        + price.rjust(8)
        + active
        + born.ljust(8)
        + stamp
        + notes.rjust(10)
    )


class TestDBFReader(unittest.TestCase):
    """Reading tables through the column codecs."""

    def setUp(self):
        """Set up a table with three rows, one deleted, plus a memo file with a dBase III and a dBase IV block."""
        self.test_dir = tempfile.mkdtemp()
        self.base = os.path.join(self.test_dir, "people")
        self.test_files = [self.base + ".DBF", self.base + ".DBT"]

        rows = [
            build_row(b'1', b'Alice', b'12.50', b'T', b'19840229',
                      struct.pack('<ii', 2460311, 3_600_000), b'1'),
            build_row(b'2', b'Bob', b'', b'?', b'', b' ' * 8, b''),
            build_row(b'3', b'Carol', b'7.00', b'F', b'20000101',
                      struct.pack('<ii', 2451545, 0), b'', deleted=True),
        ]
        with open(self.base + ".DBF", "wb") as f:
            f.write(build_header(FIELDS, len(rows)))
            for row in rows:
                f.write(row)
            f.write(b'\x1A')

        with open(self.base + ".DBT", "wb") as f:
            block0 = bytearray(DBF_MEMO_BLOCK_SIZE)
            block0[0:4] = struct.pack("<L", 2)
            f.write(block0)
            f.write(b'First memo\x1A\x1A'.ljust(DBF_MEMO_BLOCK_SIZE, b'\x00'))
            # dBase IV block: marker, length including the 8-byte block header
            text = b'Second memo, dBase IV'
            block2 = b'\xff\xff\x08\x00' + struct.pack("<L", len(text) + 8) + text + b'XXXXXXXX'
            f.write(block2.ljust(DBF_MEMO_BLOCK_SIZE, b'\x00'))

        self.dbf = dbf_file_open(self.base)

    def tearDown(self):
        """Clean up test files."""
        dbf_file_close(self.dbf)
        for filename in self.test_files:
            if os.path.exists(filename):
                os.remove(filename)
        os.rmdir(self.test_dir)

    def test_header(self):
        header = self.dbf.header
        self.assertEqual(header.record_count, 3)
        self.assertEqual(header.field_count, len(FIELDS))
        self.assertEqual(header.record_size, 53)
        self.assertEqual([f.offset for f in header.fields], [0, 5, 17, 25, 26, 34, 42])
        self.assertEqual(dbf_file_get_date(self.dbf), (124, 5, 17))
        self.assertEqual(self.dbf.encoding, 'cp437')

    def test_codecs_built(self):
        stamp = dbf_file_get_codec(self.dbf, "stamp")
        self.assertIsInstance(stamp, DateTimeColumn)
        self.assertEqual(stamp.offset, 34)
        with self.assertRaises(KeyError):
            dbf_file_get_codec(self.dbf, "MISSING")

    def test_decode_first_row(self):
        row = dbf_file_decode_record(self.dbf, dbf_file_read_record(self.dbf, 0))
        self.assertEqual(row, {
            "ID": 1,
            "NAME": "Alice",
            "PRICE": Decimal("12.50"),
            "ACTIVE": True,
            "BORN": datetime.date(1984, 2, 29),
            "STAMP": datetime.datetime(2024, 1, 1, 1, 0),
            "NOTES": 1,
        })

    def test_decode_null_row(self):
        row = dbf_file_decode_record(self.dbf, dbf_file_read_record(self.dbf, 1))
        self.assertEqual(row["NAME"], "Bob")
        self.assertIsNone(row["PRICE"])
        self.assertIsNone(row["ACTIVE"])
        self.assertIsNone(row["BORN"])
        self.assertEqual(row["STAMP"], DATETIME_ABSENT)
        self.assertIsNone(row["NOTES"])

    def test_iter_rows_skips_deleted(self):
        ids = [row["ID"] for row in dbf_file_iter_rows(self.dbf)]
        self.assertEqual(ids, [1, 2])
        ids = [row["ID"] for row in dbf_file_iter_rows(self.dbf, include_deleted=True)]
        self.assertEqual(ids, [1, 2, 3])

    def test_deleted_flag(self):
        self.assertFalse(dbf_record_is_deleted(dbf_file_read_record(self.dbf, 0)))
        self.assertTrue(dbf_record_is_deleted(dbf_file_read_record(self.dbf, 2)))

    def test_row_out_of_range(self):
        with self.assertRaises(IndexError):
            dbf_file_read_record(self.dbf, 3)
        with self.assertRaises(IndexError):
            dbf_file_read_record(self.dbf, -1)

    def test_set_null_and_write_back(self):
        record = dbf_file_read_record(self.dbf, 0)
        dbf_file_set_field_null(self.dbf, record, "STAMP")
        dbf_file_write_record(self.dbf, 0, record)

        dbf_file_close(self.dbf)
        self.dbf = dbf_file_open(self.base)
        row = dbf_file_decode_record(self.dbf, dbf_file_read_record(self.dbf, 0))
        self.assertEqual(row["STAMP"], DATETIME_ABSENT)
        self.assertEqual(row["NAME"], "Alice")
        self.assertEqual(row["BORN"], datetime.date(1984, 2, 29))

    def test_write_wrong_size(self):
        with self.assertRaises(ValueError):
            dbf_file_write_record(self.dbf, 0, b' ' * 10)

    def test_truncated_record_buffer(self):
        record = dbf_file_read_record(self.dbf, 0)[:40]
        with self.assertRaises(BoundaryFaultError):
            dbf_file_decode_record(self.dbf, record)

    def test_memo_text(self):
        block = dbf_file_decode_record(self.dbf, dbf_file_read_record(self.dbf, 0))["NOTES"]
        self.assertEqual(dbf_memo_read_text(self.dbf, block), "First memo")
        self.assertIsNone(dbf_memo_read_text(self.dbf, None))
        self.assertIsNone(dbf_memo_read_text(self.dbf, 99))

    def test_memo_text_dbase4_block(self):
        self.assertEqual(dbf_memo_read_text(self.dbf, 2), "Second memo, dBase IV")


class TestDBFOpen(unittest.TestCase):
    """Opening and header edge cases."""

    def setUp(self):
        self.test_dir = tempfile.mkdtemp()
        self.test_files = []

    def tearDown(self):
        for filename in self.test_files:
            if os.path.exists(filename):
                os.remove(filename)
        os.rmdir(self.test_dir)

    def write_table(self, name, data):
        filename = os.path.join(self.test_dir, name)
        with open(filename, "wb") as f:
            f.write(data)
        self.test_files.append(filename)
        return filename

    def test_missing_file(self):
        with self.assertRaises(IOError):
            dbf_file_open(os.path.join(self.test_dir, "nothing"))

    def test_short_header(self):
        filename = self.write_table("short.DBF", b'\x03\x00')
        with self.assertRaises(IOError):
            dbf_file_open(filename)

    def test_invalid_field_layout(self):
        fields = [DBFColumn(name="STAMP", field_type="T", length=4, decimals=0)]
        filename = self.write_table("bad.DBF", build_header(fields, 0) + b'\x1A')
        with self.assertRaises(IOError):
            dbf_file_open(filename)

    def test_unsupported_type_skipped(self):
        fields = [
            DBFColumn(name="PIC", field_type="G", length=10, decimals=0),
            DBFColumn(name="CODE", field_type="C", length=4, decimals=0),
        ]
        record = b' ' + b'0000000001' + b'\x82\x60AB'
        filename = self.write_table(
            "jp.DBF", build_header(fields, 1, version=0x03, language_driver=DBF_LANG_JAPAN)
            + record + b'\x1A')

        dbf = dbf_file_open(filename, readonly=True)
        try:
            self.assertEqual(dbf.encoding, 'cp932')
            self.assertEqual([c.name for c in dbf.codecs], ["CODE"])
            self.assertEqual(dbf_file_decode_record(dbf, dbf_file_read_record(dbf, 0)),
                             {"CODE": "ＡAB"})
        finally:
            dbf_file_close(dbf)

    def test_encoding_override(self):
        fields = [DBFColumn(name="CITY", field_type="C", length=4, decimals=0)]
        filename = self.write_table("city.dbf", build_header(fields, 1) + b' M\xfcn' + b'\x1A')
        dbf = dbf_file_open(filename, encoding='latin-1', readonly=True)
        try:
            self.assertEqual(next(dbf_file_iter_rows(dbf))["CITY"], "Mün")
        finally:
            dbf_file_close(dbf)

    def test_language_driver_encoding(self):
        self.assertEqual(language_driver_encoding(0x57), 'cp1252')
        self.assertEqual(language_driver_encoding(0x00), 'cp437')
        self.assertEqual(language_driver_encoding(0xEE, default='ascii'), 'ascii')
        self.assertEqual(language_driver_encoding(DBF_LANG_US), 'cp437')
        self.assertEqual(language_driver_encoding(DBF_LANG_WESTERN_EUROPE), 'cp850')


class TestReadHeader(unittest.TestCase):

    def test_offsets_exclude_deletion_flag(self):
        fields = [
            DBFColumn(name="A", field_type="C", length=3, decimals=0),
            DBFColumn(name="B", field_type="N", length=6, decimals=2),
        ]
        header = read_dbf_header(io.BytesIO(build_header(fields, 0)))
        self.assertEqual([(f.name, f.field_type, f.offset) for f in header.fields],
                         [("A", "C", 0), ("B", "N", 3)])
        self.assertEqual(header.fields[1].decimals, 2)


if __name__ == '__main__':
    unittest.main()
