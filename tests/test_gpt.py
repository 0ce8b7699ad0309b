import struct

import pytest
from hypothesis import given, strategies as st

from liminekit.gpt import (
    ENTRY_SIZE,
    GPT_SIGNATURE,
    HEADER_SIZE,
    GptHeader,
    crc32,
    parse_gpt_entry,
    parse_gpt_header,
)


def _header(**overrides):
    fields = dict(
        signature=GPT_SIGNATURE,
        revision=0x00010000,
        header_size=HEADER_SIZE,
        crc32=0,
        reserved0=0,
        my_lba=1,
        alternate_lba=2047,
        first_usable_lba=34,
        last_usable_lba=2014,
        disk_guid=bytes(range(16)),
        partition_entry_lba=2,
        number_of_partition_entries=128,
        size_of_partition_entry=ENTRY_SIZE,
        partition_entry_array_crc32=0,
    )
    fields.update(overrides)
    return GptHeader(**fields)


def _entry_bytes(unique_guid, name="", start=0, end=0):
    raw_name = name.encode("utf-16-le").ljust(72, b"\x00")
    return struct.pack("<16s16sQQQ72s", b"\x11" * 16, unique_guid, start, end, 0, raw_name)


def test_crc32_check_value():
    assert crc32(b"123456789") == 0xCBF43926


def test_crc32_empty():
    assert crc32(b"") == 0


def test_sizes_match_format():
    assert len(_header().pack()) == 92
    assert HEADER_SIZE == 92
    entry = parse_gpt_entry(_entry_bytes(b"\x02" * 16, "x", 1, 2))
    assert entry.starting_lba == 1
    assert ENTRY_SIZE == 128


def test_header_round_trip():
    header = _header()
    packed = header.pack()
    assert packed[:8] == b"EFI PART"
    assert parse_gpt_header(packed + b"\x00" * 4) == header


@given(
    st.integers(0, 2**64 - 1),
    st.integers(0, 2**64 - 1),
    st.integers(0, 2**32 - 1),
)
def test_header_round_trip_property(alt, entry_lba, count):
    header = _header(alternate_lba=alt, partition_entry_lba=entry_lba,
                     number_of_partition_entries=count)
    assert parse_gpt_header(header.pack()) == header


def test_is_valid():
    assert _header().is_valid()
    assert not _header(signature=b"NOT PART").is_valid()


def test_with_checksum_is_self_consistent():
    header = _header(crc32=0xDEADBEEF).with_checksum()
    zeroed = parse_gpt_header(header.pack()[:16] + b"\x00" * 4 + header.pack()[20:])
    assert header.crc32 == crc32(zeroed.pack())
    assert header.with_checksum() == header


def test_with_checksum_changes_with_content():
    a = _header().with_checksum()
    b = _header(number_of_partition_entries=64).with_checksum()
    assert a.crc32 != b.crc32
    assert b.number_of_partition_entries == 64


def test_parse_header_short():
    with pytest.raises(ValueError):
        parse_gpt_header(b"\x00" * 91)


def test_entry_used_and_name():
    entry = parse_gpt_entry(_entry_bytes(b"\x01" + b"\x00" * 15, "boot", 2048, 4095))
    assert entry.is_used()
    assert entry.name == "boot"
    assert entry.starting_lba == 2048
    assert entry.ending_lba == 4095
    assert entry.partition_type_guid == b"\x11" * 16


def test_entry_unused():
    assert not parse_gpt_entry(_entry_bytes(b"\x00" * 16)).is_used()


def test_parse_entry_short():
    with pytest.raises(ValueError):
        parse_gpt_entry(b"\x00" * 127)