"""GUID partition table structures and their checksum."""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass, replace

__all__ = [
    "GPT_SIGNATURE",
    "HEADER_SIZE",
    "ENTRY_SIZE",
    "crc32",
    "GptHeader",
    "parse_gpt_header",
    "GptEntry",
    "parse_gpt_entry",
]

GPT_SIGNATURE = b"EFI PART"

_HEADER = struct.Struct("<8sIIIIQQQQ16sQIII")
_ENTRY = struct.Struct("<16s16sQQQ72s")

HEADER_SIZE = _HEADER.size
ENTRY_SIZE = _ENTRY.size


def crc32(data: bytes) -> int:
    """CRC-32 (IEEE, reflected) as used by GPT."""
    return zlib.crc32(bytes(data)) & 0xFFFFFFFF


@dataclass(frozen=True)
class GptHeader:
    """A GPT header (the first 92 bytes of its logical block)."""

    signature: bytes
    revision: int
    header_size: int
    crc32: int
    reserved0: int
    my_lba: int
    alternate_lba: int
    first_usable_lba: int
    last_usable_lba: int
    disk_guid: bytes
    partition_entry_lba: int
    number_of_partition_entries: int
    size_of_partition_entry: int
    partition_entry_array_crc32: int

    def pack(self) -> bytes:
        """The on-disk little-endian form."""
        return _HEADER.pack(
            self.signature,
            self.revision,
            self.header_size,
            self.crc32,
            self.reserved0,
            self.my_lba,
            self.alternate_lba,
            self.first_usable_lba,
            self.last_usable_lba,
            self.disk_guid,
            self.partition_entry_lba,
            self.number_of_partition_entries,
            self.size_of_partition_entry,
            self.partition_entry_array_crc32,
        )

    def is_valid(self) -> bool:
        """Whether the header carries the GPT signature."""
        return self.signature == GPT_SIGNATURE

    def with_checksum(self) -> "GptHeader":
        """A copy whose header CRC is recomputed over its 92 bytes."""
        zeroed = replace(self, crc32=0)
        return replace(self, crc32=crc32(zeroed.pack()))


def parse_gpt_header(data: bytes) -> GptHeader:
    """Decode a GPT header from the start of ``data``."""
    if len(data) < HEADER_SIZE:
        raise ValueError(f"GPT header needs {HEADER_SIZE} bytes")
    return GptHeader(*_HEADER.unpack_from(bytes(data)))


@dataclass(frozen=True)
class GptEntry:
    """One entry of the partition entry array."""

    partition_type_guid: bytes
    unique_partition_guid: bytes
    starting_lba: int
    ending_lba: int
    attributes: int
    name: str

    def is_used(self) -> bool:
        """An entry is in use when its unique GUID is not all zero."""
        return any(self.unique_partition_guid)


def parse_gpt_entry(data: bytes) -> GptEntry:
    """Decode a partition entry from the start of ``data``."""
    if len(data) < ENTRY_SIZE:
        raise ValueError(f"GPT entry needs {ENTRY_SIZE} bytes")
    type_guid, unique_guid, start, end, attrs, raw_name = _ENTRY.unpack_from(bytes(data))
    name = raw_name.decode("utf-16-le", errors="replace").split("\x00", 1)[0]
    return GptEntry(type_guid, unique_guid, start, end, attrs, name)