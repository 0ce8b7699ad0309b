"""Boot protocol definitions: request identifiers, enumerations and records."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import Enum, IntEnum

__all__ = [
    "COMMON_MAGIC",
    "FRAMEBUFFER_RGB",
    "SMP_X2APIC",
    "TERMINAL_CTX_SIZE",
    "TERMINAL_CTX_SAVE",
    "TERMINAL_CTX_RESTORE",
    "TERMINAL_FULL_REFRESH",
    "MemmapType",
    "MediaType",
    "TerminalCallback",
    "Feature",
    "find_requests",
    "Uuid",
    "parse_uuid",
    "MemmapEntry",
]

COMMON_MAGIC = (0xC7B1DD30DF4C8B88, 0x0A82E883A194F07B)
_COMMON_MAGIC_BYTES = struct.pack("<2Q", *COMMON_MAGIC)

FRAMEBUFFER_RGB = 1
SMP_X2APIC = 1 << 0

_U64 = 0xFFFFFFFFFFFFFFFF
TERMINAL_CTX_SIZE = _U64
TERMINAL_CTX_SAVE = _U64 - 1
TERMINAL_CTX_RESTORE = _U64 - 2
TERMINAL_FULL_REFRESH = _U64 - 3


class MemmapType(IntEnum):
    """Kind of a memory map region."""

    USABLE = 0
    RESERVED = 1
    ACPI_RECLAIMABLE = 2
    ACPI_NVS = 3
    BAD_MEMORY = 4
    BOOTLOADER_RECLAIMABLE = 5
    KERNEL_AND_MODULES = 6
    FRAMEBUFFER = 7

    def label(self) -> str:
        """Human-readable name of the region kind."""
        return _MEMMAP_LABELS[self]


_MEMMAP_LABELS = {
    MemmapType.USABLE: "Usable",
    MemmapType.RESERVED: "Reserved",
    MemmapType.ACPI_RECLAIMABLE: "ACPI reclaimable",
    MemmapType.ACPI_NVS: "ACPI NVS",
    MemmapType.BAD_MEMORY: "Bad memory",
    MemmapType.BOOTLOADER_RECLAIMABLE: "Bootloader reclaimable",
    MemmapType.KERNEL_AND_MODULES: "Kernel and modules",
    MemmapType.FRAMEBUFFER: "Framebuffer",
}


class MediaType(IntEnum):
    """Medium a file was loaded from."""

    GENERIC = 0
    OPTICAL = 1
    TFTP = 2


class TerminalCallback(IntEnum):
    """Kinds of terminal callback events."""

    DEC = 10
    BELL = 20
    PRIVATE_ID = 30
    STATUS_REPORT = 40
    POS_REPORT = 50
    KBD_LEDS = 60
    MODE = 70
    LINUX = 80


class Feature(Enum):
    """Protocol features; each value is the feature-specific half of its id."""

    BOOTLOADER_INFO = (0xF55038D8E2A1202F, 0x279426FCF5F59740)
    STACK_SIZE = (0x224EF0460A8E8926, 0xE1CB0FC25F46EA3D)
    HHDM = (0x48DCF1CB8AD2B852, 0x63984E959A98244B)
    FRAMEBUFFER = (0x9D5827DCD881DD75, 0xA3148604F6FAB11B)
    TERMINAL = (0xC8AC59310C2B0844, 0xA68D0C7265D38878)
    FIVE_LEVEL_PAGING = (0x94469551DA9B3192, 0xEBE5E86DB7382888)
    SMP = (0x95A67B819A1B857E, 0xA0B61B723B6A73E0)
    MEMMAP = (0x67CF3D9D378A806F, 0xE304ACDFC50C3C62)
    ENTRY_POINT = (0x13D86C035A1CD3E1, 0x2B0CAA89D8F3026A)
    KERNEL_FILE = (0xAD97E90E83F1ED67, 0x31EB5D1C5FF23B69)
    MODULE = (0x3E7E279702BE32AF, 0xCA1C4F3BD1280CEE)
    RSDP = (0xC5E77B6B397E7B43, 0x27637845ACCDCF3C)
    SMBIOS = (0x9E9046F11E095391, 0xAA4A520FEFBDE5EE)
    EFI_SYSTEM_TABLE = (0x5CEBA5163EAAF6D6, 0x0A6981610CF65FCC)
    BOOT_TIME = (0x502746E184C088AA, 0xFBC5EC83E6327893)
    KERNEL_ADDRESS = (0x71BA76863CC55F63, 0xB2644A48C516A487)
    DTB = (0xB40DDB48FB54BAC7, 0x545081493F81FFB7)

    def request_id(self) -> tuple[int, int, int, int]:
        """The full four-word identifier of this feature's request."""
        return (*COMMON_MAGIC, *self.value)

    def request_bytes(self) -> bytes:
        """The identifier as it appears in memory (little-endian words)."""
        return struct.pack("<4Q", *self.request_id())


_FEATURES_BY_ID = {feature.value: feature for feature in Feature}


def find_requests(data: bytes) -> list[tuple[int, Feature]]:
    """Locate 8-byte aligned feature requests in an image, by offset."""
    blob = bytes(data)
    found: list[tuple[int, Feature]] = []
    pos = blob.find(_COMMON_MAGIC_BYTES)
    while pos != -1:
        if pos % 8 == 0 and pos + 32 <= len(blob):
            ids = struct.unpack_from("<2Q", blob, pos + 16)
            feature = _FEATURES_BY_ID.get(ids)
            if feature is not None:
                found.append((pos, feature))
        pos = blob.find(_COMMON_MAGIC_BYTES, pos + 1)
    return found


_UUID = struct.Struct("<IHH8s")


@dataclass(frozen=True)
class Uuid:
    """A mixed-endian UUID as laid out by the protocol."""

    a: int
    b: int
    c: int
    d: bytes

    def pack(self) -> bytes:
        """The 16-byte in-memory form."""
        return _UUID.pack(self.a, self.b, self.c, bytes(self.d))

    def __str__(self) -> str:
        tail = int.from_bytes(self.d, "little")
        return f"{self.a:#x}-{self.b:#x}-{self.c:#x}-{tail:#x}"


def parse_uuid(data: bytes) -> Uuid:
    """Decode a UUID from the first 16 bytes of ``data``."""
    if len(data) < _UUID.size:
        raise ValueError("UUID needs 16 bytes")
    a, b, c, d = _UUID.unpack_from(bytes(data))
    return Uuid(a, b, c, d)


@dataclass(frozen=True)
class MemmapEntry:
    """One region of the physical memory map."""

    base: int
    length: int
    type: MemmapType

    def end(self) -> int:
        """First address past the region."""
        return self.base + self.length

    def __str__(self) -> str:
        return f"{self.base:#x}->{self.end():#x} {self.type.label()}"