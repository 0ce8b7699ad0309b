"""Block-cached access to a disk image that can undo its own writes."""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Iterator

__all__ = [
    "MAX_UNDEPLOY_RECORDS",
    "DeviceError",
    "UndeployRecord",
    "BlockDevice",
    "save_undeploy_data",
    "load_undeploy_data",
]

MAX_UNDEPLOY_RECORDS = 256

_BLOCK_SIZE_GUESSES = (512, 2048, 4096)
_U64 = struct.Struct("<Q")

_log = logging.getLogger(__name__)


class DeviceError(Exception):
    """Raised when the device or an undeploy data file cannot be used."""


@dataclass(frozen=True)
class UndeployRecord:
    """Bytes that stood at ``loc`` before a write replaced them."""

    loc: int
    data: bytes


class BlockDevice:
    """A seekable binary stream accessed one physical block at a time.

    Every write made outside of :meth:`undeploy` first saves the bytes it
    replaces; ``undeploy_records`` holds them most recent first, which is
    the order in which :meth:`undeploy` puts them back.
    """

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self.undeploy_records: list[UndeployRecord] = []
        self._undeploying = False
        for guess in _BLOCK_SIZE_GUESSES:
            try:
                stream.seek(0)
                block = stream.read(guess)
            except OSError as exc:
                raise DeviceError(str(exc)) from exc
            if block is not None and len(block) == guess:
                self.block_size = guess
                self._cache = bytearray(block)
                self._cached_block: int | None = 0
                self._dirty = False
                return
        raise DeviceError("Couldn't determine block size of device.")

    def _spans(self, loc: int, count: int) -> Iterator[tuple[int, int, int, int]]:
        if loc < 0:
            raise DeviceError(f"negative device offset {loc}")
        progress = 0
        while progress < count:
            block, offset = divmod(loc + progress, self.block_size)
            chunk = min(count - progress, self.block_size - offset)
            yield block, offset, progress, chunk
            progress += chunk

    def _load_block(self, block: int) -> None:
        if self._cached_block == block:
            return
        if self._dirty:
            self.flush()
        try:
            self._stream.seek(block * self.block_size)
            data = self._stream.read(self.block_size)
        except OSError as exc:
            raise DeviceError(str(exc)) from exc
        if data is None or len(data) != self.block_size:
            raise DeviceError(f"short read of block {block}")
        self._cache[:] = data
        self._cached_block = block

    def read(self, loc: int, count: int) -> bytes:
        """Return ``count`` bytes starting at byte offset ``loc``."""
        out = bytearray()
        for block, offset, _, chunk in self._spans(loc, count):
            self._load_block(block)
            out += self._cache[offset:offset + chunk]
        return bytes(out)

    def write(self, loc: int, data: bytes) -> None:
        """Write ``data`` at byte offset ``loc``, remembering what it replaces."""
        data = bytes(data)
        original = b""
        if not self._undeploying:
            if len(self.undeploy_records) >= MAX_UNDEPLOY_RECORDS:
                raise DeviceError("Too many undeploy data entries")
            original = self.read(loc, len(data))

        for block, offset, start, chunk in self._spans(loc, len(data)):
            self._load_block(block)
            self._cache[offset:offset + chunk] = data[start:start + chunk]
            self._dirty = True

        if not self._undeploying:
            self.undeploy_records.insert(0, UndeployRecord(loc, original))

    def flush(self) -> None:
        """Write the cached block back if it was modified."""
        if not self._dirty:
            return
        try:
            self._stream.seek(self._cached_block * self.block_size)
            self._stream.write(bytes(self._cache))
            self._stream.flush()
        except OSError as exc:
            raise DeviceError(str(exc)) from exc
        self._dirty = False

    def _drop_cache(self) -> None:
        self._dirty = False
        self._cached_block = None

    def undeploy(self) -> bool:
        """Put back every saved record; return whether all of them were written."""
        self._undeploying = True
        self._drop_cache()
        complete = True
        try:
            for index, record in enumerate(self.undeploy_records):
                for attempt in range(2):
                    try:
                        self.write(record.loc, record.data)
                        break
                    except DeviceError:
                        if attempt:
                            _log.error(
                                "ERROR: Undeploy data index %d failed to write. "
                                "Undeploy may be incomplete!", index)
                            complete = False
                            break
                        _log.warning(
                            "Warning: Undeploy data index %d failed to write, retrying...",
                            index)
                        try:
                            self.flush()
                        except DeviceError:
                            _log.error("ERROR: Device cache flush failure. "
                                       "Undeploy may be incomplete!")
                        self._drop_cache()
            try:
                self.flush()
            except DeviceError:
                _log.error("ERROR: Device cache flush failure. Undeploy may be incomplete!")
                complete = False
        finally:
            self._undeploying = False
        return complete


def save_undeploy_data(records: Iterable[UndeployRecord], path) -> None:
    """Store undeploy records to ``path`` in replay order."""
    records = list(records)
    try:
        with open(path, "wb") as fh:
            fh.write(_U64.pack(len(records)))
            for record in records:
                fh.write(_U64.pack(record.loc))
                fh.write(_U64.pack(len(record.data)))
                fh.write(record.data)
    except OSError as exc:
        raise DeviceError(str(exc)) from exc


def load_undeploy_data(path) -> list[UndeployRecord]:
    """Read undeploy records written by :func:`save_undeploy_data`."""
    try:
        with open(path, "rb") as fh:
            blob = fh.read()
    except OSError as exc:
        raise DeviceError(str(exc)) from exc

    pos = 0

    def take(size: int) -> bytes:
        nonlocal pos
        chunk = blob[pos:pos + size]
        if len(chunk) != size:
            raise DeviceError("undeploy data file is truncated")
        pos += size
        return chunk

    (count,) = _U64.unpack(take(_U64.size))
    if count > MAX_UNDEPLOY_RECORDS:
        raise DeviceError("Too many undeploy data entries")
    records = []
    for _ in range(count):
        (loc,) = _U64.unpack(take(_U64.size))
        (size,) = _U64.unpack(take(_U64.size))
        records.append(UndeployRecord(loc, take(size)))
    return records