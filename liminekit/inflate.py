"""Small DEFLATE and gzip decompressor.

Decodes raw DEFLATE streams (stored, fixed-Huffman and dynamic-Huffman
blocks) and single-member gzip containers.
"""

from __future__ import annotations

from dataclasses import dataclass, field

__all__ = ["InflateError", "inflate", "gzip_decompress"]


class InflateError(ValueError):
    """Raised when compressed input is malformed or truncated."""


_FTEXT = 1
_FHCRC = 2
_FEXTRA = 4
_FNAME = 8
_FCOMMENT = 16

_LENGTH_BITS = (
    0, 0, 0, 0, 0, 0, 0, 0, 1, 1,
    1, 1, 2, 2, 2, 2, 3, 3, 3, 3,
    4, 4, 4, 4, 5, 5, 5, 5, 0, 127,
)
_LENGTH_BASE = (
    3, 4, 5, 6, 7, 8, 9, 10, 11, 13,
    15, 17, 19, 23, 27, 31, 35, 43, 51, 59,
    67, 83, 99, 115, 131, 163, 195, 227, 258, 0,
)
_DIST_BITS = (
    0, 0, 0, 0, 1, 1, 2, 2, 3, 3,
    4, 4, 5, 5, 6, 6, 7, 7, 8, 8,
    9, 9, 10, 10, 11, 11, 12, 12, 13, 13,
)
_DIST_BASE = (
    1, 2, 3, 4, 5, 7, 9, 13, 17, 25,
    33, 49, 65, 97, 129, 193, 257, 385, 513, 769,
    1025, 1537, 2049, 3073, 4097, 6145, 8193, 12289, 16385, 24577,
)
# Order in which code-length code lengths are stored.
_CLC_ORDER = (16, 17, 18, 0, 8, 7, 9, 6, 10, 5, 11, 4, 12, 3, 13, 2, 14, 1, 15)


@dataclass
class _Tree:
    """Canonical Huffman tree: code counts per length and symbols in code order."""

    counts: list[int] = field(default_factory=lambda: [0] * 16)
    symbols: list[int] = field(default_factory=list)
    max_sym: int = -1

    @classmethod
    def from_lengths(cls, lengths) -> "_Tree":
        tree = cls()
        for sym, length in enumerate(lengths):
            if length:
                tree.max_sym = sym
                tree.counts[length] += 1

        offsets = []
        available = 1
        num_codes = 0
        for used in tree.counts:
            if used > available:
                raise InflateError("over-subscribed Huffman code lengths")
            available = 2 * (available - used)
            offsets.append(num_codes)
            num_codes += used

        if (num_codes > 1 and available > 0) or (num_codes == 1 and tree.counts[1] != 1):
            raise InflateError("incomplete Huffman code lengths")

        symbols = [0] * max(num_codes, 2)
        for sym, length in enumerate(lengths):
            if length:
                symbols[offsets[length]] = sym
                offsets[length] += 1

        # A lone code gets a sibling that decodes to an out-of-range symbol.
        if num_codes == 1:
            tree.counts[1] = 2
            symbols[1] = tree.max_sym + 1

        tree.symbols = symbols
        return tree


def _fixed_trees() -> tuple[_Tree, _Tree]:
    lt = _Tree()
    lt.counts[7] = 24
    lt.counts[8] = 152
    lt.counts[9] = 112
    lt.symbols = (
        list(range(256, 280))
        + list(range(0, 144))
        + list(range(280, 288))
        + list(range(144, 256))
    )
    lt.max_sym = 285

    dt = _Tree()
    dt.counts[5] = 32
    dt.symbols = list(range(32))
    dt.max_sym = 29
    return lt, dt


_FIXED_LTREE, _FIXED_DTREE = _fixed_trees()


class _Decoder:
    """LSB-first bit reader over the source plus the growing output."""

    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)
        self.pos = 0
        self.tag = 0
        self.bitcount = 0
        self.overflow = False
        self.out = bytearray()

    def _refill(self, num: int) -> None:
        while self.bitcount < num:
            if self.pos < len(self.data):
                self.tag |= self.data[self.pos] << self.bitcount
                self.pos += 1
            else:
                self.overflow = True
            self.bitcount += 8

    def getbits(self, num: int) -> int:
        self._refill(num)
        bits = self.tag & ((1 << num) - 1)
        self.tag >>= num
        self.bitcount -= num
        return bits

    def getbits_base(self, num: int, base: int) -> int:
        return base + (self.getbits(num) if num else 0)

    def decode_symbol(self, tree: _Tree) -> int:
        base = 0
        offs = 0
        for length in range(1, 16):
            offs = 2 * offs + self.getbits(1)
            if offs < tree.counts[length]:
                return tree.symbols[base + offs]
            base += tree.counts[length]
            offs -= tree.counts[length]
        raise InflateError("invalid Huffman code")

    def decode_trees(self) -> tuple[_Tree, _Tree]:
        hlit = self.getbits_base(5, 257)
        hdist = self.getbits_base(5, 1)
        hclen = self.getbits_base(4, 4)

        if hlit > 286 or hdist > 30:
            raise InflateError("too many literal/length or distance codes")

        cl_lengths = [0] * 19
        for index in _CLC_ORDER[:hclen]:
            cl_lengths[index] = self.getbits(3)

        cl_tree = _Tree.from_lengths(cl_lengths)
        if cl_tree.max_sym == -1:
            raise InflateError("empty code length tree")

        total = hlit + hdist
        lengths: list[int] = []
        while len(lengths) < total:
            sym = self.decode_symbol(cl_tree)
            if sym > cl_tree.max_sym:
                raise InflateError("invalid code length symbol")
            if sym == 16:
                if not lengths:
                    raise InflateError("repeat with no previous code length")
                sym = lengths[-1]
                repeat = self.getbits_base(2, 3)
            elif sym == 17:
                sym = 0
                repeat = self.getbits_base(3, 3)
            elif sym == 18:
                sym = 0
                repeat = self.getbits_base(7, 11)
            else:
                repeat = 1
            if repeat > total - len(lengths):
                raise InflateError("code length repeat overruns table")
            lengths.extend([sym] * repeat)

        if len(lengths) <= 256 or lengths[256] == 0:
            raise InflateError("missing end-of-block code")

        return _Tree.from_lengths(lengths[:hlit]), _Tree.from_lengths(lengths[hlit:])

    def inflate_block_data(self, lt: _Tree, dt: _Tree) -> None:
        out = self.out
        while True:
            sym = self.decode_symbol(lt)
            if self.overflow:
                raise InflateError("unexpected end of compressed data")

            if sym < 256:
                out.append(sym)
                continue
            if sym == 256:
                return

            if sym > lt.max_sym or sym - 257 > 28 or dt.max_sym == -1:
                raise InflateError("invalid length symbol")
            sym -= 257
            length = self.getbits_base(_LENGTH_BITS[sym], _LENGTH_BASE[sym])

            dist = self.decode_symbol(dt)
            if dist > dt.max_sym or dist > 29:
                raise InflateError("invalid distance symbol")
            offs = self.getbits_base(_DIST_BITS[dist], _DIST_BASE[dist])

            if offs > len(out):
                raise InflateError("distance reaches before start of output")

            start = len(out) - offs
            if offs >= length:
                out += out[start:start + length]
            else:
                for i in range(length):
                    out.append(out[start + i])

    def inflate_stored_block(self) -> None:
        if len(self.data) - self.pos < 4:
            raise InflateError("truncated stored block header")
        length = int.from_bytes(self.data[self.pos:self.pos + 2], "little")
        inverse = int.from_bytes(self.data[self.pos + 2:self.pos + 4], "little")
        if length != (~inverse & 0xFFFF):
            raise InflateError("stored block length check failed")
        self.pos += 4
        chunk = self.data[self.pos:self.pos + length]
        if len(chunk) != length:
            raise InflateError("truncated stored block")
        self.out += chunk
        self.pos += length
        # Next block starts on a byte boundary.
        self.tag = 0
        self.bitcount = 0

    def run(self) -> bytes:
        while True:
            bfinal = self.getbits(1)
            btype = self.getbits(2)
            if btype == 0:
                self.inflate_stored_block()
            elif btype == 1:
                self.inflate_block_data(_FIXED_LTREE, _FIXED_DTREE)
            elif btype == 2:
                lt, dt = self.decode_trees()
                self.inflate_block_data(lt, dt)
            else:
                raise InflateError("invalid block type")
            if bfinal:
                break
        if self.overflow:
            raise InflateError("unexpected end of compressed data")
        return bytes(self.out)


def inflate(data: bytes) -> bytes:
    """Decompress a raw DEFLATE stream and return the decoded bytes."""
    return _Decoder(data).run()


def gzip_decompress(data: bytes) -> bytes:
    """Decompress a gzip member; the trailer's CRC and size are not checked."""
    src = bytes(data)
    size = len(src)

    if size < 18:
        raise InflateError("gzip data too short")
    if src[0] != 0x1F or src[1] != 0x8B:
        raise InflateError("bad gzip magic")
    if src[2] != 8:
        raise InflateError("gzip method is not deflate")

    flags = src[3]
    if flags & 0xE0:
        raise InflateError("reserved gzip flag bits set")

    pos = 10

    if flags & _FEXTRA:
        xlen = src[pos]
        if xlen > size - 12:
            raise InflateError("gzip extra field too long")
        pos += xlen + 2

    for flag in (_FNAME, _FCOMMENT):
        if flags & flag:
            while True:
                if pos >= size:
                    raise InflateError("unterminated gzip header string")
                byte = src[pos]
                pos += 1
                if byte == 0:
                    break

    if flags & _FHCRC:
        pos += 2

    if size - pos < 8:
        raise InflateError("gzip data too short for trailer")

    try:
        return inflate(src[pos:size - 8])
    except InflateError as exc:
        raise InflateError("invalid gzip payload") from exc