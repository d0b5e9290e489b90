"""
zsoformat.py — ZSO container header, alignment and index table.

A ZSO file stores a raw 2048-byte-sector disc image (ISO) as a sequence of
independently LZ4-compressed blocks, with an index that lets a reader seek
straight to any block.

File layout:
    +0     Header (24 bytes)
    +24    Index table, (total_blocks + 1) × u32 LE
    ...    Block payloads in block order, each starting on a
           2**align byte boundary (gaps filled with a padding byte)

Header (24 bytes, little-endian):
    +0   magic[4]        u32  0x4F53495A ("ZISO")
    +4   header_size[4]  u32  0x18
    +8   total_bytes[8]  u64  size of the original image
    +16  block_size[4]   u32  0x800
    +20  version[1]      i8   1
    +21  align[1]        i8   index shift
    +22  reserved[2]     zeroed

Index entry (u32):
    bits 0-30   block offset >> align
    bit  31     plain flag: block stored uncompressed
    The final entry holds the container end position >> align, no flag.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import BinaryIO

# ── Constants ──────────────────────────────────────────────────────────

ZISO_MAGIC = 0x4F53495A
HEADER_SIZE = 0x18
BLOCK_SIZE = 0x800
ZSO_VERSION = 1

PLAIN_FLAG = 0x80000000
OFFSET_MASK = 0x7FFFFFFF
INDEX_ENTRY_SIZE = 4

DEFAULT_THRESHOLD = 100
DEFAULT_PADDING = b"X"
MAX_ALIGN = 5
# Largest shift a reader can seek with: 31-bit offsets << 31 stay below 2**62.
MAX_HEADER_ALIGN = 31

_HEADER_FMT = "<IIQIbbxx"


# ── Errors ─────────────────────────────────────────────────────────────

class ZsoError(Exception):
    """Base for every failure raised by the ZSO codec."""
    pass


class ZsoIOError(ZsoError):
    """Open/read/write/seek failure on one of the conversion's files."""

    def __init__(self, path, cause: OSError):
        self.path = str(path)
        self.cause = cause
        super().__init__(f"{self.path}: {cause.strerror or cause}")


class FormatError(ZsoError):
    """Container header failed validation."""
    pass


class BadMagicError(FormatError):
    def __init__(self, magic: int):
        self.magic = magic
        super().__init__(f"Bad magic {magic:#010x} (expected {ZISO_MAGIC:#010x})")


class BadHeaderSizeError(FormatError):
    def __init__(self, header_size: int):
        self.header_size = header_size
        super().__init__(f"Bad header size {header_size} (expected {HEADER_SIZE})")


class UnsupportedVersionError(FormatError):
    def __init__(self, version: int):
        self.version = version
        super().__init__(f"Unsupported version {version} (max {ZSO_VERSION})")


class ZeroSizeError(FormatError):
    def __init__(self, total_bytes: int, block_size: int):
        self.total_bytes = total_bytes
        self.block_size = block_size
        super().__init__(f"Zero size in header (total_bytes={total_bytes}, "
                         f"block_size={block_size})")


class CorruptionError(ZsoError):
    """A block cannot be reconstructed to exactly block_size bytes."""

    def __init__(self, block: int, offset: int, msg: str):
        self.block = block
        self.offset = offset
        super().__init__(f"Block {block} @ {offset:#x}: {msg}")


class AlignmentOverflowError(ZsoError):
    """The alignment shift is too small for the container size."""

    def __init__(self, block: int, position: int, align: int):
        self.block = block
        self.position = position
        self.align = align
        super().__init__(
            f"Block {block} @ {position:#x} does not fit in 31 bits with "
            f"align {align}; increase align to at least {align + 1}")


# ── Header ─────────────────────────────────────────────────────────────

@dataclass
class ZsoHeader:
    """The fixed 24-byte container header."""
    total_bytes: int
    block_size: int = BLOCK_SIZE
    version: int = ZSO_VERSION
    align: int = 0
    magic: int = ZISO_MAGIC
    header_size: int = HEADER_SIZE

    @property
    def total_blocks(self) -> int:
        """Whole blocks in the image.  A trailing partial block is dropped."""
        return self.total_bytes // self.block_size

    @property
    def index_size(self) -> int:
        return (self.total_blocks + 1) * INDEX_ENTRY_SIZE

    @property
    def data_start(self) -> int:
        """First byte after the header and index table."""
        return self.header_size + self.index_size

    def encode(self) -> bytes:
        return struct.pack(_HEADER_FMT, self.magic, self.header_size,
                           self.total_bytes, self.block_size,
                           self.version, self.align)

    @classmethod
    def decode(cls, data: bytes) -> "ZsoHeader":
        """Parse and validate a header.  Raises a FormatError subclass."""
        if len(data) < HEADER_SIZE:
            raise FormatError(f"Truncated header ({len(data)} bytes)")
        (magic, header_size, total_bytes, block_size,
         version, align) = struct.unpack_from(_HEADER_FMT, data)
        if magic != ZISO_MAGIC:
            raise BadMagicError(magic)
        if header_size != HEADER_SIZE:
            raise BadHeaderSizeError(header_size)
        if not 0 <= version <= ZSO_VERSION:
            raise UnsupportedVersionError(version)
        if total_bytes == 0 or block_size == 0:
            raise ZeroSizeError(total_bytes, block_size)
        if not 0 <= align <= MAX_HEADER_ALIGN:
            raise FormatError(f"Align {align} out of range (0-{MAX_HEADER_ALIGN})")
        return cls(total_bytes, block_size, version, align, magic, header_size)


def encode_header(total_bytes: int, block_size: int = BLOCK_SIZE,
                  version: int = ZSO_VERSION, align: int = 0) -> bytes:
    return ZsoHeader(total_bytes, block_size, version, align).encode()


def decode_header(data: bytes) -> ZsoHeader:
    return ZsoHeader.decode(data)


# ── Alignment ──────────────────────────────────────────────────────────

def choose_align(total_bytes: int, block_size: int = BLOCK_SIZE) -> int:
    """Smallest shift that keeps every index offset below 2**31.

    Starts at one step per started 2 GiB of input, then grows until the
    worst case fits: every block stored plain, each after the largest
    possible alignment gap.  The top index bit is the plain flag.
    """
    total_blocks = total_bytes // block_size
    data_start = HEADER_SIZE + (total_blocks + 1) * INDEX_ENTRY_SIZE
    align = min(total_bytes // 2 ** 31, MAX_HEADER_ALIGN)
    while align <= MAX_HEADER_ALIGN:
        worst_end = data_start + total_blocks * (block_size + (1 << align) - 1)
        if worst_end >> align <= OFFSET_MASK:
            break
        align += 1
    if align > MAX_HEADER_ALIGN:
        raise ValueError(f"Image of {total_bytes} bytes is too large to index")
    return align


def pad_to_alignment(position: int, align: int) -> int:
    """Bytes needed to move *position* onto the next 2**align boundary."""
    unit = 1 << align
    return (unit - position % unit) % unit


def index_entry(position: int, align: int, plain: bool = False,
                block: int = -1) -> int:
    """Build an index entry for a block starting at *position*.

    Low bits below the alignment are dropped, which only happens for the
    final end-of-container entry.  Raises AlignmentOverflowError when the
    shifted offset needs bit 31.
    """
    shifted = position >> align
    if shifted & ~OFFSET_MASK:
        raise AlignmentOverflowError(block, position, align)
    return shifted | PLAIN_FLAG if plain else shifted


# ── Index table ────────────────────────────────────────────────────────

class IndexTable:
    """Per-block offset/flag array, held fully in memory.

    Entry *i* < total_blocks locates block *i*; the last entry holds the
    end of the container.
    """

    def __init__(self, entries: list[int], align: int = 0):
        self.entries = entries
        self.align = align

    @classmethod
    def placeholder(cls, total_blocks: int, align: int = 0) -> "IndexTable":
        """All-zero table reserving space for *total_blocks* blocks."""
        return cls([0] * (total_blocks + 1), align)

    @classmethod
    def load(cls, fp: BinaryIO, total_blocks: int,
             align: int = 0) -> "IndexTable":
        """Read (total_blocks + 1) entries from the current position."""
        count = total_blocks + 1
        data = fp.read(count * INDEX_ENTRY_SIZE)
        if len(data) != count * INDEX_ENTRY_SIZE:
            raise FormatError(f"Truncated index table ({len(data)} of "
                              f"{count * INDEX_ENTRY_SIZE} bytes)")
        return cls(list(struct.unpack(f"<{count}I", data)), align)

    def __len__(self) -> int:
        return len(self.entries)

    @property
    def total_blocks(self) -> int:
        return len(self.entries) - 1

    @property
    def byte_size(self) -> int:
        return len(self.entries) * INDEX_ENTRY_SIZE

    def pack(self) -> bytes:
        return struct.pack(f"<{len(self.entries)}I", *self.entries)

    def offset(self, i: int) -> int:
        """True byte offset of entry *i*."""
        return (self.entries[i] & OFFSET_MASK) << self.align

    def is_plain(self, i: int) -> bool:
        return bool(self.entries[i] & PLAIN_FLAG)

    def set_entry(self, i: int, position: int, plain: bool = False):
        self.entries[i] = index_entry(position, self.align, plain, block=i)

    def finish(self, end_position: int):
        """Record the container end in the final slot."""
        self.set_entry(self.total_blocks, end_position)

    def plain_count(self) -> int:
        return sum(1 for i in range(self.total_blocks) if self.is_plain(i))

    def check_monotonic(self, data_start: int):
        """Raise CorruptionError if offsets decrease or point into the header."""
        prev = data_start
        for i in range(len(self.entries)):
            off = self.offset(i)
            if off < prev:
                raise CorruptionError(
                    i, off, f"index offset goes backwards (previous {prev:#x})")
            prev = off
