"""
zsoblock.py — per-block ZSO compression and decompression.

A block is stored either as a raw LZ4 block (no frame, no size prefix)
or, when compression does not pay off, as the original bytes ("plain").

Reading a compressed block back, the byte range comes from two adjacent
index entries, so it can run past the real payload into the alignment
padding of the next block.  The decoder trims trailing bytes one at a
time until LZ4 accepts the buffer; at most 2**align trims are tried.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import BinaryIO

import lz4.block

from zsoformat import (
    BLOCK_SIZE, DEFAULT_THRESHOLD, DEFAULT_PADDING,
    CorruptionError, IndexTable, index_entry, pad_to_alignment,
)

log = logging.getLogger(__name__)

MIN_LEVEL = 1
MAX_LEVEL = 12


# ── LZ4 helpers ────────────────────────────────────────────────────────

def lz4_compress(data: bytes, level: int = MIN_LEVEL) -> bytes:
    """Raw LZ4 block.  Levels above 1 use high-compression mode."""
    if level > MIN_LEVEL:
        return lz4.block.compress(data, mode="high_compression",
                                  compression=level, store_size=False)
    return lz4.block.compress(data, mode="default", store_size=False)


def lz4_decompress(compressed: bytes, block_size: int, max_trims: int,
                   block: int = -1, offset: int = 0) -> bytes:
    """Decompress *compressed* into exactly *block_size* bytes.

    Trailing bytes are dropped one by one while LZ4 rejects the buffer,
    up to *max_trims* times.  python-lz4 itself rejects output of the
    wrong size, so a payload for a different block length also ends up
    here; the final CorruptionError carries the expected size and the
    last LZ4 error, which names the size actually produced.
    """
    last_err = None
    for trim in range(max_trims + 1):
        candidate = compressed[:len(compressed) - trim]
        if not candidate:
            break
        try:
            data = lz4.block.decompress(candidate, uncompressed_size=block_size)
        except lz4.block.LZ4BlockError as e:
            last_err = e
            continue
        if trim:
            log.debug("block %d: decoded after trimming %d byte(s)", block, trim)
        if len(data) != block_size:
            raise CorruptionError(
                block, offset,
                f"decompressed to {len(data)} bytes, expected {block_size}")
        return data
    raise CorruptionError(
        block, offset,
        f"no {block_size}-byte block decoded from {len(compressed)} bytes "
        f"after {min(max_trims, len(compressed))} trim(s) ({last_err})")


# ── Encoder ────────────────────────────────────────────────────────────

@dataclass
class EncodedBlock:
    """One block ready to append: padding, then payload at *position*."""
    padding: bytes
    payload: bytes
    position: int
    plain: bool
    entry: int

    @property
    def size(self) -> int:
        """Bytes this block adds to the output, padding included."""
        return len(self.padding) + len(self.payload)


class BlockEncoder:
    """Turns a block_size chunk into its stored form and index entry."""

    def __init__(self, align: int = 0, threshold: int = DEFAULT_THRESHOLD,
                 pad: bytes = DEFAULT_PADDING, level: int = MIN_LEVEL,
                 block_size: int = BLOCK_SIZE):
        if not 1 <= threshold <= 100:
            raise ValueError(f"Threshold must be 1-100, got {threshold}")
        if len(pad) != 1:
            raise ValueError(f"Padding must be a single byte, got {pad!r}")
        if not MIN_LEVEL <= level <= MAX_LEVEL:
            raise ValueError(f"Level must be {MIN_LEVEL}-{MAX_LEVEL}, got {level}")
        if align < 0:
            raise ValueError(f"Align must be >= 0, got {align}")
        self.align = align
        self.threshold = threshold
        self.pad = pad
        self.level = level
        self.block_size = block_size

    def should_store_plain(self, compressed_len: int) -> bool:
        return 100 * compressed_len // self.block_size >= self.threshold

    def encode(self, data: bytes, write_pos: int, block: int = -1) -> EncodedBlock:
        """Encode one block that will be written at *write_pos*.

        Raises AlignmentOverflowError if the aligned position does not
        fit the index.
        """
        if len(data) != self.block_size:
            raise ValueError(f"Block {block} is {len(data)} bytes, "
                             f"expected {self.block_size}")
        payload = lz4_compress(data, self.level)
        plain = self.should_store_plain(len(payload))
        if plain:
            payload = bytes(data)

        padding = self.pad * pad_to_alignment(write_pos, self.align)
        position = write_pos + len(padding)
        entry = index_entry(position, self.align, plain, block=block)
        return EncodedBlock(padding, payload, position, plain, entry)


# ── Decoder ────────────────────────────────────────────────────────────

class BlockDecoder:
    """Reconstructs blocks from a seekable container using its index."""

    def __init__(self, fin: BinaryIO, index: IndexTable, container_size: int,
                 block_size: int = BLOCK_SIZE):
        self.fin = fin
        self.index = index
        self.container_size = container_size
        self.block_size = block_size

    @property
    def align(self) -> int:
        return self.index.align

    @property
    def max_trims(self) -> int:
        return 1 << self.align

    def read_range(self, i: int) -> tuple[int, int, bool]:
        """Return (offset, length, plain) of block *i* in the container."""
        offset = self.index.offset(i)
        plain = self.index.is_plain(i)
        if plain:
            return offset, self.block_size, True
        if i == self.index.total_blocks - 1:
            # Last block runs to end of file; the end entry is rounded down.
            return offset, self.container_size - offset, False
        return offset, self.index.offset(i + 1) - offset, False

    def decode(self, i: int) -> bytes:
        """Return exactly block_size bytes for block *i*."""
        offset, length, plain = self.read_range(i)
        if length <= 0:
            raise CorruptionError(i, offset, f"empty read range ({length} bytes)")
        self.fin.seek(offset)
        # A short read at end of file is expected for the final block.
        data = self.fin.read(length)

        if plain:
            if len(data) != self.block_size:
                raise CorruptionError(
                    i, offset,
                    f"plain block has {len(data)} bytes, expected {self.block_size}")
            return data
        return lz4_decompress(data, self.block_size, self.max_trims,
                              block=i, offset=offset)
