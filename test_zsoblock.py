#!/usr/bin/env python3
"""
Tests for per-block ZSO encoding and decoding, including recovery from
read ranges that run into alignment padding.
"""
import io
import os
import random
import unittest

import lz4.block

from zsoblock import (
    BlockEncoder, BlockDecoder, lz4_compress, lz4_decompress,
)
from zsoformat import (
    BLOCK_SIZE, PLAIN_FLAG, HEADER_SIZE, IndexTable,
    CorruptionError, AlignmentOverflowError, encode_header,
)


def text_block(seed: int = 0) -> bytes:
    """A compressible block that is not all one byte."""
    line = f"LBA {seed:08d} sector payload -- ".encode("ascii")
    return (line * (BLOCK_SIZE // len(line) + 1))[:BLOCK_SIZE]


def find_block_with_tail(mod: int, rem: int) -> tuple[bytes, bytes]:
    """Find a block whose compressed length is rem (mod *mod*)."""
    for seed in range(256):
        rng = random.Random(seed)
        data = bytes(rng.choice(b"ABCD") for _ in range(BLOCK_SIZE))
        payload = lz4_compress(data)
        if len(payload) % mod == rem:
            return data, payload
    raise AssertionError("no suitable block found")


# ---------------------------------------------------------------------------
#  LZ4 helpers
# ---------------------------------------------------------------------------

class TestLz4(unittest.TestCase):

    def test_no_size_prefix(self):
        """Payload is a bare LZ4 block: it needs the size from outside."""
        data = text_block()
        payload = lz4_compress(data)
        self.assertEqual(lz4.block.decompress(payload, uncompressed_size=BLOCK_SIZE), data)

    def test_high_compression_level(self):
        data = text_block(3)
        payload = lz4_compress(data, level=9)
        self.assertEqual(lz4_decompress(payload, BLOCK_SIZE, 0), data)

    def test_trim_strips_padding(self):
        """Three padding bytes after the payload are dropped by retries."""
        data = text_block(1)
        payload = lz4_compress(data)
        self.assertEqual(lz4_decompress(payload + b"XXX", BLOCK_SIZE, 4), data)

    def test_trim_bounded(self):
        """More trailing bytes than the trim budget is a CorruptionError."""
        payload = lz4_compress(text_block(2))
        with self.assertRaises(CorruptionError) as cm:
            lz4_decompress(payload + b"XXXXX", BLOCK_SIZE, 4, block=7, offset=0x40)
        self.assertEqual(cm.exception.block, 7)
        self.assertEqual(cm.exception.offset, 0x40)

    def test_garbage_exhausts(self):
        with self.assertRaises(CorruptionError):
            lz4_decompress(b"\xff" * 40, BLOCK_SIZE, 32)

    def test_empty_buffer(self):
        with self.assertRaises(CorruptionError):
            lz4_decompress(b"", BLOCK_SIZE, 4)

    def test_wrong_output_length(self):
        """A payload for a shorter block cannot fill block_size."""
        payload = lz4_compress(b"A" * 1024)
        with self.assertRaises(CorruptionError) as cm:
            lz4_decompress(payload, BLOCK_SIZE, 0, block=5)
        self.assertEqual(cm.exception.block, 5)
        self.assertIn(f"{BLOCK_SIZE}-byte block", str(cm.exception))


# ---------------------------------------------------------------------------
#  Encoder
# ---------------------------------------------------------------------------

class TestBlockEncoder(unittest.TestCase):

    def test_zero_block_compressed(self):
        enc = BlockEncoder().encode(bytes(BLOCK_SIZE), 64, block=0)
        self.assertFalse(enc.plain)
        self.assertLess(len(enc.payload), BLOCK_SIZE)
        self.assertEqual(enc.entry, 64)
        self.assertEqual(enc.padding, b"")
        self.assertLess(enc.entry, PLAIN_FLAG)

    def test_random_block_plain(self):
        """Incompressible data is stored verbatim with the plain flag."""
        data = os.urandom(BLOCK_SIZE)
        enc = BlockEncoder().encode(data, 64, block=0)
        self.assertTrue(enc.plain)
        self.assertEqual(enc.payload, data)
        self.assertEqual(enc.entry, 64 | PLAIN_FLAG)

    def test_threshold_decision(self):
        data = text_block(5)
        clen = len(lz4_compress(data))
        for t in (1, 5, 10, 25, 50, 100):
            enc = BlockEncoder(threshold=t).encode(data, 64)
            self.assertEqual(enc.plain, 100 * clen // BLOCK_SIZE >= t)

    def test_padding_before_block(self):
        """Write position is padded up to 2**align with the pad byte."""
        enc = BlockEncoder(align=2, pad=b"\xee").encode(bytes(BLOCK_SIZE), 37)
        self.assertEqual(enc.padding, b"\xee\xee\xee")
        self.assertEqual(enc.position, 40)
        self.assertEqual(enc.entry, 10)
        self.assertEqual(enc.size, 3 + len(enc.payload))

    def test_align_one_past_2gib(self):
        enc = BlockEncoder(align=1).encode(bytes(BLOCK_SIZE), 2 ** 31 + 1)
        self.assertEqual(enc.position, 2 ** 31 + 2)
        self.assertEqual(enc.entry, (2 ** 31 + 2) >> 1)

    def test_alignment_overflow(self):
        with self.assertRaises(AlignmentOverflowError) as cm:
            BlockEncoder(align=0).encode(bytes(BLOCK_SIZE), 2 ** 31, block=3)
        self.assertEqual(cm.exception.block, 3)

    def test_alignment_overflow_plain(self):
        with self.assertRaises(AlignmentOverflowError):
            BlockEncoder(align=0).encode(os.urandom(BLOCK_SIZE), 2 ** 31 + 8)

    def test_wrong_block_length(self):
        with self.assertRaises(ValueError):
            BlockEncoder().encode(b"short", 64)

    def test_bad_settings(self):
        with self.assertRaises(ValueError):
            BlockEncoder(threshold=0)
        with self.assertRaises(ValueError):
            BlockEncoder(threshold=101)
        with self.assertRaises(ValueError):
            BlockEncoder(pad=b"XY")
        with self.assertRaises(ValueError):
            BlockEncoder(level=13)
        with self.assertRaises(ValueError):
            BlockEncoder(align=-1)


# ---------------------------------------------------------------------------
#  Decoder
# ---------------------------------------------------------------------------

def build_container(payloads: list[tuple[bytes, bool]], align: int,
                    tail: bytes = b"", pad: bytes = b"X") -> tuple[bytes, IndexTable]:
    """Lay out *payloads* the way the writer does; return (bytes, index)."""
    n = len(payloads)
    out = bytearray(encode_header(n * BLOCK_SIZE, align=align))
    out += b"\x00" * ((n + 1) * 4)
    index = IndexTable.placeholder(n, align)
    for i, (payload, plain) in enumerate(payloads):
        gap = (-len(out)) % (1 << align)
        out += pad * gap
        index.set_entry(i, len(out), plain)
        out += payload
    out += tail
    index.finish(len(out))
    out[HEADER_SIZE:HEADER_SIZE + index.byte_size] = index.pack()
    return bytes(out), index


class TestBlockDecoder(unittest.TestCase):

    def test_decode_mixed(self):
        plain = os.urandom(BLOCK_SIZE)
        comp = text_block(9)
        raw, index = build_container(
            [(lz4_compress(comp), False), (plain, True), (lz4_compress(comp), False)],
            align=2)
        dec = BlockDecoder(io.BytesIO(raw), index, len(raw))
        self.assertEqual(dec.decode(0), comp)
        self.assertEqual(dec.decode(1), plain)
        self.assertEqual(dec.decode(2), comp)

    def test_read_range(self):
        comp = lz4_compress(text_block())
        raw, index = build_container([(comp, False), (comp, False)], align=0)
        dec = BlockDecoder(io.BytesIO(raw), index, len(raw))
        off0, len0, plain0 = dec.read_range(0)
        self.assertEqual((off0, len0, plain0), (24 + 12, len(comp), False))
        off1, len1, _ = dec.read_range(1)
        self.assertEqual(off1, off0 + len(comp))
        self.assertEqual(len1, len(raw) - off1)

    def test_plain_range_is_block_size(self):
        raw, index = build_container([(os.urandom(BLOCK_SIZE), True)], align=0)
        dec = BlockDecoder(io.BytesIO(raw), index, len(raw))
        self.assertEqual(dec.read_range(0)[1:], (BLOCK_SIZE, True))

    def test_three_padding_bytes_recovered(self):
        """Range to the next entry includes 3 pad bytes; trimming fixes it."""
        data, payload = find_block_with_tail(4, 1)
        raw, index = build_container(
            [(payload, False), (lz4_compress(text_block()), False)], align=2)
        dec = BlockDecoder(io.BytesIO(raw), index, len(raw))
        self.assertEqual(dec.read_range(0)[1], len(payload) + 3)
        self.assertEqual(dec.decode(0), data)

    def test_last_block_short_read(self):
        """Last block range reaching past EOF reads up to EOF."""
        comp = text_block(4)
        raw, index = build_container([(lz4_compress(comp), False)], align=0)
        dec = BlockDecoder(io.BytesIO(raw), index, len(raw) + 100)
        self.assertEqual(dec.decode(0), comp)

    def test_truncated_plain_block(self):
        raw, index = build_container([(os.urandom(BLOCK_SIZE), True)], align=0)
        raw = raw[:-10]
        dec = BlockDecoder(io.BytesIO(raw), index, len(raw))
        with self.assertRaises(CorruptionError) as cm:
            dec.decode(0)
        self.assertEqual(cm.exception.block, 0)

    def test_corrupt_payload(self):
        comp = lz4_compress(text_block())
        raw, index = build_container([(b"\xff" * len(comp), False),
                                      (comp, False)], align=0)
        dec = BlockDecoder(io.BytesIO(raw), index, len(raw))
        with self.assertRaises(CorruptionError) as cm:
            dec.decode(0)
        self.assertEqual(cm.exception.offset, index.offset(0))


if __name__ == "__main__":
    unittest.main()
