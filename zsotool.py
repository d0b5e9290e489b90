#!/usr/bin/env python3
"""
zsotool.py — convert ISO disc images to and from the ZSO container.

Usage:
    zsotool compress   [-t PCT] [-a N|auto] [-p PAD] [-c LEVEL] in.iso out.zso
    zsotool decompress in.zso out.iso
    zsotool info       in.zso

Conversions are strictly sequential.  On compress the header and a zeroed
index are written first, blocks are appended one by one, and the index
is rewritten in place once every block position is known.  On decompress
the header and whole index are loaded up front and blocks are decoded in
order.

Only whole 2048-byte blocks are converted: a trailing partial block of
the input is not stored, and the header still records the full input
size (this matches existing ZSO writers).
"""

from __future__ import annotations

import argparse
import contextlib
import logging
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Optional

from zsoblock import BlockDecoder, BlockEncoder, EncodedBlock, MAX_LEVEL, MIN_LEVEL
from zsoformat import (
    BLOCK_SIZE, DEFAULT_PADDING, DEFAULT_THRESHOLD, HEADER_SIZE, MAX_ALIGN,
    ZSO_VERSION, FormatError, IndexTable, ZeroSizeError, ZsoError, ZsoHeader, ZsoIOError,
    choose_align,
)

log = logging.getLogger(__name__)

# progress(done_blocks, total_blocks, bytes_written)
ProgressFn = Callable[[int, int, int], None]


@dataclass
class ConversionResult:
    """Summary of one finished compress or decompress run."""
    header: ZsoHeader
    blocks: int
    plain_blocks: int
    bytes_written: int

    @property
    def rate(self) -> int:
        """Container size as a percentage of the image size."""
        return self.bytes_written * 100 // self.header.total_bytes


# ── Encode session ─────────────────────────────────────────────────────

class ZsoWriter:
    """One compress run over an output stream.

    Owns the index until finish() writes it over the reserved region.
    """

    def __init__(self, fout: BinaryIO, total_bytes: int, encoder: BlockEncoder):
        self.fout = fout
        self.encoder = encoder
        self.header = ZsoHeader(total_bytes, encoder.block_size,
                                ZSO_VERSION, encoder.align)
        self.index = IndexTable.placeholder(self.header.total_blocks,
                                            encoder.align)
        self.block = 0
        self.plain_blocks = 0
        self.write_pos = 0
        self._started = False

    def begin(self):
        """Write the header and reserve the index region."""
        self.fout.write(self.header.encode())
        self.fout.write(b"\x00" * self.index.byte_size)
        self.write_pos = self.header.data_start
        self._started = True

    def write_block(self, data: bytes) -> EncodedBlock:
        if not self._started:
            raise RuntimeError("begin() must be called before write_block()")
        if self.block >= self.header.total_blocks:
            raise RuntimeError(f"All {self.header.total_blocks} blocks already written")
        enc = self.encoder.encode(data, self.write_pos, block=self.block)
        if enc.padding:
            self.fout.write(enc.padding)
        self.fout.write(enc.payload)
        self.index.entries[self.block] = enc.entry
        if enc.plain:
            self.plain_blocks += 1
        self.write_pos += enc.size
        self.block += 1
        return enc

    def finish(self) -> int:
        """Back-patch the index.  Returns the final container size."""
        if self.block != self.header.total_blocks:
            raise RuntimeError(f"Only {self.block} of "
                               f"{self.header.total_blocks} blocks written")
        self.index.finish(self.write_pos)
        self.fout.seek(self.header.header_size)
        self.fout.write(self.index.pack())
        self.fout.seek(self.write_pos)
        return self.write_pos


# ── Stream-level drivers ───────────────────────────────────────────────

def compress_stream(fin: BinaryIO, fout: BinaryIO, total_bytes: int, *,
                    threshold: int = DEFAULT_THRESHOLD,
                    align: Optional[int] = None,
                    pad: bytes = DEFAULT_PADDING,
                    level: int = MIN_LEVEL,
                    progress: Optional[ProgressFn] = None) -> ConversionResult:
    """Compress *total_bytes* of *fin* into a ZSO container on *fout*.

    *align* None picks the smallest shift that keeps offsets in 31 bits.
    """
    if total_bytes <= 0:
        raise ZeroSizeError(total_bytes, BLOCK_SIZE)
    if align is None:
        align = choose_align(total_bytes)
    elif align < choose_align(total_bytes):
        log.warning("align %d is below the recommended %d for %d bytes",
                    align, choose_align(total_bytes), total_bytes)

    encoder = BlockEncoder(align=align, threshold=threshold, pad=pad, level=level)
    writer = ZsoWriter(fout, total_bytes, encoder)
    hdr = writer.header
    total_blocks = hdr.total_blocks

    log.info("compress: %d bytes, %d blocks of %d, align %d, threshold %d%%, "
             "level %d", total_bytes, total_blocks, hdr.block_size, align,
             threshold, level)
    tail = total_bytes - total_blocks * hdr.block_size
    if tail:
        log.warning("input is not a multiple of %d bytes; last %d byte(s) "
                    "are not stored", hdr.block_size, tail)

    writer.begin()
    for block in range(total_blocks):
        data = fin.read(hdr.block_size)
        if len(data) != hdr.block_size:
            raise ZsoError(f"Input ended early at block {block} "
                           f"({len(data)} of {hdr.block_size} bytes)")
        writer.write_block(data)
        if progress is not None:
            progress(block + 1, total_blocks, writer.write_pos)
    size = writer.finish()
    return ConversionResult(hdr, total_blocks, writer.plain_blocks, size)


def _stream_size(fp: BinaryIO) -> int:
    pos = fp.tell()
    size = fp.seek(0, os.SEEK_END)
    fp.seek(pos)
    return size


def read_container(fin: BinaryIO) -> tuple[ZsoHeader, IndexTable]:
    """Load and validate the header and full index table."""
    fin.seek(0)
    hdr = ZsoHeader.decode(fin.read(HEADER_SIZE))
    size = _stream_size(fin)
    if hdr.data_start > size:
        raise FormatError(f"Index of {hdr.total_blocks + 1} entries runs past "
                          f"end of file ({size} bytes)")
    index = IndexTable.load(fin, hdr.total_blocks, hdr.align)
    index.check_monotonic(hdr.data_start)
    return hdr, index


def decompress_stream(fin: BinaryIO, fout: BinaryIO, *,
                      progress: Optional[ProgressFn] = None) -> ConversionResult:
    """Decode the ZSO container on *fin* into the raw image on *fout*."""
    hdr, index = read_container(fin)
    container_size = _stream_size(fin)
    log.info("decompress: %d bytes, %d blocks of %d, align %d, version %d",
             hdr.total_bytes, hdr.total_blocks, hdr.block_size, hdr.align,
             hdr.version)

    decoder = BlockDecoder(fin, index, container_size, hdr.block_size)
    written = 0
    for block in range(hdr.total_blocks):
        data = decoder.decode(block)
        fout.write(data)
        written += len(data)
        if progress is not None:
            progress(block + 1, hdr.total_blocks, written)
    return ConversionResult(hdr, hdr.total_blocks, index.plain_count(), written)


# ── File-level entry points ────────────────────────────────────────────

def _open_input(path: str | Path) -> BinaryIO:
    try:
        return open(path, "rb")
    except OSError as e:
        raise ZsoIOError(path, e) from e


@contextlib.contextmanager
def _open_output(path: str | Path):
    """Open *path* for writing; remove it again if the run fails."""
    try:
        fout = open(path, "wb")
    except OSError as e:
        raise ZsoIOError(path, e) from e
    try:
        with fout:
            yield fout
    except BaseException:
        log.warning("removing incomplete output %s", path)
        with contextlib.suppress(OSError):
            os.unlink(path)
        raise


def compress_zso(in_path: str | Path, out_path: str | Path, *,
                 threshold: int = DEFAULT_THRESHOLD,
                 align: Optional[int] = None,
                 pad: bytes = DEFAULT_PADDING,
                 level: int = MIN_LEVEL,
                 progress: Optional[ProgressFn] = None) -> ConversionResult:
    """Compress the ISO at *in_path* into a ZSO at *out_path*."""
    # Reject bad settings before the output file exists.
    BlockEncoder(align=align or 0, threshold=threshold, pad=pad, level=level)
    with _open_input(in_path) as fin:
        try:
            total_bytes = _stream_size(fin)
        except OSError as e:
            raise ZsoIOError(in_path, e) from e
        if total_bytes == 0:
            raise ZeroSizeError(0, BLOCK_SIZE)
        with _open_output(out_path) as fout:
            try:
                return compress_stream(fin, fout, total_bytes,
                                       threshold=threshold, align=align,
                                       pad=pad, level=level, progress=progress)
            except OSError as e:
                raise ZsoIOError(f"{in_path} -> {out_path}", e) from e


def decompress_zso(in_path: str | Path, out_path: str | Path, *,
                   progress: Optional[ProgressFn] = None) -> ConversionResult:
    """Decompress the ZSO at *in_path* into an ISO at *out_path*."""
    with _open_input(in_path) as fin:
        # Validate before creating the output.
        try:
            read_container(fin)
        except OSError as e:
            raise ZsoIOError(in_path, e) from e
        with _open_output(out_path) as fout:
            try:
                return decompress_stream(fin, fout, progress=progress)
            except OSError as e:
                raise ZsoIOError(f"{in_path} -> {out_path}", e) from e


def read_info(path: str | Path) -> dict:
    """Header and index summary of an existing container."""
    with _open_input(path) as fin:
        try:
            hdr, index = read_container(fin)
            size = _stream_size(fin)
        except OSError as e:
            raise ZsoIOError(path, e) from e
    plain = index.plain_count()
    return {
        "magic": f"{hdr.magic:#010x}",
        "version": hdr.version,
        "total_bytes": hdr.total_bytes,
        "block_size": hdr.block_size,
        "total_blocks": hdr.total_blocks,
        "align": hdr.align,
        "container_size": size,
        "plain_blocks": plain,
        "compressed_blocks": hdr.total_blocks - plain,
        "rate": size * 100 // hdr.total_bytes,
    }


# ── CLI ────────────────────────────────────────────────────────────────

class _Progress:
    """Prints a percentage line on stderr about every 1% of blocks."""

    def __init__(self, verb: str, block_size: int = BLOCK_SIZE,
                 show_rate: bool = False):
        self.verb = verb
        self.block_size = block_size
        self.show_rate = show_rate
        self._next = 0

    def __call__(self, done: int, total: int, written: int):
        if done < self._next and done != total:
            return
        self._next = done + max(total // 100, 1)
        pct = done * 100 // total
        if self.show_rate:
            rate = written * 100 // (done * self.block_size)
            print(f"{self.verb} {pct:3d}% average rate {rate:3d}%",
                  end="\r", file=sys.stderr)
        else:
            print(f"{self.verb} {pct:3d}%", end="\r", file=sys.stderr)
        if done == total:
            print(file=sys.stderr)


def _parse_threshold(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {text!r}")
    if not 1 <= value <= 100:
        raise argparse.ArgumentTypeError(f"threshold must be 1-100, got {value}")
    return value


def _parse_align(text: str) -> Optional[int]:
    if text == "auto":
        return None
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"align must be 0-{MAX_ALIGN} or 'auto'")
    if not 0 <= value <= MAX_ALIGN:
        raise argparse.ArgumentTypeError(f"align must be 0-{MAX_ALIGN}, got {value}")
    return value


def _parse_pad(text: str) -> bytes:
    """A single character, or a byte value written as 0xNN."""
    if text.lower().startswith("0x") and len(text) > 2:
        try:
            value = int(text, 16)
        except ValueError:
            raise argparse.ArgumentTypeError(f"bad padding byte {text!r}")
        if not 0 <= value <= 0xFF:
            raise argparse.ArgumentTypeError(f"padding byte out of range: {text}")
        return bytes([value])
    if len(text) != 1:
        raise argparse.ArgumentTypeError(
            f"padding must be one character or 0xNN, got {text!r}")
    try:
        return text.encode("latin-1")
    except UnicodeEncodeError:
        raise argparse.ArgumentTypeError(f"padding must be a single byte: {text!r}")


def _parse_level(text: str) -> int:
    try:
        value = int(text)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {text!r}")
    if not MIN_LEVEL <= value <= MAX_LEVEL:
        raise argparse.ArgumentTypeError(
            f"level must be {MIN_LEVEL}-{MAX_LEVEL}, got {value}")
    return value


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="zsotool",
        description="Convert ISO disc images to and from ZSO (LZ4 blocks)",
    )
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Debug logging")
    sub = parser.add_subparsers(dest="cmd")

    # compress — ISO to ZSO
    p_c = sub.add_parser("compress", help="Compress an ISO image to ZSO")
    p_c.add_argument("infile", help="Input ISO image")
    p_c.add_argument("outfile", help="Output ZSO file")
    p_c.add_argument("-t", "--threshold", type=_parse_threshold,
                     default=DEFAULT_THRESHOLD,
                     help="Store a block plain when it compresses to at least "
                          f"this percentage (1-100, default: {DEFAULT_THRESHOLD})")
    p_c.add_argument("-a", "--align", type=_parse_align, default=None,
                     help=f"Index alignment shift 0-{MAX_ALIGN}, 0=small/slow "
                          f"{MAX_ALIGN}=fast/large (default: auto)")
    p_c.add_argument("-p", "--pad", type=_parse_pad, default=DEFAULT_PADDING,
                     help="Padding byte, character or 0xNN (default: X)")
    p_c.add_argument("-c", "--level", type=_parse_level, default=MIN_LEVEL,
                     help=f"LZ4 level {MIN_LEVEL}-{MAX_LEVEL}, >1 uses "
                          "high compression (default: 1)")

    # decompress — ZSO to ISO
    p_d = sub.add_parser("decompress", help="Decompress a ZSO file to ISO")
    p_d.add_argument("infile", help="Input ZSO file")
    p_d.add_argument("outfile", help="Output ISO image")

    # info — show header and index summary
    p_i = sub.add_parser("info", help="Show ZSO header info")
    p_i.add_argument("image", help="ZSO file")

    return parser


def main(argv: list[str] | None = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.cmd is None:
        parser.print_help()
        return

    try:
        if args.cmd == "compress":
            print(f"Compress '{args.infile}' to '{args.outfile}'")
            res = compress_zso(args.infile, args.outfile,
                               threshold=args.threshold, align=args.align,
                               pad=args.pad, level=args.level,
                               progress=_Progress("compress", show_rate=True))
            print(f"ziso compress completed, total size = {res.bytes_written} "
                  f"bytes, rate {res.rate}% ({res.plain_blocks} of "
                  f"{res.blocks} blocks plain)")

        elif args.cmd == "decompress":
            print(f"Decompress '{args.infile}' to '{args.outfile}'")
            res = decompress_zso(args.infile, args.outfile,
                                 progress=_Progress("decompress"))
            print(f"ziso decompress completed, {res.bytes_written} bytes "
                  f"in {res.blocks} blocks")

        elif args.cmd == "info":
            for k, v in read_info(args.image).items():
                print(f"  {k}: {v}")

    except ZsoError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        parser.error(str(e))


if __name__ == "__main__":
    main()
