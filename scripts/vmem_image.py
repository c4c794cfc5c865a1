#!/usr/bin/env python3

# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

"""
Convert an earlgrey ELF image into the flat binary and 64-bit VMEM memory
image consumed by the Verilator simulator and the CW310 loader.

The memory image is the flat binary padded with 0xFF to a whole number of
64-bit words, with the bytes of every word reversed, written out as one
address-tagged hex word per line.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
import logging
from pathlib import Path
import re
from typing import Iterator, Optional, Tuple

from elftools.common.exceptions import ELFError
from elftools.elf.constants import SH_FLAGS
from elftools.elf.elffile import ELFFile

from deploy_errors import MalformedImage, OverlaySizeMismatch

WORD_SIZE = 8
FILL_BYTE = 0xFF
OVERLAY_SECTION = ".apps"

_logger = logging.getLogger(__name__)


class ElfImage:
    """
    A compiled RISC-V executable, held in memory.

    The file is read once; merging an overlay produces a new ElfImage and
    leaves this one untouched.
    """

    def __init__(self, raw: bytes, name: str = "<memory>"):
        self._raw = bytes(raw)
        self.name = name
        try:
            self._elf = ELFFile(BytesIO(self._raw))
        except ELFError as e:
            raise MalformedImage(f"{name} is not a valid ELF file: {e}") from e
        if self._elf["e_machine"] != "EM_RISCV":
            raise MalformedImage(
                f"{name} targets {self._elf['e_machine']}, expected EM_RISCV"
            )
        if self._elf["e_type"] != "ET_EXEC":
            raise MalformedImage(f"{name} is not an executable ELF file")

    @staticmethod
    def load(path: Path) -> ElfImage:
        try:
            raw = Path(path).read_bytes()
        except OSError as e:
            raise MalformedImage(f"unable to read image {path}: {e}") from e
        return ElfImage(raw, name=str(path))

    @property
    def raw(self) -> bytes:
        return self._raw

    def section(self, name: str):
        try:
            section = self._elf.get_section_by_name(name)
        except ELFError as e:
            raise MalformedImage(f"{self.name}: {e}") from e
        if section is None:
            raise MalformedImage(f"{self.name} has no {name} section")
        return section

    def with_overlay(
        self, section_name: str, overlay: bytes, pad: bool = False
    ) -> ElfImage:
        """
        Return a copy of this image with the contents of a section replaced.

        @param section_name: name of the reserved section, e.g. .apps
        @param overlay: bytes to write into the section
        @param pad: fill the rest of the section with 0xFF when the overlay
            is shorter than the section instead of failing
        """
        section = self.section(section_name)
        if section["sh_type"] == "SHT_NOBITS":
            raise MalformedImage(
                f"section {section_name} of {self.name} has no file contents"
            )
        self._check_contents(section)
        size = section["sh_size"]
        if len(overlay) > size or (len(overlay) < size and not pad):
            raise OverlaySizeMismatch(section_name, size, len(overlay))

        offset = section["sh_offset"]
        payload = bytes(overlay) + bytes([FILL_BYTE]) * (size - len(overlay))
        _logger.debug(
            f"Overlaying {len(overlay)} bytes into {section_name} "
            f"at file offset 0x{offset:x} ({size} bytes)"
        )
        merged = self._raw[:offset] + payload + self._raw[offset + size :]
        return ElfImage(merged, name=self.name)

    def loadable_sections(self) -> Iterator[Tuple[int, str, bytes]]:
        """
        Yield (load address, name, data) for every section that ends up in
        target memory, ordered by load address.
        """
        found = []
        try:
            segments = [
                seg for seg in self._elf.iter_segments() if seg["p_type"] == "PT_LOAD"
            ]
            for section in self._elf.iter_sections():
                if not section["sh_flags"] & SH_FLAGS.SHF_ALLOC:
                    continue
                if section["sh_type"] == "SHT_NOBITS" or section["sh_size"] == 0:
                    continue
                self._check_contents(section)
                found.append(
                    (self._load_address(section, segments), section.name, section.data())
                )
        except ELFError as e:
            raise MalformedImage(f"{self.name}: {e}") from e
        found.sort(key=lambda x: x[0])
        return iter(found)

    def _check_contents(self, section):
        end = section["sh_offset"] + section["sh_size"]
        if end > len(self._raw):
            raise MalformedImage(
                f"section {section.name} of {self.name} ends at offset 0x{end:x}, "
                f"past the end of the file (0x{len(self._raw):x})"
            )

    @staticmethod
    def _load_address(section, segments) -> int:
        # objcopy places a section at its LMA, which comes from the segment
        # that carries it in the file
        start = section["sh_offset"]
        end = start + section["sh_size"]
        for seg in segments:
            if seg["p_offset"] <= start and end <= seg["p_offset"] + seg["p_filesz"]:
                return seg["p_paddr"] + start - seg["p_offset"]
        return section["sh_addr"]


@dataclass(frozen=True)
class FlatBinary:
    load_address: int
    data: bytes

    def __len__(self):
        return len(self.data)

    def write(self, path: Path):
        Path(path).write_bytes(self.data)


@dataclass(frozen=True)
class MemoryImage:
    """
    Padded memory contents in target address order.

    Words are byte swapped only when encoded, so data reads the same as the
    target memory after the loader has written it.
    """

    data: bytes
    base_address: int = 0
    word_size: int = WORD_SIZE

    def __len__(self):
        return len(self.data)

    def words(self) -> Iterator[Tuple[int, bytes]]:
        base = self.base_address // self.word_size
        swapped = swap_words(self.data, self.word_size)
        for i in range(0, len(self.data), self.word_size):
            yield base + i // self.word_size, swapped[i : i + self.word_size]

    def to_vmem(self) -> str:
        output = ""
        for addr, word in self.words():
            output += f"@{addr:08X} {word.hex().upper()}\n"
        return output

    def write(self, path: Path):
        with open(path, "w") as f:
            f.write(self.to_vmem())

    @staticmethod
    def from_vmem(text: str, word_size: int = WORD_SIZE) -> MemoryImage:
        """
        Parse a VMEM file back into a memory image.

        Words must be contiguous from the first address; comments and blank
        lines are ignored.
        """
        text = re.sub(r"/\*.*?\*/", "", text, flags=re.DOTALL)
        base: Optional[int] = None
        next_addr = 0
        data = bytearray()
        for lineno, line in enumerate(text.splitlines(), start=1):
            line = line.split("//", 1)[0].strip()
            if not line:
                continue
            fields = line.split()
            if not fields[0].startswith("@"):
                raise ValueError(f"line {lineno}: missing address tag")
            addr = int(fields[0][1:], 16)
            if base is None:
                base = next_addr = addr
            if addr != next_addr:
                raise ValueError(
                    f"line {lineno}: address 0x{addr:x} is not contiguous, "
                    f"expected 0x{next_addr:x}"
                )
            for word in fields[1:]:
                if len(word) != word_size * 2:
                    raise ValueError(
                        f"line {lineno}: word {word} is not {word_size * 8} bits"
                    )
                data += bytes.fromhex(word)
                next_addr += 1
        return MemoryImage(
            data=swap_words(bytes(data), word_size),
            base_address=(base or 0) * word_size,
            word_size=word_size,
        )


def extract_flat_binary(image: ElfImage) -> FlatBinary:
    """
    Lay out the loadable sections of an image the way objcopy -O binary
    does: from the lowest load address, with gaps zero-filled.
    """
    data = bytearray()
    start = None
    for addr, name, contents in image.loadable_sections():
        if start is None:
            start = addr
        offset = addr - start
        if offset < len(data):
            raise MalformedImage(
                f"section {name} at 0x{addr:x} overlaps a previous section"
            )
        data.extend(bytes(offset - len(data)))
        data.extend(contents)
        _logger.debug(f"Section {name}: 0x{addr:08x} {len(contents)} bytes")

    if start is None:
        raise MalformedImage(f"{image.name} has no loadable sections")

    return FlatBinary(load_address=start, data=bytes(data))


def pad_to_word(data: bytes, word_size: int = WORD_SIZE, fill: int = FILL_BYTE):
    remainder = len(data) % word_size
    if remainder == 0:
        return bytes(data)
    return bytes(data) + bytes([fill]) * (word_size - remainder)


def swap_words(data: bytes, word_size: int = WORD_SIZE) -> bytes:
    if len(data) % word_size != 0:
        raise ValueError(
            f"data length {len(data)} is not a multiple of the word size {word_size}"
        )
    swapped = bytearray()
    for i in range(0, len(data), word_size):
        swapped.extend(data[i : i + word_size][::-1])
    return bytes(swapped)


def to_memory_image(flat: FlatBinary, word_size: int = WORD_SIZE) -> MemoryImage:
    return MemoryImage(data=pad_to_word(flat.data, word_size), word_size=word_size)


def transform(
    image: ElfImage,
    overlay: Optional[bytes] = None,
    section: str = OVERLAY_SECTION,
    pad: bool = False,
) -> Tuple[ElfImage, FlatBinary, MemoryImage]:
    """
    Run the whole pipeline: merge the overlay, flatten, pad and swap.

    Returns the (possibly merged) image alongside the flat binary and memory
    image so that callers can write all three out.
    """
    if overlay is not None:
        image = image.with_overlay(section, overlay, pad=pad)
    flat = extract_flat_binary(image)
    mem = to_memory_image(flat)
    _logger.info(
        f"{image.name}: flat binary {len(flat)} bytes at 0x{flat.load_address:x}, "
        f"memory image {len(mem)} bytes"
    )
    return image, flat, mem
