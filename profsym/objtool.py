#!/usr/bin/env python3
"""
objtool.py

Object inspector used for local symbolization.

This module provides:

  - Frame: one (function, file, line) answer for an address. A query returns
    a list of frames, innermost first, so inlined calls show up as extra
    entries.
  - ElfSegment: an opened binary region. Knows its build-id and load base,
    answers address -> frames queries and must be closed when done.
  - ElfInspector: opens ElfSegments. Queries go through addr2line, batched
    per segment by prefetch(); in fast mode they are answered from the ELF
    symbol table (function names only).

ELF headers, program headers, notes and symbol tables are read with
pyelftools. Line tables are left to addr2line.
"""

from __future__ import annotations

import bisect
import logging
import re
import subprocess
from dataclasses import dataclass
from typing import BinaryIO, Dict, Iterable, List, Optional, Tuple

from elftools.common.exceptions import ELFError
from elftools.elf.elffile import ELFFile
from elftools.elf.sections import SymbolTableSection

LOG = logging.getLogger("objtool")


class ObjectOpenError(Exception):
    """The binary for a mapping could not be opened."""


class SymbolLookupError(Exception):
    """A single address query failed."""


@dataclass
class Frame:
    func: str = ""
    file: str = ""
    line: int = 0


# ---------------------------------------------------------------------------
# ELF helpers
# ---------------------------------------------------------------------------

def _read_build_id(elf: ELFFile) -> str:
    """
    Extract GNU build-id from the .note.gnu.build-id section.

    Returns hex string, or "" if the section is missing or malformed.
    """
    sec = elf.get_section_by_name(".note.gnu.build-id")
    if sec is None:
        return ""

    try:
        data = sec.data()
    except ELFError as e:
        LOG.warning("Failed to read .note.gnu.build-id: %s", e)
        return ""

    if len(data) < 16:
        return ""

    order = "little" if elf.little_endian else "big"
    namesz = int.from_bytes(data[0:4], order)
    descsz = int.from_bytes(data[4:8], order)

    name_off = 12
    name_end = name_off + namesz
    desc_off = (name_end + 3) & ~3
    if desc_off + descsz > len(data):
        return ""

    return data[desc_off : desc_off + descsz].hex()


def _compute_base(elf: ELFFile, start: int, limit: int, offset: int) -> int:
    """
    Return the value to subtract from a profile address to get an address
    in the object's own virtual address space.

    ET_EXEC objects are loaded at their link addresses. For ET_DYN the base
    is derived from the mapping and the executable PT_LOAD segment:
        base = start - offset + p_offset - p_vaddr
    """
    e_type = elf.header["e_type"]
    if e_type == "ET_EXEC":
        return 0
    if e_type != "ET_DYN":
        raise ObjectOpenError(f"unsupported ELF type {e_type}")

    if start == 0 and limit == 0:
        # No address range recorded: addresses are already object-relative.
        return 0

    load = None
    for seg in elf.iter_segments():
        if seg["p_type"] != "PT_LOAD":
            continue
        if seg["p_offset"] <= offset < seg["p_offset"] + max(seg["p_filesz"], 1):
            load = seg
            break
        if load is None and seg["p_flags"] & 0x1:  # PF_X
            load = seg

    if load is None:
        return start - offset
    return start - offset + load["p_offset"] - load["p_vaddr"]


# Matches the "file:line" line of addr2line output, e.g.
#   "/src/foo.cc:42"
#   "/src/foo.cc:42 (discriminator 3)"
#   "??:0" / "??:?"
_FILE_LINE_RE = re.compile(r"^(?P<file>.*):(?P<line>\d+|\?)(?:\s+\(discriminator \d+\))?$")

# Address header printed by "addr2line -a" before each group of frames.
_ADDR_RE = re.compile(r"^0x[0-9a-fA-F]+$")

# Upper bound on addresses passed to a single addr2line invocation.
ADDR2LINE_BATCH = 512


def _parse_frames(lines: List[str]) -> List[Frame]:
    """
    Turn (function, file:line) line pairs into frames.

    Unknown entries ("??", "??:0") become empty strings / line 0.
    """
    frames: List[Frame] = []
    for i in range(0, len(lines) - 1, 2):
        func = lines[i]
        file_line = lines[i + 1]

        file = ""
        lineno = 0
        m = _FILE_LINE_RE.match(file_line)
        if m:
            file = m.group("file")
            if m.group("line") != "?":
                lineno = int(m.group("line"))

        if func == "??":
            func = ""
        if file == "??":
            file = ""

        frames.append(Frame(func=func, file=file, line=lineno))

    # addr2line prints a single "??" / "??:0" pair when it knows nothing.
    if all(not f.func and not f.file and not f.line for f in frames):
        return []
    return frames


def _parse_addr2line_blocks(stdout: str) -> Dict[int, List[Frame]]:
    """
    Parse "addr2line -a -f -i" output for many addresses.

    Each "0xADDR" line starts a new block; the (function, file:line) pairs
    up to the next address line belong to it. Keys are the addresses as
    integers, so "0x0000000000401136" and "0x401136" are the same key.
    """
    blocks: Dict[int, List[str]] = {}
    current: Optional[List[str]] = None
    for raw in stdout.splitlines():
        line = raw.strip()
        if _ADDR_RE.match(line):
            current = blocks.setdefault(int(line, 16), [])
            continue
        if current is None:
            # Unexpected content before any address. Skip it.
            continue
        current.append(line)

    return {addr: _parse_frames(lines) for addr, lines in blocks.items()}


# ---------------------------------------------------------------------------
# Segment
# ---------------------------------------------------------------------------

class ElfSegment:
    """
    One opened mapping. Holds the ELF file open until close().
    """

    def __init__(
        self,
        path: str,
        fileobj: BinaryIO,
        elf: ELFFile,
        base: int,
        fast: bool = False,
        addr2line: str = "addr2line",
    ) -> None:
        self.path = path
        self.base = base
        self.fast = fast
        self._addr2line = addr2line
        self._f: Optional[BinaryIO] = fileobj
        self._elf: Optional[ELFFile] = elf
        self._build_id = _read_build_id(elf)
        self._symbols: Optional[Tuple[List[int], List[Tuple[int, str]]]] = None
        self._cache: Dict[int, List[Frame]] = {}

    def build_id(self) -> str:
        return self._build_id

    def source_line(self, addr: int) -> List[Frame]:
        if self._f is None:
            raise SymbolLookupError(f"{self.path}: segment is closed")

        obj_addr = addr - self.base
        cached = self._cache.get(obj_addr)
        if cached is not None:
            return cached

        if self.fast:
            frames = self._symbol_lookup(obj_addr)
        else:
            frames = self._run_addr2line([obj_addr]).get(obj_addr, [])

        self._cache[obj_addr] = frames
        return frames

    def prefetch(self, addrs: Iterable[int]) -> None:
        """
        Resolve many profile addresses at once so that later source_line()
        calls are answered from the cache. addr2line runs once per
        ADDR2LINE_BATCH addresses instead of once per address.
        """
        if self._f is None:
            raise SymbolLookupError(f"{self.path}: segment is closed")
        if self.fast:
            # Symbol table lookups are in-process already.
            return

        wanted = {a - self.base for a in addrs}
        pending = sorted(a for a in wanted if a not in self._cache)
        for i in range(0, len(pending), ADDR2LINE_BATCH):
            chunk = pending[i : i + ADDR2LINE_BATCH]
            found = self._run_addr2line(chunk)
            for obj_addr in chunk:
                self._cache[obj_addr] = found.get(obj_addr, [])
        LOG.debug("Prefetched %d addresses from %s", len(pending), self.path)

    def close(self) -> None:
        if self._f is not None:
            self._f.close()
        self._f = None
        self._elf = None
        self._cache.clear()

    # -- addr2line ----------------------------------------------------------

    def _run_addr2line(self, obj_addrs: List[int]) -> Dict[int, List[Frame]]:
        # Names are left mangled on purpose; demangling happens later
        # under control of the demangle mode.
        cmd: List[str] = [
            self._addr2line,
            "-a",      # print address before each group
            "-f",      # print function names
            "-i",      # show inlined functions
            "-e",
            self.path,
        ]
        cmd.extend(f"{a:#x}" for a in obj_addrs)

        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                check=False,
            )
        except FileNotFoundError as e:
            raise SymbolLookupError(f"{self._addr2line} not found") from e
        except OSError as e:
            raise SymbolLookupError(f"failed to run {self._addr2line}: {e}") from e

        if proc.returncode != 0:
            raise SymbolLookupError(
                f"{self._addr2line} exited with code {proc.returncode} for {self.path}: "
                f"{proc.stderr.strip()}"
            )

        return _parse_addr2line_blocks(proc.stdout)

    # -- symbol table -------------------------------------------------------

    def _load_symbols(self) -> Tuple[List[int], List[Tuple[int, str]]]:
        """
        Sorted function symbols from .symtab (or .dynsym for stripped
        objects): parallel lists of start addresses and (size, name).
        """
        assert self._elf is not None
        entries: List[Tuple[int, int, str]] = []
        for name in (".symtab", ".dynsym"):
            sec = self._elf.get_section_by_name(name)
            if not isinstance(sec, SymbolTableSection):
                continue
            for sym in sec.iter_symbols():
                if sym["st_info"]["type"] != "STT_FUNC" or not sym.name:
                    continue
                if sym["st_value"] == 0:
                    continue
                entries.append((sym["st_value"], sym["st_size"], sym.name))
            if entries:
                break

        entries.sort()
        starts = [e[0] for e in entries]
        rest = [(e[1], e[2]) for e in entries]
        LOG.debug("Loaded %d function symbols from %s", len(entries), self.path)
        return starts, rest

    def _symbol_lookup(self, obj_addr: int) -> List[Frame]:
        if self._symbols is None:
            self._symbols = self._load_symbols()
        starts, rest = self._symbols

        i = bisect.bisect_right(starts, obj_addr) - 1
        if i < 0:
            return []
        size, name = rest[i]
        if size and obj_addr >= starts[i] + size:
            return []
        return [Frame(func=name)]


# ---------------------------------------------------------------------------
# Inspector
# ---------------------------------------------------------------------------

class ElfInspector:
    """
    Opens ELF binaries for symbolization.
    """

    def __init__(self, addr2line: str = "addr2line") -> None:
        self.addr2line = addr2line
        self.fast = False

    def set_fast_symbolization(self, fast: bool) -> None:
        self.fast = fast

    def open(self, path: str, start: int, limit: int, offset: int) -> ElfSegment:
        try:
            f = open(path, "rb")
        except OSError as e:
            raise ObjectOpenError(f"{path}: {e.strerror or e}") from e

        try:
            elf = ELFFile(f)
            base = _compute_base(elf, start, limit, offset)
            seg = ElfSegment(path, f, elf, base, fast=self.fast, addr2line=self.addr2line)
        except ELFError as e:
            f.close()
            raise ObjectOpenError(f"{path}: {e}") from e
        except BaseException:
            f.close()
            raise

        LOG.debug(
            "Opened %s (base=%#x, build-id=%s, fast=%s)",
            path,
            base,
            seg.build_id() or "None",
            self.fast,
        )
        return seg


__all__ = [
    "ElfInspector",
    "ElfSegment",
    "Frame",
    "ObjectOpenError",
    "SymbolLookupError",
]
