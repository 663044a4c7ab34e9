from __future__ import annotations

from typing import Dict, List, Optional

import pytest

from profsym.objtool import Frame, ObjectOpenError, SymbolLookupError
from profsym.profile import Function, Line, Location, Mapping, Profile


class FakeSegment:
    def __init__(self, frames: Dict[int, List[Frame]], build_id: str = "", fail: Optional[set] = None):
        self.frames = frames
        self._build_id = build_id
        self.fail = fail or set()
        self.close_count = 0
        self.prefetched: List[List[int]] = []

    def build_id(self) -> str:
        return self._build_id

    def source_line(self, addr: int) -> List[Frame]:
        if addr in self.fail:
            raise SymbolLookupError(f"lookup failed for {addr:#x}")
        return list(self.frames.get(addr, []))

    def prefetch(self, addrs) -> None:
        self.prefetched.append(sorted(addrs))

    def close(self) -> None:
        self.close_count += 1


class FakeInspector:
    """
    segments: file path -> FakeSegment. Paths not listed fail to open.
    """

    def __init__(self, segments: Optional[Dict[str, FakeSegment]] = None):
        self.segments = segments or {}
        self.opened: List[str] = []
        self.fast = False
        self.fast_at_open: List[bool] = []

    def set_fast_symbolization(self, fast: bool) -> None:
        self.fast = fast

    def open(self, path, start, limit, offset):
        self.opened.append(path)
        self.fast_at_open.append(self.fast)
        seg = self.segments.get(path)
        if seg is None:
            raise ObjectOpenError(f"{path}: No such file or directory")
        return seg


class FakeDemangler:
    """Demangles only the names it was told about."""

    def __init__(self, table: Optional[Dict[str, str]] = None):
        self.table = table or {}
        self.calls: List[tuple] = []

    def filter(self, name, *options):
        self.calls.append((name, options))
        return self.table.get(name, name)


@pytest.fixture
def simple_profile() -> Profile:
    """One mapping, one location at 0x1010, nothing symbolized yet."""
    m = Mapping(id=1, start=0x1000, limit=0x2000, file="/bin/app", build_id="abcd")
    loc = Location(id=1, address=0x1010, mapping=m)
    return Profile(mappings=[m], locations=[loc])


def make_function(fid: int, name: str, system_name: Optional[str] = None, filename: str = "") -> Function:
    return Function(
        id=fid,
        name=name,
        system_name=name if system_name is None else system_name,
        filename=filename,
    )


def profile_with_functions(*names: str) -> Profile:
    prof = Profile()
    for i, name in enumerate(names):
        fn = make_function(i + 1, name)
        prof.functions.append(fn)
        prof.locations.append(Location(id=i + 1, address=0x10 * (i + 1), lines=[Line(function=fn)]))
    return prof
