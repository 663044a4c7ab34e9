#!/usr/bin/env python3
"""
output_formatter.py

Formatting utilities for symbolized profiles.

Convention, one block per location:

    #<id> 0x<address> in <function> <file>:<line>
        inlined: <caller> <file>:<line>

Unresolved locations keep the stack-dump style hint instead:

    #<id> 0x<address> in ?? (/path/to/lib.so+0xOFFSET) (BuildId: XXXXX...)
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List

from profsym.profile import Line, Location, Profile


def _file_line(line: Line) -> str:
    filename = line.function.filename or "??"
    return f"{filename}:{line.line if line.line else '?'}"


def _function_name(line: Line) -> str:
    return line.function.name or line.function.system_name or "??"


def _unresolved_hint(loc: Location) -> str:
    m = loc.mapping
    if m is None or not m.file:
        return ""

    hint = f" ({m.file}+{loc.address - m.start + m.offset:#x})"
    if m.build_id:
        hint += f" (BuildId: {m.build_id})"
    return hint


def format_location(loc: Location) -> List[str]:
    head = f"#{loc.id} {loc.address:#x}"
    if not loc.lines:
        return [f"{head} in ??{_unresolved_hint(loc)}"]

    inner = loc.lines[0]
    out = [f"{head} in {_function_name(inner)} {_file_line(inner)}"]
    for line in loc.lines[1:]:
        out.append(f"    inlined: {_function_name(line)} {_file_line(line)}")
    return out


def format_profile(prof: Profile) -> List[str]:
    lines: List[str] = []
    for loc in prof.locations:
        lines.extend(format_location(loc))
    return lines


def write_lines_to_file(lines: Iterable[str], path: Path) -> None:
    with path.open("w", encoding="utf-8") as f:
        for line in lines:
            f.write(line)
            f.write("\n")


__all__ = [
    "format_location",
    "format_profile",
    "write_lines_to_file",
]
