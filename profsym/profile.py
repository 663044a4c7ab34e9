#!/usr/bin/env python3
"""
profile.py

Profile data model for profsym.

Responsibilities:
  - Mapping / Location / Line / Function records and the Profile that owns
    them (list order is significant: ids are assigned from it).
  - FunctionKey + FunctionTable: structural interning of functions during a
    symbolization pass.
  - Loading and saving the JSON profile format used by the CLI.

This module does NOT symbolize anything.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, NamedTuple, Optional, Union


LOG = logging.getLogger("profile")


class ProfileFormatError(ValueError):
    """Raised when a JSON profile cannot be turned into a Profile."""


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass(eq=False)
class Mapping:
    """
    One binary region referenced by the profile.

    The has_* flags record what symbolization has been able to provide so
    far. They are only ever set, never cleared, by a symbolization pass.
    """
    id: int
    start: int = 0
    limit: int = 0
    offset: int = 0
    file: str = ""
    build_id: str = ""
    has_functions: bool = False
    has_filenames: bool = False
    has_line_numbers: bool = False
    has_inline_frames: bool = False


@dataclass(eq=False)
class Function:
    """
    Function record. name is the display name, system_name the name as
    reported by the binary (possibly mangled).
    """
    id: int
    name: str = ""
    system_name: str = ""
    filename: str = ""

    def key(self) -> "FunctionKey":
        return FunctionKey(self.name, self.system_name, self.filename)


@dataclass
class Line:
    function: Function
    line: int = 0


@dataclass(eq=False)
class Location:
    """
    One sampled address. lines holds the call frames at that address,
    innermost first; more than one entry means inlining.
    """
    id: int
    address: int = 0
    mapping: Optional[Mapping] = None
    lines: List[Line] = field(default_factory=list)


@dataclass
class Profile:
    mappings: List[Mapping] = field(default_factory=list)
    locations: List[Location] = field(default_factory=list)
    functions: List[Function] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Function interning
# ---------------------------------------------------------------------------

class FunctionKey(NamedTuple):
    """Structural identity of a Function."""
    name: str
    system_name: str
    filename: str


class FunctionTable:
    """
    Insertion-ordered interning table for one symbolization pass.

    New functions are appended to the profile with sequential ids starting
    after the largest id already in the profile. Functions already present
    in the profile before the pass are not consulted.
    """

    def __init__(self, profile: Profile) -> None:
        self.profile = profile
        self._functions: Dict[FunctionKey, Function] = {}
        self._next_id = max((f.id for f in profile.functions), default=0) + 1

    def __len__(self) -> int:
        return len(self._functions)

    def intern(self, name: str, system_name: str, filename: str = "") -> Function:
        key = FunctionKey(name, system_name, filename)
        fn = self._functions.get(key)
        if fn is not None:
            return fn

        fn = Function(
            id=self._next_id,
            name=name,
            system_name=system_name,
            filename=filename,
        )
        self._next_id += 1
        self._functions[key] = fn
        self.profile.functions.append(fn)
        return fn


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------

def _to_int(value: Any, what: str) -> int:
    """
    Accept ints and hex / decimal strings ("0x401000", "4198400").
    """
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ProfileFormatError(f"{what}: expected integer, got {value!r}")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError:
            pass
    raise ProfileFormatError(f"{what}: expected integer, got {value!r}")


def profile_from_dict(data: Dict[str, Any]) -> Profile:
    """
    Build a Profile from the decoded JSON document.

    Missing keys take their defaults. References to unknown mapping or
    function ids raise ProfileFormatError.
    """
    if not isinstance(data, dict):
        raise ProfileFormatError("profile document must be a JSON object")

    prof = Profile()
    mappings_by_id: Dict[int, Mapping] = {}
    functions_by_id: Dict[int, Function] = {}

    for i, m in enumerate(data.get("mappings", [])):
        mapping = Mapping(
            id=_to_int(m.get("id", i + 1), "mapping id"),
            start=_to_int(m.get("start"), "mapping start"),
            limit=_to_int(m.get("limit"), "mapping limit"),
            offset=_to_int(m.get("offset"), "mapping offset"),
            file=m.get("file") or "",
            build_id=m.get("build_id") or "",
            has_functions=bool(m.get("has_functions", False)),
            has_filenames=bool(m.get("has_filenames", False)),
            has_line_numbers=bool(m.get("has_line_numbers", False)),
            has_inline_frames=bool(m.get("has_inline_frames", False)),
        )
        if mapping.id in mappings_by_id:
            raise ProfileFormatError(f"duplicate mapping id {mapping.id}")
        mappings_by_id[mapping.id] = mapping
        prof.mappings.append(mapping)

    for i, f in enumerate(data.get("functions", [])):
        fn = Function(
            id=_to_int(f.get("id", i + 1), "function id"),
            name=f.get("name") or "",
            system_name=f.get("system_name") or "",
            filename=f.get("filename") or "",
        )
        if fn.id in functions_by_id:
            raise ProfileFormatError(f"duplicate function id {fn.id}")
        functions_by_id[fn.id] = fn
        prof.functions.append(fn)

    for i, loc in enumerate(data.get("locations", [])):
        mapping: Optional[Mapping] = None
        if loc.get("mapping_id") is not None:
            mapping_id = _to_int(loc["mapping_id"], "location mapping_id")
            mapping = mappings_by_id.get(mapping_id)
            if mapping is None:
                raise ProfileFormatError(f"location references unknown mapping {mapping_id}")

        lines: List[Line] = []
        for ln in loc.get("lines", []):
            function_id = _to_int(ln.get("function_id"), "line function_id")
            fn = functions_by_id.get(function_id)
            if fn is None:
                raise ProfileFormatError(f"line references unknown function {function_id}")
            lines.append(Line(function=fn, line=_to_int(ln.get("line"), "line number")))

        prof.locations.append(
            Location(
                id=_to_int(loc.get("id", i + 1), "location id"),
                address=_to_int(loc.get("address"), "location address"),
                mapping=mapping,
                lines=lines,
            )
        )

    return prof


def profile_to_dict(prof: Profile) -> Dict[str, Any]:
    return {
        "mappings": [
            {
                "id": m.id,
                "start": m.start,
                "limit": m.limit,
                "offset": m.offset,
                "file": m.file,
                "build_id": m.build_id,
                "has_functions": m.has_functions,
                "has_filenames": m.has_filenames,
                "has_line_numbers": m.has_line_numbers,
                "has_inline_frames": m.has_inline_frames,
            }
            for m in prof.mappings
        ],
        "functions": [
            {
                "id": f.id,
                "name": f.name,
                "system_name": f.system_name,
                "filename": f.filename,
            }
            for f in prof.functions
        ],
        "locations": [
            {
                "id": loc.id,
                "mapping_id": loc.mapping.id if loc.mapping is not None else None,
                "address": loc.address,
                "lines": [{"function_id": ln.function.id, "line": ln.line} for ln in loc.lines],
            }
            for loc in prof.locations
        ],
    }


def load_profile(path: Union[str, Path]) -> Profile:
    path = Path(path)
    LOG.info("Loading profile: %s", path)
    with path.open("r", encoding="utf-8") as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ProfileFormatError(f"{path}: invalid JSON: {e}") from e
    prof = profile_from_dict(data)
    LOG.info(
        "Loaded %d mappings, %d locations, %d functions from %s",
        len(prof.mappings),
        len(prof.locations),
        len(prof.functions),
        path,
    )
    return prof


def save_profile(prof: Profile, path: Union[str, Path]) -> None:
    path = Path(path)
    LOG.info("Writing profile: %s", path)
    with path.open("w", encoding="utf-8") as f:
        json.dump(profile_to_dict(prof), f, indent=2)
        f.write("\n")


__all__ = [
    "Mapping",
    "Function",
    "FunctionKey",
    "FunctionTable",
    "Line",
    "Location",
    "Profile",
    "ProfileFormatError",
    "load_profile",
    "save_profile",
    "profile_from_dict",
    "profile_to_dict",
]
