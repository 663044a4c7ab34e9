#!/usr/bin/env python3
"""
symbolizer.py

High-level symbolization workflow.

Responsibilities:
  - Parse the symbolization mode once (mode.py).
  - Symbolize locally: open each referenced mapping (mapping.py), ask the
    object inspector for the frames at every location address and merge
    them into the profile, interning functions by (name, system name, file).
  - Fall back to remote symbolization (symbolz.py) when local
    symbolization is disabled or fails as a whole.
  - Normalize function names (demangle.py).
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from profsym import symbolz
from profsym.demangle import CxxFiltDemangler, demangle
from profsym.errors import RemoteSymbolizationError, SymbolizationError
from profsym.mapping import MappingTable, new_mapping_table
from profsym.mode import SymbolizeConfig, parse_mode
from profsym.objtool import SymbolLookupError
from profsym.profile import FunctionTable, Line, Mapping, Profile


LOG = logging.getLogger("symbolizer")


def local_symbolize(prof: Profile, obj, force: bool = False, fast: bool = False) -> None:
    """
    Add symbol and line number information to all locations of prof whose
    mapping can be opened by obj.

    Locations the inspector knows nothing about keep whatever lines they
    already had. When fast is set the inspector is switched to fast mode
    for this pass only and restored afterwards.
    """
    set_fast = getattr(obj, "set_fast_symbolization", None)
    if not fast or set_fast is None:
        _local_symbolize(prof, obj, force)
        return

    previous = bool(getattr(obj, "fast", False))
    set_fast(True)
    try:
        _local_symbolize(prof, obj, force)
    finally:
        set_fast(previous)


def _prefetch(mt: MappingTable, prof: Profile) -> None:
    """Let segments that support it resolve all their addresses in one go."""
    addrs: Dict[Mapping, List[int]] = {}
    for loc in prof.locations:
        if loc.mapping is not None and loc.mapping in mt:
            addrs.setdefault(loc.mapping, []).append(loc.address)

    for m, wanted in addrs.items():
        prefetch = getattr(mt.get(m), "prefetch", None)
        if prefetch is None:
            continue
        try:
            prefetch(wanted)
        except SymbolLookupError as e:
            LOG.warning("Batch lookup failed for %s, falling back to single lookups: %s", m.file, e)


def _local_symbolize(prof: Profile, obj, force: bool) -> None:
    functions = FunctionTable(prof)
    resolved = 0

    with new_mapping_table(prof, obj, force) as mt:
        _prefetch(mt, prof)

        for loc in prof.locations:
            segment = mt.get(loc.mapping)
            if segment is None:
                # Nothing to do.
                continue

            try:
                stack = segment.source_line(loc.address)
            except SymbolLookupError as e:
                LOG.debug("No frames for %#x in %s: %s", loc.address, loc.mapping.file, e)
                continue
            if not stack:
                continue

            m = loc.mapping
            lines: List[Line] = []
            for frame in stack:
                if frame.func:
                    m.has_functions = True
                if frame.file:
                    m.has_filenames = True
                if frame.line:
                    m.has_line_numbers = True
                fn = functions.intern(frame.func, frame.func, frame.file)
                lines.append(Line(function=fn, line=frame.line))

            loc.lines = lines
            m.has_inline_frames = True
            resolved += 1

    LOG.info(
        "Locally symbolized %d of %d locations (%d new functions)",
        resolved,
        len(prof.locations),
        len(functions),
    )


class Symbolizer:
    """
    Symbolizes a profile with an object inspector, optional symbol servers
    and a demangler.

    post is the transport used for remote symbolization; it takes
    (url, payload) and returns the response body.
    """

    def __init__(
        self,
        obj,
        demangler: Optional[CxxFiltDemangler] = None,
        post: Optional[Callable[[str, str], bytes]] = None,
    ) -> None:
        self.obj = obj
        self.demangler = demangler
        self.post = post if post is not None else symbolz.post_url

    def symbolize(
        self,
        mode: Optional[str],
        sources: Optional[symbolz.MappingSources],
        prof: Profile,
    ) -> SymbolizeConfig:
        """
        Symbolize prof according to mode. Local symbolization is tried
        first; symbol servers are only used if it is disabled or fails.

        Returns the parsed configuration. Raises RemoteSymbolizationError
        when remote symbolization was needed and ran out of options.
        """
        cfg = parse_mode(mode)
        if cfg.skip:
            return cfg

        remote = cfg.try_remote
        if cfg.try_local:
            try:
                local_symbolize(prof, self.obj, force=cfg.force, fast=cfg.fast)
            except SymbolizationError as e:
                LOG.warning("Local symbolization failed: %s", e)
            else:
                remote = False  # Already symbolized, no remote pass needed.

        if remote:
            symbolz.symbolize(prof, sources or {}, self.post, force=cfg.force)

        demangle(prof, force=cfg.force, mode=cfg.demangle_mode, demangler=self.demangler)
        return cfg


__all__ = [
    "RemoteSymbolizationError",
    "SymbolizationError",
    "Symbolizer",
    "local_symbolize",
]
