#!/usr/bin/env python3
"""
mapping.py

Mapping table for local symbolization.

Responsibilities:
  - Decide which profile mappings can be symbolized locally.
  - Open one segment per such mapping through the object inspector and
    check its build-id against the profile.
  - Own the opened segments and close all of them when the pass ends.
"""

from __future__ import annotations

import logging
import posixpath
from typing import Dict, Optional, Set

from profsym.objtool import ObjectOpenError
from profsym.profile import Mapping, Profile


LOG = logging.getLogger("mapping")


def is_vdso(path: str) -> bool:
    """Virtual system mappings never have a binary to symbolize against."""
    name = posixpath.basename(path)
    return name == "[vdso]" or name.startswith("linux-vdso")


class MappingTable:
    """
    Opened segments for one symbolization pass, keyed by the Mapping record itself.

    Use as a context manager; every segment is closed exactly once on exit.
    """

    def __init__(self, profile: Profile) -> None:
        self.profile = profile
        self._segments: Dict[Mapping, object] = {}

    def __enter__(self) -> "MappingTable":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def __len__(self) -> int:
        return len(self._segments)

    def __contains__(self, mapping: Mapping) -> bool:
        return mapping in self._segments

    def add(self, mapping: Mapping, segment) -> None:
        self._segments[mapping] = segment

    def get(self, mapping: Optional[Mapping]):
        if mapping is None:
            return None
        return self._segments.get(mapping)

    def close(self) -> None:
        """Release any open segments."""
        segments = list(self._segments.items())
        self._segments.clear()
        for mapping, segment in segments:
            try:
                segment.close()
            except OSError as e:
                LOG.warning("Failed to close segment for %s: %s", mapping.file, e)


def _referenced_mappings(profile: Profile) -> Set[Mapping]:
    return {loc.mapping for loc in profile.locations if loc.mapping is not None}


def new_mapping_table(profile: Profile, obj, force: bool = False) -> MappingTable:
    """
    Build a MappingTable for profile.

    Mappings are skipped (with a warning where useful) when they are not
    referenced by any location, are already symbolized and force is not
    set, have no file name, are virtual system mappings, fail to open, or
    have a build-id that does not match the opened binary.
    """
    mt = MappingTable(profile)
    used = _referenced_mappings(profile)

    try:
        missing_binaries = False
        for midx, m in enumerate(profile.mappings):
            if m not in used:
                continue

            # Do not re-symbolize a mapping that has already been symbolized.
            if not force and (m.has_functions or m.has_filenames or m.has_line_numbers):
                LOG.debug("Mapping %d already symbolized, skipping", m.id)
                continue

            if not m.file:
                if midx == 0:
                    LOG.warning(
                        "Main binary filename not available.\n"
                        "Try passing the path to the main binary with --binary."
                    )
                    continue
                missing_binaries = True
                continue

            if is_vdso(m.file):
                continue

            name = posixpath.basename(m.file)
            try:
                segment = obj.open(m.file, m.start, m.limit, m.offset)
            except ObjectOpenError as e:
                LOG.warning("Local symbolization failed for %s: %s", name, e)
                continue

            fid = segment.build_id()
            if m.build_id and fid and fid != m.build_id:
                LOG.warning("Local symbolization failed for %s: build ID mismatch", name)
                segment.close()
                continue

            mt.add(m, segment)

        if missing_binaries:
            LOG.warning("Some binary filenames not available. Symbolization may be incomplete.")
    except BaseException:
        mt.close()
        raise

    LOG.info("Opened %d of %d referenced mappings", len(mt), len(used))
    return mt


__all__ = [
    "MappingTable",
    "is_vdso",
    "new_mapping_table",
]
