#!/usr/bin/env python3
"""
demangle.py

Function name normalization.

Responsibilities:
  - Demangle function names in a profile and simplify them according to
    the demangle mode (drop parameters / template arguments / clone
    suffixes).
  - For names that are not mangled but already look like demangled C++,
    strip parameter lists and template argument lists heuristically.

The actual demangling is done by c++filt through CxxFiltDemangler. Any
object with a compatible filter(name, *options) method can be used instead.
"""

from __future__ import annotations

import enum
import logging
import re
import subprocess
from typing import Dict, FrozenSet, List, Optional, Tuple

from profsym.mode import DemangleMode
from profsym.profile import Profile


LOG = logging.getLogger("demangle")


class Option(enum.Enum):
    NO_PARAMS = "no-params"
    NO_TEMPLATE_PARAMS = "no-template-params"
    NO_CLONES = "no-clones"


_MODE_OPTIONS: Dict[DemangleMode, Tuple[Option, ...]] = {
    # demangled, simplified: no parameters, no templates, no return type
    DemangleMode.DEFAULT: (Option.NO_PARAMS, Option.NO_TEMPLATE_PARAMS),
    # demangled, simplified: no parameters, no return type
    DemangleMode.TEMPLATES: (Option.NO_PARAMS,),
    DemangleMode.FULL: (Option.NO_CLONES,),
}


# ---------------------------------------------------------------------------
# Heuristics
# ---------------------------------------------------------------------------

def remove_matching(name: str, start: str, end: str) -> str:
    """
    Remove nested start..end groups from name.

    Only outermost groups are deleted, so "f(pair<a,b>)" with '(' / ')'
    becomes "f". An end delimiter without a matching start means the name
    is not what we think it is; it is returned unchanged.
    """
    original = name
    nesting = 0
    first = 0
    current = 0
    while current < len(name):
        c = name[current]
        if c == start:
            nesting += 1
            if nesting == 1:
                first = current
        elif c == end:
            nesting -= 1
            if nesting < 0:
                return original  # Mismatch, abort
            if nesting == 0:
                name = name[:first] + name[current + 1:]
                current = first
                continue
        current += 1
    return name


def looks_like_demangled_cplusplus(name: str) -> bool:
    """
    Heuristic to decide if a name is the result of demangling C++. If so,
    parameter and template lists can be stripped from it.
    """
    if ".<" in name:  # Skip java names of the form "class.<init>"
        return False
    return any(c in name for c in "<>[]") or "::" in name


# ---------------------------------------------------------------------------
# c++filt
# ---------------------------------------------------------------------------

_CLONE_SUFFIX_RE = re.compile(r"\s*\[clone [^\]]*\]")


class CxxFiltDemangler:
    """
    Demangles Itanium C++ names with c++filt.

    c++filt only knows about parameters (-p); template argument lists and
    clone suffixes are removed from its output afterwards.
    """

    def __init__(self, executable: str = "c++filt") -> None:
        self.executable = executable
        self._cache: Dict[Tuple[str, FrozenSet[Option]], str] = {}
        self._missing = False

    def filter(self, name: str, *options: Option) -> str:
        if not name.startswith("_Z") or self._missing:
            return name

        opts = frozenset(options)
        key = (name, opts)
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        demangled = self._run(name, opts)
        if demangled != name:
            if Option.NO_TEMPLATE_PARAMS in opts:
                demangled = remove_matching(demangled, "<", ">")
            if Option.NO_CLONES in opts:
                demangled = _CLONE_SUFFIX_RE.sub("", demangled)

        self._cache[key] = demangled
        return demangled

    def _run(self, name: str, opts: FrozenSet[Option]) -> str:
        cmd: List[str] = [self.executable]
        if Option.NO_PARAMS in opts:
            cmd.append("-p")
        cmd.append(name)

        try:
            proc = subprocess.run(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                check=False,
            )
        except FileNotFoundError:
            LOG.warning("%s not found; names will not be demangled", self.executable)
            self._missing = True
            return name

        if proc.returncode != 0:
            LOG.debug("%s failed for %s: %s", self.executable, name, proc.stderr.strip())
            return name

        out = proc.stdout.strip()
        return out or name


DEFAULT_DEMANGLER = CxxFiltDemangler()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def demangle(
    prof: Profile,
    force: bool = False,
    mode: DemangleMode = DemangleMode.DEFAULT,
    demangler: Optional[CxxFiltDemangler] = None,
) -> None:
    """
    Update the function names in prof with demangled C++ names, simplified
    according to mode. If force is set, names that were already demangled
    are recomputed from their system names.
    """
    if force:
        # Remove the current demangled names to force demangling.
        for fn in prof.functions:
            if fn.name and fn.system_name:
                fn.name = fn.system_name

    if mode == DemangleMode.NONE:
        return

    if demangler is None:
        demangler = DEFAULT_DEMANGLER
    options = _MODE_OPTIONS[mode]

    changed = 0
    for fn in prof.functions:
        if fn.name and fn.system_name != fn.name:
            continue  # Already demangled.

        demangled = demangler.filter(fn.system_name, *options)
        if demangled != fn.system_name:
            fn.name = demangled
            changed += 1
            continue

        # Could not demangle. Apply heuristics in case the name is
        # already demangled.
        name = fn.system_name
        if looks_like_demangled_cplusplus(name):
            if mode in (DemangleMode.DEFAULT, DemangleMode.TEMPLATES):
                name = remove_matching(name, "(", ")")
            if mode == DemangleMode.DEFAULT:
                name = remove_matching(name, "<", ">")
        if name != fn.name:
            changed += 1
        fn.name = name

    LOG.info("Demangled %d of %d function names (mode=%s)", changed, len(prof.functions), mode.name.lower())


__all__ = [
    "CxxFiltDemangler",
    "DEFAULT_DEMANGLER",
    "Option",
    "demangle",
    "looks_like_demangled_cplusplus",
    "remove_matching",
]
