"""
mode.py

Parse the -symbolize directive string into a SymbolizeConfig.

Grammar (case-insensitive, ':'-separated):

    [local|fastlocal|remote|none][:force][:demangle=[none|full|templates|default]]

Unrecognized tokens are reported and ignored.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional


LOG = logging.getLogger("mode")

USAGE = "[local|fastlocal|remote|none][:force][:demangle=[none|full|templates|default]]"


class DemangleMode(enum.Enum):
    DEFAULT = ""
    FULL = "full"
    NONE = "none"
    TEMPLATES = "templates"


@dataclass
class SymbolizeConfig:
    """
    skip:
        Set by 'none' / 'no'. Nothing is symbolized or demangled.
    fast:
        Set by 'fastlocal'. The object inspector is asked for its faster,
        function-name-only mode where it has one.
    """
    try_local: bool = True
    try_remote: bool = True
    force: bool = False
    demangle_mode: DemangleMode = DemangleMode.DEFAULT
    fast: bool = False
    skip: bool = False


def parse_mode(mode: Optional[str]) -> SymbolizeConfig:
    cfg = SymbolizeConfig()
    if mode is None:
        return cfg

    for token in mode.lower().split(":"):
        if token in ("none", "no"):
            return SymbolizeConfig(try_local=False, try_remote=False, skip=True)
        if token in ("local", "fastlocal"):
            cfg.try_local, cfg.try_remote = True, False
            cfg.fast = token == "fastlocal"
            continue
        if token == "remote":
            cfg.try_local, cfg.try_remote = False, True
            continue
        if token in ("", "force"):
            cfg.force = True
            continue

        if token.startswith("demangle="):
            value = token[len("demangle="):]
            if value in ("full", "none", "templates"):
                cfg.demangle_mode = DemangleMode(value)
                cfg.force = True
                continue
            if value == "default":
                continue

        LOG.warning("ignoring unrecognized symbolization option: %s", token)
        LOG.warning("expecting -symbolize=%s", USAGE)

    return cfg


__all__ = [
    "DemangleMode",
    "SymbolizeConfig",
    "USAGE",
    "parse_mode",
]
