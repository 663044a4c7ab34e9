#!/usr/bin/env python3
"""
symbolz.py

Remote symbolization through a symbolz-style symbol server.

For each mapping that still needs symbols, the candidate sources recorded
for it are tried in order. Each attempt POSTs the list of addresses to the
server, e.g.

    0x401136+0x4011a0+0x4012f4

and expects one line per resolved address back:

    0x401136 main
    0x4011a0 std::vector<int>::push_back(int const&)

The first candidate that answers ends the search for that mapping.
"""

from __future__ import annotations

import logging
import re
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from profsym.errors import RemoteSymbolizationError
from profsym.mapping import is_vdso
from profsym.profile import FunctionTable, Line, Mapping, Profile


LOG = logging.getLogger("symbolz")


@dataclass
class MappingSource:
    """
    A place the profile (or one of its mappings) came from.

    start is the address at which the source saw the mapping; profile
    addresses are adjusted by (start - mapping.start) before querying.
    """
    source: str
    start: int = 0


MappingSources = Dict[str, List[MappingSource]]
PostFunc = Callable[[str, str], bytes]

_SYMBOLZ_LINE_RE = re.compile(r"^(0x[0-9a-fA-F]+)\s+(.*)$")

# Profile handlers that gperftools' HTTP server exposes next to /pprof/symbol.
_GPERF_HANDLERS = ("/pprof/heap", "/pprof/growth", "/pprof/profile", "/pprof/pmuprofile", "/pprof/contention")


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

def post_url(url: str, payload: str, timeout: Optional[float] = None) -> bytes:
    """
    POST payload to url and return the response body.

    Raises RemoteSymbolizationError on transport errors and non-200 answers.
    """
    req = urllib.request.Request(
        url,
        data=payload.encode("utf-8"),
        headers={"Content-Type": "application/octet-stream"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            if resp.status != 200:
                raise RemoteSymbolizationError(f"server response: {resp.status} {resp.reason}")
            return resp.read()
    except urllib.error.HTTPError as e:
        raise RemoteSymbolizationError(f"server response: {e.code} {e.reason}") from e
    except (urllib.error.URLError, OSError) as e:
        raise RemoteSymbolizationError(f"http post {url}: {e}") from e


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def symbolz_url(source: str) -> str:
    """
    Return the symbol server URL for a profile source, or "" if the source
    is not an HTTP URL.
    """
    u = urllib.parse.urlsplit(source)
    if u.scheme not in ("http", "https") or not u.netloc:
        return ""

    path = u.path
    if "/debug/pprof/" in path or path.endswith(_GPERF_HANDLERS):
        path = path.rstrip("/").rsplit("/", 1)[0] + "/symbol"
    else:
        path = "/symbolz"
    return urllib.parse.urlunsplit((u.scheme, u.netloc, path, "", ""))


def _candidates(sources: MappingSources, m: Mapping) -> List[MappingSource]:
    out = list(sources.get(m.file, []))
    if m.build_id:
        out.extend(sources.get(m.build_id, []))
    return out


def _symbolize_mapping(
    prof: Profile,
    m: Mapping,
    source: MappingSource,
    url: str,
    post: PostFunc,
    functions: FunctionTable,
) -> int:
    """
    Query url for the unsymbolized addresses of mapping m and merge the
    answer into prof. Returns the number of locations updated.
    """
    offset = source.start - m.start
    addrs: List[str] = []
    for loc in prof.locations:
        if loc.mapping is m and loc.address != 0 and not loc.lines:
            addrs.append(f"{loc.address + offset:#x}")
    if not addrs:
        return 0

    body = post(url, "+".join(addrs))

    lines: Dict[int, Line] = {}
    for raw in body.decode("utf-8", errors="replace").splitlines():
        match = _SYMBOLZ_LINE_RE.match(raw.strip())
        if not match:
            continue
        addr = int(match.group(1), 16) - offset
        name = match.group(2)
        fn = functions.intern(name, name)
        lines[addr] = Line(function=fn)

    updated = 0
    for loc in prof.locations:
        if loc.mapping is not m:
            continue
        line = lines.get(loc.address)
        if line is not None:
            loc.lines = [line]
            updated += 1
    return updated


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def symbolize(
    prof: Profile,
    sources: MappingSources,
    post: PostFunc,
    force: bool = False,
) -> None:
    """
    Symbolize the mappings of prof that have no function names yet using
    the symbol servers listed in sources.

    Raises RemoteSymbolizationError if some mapping needed remote symbols
    and no candidate succeeded for any mapping.
    """
    functions = FunctionTable(prof)
    needed = 0
    succeeded = 0
    last_error: Optional[Exception] = None

    for m in prof.mappings:
        if not force and m.has_functions:
            continue
        if is_vdso(m.file):
            continue
        if not any(loc.mapping is m for loc in prof.locations):
            continue
        needed += 1

        for source in _candidates(sources, m):
            url = symbolz_url(source.source)
            if not url:
                continue
            try:
                updated = _symbolize_mapping(prof, m, source, url, post, functions)
            except (RemoteSymbolizationError, OSError) as e:
                LOG.warning("Remote symbolization via %s failed: %s", url, e)
                last_error = e
                continue

            LOG.info("Symbolized %d locations of %s via %s", updated, m.file or "<main>", url)
            m.has_functions = True
            succeeded += 1
            break

    if needed and not succeeded:
        if last_error is not None:
            raise RemoteSymbolizationError(f"remote symbolization failed: {last_error}") from last_error
        raise RemoteSymbolizationError("no symbolization sources available")


__all__ = [
    "MappingSource",
    "MappingSources",
    "RemoteSymbolizationError",
    "post_url",
    "symbolize",
    "symbolz_url",
]
