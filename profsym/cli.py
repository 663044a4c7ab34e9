#!/usr/bin/env python3
"""
cli.py

Command line entry point for profsym.

Responsibilities:
  - Load a JSON profile (profile.py)
  - Symbolize it locally and/or through symbol servers (symbolizer.py)
  - Print a per-location report or write it to a file (output_formatter.py)
  - Optionally write the symbolized profile back as JSON
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import List, Optional

from profsym.errors import SymbolizationError
from profsym.mode import USAGE
from profsym.objtool import ElfInspector
from profsym.output_formatter import format_profile, write_lines_to_file
from profsym.profile import Profile, ProfileFormatError, load_profile, save_profile
from profsym.symbolizer import Symbolizer
from profsym.symbolz import MappingSource, MappingSources, post_url


LOG = logging.getLogger("profsym")


# ---------------------------------------------------------------------------
# CLI helpers
# ---------------------------------------------------------------------------

def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        description="profsym - resolve profile addresses to function, file and line.",
    )
    p.add_argument(
        "profile",
        metavar="PROFILE",
        help="Path to a JSON profile.",
    )
    p.add_argument(
        "--symbolize",
        metavar="MODE",
        help=f"Symbolization mode: {USAGE}. Default: local, then remote.",
    )
    p.add_argument(
        "--binary",
        help="Path to the main binary. Overrides the file of the first mapping.",
    )
    p.add_argument(
        "--symbol-server",
        action="append",
        default=[],
        metavar="URL",
        help="Profile source URL used for remote symbolization. Can be given multiple times.",
    )
    p.add_argument(
        "--http-timeout",
        type=float,
        default=None,
        help="Timeout in seconds for each symbol server request (default: none).",
    )
    p.add_argument(
        "--addr2line",
        default="addr2line",
        help="addr2line executable (default: addr2line).",
    )
    p.add_argument(
        "--output",
        help="Write the report to this file instead of stdout.",
    )
    p.add_argument(
        "--write-profile",
        metavar="FILE",
        help="Write the symbolized profile as JSON to this file.",
    )
    p.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable debug logging.",
    )
    return p


def build_sources(prof: Profile, urls: List[str]) -> MappingSources:
    """
    Every symbol server URL is a candidate for every mapping.
    """
    sources: MappingSources = {}
    for m in prof.mappings:
        sources.setdefault(m.file, []).extend(MappingSource(source=u, start=m.start) for u in urls)
    return sources


def run(args: argparse.Namespace) -> int:
    profile_path = Path(args.profile)
    if not profile_path.is_file():
        LOG.error("Profile does not exist: %s", profile_path)
        return 1

    try:
        prof = load_profile(profile_path)
    except (OSError, ProfileFormatError) as e:
        LOG.error("Failed to load profile %s: %s", profile_path, e)
        return 1

    if args.binary:
        if not prof.mappings:
            LOG.warning("Profile has no mappings; ignoring --binary.")
        else:
            prof.mappings[0].file = args.binary

    timeout = args.http_timeout

    def post(url: str, payload: str) -> bytes:
        return post_url(url, payload, timeout=timeout)

    sym = Symbolizer(ElfInspector(addr2line=args.addr2line), post=post)
    try:
        sym.symbolize(args.symbolize, build_sources(prof, args.symbol_server), prof)
    except SymbolizationError as e:
        LOG.error("%s", e)
        return 1

    lines = format_profile(prof)
    if args.output:
        out_path = Path(args.output)
        LOG.info("Writing report to: %s", out_path)
        write_lines_to_file(lines, out_path)
    else:
        print("\n".join(lines))

    if args.write_profile:
        save_profile(prof, args.write_profile)

    return 0


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def main(argv: Optional[List[str]] = None) -> None:
    args = build_argparser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(levelname)s] %(message)s",
    )

    rc = run(args)
    if rc:
        raise SystemExit(rc)


if __name__ == "__main__":
    main()
