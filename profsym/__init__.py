"""
profsym

Profile symbolizer: turns raw addresses recorded in a profile into
function / file / line information and simplifies demangled names.
"""

from profsym.demangle import demangle
from profsym.mode import DemangleMode, SymbolizeConfig, parse_mode
from profsym.profile import Function, Line, Location, Mapping, Profile
from profsym.symbolizer import SymbolizationError, Symbolizer, local_symbolize

__version__ = "0.3.0"

__all__ = [
    "DemangleMode",
    "Function",
    "Line",
    "Location",
    "Mapping",
    "Profile",
    "SymbolizationError",
    "SymbolizeConfig",
    "Symbolizer",
    "demangle",
    "local_symbolize",
    "parse_mode",
]
