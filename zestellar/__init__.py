"""Star extraction and blind plate-solving (lazy exports).

Heavy submodules (scipy, astropy) are imported on first attribute access
via module ``__getattr__`` (PEP 562).
"""

from __future__ import annotations

from typing import Any

__all__ = [
    "Aborted",
    "ExtractionError",
    "IndexCatalog",
    "IndexFile",
    "IndexUnavailable",
    "NoSolution",
    "Parity",
    "PixelBuffer",
    "ScaleUnits",
    "Solution",
    "SolveParameters",
    "SolveResult",
    "SolverState",
    "Star",
    "StarList",
    "StellarSolver",
    "StellarSolverError",
    "build_index_file",
    "default_index_paths",
]

_EXPORTS = {
    "Aborted": "errors",
    "ExtractionError": "errors",
    "IndexUnavailable": "errors",
    "NoSolution": "errors",
    "StellarSolverError": "errors",
    "IndexCatalog": "index_catalog",
    "IndexFile": "index_file",
    "build_index_file": "index_file",
    "Parity": "parameters",
    "ScaleUnits": "parameters",
    "SolveParameters": "parameters",
    "PixelBuffer": "pixel_buffer",
    "Solution": "solution",
    "SolveResult": "solver",
    "SolverState": "solver",
    "StellarSolver": "solver",
    "Star": "stars",
    "StarList": "stars",
    "default_index_paths": "settings_store",
}


def __getattr__(name: str) -> Any:  # PEP 562 lazy re-exports
    module_name = _EXPORTS.get(name)
    if module_name is None:
        raise AttributeError(name)
    from importlib import import_module

    return getattr(import_module(f".{module_name}", __name__), name)


def __dir__() -> list[str]:
    return sorted(set(globals().keys()) | set(__all__))
