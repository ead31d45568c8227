"""
ProductFlow agent runtime.

Executes one phase of the nine-phase requirements pipeline through a
plan -> draft/review -> final loop, records a replayable trace, and classifies
change requests into a pipeline restart decision.
"""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("productflow-agent")
except PackageNotFoundError:  # pragma: no cover - fallback for editable installs
    __version__ = "0.0.0"

__all__ = ["__version__"]
