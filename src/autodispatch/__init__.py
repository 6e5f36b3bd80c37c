"""
Dependency-aware autonomous work-dispatch loop.

Purpose
- Claim ready work items from a dependency graph, hand them to a bounded pool of
  workers, gate results through a validation pipeline, and retry, serialize or
  escalate failures.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Heavy submodules are imported by callers, not re-exported here.
"""

__version__ = "0.4.0"

__all__ = ["__version__"]
