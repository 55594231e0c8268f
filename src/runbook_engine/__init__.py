"""Runbook Engine.

Runs tree-shaped runbook workflows one request at a time:
- a continuation queue of pending steps, iterate blocks and loop watchpoints
- nested invocation of child workflows with gates and capture mapping
- session state persisted after every request so any process can resume a run
"""

__version__ = "0.1.0"

from runbook_engine.config import EngineSettings

__all__ = ["__version__", "EngineSettings"]
