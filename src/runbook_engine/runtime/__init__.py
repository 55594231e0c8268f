"""Execution runtime: the continuation queue, the engine loop and its collaborators.

The engine is deliberately independent of transport and storage; callers
persist it through :mod:`runbook_engine.session` after every mutation.
"""

__all__: list[str] = []
