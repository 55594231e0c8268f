"""Condition evaluation and template rendering.

Conditions (``when``, ``until``, branch ``condition``) are Jinja expressions
such as ``status == "healthy"`` or ``hosts | length > 2``. Text fields
(argv, instructions, recommendations, invoke inputs, ``over``) are Jinja
templates: ``{{ host }}``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any, Protocol

from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from runbook_engine.errors import RunbookError

logger = logging.getLogger(__name__)

_FALSY_RENDERINGS = {"", "false", "none", "0", "no"}


class ExpressionError(RunbookError):
    """Raised when a condition or template cannot be evaluated."""


class Evaluator(Protocol):
    def test(self, expr: str, env: Mapping[str, Any]) -> bool:
        """Evaluate a condition; an empty condition is true."""

    def render(self, template: str, env: Mapping[str, Any]) -> str:
        """Render a text template against the environment."""


class JinjaEvaluator:
    """Evaluator backed by a sandboxed Jinja environment with strict undefined."""

    def __init__(self) -> None:
        self._env = SandboxedEnvironment(undefined=StrictUndefined, keep_trailing_newline=True)
        self._env.globals.update(len=len, int=int, str=str)

    def test(self, expr: str, env: Mapping[str, Any]) -> bool:
        expr = expr.strip()
        if not expr:
            return True
        if "{{" in expr or "{%" in expr:
            return self.render(expr, env).strip().lower() not in _FALSY_RENDERINGS
        try:
            compiled = self._env.compile_expression(expr, undefined_to_none=False)
            return bool(compiled(dict(env)))
        except (TemplateError, TypeError, ValueError) as e:
            raise ExpressionError(f"condition {expr!r}: {e}") from e

    def render(self, template: str, env: Mapping[str, Any]) -> str:
        if "{{" not in template and "{%" not in template:
            return template
        try:
            return self._env.from_string(template).render(dict(env))
        except (TemplateError, TypeError, ValueError) as e:
            raise ExpressionError(f"template {template!r}: {e}") from e


def check(evaluator: Evaluator, expr: str, env: Mapping[str, Any], **context: Any) -> bool:
    """Evaluate a condition, treating evaluation errors as false."""

    try:
        return evaluator.test(expr, env)
    except ExpressionError as e:
        logger.warning("Condition evaluation failed; treating as false", extra={**context, "error": str(e)})
        return False


def render_or_raw(evaluator: Evaluator, template: str, env: Mapping[str, Any]) -> str:
    """Render a display template, falling back to the raw text on error."""

    try:
        return evaluator.render(template, env)
    except ExpressionError as e:
        logger.warning("Template rendering failed; using raw text", extra={"error": str(e)})
        return template
