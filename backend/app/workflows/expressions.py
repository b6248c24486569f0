# /app/workflows/expressions.py

"""
Sandboxed evaluation of the boolean/value expressions embedded in flow
definitions (completion conditions, action guards, transition predicates and
error-code ``updateUserData`` maps).

Expressions are evaluated with ``simpleeval`` over an explicit scope:
``userData``, ``templateContext`` and ``stage``, the user-data keys as bare
names, and a handful of whitelisted helpers. JavaScript-style operators
(``===``, ``&&``, ``!`` ...) are accepted for compatibility with existing
flow JSON.
"""

import logging
import re
from typing import Any, Dict, Mapping, Optional

from simpleeval import EvalWithCompoundTypes, InvalidExpression

from app.utils.metrics import expression_errors_counter
from app.workflows.errors import ExpressionError
from app.workflows.validator import is_present

logger = logging.getLogger(__name__)

_STRING_LITERAL = re.compile(r"(\"(?:\\.|[^\"\\])*\"|'(?:\\.|[^'\\])*')")

_JS_REPLACEMENTS = (
    (re.compile(r"!=="), "!="),
    (re.compile(r"==="), "=="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
    (re.compile(r"\btrue\b"), "True"),
    (re.compile(r"\bfalse\b"), "False"),
    (re.compile(r"\b(null|undefined)\b"), "None"),
)


class _Record(dict):
    """
    Read-only view used inside expressions: ``userData.email`` and
    ``userData['email']`` both work, and missing keys read as None.
    """

    def __getattr__(self, name: str) -> Any:
        if name.startswith("_"):
            raise AttributeError(name)
        return self.get(name)

    def __missing__(self, key: str) -> Any:
        return None


def _record(data: Optional[Mapping[str, Any]]) -> _Record:
    return _Record({k: _record(v) if isinstance(v, Mapping) else v for k, v in (data or {}).items()})


def _includes(container: Any, item: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, str):
        return str(item) in container
    try:
        return item in container
    except TypeError:
        return False


def _lower(value: Any) -> str:
    return str(value or "").lower()


HELPERS = {
    "present": is_present,
    "__present": is_present,
    "includes": _includes,
    "__includes": _includes,
    "len": lambda value: len(value) if value is not None else 0,
    "lower": _lower,
    "str": str,
    "int": int,
    "float": float,
}


def normalize_expression(expression: str) -> str:
    """Translate JavaScript-style operators to Python, leaving string literals untouched."""
    parts = _STRING_LITERAL.split(expression)
    for index in range(0, len(parts), 2):
        segment = parts[index]
        for pattern, replacement in _JS_REPLACEMENTS:
            segment = pattern.sub(replacement, segment)
        parts[index] = segment
    return "".join(parts).strip()


def build_scope(
    user_data: Optional[Mapping[str, Any]],
    template_context: Optional[Mapping[str, Any]] = None,
    stage: Optional[Mapping[str, Any]] = None,
    extra: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Build the whitelisted evaluation scope. User-data keys are exposed as bare
    names too, so ``email`` and ``userData.email`` are equivalent.
    """
    scope: Dict[str, Any] = dict(user_data or {})
    scope["userData"] = user_data or {}
    scope["templateContext"] = template_context or {}
    scope["stage"] = stage or {}
    if extra:
        scope.update(extra)
    return scope


def _evaluator(scope: Mapping[str, Any]) -> EvalWithCompoundTypes:
    names = _record(scope)
    return EvalWithCompoundTypes(functions=dict(HELPERS), names=names)


def evaluate_value(expression: str, scope: Mapping[str, Any]) -> Any:
    """
    Evaluate an expression and return its value.

    Raises:
        ExpressionError: if the expression is empty, malformed or fails at runtime
    """
    if expression is None or not str(expression).strip():
        raise ExpressionError(str(expression), "empty expression")
    normalized = normalize_expression(str(expression))
    try:
        return _evaluator(scope).eval(normalized)
    except (InvalidExpression, SyntaxError, TypeError, ValueError, ZeroDivisionError, AttributeError, KeyError, IndexError) as e:
        raise ExpressionError(str(expression), f"{type(e).__name__}: {e}") from e


def evaluate_condition(expression: Optional[str], scope: Mapping[str, Any], default: bool = False) -> bool:
    """
    Evaluate a boolean expression. Never raises: failures are logged and
    counted, and yield ``default`` (False unless stated otherwise).
    """
    if expression is None or not str(expression).strip():
        return default
    try:
        return bool(evaluate_value(expression, scope))
    except ExpressionError as e:
        expression_errors_counter.inc()
        logger.warning(f"Condition evaluation failed, treating as false: {e}")
        return default

