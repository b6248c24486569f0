# /app/workflows/errors.py


class FlowEngineError(Exception):
    """Base class for flow engine failures."""


class ExpressionError(FlowEngineError):
    """An embedded expression could not be parsed or evaluated."""

    def __init__(self, expression: str, reason: str):
        super().__init__(f"Cannot evaluate '{expression}': {reason}")
        self.expression = expression
        self.reason = reason
