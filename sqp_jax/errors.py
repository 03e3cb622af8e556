"""Exceptions raised by SQP-JAX.

Normal terminations (convergence, iteration limit, small step, user stop)
are reported through :class:`~sqp_jax.types.SolveStatus`. The exceptions
below are reserved for failures that abort a solve.
"""


class SQPError(Exception):
    """Base class for all errors raised by the SQP method."""


class EvaluationError(SQPError):
    """An evaluator call failed outside of the line search."""

    def __init__(self, function: str, message: str = ""):
        self.function = function
        detail = f": {message}" if message else ""
        super().__init__(f"Evaluation of '{function}' failed{detail}")


class QPSolverError(SQPError):
    """The QP subproblem could not be solved."""


class ConfigurationError(SQPError, ValueError):
    """Invalid or unknown solver option."""
