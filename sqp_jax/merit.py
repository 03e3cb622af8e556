"""L1 Merit Function and Line Search for the SQP method.

This module implements the L1 exact-penalty merit function and the
nonmonotone backtracking line search used to globalize the SQP step.

The merit function is:
    phi(x; sigma) = f(x) + sigma * max(bound violation of x, violation of g(x))

A trial step length t is accepted when

    phi(xk + t dx) <= max(recent merit values) + t * c1 * L1dir
    L1dir = dx^T grad f - sigma * infeasibility(xk)

where the maximum runs over the last ``merit_memory`` accepted iterates.
"""

import logging
from collections import deque
from collections.abc import Iterator
from typing import NamedTuple, Optional

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from sqp_jax.convergence import norm_inf, primal_infeasibility
from sqp_jax.evaluator import AbstractProblemEvaluator
from sqp_jax.types import Bounds, Scalar, Vector

logger = logging.getLogger(__name__)


class MeritHistory:
    """Bounded FIFO of the most recent merit function values.

    At most ``memory`` values are kept; pushing beyond that evicts the
    oldest value first.
    """

    def __init__(self, memory: int):
        if memory < 1:
            raise ValueError(f"merit_memory must be >= 1, got {memory}")
        self._values: deque[float] = deque(maxlen=memory)

    @property
    def memory(self) -> int:
        return self._values.maxlen

    def push(self, value: float) -> None:
        self._values.append(float(value))

    def max(self) -> float:
        if not self._values:
            raise ValueError("Merit history is empty")
        return max(self._values)

    def clear(self) -> None:
        self._values.clear()

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[float]:
        return iter(self._values)

    def __repr__(self) -> str:
        return f"MeritHistory({list(self._values)}, memory={self.memory})"


class LineSearchResult(NamedTuple):
    """Result from the line search.

    Attributes:
        step_size: The accepted step length t.
        x: Accepted candidate ``xk + t * dx``.
        f_val: Objective at the candidate (None when its evaluation failed).
        g_val: Constraints at the candidate (None when its evaluation failed).
        merit: Merit value at the candidate (None when its evaluation failed).
        n_trials: Number of trial points, failed evaluations included.
        success: False when the trial budget ran out without satisfying the
            Armijo condition.
    """

    step_size: float
    x: Vector
    f_val: Optional[Scalar]
    g_val: Optional[Float[Array, " m"]]
    merit: Optional[float]
    n_trials: int
    success: bool


@jaxtyped(typechecker=beartype)
def compute_merit(f_val: Scalar, infeasibility: Scalar, penalty: Scalar) -> Scalar:
    """Compute the L1 merit value ``f + sigma * infeasibility``."""
    return f_val + penalty * infeasibility


@jaxtyped(typechecker=beartype)
def update_penalty_parameter(
    current_penalty: Scalar,
    multipliers_x: Float[Array, " nx"],
    multipliers_g: Float[Array, " ng"],
    margin: float = 1.01,
) -> Scalar:
    """Update the penalty parameter based on the QP multipliers.

    The penalty must dominate the largest multiplier for the merit function
    to be exact; it never decreases:

    ``sigma = max(sigma, margin * ||lam_x||_inf, margin * ||lam_g||_inf)``

    Args:
        current_penalty: Current penalty parameter.
        multipliers_x: Bound multipliers of the QP solution.
        multipliers_g: Constraint multipliers of the QP solution.
        margin: Safety margin factor (default 1.01).

    Returns:
        Updated penalty parameter.
    """
    new_penalty = jnp.maximum(current_penalty, margin * norm_inf(multipliers_x))
    return jnp.maximum(new_penalty, margin * norm_inf(multipliers_g))


@jaxtyped(typechecker=beartype)
def directional_derivative(
    direction: Float[Array, " n"],
    grad: Float[Array, " n"],
    infeasibility: Scalar,
    penalty: Scalar,
) -> Scalar:
    """Bound on the merit directional derivative, ``dx^T gf - sigma * infeas``."""
    return jnp.dot(direction, grad) - penalty * infeasibility


def backtracking_line_search(
    evaluator: AbstractProblemEvaluator,
    x: Vector,
    direction: Vector,
    p: Float[Array, " np"],
    bounds: Bounds,
    f_val: Scalar,
    g_val: Float[Array, " m"],
    grad: Vector,
    penalty: Scalar,
    history: MeritHistory,
    c1: float = 1e-4,
    beta: float = 0.8,
    max_iter: int = 3,
) -> LineSearchResult:
    """Perform nonmonotone backtracking line search with the L1 merit function.

    The merit value of the current iterate (under the current penalty) is
    pushed onto ``history`` first; the Armijo reference is the maximum of
    the history. Trials start at t = 1 and shrink by ``beta``:

    - a failed evaluation counts as a trial and backtracks immediately;
    - an evaluated trial is accepted when the Armijo condition holds;
    - when ``max_iter`` trials are used up the last trial is accepted anyway
      and the search is reported unsuccessful.

    Args:
        evaluator: Problem evaluator, only ``eval_fg`` is used.
        x: Current point.
        direction: Search direction (QP step).
        p: Problem parameters.
        bounds: Variable and constraint bounds.
        f_val: Objective at ``x``.
        g_val: Constraints at ``x``.
        grad: Objective gradient at ``x``.
        penalty: Penalty parameter sigma.
        history: Merit values of recent iterates, updated in place.
        c1: Armijo condition parameter (default 1e-4).
        beta: Step reduction factor (default 0.8).
        max_iter: Maximum number of trials, at least 1.

    Returns:
        LineSearchResult with the accepted step length and candidate values.
    """
    if max_iter < 1:
        raise ValueError("The line search needs at least one trial")

    infeasibility = primal_infeasibility(
        x, bounds.lbx, bounds.ubx, g_val, bounds.lbg, bounds.ubg
    )
    history.push(compute_merit(f_val, infeasibility, penalty))
    slope = float(directional_derivative(direction, grad, infeasibility, penalty))
    reference = history.max()

    t = 1.0
    n_trials = 0
    while True:
        x_cand = x + t * direction
        result = evaluator.eval_fg(x_cand, p)
        n_trials += 1

        if not result.ok:
            logger.debug("Line search trial t=%g failed: %s", t, result.message)
            if n_trials >= max_iter:
                return LineSearchResult(
                    step_size=t,
                    x=x_cand,
                    f_val=None,
                    g_val=None,
                    merit=None,
                    n_trials=n_trials,
                    success=False,
                )
            t = beta * t
            continue

        f_cand = jnp.asarray(result.value[0], dtype=x.dtype)
        g_cand = jnp.asarray(result.value[1], dtype=x.dtype).reshape(g_val.shape)
        infeas_cand = primal_infeasibility(
            x_cand, bounds.lbx, bounds.ubx, g_cand, bounds.lbg, bounds.ubg
        )
        merit_cand = float(compute_merit(f_cand, infeas_cand, penalty))

        if merit_cand <= reference + t * c1 * slope:
            logger.debug("Line search accepted t=%g after %d trials", t, n_trials)
            return LineSearchResult(
                step_size=t,
                x=x_cand,
                f_val=f_cand,
                g_val=g_cand,
                merit=merit_cand,
                n_trials=n_trials,
                success=True,
            )

        # Not successful, but the candidate is taken anyway
        if n_trials >= max_iter:
            logger.debug("Line search reached %d trials without decrease", n_trials)
            return LineSearchResult(
                step_size=t,
                x=x_cand,
                f_val=f_cand,
                g_val=g_cand,
                merit=merit_cand,
                n_trials=n_trials,
                success=False,
            )

        t = beta * t
