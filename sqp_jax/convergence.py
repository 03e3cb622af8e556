"""Termination tests for the SQP method.

The checks are evaluated once per outer iteration, after the optional
callback, in a fixed priority order:

1. Convergence: ``iter >= min_iter`` and primal infeasibility below
   ``tol_pr`` and ``||grad L||_inf`` below ``tol_du``.
2. Iteration budget: ``iter >= max_iter``.
3. Stagnation: ``iter >= 1`` and ``iter >= min_iter`` and
   ``||dx||_inf <= min_step_size``.

The first satisfied condition decides the status.
"""

from typing import NamedTuple, Optional

import jax.numpy as jnp
import optimistix as optx
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from sqp_jax.types import Scalar, SolveStatus


class TerminationCriteria(NamedTuple):
    """Thresholds consumed by :func:`check_termination`."""

    min_iter: int = 0
    max_iter: int = 50
    tol_pr: float = 1e-6
    tol_du: float = 1e-6
    min_step_size: float = 1e-10


def norm_inf(v: Float[Array, " n"]) -> Scalar:
    """Infinity norm, zero for an empty vector."""
    if v.shape[0] == 0:
        return jnp.zeros((), dtype=v.dtype)
    return optx.max_norm(v)


@jaxtyped(typechecker=beartype)
def max_violation(
    v: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
) -> Scalar:
    """Largest violation of ``lower <= v <= upper`` (zero when feasible)."""
    if v.shape[0] == 0:
        return jnp.zeros((), dtype=v.dtype)
    below = jnp.max(lower - v)
    above = jnp.max(v - upper)
    return jnp.maximum(0.0, jnp.maximum(below, above))


@jaxtyped(typechecker=beartype)
def primal_infeasibility(
    x: Float[Array, " nx"],
    lbx: Float[Array, " nx"],
    ubx: Float[Array, " nx"],
    g: Float[Array, " ng"],
    lbg: Float[Array, " ng"],
    ubg: Float[Array, " ng"],
) -> Scalar:
    """Maximum of the bound violation of ``x`` and the violation of ``g``."""
    return jnp.maximum(max_violation(x, lbx, ubx), max_violation(g, lbg, ubg))


def check_termination(
    iteration: int,
    pr_inf: float,
    du_inf: float,
    dx_norm: float,
    criteria: TerminationCriteria,
) -> Optional[SolveStatus]:
    """Return the terminal status for this iterate, or None to continue."""
    if (
        iteration >= criteria.min_iter
        and pr_inf < criteria.tol_pr
        and du_inf < criteria.tol_du
    ):
        return SolveStatus.SUCCEEDED

    if iteration >= criteria.max_iter:
        return SolveStatus.MAXIMUM_ITERATIONS_EXCEEDED

    if (
        iteration >= 1
        and iteration >= criteria.min_iter
        and dx_norm <= criteria.min_step_size
    ):
        return SolveStatus.STEP_TOO_SMALL

    return None
