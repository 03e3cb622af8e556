"""Lagrangian Hessian models for the SQP method.

Two strategies are available, chosen once per solve:

1. ``ExactHessian``: the Hessian of the Lagrangian is re-evaluated at every
   accepted iterate, weighted by the current multipliers, and optionally
   shifted with a Gershgorin-based regularization so that the QP stays
   convex.
2. ``LimitedMemoryBFGS``: a damped BFGS approximation maintained on a dense
   pattern and restarted from a scaled identity every ``memory`` iterations.

Powell's damping is applied to each (s, y) pair before the update so that
positive definiteness is preserved even when the curvature condition
s^T y > 0 fails, which is common in constrained optimization:

    theta = 0.8 s^T B s / (s^T B s - s^T y)   if s^T y < 0.2 s^T B s
    r     = theta y + (1 - theta) B s
    B+    = B - (B s)(B s)^T / (s^T B s) + r r^T / (r^T s)
"""

import abc
from typing import NamedTuple

import equinox as eqx
import jax
import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from sqp_jax.errors import ConfigurationError, EvaluationError
from sqp_jax.evaluator import AbstractProblemEvaluator
from sqp_jax.sparsity import Sparsity
from sqp_jax.types import Scalar


class HessianUpdate(NamedTuple):
    """New Hessian values together with the regularization that was applied."""

    values: Float[Array, " nnz"]
    reg: Scalar


def gershgorin_regularization(
    values: Float[Array, " nnz"], sparsity: Sparsity
) -> Scalar:
    """Smallest diagonal shift that makes every Gershgorin disc non-negative.

    For every column c the Gershgorin lower bound on the eigenvalues is

        bound(c) = H[c, c] - sum_{r != c} |H[r, c]|

    and the returned shift is ``max(0, -min_c bound(c))``.

    Args:
        values: Nonzero values of a symmetric matrix.
        sparsity: Pattern of the matrix (both triangles).

    Returns:
        The regularization parameter ``reg >= 0``.
    """
    if sparsity.ncol == 0:
        return jnp.zeros((), dtype=values.dtype)
    rows = sparsity.row_of_nonzero()
    cols = sparsity.column_of_nonzero()
    on_diagonal = jnp.asarray(rows == cols)
    contributions = jnp.where(on_diagonal, values, -jnp.abs(values))
    bounds = jax.ops.segment_sum(
        contributions, jnp.asarray(cols, dtype=int), num_segments=sparsity.ncol
    )
    return jnp.maximum(0.0, -jnp.min(bounds))


def regularize(
    values: Float[Array, " nnz"], sparsity: Sparsity, reg: Scalar
) -> Float[Array, " nnz"]:
    """Add ``reg`` to every structural diagonal entry."""
    diagonal = sparsity.diagonal_nonzeros()
    if len(diagonal) == 0:
        return values
    return values.at[diagonal].add(reg)


def bfgs_reset(values: Float[Array, " nnz"], sparsity: Sparsity) -> Float[Array, " nnz"]:
    """Restart the approximation from a scaled identity.

    The scale is the mean of the current diagonal, clipped to a reasonable
    range; it falls back to 1 when the diagonal is not usable.
    """
    diagonal = sparsity.diagonal_nonzeros()
    if len(diagonal) == 0:
        return sparsity.identity_values()
    scale = jnp.mean(values[diagonal])
    scale = jnp.where(jnp.isfinite(scale), jnp.clip(scale, 1e-3, 1e3), 1.0)
    return sparsity.identity_values() * scale


@jaxtyped(typechecker=beartype)
def bfgs_update(
    values: Float[Array, " nnz"],
    sparsity: Sparsity,
    s: Float[Array, " n"],
    y: Float[Array, " n"],
    damping_threshold: float = 0.2,
    skip_threshold: float = 1e-12,
) -> Float[Array, " nnz"]:
    """Damped BFGS update of a Hessian approximation stored on ``sparsity``.

    The secant update is computed on the dense matrix and gathered back onto
    the pattern. The update is skipped (values returned unchanged) when the
    step is negligible, the curvature along ``s`` is not positive, or any
    intermediate quantity is non-finite.

    Args:
        values: Current approximation B over the pattern.
        sparsity: Pattern of B.
        s: Step ``x_k - x_old``.
        y: Lagrangian gradient difference ``gLag - gLag_old``.
        damping_threshold: Powell damping threshold (default 0.2).
        skip_threshold: Minimum step norm for an update.

    Returns:
        Updated values over the same pattern.
    """
    B = sparsity.to_dense(values)
    Bs = B @ s
    sBs = jnp.dot(s, Bs)
    sTy = jnp.dot(s, y)

    # Powell damping keeps r^T s >= threshold * s^T B s
    use_damping = sTy < damping_threshold * sBs
    theta = jnp.where(
        use_damping,
        (1.0 - damping_threshold) * sBs / jnp.where(sBs - sTy == 0.0, 1.0, sBs - sTy),
        1.0,
    )
    r = theta * y + (1.0 - theta) * Bs
    rTs = jnp.dot(r, s)

    safe_sBs = jnp.where(sBs > 0.0, sBs, 1.0)
    safe_rTs = jnp.where(rTs > 0.0, rTs, 1.0)
    B_new = B - jnp.outer(Bs, Bs) / safe_sBs + jnp.outer(r, r) / safe_rTs
    new_values = sparsity.from_dense(B_new)

    should_skip = (
        (jnp.linalg.norm(s) < skip_threshold)
        | (sBs <= 0.0)
        | (rTs <= 0.0)
        | ~jnp.all(jnp.isfinite(new_values))
    )
    return jnp.where(should_skip, values, new_values)


def lagrangian_gradient(
    grad_f: Float[Array, " nx"],
    jac_values: Float[Array, " nnz"],
    jac_sparsity: Sparsity,
    lam_g: Float[Array, " ng"],
    lam_x: Float[Array, " nx"],
) -> Float[Array, " nx"]:
    """Compute the gradient of the Lagrangian function.

    The Lagrangian is:
        L(x, lam_g, lam_x) = f(x) + lam_g^T g(x) + lam_x^T x

    Its gradient with respect to x is:
        nabla_x L = nabla f(x) + J^T lam_g + lam_x
    """
    grad_L = grad_f + lam_x
    if jac_sparsity.nrow > 0:
        grad_L = grad_L + jac_sparsity.mv(jac_values, lam_g, transpose=True)
    return grad_L


class AbstractHessianApproximation(eqx.Module):
    """Curvature model used in the QP subproblem."""

    @abc.abstractmethod
    def sparsity(self, evaluator: AbstractProblemEvaluator) -> Sparsity:
        """Pattern of the Hessian values for this strategy."""

    @abc.abstractmethod
    def initialize(
        self,
        evaluator: AbstractProblemEvaluator,
        sparsity: Sparsity,
        x,
        p,
        lam_g,
    ) -> HessianUpdate:
        """Hessian values at the initial guess."""

    @abc.abstractmethod
    def gradient_before_step(
        self,
        grad_f,
        jac_values,
        jac_sparsity: Sparsity,
        lam_g,
        lam_x,
        current,
    ):
        """Lagrangian gradient remembered as ``gLag_old`` for the next update.

        ``current`` is the Lagrangian gradient of the iterate being left.
        """

    @abc.abstractmethod
    def update(
        self,
        evaluator: AbstractProblemEvaluator,
        sparsity: Sparsity,
        values,
        iteration: int,
        x,
        x_old,
        p,
        lam_g,
        glag,
        glag_old,
    ) -> HessianUpdate:
        """Refresh the Hessian values after an accepted step."""


class ExactHessian(AbstractHessianApproximation):
    """Exact Lagrangian Hessian, optionally Gershgorin-regularized.

    Attributes:
        regularize: Shift the diagonal so that every Gershgorin disc lies in
            the non-negative half-plane.
    """

    regularize: bool = eqx.field(static=True, default=False)

    def sparsity(self, evaluator: AbstractProblemEvaluator) -> Sparsity:
        return evaluator.hess_l_sparsity()

    def _evaluate(self, evaluator, sparsity, x, p, lam_g) -> HessianUpdate:
        # Objective weight is always one
        result = evaluator.eval_hess_l(x, p, jnp.ones((), dtype=x.dtype), lam_g)
        if not result.ok:
            raise EvaluationError("nlp_hess_l", result.message)
        values = result.value
        reg = jnp.zeros((), dtype=x.dtype)
        if self.regularize:
            reg = gershgorin_regularization(values, sparsity)
            if reg > 0:
                values = regularize(values, sparsity, reg)
        return HessianUpdate(values=values, reg=reg)

    def initialize(self, evaluator, sparsity, x, p, lam_g) -> HessianUpdate:
        return self._evaluate(evaluator, sparsity, x, p, lam_g)

    def gradient_before_step(
        self, grad_f, jac_values, jac_sparsity, lam_g, lam_x, current
    ):
        return current

    def update(
        self,
        evaluator,
        sparsity,
        values,
        iteration,
        x,
        x_old,
        p,
        lam_g,
        glag,
        glag_old,
    ) -> HessianUpdate:
        return self._evaluate(evaluator, sparsity, x, p, lam_g)


class LimitedMemoryBFGS(AbstractHessianApproximation):
    """Damped BFGS approximation restarted every ``memory`` iterations.

    Attributes:
        memory: Restart period of the approximation (``lbfgs_memory``).
    """

    memory: int = eqx.field(static=True, default=10)

    def __check_init__(self):
        if self.memory < 1:
            raise ConfigurationError(f"lbfgs_memory must be >= 1, got {self.memory}")

    def sparsity(self, evaluator: AbstractProblemEvaluator) -> Sparsity:
        return Sparsity.dense(evaluator.nx, evaluator.nx)

    def initialize(self, evaluator, sparsity, x, p, lam_g) -> HessianUpdate:
        values = jnp.ones((sparsity.nnz,), dtype=x.dtype)
        return HessianUpdate(
            values=bfgs_reset(values, sparsity).astype(x.dtype),
            reg=jnp.zeros((), dtype=x.dtype),
        )

    def gradient_before_step(
        self, grad_f, jac_values, jac_sparsity, lam_g, lam_x, current
    ):
        # Old x, new multipliers
        return lagrangian_gradient(grad_f, jac_values, jac_sparsity, lam_g, lam_x)

    def update(
        self,
        evaluator,
        sparsity,
        values,
        iteration,
        x,
        x_old,
        p,
        lam_g,
        glag,
        glag_old,
    ) -> HessianUpdate:
        if iteration % self.memory == 0:
            values = bfgs_reset(values, sparsity).astype(values.dtype)
        values = bfgs_update(values, sparsity, x - x_old, glag - glag_old)
        return HessianUpdate(values=values, reg=jnp.zeros((), dtype=values.dtype))


HESSIAN_APPROXIMATIONS = ("exact", "limited-memory")


def make_hessian_approximation(
    hessian_approximation: str, regularize: bool = False, lbfgs_memory: int = 10
) -> AbstractHessianApproximation:
    """Select the Hessian strategy from the ``hessian_approximation`` option."""
    if hessian_approximation == "exact":
        return ExactHessian(regularize=regularize)
    if hessian_approximation == "limited-memory":
        return LimitedMemoryBFGS(memory=lbfgs_memory)
    raise ConfigurationError(
        f"Unknown hessian_approximation '{hessian_approximation}', "
        f"expected one of {HESSIAN_APPROXIMATIONS}"
    )
