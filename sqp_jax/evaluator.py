"""Problem evaluators for SQP-JAX.

The SQP method never differentiates anything itself. It talks to an
evaluator through four calls:

    eval_fg(x, p)                  -> (f, g)
    eval_grad_f(x, p)              -> (f, grad_f)
    eval_jac_g(x, p)               -> (g, jac_g values over jac_g_sparsity())
    eval_hess_l(x, p, sigma, lam)  -> hess_L values over hess_l_sparsity()

where ``hess_L`` is the Hessian of ``sigma * f(x) + lam^T g(x)``. Every call
returns an :class:`~sqp_jax.types.EvalResult` so that a failed evaluation
(a domain error, a non-finite value) is reported as data rather than as an
exception.

:class:`JaxEvaluator` implements the contract for plain JAX callables,
computing missing derivatives with ``jax.grad``, ``jax.jacfwd`` and
``jax.hessian``, in the same spirit as user-supplied versus AD-computed
derivatives elsewhere in the package.
"""

import abc
import logging
from collections.abc import Callable
from typing import Optional

import equinox as eqx
import jax
import jax.numpy as jnp

from sqp_jax.sparsity import Sparsity
from sqp_jax.types import (
    ConstraintFn,
    EvalResult,
    GradFn,
    JacobianFn,
    LagrangianHessianFn,
    ObjectiveFn,
)
from sqp_jax.utils import all_finite, args_closure

logger = logging.getLogger(__name__)


class AbstractProblemEvaluator(eqx.Module):
    """Interface between the SQP method and the nonlinear program.

    Subclasses provide the problem dimensions, the sparsity patterns of the
    constraint Jacobian and of the Lagrangian Hessian, and the four
    evaluation calls. Evaluation calls must not raise for numerical
    failures; they return ``EvalResult.failure(...)`` instead.
    """

    @property
    @abc.abstractmethod
    def nx(self) -> int:
        """Number of decision variables."""

    @property
    @abc.abstractmethod
    def ng(self) -> int:
        """Number of general constraints."""

    @abc.abstractmethod
    def jac_g_sparsity(self) -> Sparsity:
        """Pattern of the ``ng x nx`` constraint Jacobian."""

    @abc.abstractmethod
    def hess_l_sparsity(self) -> Sparsity:
        """Pattern of the ``nx x nx`` Lagrangian Hessian (both triangles)."""

    @abc.abstractmethod
    def eval_fg(self, x, p) -> EvalResult:
        """Objective and constraint values."""

    @abc.abstractmethod
    def eval_grad_f(self, x, p) -> EvalResult:
        """Objective value and gradient."""

    @abc.abstractmethod
    def eval_jac_g(self, x, p) -> EvalResult:
        """Constraint values and Jacobian values."""

    @abc.abstractmethod
    def eval_hess_l(self, x, p, sigma, lam) -> EvalResult:
        """Lagrangian Hessian values."""


def guarded_call(name: str, thunk: Callable[[], object]) -> EvalResult:
    """Run ``thunk`` and convert numerical failures into a failed result.

    Arithmetic and domain errors raised by the user functions, as well as
    non-finite outputs, are reported as ``EvalResult.failure``. Any other
    exception is a programming error and propagates.
    """
    try:
        value = thunk()
    except (ArithmeticError, ValueError) as exc:
        logger.debug("Evaluation of %s raised %s: %s", name, type(exc).__name__, exc)
        return EvalResult.failure(f"{type(exc).__name__}: {exc}")
    if not all_finite(value):
        logger.debug("Evaluation of %s returned non-finite values", name)
        return EvalResult.failure("non-finite output")
    return EvalResult.success(value)


class JaxEvaluator(AbstractProblemEvaluator):
    """Evaluator built from JAX-traceable callables.

    Derivatives that are not supplied are computed with automatic
    differentiation. Dense intermediate results are gathered onto the
    sparsity patterns, which default to fully dense.

    Attributes:
        f: Objective ``f(x, p) -> scalar``.
        g: Constraints ``g(x, p) -> (ng,)``, or None when ``n_constraints == 0``.
        n_variables: Number of decision variables.
        n_constraints: Number of general constraints.
        grad_f_fn: Optional gradient of the objective.
        jac_g_fn: Optional dense Jacobian of the constraints.
        hess_l_fn: Optional dense Lagrangian Hessian ``(x, p, sigma, lam)``.
        jac_sparsity: Optional pattern of the Jacobian.
        hess_sparsity: Optional pattern of the Lagrangian Hessian.

    Example:
        >>> import jax.numpy as jnp
        >>> from sqp_jax import JaxEvaluator
        >>>
        >>> def objective(x, p):
        ...     return jnp.sum(x**2)
        >>>
        >>> def constraints(x, p):
        ...     return jnp.array([x[0] + x[1]])
        >>>
        >>> evaluator = JaxEvaluator(objective, constraints, 2, 1)
    """

    f: ObjectiveFn = eqx.field(static=True)
    g: Optional[ConstraintFn] = eqx.field(static=True, default=None)
    n_variables: int = eqx.field(static=True, default=0)
    n_constraints: int = eqx.field(static=True, default=0)

    # Optional user-supplied derivative functions
    grad_f_fn: Optional[GradFn] = eqx.field(static=True, default=None)
    jac_g_fn: Optional[JacobianFn] = eqx.field(static=True, default=None)
    hess_l_fn: Optional[LagrangianHessianFn] = eqx.field(static=True, default=None)

    # Optional structural information
    jac_sparsity: Optional[Sparsity] = None
    hess_sparsity: Optional[Sparsity] = None

    def __check_init__(self):
        if self.n_variables <= 0:
            raise ValueError(
                f"Number of variables must be positive, got {self.n_variables}"
            )
        if self.n_constraints < 0:
            raise ValueError("Number of constraints must be non-negative")
        if self.n_constraints > 0 and self.g is None:
            raise ValueError("A constraint function is required when n_constraints > 0")
        if self.jac_sparsity is not None and self.jac_sparsity.shape != (
            self.n_constraints,
            self.n_variables,
        ):
            raise ValueError(
                f"jac_sparsity must be {self.n_constraints}x{self.n_variables}, "
                f"got {self.jac_sparsity.shape}"
            )
        if self.hess_sparsity is not None and self.hess_sparsity.shape != (
            self.n_variables,
            self.n_variables,
        ):
            raise ValueError(
                f"hess_sparsity must be {self.n_variables}x{self.n_variables}, "
                f"got {self.hess_sparsity.shape}"
            )

    @property
    def nx(self) -> int:
        return self.n_variables

    @property
    def ng(self) -> int:
        return self.n_constraints

    def jac_g_sparsity(self) -> Sparsity:
        if self.jac_sparsity is not None:
            return self.jac_sparsity
        return Sparsity.dense(self.n_constraints, self.n_variables)

    def hess_l_sparsity(self) -> Sparsity:
        if self.hess_sparsity is not None:
            return self.hess_sparsity
        return Sparsity.dense(self.n_variables, self.n_variables)

    # ------------------------------------------------------------------
    # Dense kernels (compiled once per shape)
    # ------------------------------------------------------------------

    def _constraints(self, x, p):
        if self.g is None or self.n_constraints == 0:
            return jnp.zeros((0,), dtype=x.dtype)
        return jnp.asarray(self.g(x, p), dtype=x.dtype).reshape(self.n_constraints)

    @eqx.filter_jit
    def _dense_fg(self, x, p):
        return jnp.asarray(self.f(x, p), dtype=x.dtype), self._constraints(x, p)

    @eqx.filter_jit
    def _dense_grad_f(self, x, p):
        f_val = jnp.asarray(self.f(x, p), dtype=x.dtype)
        if self.grad_f_fn is not None:
            return f_val, jnp.asarray(self.grad_f_fn(x, p), dtype=x.dtype)
        return f_val, jax.grad(lambda z: self.f(z, p))(x)

    @eqx.filter_jit
    def _dense_jac_g(self, x, p):
        g_val = self._constraints(x, p)
        if self.jac_g_fn is not None:
            jac = jnp.asarray(self.jac_g_fn(x, p), dtype=x.dtype)
        else:
            jac = jax.jacfwd(args_closure(self._constraints, p))(x)
        return g_val, jac.reshape(self.n_constraints, self.n_variables)

    @eqx.filter_jit
    def _dense_hess_l(self, x, p, sigma, lam):
        if self.hess_l_fn is not None:
            return jnp.asarray(self.hess_l_fn(x, p, sigma, lam), dtype=x.dtype)

        def lagrangian(z):
            # sigma * f(x) + lam^T g(x)
            return sigma * self.f(z, p) + jnp.dot(lam, self._constraints(z, p))

        return jax.hessian(lagrangian)(x)

    # ------------------------------------------------------------------
    # Evaluator contract
    # ------------------------------------------------------------------

    def eval_fg(self, x, p) -> EvalResult:
        return guarded_call("nlp_fg", lambda: self._dense_fg(x, p))

    def eval_grad_f(self, x, p) -> EvalResult:
        return guarded_call("nlp_grad_f", lambda: self._dense_grad_f(x, p))

    def eval_jac_g(self, x, p) -> EvalResult:
        def thunk():
            g_val, jac = self._dense_jac_g(x, p)
            return g_val, self.jac_g_sparsity().from_dense(jac)

        return guarded_call("nlp_jac_g", thunk)

    def eval_hess_l(self, x, p, sigma, lam) -> EvalResult:
        def thunk():
            hess = self._dense_hess_l(
                x, p, jnp.asarray(sigma, dtype=x.dtype), jnp.asarray(lam, dtype=x.dtype)
            )
            return self.hess_l_sparsity().from_dense(hess)

        return guarded_call("nlp_hess_l", thunk)
