"""SQP method driver.

This module contains :class:`SQPMethod`, a line-search Sequential Quadratic
Programming solver for

    minimize    f(x, p)
    subject to  lbx <= x <= ubx
                lbg <= g(x, p) <= ubg

At each iteration, it:

1. Checks the callback and the termination criteria.
2. Builds the QP subproblem from the Hessian model (exact or damped BFGS)
   and the linearized constraints.
3. Solves the QP with the configured backend.
4. Performs a nonmonotone line search on the L1 merit function.
5. Blends the multipliers with the QP duals, re-evaluates the objective
   gradient and the constraint Jacobian, and refreshes the Hessian model.

The outer loop runs eagerly in Python because evaluations may fail, the
callback may stop the solve, and warnings are logged between steps. The
numerical kernels it calls are JAX functions.
"""

import dataclasses
import logging
from collections.abc import Mapping
from typing import Any, NamedTuple, Optional, Union

import equinox as eqx
import jax
import jax.numpy as jnp
from jaxtyping import Array, Float

from sqp_jax.convergence import (
    TerminationCriteria,
    check_termination,
    norm_inf,
    primal_infeasibility,
)
from sqp_jax.errors import ConfigurationError, EvaluationError
from sqp_jax.evaluator import AbstractProblemEvaluator
from sqp_jax.formulation import formulate_qp
from sqp_jax.hessian import (
    HESSIAN_APPROXIMATIONS,
    AbstractHessianApproximation,
    ExactHessian,
    lagrangian_gradient,
    make_hessian_approximation,
)
from sqp_jax.merit import MeritHistory, backtracking_line_search, update_penalty_parameter
from sqp_jax.qp_solver import AbstractQPBackend, make_qp_backend
from sqp_jax.reporting import log_header, log_iteration
from sqp_jax.sparsity import Sparsity
from sqp_jax.types import Bounds, CallbackFn, SolveStatus
from sqp_jax.utils import as_vector

logger = logging.getLogger(__name__)


class SQPState(eqx.Module):
    """Iterate buffers of one solve.

    Every array is created once in :meth:`SQPMethod.init` with its final
    shape; later iterations replace values but never shapes.

    Attributes:
        iteration: Number of SQP iterations performed.
        xk: Current linearization point.
        x_cand: Last line-search candidate.
        x_old: Previous iterate.
        fk: Objective value at ``xk``.
        gk: Constraint values at ``xk``.
        gk_cand: Constraint values at ``x_cand``.
        gf: Objective gradient at ``xk``.
        Jk: Constraint Jacobian values over ``Asp``.
        Bk: Hessian (approximation) values over ``Hsp``.
        gLag: Lagrangian gradient at ``xk``.
        gLag_old: Lagrangian gradient used for the BFGS secant pair.
        mu: Constraint multipliers.
        mu_x: Bound multipliers.
        dx: Last QP step.
        qp_lbx, qp_ubx, qp_lba, qp_uba: QP bounds in delta form.
        qp_lam_x, qp_lam_a: Multipliers of the last QP.
        sigma: Merit penalty parameter.
        reg: Regularization added to the Hessian diagonal.
        step_size: Last accepted step length.
        ls_iter: Trials used by the last line search.
        ls_success: Whether the last line search met the Armijo condition.
    """

    iteration: int
    xk: Float[Array, " nx"]
    x_cand: Float[Array, " nx"]
    x_old: Float[Array, " nx"]
    fk: Float[Array, ""]
    gk: Float[Array, " ng"]
    gk_cand: Float[Array, " ng"]
    gf: Float[Array, " nx"]
    Jk: Float[Array, " nnz_a"]
    Bk: Float[Array, " nnz_h"]
    gLag: Float[Array, " nx"]
    gLag_old: Float[Array, " nx"]
    mu: Float[Array, " ng"]
    mu_x: Float[Array, " nx"]
    dx: Float[Array, " nx"]
    qp_lbx: Float[Array, " nx"]
    qp_ubx: Float[Array, " nx"]
    qp_lba: Float[Array, " ng"]
    qp_uba: Float[Array, " ng"]
    qp_lam_x: Float[Array, " nx"]
    qp_lam_a: Float[Array, " ng"]
    sigma: Float[Array, ""]
    reg: Float[Array, ""]
    step_size: float
    ls_iter: int
    ls_success: bool


class IterationRecord(NamedTuple):
    """Per-iteration statistics, one entry per printed iteration line."""

    iteration: int
    objective: float
    pr_inf: float
    du_inf: float
    dx_norm: float
    reg: float
    ls_trials: int
    ls_success: bool
    sigma: float
    step_size: float


class SQPSolution(eqx.Module):
    """Result of :meth:`SQPMethod.solve`.

    Attributes:
        x: Final primal point.
        f: Objective value at ``x``.
        g: Constraint values at ``x``.
        lam_g: Constraint multipliers.
        lam_x: Bound multipliers.
        status: Terminal status.
        iter_count: Number of SQP iterations performed.
        stats: Solver statistics (``return_status``, ``iter_count``,
            ``sigma``, ``reg``, ``ls_failures``, ``history``).
    """

    x: Float[Array, " nx"]
    f: Float[Array, ""]
    g: Float[Array, " ng"]
    lam_g: Float[Array, " ng"]
    lam_x: Float[Array, " nx"]
    status: SolveStatus = eqx.field(static=True)
    iter_count: int = eqx.field(static=True)
    stats: dict[str, Any] = eqx.field(static=True)

    @property
    def success(self) -> bool:
        return self.status == SolveStatus.SUCCEEDED


class _SolveContext(NamedTuple):
    """Objects owned by one solve call."""

    backend: AbstractQPBackend
    hessian: AbstractHessianApproximation
    hsp: Sparsity
    asp: Sparsity
    bounds: Bounds
    p: Float[Array, " np"]
    history: MeritHistory


def _array_layout(state: SQPState) -> list[tuple[tuple[int, ...], Any]]:
    leaves = jax.tree_util.tree_leaves(eqx.filter(state, eqx.is_array))
    return [(leaf.shape, leaf.dtype) for leaf in leaves]


class SQPMethod(eqx.Module):
    """Line-search SQP solver for constrained nonlinear programs.

    Attributes:
        evaluator: Supplies function values and derivatives.
        qpsol: QP backend name or instance (default ``"active_set"``).
        qpsol_options: Options passed to the QP backend constructor.
        hessian_approximation: ``"exact"`` or ``"limited-memory"``.
        max_iter: Maximum number of SQP iterations.
        min_iter: Minimum number of SQP iterations.
        max_iter_ls: Maximum number of line-search trials; 0 disables the
            line search and always takes the full step.
        tol_pr: Stopping criterion for primal infeasibility.
        tol_du: Stopping criterion for dual infeasibility.
        c1: Armijo condition, coefficient of decrease in merit.
        beta: Line-search parameter, restoration factor of the step size.
        merit_memory: Number of merit values kept for the nonmonotone test.
        lbfgs_memory: Restart period of the BFGS approximation.
        regularize: Gershgorin regularization of the exact Hessian.
        min_step_size: The inf-norm of the step should not become smaller
            than this.
        print_header: Log problem statistics before iterating.
        print_iteration: Log one line per iteration.
        callback_ignore_errors: Keep iterating when the callback raises.

    Example:
        >>> import jax.numpy as jnp
        >>> from sqp_jax import JaxEvaluator, SQPMethod
        >>>
        >>> def objective(x, p):
        ...     return jnp.sum(x**2)
        >>>
        >>> def constraints(x, p):
        ...     return jnp.array([x[0] + x[1]])
        >>>
        >>> solver = SQPMethod(JaxEvaluator(objective, constraints, 2, 1))
        >>> sol = solver.solve(jnp.array([3.0, 1.0]), lbg=1.0, ubg=1.0)
    """

    evaluator: AbstractProblemEvaluator

    # QP backend
    qpsol: Union[str, AbstractQPBackend] = "active_set"
    qpsol_options: Optional[dict[str, Any]] = None

    # Hessian model
    hessian_approximation: str = eqx.field(static=True, default="exact")
    lbfgs_memory: int = eqx.field(static=True, default=10)
    regularize: bool = eqx.field(static=True, default=False)

    # Iteration limits
    max_iter: int = eqx.field(static=True, default=50)
    min_iter: int = eqx.field(static=True, default=0)

    # Convergence tolerances
    tol_pr: float = 1e-6
    tol_du: float = 1e-6
    min_step_size: float = 1e-10

    # Line search parameters
    max_iter_ls: int = eqx.field(static=True, default=3)
    c1: float = 1e-4
    beta: float = 0.8
    merit_memory: int = eqx.field(static=True, default=4)

    # Output
    print_header: bool = eqx.field(static=True, default=True)
    print_iteration: bool = eqx.field(static=True, default=True)
    callback_ignore_errors: bool = eqx.field(static=True, default=False)

    def __check_init__(self):
        if self.hessian_approximation not in HESSIAN_APPROXIMATIONS:
            raise ConfigurationError(
                f"Unknown hessian_approximation '{self.hessian_approximation}', "
                f"expected one of {HESSIAN_APPROXIMATIONS}"
            )
        for name in ("max_iter", "min_iter", "max_iter_ls"):
            if getattr(self, name) < 0:
                raise ConfigurationError(f"{name} must be non-negative")
        for name in ("merit_memory", "lbfgs_memory"):
            if getattr(self, name) < 1:
                raise ConfigurationError(f"{name} must be at least 1")
        for name in ("tol_pr", "tol_du"):
            if getattr(self, name) <= 0:
                raise ConfigurationError(f"{name} must be positive")
        if self.min_step_size < 0:
            raise ConfigurationError("min_step_size must be non-negative")
        if not 0.0 < self.c1 < 1.0:
            raise ConfigurationError(f"c1 must lie in (0, 1), got {self.c1}")
        if not 0.0 < self.beta < 1.0:
            raise ConfigurationError(f"beta must lie in (0, 1), got {self.beta}")

    @classmethod
    def from_options(
        cls,
        evaluator: AbstractProblemEvaluator,
        options: Optional[Mapping[str, Any]] = None,
    ) -> "SQPMethod":
        """Build a solver from an option dictionary.

        Raises:
            ConfigurationError: If an option name is not recognized.
        """
        options = dict(options or {})
        known = {f.name for f in dataclasses.fields(cls)} - {"evaluator"}
        unknown = sorted(set(options) - known)
        if unknown:
            raise ConfigurationError(
                f"Unknown option(s) {unknown}; available options: {sorted(known)}"
            )
        return cls(evaluator=evaluator, **options)

    @property
    def termination_criteria(self) -> TerminationCriteria:
        return TerminationCriteria(
            min_iter=self.min_iter,
            max_iter=self.max_iter,
            tol_pr=self.tol_pr,
            tol_du=self.tol_du,
            min_step_size=self.min_step_size,
        )

    # ------------------------------------------------------------------
    # Evaluation helpers (fatal on failure)
    # ------------------------------------------------------------------

    def _eval_jac_g(self, ctx: _SolveContext, x):
        result = self.evaluator.eval_jac_g(x, ctx.p)
        if not result.ok:
            raise EvaluationError("nlp_jac_g", result.message)
        g_val, jac = result.value
        g_val = jnp.asarray(g_val, dtype=x.dtype).reshape(ctx.asp.nrow)
        jac = jnp.asarray(jac, dtype=x.dtype).reshape(ctx.asp.nnz)
        return g_val, jac

    def _eval_grad_f(self, ctx: _SolveContext, x):
        result = self.evaluator.eval_grad_f(x, ctx.p)
        if not result.ok:
            raise EvaluationError("nlp_grad_f", result.message)
        f_val, grad = result.value
        f_val = jnp.asarray(f_val, dtype=x.dtype).reshape(())
        grad = jnp.asarray(grad, dtype=x.dtype).reshape(x.shape)
        return f_val, grad

    # ------------------------------------------------------------------
    # Solver phases
    # ------------------------------------------------------------------

    def setup(self, bounds: Bounds, p: Float[Array, " np"]) -> _SolveContext:
        """Create the per-solve backend, Hessian model and merit history."""
        hessian = make_hessian_approximation(
            self.hessian_approximation,
            regularize=self.regularize,
            lbfgs_memory=self.lbfgs_memory,
        )
        hsp = hessian.sparsity(self.evaluator)
        asp = self.evaluator.jac_g_sparsity()
        if hsp.shape != (self.evaluator.nx, self.evaluator.nx):
            raise ValueError(f"Hessian pattern has shape {hsp.shape}")
        if asp.shape != (self.evaluator.ng, self.evaluator.nx):
            raise ValueError(f"Jacobian pattern has shape {asp.shape}")
        if self.regularize and not hsp.has_full_diagonal():
            logger.warning(
                "Hessian pattern lacks structural diagonal entries; "
                "regularization cannot shift those columns"
            )
        return _SolveContext(
            backend=make_qp_backend(self.qpsol, self.qpsol_options),
            hessian=hessian,
            hsp=hsp,
            asp=asp,
            bounds=bounds,
            p=p,
            history=MeritHistory(self.merit_memory),
        )

    def init(
        self,
        ctx: _SolveContext,
        x0: Float[Array, " nx"],
        lam_x0: Optional[Float[Array, " nx"]] = None,
        lam_g0: Optional[Float[Array, " ng"]] = None,
    ) -> SQPState:
        """Evaluate the initial linearization and allocate the iterate buffers."""
        nx = self.evaluator.nx
        ng = self.evaluator.ng
        dtype = x0.dtype

        mu = as_vector(lam_g0, ng, "lam_g0", fill=0.0).astype(dtype)
        mu_x = as_vector(lam_x0, nx, "lam_x0", fill=0.0).astype(dtype)

        if ng > 0:
            gk, Jk = self._eval_jac_g(ctx, x0)
        else:
            gk = jnp.zeros((0,), dtype=dtype)
            Jk = jnp.zeros((ctx.asp.nnz,), dtype=dtype)
        fk, gf = self._eval_grad_f(ctx, x0)

        hess = ctx.hessian.initialize(self.evaluator, ctx.hsp, x0, ctx.p, mu)
        gLag = lagrangian_gradient(gf, Jk, ctx.asp, mu, mu_x)
        ctx.history.clear()

        zeros_x = jnp.zeros((nx,), dtype=dtype)
        zeros_g = jnp.zeros((ng,), dtype=dtype)
        return SQPState(
            iteration=0,
            xk=x0,
            x_cand=x0,
            x_old=x0,
            fk=fk,
            gk=gk,
            gk_cand=gk,
            gf=gf,
            Jk=Jk,
            Bk=jnp.asarray(hess.values, dtype=dtype),
            gLag=gLag,
            gLag_old=gLag,
            mu=mu,
            mu_x=mu_x,
            dx=zeros_x,
            qp_lbx=zeros_x,
            qp_ubx=zeros_x,
            qp_lba=zeros_g,
            qp_uba=zeros_g,
            qp_lam_x=zeros_x,
            qp_lam_a=zeros_g,
            sigma=jnp.zeros((), dtype=dtype),
            reg=jnp.asarray(hess.reg, dtype=dtype),
            step_size=0.0,
            ls_iter=0,
            ls_success=True,
        )

    def step(self, ctx: _SolveContext, state: SQPState) -> SQPState:
        """Perform one SQP iteration.

        This method:
        1. Formulates and solves the QP subproblem for the step dx.
        2. Warns about negative curvature along dx.
        3. Updates the merit penalty from the QP multipliers.
        4. Runs the line search and blends the multipliers.
        5. Re-evaluates gradient and Jacobian at the new iterate.
        6. Refreshes the Hessian model.
        """
        iteration = state.iteration + 1

        qp = formulate_qp(state.Bk, state.gf, state.Jk, state.xk, state.gk, ctx.bounds)
        logger.debug("Iteration %d: solving QP", iteration)
        qp_sol = ctx.backend.solve(qp, ctx.hsp, ctx.asp, state.dx)
        dx = jnp.asarray(qp_sol.x, dtype=state.xk.dtype)
        lam_x = jnp.asarray(qp_sol.lam_x, dtype=state.xk.dtype)
        lam_a = jnp.asarray(qp_sol.lam_a, dtype=state.xk.dtype)

        gain = ctx.hsp.bilinear(state.Bk, dx, dx)
        if gain < 0:
            logger.warning("Indefinite Hessian detected")

        sigma = update_penalty_parameter(state.sigma, lam_x, lam_a)

        if self.max_iter_ls > 0:
            ls = backtracking_line_search(
                self.evaluator,
                state.xk,
                dx,
                ctx.p,
                ctx.bounds,
                state.fk,
                state.gk,
                state.gf,
                sigma,
                ctx.history,
                c1=self.c1,
                beta=self.beta,
                max_iter=self.max_iter_ls,
            )
            t = ls.step_size
            mu = (1.0 - t) * state.mu + t * lam_a
            mu_x = (1.0 - t) * state.mu_x + t * lam_x
            x_new = ls.x
            gk_cand = state.gk_cand if ls.g_val is None else ls.g_val
            ls_iter, ls_success = ls.n_trials, ls.success
        else:
            # Full step
            t = 1.0
            mu = lam_a
            mu_x = lam_x
            x_new = state.xk + dx
            gk_cand = state.gk_cand
            ls_iter, ls_success = 0, True

        gLag_old = ctx.hessian.gradient_before_step(
            state.gf, state.Jk, ctx.asp, mu, mu_x, state.gLag
        )

        if self.evaluator.ng > 0:
            gk, Jk = self._eval_jac_g(ctx, x_new)
        else:
            gk, Jk = state.gk, state.Jk
        fk, gf = self._eval_grad_f(ctx, x_new)
        gLag = lagrangian_gradient(gf, Jk, ctx.asp, mu, mu_x)

        hess = ctx.hessian.update(
            self.evaluator,
            ctx.hsp,
            state.Bk,
            iteration,
            x_new,
            state.xk,
            ctx.p,
            mu,
            gLag,
            gLag_old,
        )

        new_state = SQPState(
            iteration=iteration,
            xk=x_new,
            x_cand=x_new,
            x_old=state.xk,
            fk=fk,
            gk=gk,
            gk_cand=gk_cand,
            gf=gf,
            Jk=Jk,
            Bk=jnp.asarray(hess.values, dtype=state.Bk.dtype),
            gLag=gLag,
            gLag_old=gLag_old,
            mu=mu,
            mu_x=mu_x,
            dx=dx,
            qp_lbx=qp.lbx,
            qp_ubx=qp.ubx,
            qp_lba=qp.lbA,
            qp_uba=qp.ubA,
            qp_lam_x=lam_x,
            qp_lam_a=lam_a,
            sigma=sigma,
            reg=jnp.asarray(hess.reg, dtype=state.reg.dtype),
            step_size=float(t),
            ls_iter=ls_iter,
            ls_success=ls_success,
        )
        if _array_layout(new_state) != _array_layout(state):
            raise RuntimeError("Iterate buffers changed shape during the solve")
        return new_state

    def _callback_requests_stop(self, callback: CallbackFn, state: SQPState) -> bool:
        try:
            ret = callback(state.fk, state.xk, state.gk, state.mu, state.mu_x)
        except Exception as exc:
            logger.warning("intermediate_callback error: %s", exc)
            if self.callback_ignore_errors:
                return False
            ret = 1
        if ret is not None and int(ret):
            logger.warning("Aborted by callback...")
            return True
        return False

    def _infeasibilities(
        self, ctx: _SolveContext, state: SQPState
    ) -> tuple[float, float, float]:
        bounds = ctx.bounds
        pr_inf = float(
            primal_infeasibility(
                state.xk, bounds.lbx, bounds.ubx, state.gk, bounds.lbg, bounds.ubg
            )
        )
        return pr_inf, float(norm_inf(state.gLag)), float(norm_inf(state.dx))

    def terminate(
        self, ctx: _SolveContext, state: SQPState
    ) -> tuple[bool, Optional[SolveStatus]]:
        """Return `(done, status)` for the current iterate."""
        pr_inf, du_inf, dx_norm = self._infeasibilities(ctx, state)
        status = check_termination(
            state.iteration, pr_inf, du_inf, dx_norm, self.termination_criteria
        )
        return status is not None, status

    def postprocess(
        self,
        state: SQPState,
        status: SolveStatus,
        history: list[IterationRecord],
    ) -> SQPSolution:
        stats = {
            "return_status": status.value,
            "iter_count": state.iteration,
            "sigma": float(state.sigma),
            "reg": float(state.reg),
            "ls_failures": sum(1 for rec in history if not rec.ls_success),
            "history": history,
        }
        return SQPSolution(
            x=state.xk,
            f=state.fk,
            g=state.gk,
            lam_g=state.mu,
            lam_x=state.mu_x,
            status=status,
            iter_count=state.iteration,
            stats=stats,
        )

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def solve(
        self,
        x0,
        lbx=None,
        ubx=None,
        lbg=None,
        ubg=None,
        p=None,
        lam_x0=None,
        lam_g0=None,
        callback: Optional[CallbackFn] = None,
    ) -> SQPSolution:
        """Solve the nonlinear program from the initial guess ``x0``.

        Missing bounds default to -inf / +inf; scalars are broadcast.

        Args:
            x0: Initial guess.
            lbx, ubx: Bounds on the decision variables.
            lbg, ubg: Bounds on the constraint values.
            p: Problem parameters passed to every evaluation.
            lam_x0, lam_g0: Initial multipliers (default zero).
            callback: Called once per iteration with
                ``(f, x, g, lam_g, lam_x)``; a nonzero return stops the solve.

        Returns:
            SQPSolution with the final iterate, multipliers and status.

        Raises:
            EvaluationError: If the gradient, Jacobian or Hessian cannot be
                evaluated at an accepted iterate.
            QPSolverError: If a QP subproblem fails.
        """
        nx = self.evaluator.nx
        ng = self.evaluator.ng
        x0 = as_vector(x0, nx, "x0")
        bounds = Bounds(
            lbx=as_vector(lbx, nx, "lbx", fill=-jnp.inf),
            ubx=as_vector(ubx, nx, "ubx", fill=jnp.inf),
            lbg=as_vector(lbg, ng, "lbg", fill=-jnp.inf),
            ubg=as_vector(ubg, ng, "ubg", fill=jnp.inf),
        )
        if bool(jnp.any(bounds.lbx > bounds.ubx)):
            raise ValueError("lbx must not exceed ubx")
        if bool(jnp.any(bounds.lbg > bounds.ubg)):
            raise ValueError("lbg must not exceed ubg")
        if p is None:
            p = jnp.zeros((0,), dtype=x0.dtype)
        else:
            p = jnp.asarray(p, dtype=x0.dtype).reshape(-1)

        ctx = self.setup(bounds, p)
        if self.print_header:
            log_header(
                isinstance(ctx.hessian, ExactHessian), nx, ng, ctx.asp, ctx.hsp
            )

        state = self.init(ctx, x0, lam_x0, lam_g0)
        history: list[IterationRecord] = []

        while True:
            pr_inf, du_inf, dx_norm = self._infeasibilities(ctx, state)

            record = IterationRecord(
                iteration=state.iteration,
                objective=float(state.fk),
                pr_inf=pr_inf,
                du_inf=du_inf,
                dx_norm=dx_norm,
                reg=float(state.reg),
                ls_trials=state.ls_iter,
                ls_success=state.ls_success,
                sigma=float(state.sigma),
                step_size=state.step_size,
            )
            history.append(record)
            if self.print_iteration:
                log_iteration(*record[:8])

            if callback is not None and self._callback_requests_stop(callback, state):
                status = SolveStatus.USER_REQUESTED_STOP
                break

            done, status = self.terminate(ctx, state)
            if done:
                break

            state = self.step(ctx, state)

        if status == SolveStatus.SUCCEEDED:
            logger.info("Convergence achieved after %d iterations", state.iteration)
        elif status == SolveStatus.MAXIMUM_ITERATIONS_EXCEEDED:
            logger.info("Maximum number of iterations reached.")
        elif status == SolveStatus.STEP_TOO_SMALL:
            logger.info(
                "Search direction becomes too small without "
                "convergence criteria being met."
            )

        return self.postprocess(state, status, history)
