"""QP subproblem backends for the SQP method.

Each outer iteration solves one convex QP of the form

    minimize    (1/2) d^T H d + g^T d
    subject to  lbx <= d <= ubx
                lbA <= A d <= ubA

with ``H`` and ``A`` given as value arrays over fixed sparsity patterns.
Backends implement :class:`AbstractQPBackend` and are selected per solve
through :func:`make_qp_backend`.

The shipped ``"active_set"`` backend rewrites the two-sided problem as

    minimize    (1/2) d^T H d + g^T d
    subject to  C_eq d = c_eq
                C_in d >= c_in

and runs a primal active-set method. A feasible starting point is found
first by a phase-one linear program; from there every iterate stays
feasible. Each active-set iteration treats the working constraints as
equalities and minimizes over their null space with **projected conjugate
gradient**, cutting the step at the first blocking constraint. Directions of
non-positive curvature are followed to the nearest constraint; when none
blocks, the QP is unbounded and the solve fails. Multipliers are
returned in the SQP sign convention: stationarity reads

    H d + g + A^T lam_A + lam_x = 0

so a multiplier is positive when its upper bound is active.
"""

import abc
import logging
import types
from collections.abc import Mapping
from typing import Any, NamedTuple, Optional, Union

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from beartype import beartype
from jaxtyping import Array, Bool, Float, Int, jaxtyped

from sqp_jax.errors import ConfigurationError, QPSolverError
from sqp_jax.sparsity import Sparsity

logger = logging.getLogger(__name__)


class QPProblem(NamedTuple):
    """Inputs of one QP subproblem (value arrays over the fixed patterns)."""

    H: Float[Array, " nnz_h"]
    g: Float[Array, " nx"]
    lbx: Float[Array, " nx"]
    ubx: Float[Array, " nx"]
    A: Float[Array, " nnz_a"]
    lbA: Float[Array, " ng"]
    ubA: Float[Array, " ng"]


class QPSolution(NamedTuple):
    """Primal step and multipliers of the QP subproblem."""

    x: Float[Array, " nx"]
    lam_x: Float[Array, " nx"]
    lam_a: Float[Array, " ng"]


class AbstractQPBackend(eqx.Module):
    """Interface of a QP solver used by the SQP method."""

    @abc.abstractmethod
    def solve(
        self,
        problem: QPProblem,
        hessian_sparsity: Sparsity,
        jacobian_sparsity: Sparsity,
        x0: Float[Array, " nx"],
    ) -> QPSolution:
        """Solve one QP; raise :class:`QPSolverError` on failure."""


# ----------------------------------------------------------------------
# Dense active-set kernel
# ----------------------------------------------------------------------

_RUNNING = 0
_OPTIMAL = 1
_UNBOUNDED = 2


class _ActiveSetState(eqx.Module):
    """Loop state of the active-set iterations."""

    d: Float[Array, " n"]
    working: Bool[Array, " m"]
    mult: Float[Array, " m"]
    iteration: Int[Array, ""]
    status: Int[Array, ""]


class _CGState(NamedTuple):
    s: Float[Array, " n"]
    r: Float[Array, " n"]
    p: Float[Array, " n"]
    rr: Float[Array, ""]
    done: Bool[Array, ""]
    flat: Bool[Array, ""]


class _CGResult(NamedTuple):
    step: Float[Array, " n"]
    direction: Float[Array, " n"]
    flat: Bool[Array, ""]
    stationary: Bool[Array, ""]


def _working_projector(
    C: Float[Array, "m n"], working: Bool[Array, " m"]
) -> tuple[Float[Array, "n n"], Float[Array, "n m"]]:
    """Projector onto the null space of the working rows of ``C``.

    Also returns the pseudo-inverse of the working rows (the other rows
    zeroed), which maps the Lagrangian gradient to the working multipliers.
    """
    m, n = C.shape
    eye = jnp.eye(n, dtype=C.dtype)
    if m == 0:
        return eye, jnp.zeros((n, 0), dtype=C.dtype)
    C_on = jnp.where(working[:, None], C, 0.0)
    C_pinv = jnp.linalg.pinv(C_on)
    return eye - C_pinv @ C_on, C_pinv


def _projected_cg(
    H: Float[Array, "n n"],
    grad: Float[Array, " n"],
    P: Float[Array, "n n"],
    max_cg_iter: int,
    tol: float,
    flat_tol: Float[Array, ""],
) -> _CGResult:
    """Minimize (1/2) s^T H s + grad^T s over the range of the projector P.

    Conjugate gradient starts at s = 0 and runs on the projected residual

        r = -P (H s + grad)

    so every iterate keeps the working constraints satisfied. When a search
    direction p has p^T H p <= flat_tol |p|^2 the model is unbounded below
    along p from the current iterate; the iteration stops and reports that
    direction with ``flat`` set. ``stationary`` means the projected
    gradient was already below ``tol`` and no step is needed.
    """
    r0 = -(P @ grad)
    rr0 = jnp.dot(r0, r0)
    stationary = rr0 < tol**2
    init = _CGState(
        s=jnp.zeros_like(grad),
        r=r0,
        p=r0,
        rr=rr0,
        done=stationary,
        flat=jnp.array(False),
    )

    def body(_, state: _CGState) -> _CGState:
        def advance(state: _CGState) -> _CGState:
            Hp = H @ state.p
            curvature = jnp.dot(state.p, Hp)
            flat = curvature <= flat_tol * jnp.dot(state.p, state.p)
            alpha = state.rr / jnp.where(flat, 1.0, curvature)
            s = state.s + alpha * state.p
            r = state.r - alpha * (P @ Hp)
            rr = jnp.dot(r, r)
            p = r + (rr / state.rr) * state.p

            bad = ~(
                jnp.all(jnp.isfinite(s))
                & jnp.all(jnp.isfinite(r))
                & jnp.all(jnp.isfinite(p))
            )
            stop = flat | bad
            return _CGState(
                s=jnp.where(stop, state.s, s),
                r=jnp.where(stop, state.r, r),
                p=jnp.where(stop, state.p, p),
                rr=jnp.where(stop, state.rr, rr),
                done=stop | (rr < tol**2),
                flat=flat,
            )

        return jax.lax.cond(state.done, lambda s: s, advance, state)

    final = jax.lax.fori_loop(0, max_cg_iter, body, init)
    return _CGResult(
        step=final.s, direction=final.p, flat=final.flat, stationary=stationary
    )


def _ratio_test(
    C: Float[Array, "m n"],
    row_norms: Float[Array, " m"],
    slack: Float[Array, " m"],
    direction: Float[Array, " n"],
    candidates: Bool[Array, " m"],
) -> tuple[Float[Array, ""], Int[Array, ""]]:
    """Largest step along ``direction`` before a candidate row ``C d >= c``
    becomes active, and the index of that row (inf when nothing blocks)."""
    Cp = C @ direction
    threshold = 1e-12 * row_norms * jnp.linalg.norm(direction)
    blocking = candidates & (Cp < -threshold)
    ratios = jnp.where(
        blocking,
        jnp.maximum(slack, 0.0) / jnp.where(blocking, -Cp, 1.0),
        jnp.inf,
    )
    index = jnp.argmin(ratios)
    return ratios[index], index


@eqx.filter_jit
def _active_set_kernel(
    H: Float[Array, "n n"],
    g: Float[Array, " n"],
    C: Float[Array, "m n"],
    c: Float[Array, " m"],
    is_eq: Bool[Array, " m"],
    d0: Float[Array, " n"],
    max_iter: int,
    max_cg_iter: int,
    tol: float,
) -> _ActiveSetState:
    """Primal active-set iterations for C[is_eq] d = c[is_eq], C d >= c.

    ``d0`` must satisfy every row (up to rounding). Each iteration either
    moves inside the feasible region until the first blocking row, which
    joins the working set, or, at a minimizer on the working set, drops the
    inequality with the most negative multiplier.
    """
    m = c.shape[0]
    row_norms = jnp.linalg.norm(C, axis=1)
    flat_tol = 1e-12 * jnp.maximum(1.0, jnp.max(jnp.abs(H)))
    init = _ActiveSetState(
        d=d0,
        working=is_eq,
        mult=jnp.zeros((m,), dtype=g.dtype),
        iteration=jnp.array(0),
        status=jnp.array(_RUNNING),
    )

    def keep_going(state: _ActiveSetState) -> Bool[Array, ""]:
        return (state.status == _RUNNING) & (state.iteration < max_iter)

    def iterate(state: _ActiveSetState) -> _ActiveSetState:
        P, C_pinv = _working_projector(C, state.working)
        grad = H @ state.d + g
        cg = _projected_cg(H, grad, P, max_cg_iter, tol, flat_tol)

        if m == 0:
            unbounded = cg.flat & ~cg.stationary
            d = jnp.where(cg.stationary | unbounded, state.d, state.d + cg.step)
            status = jnp.where(
                cg.stationary, _OPTIMAL, jnp.where(unbounded, _UNBOUNDED, _RUNNING)
            )
            return _ActiveSetState(
                d=d,
                working=state.working,
                mult=state.mult,
                iteration=state.iteration + 1,
                status=status.astype(state.status.dtype),
            )

        # Multipliers of the working rows: H d + g = C_W^T mult
        mult = jnp.where(state.working, C_pinv.T @ grad, 0.0)
        droppable = state.working & ~is_eq
        drop_idx = jnp.argmin(jnp.where(droppable, mult, jnp.inf))
        mult_tol = tol * (1.0 + jnp.max(jnp.abs(grad)))
        drop = droppable[drop_idx] & (mult[drop_idx] < -mult_tol)

        # First segment: the CG step, cut at the first blocking row
        free = ~state.working
        t1, i1 = _ratio_test(C, row_norms, C @ state.d - c, cg.step, free)
        blocked = t1 < 1.0
        d1 = state.d + jnp.minimum(t1, 1.0) * cg.step

        # Second segment: follow non-positive curvature to the next row
        follow = cg.flat & ~blocked
        t2, i2 = _ratio_test(C, row_norms, C @ d1 - c, cg.direction, free)
        unbounded = follow & jnp.isinf(t2)
        d2 = jnp.where(
            follow & ~unbounded,
            d1 + jnp.where(jnp.isinf(t2), 0.0, t2) * cg.direction,
            d1,
        )
        add_idx = jnp.where(blocked, i1, i2)
        add = blocked | (follow & ~unbounded)

        moved = jnp.where(add, state.working.at[add_idx].set(True), state.working)
        dropped = jnp.where(drop, state.working.at[drop_idx].set(False), state.working)
        status = jnp.where(
            cg.stationary,
            jnp.where(drop, _RUNNING, _OPTIMAL),
            jnp.where(unbounded, _UNBOUNDED, _RUNNING),
        )
        return _ActiveSetState(
            d=jnp.where(cg.stationary, state.d, d2),
            working=jnp.where(cg.stationary, dropped, moved),
            mult=mult,
            iteration=state.iteration + 1,
            status=status.astype(state.status.dtype),
        )

    return jax.lax.while_loop(keep_going, iterate, init)


def _feasibility_tolerance(c: Float[Array, " m"], tol: float) -> float:
    scale = float(jnp.max(jnp.abs(c))) if c.shape[0] else 0.0
    return 10.0 * tol * (1.0 + scale)


def _project_onto_equalities(
    d: Float[Array, " n"], C_eq: Float[Array, "m_eq n"], c_eq: Float[Array, " m_eq"]
) -> Float[Array, " n"]:
    if C_eq.shape[0] == 0:
        return d
    return d + jnp.linalg.pinv(C_eq) @ (c_eq - C_eq @ d)


def _phase_one(
    C_eq: Float[Array, "m_eq n"],
    c_eq: Float[Array, " m_eq"],
    C_in: Float[Array, "m_in n"],
    c_in: Float[Array, " m_in"],
    start: Float[Array, " n"],
    max_iter: int,
    max_cg_iter: int,
    tol: float,
    feas_tol: float,
) -> Float[Array, " n"]:
    """Find a point satisfying all rows from one satisfying the equalities.

    Solves the linear program

        minimize    t
        subject to  C_eq d = c_eq
                    C_in d + t >= c_in
                    t >= 0

    with the active-set kernel, starting from ``(start, max violation)``.
    """
    n = start.shape[0]
    m_eq = C_eq.shape[0]
    m_in = C_in.shape[0]
    dtype = start.dtype

    violation = jnp.max(c_in - C_in @ start)
    C = jnp.concatenate(
        [
            jnp.concatenate([C_eq, jnp.zeros((m_eq, 1), dtype=dtype)], axis=1),
            jnp.concatenate([C_in, jnp.ones((m_in, 1), dtype=dtype)], axis=1),
            jnp.zeros((1, n + 1), dtype=dtype).at[0, n].set(1.0),
        ],
        axis=0,
    )
    c = jnp.concatenate([c_eq, c_in, jnp.zeros((1,), dtype=dtype)])
    is_eq = jnp.concatenate(
        [jnp.ones((m_eq,), dtype=bool), jnp.zeros((m_in + 1,), dtype=bool)]
    )
    state = _active_set_kernel(
        jnp.zeros((n + 1, n + 1), dtype=dtype),
        jnp.zeros((n + 1,), dtype=dtype).at[n].set(1.0),
        C,
        c,
        is_eq,
        jnp.concatenate([start, violation[None]]),
        max_iter,
        max_cg_iter,
        tol,
    )
    if int(state.status) != _OPTIMAL:
        raise QPSolverError(
            f"No feasible point of the QP found within {max_iter} iterations"
        )
    residual = float(state.d[n])
    if residual > feas_tol:
        raise QPSolverError(
            f"QP is infeasible: constraints violated by at least {residual:.3e}"
        )
    logger.debug("QP phase one: feasible point after %d iterations", int(state.iteration))
    return state.d[:n]


@jaxtyped(typechecker=beartype)
def solve_qp(
    H: Float[Array, "n n"],
    g: Float[Array, " n"],
    C_eq: Float[Array, "m_eq n"],
    c_eq: Float[Array, " m_eq"],
    C_in: Float[Array, "m_in n"],
    c_in: Float[Array, " m_in"],
    max_iter: int = 100,
    max_cg_iter: int = 50,
    tol: float = 1e-8,
    d0: Optional[Float[Array, " n"]] = None,
) -> tuple[Float[Array, " n"], Float[Array, " m_eq"], Float[Array, " m_in"], bool]:
    """Solve a dense QP with one-sided inequality constraints.

    Solves:
        minimize    (1/2) d^T H d + g^T d
        subject to  C_eq d = c_eq
                    C_in d >= c_in

    A feasible starting point is found first (phase one, a linear program
    solved by the same kernel) unless ``d0`` projected onto the equalities
    already satisfies the inequalities. The primal active-set method then
    keeps every iterate feasible.

    Args:
        H: Dense Hessian (n x n).
        g: Linear term.
        C_eq: Equality constraint matrix (m_eq x n).
        c_eq: Equality right-hand side.
        C_in: Inequality constraint matrix (m_in x n).
        c_in: Inequality right-hand side.
        max_iter: Maximum active-set iterations (per phase).
        max_cg_iter: Maximum CG iterations per active-set step.
        tol: Feasibility and optimality tolerance.
        d0: Starting guess (default zero).

    Returns:
        ``(d, mult_eq, mult_in, converged)`` with multipliers satisfying
        ``H d + g - C_eq^T mult_eq - C_in^T mult_in = 0`` and
        ``mult_in >= 0``. ``converged`` is False when the iteration limit
        was reached.

    Raises:
        QPSolverError: If the QP is infeasible, unbounded below, or the
            returned point fails the feasibility and multiplier checks.
    """
    m_eq = c_eq.shape[0]
    m_in = c_in.shape[0]
    dtype = g.dtype

    start = jnp.zeros_like(g) if d0 is None else jnp.asarray(d0, dtype=dtype)
    start = jnp.where(jnp.isfinite(start), start, 0.0)
    start = _project_onto_equalities(start, C_eq, c_eq)
    feas_tol = _feasibility_tolerance(jnp.concatenate([c_eq, c_in]), tol)
    if m_in > 0 and float(jnp.max(c_in - C_in @ start)) > feas_tol:
        start = _phase_one(
            C_eq, c_eq, C_in, c_in, start, max_iter, max_cg_iter, tol, feas_tol
        )

    C = jnp.concatenate([C_eq, C_in], axis=0)
    c = jnp.concatenate([c_eq, c_in])
    is_eq = jnp.concatenate(
        [jnp.ones((m_eq,), dtype=bool), jnp.zeros((m_in,), dtype=bool)]
    )
    state = _active_set_kernel(
        H, g, C, c, is_eq, start, max_iter, max_cg_iter, tol
    )
    status = int(state.status)
    if status == _UNBOUNDED:
        raise QPSolverError(
            "QP is unbounded below along a direction of non-positive curvature"
        )

    d = state.d
    mult_eq = state.mult[:m_eq]
    mult_in = state.mult[m_eq:]
    converged = status == _OPTIMAL
    if converged:
        if m_eq and float(jnp.max(jnp.abs(C_eq @ d - c_eq))) > feas_tol:
            raise QPSolverError("QP solution violates the equality constraints")
        if m_in and float(jnp.max(c_in - C_in @ d)) > feas_tol:
            raise QPSolverError("QP solution violates the inequality constraints")
        grad = H @ d + g
        mult_tol = 10.0 * tol * (1.0 + float(jnp.max(jnp.abs(grad))))
        if m_in and float(jnp.min(mult_in)) < -mult_tol:
            raise QPSolverError("QP solution has inequality multipliers of the wrong sign")
    return d, mult_eq, mult_in, converged


# ----------------------------------------------------------------------
# Backend wrapping the kernel
# ----------------------------------------------------------------------


def _row_selection(lower: np.ndarray, upper: np.ndarray, tol: float):
    """Split two-sided rows into equality, lower and upper index sets."""
    finite_lo = np.isfinite(lower)
    finite_up = np.isfinite(upper)
    equal = finite_lo & finite_up & (np.abs(upper - lower) <= tol)
    lo = np.flatnonzero(finite_lo & ~equal)
    up = np.flatnonzero(finite_up & ~equal)
    return np.flatnonzero(equal), lo, up


class ActiveSetQP(AbstractQPBackend):
    """Primal active-set QP solver with projected conjugate gradient.

    Attributes:
        max_iter: Maximum active-set iterations.
        max_cg_iter: Maximum CG iterations per equality-constrained solve.
        tol: Feasibility and optimality tolerance.
    """

    max_iter: int = eqx.field(static=True, default=100)
    max_cg_iter: int = eqx.field(static=True, default=50)
    tol: float = eqx.field(static=True, default=1e-8)

    def __check_init__(self):
        if self.max_iter < 1 or self.max_cg_iter < 1:
            raise ConfigurationError("QP iteration limits must be positive")
        if self.tol <= 0:
            raise ConfigurationError(f"QP tolerance must be positive, got {self.tol}")

    def solve(
        self,
        problem: QPProblem,
        hessian_sparsity: Sparsity,
        jacobian_sparsity: Sparsity,
        x0: Float[Array, " nx"],
    ) -> QPSolution:
        lbx = np.asarray(problem.lbx)
        ubx = np.asarray(problem.ubx)
        lba = np.asarray(problem.lbA)
        uba = np.asarray(problem.ubA)
        if np.any(lbx > ubx + self.tol) or np.any(lba > uba + self.tol):
            raise QPSolverError("QP is infeasible: a lower bound exceeds its upper bound")

        H = hessian_sparsity.to_dense(problem.H)
        A = jacobian_sparsity.to_dense(problem.A)
        n = H.shape[0]
        dtype = problem.g.dtype
        identity = jnp.eye(n, dtype=dtype)

        x_eq, x_lo, x_up = _row_selection(lbx, ubx, self.tol)
        a_eq, a_lo, a_up = _row_selection(lba, uba, self.tol)

        # Stack rows as [A; I] so one index map serves both blocks
        rows_eq = jnp.concatenate([A[a_eq], identity[x_eq]], axis=0)
        rhs_eq = jnp.concatenate([problem.lbA[a_eq], problem.lbx[x_eq]])
        rows_in = jnp.concatenate(
            [A[a_lo], -A[a_up], identity[x_lo], -identity[x_up]], axis=0
        )
        rhs_in = jnp.concatenate(
            [problem.lbA[a_lo], -problem.ubA[a_up], problem.lbx[x_lo], -problem.ubx[x_up]]
        )
        rows_eq = rows_eq.reshape(-1, n).astype(dtype)
        rows_in = rows_in.reshape(-1, n).astype(dtype)

        d, mult_eq, mult_in, converged = solve_qp(
            H,
            problem.g,
            rows_eq,
            rhs_eq.astype(dtype),
            rows_in,
            rhs_in.astype(dtype),
            max_iter=self.max_iter,
            max_cg_iter=self.max_cg_iter,
            tol=self.tol,
            d0=jnp.asarray(x0, dtype=dtype),
        )
        if not converged:
            raise QPSolverError(
                f"Active-set QP did not converge within {self.max_iter} iterations"
            )
        if not bool(jnp.all(jnp.isfinite(d))):
            raise QPSolverError("QP solution contains non-finite values")

        # Back to the SQP convention: lower-side rows flip sign
        n_aeq = len(a_eq)
        split = np.cumsum([len(a_lo), len(a_up), len(x_lo)])
        m_lo, m_up, mx_lo, mx_up = np.split(np.asarray(mult_in), split)
        lam_a = (
            jnp.zeros((len(lba),), dtype=dtype)
            .at[a_eq]
            .add(-mult_eq[:n_aeq])
            .at[a_lo]
            .add(-m_lo)
            .at[a_up]
            .add(m_up)
        )
        lam_x = (
            jnp.zeros((n,), dtype=dtype)
            .at[x_eq]
            .add(-mult_eq[n_aeq:])
            .at[x_lo]
            .add(-mx_lo)
            .at[x_up]
            .add(mx_up)
        )
        logger.debug(
            "QP solved: %d equality rows, %d inequality rows",
            rows_eq.shape[0],
            rows_in.shape[0],
        )
        return QPSolution(x=d, lam_x=lam_x, lam_a=lam_a)


QP_BACKENDS: Mapping[str, type[AbstractQPBackend]] = types.MappingProxyType(
    {"active_set": ActiveSetQP}
)


def make_qp_backend(
    qpsol: Union[str, AbstractQPBackend],
    options: Optional[Mapping[str, Any]] = None,
) -> AbstractQPBackend:
    """Construct the QP backend for one solve.

    Args:
        qpsol: Name of a shipped backend (see ``QP_BACKENDS``) or a ready
            backend instance.
        options: Keyword arguments for the backend constructor.

    Returns:
        A fresh backend instance.
    """
    if isinstance(qpsol, AbstractQPBackend):
        if options:
            raise ConfigurationError(
                "qpsol_options cannot be combined with a backend instance"
            )
        return qpsol
    try:
        backend_cls = QP_BACKENDS[qpsol]
    except KeyError:
        raise ConfigurationError(
            f"Unknown qpsol '{qpsol}', expected one of {sorted(QP_BACKENDS)}"
        ) from None
    try:
        return backend_cls(**dict(options or {}))
    except TypeError as exc:
        raise ConfigurationError(f"Invalid qpsol_options for '{qpsol}': {exc}") from exc
