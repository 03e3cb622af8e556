"""SQP-JAX: line-search Sequential Quadratic Programming in JAX.

This package provides an SQP method for constrained nonlinear programs

    minimize f(x, p)  s.t.  lbx <= x <= ubx,  lbg <= g(x, p) <= ubg

built from pluggable pieces: a problem evaluator (JAX autodiff by default),
a QP backend (primal active-set with projected conjugate gradient by
default), an exact or damped-BFGS Hessian model with optional Gershgorin
regularization, and a nonmonotone L1 merit line search.
"""

from sqp_jax.convergence import (
    TerminationCriteria,
    check_termination,
    max_violation,
    norm_inf,
    primal_infeasibility,
)
from sqp_jax.errors import (
    ConfigurationError,
    EvaluationError,
    QPSolverError,
    SQPError,
)
from sqp_jax.evaluator import AbstractProblemEvaluator, JaxEvaluator
from sqp_jax.formulation import formulate_qp
from sqp_jax.hessian import (
    AbstractHessianApproximation,
    ExactHessian,
    LimitedMemoryBFGS,
    bfgs_update,
    gershgorin_regularization,
    lagrangian_gradient,
    make_hessian_approximation,
    regularize,
)
from sqp_jax.merit import (
    LineSearchResult,
    MeritHistory,
    backtracking_line_search,
    compute_merit,
    update_penalty_parameter,
)
from sqp_jax.qp_solver import (
    QP_BACKENDS,
    AbstractQPBackend,
    ActiveSetQP,
    QPProblem,
    QPSolution,
    make_qp_backend,
    solve_qp,
)
from sqp_jax.solver import IterationRecord, SQPMethod, SQPSolution, SQPState
from sqp_jax.sparsity import Sparsity
from sqp_jax.types import (
    Bounds,
    CallbackFn,
    ConstraintFn,
    EvalResult,
    GradFn,
    JacobianFn,
    LagrangianHessianFn,
    ObjectiveFn,
    SolveStatus,
)

__all__ = [
    # Main solver
    "SQPMethod",
    "SQPState",
    "SQPSolution",
    "IterationRecord",
    "SolveStatus",
    # Types
    "Bounds",
    "CallbackFn",
    "ConstraintFn",
    "EvalResult",
    "GradFn",
    "JacobianFn",
    "LagrangianHessianFn",
    "ObjectiveFn",
    # Errors
    "SQPError",
    "EvaluationError",
    "QPSolverError",
    "ConfigurationError",
    # Problem evaluation
    "AbstractProblemEvaluator",
    "JaxEvaluator",
    "Sparsity",
    # QP subproblem
    "AbstractQPBackend",
    "ActiveSetQP",
    "QPProblem",
    "QPSolution",
    "QP_BACKENDS",
    "make_qp_backend",
    "solve_qp",
    "formulate_qp",
    # Hessian models
    "AbstractHessianApproximation",
    "ExactHessian",
    "LimitedMemoryBFGS",
    "make_hessian_approximation",
    "bfgs_update",
    "gershgorin_regularization",
    "regularize",
    "lagrangian_gradient",
    # Merit function
    "MeritHistory",
    "LineSearchResult",
    "compute_merit",
    "update_penalty_parameter",
    "backtracking_line_search",
    # Termination
    "TerminationCriteria",
    "check_termination",
    "max_violation",
    "norm_inf",
    "primal_infeasibility",
]
