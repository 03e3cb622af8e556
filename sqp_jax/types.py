"""Type definitions for SQP-JAX.

This module contains type aliases and small result containers shared by the
evaluator, the QP backends and the SQP driver. Array types use jaxtyping so
that the numerical kernels can be checked at runtime with beartype.
"""

import enum
from collections.abc import Callable
from typing import Any, NamedTuple

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]

# Objective function type: f(x, p) -> scalar
ObjectiveFn = Callable[[Vector, Float[Array, " np"]], Scalar]

# Constraint function type: g(x, p) -> constraint values, bounded by lbg <= g <= ubg
ConstraintFn = Callable[[Vector, Float[Array, " np"]], Float[Array, " m"]]

# Gradient function type: grad_f(x, p) -> nabla f(x)
GradFn = Callable[[Vector, Float[Array, " np"]], Vector]

# Jacobian function type: jac_g(x, p) -> J(x) where J[i, j] = dg_i/dx_j (dense)
JacobianFn = Callable[[Vector, Float[Array, " np"]], Float[Array, "m n"]]

# Lagrangian Hessian type: hess_l(x, p, sigma, lam) ->
# nabla^2 (sigma * f(x) + lam^T g(x)) (dense, symmetric)
LagrangianHessianFn = Callable[
    [Vector, Float[Array, " np"], Scalar, Float[Array, " m"]], Float[Array, "n n"]
]

# Iteration callback: callback(f, x, g, lam_g, lam_x) -> int, nonzero stops the solve
CallbackFn = Callable[[Scalar, Vector, Float[Array, " m"], Float[Array, " m"], Vector], int]


class SolveStatus(str, enum.Enum):
    """Terminal status of one solve."""

    SUCCEEDED = "Solve_Succeeded"
    MAXIMUM_ITERATIONS_EXCEEDED = "Maximum_Iterations_Exceeded"
    STEP_TOO_SMALL = "Search_Direction_Becomes_Too_Small"
    USER_REQUESTED_STOP = "User_Requested_Stop"

    def __str__(self) -> str:
        return self.value


class EvalResult(NamedTuple):
    """Outcome of a single evaluator call.

    Evaluations report failure through ``ok`` instead of raising, so that the
    line search can backtrack on a failed trial and the driver can decide
    which failures are fatal.

    Attributes:
        value: The evaluated quantity (``None`` when the call failed).
        ok: Whether the evaluation succeeded.
        message: Reason for the failure, empty on success.
    """

    value: Any
    ok: bool = True
    message: str = ""

    @classmethod
    def success(cls, value: Any) -> "EvalResult":
        return cls(value=value, ok=True, message="")

    @classmethod
    def failure(cls, message: str) -> "EvalResult":
        return cls(value=None, ok=False, message=message)


class Bounds(NamedTuple):
    """Simple bounds on the decision variables and the constraint values."""

    lbx: Vector
    ubx: Vector
    lbg: Float[Array, " m"]
    ubg: Float[Array, " m"]
