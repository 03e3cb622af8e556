"""Construction of the QP subproblem from the current linearization.

With ``d = x - xk`` the QP of one outer iteration is

    minimize    (1/2) d^T Bk d + gf^T d
    subject to  lbx - xk <= d      <= ubx - xk
                lbg - gk <= Jk d   <= ubg - gk
"""

from beartype import beartype
from jaxtyping import Array, Float, jaxtyped

from sqp_jax.qp_solver import QPProblem
from sqp_jax.types import Bounds


@jaxtyped(typechecker=beartype)
def formulate_qp(
    Bk: Float[Array, " nnz_h"],
    gf: Float[Array, " nx"],
    Jk: Float[Array, " nnz_a"],
    xk: Float[Array, " nx"],
    gk: Float[Array, " ng"],
    bounds: Bounds,
) -> QPProblem:
    """Return the QP inputs ``(H, g, lbx, ubx, A, lbA, ubA)`` in delta form."""
    return QPProblem(
        H=Bk,
        g=gf,
        lbx=bounds.lbx - xk,
        ubx=bounds.ubx - xk,
        A=Jk,
        lbA=bounds.lbg - gk,
        ubA=bounds.ubg - gk,
    )
