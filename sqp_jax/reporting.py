"""Console output of the SQP method.

All output goes through :mod:`logging` (logger ``sqp_jax.reporting``) at
INFO level, so it is silent unless the application configures logging.
"""

import logging
import math

from sqp_jax.sparsity import Sparsity

logger = logging.getLogger(__name__)

_TABLE_HEADER = "%4s %14s %9s %9s %9s %7s %2s" % (
    "iter",
    "objective",
    "inf_pr",
    "inf_du",
    "||d||",
    "lg(rg)",
    "ls",
)


def log_header(
    exact_hessian: bool, nx: int, ng: int, jac_sparsity: Sparsity, hess_sparsity: Sparsity
) -> None:
    """Problem statistics printed once before the first iteration."""
    logger.info("-------------------------------------------")
    logger.info("This is sqp_jax.SQPMethod.")
    if exact_hessian:
        logger.info("Using exact Hessian")
    else:
        logger.info("Using limited memory BFGS Hessian approximation")
    logger.info("Number of variables:                       %9d", nx)
    logger.info("Number of constraints:                     %9d", ng)
    logger.info("Number of nonzeros in constraint Jacobian: %9d", jac_sparsity.nnz)
    logger.info("Number of nonzeros in Lagrangian Hessian:  %9d", hess_sparsity.nnz)


def format_iteration(
    iteration: int,
    objective: float,
    pr_inf: float,
    du_inf: float,
    dx_norm: float,
    reg: float,
    ls_trials: int,
    ls_success: bool,
) -> str:
    """One row of the iteration table.

    The regularization column shows ``log10(reg)`` or ``-`` when no
    regularization was applied; a failed line search is flagged with ``F``.
    """
    line = "%4d %14.6e %9.2e %9.2e %9.2e " % (
        iteration,
        objective,
        pr_inf,
        du_inf,
        dx_norm,
    )
    if reg > 0:
        line += "%7.2f " % math.log10(reg)
    else:
        line += "%7s " % "-"
    line += "%2d" % ls_trials
    if not ls_success:
        line += "F"
    return line


def log_iteration(iteration: int, *args) -> None:
    """Log one iteration row, repeating the column header every 10 iterations."""
    if iteration % 10 == 0:
        logger.info(_TABLE_HEADER)
    logger.info(format_iteration(iteration, *args))
