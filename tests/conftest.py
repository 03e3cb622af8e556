"""Shared test helpers."""

from typing import Optional

import equinox as eqx
import jax
import pytest

from sqp_jax.evaluator import AbstractProblemEvaluator
from sqp_jax.types import EvalResult

jax.config.update("jax_enable_x64", True)


class FaultyEvaluator(AbstractProblemEvaluator):
    """Delegates to ``inner`` and injects evaluation failures.

    Attributes:
        inner: The evaluator doing the real work.
        fail_fg: Report every ``eval_fg`` call as failed.
        fail_grad_below: Report ``eval_grad_f`` as failed when ``x[0]`` is
            below this value.
    """

    inner: AbstractProblemEvaluator
    fail_fg: bool = eqx.field(static=True, default=False)
    fail_grad_below: Optional[float] = eqx.field(static=True, default=None)

    @property
    def nx(self) -> int:
        return self.inner.nx

    @property
    def ng(self) -> int:
        return self.inner.ng

    def jac_g_sparsity(self):
        return self.inner.jac_g_sparsity()

    def hess_l_sparsity(self):
        return self.inner.hess_l_sparsity()

    def eval_fg(self, x, p) -> EvalResult:
        if self.fail_fg:
            return EvalResult.failure("injected failure")
        return self.inner.eval_fg(x, p)

    def eval_grad_f(self, x, p) -> EvalResult:
        if self.fail_grad_below is not None and float(x[0]) < self.fail_grad_below:
            return EvalResult.failure("injected failure")
        return self.inner.eval_grad_f(x, p)

    def eval_jac_g(self, x, p) -> EvalResult:
        return self.inner.eval_jac_g(x, p)

    def eval_hess_l(self, x, p, sigma, lam) -> EvalResult:
        return self.inner.eval_hess_l(x, p, sigma, lam)


@pytest.fixture
def faulty_evaluator():
    """Factory wrapping an evaluator in :class:`FaultyEvaluator`."""
    return FaultyEvaluator
