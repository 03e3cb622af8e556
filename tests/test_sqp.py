"""Tests for the SQP method driver.

These tests check end-to-end behaviour of ``SQPMethod.solve``: termination
statuses and their priority, the line search bookkeeping, constrained
problems in both Hessian modes, callbacks, error propagation and options.
"""

import logging

import jax
import jax.numpy as jnp
import numpy as np
import pytest

from sqp_jax import (
    AbstractQPBackend,
    ConfigurationError,
    EvaluationError,
    JaxEvaluator,
    QPSolution,
    QPSolverError,
    SolveStatus,
    SQPMethod,
)
from sqp_jax.types import Bounds

jax.config.update("jax_enable_x64", True)

HESSIAN_MODES = ["exact", "limited-memory"]


def _square(x, p):
    return jnp.sum(x**2)


def _solver(f, g=None, nx=1, ng=0, **options):
    options.setdefault("print_header", False)
    options.setdefault("print_iteration", False)
    return SQPMethod(JaxEvaluator(f, g, nx, ng), **options)


def _max_iter(mode):
    return 50 if mode == "exact" else 100


class FailingQP(AbstractQPBackend):
    """QP backend that always fails."""

    def solve(self, problem, hessian_sparsity, jacobian_sparsity, x0):
        raise QPSolverError("no luck")


class NewtonStepQP(AbstractQPBackend):
    """Unconstrained Newton step, regardless of the curvature sign."""

    def solve(self, problem, hessian_sparsity, jacobian_sparsity, x0):
        H = hessian_sparsity.to_dense(problem.H)
        return QPSolution(
            x=jnp.linalg.solve(H, -problem.g),
            lam_x=jnp.zeros_like(problem.g),
            lam_a=jnp.zeros_like(problem.lbA),
        )


class TestLineSearchScenarios:
    def test_single_newton_step(self):
        """f(x) = x^2 from x0 = 5 with the exact Hessian.

        The QP gives dx = -5, the full step is accepted and the solve
        converges at iteration 1.
        """
        sol = _solver(_square).solve(jnp.array([5.0]))

        assert sol.status == SolveStatus.SUCCEEDED
        assert sol.success
        assert sol.iter_count == 1
        np.testing.assert_allclose(sol.x, [0.0], atol=1e-12)
        np.testing.assert_allclose(sol.f, 0.0, atol=1e-20)

        history = sol.stats["history"]
        assert len(history) == 2
        assert history[1].step_size == 1.0
        assert history[1].ls_trials == 1
        assert history[1].ls_success
        np.testing.assert_allclose(history[1].dx_norm, 5.0)

    def test_full_steps_without_line_search(self):
        """With max_iter_ls = 0 every step has length one and no trials."""

        def objective(x, p):
            return jnp.sum(x**4 + x**2)

        sol = _solver(objective, max_iter_ls=0).solve(jnp.array([2.0]))

        assert sol.success
        np.testing.assert_allclose(sol.x, [0.0], atol=1e-6)
        for record in sol.stats["history"][1:]:
            assert record.step_size == 1.0
            assert record.ls_trials == 0
            assert record.ls_success

    def test_failed_trials_accept_last_step(self, faulty_evaluator):
        """Every line-search evaluation fails: after max_iter_ls trials the
        step t = beta^2 is taken anyway and flagged as a failure."""
        evaluator = faulty_evaluator(JaxEvaluator(_square, None, 1, 0), fail_fg=True)
        solver = SQPMethod(evaluator, max_iter=1, print_iteration=False)

        sol = solver.solve(jnp.array([5.0]))

        assert sol.status == SolveStatus.MAXIMUM_ITERATIONS_EXCEEDED
        assert sol.iter_count == 1
        np.testing.assert_allclose(sol.x, [5.0 - 0.64 * 5.0])
        record = sol.stats["history"][1]
        assert record.ls_trials == 3
        assert not record.ls_success
        assert record.step_size == pytest.approx(0.64)
        assert sol.stats["ls_failures"] == 1


class TestTermination:
    def test_converged_at_initial_point(self):
        sol = _solver(_square).solve(jnp.array([0.0]))
        assert sol.success
        assert sol.iter_count == 0

    def test_iteration_limit(self):
        def objective(x, p):
            return x[0] ** 2 + 10.0 * x[1] ** 2

        solver = _solver(
            objective, nx=2, max_iter=2, hessian_approximation="limited-memory"
        )
        sol = solver.solve(jnp.array([1.0, 1.0]))

        assert sol.status == SolveStatus.MAXIMUM_ITERATIONS_EXCEEDED
        assert sol.iter_count == 2
        assert sol.stats["iter_count"] == 2
        assert len(sol.stats["history"]) == 3

    def test_zero_iteration_limit(self):
        sol = _solver(_square, max_iter=0).solve(jnp.array([1.0]))
        assert sol.status == SolveStatus.MAXIMUM_ITERATIONS_EXCEEDED
        assert sol.iter_count == 0

    def test_small_step(self):
        def objective(x, p):
            return x[0] ** 2 + 10.0 * x[1] ** 2

        solver = _solver(
            objective,
            nx=2,
            hessian_approximation="limited-memory",
            min_step_size=1e3,
        )
        sol = solver.solve(jnp.array([1.0, 1.0]))

        assert sol.status == SolveStatus.STEP_TOO_SMALL
        assert sol.stats["return_status"] == "Search_Direction_Becomes_Too_Small"
        assert sol.iter_count == 1

    def test_min_iter(self):
        """Convergence at iteration 1 is only reported once min_iter is
        reached, and it takes priority over the zero step."""
        sol = _solver(_square, min_iter=3).solve(jnp.array([5.0]))

        assert sol.status == SolveStatus.SUCCEEDED
        assert sol.iter_count == 3
        np.testing.assert_allclose(sol.stats["history"][3].dx_norm, 0.0)

    def test_buffers_keep_their_shapes(self):
        def constraint(x, p):
            return jnp.array([x[0] + x[1]])

        solver = _solver(_square, constraint, nx=2, ng=1)
        bounds = Bounds(
            lbx=jnp.full(2, -jnp.inf),
            ubx=jnp.full(2, jnp.inf),
            lbg=jnp.array([1.0]),
            ubg=jnp.array([1.0]),
        )
        ctx = solver.setup(bounds, jnp.zeros(0))
        state = solver.init(ctx, jnp.array([3.0, 1.0]))
        new_state = solver.step(ctx, state)

        assert new_state.iteration == 1
        for name in ("xk", "gk", "gf", "Jk", "Bk", "gLag", "mu", "mu_x", "dx"):
            assert getattr(new_state, name).shape == getattr(state, name).shape

    def test_terminate_reports_status(self):
        def constraint(x, p):
            return jnp.array([x[0] + x[1]])

        solver = _solver(_square, constraint, nx=2, ng=1)
        bounds = Bounds(
            lbx=jnp.full(2, -jnp.inf),
            ubx=jnp.full(2, jnp.inf),
            lbg=jnp.array([1.0]),
            ubg=jnp.array([1.0]),
        )
        ctx = solver.setup(bounds, jnp.zeros(0))
        state = solver.init(ctx, jnp.array([3.0, 1.0]))
        assert solver.terminate(ctx, state) == (False, None)

        state = solver.step(ctx, state)
        done, status = solver.terminate(ctx, state)
        assert done
        assert status == SolveStatus.SUCCEEDED
        np.testing.assert_allclose(state.xk, [0.5, 0.5], rtol=1e-8)


class TestLinearObjectives:
    """Objectives with a zero Hessian, solved with the exact Hessian.

    The QP subproblem is then a linear program and its step must run all the
    way to the bounds.
    """

    def test_single_bound(self):
        sol = _solver(lambda x, p: x[0]).solve(jnp.array([5.0]), lbx=1.0)

        assert sol.success
        assert sol.iter_count == 1
        np.testing.assert_allclose(sol.x, [1.0])
        np.testing.assert_allclose(sol.lam_x, [-1.0])

    def test_vertex_of_linear_constraints(self):
        """minimize x + y s.t. x + 2y >= 2, x >= 0, y >= 0.

        Solution (0, 1) with lam_g = -1/2 and lam_x = (-1/2, 0).
        """

        def objective(x, p):
            return x[0] + x[1]

        def constraint(x, p):
            return jnp.array([x[0] + 2.0 * x[1]])

        sol = _solver(objective, constraint, nx=2, ng=1).solve(
            jnp.array([3.0, 3.0]), lbx=0.0, lbg=2.0
        )

        assert sol.success
        assert sol.iter_count == 1
        np.testing.assert_allclose(sol.x, [0.0, 1.0], atol=1e-8)
        np.testing.assert_allclose(sol.lam_g, [-0.5], rtol=1e-6)
        np.testing.assert_allclose(sol.lam_x, [-0.5, 0.0], atol=1e-8)

    def test_unbounded_linear_program(self):
        solver = _solver(lambda x, p: x[0])
        with pytest.raises(QPSolverError, match="unbounded"):
            solver.solve(jnp.array([5.0]))


@pytest.mark.parametrize("mode", HESSIAN_MODES)
class TestConstrainedProblems:
    """Problems with known solutions and multipliers.

    Multipliers follow the convention grad f + J^T lam_g + lam_x = 0, so they
    are negative on active lower bounds and positive on active upper bounds.
    """

    def test_linear_equality(self, mode):
        """minimize x^2 + y^2 + z^2 s.t. x + y + z = 1.

        Solution (1/3, 1/3, 1/3) with lam_g = -2/3.
        """

        def constraint(x, p):
            return jnp.array([jnp.sum(x)])

        solver = _solver(
            _square,
            constraint,
            nx=3,
            ng=1,
            hessian_approximation=mode,
            max_iter=_max_iter(mode),
        )
        sol = solver.solve(jnp.array([1.0, 0.0, 0.0]), lbg=1.0, ubg=1.0)

        assert sol.success
        np.testing.assert_allclose(sol.x, jnp.full(3, 1 / 3), rtol=1e-5)
        np.testing.assert_allclose(sol.lam_g, [-2 / 3], rtol=1e-4)

    def test_nonlinear_equality(self, mode):
        """minimize (x-1)^2 + (y-1)^2 s.t. x^2 + y^2 = 1.

        Solution (1/sqrt(2), 1/sqrt(2)) with lam_g = sqrt(2) - 1.
        """

        def objective(x, p):
            return (x[0] - 1) ** 2 + (x[1] - 1) ** 2

        def constraint(x, p):
            return jnp.array([x[0] ** 2 + x[1] ** 2])

        solver = _solver(
            objective,
            constraint,
            nx=2,
            ng=1,
            hessian_approximation=mode,
            max_iter=_max_iter(mode),
        )
        sol = solver.solve(jnp.array([0.5, 0.5]), lbg=1.0, ubg=1.0)

        assert sol.success
        np.testing.assert_allclose(sol.x, jnp.full(2, 1 / np.sqrt(2)), rtol=1e-5)
        np.testing.assert_allclose(sol.lam_g, [np.sqrt(2) - 1], rtol=1e-4)
        np.testing.assert_allclose(sol.g, [1.0], atol=1e-6)

    def test_active_lower_inequality(self, mode):
        """minimize x^2 + y^2 s.t. x + y >= 2. Solution (1, 1), lam_g = -2."""

        def constraint(x, p):
            return jnp.array([x[0] + x[1]])

        solver = _solver(
            _square,
            constraint,
            nx=2,
            ng=1,
            hessian_approximation=mode,
            max_iter=_max_iter(mode),
        )
        sol = solver.solve(jnp.array([2.0, 2.0]), lbg=2.0)

        assert sol.success
        np.testing.assert_allclose(sol.x, [1.0, 1.0], rtol=1e-5)
        np.testing.assert_allclose(sol.lam_g, [-2.0], rtol=1e-4)

    def test_active_upper_inequality(self, mode):
        """minimize (x-2)^2 + (y-2)^2 s.t. x + y <= 2. Solution (1, 1),
        lam_g = 2."""

        def objective(x, p):
            return (x[0] - 2) ** 2 + (x[1] - 2) ** 2

        def constraint(x, p):
            return jnp.array([x[0] + x[1]])

        solver = _solver(
            objective,
            constraint,
            nx=2,
            ng=1,
            hessian_approximation=mode,
            max_iter=_max_iter(mode),
        )
        sol = solver.solve(jnp.array([0.0, 0.0]), ubg=2.0)

        assert sol.success
        np.testing.assert_allclose(sol.x, [1.0, 1.0], rtol=1e-5)
        np.testing.assert_allclose(sol.lam_g, [2.0], rtol=1e-4)

    def test_variable_bounds(self, mode):
        """minimize (x-3)^2 + (y-3)^2 s.t. 0 <= x, y <= 2. Solution (2, 2),
        lam_x = (2, 2)."""

        def objective(x, p):
            return jnp.sum((x - 3.0) ** 2)

        solver = _solver(
            objective, nx=2, hessian_approximation=mode, max_iter=_max_iter(mode)
        )
        sol = solver.solve(jnp.array([1.0, 1.0]), lbx=0.0, ubx=2.0)

        assert sol.success
        np.testing.assert_allclose(sol.x, [2.0, 2.0], rtol=1e-6)
        np.testing.assert_allclose(sol.lam_x, [2.0, 2.0], rtol=1e-4)
        assert sol.g.shape == (0,)

    def test_equality_with_bounds(self, mode):
        """minimize x^2 + y^2 + z^2 s.t. x + y + z = 3, x >= 1.5."""

        def constraint(x, p):
            return jnp.array([jnp.sum(x)])

        solver = _solver(
            _square,
            constraint,
            nx=3,
            ng=1,
            hessian_approximation=mode,
            max_iter=_max_iter(mode),
        )
        sol = solver.solve(
            jnp.array([2.0, 0.5, 0.5]),
            lbx=jnp.array([1.5, -jnp.inf, -jnp.inf]),
            lbg=3.0,
            ubg=3.0,
        )

        assert sol.success
        np.testing.assert_allclose(sol.x, [1.5, 0.75, 0.75], rtol=1e-5)
        # 2 x + lam_g + lam_x = 0
        np.testing.assert_allclose(sol.lam_g, [-1.5], rtol=1e-4)
        np.testing.assert_allclose(sol.lam_x, [-1.5, 0.0, 0.0], atol=1e-5)

    def test_penalty_never_decreases(self, mode):
        def objective(x, p):
            return (x[0] - 1) ** 2 + (x[1] - 1) ** 2

        def constraint(x, p):
            return jnp.array([x[0] ** 2 + x[1] ** 2])

        solver = _solver(
            objective,
            constraint,
            nx=2,
            ng=1,
            hessian_approximation=mode,
            max_iter=_max_iter(mode),
        )
        sol = solver.solve(jnp.array([2.0, 0.0]), lbg=1.0, ubg=1.0)

        sigmas = [record.sigma for record in sol.stats["history"]]
        assert all(b >= a for a, b in zip(sigmas, sigmas[1:]))
        assert sol.stats["sigma"] == sigmas[-1]


class TestProblemInputs:
    def test_parameters(self):
        def objective(x, p):
            return jnp.sum((x - p) ** 2)

        solver = _solver(objective, nx=2)
        sol = solver.solve(jnp.zeros(2), p=jnp.array([3.0, -1.0]))

        assert sol.success
        np.testing.assert_allclose(sol.x, [3.0, -1.0], rtol=1e-10)

    def test_warm_start_multipliers(self):
        def constraint(x, p):
            return jnp.array([jnp.sum(x)])

        solver = _solver(_square, constraint, nx=2, ng=1)
        sol = solver.solve(
            jnp.array([0.5, 0.5]), lbg=1.0, ubg=1.0, lam_g0=jnp.array([-1.0])
        )

        assert sol.success
        assert sol.iter_count == 0
        np.testing.assert_allclose(sol.lam_g, [-1.0])

    def test_inconsistent_bounds(self):
        with pytest.raises(ValueError):
            _solver(_square).solve(jnp.array([0.0]), lbx=1.0, ubx=0.0)

    def test_wrong_initial_guess_length(self):
        with pytest.raises(ValueError):
            _solver(_square, nx=2).solve(jnp.zeros(3))

    def test_regularized_exact_hessian(self):
        """The Hessian is indefinite at the start and positive definite at
        the solution x0^2 = 0.275, x1 = -x0 / 10."""

        def objective(x, p):
            return -0.5 * x[0] ** 2 + x[0] * x[1] + 5.0 * x[1] ** 2 + x[0] ** 4

        solver = _solver(objective, nx=2, regularize=True)
        sol = solver.solve(jnp.array([0.1, 0.1]))

        assert sol.success
        assert sol.stats["history"][0].reg > 0.0
        x0 = np.sqrt(0.275)
        np.testing.assert_allclose(sol.x, [x0, -x0 / 10], rtol=1e-5, atol=1e-6)
        assert sol.stats["reg"] == 0.0


class TestCallback:
    def test_called_once_per_iteration(self):
        calls = []

        def callback(f, x, g, lam_g, lam_x):
            calls.append(float(f))
            return 0

        sol = _solver(_square).solve(jnp.array([5.0]), callback=callback)

        assert sol.success
        assert calls == [25.0, 0.0]

    def test_stop_request(self):
        sol = _solver(_square).solve(jnp.array([5.0]), callback=lambda *args: 1)

        assert sol.status == SolveStatus.USER_REQUESTED_STOP
        assert sol.iter_count == 0
        np.testing.assert_allclose(sol.x, [5.0])

    def test_callback_error_stops(self, caplog):
        def callback(*args):
            raise RuntimeError("boom")

        with caplog.at_level(logging.WARNING, logger="sqp_jax"):
            sol = _solver(_square).solve(jnp.array([5.0]), callback=callback)

        assert sol.status == SolveStatus.USER_REQUESTED_STOP
        assert "intermediate_callback error" in caplog.text
        assert "Aborted by callback" in caplog.text

    def test_callback_error_ignored(self):
        def callback(*args):
            raise RuntimeError("boom")

        solver = _solver(_square, callback_ignore_errors=True)
        sol = solver.solve(jnp.array([5.0]), callback=callback)

        assert sol.success

    def test_none_continues(self):
        sol = _solver(_square).solve(jnp.array([5.0]), callback=lambda *args: None)
        assert sol.success


class TestErrors:
    def test_gradient_failure_at_initial_point(self):
        def objective(x, p):
            return jnp.sum(jnp.sqrt(x))

        with pytest.raises(EvaluationError) as excinfo:
            _solver(objective).solve(jnp.array([-1.0]))
        assert excinfo.value.function == "nlp_grad_f"

    def test_gradient_failure_after_step(self, faulty_evaluator):
        evaluator = faulty_evaluator(
            JaxEvaluator(_square, None, 1, 0), fail_grad_below=1.0
        )
        solver = SQPMethod(evaluator, print_header=False, print_iteration=False)

        with pytest.raises(EvaluationError, match="nlp_grad_f"):
            solver.solve(jnp.array([5.0]))

    def test_qp_failure(self):
        solver = _solver(_square, qpsol=FailingQP())
        with pytest.raises(QPSolverError):
            solver.solve(jnp.array([5.0]))


class TestOptions:
    def test_defaults(self):
        solver = _solver(_square)
        assert solver.max_iter == 50
        assert solver.min_iter == 0
        assert solver.max_iter_ls == 3
        assert solver.c1 == 1e-4
        assert solver.beta == 0.8
        assert solver.merit_memory == 4
        assert solver.lbfgs_memory == 10
        assert solver.tol_pr == 1e-6
        assert solver.tol_du == 1e-6
        assert solver.min_step_size == 1e-10
        assert not solver.regularize
        assert solver.hessian_approximation == "exact"
        assert solver.qpsol == "active_set"

    def test_from_options(self):
        evaluator = JaxEvaluator(_square, None, 1, 0)
        solver = SQPMethod.from_options(
            evaluator, {"max_iter": 7, "hessian_approximation": "limited-memory"}
        )
        assert solver.max_iter == 7
        assert solver.hessian_approximation == "limited-memory"

    def test_unknown_option(self):
        evaluator = JaxEvaluator(_square, None, 1, 0)
        with pytest.raises(ConfigurationError, match="max_iterations"):
            SQPMethod.from_options(evaluator, {"max_iterations": 7})

    @pytest.mark.parametrize(
        "options",
        [
            {"hessian_approximation": "gauss-newton"},
            {"max_iter": -1},
            {"merit_memory": 0},
            {"lbfgs_memory": 0},
            {"tol_pr": 0.0},
            {"c1": 1.5},
            {"beta": 1.0},
        ],
    )
    def test_invalid_values(self, options):
        with pytest.raises(ConfigurationError):
            _solver(_square, **options)

    def test_qp_options_are_forwarded(self):
        solver = _solver(_square, qpsol_options={"max_iter": 5})
        assert solver.solve(jnp.array([5.0])).success

    def test_unknown_qp_backend(self):
        with pytest.raises(ConfigurationError):
            _solver(_square, qpsol="qpoases").solve(jnp.array([5.0]))


class TestLogging:
    def test_header_and_iterations(self, caplog):
        solver = SQPMethod(JaxEvaluator(_square, None, 1, 0))
        with caplog.at_level(logging.INFO, logger="sqp_jax"):
            solver.solve(jnp.array([5.0]))

        assert "This is sqp_jax.SQPMethod." in caplog.text
        assert "Using exact Hessian" in caplog.text
        assert "inf_pr" in caplog.text
        assert "Convergence achieved after 1 iterations" in caplog.text

    def test_output_can_be_disabled(self, caplog):
        with caplog.at_level(logging.INFO, logger="sqp_jax.reporting"):
            _solver(_square).solve(jnp.array([5.0]))
        assert not [r for r in caplog.records if r.name == "sqp_jax.reporting"]

    def test_indefinite_hessian_warning(self, caplog):
        def objective(x, p):
            return jnp.sum(x**4 - x**2)

        solver = _solver(objective, qpsol=NewtonStepQP(), max_iter=1)
        with caplog.at_level(logging.WARNING, logger="sqp_jax"):
            sol = solver.solve(jnp.array([0.1]))

        assert "Indefinite Hessian detected" in caplog.text
        assert sol.iter_count == 1
