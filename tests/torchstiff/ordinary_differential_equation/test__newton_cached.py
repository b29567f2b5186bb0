"""Tests for the Newton corrector of backward Euler steps."""

import pytest
import torch

from torchstiff.ordinary_differential_equation import (
    JacobianManager,
    NewtonCorrector,
    SolverCounters,
)


def make_corrector(scheme="forward_difference"):
    manager = JacobianManager(scheme)
    counters = SolverCounters()
    return NewtonCorrector(manager, counters), manager, counters


def decay(lam):
    def f(t, x):
        return -lam * x

    return f


class TestNewtonCorrector:
    def test_linear_decay(self):
        """Backward Euler on x' = -lam x gives x0 / (1 + lam h)."""
        corrector, manager, counters = make_corrector()
        x0 = torch.tensor([1.0], dtype=torch.float64)

        result = corrector.solve(decay(1000.0), 0.0, x0, 0.1, 1e-6, True)

        assert result.converged
        assert torch.allclose(
            result.x,
            torch.tensor([1.0 / 101.0], dtype=torch.float64),
            atol=1e-12,
        )
        assert result.n_iterations <= 3
        assert counters.newton_iterations == result.n_iterations
        assert counters.jacobian_evaluations == 1
        assert manager.cache.valid

    def test_nonlinear_residual(self):
        def f(t, x):
            return -(x**3)

        corrector, _, _ = make_corrector()
        x0 = torch.tensor([1.0, 0.5], dtype=torch.float64)
        h = 0.1

        result = corrector.solve(f, 0.0, x0, h, 1e-6, True)

        assert result.converged
        residual = result.x - x0 - h * f(h, result.x)
        assert residual.abs().max() < 1e-8

    def test_time_dependent_dynamics_evaluated_at_end_of_step(self):
        def f(t, x):
            return torch.full_like(x, t)

        corrector, _, _ = make_corrector()
        x0 = torch.zeros(1, dtype=torch.float64)

        result = corrector.solve(f, 1.0, x0, 0.5, 1e-6, True)

        assert result.converged
        assert result.x.item() == pytest.approx(0.75)

    def test_counts_derivative_evaluations(self):
        corrector, _, counters = make_corrector()
        x0 = torch.tensor([1.0, 2.0], dtype=torch.float64)

        result = corrector.solve(decay(2.0), 0.0, x0, 0.1, 1e-3, True)

        assert result.converged
        assert counters.derivative_evaluations == result.n_iterations
        assert counters.derivative_evaluations_for_jacobian == 2

    def test_no_real_root_fails(self):
        # x1 - 1 - x1^2 = 0 has no real root.
        def f(t, x):
            return x**2

        corrector, manager, _ = make_corrector()
        x0 = torch.tensor([1.0], dtype=torch.float64)

        result = corrector.solve(f, 0.0, x0, 1.0, 1e-3, True)

        assert not result.converged
        assert not manager.cache.valid

    def test_non_finite_dynamics_fail(self):
        def f(t, x):
            return x / torch.zeros_like(x)

        corrector, _, _ = make_corrector()
        x0 = torch.tensor([1.0], dtype=torch.float64)

        result = corrector.solve(f, 0.0, x0, 0.1, 1e-3, True)

        assert not result.converged

    def test_singular_iteration_matrix_fails(self):
        corrector, manager, counters = make_corrector("automatic")
        x0 = torch.tensor([1.0], dtype=torch.float64)

        result = corrector.solve(decay(-2.0), 0.0, x0, 0.5, 1e-3, True)

        assert not result.converged
        assert result.n_iterations == 0
        assert counters.newton_iterations == 0
        assert not manager.cache.valid

    def test_reused_matrix_across_steps(self):
        corrector, _, counters = make_corrector()
        f = decay(10.0)
        x = torch.tensor([1.0], dtype=torch.float64)

        for i in range(4):
            result = corrector.solve(f, 0.1 * i, x, 0.1, 1e-6, True)
            assert result.converged
            x = result.x

        assert counters.jacobian_evaluations == 1
        assert x.item() == pytest.approx(0.5**4, abs=1e-10)

    def test_reuse_disabled(self):
        corrector, _, counters = make_corrector()
        f = decay(10.0)
        x = torch.tensor([1.0], dtype=torch.float64)

        for i in range(4):
            x = corrector.solve(f, 0.1 * i, x, 0.1, 1e-6, False).x

        assert counters.jacobian_evaluations == 4

    def test_stale_matrix_is_rebuilt_and_retried(self):
        corrector, manager, counters = make_corrector()
        x0 = torch.tensor([1.0], dtype=torch.float64)
        h = 0.1

        # Prime the cache with I - h J for J = 8, which makes the chord
        # iteration on f = -x diverge.
        stale = decay(-8.0)
        manager.update_iteration_matrix(
            stale, h, x0, stale(h, x0), h, counters, True
        )

        result = corrector.solve(decay(1.0), 0.0, x0, h, 1e-6, True)

        assert result.converged
        assert result.x.item() == pytest.approx(1.0 / 1.1, abs=1e-10)
        assert counters.jacobian_evaluations == 2
        assert manager.cache.valid

    def test_fresh_failure_is_not_retried(self):
        def f(t, x):
            return x**2

        corrector, _, counters = make_corrector()
        x0 = torch.tensor([1.0], dtype=torch.float64)

        corrector.solve(f, 0.0, x0, 1.0, 1e-3, True)

        assert counters.jacobian_evaluations == 1

    def test_iteration_limit(self):
        corrector, _, _ = make_corrector()
        corrector.max_iterations = 1
        x0 = torch.tensor([1.0, 0.5], dtype=torch.float64)

        def f(t, x):
            return -(x**3)

        result = corrector.solve(f, 0.0, x0, 0.1, 1e-10, True)

        assert not result.converged
        assert result.n_iterations == 1
