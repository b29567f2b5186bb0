"""Tests for Jacobian schemes and the iteration-matrix cache."""

import pytest
import torch
from torch.autograd import forward_ad

from torchstiff.ordinary_differential_equation import (
    JacobianManager,
    JacobianScheme,
    SolverCounters,
    UnsupportedSchemeError,
)
from torchstiff.ordinary_differential_equation._jacobian import (
    is_derivative_carrying,
)

A = torch.tensor(
    [[-2.0, 1.0, 0.0], [0.5, -3.0, 1.5], [0.0, 2.0, -1.0]],
    dtype=torch.float64,
)


def linear(t, x):
    return A @ x


def nonlinear(t, x):
    return torch.stack([x[0] ** 2, torch.sin(x[1]), x[0] * x[1]])


def nonlinear_jacobian(x):
    x0, x1 = x[0].item(), x[1].item()
    return torch.tensor(
        [
            [2 * x0, 0.0, 0.0],
            [0.0, torch.cos(x[1]).item(), 0.0],
            [x1, x0, 0.0],
        ],
        dtype=torch.float64,
    )


class TestJacobianScheme:
    def test_coerce_string(self):
        assert (
            JacobianScheme.coerce("automatic") is JacobianScheme.AUTOMATIC
        )

    def test_coerce_member(self):
        scheme = JacobianScheme.CENTRAL_DIFFERENCE
        assert JacobianScheme.coerce(scheme) is scheme

    def test_unknown_scheme(self):
        with pytest.raises(ValueError, match="forward_difference"):
            JacobianScheme.coerce("complex_step")


class TestIsDerivativeCarrying:
    def test_plain_tensor(self):
        assert not is_derivative_carrying(torch.ones(3))

    def test_requires_grad(self):
        x = torch.ones(3, requires_grad=True)
        assert is_derivative_carrying(x)

    def test_dual_tensor(self):
        with forward_ad.dual_level():
            x = forward_ad.make_dual(torch.ones(3), torch.ones(3))
            assert is_derivative_carrying(x)


class TestComputeJacobian:
    @pytest.mark.parametrize(
        "scheme, atol",
        [
            ("forward_difference", 1e-6),
            ("central_difference", 1e-9),
            ("automatic", 1e-14),
        ],
    )
    def test_linear(self, scheme, atol):
        manager = JacobianManager(scheme)
        x = torch.tensor([0.3, -1.2, 2.5], dtype=torch.float64)
        J = manager.compute_jacobian(
            linear, 0.0, x, linear(0.0, x), SolverCounters()
        )
        assert J.shape == (3, 3)
        assert torch.allclose(J, A, atol=atol)

    @pytest.mark.parametrize(
        "scheme, atol",
        [
            ("forward_difference", 1e-6),
            ("central_difference", 1e-9),
            ("automatic", 1e-14),
        ],
    )
    def test_nonlinear(self, scheme, atol):
        manager = JacobianManager(scheme)
        x = torch.tensor([0.7, 1.1, -0.4], dtype=torch.float64)
        J = manager.compute_jacobian(
            nonlinear, 0.0, x, nonlinear(0.0, x), SolverCounters()
        )
        assert torch.allclose(J, nonlinear_jacobian(x), atol=atol)

    def test_large_state_components(self):
        """Perturbations scale with the magnitude of the component."""
        manager = JacobianManager("forward_difference")
        x = torch.tensor([1e6, -3e5, 2.0], dtype=torch.float64)
        J = manager.compute_jacobian(
            linear, 0.0, x, linear(0.0, x), SolverCounters()
        )
        assert torch.allclose(J, A, atol=1e-4)

    @pytest.mark.parametrize(
        "scheme, expected",
        [
            ("forward_difference", 3),
            ("central_difference", 6),
            ("automatic", 1),
        ],
    )
    def test_evaluation_counts(self, scheme, expected):
        manager = JacobianManager(scheme)
        counters = SolverCounters()
        x = torch.zeros(3, dtype=torch.float64)
        manager.compute_jacobian(linear, 0.0, x, linear(0.0, x), counters)
        assert counters.derivative_evaluations_for_jacobian == expected
        assert counters.derivative_evaluations == 0

    def test_automatic_rejects_requires_grad(self):
        manager = JacobianManager("automatic")
        x = torch.zeros(3, dtype=torch.float64, requires_grad=True)
        with pytest.raises(UnsupportedSchemeError):
            manager.compute_jacobian(
                linear, 0.0, x, linear(0.0, x), SolverCounters()
            )

    @pytest.mark.parametrize(
        "scheme", ["forward_difference", "central_difference"]
    )
    def test_finite_differences_accept_requires_grad(self, scheme):
        manager = JacobianManager(scheme)
        x = torch.zeros(3, dtype=torch.float64, requires_grad=True)
        J = manager.compute_jacobian(
            linear, 0.0, x, linear(0.0, x), SolverCounters()
        )
        assert torch.allclose(J.detach(), A, atol=1e-6)

    def test_explicit_jacobian(self):
        calls = []

        def jacobian(t, x):
            calls.append((t, x))
            return A

        manager = JacobianManager("automatic", jacobian=jacobian)
        x = torch.ones(3, dtype=torch.float64)
        J = manager.compute_jacobian(
            linear, 0.5, x, linear(0.5, x), SolverCounters()
        )
        assert torch.equal(J, A)
        assert len(calls) == 1
        assert calls[0][0] == 0.5


class TestIterationMatrix:
    def test_fresh_build(self):
        manager = JacobianManager("automatic")
        counters = SolverCounters()
        x = torch.ones(3, dtype=torch.float64)

        reused = manager.update_iteration_matrix(
            linear, 0.1, x, linear(0.1, x), 0.1, counters, reuse=True
        )

        assert not reused
        assert manager.cache.valid
        assert manager.cache.step_size == 0.1
        assert manager.cache.time == 0.1
        assert counters.jacobian_evaluations == 1
        assert counters.iteration_matrix_factorizations == 1

    def test_solve(self):
        manager = JacobianManager("automatic")
        x = torch.ones(3, dtype=torch.float64)
        h = 0.25
        manager.update_iteration_matrix(
            linear, 0.0, x, linear(0.0, x), h, SolverCounters(), reuse=True
        )

        rhs = torch.tensor([1.0, -2.0, 0.5], dtype=torch.float64)
        dx = manager.solve(rhs)

        M = torch.eye(3, dtype=torch.float64) - h * A
        assert torch.allclose(M @ dx, rhs, atol=1e-12)

    def test_reuse_same_step_size(self):
        manager = JacobianManager("forward_difference")
        counters = SolverCounters()
        x = torch.ones(3, dtype=torch.float64)
        fx = linear(0.0, x)

        manager.update_iteration_matrix(
            linear, 0.0, x, fx, 0.1, counters, True
        )
        reused = manager.update_iteration_matrix(
            linear, 1.0, 2 * x, fx, 0.1, counters, True
        )

        assert reused
        assert counters.jacobian_evaluations == 1
        assert counters.derivative_evaluations_for_jacobian == 3
        assert manager.cache.time == 0.0

    def test_step_size_change_rebuilds(self):
        manager = JacobianManager("forward_difference")
        counters = SolverCounters()
        x = torch.ones(3, dtype=torch.float64)
        fx = linear(0.0, x)

        manager.update_iteration_matrix(
            linear, 0.0, x, fx, 0.1, counters, True
        )
        reused = manager.update_iteration_matrix(
            linear, 0.0, x, fx, 0.05, counters, True
        )

        assert not reused
        assert counters.jacobian_evaluations == 2
        assert manager.cache.step_size == 0.05

    def test_reuse_disabled_rebuilds(self):
        manager = JacobianManager("forward_difference")
        counters = SolverCounters()
        x = torch.ones(3, dtype=torch.float64)
        fx = linear(0.0, x)

        for _ in range(3):
            manager.update_iteration_matrix(
                linear, 0.0, x, fx, 0.1, counters, False
            )

        assert counters.jacobian_evaluations == 3
        assert counters.iteration_matrix_factorizations == 3

    def test_invalidate_rebuilds(self):
        manager = JacobianManager("forward_difference")
        counters = SolverCounters()
        x = torch.ones(3, dtype=torch.float64)
        fx = linear(0.0, x)

        manager.update_iteration_matrix(
            linear, 0.0, x, fx, 0.1, counters, True
        )
        manager.invalidate()
        reused = manager.update_iteration_matrix(
            linear, 0.0, x, fx, 0.1, counters, True
        )

        assert not reused
        assert counters.jacobian_evaluations == 2

    def test_scheme_change_clears_cache(self):
        manager = JacobianManager("forward_difference")
        x = torch.ones(3, dtype=torch.float64)
        manager.update_iteration_matrix(
            linear, 0.0, x, linear(0.0, x), 0.1, SolverCounters(), True
        )
        assert manager.cache.valid

        manager.scheme = "central_difference"

        assert not manager.cache.valid
        assert manager.cache.lu_factors is None
        assert manager.scheme is JacobianScheme.CENTRAL_DIFFERENCE

    def test_singular_iteration_matrix(self):
        # I - h J = 0 for f(x) = 2x and h = 1/2.
        def f(t, x):
            return 2.0 * x

        manager = JacobianManager("automatic")
        counters = SolverCounters()
        x = torch.ones(2, dtype=torch.float64)

        reused = manager.update_iteration_matrix(
            f, 0.0, x, f(0.0, x), 0.5, counters, True
        )

        assert not reused
        assert not manager.cache.valid
        assert counters.iteration_matrix_factorizations == 1
