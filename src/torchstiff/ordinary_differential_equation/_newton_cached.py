"""Newton corrector with iteration-matrix caching for implicit Euler steps."""

from dataclasses import dataclass
from typing import Callable, Tuple

import torch

from torchstiff.ordinary_differential_equation._jacobian import (
    JacobianManager,
)
from torchstiff.ordinary_differential_equation._statistics import (
    SolverCounters,
)


@dataclass
class NewtonResult:
    """Outcome of one Newton solve.

    Attributes
    ----------
    x : Tensor
        Solution (or last iterate if not converged), shape ``(n,)``.
    converged : bool
        Whether the update norm met the tolerance. ``False`` is the
        recoverable convergence-failure signal; the caller shrinks the
        step and retries.
    n_iterations : int
        Newton iterations performed in the final attempt.
    """

    x: torch.Tensor
    converged: bool
    n_iterations: int


class NewtonCorrector:
    """
    Solves the backward Euler equation for one step.

    Given ``(t0, x0, h)`` it finds ``x1`` with

    .. math::

        G(x_1) = x_1 - x_0 - h f(t_0 + h, x_1) = 0

    starting from ``x1 = x0``. Each iteration solves
    ``(I - h J) dx = -G(x1)`` with the iteration matrix held by the
    :class:`JacobianManager` and updates ``x1 <- x1 + dx``.

    Parameters
    ----------
    jacobian_manager : JacobianManager
        Source of the factorized iteration matrix.
    counters : SolverCounters
        Receives iteration and evaluation counts.

    Notes
    -----
    Convergence is declared when every update component satisfies
    ``|dx_i| <= kappa * accuracy * max(1, |x1_i|)``. The solve fails when
    the update norm stops decreasing, when a non-finite value appears, when
    the iteration matrix is singular, or after ``max_iterations``
    iterations. When a failing attempt used a reused factorization, the
    matrix is rebuilt at the current point and the solve is retried once.
    Any failure invalidates the cache.
    """

    max_iterations = 10
    kappa = 0.1

    def __init__(
        self,
        jacobian_manager: JacobianManager,
        counters: SolverCounters,
    ):
        self.jacobian_manager = jacobian_manager
        self.counters = counters

    def solve(
        self,
        f: Callable[[float, torch.Tensor], torch.Tensor],
        t0: float,
        x0: torch.Tensor,
        h: float,
        accuracy: float,
        reuse: bool,
    ) -> NewtonResult:
        """
        Solve for the backward Euler state at ``t0 + h``.

        Parameters
        ----------
        f : callable
            Flat dynamics ``f(t, x) -> (n,)``.
        t0 : float
            Start time of the step.
        x0 : Tensor
            State at ``t0``, shape ``(n,)``.
        h : float
            Step size.
        accuracy : float
            Working accuracy the update tolerance is tied to.
        reuse : bool
            Whether a cached iteration matrix may be reused.

        Returns
        -------
        NewtonResult
            The solution and whether it converged.
        """
        result, reused = self._iterate(f, t0, x0, h, accuracy, reuse)

        if not result.converged and reused:
            self.jacobian_manager.invalidate()
            result, _ = self._iterate(f, t0, x0, h, accuracy, reuse)

        if not result.converged:
            self.jacobian_manager.invalidate()

        return result

    def _iterate(
        self, f, t0, x0, h, accuracy, reuse
    ) -> Tuple[NewtonResult, bool]:
        t1 = t0 + h
        x = x0.clone()

        fx = f(t1, x)
        self.counters.derivative_evaluations += 1

        reused = self.jacobian_manager.update_iteration_matrix(
            f, t1, x, fx, h, self.counters, reuse
        )
        if not self.jacobian_manager.cache.valid:
            return NewtonResult(x, False, 0), reused

        last_dx_norm = float("inf")
        for iteration in range(self.max_iterations):
            if iteration > 0:
                fx = f(t1, x)
                self.counters.derivative_evaluations += 1

            residual = x - x0 - h * fx
            if not bool(torch.isfinite(residual).all()):
                return NewtonResult(x, False, iteration), reused

            dx = self.jacobian_manager.solve(-residual)
            self.counters.newton_iterations += 1
            if not bool(torch.isfinite(dx).all()):
                return NewtonResult(x, False, iteration + 1), reused

            x = x + dx

            scale = accuracy * torch.clamp(torch.abs(x.detach()), min=1.0)
            dx_norm = float(torch.max(torch.abs(dx.detach()) / scale))
            if dx_norm <= self.kappa:
                return NewtonResult(x, True, iteration + 1), reused

            # Diverging
            if dx_norm >= last_dx_norm:
                return NewtonResult(x, False, iteration + 1), reused
            last_dx_norm = dx_norm

        return NewtonResult(x, False, self.max_iterations), reused
