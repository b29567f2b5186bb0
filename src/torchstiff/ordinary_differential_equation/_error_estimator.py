"""Step-doubling error estimation for implicit Euler."""

from typing import Callable, Optional

import torch

from torchstiff.ordinary_differential_equation._context import (
    IntegratorContext,
)
from torchstiff.ordinary_differential_equation._newton_cached import (
    NewtonCorrector,
)
from torchstiff.ordinary_differential_equation._tensordict_utils import (
    flatten_state,
)


class StepDoublingErrorEstimator:
    """
    Local error estimate by comparing one full step against two half steps.

    Backward Euler has local truncation error ``C h^2 + O(h^3)``. Two half
    steps make error ``C h^2 / 2 + O(h^3)``, so their difference from the
    full step isolates the leading term and is exact (up to rounding) when
    the solution is affine in time.

    Parameters
    ----------
    corrector : NewtonCorrector
        Corrector used for the half steps. It should own its own
        :class:`JacobianManager` and counters, so half-step work is
        accounted for separately and does not disturb the primary step's
        iteration-matrix cache.
    """

    def __init__(self, corrector: NewtonCorrector):
        self.corrector = corrector

    def estimate(
        self,
        f: Callable[[float, torch.Tensor], torch.Tensor],
        scratch: IntegratorContext,
        h: float,
        x1: torch.Tensor,
        accuracy: float,
        reuse: bool,
    ) -> Optional[torch.Tensor]:
        """
        Estimate the local error of a full step of size ``h``.

        Parameters
        ----------
        f : callable
            Flat dynamics ``f(t, x) -> (n,)``.
        scratch : IntegratorContext
            Clone of the pre-step context. It is advanced by the two half
            steps and holds the reference solution afterwards.
        h : float
            Size of the full step.
        x1 : Tensor
            Full-step solution, shape ``(n,)``.
        accuracy : float
            Working accuracy passed to the corrector.
        reuse : bool
            Whether the half-step iteration matrix may be reused.

        Returns
        -------
        Tensor or None
            ``x1_ref - x1``, shape ``(n,)``, or None if a half step failed
            to converge.
        """
        half = 0.5 * h
        t0 = scratch.time

        x, unflatten = flatten_state(scratch.state)
        result = self.corrector.solve(f, t0, x, half, accuracy, reuse)
        if not result.converged:
            return None
        scratch.time = t0 + half
        scratch.state = unflatten(result.x)

        x, _ = flatten_state(scratch.state)
        result = self.corrector.solve(
            f, scratch.time, x, half, accuracy, reuse
        )
        if not result.converged:
            return None
        scratch.time = t0 + h
        scratch.state = unflatten(result.x)

        return result.x - x1
