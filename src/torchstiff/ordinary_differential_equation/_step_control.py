"""Adaptive step-size control for the implicit Euler integrator.

The controller follows the standard error-per-step strategy:

1. Propose the previously recommended step size, clipped to the admissible
   range and shortened to land exactly on the requested time.
2. Shrink by a fixed factor when the Newton corrector fails to converge.
   Steps at or below the working minimum skip the corrector entirely.
3. Compare the error estimate with the working accuracy; accept and grow,
   or reject and shrink, using the estimate's asymptotic order.
"""

import warnings
from typing import Tuple

import torch

from torchstiff.ordinary_differential_equation._ivp_exceptions import (
    MinimumStepSizeWarning,
    MinimumStepViolation,
)


def compute_error_norm(error: torch.Tensor) -> float:
    """Infinity norm of a flat error estimate."""
    if error.numel() == 0:
        return 0.0
    return float(torch.max(torch.abs(error.detach())))


def compute_next_step_size(
    h: float,
    error: float,
    accuracy: float,
    order: int,
    min_scale_factor: float = 0.2,
    max_scale_factor: float = 5.0,
) -> float:
    """
    Compute the next step size from the current error estimate.

    .. math::

        h_{\\text{next}} = h \\cdot \\operatorname{clip}\\left(
            \\left(\\frac{\\text{accuracy}}{\\text{error}}\\right)^{1/(p+1)},
            s_{\\min}, s_{\\max}\\right)

    Parameters
    ----------
    h : float
        Current step size.
    error : float
        Norm of the error estimate.
    accuracy : float
        Working accuracy.
    order : int
        Asymptotic order ``p`` of the error estimate.
    min_scale_factor : float
        Smallest allowed ratio ``h_next / h``.
    max_scale_factor : float
        Largest allowed ratio ``h_next / h``.

    Returns
    -------
    float
        Suggested next step size.
    """
    if error <= 0.0:
        return h * max_scale_factor
    scale = (accuracy / error) ** (1.0 / (order + 1.0))
    scale = min(max(scale, min_scale_factor), max_scale_factor)
    return h * scale


class StepController:
    """
    Step-size policy of one integration run.

    Parameters
    ----------
    maximum_step_size : float
        Largest step ever proposed.
    requested_minimum_step_size : float
        Floor below which step-size control reports a violation.
    working_minimum_step_size : float
        Floor below which the implicit solve is bypassed.
    initial_step_size_target : float
        First step size proposed.
    accuracy : float
        Working accuracy.
    throw_on_minimum_step_size_violation : bool
        Whether a violation raises :class:`MinimumStepViolation` or is
        tolerated by clamping to the floor.
    error_estimate_order : int
        Asymptotic order of the error estimate.
    """

    substep_shrink_factor = 0.5
    min_scale_factor = 0.2
    max_scale_factor = 5.0
    max_step_attempts = 100

    def __init__(
        self,
        maximum_step_size: float,
        requested_minimum_step_size: float,
        working_minimum_step_size: float,
        initial_step_size_target: float,
        accuracy: float,
        throw_on_minimum_step_size_violation: bool,
        error_estimate_order: int = 2,
    ):
        self.maximum_step_size = maximum_step_size
        self.requested_minimum_step_size = requested_minimum_step_size
        self.working_minimum_step_size = working_minimum_step_size
        self.accuracy = accuracy
        self.throw_on_minimum_step_size_violation = (
            throw_on_minimum_step_size_violation
        )
        self.error_estimate_order = error_estimate_order
        self.ideal_next_step_size = initial_step_size_target
        self._warned = False

    @property
    def floor(self) -> float:
        return max(
            self.requested_minimum_step_size, self.working_minimum_step_size
        )

    def begin(self) -> None:
        """Start a new integration call (re-arms the violation warning)."""
        self._warned = False

    def _land(self, t: float, t_target: float, h: float) -> Tuple[float, bool]:
        # Stretch or shorten so no sliver below the working minimum is left.
        remaining = t_target - t
        if h >= remaining or remaining - h < self.working_minimum_step_size:
            return remaining, True
        return h, False

    def fixed_step_size(self, t: float, t_target: float) -> float:
        """Step size of a fixed step from ``t`` toward ``t_target``."""
        h, _ = self._land(t, t_target, self.maximum_step_size)
        return h

    def candidate_step_size(
        self, t: float, t_target: float
    ) -> Tuple[float, bool]:
        """
        Propose the next error-controlled step size.

        Returns
        -------
        h : float
            Proposed step size.
        adapted : bool
            False when ``h`` was shortened or stretched to land on
            ``t_target``.
        """
        h = min(
            max(self.ideal_next_step_size, self.working_minimum_step_size),
            self.maximum_step_size,
        )
        h, landed = self._land(t, t_target, h)
        return h, not landed

    def check_minimum_step_size(self, h: float) -> None:
        """Raise if ``h`` violates the requested minimum and throwing is on."""
        if h < self.requested_minimum_step_size:
            if self.throw_on_minimum_step_size_violation:
                raise MinimumStepViolation(
                    f"Step size {h:.6e} is below the requested minimum "
                    f"step size {self.requested_minimum_step_size:.6e}"
                )
            self._warn(h)

    def after_convergence_failure(self, h: float) -> float:
        """
        Shrink after the Newton corrector failed at step size ``h``.

        Returns
        -------
        float
            Step size to retry with.

        Raises
        ------
        MinimumStepViolation
            If the shrunk step falls below the requested minimum and
            throwing is enabled.
        """
        h_new = h * self.substep_shrink_factor
        if h_new < self.requested_minimum_step_size:
            if self.throw_on_minimum_step_size_violation:
                raise MinimumStepViolation(
                    f"Newton iteration failed at step size {h:.6e}; shrinking "
                    f"would violate the requested minimum step size "
                    f"{self.requested_minimum_step_size:.6e}"
                )
            self._warn(h_new)
            h_new = self.floor
        self.ideal_next_step_size = h_new
        return h_new

    def after_error_estimate(self, h: float, error: float) -> bool:
        """
        Accept or reject a converged step from its error estimate norm.

        Sets :attr:`ideal_next_step_size` for the next proposal.

        Returns
        -------
        bool
            True if the step is accepted.

        Raises
        ------
        MinimumStepViolation
            If the error requires a step below the requested minimum and
            throwing is enabled.
        """
        h_new = compute_next_step_size(
            h,
            error,
            self.accuracy,
            self.error_estimate_order,
            self.min_scale_factor,
            self.max_scale_factor,
        )

        if error <= self.accuracy:
            self.ideal_next_step_size = max(h_new, h)
            return True

        if h_new < self.floor:
            if h_new < self.requested_minimum_step_size:
                if self.throw_on_minimum_step_size_violation:
                    raise MinimumStepViolation(
                        f"Error estimate {error:.6e} exceeds accuracy "
                        f"{self.accuracy:.6e}; the step size required "
                        f"({h_new:.6e}) is below the requested minimum "
                        f"step size {self.requested_minimum_step_size:.6e}"
                    )
                self._warn(h_new)
            if h <= self.floor:
                # Already at the floor: accept with larger error.
                self.ideal_next_step_size = self.floor
                return True
            h_new = self.floor

        self.ideal_next_step_size = h_new
        return False

    def after_explicit_step(self, h: float, error: float) -> None:
        """Propose the next step after an explicit step at the floor.

        The explicit step is accepted whatever its error; the estimate only
        lets the step size grow back above the floor.
        """
        self.ideal_next_step_size = compute_next_step_size(
            h,
            error,
            self.accuracy,
            self.error_estimate_order,
            self.min_scale_factor,
            self.max_scale_factor,
        )

    def _warn(self, h: float) -> None:
        if self._warned:
            return
        warnings.warn(
            f"Step size {h:.6e} is below the requested minimum step size "
            f"{self.requested_minimum_step_size:.6e}; continuing at the "
            f"minimum with larger error than requested.",
            MinimumStepSizeWarning,
        )
        self._warned = True
