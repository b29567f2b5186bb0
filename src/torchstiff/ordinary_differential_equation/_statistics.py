"""Integrator statistics."""

import math
from dataclasses import dataclass, field


@dataclass
class SolverCounters:
    """Work counters for one Newton corrector.

    The integrator keeps one instance for the primary step and another for
    the error estimator's half steps.

    Attributes
    ----------
    newton_iterations : int
        Newton-Raphson iterations performed.
    derivative_evaluations : int
        Dynamics evaluations, excluding those spent forming Jacobians.
    derivative_evaluations_for_jacobian : int
        Dynamics evaluations spent forming Jacobians.
    jacobian_evaluations : int
        Jacobian matrices computed.
    iteration_matrix_factorizations : int
        LU factorizations of ``I - h J``.
    substep_failures : int
        Solves that failed to converge. Only the error estimator's counter
        uses it; primary failures are in
        :attr:`IntegratorStatistics.num_substep_failures`.
    """

    newton_iterations: int = 0
    derivative_evaluations: int = 0
    derivative_evaluations_for_jacobian: int = 0
    jacobian_evaluations: int = 0
    iteration_matrix_factorizations: int = 0
    substep_failures: int = 0

    def reset(self) -> None:
        self.newton_iterations = 0
        self.derivative_evaluations = 0
        self.derivative_evaluations_for_jacobian = 0
        self.jacobian_evaluations = 0
        self.iteration_matrix_factorizations = 0
        self.substep_failures = 0


@dataclass
class IntegratorStatistics:
    """Monotonic counters and step-size extremes of an integrator.

    Owned by one integrator and reset by ``initialize()`` or
    ``reset_statistics()``.

    Attributes
    ----------
    step : SolverCounters
        Counters of the primary implicit step.
    error_estimator : SolverCounters
        Counters of the error estimator's extra half steps.
    num_steps_taken : int
        Accepted steps.
    num_substep_failures : int
        Step attempts whose primary Newton iteration failed to converge.
        Failed half steps of the error estimator are counted separately,
        see ``num_error_estimator_substep_failures``.
    num_step_shrinkages_from_substep_failures : int
        Step-size reductions caused by substep failures of either kind.
    num_step_shrinkages_from_error_control : int
        Step-size reductions caused by a too large error estimate.
    previous_step_size : float
        Size of the last accepted step (NaN before the first step).
    largest_step_size_taken : float
        Largest accepted step (NaN before the first step).
    smallest_adapted_step_size_taken : float
        Smallest accepted step chosen by error control, ignoring steps that
        were shortened only to land on the requested time (NaN if none).
    """

    step: SolverCounters = field(default_factory=SolverCounters)
    error_estimator: SolverCounters = field(default_factory=SolverCounters)
    num_steps_taken: int = 0
    num_substep_failures: int = 0
    num_step_shrinkages_from_substep_failures: int = 0
    num_step_shrinkages_from_error_control: int = 0
    previous_step_size: float = math.nan
    largest_step_size_taken: float = math.nan
    smallest_adapted_step_size_taken: float = math.nan

    def record_step(self, h: float, adapted: bool) -> None:
        """Record an accepted step of size ``h``."""
        self.num_steps_taken += 1
        self.previous_step_size = h
        if math.isnan(self.largest_step_size_taken) or (
            h > self.largest_step_size_taken
        ):
            self.largest_step_size_taken = h
        if adapted and (
            math.isnan(self.smallest_adapted_step_size_taken)
            or h < self.smallest_adapted_step_size_taken
        ):
            self.smallest_adapted_step_size_taken = h

    def reset(self) -> None:
        self.step.reset()
        self.error_estimator.reset()
        self.num_steps_taken = 0
        self.num_substep_failures = 0
        self.num_step_shrinkages_from_substep_failures = 0
        self.num_step_shrinkages_from_error_control = 0
        self.previous_step_size = math.nan
        self.largest_step_size_taken = math.nan
        self.smallest_adapted_step_size_taken = math.nan

    @property
    def num_newton_raphson_iterations(self) -> int:
        return self.step.newton_iterations

    @property
    def num_error_estimator_newton_raphson_iterations(self) -> int:
        return self.error_estimator.newton_iterations

    @property
    def num_derivative_evaluations(self) -> int:
        return self.step.derivative_evaluations

    @property
    def num_error_estimator_derivative_evaluations(self) -> int:
        return self.error_estimator.derivative_evaluations

    @property
    def num_derivative_evaluations_for_jacobian(self) -> int:
        return self.step.derivative_evaluations_for_jacobian

    @property
    def num_error_estimator_derivative_evaluations_for_jacobian(self) -> int:
        return self.error_estimator.derivative_evaluations_for_jacobian

    @property
    def num_jacobian_evaluations(self) -> int:
        return self.step.jacobian_evaluations

    @property
    def num_error_estimator_jacobian_evaluations(self) -> int:
        return self.error_estimator.jacobian_evaluations

    @property
    def num_iteration_matrix_factorizations(self) -> int:
        return self.step.iteration_matrix_factorizations

    @property
    def num_error_estimator_iteration_matrix_factorizations(self) -> int:
        return self.error_estimator.iteration_matrix_factorizations

    @property
    def num_error_estimator_substep_failures(self) -> int:
        return self.error_estimator.substep_failures
