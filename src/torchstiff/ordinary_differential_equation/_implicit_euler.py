"""Adaptive implicit (backward) Euler integrator."""

import math
from dataclasses import dataclass
from typing import Callable, Optional, Union

import torch
from tensordict import TensorDict

from torchstiff.ordinary_differential_equation._context import (
    IntegratorContext,
)
from torchstiff.ordinary_differential_equation._error_estimator import (
    StepDoublingErrorEstimator,
)
from torchstiff.ordinary_differential_equation._ivp_exceptions import (
    ConfigurationError,
    ConvergenceError,
)
from torchstiff.ordinary_differential_equation._jacobian import (
    JacobianManager,
    JacobianScheme,
)
from torchstiff.ordinary_differential_equation._newton_cached import (
    NewtonCorrector,
)
from torchstiff.ordinary_differential_equation._statistics import (
    IntegratorStatistics,
)
from torchstiff.ordinary_differential_equation._step_control import (
    StepController,
    compute_error_norm,
)
from torchstiff.ordinary_differential_equation._tensordict_utils import (
    flatten_dynamics,
    flatten_state,
)


@dataclass
class StepAttemptResult:
    """Outcome of one step attempt.

    Attributes
    ----------
    converged : bool
        Whether the attempt produced a state (Newton and the error
        estimator's half steps converged).
    state : Tensor
        Flat end-of-step state, shape ``(n,)``.
    error_estimate : Tensor, optional
        Flat local error estimate, shape ``(n,)``; None on failure.
    n_iterations : int
        Newton iterations of the primary solve.
    error_estimator_failed : bool
        Whether the primary solve converged but a half step of the error
        estimator did not.
    """

    converged: bool
    state: torch.Tensor
    error_estimate: Optional[torch.Tensor]
    n_iterations: int
    error_estimator_failed: bool = False


class ImplicitEulerIntegrator:
    """
    First-order implicit Euler integrator with step-doubling error control.

    The integrator advances an :class:`IntegratorContext` by solving

    .. math::

        x_1 = x_0 + h f(t_0 + h, x_1)

    with a Newton corrector whose iteration matrix ``I - h J`` may be reused
    across steps. In error-controlled mode a second-order error estimate
    from two half steps drives the step size; in fixed-step mode every step
    has the maximum step size.

    Parameters
    ----------
    f : callable
        Dynamics function with signature ``f(t, y) -> dy/dt``, where ``y``
        has the structure of the context state (Tensor or TensorDict).
    context : IntegratorContext, optional
        Time and state to advance. May be attached later with
        :meth:`reset_context`.
    jacobian : callable, optional
        Exact Jacobian ``jacobian(t, x) -> (n, n)`` on the flattened state,
        used by the automatic scheme instead of ``torch.func.jacfwd``.

    Examples
    --------
    >>> def f(t, y):
    ...     return -1000.0 * y
    >>> context = IntegratorContext(torch.tensor([1.0], dtype=torch.float64))
    >>> integrator = ImplicitEulerIntegrator(f, context)
    >>> integrator.maximum_step_size = 0.1
    >>> integrator.target_accuracy = 1e-4
    >>> integrator.initialize()
    >>> integrator.integrate_with_multiple_steps_to_time(1.0)
    >>> context.time
    1.0

    Notes
    -----
    Settings may change between runs. ``initialize()`` validates them,
    clamps the target accuracy into the working range and resets the
    statistics.
    """

    error_estimate_order = 2
    supports_error_estimation = True

    default_accuracy = 1e-3
    loosest_accuracy = 1e-1
    max_step_fraction = 0.1
    minimum_step_scale = 1e-14

    def __init__(
        self,
        f: Callable,
        context: Optional[IntegratorContext] = None,
        *,
        jacobian: Optional[
            Callable[[float, torch.Tensor], torch.Tensor]
        ] = None,
    ):
        self._f = f
        self._context = context

        self._maximum_step_size = math.nan
        self._requested_minimum_step_size = 0.0
        self._target_accuracy = math.nan
        self._accuracy_in_use = math.nan
        self._initial_step_size_target = math.nan
        self._reuse = True
        self._fixed_step_mode = False
        self._throw_on_minimum_step_size_violation = True

        self._working_minimum_step_size = math.nan
        self._initialized = False
        self._controller: Optional[StepController] = None
        self._error_estimate = None

        self._statistics = IntegratorStatistics()
        self._jacobian_manager = JacobianManager(jacobian=jacobian)
        self._corrector = NewtonCorrector(
            self._jacobian_manager, self._statistics.step
        )
        self._error_jacobian_manager = JacobianManager(jacobian=jacobian)
        self._error_estimator = StepDoublingErrorEstimator(
            NewtonCorrector(
                self._error_jacobian_manager,
                self._statistics.error_estimator,
            )
        )

    # Configuration

    @property
    def maximum_step_size(self) -> float:
        return self._maximum_step_size

    @maximum_step_size.setter
    def maximum_step_size(self, value: float) -> None:
        self._maximum_step_size = float(value)

    @property
    def requested_minimum_step_size(self) -> float:
        return self._requested_minimum_step_size

    @requested_minimum_step_size.setter
    def requested_minimum_step_size(self, value: float) -> None:
        value = float(value)
        if not value >= 0.0:
            raise ValueError(
                f"requested_minimum_step_size must be >= 0, got {value}"
            )
        self._requested_minimum_step_size = value

    @property
    def target_accuracy(self) -> float:
        """Requested accuracy, clamped to at most :attr:`loosest_accuracy`
        when an integration call or ``initialize()`` puts it in use."""
        return self._target_accuracy

    @target_accuracy.setter
    def target_accuracy(self, value: float) -> None:
        value = float(value)
        if not (math.isfinite(value) and value > 0.0):
            raise ValueError(f"target_accuracy must be > 0, got {value}")
        self._target_accuracy = value
        self._accuracy_in_use = value

    @property
    def accuracy_in_use(self) -> float:
        return self._accuracy_in_use

    @property
    def initial_step_size_target(self) -> float:
        return self._initial_step_size_target

    def request_initial_step_size_target(self, h: float) -> None:
        h = float(h)
        if not (math.isfinite(h) and h > 0.0):
            raise ValueError(
                f"Initial step size target must be > 0, got {h}"
            )
        self._initial_step_size_target = h

    @property
    def jacobian_scheme(self) -> JacobianScheme:
        return self._jacobian_manager.scheme

    @jacobian_scheme.setter
    def jacobian_scheme(self, value: Union[JacobianScheme, str]) -> None:
        self._jacobian_manager.scheme = value
        self._error_jacobian_manager.scheme = value

    @property
    def reuse(self) -> bool:
        return self._reuse

    @reuse.setter
    def reuse(self, value: bool) -> None:
        self._reuse = bool(value)

    @property
    def fixed_step_mode(self) -> bool:
        return self._fixed_step_mode

    @fixed_step_mode.setter
    def fixed_step_mode(self, value: bool) -> None:
        self._fixed_step_mode = bool(value)

    @property
    def throw_on_minimum_step_size_violation(self) -> bool:
        return self._throw_on_minimum_step_size_violation

    @throw_on_minimum_step_size_violation.setter
    def throw_on_minimum_step_size_violation(self, value: bool) -> None:
        self._throw_on_minimum_step_size_violation = bool(value)

    # Working state

    @property
    def working_minimum_step_size(self) -> float:
        return self._working_minimum_step_size

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def statistics(self) -> IntegratorStatistics:
        return self._statistics

    @property
    def error_estimate(self) -> Optional[Union[torch.Tensor, TensorDict]]:
        """Error estimate of the last successful step, in state structure."""
        return self._error_estimate

    @property
    def context(self) -> Optional[IntegratorContext]:
        return self._context

    def reset_context(self, context: Optional[IntegratorContext]) -> None:
        """Attach a new context, or detach with None."""
        self._context = context
        self._error_estimate = None
        self.reset_iteration_matrix_cache()

    def reset_statistics(self) -> None:
        self._statistics.reset()

    def reset_iteration_matrix_cache(self) -> None:
        self._jacobian_manager.cache.clear()
        self._error_jacobian_manager.cache.clear()

    def initialize(self) -> None:
        """
        Validate the configuration and derive the working state.

        Raises
        ------
        ConfigurationError
            If no context is attached, the maximum step size is not a
            positive finite number, or the minimum or initial step size is
            inconsistent with it.
        """
        if self._context is None:
            raise ConfigurationError("Context has not been set")

        h_max = self._maximum_step_size
        if not (math.isfinite(h_max) and h_max > 0.0):
            raise ConfigurationError(
                f"Maximum step size must be set to a positive finite value, "
                f"got {h_max}"
            )
        if self._requested_minimum_step_size > h_max:
            raise ConfigurationError(
                f"Requested minimum step size "
                f"{self._requested_minimum_step_size} is larger than the "
                f"maximum step size {h_max}"
            )

        if math.isnan(self._initial_step_size_target):
            self._initial_step_size_target = h_max * self.max_step_fraction
        elif self._initial_step_size_target > h_max:
            raise ConfigurationError(
                f"Initial step size target {self._initial_step_size_target} "
                f"is larger than the maximum step size {h_max}"
            )

        accuracy = self._working_accuracy(self._target_accuracy)
        self._accuracy_in_use = accuracy

        self._working_minimum_step_size = max(
            self._requested_minimum_step_size,
            self.minimum_step_scale * max(1.0, abs(self._context.time)),
        )

        self._controller = StepController(
            maximum_step_size=h_max,
            requested_minimum_step_size=self._requested_minimum_step_size,
            working_minimum_step_size=self._working_minimum_step_size,
            initial_step_size_target=max(
                self._initial_step_size_target,
                self._requested_minimum_step_size,
            ),
            accuracy=accuracy,
            throw_on_minimum_step_size_violation=(
                self._throw_on_minimum_step_size_violation
            ),
            error_estimate_order=self.error_estimate_order,
        )

        self._error_estimate = None
        self.reset_iteration_matrix_cache()
        self.reset_statistics()
        self._initialized = True

    # Integration

    def integrate_with_single_fixed_step_to_time(self, t: float) -> bool:
        """
        Take exactly one step of size ``t - time``, without retry.

        The step is attempted regardless of ``fixed_step_mode`` and of the
        maximum step size.

        Parameters
        ----------
        t : float
            Time to step to. Must be later than the context time.

        Returns
        -------
        bool
            True if the step converged and was committed; False leaves the
            context unchanged.

        Raises
        ------
        MinimumStepViolation
            If the step is below the requested minimum step size and
            throwing is enabled.
        UnsupportedSchemeError
            If the automatic Jacobian is selected for a derivative-carrying
            state.
        """
        controller = self._prepare(t)
        h = t - self._context.time
        controller.check_minimum_step_size(h)

        result = self._attempt_step(h)
        if not result.converged:
            self._record_substep_failure(result)
            return False

        self._commit(t, h, result, adapted=False)
        return True

    def integrate_no_further_than_time(self, t: float) -> float:
        """
        Take one accepted step that ends no later than ``t``.

        Returns
        -------
        float
            Size of the step taken.
        """
        self._prepare(t)
        return self._step(t)

    def integrate_with_multiple_steps_to_time(self, t: float) -> None:
        """
        Integrate until the context time equals ``t``.

        In fixed-step mode every step has the maximum step size (the last
        one is shortened); a step that fails to converge raises
        :class:`ConvergenceError`. In error-controlled mode failed and
        rejected attempts are retried with smaller steps.

        Raises
        ------
        ConvergenceError
            If a fixed step fails, or an error-controlled step exhausts its
            retry budget.
        MinimumStepViolation
            If step-size control needs a step below the requested minimum
            and throwing is enabled.
        """
        if t == self._require_context().time:
            return
        self._prepare(t)
        while self._context.time < t:
            self._step(t)

    def _require_context(self) -> IntegratorContext:
        if self._context is None:
            raise ConfigurationError("Context has not been set")
        return self._context

    def _working_accuracy(self, accuracy: float) -> float:
        if math.isnan(accuracy):
            return self.default_accuracy
        return min(accuracy, self.loosest_accuracy)

    def _prepare(self, t: float) -> StepController:
        context = self._require_context()
        if not self._initialized:
            raise ConfigurationError(
                "Integrator has not been initialized; call initialize()"
            )
        if not t > context.time:
            raise ValueError(
                f"Target time {t} must be later than the current time "
                f"{context.time}"
            )

        controller = self._controller
        controller.maximum_step_size = self._maximum_step_size
        controller.requested_minimum_step_size = (
            self._requested_minimum_step_size
        )
        self._accuracy_in_use = self._working_accuracy(self._accuracy_in_use)
        controller.accuracy = self._accuracy_in_use
        controller.throw_on_minimum_step_size_violation = (
            self._throw_on_minimum_step_size_violation
        )
        controller.begin()
        return controller

    def _step(self, t_target: float) -> float:
        controller = self._controller
        t0 = self._context.time

        if self._fixed_step_mode:
            h = controller.fixed_step_size(t0, t_target)
            controller.check_minimum_step_size(h)
            result = self._attempt_step(h)
            if not result.converged:
                self._record_substep_failure(result)
                raise ConvergenceError(
                    f"Fixed step of size {h} at t={t0} failed to converge"
                )
            self._commit(self._end_time(t0, h, t_target), h, result, False)
            return h

        h, adapted = controller.candidate_step_size(t0, t_target)
        for _ in range(controller.max_step_attempts):
            result = self._attempt_step(h)

            if h <= self._working_minimum_step_size:
                # Explicit fallback, accepted unconditionally.
                controller.after_explicit_step(
                    h, compute_error_norm(result.error_estimate)
                )
                self._commit(
                    self._end_time(t0, h, t_target), h, result, adapted
                )
                return h

            if not result.converged:
                self._record_substep_failure(result)
                self._statistics.num_step_shrinkages_from_substep_failures += 1
                h = min(controller.after_convergence_failure(h), t_target - t0)
                adapted = True
                continue

            error = compute_error_norm(result.error_estimate)
            if controller.after_error_estimate(h, error):
                self._commit(
                    self._end_time(t0, h, t_target), h, result, adapted
                )
                return h

            self._statistics.num_step_shrinkages_from_error_control += 1
            h, adapted = controller.candidate_step_size(t0, t_target)

        raise ConvergenceError(
            f"Unable to take a step from t={t0} after "
            f"{controller.max_step_attempts} attempts (last step size {h})"
        )

    def _record_substep_failure(self, result: StepAttemptResult) -> None:
        if result.error_estimator_failed:
            self._statistics.error_estimator.substep_failures += 1
        else:
            self._statistics.num_substep_failures += 1

    @staticmethod
    def _end_time(t0: float, h: float, t_target: float) -> float:
        if h == t_target - t0:
            return t_target
        return t0 + h

    def _attempt_step(self, h: float) -> StepAttemptResult:
        context = self._context
        t0 = context.time
        x0, unflatten = flatten_state(context.state)
        f = flatten_dynamics(
            self._f, unflatten, isinstance(context.state, TensorDict)
        )

        if h <= self._working_minimum_step_size:
            return self._explicit_step(f, t0, x0, h)

        result = self._corrector.solve(
            f, t0, x0, h, self._accuracy_in_use, self._reuse
        )
        if not result.converged:
            return StepAttemptResult(
                False, result.x, None, result.n_iterations
            )

        error = self._error_estimator.estimate(
            f,
            context.clone(),
            h,
            result.x,
            self._accuracy_in_use,
            self._reuse,
        )
        if error is None:
            return StepAttemptResult(
                False, result.x, None, result.n_iterations, True
            )

        return StepAttemptResult(True, result.x, error, result.n_iterations)

    def _explicit_step(self, f, t0, x0, h) -> StepAttemptResult:
        # Euler step; error is its difference from the explicit trapezoid.
        f0 = f(t0, x0)
        x1 = x0 + h * f0
        f1 = f(t0 + h, x1)
        self._statistics.step.derivative_evaluations += 2
        return StepAttemptResult(True, x1, 0.5 * h * (f1 - f0), 0)

    def _commit(
        self,
        t_new: float,
        h: float,
        result: StepAttemptResult,
        adapted: bool,
    ) -> None:
        context = self._context
        _, unflatten = flatten_state(context.state)
        context.state = unflatten(result.state)
        context.time = t_new
        self._error_estimate = unflatten(result.error_estimate)
        self._statistics.record_step(h, adapted)
