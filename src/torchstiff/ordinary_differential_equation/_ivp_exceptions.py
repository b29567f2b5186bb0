"""Exceptions and warnings for implicit ODE solvers."""

from torchstiff.ordinary_differential_equation._exceptions import (
    IntegrationError,
)


class ODESolverError(IntegrationError):
    """Base exception for ODE solver errors."""

    pass


class ConfigurationError(ODESolverError):
    """Raised when the integrator is used without a valid setup.

    Examples are a missing context, an unset or non-positive maximum step
    size, or integrating before ``initialize()`` has been called.
    """

    pass


class ConvergenceError(ODESolverError):
    """Raised when Newton iteration keeps failing and no retry is left."""

    pass


class StepSizeError(ODESolverError):
    """Raised when the adaptive step size leaves its admissible range."""

    pass


class MinimumStepViolation(StepSizeError):
    """Raised when step-size control wants a step below the requested minimum.

    Only raised while ``throw_on_minimum_step_size_violation`` is enabled.
    """

    pass


class UnsupportedSchemeError(ODESolverError):
    """Raised when the automatic Jacobian is requested on a state that
    already carries derivatives (nested differentiation is not supported)."""

    pass


class MinimumStepSizeWarning(UserWarning):
    """Warning for a tolerated minimum step size violation."""

    pass
