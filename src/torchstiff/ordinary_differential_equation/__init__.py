"""
Implicit integration of stiff ordinary differential equations.

Integrators
-----------
ImplicitEulerIntegrator
    Adaptive implicit (backward) Euler with Newton corrector, reusable
    iteration matrix and step-doubling error control.
backward_euler
    Functional interface to ImplicitEulerIntegrator with dense output.

Building blocks
---------------
IntegratorContext
    Time and state advanced by an integrator.
JacobianScheme
    Forward difference, central difference or automatic Jacobians.
JacobianManager
    Jacobian computation and iteration-matrix cache.
NewtonCorrector
    Newton solve of one backward Euler step.
StepDoublingErrorEstimator
    Local error estimate from two half steps.
StepController
    Adaptive step-size policy.
IntegratorStatistics
    Work counters and step-size extremes.
"""

from torchstiff.ordinary_differential_equation._backward_euler import (
    backward_euler,
)
from torchstiff.ordinary_differential_equation._context import (
    IntegratorContext,
)
from torchstiff.ordinary_differential_equation._error_estimator import (
    StepDoublingErrorEstimator,
)
from torchstiff.ordinary_differential_equation._exceptions import (
    IntegrationError,
)
from torchstiff.ordinary_differential_equation._implicit_euler import (
    ImplicitEulerIntegrator,
    StepAttemptResult,
)
from torchstiff.ordinary_differential_equation._interpolation import (
    LinearInterpolant,
)
from torchstiff.ordinary_differential_equation._ivp_exceptions import (
    ConfigurationError,
    ConvergenceError,
    MinimumStepSizeWarning,
    MinimumStepViolation,
    ODESolverError,
    StepSizeError,
    UnsupportedSchemeError,
)
from torchstiff.ordinary_differential_equation._jacobian import (
    IterationMatrixCache,
    JacobianManager,
    JacobianScheme,
)
from torchstiff.ordinary_differential_equation._newton_cached import (
    NewtonCorrector,
    NewtonResult,
)
from torchstiff.ordinary_differential_equation._statistics import (
    IntegratorStatistics,
    SolverCounters,
)
from torchstiff.ordinary_differential_equation._step_control import (
    StepController,
)

__all__ = [
    # Exceptions
    "IntegrationError",
    "ODESolverError",
    "ConfigurationError",
    "ConvergenceError",
    "StepSizeError",
    "MinimumStepViolation",
    "UnsupportedSchemeError",
    # Warnings
    "MinimumStepSizeWarning",
    # Integrators
    "ImplicitEulerIntegrator",
    "backward_euler",
    # Building blocks
    "IntegratorContext",
    "JacobianScheme",
    "JacobianManager",
    "IterationMatrixCache",
    "NewtonCorrector",
    "NewtonResult",
    "StepDoublingErrorEstimator",
    "StepController",
    "StepAttemptResult",
    "IntegratorStatistics",
    "SolverCounters",
    "LinearInterpolant",
]
