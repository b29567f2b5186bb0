"""Backward Euler (implicit) ODE solver, functional interface."""

from typing import Callable, Optional, Tuple, Union

import torch
from tensordict import TensorDict

from torchstiff.ordinary_differential_equation._context import (
    IntegratorContext,
)
from torchstiff.ordinary_differential_equation._implicit_euler import (
    ImplicitEulerIntegrator,
)
from torchstiff.ordinary_differential_equation._interpolation import (
    LinearInterpolant,
)
from torchstiff.ordinary_differential_equation._ivp_exceptions import (
    ConvergenceError,
)
from torchstiff.ordinary_differential_equation._jacobian import (
    JacobianScheme,
)
from torchstiff.ordinary_differential_equation._tensordict_utils import (
    flatten_state,
)


def backward_euler(
    f: Callable[[float, Union[torch.Tensor, TensorDict]], torch.Tensor],
    y0: Union[torch.Tensor, TensorDict],
    t_span: Tuple[float, float],
    dt: Optional[float] = None,
    *,
    target_accuracy: Optional[float] = None,
    max_step: Optional[float] = None,
    min_step: float = 0.0,
    jacobian_scheme: Union[JacobianScheme, str] = "forward_difference",
    reuse: bool = True,
    throw: bool = True,
) -> Tuple[
    Union[torch.Tensor, TensorDict],
    Callable[[Union[float, torch.Tensor]], Union[torch.Tensor, TensorDict]],
]:
    """
    Solve an ODE with the backward Euler (implicit) method.

    Parameters
    ----------
    f : callable
        Dynamics function with signature f(t, y) -> dy/dt.
        Use closures or functools.partial to pass additional parameters.
    y0 : Tensor or TensorDict
        Initial state. Not modified.
    t_span : tuple[float, float]
        Integration interval (t0, t1) with t1 > t0.
    dt : float, optional
        Fixed step size. If given, every step has size ``dt`` (the last one
        is shortened) and no error control is applied. If None, the step
        size is chosen by step-doubling error control.
    target_accuracy : float, optional
        Accuracy target of error control. Defaults to 1e-3; values looser
        than 1e-1 are tightened to 1e-1.
    max_step : float, optional
        Largest step error control may take. Defaults to ``t1 - t0``.
    min_step : float
        Requested minimum step size.
    jacobian_scheme : JacobianScheme or str
        One of "forward_difference", "central_difference", "automatic".
    reuse : bool
        Reuse the factorized iteration matrix across steps of equal size.
    throw : bool
        If True (default), raise on solver failures. If False, minimum step
        size violations are tolerated, a failed integration returns NaN,
        and the interpolant carries a ``success`` flag.

    Returns
    -------
    y : Tensor or TensorDict
        State at t1.
    interp : LinearInterpolant
        Interpolant over the accepted steps. ``interp(t)`` returns the state
        at time(s) t.

    Raises
    ------
    ConvergenceError
        If Newton iteration keeps failing (only when throw=True).
    MinimumStepViolation
        If error control needs a step below ``min_step`` (only when
        throw=True).

    Examples
    --------
    >>> def f(t, y):
    ...     return -1000.0 * y
    >>> y0 = torch.tensor([1.0], dtype=torch.float64)
    >>> y1, interp = backward_euler(f, y0, t_span=(0.0, 1.0), max_step=0.1)
    >>> bool(y1.abs().max() < 1e-3)
    True
    """
    t0, t1 = float(t_span[0]), float(t_span[1])
    if not t1 > t0:
        raise ValueError(
            f"backward_euler integrates forward in time only, got "
            f"t_span=({t0}, {t1})"
        )

    context = IntegratorContext(y0.clone(), time=t0)
    integrator = ImplicitEulerIntegrator(f, context)

    if dt is not None:
        if not dt > 0:
            raise ValueError(f"dt must be positive, got {dt}")
        integrator.fixed_step_mode = True
        integrator.maximum_step_size = dt
    else:
        integrator.maximum_step_size = (
            max_step if max_step is not None else t1 - t0
        )
    integrator.requested_minimum_step_size = min_step
    if target_accuracy is not None:
        integrator.target_accuracy = target_accuracy
    integrator.jacobian_scheme = jacobian_scheme
    integrator.reuse = reuse
    integrator.throw_on_minimum_step_size_violation = throw
    integrator.initialize()

    y_flat, unflatten = flatten_state(context.state)
    t_points = [t0]
    y_points = [y_flat.clone()]

    success_overall = True
    try:
        while context.time < t1:
            integrator.integrate_no_further_than_time(t1)
            y_flat, _ = flatten_state(context.state)
            t_points.append(context.time)
            y_points.append(y_flat.clone())
    except ConvergenceError:
        if throw:
            raise
        success_overall = False

    t_tensor = torch.tensor(
        t_points, dtype=torch.float64, device=y_flat.device
    )
    y_tensor = torch.stack(y_points)

    if throw:
        success = None
        y_final = context.state
    else:
        success = torch.tensor(
            success_overall, dtype=torch.bool, device=y_flat.device
        )
        if success_overall:
            y_final = context.state
        else:
            y_final = unflatten(torch.full_like(y_flat, float("nan")))

    interp = LinearInterpolant(
        t_tensor,
        y_tensor,
        unflatten=unflatten,
        success=success,
    )
    return y_final, interp
