"""Jacobian computation and iteration-matrix caching for implicit Euler."""

import enum
import math
from dataclasses import dataclass
from typing import Callable, Optional, Union

import torch
from torch.autograd import forward_ad

from torchstiff.ordinary_differential_equation._ivp_exceptions import (
    UnsupportedSchemeError,
)
from torchstiff.ordinary_differential_equation._statistics import (
    SolverCounters,
)


class JacobianScheme(enum.Enum):
    """How the Jacobian ``df/dx`` of the dynamics is computed.

    FORWARD_DIFFERENCE
        One-sided differences; ``n`` extra dynamics evaluations.
    CENTRAL_DIFFERENCE
        Symmetric differences; ``2n`` extra evaluations, second order
        accurate.
    AUTOMATIC
        Forward-mode automatic differentiation (``torch.func.jacfwd``);
        one evaluation in dual arithmetic.
    """

    FORWARD_DIFFERENCE = "forward_difference"
    CENTRAL_DIFFERENCE = "central_difference"
    AUTOMATIC = "automatic"

    @classmethod
    def coerce(cls, value: Union["JacobianScheme", str]) -> "JacobianScheme":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            valid = ", ".join(repr(s.value) for s in cls)
            raise ValueError(
                f"Unknown Jacobian scheme {value!r}. Use one of {valid}."
            ) from None


def is_derivative_carrying(x: torch.Tensor) -> bool:
    """Whether ``x`` already carries derivatives.

    True for forward-mode dual tensors and for tensors tracked by
    reverse-mode autograd.
    """
    if x.requires_grad:
        return True
    return forward_ad.unpack_dual(x).tangent is not None


@dataclass
class IterationMatrixCache:
    """Factorized iteration matrix ``I - h J`` and the point it was built at.

    A cached factorization may be reused only while ``valid`` is set and
    the step size is unchanged. Convergence failures, step-size changes,
    scheme changes and explicit resets invalidate it.

    Attributes
    ----------
    lu_factors : Tensor, optional
        LU factorization of the iteration matrix (L and U packed together).
    lu_pivots : Tensor, optional
        Pivot indices from the LU factorization.
    jacobian : Tensor, optional
        The Jacobian the iteration matrix was formed from.
    step_size : float
        Step size ``h`` the iteration matrix was formed for.
    time : float
        Time at which the Jacobian was evaluated.
    state : Tensor, optional
        State at which the Jacobian was evaluated.
    valid : bool
        Whether the factorization may be used.
    """

    lu_factors: Optional[torch.Tensor] = None
    lu_pivots: Optional[torch.Tensor] = None
    jacobian: Optional[torch.Tensor] = None
    step_size: float = math.nan
    time: float = math.nan
    state: Optional[torch.Tensor] = None
    valid: bool = False

    def is_usable(self, h: float) -> bool:
        return self.valid and self.step_size == h

    def invalidate(self) -> None:
        self.valid = False

    def clear(self) -> None:
        """Clear cached factorization."""
        self.lu_factors = None
        self.lu_pivots = None
        self.jacobian = None
        self.step_size = math.nan
        self.time = math.nan
        self.state = None
        self.valid = False


class JacobianManager:
    """
    Computes Jacobians and owns the iteration-matrix cache of one corrector.

    Parameters
    ----------
    scheme : JacobianScheme or str
        Jacobian computation scheme.
    jacobian : callable, optional
        Explicit Jacobian ``jacobian(t, x) -> (n, n)`` on the flattened
        state. Used in place of ``torch.func.jacfwd`` by the automatic
        scheme.
    """

    def __init__(
        self,
        scheme: Union[JacobianScheme, str] = JacobianScheme.FORWARD_DIFFERENCE,
        jacobian: Optional[
            Callable[[float, torch.Tensor], torch.Tensor]
        ] = None,
    ):
        self._scheme = JacobianScheme.coerce(scheme)
        self._jacobian = jacobian
        self.cache = IterationMatrixCache()

    @property
    def scheme(self) -> JacobianScheme:
        return self._scheme

    @scheme.setter
    def scheme(self, value: Union[JacobianScheme, str]) -> None:
        self._scheme = JacobianScheme.coerce(value)
        self.cache.clear()

    def invalidate(self) -> None:
        self.cache.invalidate()

    def compute_jacobian(
        self,
        f: Callable[[float, torch.Tensor], torch.Tensor],
        t: float,
        x: torch.Tensor,
        fx: torch.Tensor,
        counters: SolverCounters,
    ) -> torch.Tensor:
        """
        Compute ``J = df/dx`` at ``(t, x)`` with the selected scheme.

        Parameters
        ----------
        f : callable
            Flat dynamics ``f(t, x) -> (n,)``.
        t : float
            Evaluation time.
        x : Tensor
            Evaluation state, shape ``(n,)``.
        fx : Tensor
            ``f(t, x)``, reused by the forward-difference scheme.
        counters : SolverCounters
            Receives the Jacobian's derivative evaluations.

        Returns
        -------
        Tensor
            Jacobian, shape ``(n, n)``.

        Raises
        ------
        UnsupportedSchemeError
            If the automatic scheme is selected and ``x`` already carries
            derivatives.
        """
        if self._scheme is JacobianScheme.AUTOMATIC:
            return self._automatic_jacobian(f, t, x, counters)
        if self._scheme is JacobianScheme.CENTRAL_DIFFERENCE:
            return self._central_difference_jacobian(f, t, x, counters)
        return self._forward_difference_jacobian(f, t, x, fx, counters)

    def _forward_difference_jacobian(self, f, t, x, fx, counters):
        n = x.numel()
        eps = math.sqrt(torch.finfo(x.dtype).eps)
        columns = []
        for i in range(n):
            xi = float(x[i])
            # Representable perturbation: (xi + dx) - xi.
            dx = (xi + eps * max(1.0, abs(xi))) - xi
            e = torch.zeros_like(x)
            e[i] = dx
            columns.append((f(t, x + e) - fx) / dx)
        counters.derivative_evaluations_for_jacobian += n
        return torch.stack(columns, dim=-1)

    def _central_difference_jacobian(self, f, t, x, counters):
        n = x.numel()
        eps = torch.finfo(x.dtype).eps ** (1.0 / 3.0)
        columns = []
        for i in range(n):
            xi = float(x[i])
            dx = (xi + eps * max(1.0, abs(xi))) - xi
            e = torch.zeros_like(x)
            e[i] = dx
            columns.append((f(t, x + e) - f(t, x - e)) / (2.0 * dx))
        counters.derivative_evaluations_for_jacobian += 2 * n
        return torch.stack(columns, dim=-1)

    def _automatic_jacobian(self, f, t, x, counters):
        if is_derivative_carrying(x):
            raise UnsupportedSchemeError(
                "Automatic Jacobian not supported for a state that already "
                "carries derivatives (nested differentiation). Use "
                "'forward_difference' or 'central_difference' instead."
            )
        if self._jacobian is not None:
            J = self._jacobian(t, x)
        else:
            J = torch.func.jacfwd(lambda x_: f(t, x_))(x)
        counters.derivative_evaluations_for_jacobian += 1
        return J.reshape(x.numel(), x.numel())

    def update_iteration_matrix(
        self,
        f: Callable[[float, torch.Tensor], torch.Tensor],
        t: float,
        x: torch.Tensor,
        fx: torch.Tensor,
        h: float,
        counters: SolverCounters,
        reuse: bool,
    ) -> bool:
        """
        Make the cache hold a factorized ``I - h J`` usable for step ``h``.

        With ``reuse`` enabled, a valid factorization built for the same
        ``h`` is kept; otherwise the Jacobian is recomputed at ``(t, x)``
        and factorized. A singular iteration matrix leaves the cache
        invalid.

        Returns
        -------
        bool
            True if the cached factorization was reused.
        """
        if reuse and self.cache.is_usable(h):
            return True

        self.cache.clear()
        J = self.compute_jacobian(f, t, x, fx, counters)
        counters.jacobian_evaluations += 1

        identity = torch.eye(x.numel(), dtype=J.dtype, device=J.device)
        iteration_matrix = identity - h * J
        counters.iteration_matrix_factorizations += 1
        lu_factors, lu_pivots, info = torch.linalg.lu_factor_ex(
            iteration_matrix
        )
        if int(info) != 0:
            # Singular iteration matrix
            return False

        self.cache.lu_factors = lu_factors
        self.cache.lu_pivots = lu_pivots
        self.cache.jacobian = J
        self.cache.step_size = h
        self.cache.time = t
        self.cache.state = x.detach().clone()
        self.cache.valid = True
        return False

    def solve(self, rhs: torch.Tensor) -> torch.Tensor:
        """Solve ``(I - h J) dx = rhs`` with the cached factorization."""
        return torch.linalg.lu_solve(
            self.cache.lu_factors,
            self.cache.lu_pivots,
            rhs.unsqueeze(-1),
        ).squeeze(-1)
