"""Dense output for implicit Euler solutions."""

from typing import Callable, Optional, Union

import torch
from tensordict import TensorDict


class LinearInterpolant:
    """
    Piecewise linear interpolant through accepted integration steps.

    Linear interpolation matches the first-order accuracy of implicit Euler.
    The interpolant is differentiable with respect to the stored states.

    Parameters
    ----------
    t_points : Tensor
        Step times, shape (N,), monotonically increasing.
    y_points : Tensor
        Flattened states at the step times, shape (N, n).
    unflatten : callable, optional
        Maps a flat state of shape (n,) back to the caller's structure.
    success : Tensor, optional
        Whether the integration reached the end of its interval. Only set
        when the solver ran with ``throw=False``.
    """

    def __init__(
        self,
        t_points: torch.Tensor,
        y_points: torch.Tensor,
        unflatten: Optional[
            Callable[[torch.Tensor], Union[torch.Tensor, TensorDict]]
        ] = None,
        success: Optional[torch.Tensor] = None,
    ):
        self.t_points = t_points
        self.y_points = y_points
        self.success = success
        self._unflatten = unflatten
        self._t_min = t_points[0].item()
        self._t_max = t_points[-1].item()

    def __call__(
        self, t: Union[float, torch.Tensor]
    ) -> Union[torch.Tensor, TensorDict]:
        """
        Evaluate the interpolant at time(s) t.

        Parameters
        ----------
        t : float or Tensor
            Time(s) to query. Scalar or 1D tensor.

        Returns
        -------
        Tensor or TensorDict
            State at time(s) t. A 1D query of length T stacks the states
            along a new leading dimension of size T.

        Raises
        ------
        ValueError
            If a query time lies outside the integrated interval.
        """
        if isinstance(t, (int, float)):
            t = torch.tensor(
                t, dtype=self.t_points.dtype, device=self.t_points.device
            )
        else:
            t = t.to(dtype=self.t_points.dtype, device=self.t_points.device)

        scalar_query = t.dim() == 0
        if scalar_query:
            t = t.unsqueeze(0)

        if (
            t.min().item() < self._t_min - 1e-12
            or t.max().item() > self._t_max + 1e-12
        ):
            raise ValueError(
                f"Query time(s) outside interpolant range "
                f"[{self._t_min}, {self._t_max}]"
            )

        if len(self.t_points) == 1:
            y = self.y_points.expand(t.shape[0], -1)
        else:
            indices = torch.searchsorted(self.t_points, t.contiguous())
            indices = indices.clamp(1, len(self.t_points) - 1)

            t0 = self.t_points[indices - 1]
            t1 = self.t_points[indices]
            alpha = ((t - t0) / (t1 - t0)).unsqueeze(-1)
            y = (1 - alpha) * self.y_points[indices - 1] + alpha * (
                self.y_points[indices]
            )

        if self._unflatten is None:
            return y.squeeze(0) if scalar_query else y
        if scalar_query:
            return self._unflatten(y[0])
        return torch.stack([self._unflatten(row) for row in y])
