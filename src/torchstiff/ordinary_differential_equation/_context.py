"""Integrator context: the time and state advanced by an integrator."""

from typing import Union

import torch
from tensordict import TensorDict


class IntegratorContext:
    """
    Mutable container holding the current time and state of a system.

    The integrator reads the context at the start of a step and writes it
    only when the step is accepted. Side computations (error estimation)
    run on a :meth:`clone`, so the caller's context is never aliased.

    Parameters
    ----------
    state : Tensor or TensorDict
        Initial state. TensorDicts must be unbatched.
    time : float
        Initial time.

    Examples
    --------
    >>> context = IntegratorContext(torch.tensor([1.0, 0.0]), time=0.0)
    >>> snapshot = context.clone()
    >>> context.time = 2.0
    >>> context.restore(snapshot)
    >>> context.time
    0.0
    """

    def __init__(
        self,
        state: Union[torch.Tensor, TensorDict],
        time: float = 0.0,
    ):
        self._state = state
        self._time = float(time)

    @property
    def time(self) -> float:
        return self._time

    @time.setter
    def time(self, value: float) -> None:
        self._time = float(value)

    @property
    def state(self) -> Union[torch.Tensor, TensorDict]:
        return self._state

    @state.setter
    def state(self, value: Union[torch.Tensor, TensorDict]) -> None:
        self._state = value

    def clone(self) -> "IntegratorContext":
        """Return a deep copy of this context."""
        return IntegratorContext(self._state.clone(), time=self._time)

    def restore(self, other: "IntegratorContext") -> None:
        """Overwrite time and state with a copy of ``other``'s."""
        self._time = other.time
        self._state = other.state.clone()

    def __repr__(self) -> str:
        return f"IntegratorContext(time={self._time}, state={self._state!r})"
