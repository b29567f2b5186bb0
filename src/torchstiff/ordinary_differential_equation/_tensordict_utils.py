"""Utilities for flattening and unflattening Tensor or TensorDict states.

The implicit Euler kernel works on a single 1-D state vector so that the
Jacobian and iteration matrix are plain ``(n, n)`` matrices. States of any
tensor shape, and unbatched (possibly nested) TensorDicts, are mapped onto
that vector here.
"""

from typing import Callable, List, Tuple, Union

import torch
from tensordict import TensorDict

State = Union[torch.Tensor, TensorDict]


def flatten_state(
    y: State,
) -> Tuple[torch.Tensor, Callable[[torch.Tensor], State]]:
    """
    Flatten a Tensor or TensorDict state to a 1-D tensor.

    Parameters
    ----------
    y : Tensor or TensorDict
        The state to flatten. TensorDicts must be unbatched
        (``batch_size == []``).

    Returns
    -------
    flat : Tensor
        Flattened state, shape ``(n,)``.
    unflatten : callable
        Function restoring the original structure from a flat tensor of
        shape ``(n,)``.

    Raises
    ------
    ValueError
        If a batched TensorDict is given.
    """
    if isinstance(y, torch.Tensor):
        shape = y.shape

        def unflatten_tensor(flat: torch.Tensor) -> torch.Tensor:
            return flat.reshape(shape)

        return y.reshape(-1), unflatten_tensor

    if len(y.batch_size) != 0:
        raise ValueError(
            f"Batched TensorDict states are not supported "
            f"(batch_size={tuple(y.batch_size)})"
        )

    y_flat_keys = y.flatten_keys(separator=".")
    flat_keys = sorted(y_flat_keys.keys())

    shapes: List[Tuple[str, Tuple[int, ...]]] = []
    flat_parts = []
    for key in flat_keys:
        leaf = y_flat_keys[key]
        shapes.append((key, tuple(leaf.shape)))
        flat_parts.append(leaf.reshape(-1))

    flat = torch.cat(flat_parts, dim=-1)

    def unflatten_tensordict(flat_tensor: torch.Tensor) -> TensorDict:
        flat_td = TensorDict({}, batch_size=[])

        offset = 0
        for key, shape in shapes:
            numel = 1
            for s in shape:
                numel *= s
            flat_td[key] = flat_tensor[offset : offset + numel].reshape(shape)
            offset += numel

        return flat_td.unflatten_keys(separator=".")

    return flat, unflatten_tensordict


def flatten_dynamics(
    f: Callable[[float, State], State],
    unflatten: Callable[[torch.Tensor], State],
    structured: bool,
) -> Callable[[float, torch.Tensor], torch.Tensor]:
    """
    Wrap dynamics ``f(t, y)`` so that it maps flat states to flat derivatives.

    Parameters
    ----------
    f : callable
        Dynamics in the caller's state structure.
    unflatten : callable
        Unflatten function returned by :func:`flatten_state`.
    structured : bool
        Whether the caller's state is a TensorDict. Plain tensor dynamics
        still receive the state in its original shape.

    Returns
    -------
    callable
        ``f_flat(t, x)`` with ``x`` and the result of shape ``(n,)``.
    """

    if structured:

        def f_flat(t, x):
            dy_flat, _ = flatten_state(f(t, unflatten(x)))
            return dy_flat

    else:

        def f_flat(t, x):
            return f(t, unflatten(x)).reshape(-1)

    return f_flat
