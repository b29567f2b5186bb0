"""torchstiff: PyTorch integrators for stiff differential equations."""

from . import ordinary_differential_equation

__all__ = [
    "ordinary_differential_equation",
]

__version__ = "0.1.0"
