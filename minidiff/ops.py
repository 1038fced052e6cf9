"""
Explicit builder API: apply a differentiable operation by name.

`apply("mul", x, y)` is the same as `x * y` but never relies on operator overloading,
which keeps graph construction visible in code that composes operations dynamically.
"""

from __future__ import annotations

from typing import Any, NamedTuple, Optional

from minidiff import node, tensor_functions
from minidiff.autodiff import Function
from minidiff.tensor import Tensor


class OpEntry(NamedTuple):
    scalar: Optional[type[Function]]
    tensor: Optional[type[Function]]


_REGISTRY: dict[str, OpEntry] = {}


def register(
    name: str,
    scalar_fn: Optional[type[Function]] = None,
    tensor_fn: Optional[type[Function]] = None,
) -> None:
    """
    Registers (or replaces) the scalar and tensor implementations of an operation.

    Args:
        name (str): Name passed to `apply`.
        scalar_fn (Optional[type[Function]]): Function used when every operand is a `Node` or a number.
        tensor_fn (Optional[type[Function]]): Function used when any operand is a `Tensor`.
    """
    if scalar_fn is None and tensor_fn is None:
        raise ValueError(f"Operation {name!r} needs a scalar or a tensor implementation")
    _REGISTRY[name] = OpEntry(scalar_fn, tensor_fn)


def available() -> list[str]:
    return sorted(_REGISTRY)


def apply(name: str, *values: Any, **params: Any) -> Any:
    """
    Applies the operation registered under `name` and returns a graph-tracked value.

    Raises:
        KeyError: If no operation is registered under `name`, or it has no implementation
            for the kind of operands given.
    """
    try:
        entry = _REGISTRY[name]
    except KeyError:
        raise KeyError(f"Unknown operation {name!r}; available: {', '.join(available())}") from None

    if any(isinstance(v, Tensor) for v in values):
        fn, kind = entry.tensor, "tensor"
    else:
        fn, kind = entry.scalar, "scalar"
    if fn is None:
        raise KeyError(f"Operation {name!r} has no {kind} implementation")
    return fn.apply(*values, **params)


for _name, _scalar, _tensor in (
    ("add", node.Add, tensor_functions.Add),
    ("sub", node.Sub, tensor_functions.Sub),
    ("mul", node.Mul, tensor_functions.Mul),
    ("div", node.Div, tensor_functions.Div),
    ("neg", node.Neg, tensor_functions.Neg),
    ("pow", node.Pow, tensor_functions.PowScalar),
    ("exp", node.Exp, tensor_functions.Exp),
    ("log", node.Log, tensor_functions.Log),
    ("sigmoid", node.Sigmoid, tensor_functions.Sigmoid),
    ("relu", node.ReLU, tensor_functions.ReLU),
    ("tanh", node.Tanh, tensor_functions.Tanh),
    ("lt", node.LT, tensor_functions.LT),
    ("eq", node.EQ, tensor_functions.EQ),
    ("inv", node.Inv, None),
    ("sin", node.Sin, None),
    ("cos", node.Cos, None),
    ("abs", node.Abs, None),
    ("leaky_relu", node.LeakyReLU, None),
    ("sum", None, tensor_functions.Sum),
    ("max", None, tensor_functions.Max),
    ("permute", None, tensor_functions.Permute),
    ("view", None, tensor_functions.View),
    ("expand", None, tensor_functions.Expand),
    ("slice", None, tensor_functions.Slice),
    ("copy", None, tensor_functions.Copy),
):
    register(_name, _scalar, _tensor)
