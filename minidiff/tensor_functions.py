from __future__ import annotations

from typing import TYPE_CHECKING, Any, Optional, Sequence

import numpy as np

from minidiff import operators
from minidiff.autodiff import Context, Function, History
from minidiff.backend import get_backend
from minidiff.errors import ShapeMismatchError
from minidiff.operators import Kernel
from minidiff.storage import TensorStorage, shape_broadcast

if TYPE_CHECKING:
    from minidiff.tensor import Tensor


def _map(kernel: Kernel, a: TensorStorage) -> TensorStorage:
    out = TensorStorage.zeros(a.shape)
    get_backend().map(kernel, out, a)
    return out


def _zip(kernel: Kernel, a: TensorStorage, b: TensorStorage) -> TensorStorage:
    # broadcast operands become stride-0 views, never copies
    shape = shape_broadcast(a.shape, b.shape)
    out = TensorStorage.zeros(shape)
    get_backend().zip(kernel, out, a.expand(shape), b.expand(shape))
    return out


def _reduce(kernel: Kernel, a: TensorStorage, dim: int, start: float) -> TensorStorage:
    shape = list(a.shape)
    shape[dim] = 1
    out = TensorStorage.zeros(shape)
    get_backend().reduce(kernel, out, a, dim, start)
    return out


def _scalar(value: float) -> TensorStorage:
    return TensorStorage.from_values([value], ())


def unbroadcast(grad: TensorStorage, shape: Sequence[int]) -> TensorStorage:
    """
    Sums a gradient over the dimensions that were broadcast, restoring `shape` exactly.

    Args:
        grad (TensorStorage): Gradient shaped like the broadcast result.
        shape (Sequence[int]): Shape of the input the gradient belongs to.

    Raises:
        ShapeMismatchError: If `shape` does not broadcast to `grad.shape`.
    """
    shape = tuple(shape)
    if grad.shape == shape:
        return grad
    if len(shape) > grad.dims or shape_broadcast(shape, grad.shape) != grad.shape:
        raise ShapeMismatchError(f"Gradient of shape {grad.shape} cannot be reduced to {shape}")
    lead = grad.dims - len(shape)
    out = grad
    for dim in range(grad.dims):
        target = shape[dim - lead] if dim >= lead else 1
        if target == 1 and grad.shape[dim] != 1:
            out = _reduce(operators.ADD, out, dim, 0.0)
    out, _ = out.reshape(shape)
    return out


class TensorFunction(Function):
    """
    Base class for operations over `Tensor` payloads.

    `forward` and `backward` work on `minidiff.storage.TensorStorage` layouts; kernels go
    through the active backend. Gradients returned by `backward` may be shaped like the
    broadcast output: `chain_rule` reduces each one back to its input's shape.
    """

    @classmethod
    def to_variable(cls, value: Any) -> Tensor:
        from minidiff.tensor import Tensor

        if isinstance(value, Tensor):
            return value
        return Tensor(value, requires_grad=False)

    @classmethod
    def payload(cls, variable: Tensor) -> TensorStorage:
        return variable.storage

    @classmethod
    def wrap(
        cls, output: TensorStorage, history: Optional[History], inputs: Sequence[TensorStorage]
    ) -> Tensor:
        from minidiff.tensor import Tensor

        is_view = any(output.shares_storage(layout) for layout in inputs)
        return Tensor(output, requires_grad=history is not None, history=history, is_view=is_view)

    @classmethod
    def chain_rule(
        cls, ctx: Context, inputs: Sequence[Tensor], d_output: Tensor
    ) -> list[tuple[Tensor, Tensor]]:
        from minidiff.tensor import Tensor

        pairs = super().chain_rule(ctx, inputs, d_output.storage)
        return [
            (inp, Tensor(unbroadcast(grad, inp.shape), requires_grad=False))
            for inp, grad in pairs
        ]


class Neg(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage) -> TensorStorage:
        return _map(operators.NEG, a)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage]:
        return (_map(operators.NEG, d_output),)


class Add(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage, b: TensorStorage) -> TensorStorage:
        return _zip(operators.ADD, a, b)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage, TensorStorage]:
        return d_output, d_output


class Sub(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage, b: TensorStorage) -> TensorStorage:
        return _zip(operators.SUB, a, b)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage, TensorStorage]:
        return d_output, _map(operators.NEG, d_output)


class Mul(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage, b: TensorStorage) -> TensorStorage:
        ctx.save_for_backward(a, b)
        return _zip(operators.MUL, a, b)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage, TensorStorage]:
        a, b = ctx.saved_values
        return _zip(operators.MUL, d_output, b), _zip(operators.MUL, d_output, a)


class Div(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage, b: TensorStorage) -> TensorStorage:
        ctx.save_for_backward(a, b)
        return _zip(operators.DIV, a, b)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage, TensorStorage]:
        a, b = ctx.saved_values
        d_a = _zip(operators.DIV, d_output, b)
        d_b = _zip(operators.INV_BACK, b, _zip(operators.MUL, d_output, a))
        return d_a, d_b


class PowScalar(TensorFunction):
    """`a ** c` for a constant exponent `c`; the exponent never receives a gradient."""

    @classmethod
    def apply(cls, a: Any, c: Any, **params: Any) -> Tensor:
        from minidiff.tensor import Tensor

        if isinstance(c, Tensor) and c.requires_grad:
            raise TypeError(
                "Tensor exponents must be constants; pass a float or a tensor with requires_grad=False"
            )
        return super().apply(a, c, **params)

    @staticmethod
    def forward(ctx: Context, a: TensorStorage, c: TensorStorage) -> TensorStorage:
        ctx.save_for_backward(a, c)
        return _zip(operators.POW, a, c)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage, TensorStorage]:
        a, c = ctx.saved_values
        c_minus_one = _zip(operators.SUB, c, _scalar(1.0))
        local = _zip(operators.MUL, c, _zip(operators.POW, a, c_minus_one))
        return _zip(operators.MUL, d_output, local), TensorStorage.zeros(c.shape)


class Exp(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage) -> TensorStorage:
        out = _map(operators.EXP, a)
        ctx.save_for_backward(out)
        return out

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage]:
        (out,) = ctx.saved_values
        return (_zip(operators.MUL, d_output, out),)


class Log(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage) -> TensorStorage:
        ctx.save_for_backward(a)
        return _map(operators.LOG, a)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage]:
        (a,) = ctx.saved_values
        return (_zip(operators.LOG_BACK, a, d_output),)


class Sigmoid(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage) -> TensorStorage:
        out = _map(operators.SIGMOID, a)
        ctx.save_for_backward(out)
        return out

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage]:
        (out,) = ctx.saved_values
        return (_zip(operators.SIGMOID_BACK, out, d_output),)


class ReLU(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage) -> TensorStorage:
        ctx.save_for_backward(a)
        return _map(operators.RELU, a)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage]:
        (a,) = ctx.saved_values
        return (_zip(operators.RELU_BACK, a, d_output),)


class Tanh(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage) -> TensorStorage:
        out = _map(operators.TANH, a)
        ctx.save_for_backward(out)
        return out

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage]:
        (out,) = ctx.saved_values
        return (_zip(operators.TANH_BACK, out, d_output),)


class LT(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage, b: TensorStorage) -> TensorStorage:
        ctx.save_for_backward(a.shape, b.shape)
        return _zip(operators.LT, a, b)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage, TensorStorage]:
        a_shape, b_shape = ctx.saved_values
        return TensorStorage.zeros(a_shape), TensorStorage.zeros(b_shape)


class EQ(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage, b: TensorStorage) -> TensorStorage:
        ctx.save_for_backward(a.shape, b.shape)
        return _zip(operators.EQ, a, b)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage, TensorStorage]:
        a_shape, b_shape = ctx.saved_values
        return TensorStorage.zeros(a_shape), TensorStorage.zeros(b_shape)


class Sum(TensorFunction):
    """Sums over one dimension, keeping it with size 1."""

    @staticmethod
    def forward(ctx: Context, a: TensorStorage, dim: int) -> TensorStorage:
        if not -a.dims <= dim < a.dims:
            raise ShapeMismatchError(f"Dimension {dim} out of range for shape {a.shape}")
        dim = dim % a.dims
        ctx.save_for_backward(a.shape)
        return _reduce(operators.ADD, a, dim, 0.0)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage]:
        (a_shape,) = ctx.saved_values
        return (d_output.expand(a_shape),)


class Max(TensorFunction):
    """Maximum over one dimension; the gradient flows to every position equal to the maximum."""

    @staticmethod
    def forward(ctx: Context, a: TensorStorage, dim: int) -> TensorStorage:
        if not -a.dims <= dim < a.dims:
            raise ShapeMismatchError(f"Dimension {dim} out of range for shape {a.shape}")
        dim = dim % a.dims
        out = _reduce(operators.MAX, a, dim, -np.inf)
        ctx.save_for_backward(a, out)
        return out

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage]:
        a, out = ctx.saved_values
        mask = _zip(operators.EQ, a, out)
        return (_zip(operators.MUL, mask, d_output),)


class Permute(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage, order: Sequence[int]) -> TensorStorage:
        order = tuple(o % a.dims for o in order) if a.dims else tuple(order)
        ctx.save_for_backward(order)
        return a.permute(*order)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage]:
        (order,) = ctx.saved_values
        inverse = [0] * len(order)
        for i, o in enumerate(order):
            inverse[o] = i
        return (d_output.permute(*inverse),)


class View(TensorFunction):
    """Reshape; zero copy when the input is contiguous, otherwise a fresh contiguous copy."""

    @staticmethod
    def forward(ctx: Context, a: TensorStorage, shape: Sequence[int]) -> TensorStorage:
        ctx.save_for_backward(a.shape)
        out, _ = a.reshape(shape)
        return out

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage]:
        (a_shape,) = ctx.saved_values
        grad, _ = d_output.reshape(a_shape)
        return (grad,)


class Expand(TensorFunction):
    """Broadcast view with stride 0; `chain_rule` sums the gradient back to the input shape."""

    @staticmethod
    def forward(ctx: Context, a: TensorStorage, shape: Sequence[int]) -> TensorStorage:
        return a.expand(shape)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage]:
        return (d_output,)


class Slice(TensorFunction):
    @staticmethod
    def forward(ctx: Context, a: TensorStorage, key: Any) -> TensorStorage:
        ctx.save_for_backward(a.shape, key)
        return a.slice(key)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage]:
        a_shape, key = ctx.saved_values
        grad = TensorStorage.zeros(a_shape)
        get_backend().copy(grad.slice(key), d_output)
        return (grad,)


class Copy(TensorFunction):
    """Materialises a fresh contiguous copy."""

    @staticmethod
    def forward(ctx: Context, a: TensorStorage) -> TensorStorage:
        return _map(operators.ID, a)

    @staticmethod
    def backward(ctx: Context, d_output: TensorStorage) -> tuple[TensorStorage]:
        return (d_output,)
