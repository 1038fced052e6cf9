from __future__ import annotations

from typing import Any, Callable, Iterable, Optional, Sequence, Union

import numpy as np

from minidiff import tensor_functions as tf
from minidiff.autodiff import History, backpropagate, central_difference, next_unique_id, no_grad
from minidiff.backend import get_backend
from minidiff.errors import GraphConsistencyError, NoGradientError, ShapeMismatchError
from minidiff.storage import TensorStorage, prod


def py_flatten(lst: Any) -> tuple[list, list[int]]:
    """
    Flattens a nested python list, returning the flat values and the inferred shape.

    Raises:
        ShapeMismatchError: If the nested lists are ragged.
    """

    def get_shape(x):
        if isinstance(x, (list, tuple)):
            if x:
                return [len(x)] + get_shape(x[0])
            return [0]
        return []

    def flatten(x, shape):
        if not shape:
            if isinstance(x, (list, tuple)):
                raise ShapeMismatchError(f"Ragged nested list, got {x!r} where a number was expected")
            yield float(x)
            return
        if not isinstance(x, (list, tuple)) or len(x) != shape[0]:
            raise ShapeMismatchError(f"Ragged nested list, expected {shape[0]} items, got {x!r}")
        for item in x:
            yield from flatten(item, shape[1:])

    shape = get_shape(lst)
    return list(flatten(lst, shape)), shape


class Tensor:
    """
    `minidiff.Tensor` is a multi-dimensional value in a computational graph.

    The numbers live in a `minidiff.storage.TensorStorage`: a flat buffer plus a
    `(shape, strides, offset)` descriptor. View operations (reshape of contiguous data,
    permute, transpose, expand, slicing) share the buffer; `is_view` tells them apart from
    tensors that own fresh storage.

    Attributes
    ----------
    requires_grad (bool): Whether gradient tracking is enabled. A leaf with `requires_grad=False` is a constant.
    history (Optional[minidiff.autodiff.History]): The operation that produced this tensor. `None` for leaves.
    retains_grad (bool): Whether a non-leaf tensor also stores its derivative during backpropagation.
    is_view (bool): Whether this tensor shares its buffer with the tensor it was computed from.
    name (str): Label used in graph plots.
    """

    def __init__(
        self,
        values: Union[TensorStorage, np.ndarray, list, float, int],
        requires_grad: bool = True,
        history: Optional[History] = None,
        is_view: bool = False,
        name: Optional[str] = None,
    ) -> None:
        if isinstance(values, TensorStorage):
            storage = values
        elif isinstance(values, np.ndarray):
            storage = TensorStorage(np.array(values, dtype=np.float64).reshape(-1), values.shape)
        elif isinstance(values, (list, tuple)):
            flat, shape = py_flatten(values)
            storage = TensorStorage.from_values(flat, shape)
        elif isinstance(values, (float, int, np.number)):
            storage = TensorStorage.from_values([float(values)], ())
        else:
            raise TypeError(f"Cannot build a Tensor from {type(values).__name__}")

        self._storage = storage
        self.history = history
        self.requires_grad = requires_grad or history is not None
        self.retains_grad = False
        self.is_view = is_view
        self._derivative: Optional[Tensor] = None
        self._unique_id = next_unique_id()
        self.name = name if name is not None else f"tensor{self._unique_id}"

    @classmethod
    def make(
        cls, values: Sequence[float], shape: Sequence[int], requires_grad: bool = True
    ) -> Tensor:
        return cls(TensorStorage.from_values(values, shape), requires_grad=requires_grad)

    @property
    def storage(self) -> TensorStorage:
        return self._storage

    @property
    def shape(self) -> tuple[int, ...]:
        return self._storage.shape

    @property
    def size(self) -> int:
        return self._storage.size

    @property
    def dims(self) -> int:
        return self._storage.dims

    @property
    def unique_id(self) -> int:
        return self._unique_id

    def is_contiguous(self) -> bool:
        return self._storage.is_contiguous()

    def shares_storage(self, other: Tensor) -> bool:
        return self._storage.shares_storage(other.storage)

    # graph protocol

    @property
    def derivative(self) -> Tensor:
        if self._derivative is None:
            raise NoGradientError(
                f"{self.name} has no gradient; run backward() on a value computed from it first"
            )
        return self._derivative

    @property
    def has_derivative(self) -> bool:
        return self._derivative is not None

    def is_leaf(self) -> bool:
        return self.history is None

    def is_constant(self) -> bool:
        return self.history is None and not self.requires_grad

    @property
    def parents(self) -> Iterable[Tensor]:
        return self.history.inputs if self.history is not None else ()

    def chain_rule(self, d_output: Tensor) -> Iterable[tuple[Tensor, Tensor]]:
        h = self.history
        if h is None or h.last_fn is None or h.ctx is None:
            raise GraphConsistencyError(f"{self.name} has no history to differentiate")
        return h.last_fn.chain_rule(h.ctx, h.inputs, d_output)

    def accumulate_derivative(self, x: Tensor) -> None:
        if not (self.is_leaf() or self.retains_grad):
            raise GraphConsistencyError(
                f"{self.name} is not a leaf and did not ask to retain its gradient"
            )
        if x.shape != self.shape:
            raise ShapeMismatchError(
                f"Gradient of shape {x.shape} does not match {self.name} of shape {self.shape}"
            )
        if self._derivative is None:
            # gradients may alias the seed or a sibling input's gradient
            self._derivative = Tensor(x.storage.copy(), requires_grad=False)
        else:
            with no_grad():
                self._derivative = self._derivative + x

    def retain_grad(self) -> Tensor:
        self.retains_grad = True
        return self

    def zero_grad(self) -> None:
        self._derivative = zeros(self.shape, requires_grad=False)

    def backward(
        self, d_output: Union[Tensor, float, None] = None, retain_graph: bool = False
    ) -> None:
        """
        Backpropagates from this tensor, writing derivatives into every upstream leaf.

        Args:
            d_output (Optional[Tensor | float]): Seed gradient. Defaults to ones for single element tensors.
            retain_graph (bool): Keep saved values so the graph can be backpropagated again.

        Raises:
            ShapeMismatchError: If no seed is given for a tensor with more than one element,
                or the seed's shape differs from this tensor's.
        """
        if d_output is None:
            if self.size != 1:
                raise ShapeMismatchError(
                    f"grad must be specified for non-scalar outputs, got shape {self.shape}"
                )
            d_output = ones(self.shape, requires_grad=False)
        elif isinstance(d_output, (int, float)):
            d_output = full(self.shape, float(d_output), requires_grad=False)
        if d_output.shape != self.shape:
            raise ShapeMismatchError(
                f"Seed gradient of shape {d_output.shape} does not match output shape {self.shape}"
            )
        backpropagate(self, d_output, retain_graph=retain_graph)

    # element access

    def get(self, index: Union[int, Sequence[int]]) -> float:
        return self._storage.get(index)

    def item(self) -> float:
        if self.size != 1:
            raise ValueError("only one element tensors can be converted to Python scalars")
        return float(self._storage.to_numpy().reshape(-1)[0])

    def to_numpy(self) -> np.ndarray:
        """A copy of the values as a numpy array."""
        return self._storage.to_numpy().copy()

    def tolist(self) -> Union[list, float]:
        return self._storage.tolist()

    def __getitem__(self, key: Any) -> Tensor:
        return tf.Slice.apply(self, key=key)

    def __setitem__(self, key: Any, value: Union[Tensor, float]) -> None:
        """
        Writes values in place.

        Every tensor sharing this buffer (views and the tensor they came from) sees the
        write. A broadcast tensor is first detached onto a private copy. Writing into a
        tensor whose values were saved for a pending backward pass corrupts that pass.
        """
        self._storage.ensure_writeable()
        region = self._storage.slice(key)
        source = value.storage if isinstance(value, Tensor) else TensorStorage.from_values([value], ())
        if source.shares_storage(region):
            # overlapping source and target, as in `t[1:] = t[:-1]`
            source = source.copy()
        get_backend().copy(region, source.expand(region.shape))

    def __len__(self) -> int:
        if not self.shape:
            raise TypeError("len() of a 0-d tensor")
        return self.shape[0]

    def __iter__(self):
        return (self[i] for i in range(len(self)))

    # arithmetic

    def __add__(self, other: Union[Tensor, float]) -> Tensor:
        return tf.Add.apply(self, other)

    def __radd__(self, other: Union[Tensor, float]) -> Tensor:
        return tf.Add.apply(other, self)

    def __sub__(self, other: Union[Tensor, float]) -> Tensor:
        return tf.Sub.apply(self, other)

    def __rsub__(self, other: Union[Tensor, float]) -> Tensor:
        return tf.Sub.apply(other, self)

    def __mul__(self, other: Union[Tensor, float]) -> Tensor:
        return tf.Mul.apply(self, other)

    def __rmul__(self, other: Union[Tensor, float]) -> Tensor:
        return tf.Mul.apply(other, self)

    def __truediv__(self, other: Union[Tensor, float]) -> Tensor:
        return tf.Div.apply(self, other)

    def __rtruediv__(self, other: Union[Tensor, float]) -> Tensor:
        return tf.Div.apply(other, self)

    def __pow__(self, exponent: Union[Tensor, float]) -> Tensor:
        return tf.PowScalar.apply(self, exponent)

    def __neg__(self) -> Tensor:
        return tf.Neg.apply(self)

    def __matmul__(self, other: Tensor) -> Tensor:
        return matmul(self, other)

    def __lt__(self, other: Union[Tensor, float]) -> Tensor:
        return tf.LT.apply(self, other)

    def __gt__(self, other: Union[Tensor, float]) -> Tensor:
        return tf.LT.apply(other, self)

    def eq(self, other: Union[Tensor, float]) -> Tensor:
        return tf.EQ.apply(self, other)

    def exp(self) -> Tensor:
        return tf.Exp.apply(self)

    def log(self) -> Tensor:
        return tf.Log.apply(self)

    def sigmoid(self) -> Tensor:
        return tf.Sigmoid.apply(self)

    def relu(self) -> Tensor:
        return tf.ReLU.apply(self)

    def tanh(self) -> Tensor:
        return tf.Tanh.apply(self)

    def square(self) -> Tensor:
        return self * self

    def sum(self, dim: Optional[int] = None, keepdim: bool = False) -> Tensor:
        """
        Sums over `dim`, or over every element when `dim` is `None`.

        Args:
            dim (Optional[int]): Dimension to reduce.
            keepdim (bool): Keep the reduced dimension with size 1.
        """
        if dim is None:
            out = tf.Sum.apply(self.contiguous().view(self.size), dim=0)
            return out if keepdim else out.view(())
        out = tf.Sum.apply(self, dim=dim)
        return out if keepdim else out.view(_drop_dim(out.shape, dim))

    def mean(self, dim: Optional[int] = None, keepdim: bool = False) -> Tensor:
        count = self.size if dim is None else self.shape[dim]
        return self.sum(dim, keepdim) / float(count)

    def max(self, dim: int, keepdim: bool = False) -> Tensor:
        out = tf.Max.apply(self, dim=dim)
        return out if keepdim else out.view(_drop_dim(out.shape, dim))

    # views

    def view(self, *shape: Any) -> Tensor:
        """Reshape. Shares storage when this tensor is contiguous, otherwise copies."""
        return tf.View.apply(self, shape=_shape_args(shape))

    def reshape(self, *shape: Any) -> Tensor:
        return self.view(*shape)

    def permute(self, *order: Any) -> Tensor:
        order = _shape_args(order)
        if len(order) != self.dims:
            raise ShapeMismatchError(f"Permute dims {order} must match tensor dims {self.dims}")
        return tf.Permute.apply(self, order=order)

    def transpose(self, dim0: int = -2, dim1: int = -1) -> Tensor:
        if self.dims < 2:
            raise ShapeMismatchError(f"transpose needs at least 2 dimensions, got shape {self.shape}")
        order = list(range(self.dims))
        order[dim0], order[dim1] = order[dim1], order[dim0]
        return tf.Permute.apply(self, order=tuple(order))

    @property
    def T(self) -> Tensor:
        return self.transpose()

    def expand(self, *shape: Any) -> Tensor:
        return tf.Expand.apply(self, shape=_shape_args(shape))

    def unsqueeze(self, dim: int) -> Tensor:
        if dim < 0:
            dim += self.dims + 1
        if not 0 <= dim <= self.dims:
            raise ShapeMismatchError(
                f"Cannot unsqueeze tensor shaped {self.shape} at dim {dim}, expected values from [0, {self.dims}]"
            )
        shape = list(self.shape)
        shape.insert(dim, 1)
        return self.view(tuple(shape))

    def contiguous(self) -> Tensor:
        return self if self.is_contiguous() else tf.Copy.apply(self)

    def detach(self) -> Tensor:
        s = self._storage
        return Tensor(s.view(s.shape, s.strides, s.offset), requires_grad=False, is_view=True)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(shape={self.shape}, values={self.tolist()}, requires_grad={self.requires_grad})"


def _shape_args(args: Sequence[Any]) -> tuple[int, ...]:
    if len(args) == 1 and isinstance(args[0], (tuple, list)):
        return tuple(args[0])
    return tuple(args)


def _drop_dim(shape: Sequence[int], dim: int) -> tuple[int, ...]:
    shape = list(shape)
    shape.pop(dim)
    return tuple(shape)


def tensor(values: Any, requires_grad: bool = True) -> Tensor:
    """
    Creates a leaf `minidiff.Tensor` from a number or nested python lists.
    """
    return Tensor(values, requires_grad=requires_grad)


def from_numpy(array: np.ndarray, requires_grad: bool = True) -> Tensor:
    return Tensor(np.asarray(array, dtype=np.float64), requires_grad=requires_grad)


def full(shape: Sequence[int], value: float, requires_grad: bool = True) -> Tensor:
    return Tensor(
        TensorStorage(np.full(prod(shape), value, dtype=np.float64), shape),
        requires_grad=requires_grad,
    )


def zeros(shape: Sequence[int], requires_grad: bool = True) -> Tensor:
    return full(shape, 0.0, requires_grad)


def ones(shape: Sequence[int], requires_grad: bool = True) -> Tensor:
    return full(shape, 1.0, requires_grad)


def rand(shape: Sequence[int], seed: Optional[int] = None, requires_grad: bool = True) -> Tensor:
    """Uniform samples in `[0, 1)` from `numpy.random.default_rng(seed)`."""
    rng = np.random.default_rng(seed)
    return Tensor(TensorStorage(rng.random(prod(shape)), shape), requires_grad=requires_grad)


def matmul(a: Tensor, b: Tensor) -> Tensor:
    """
    Matrix product of the last two dimensions, broadcasting the leading ones.

    Built from graph operations only: `a` is viewed as `(..., n, m, 1)`, `b` as
    `(..., 1, m, p)`, multiplied with broadcasting and summed over `m`.
    """
    if a.dims < 2 or b.dims < 2:
        raise ShapeMismatchError(f"matmul needs at least 2 dimensions, got {a.shape} and {b.shape}")
    if a.shape[-1] != b.shape[-2]:
        raise ShapeMismatchError(f"matmul shapes {a.shape} and {b.shape} are not aligned")
    product = a.unsqueeze(-1) * b.unsqueeze(-3)
    return product.sum(dim=-2)


def grad_check(
    fn: Callable[..., Tensor], *vals: Tensor, epsilon: float = 1e-6, rtol: float = 1e-2, atol: float = 1e-2
) -> None:
    """
    Checks backpropagated gradients of `fn` against central differences, element by element.

    `fn(*vals).sum()` is differentiated. Every input must be a leaf requiring grad.

    Raises:
        AssertionError: If a gradient disagrees with its numerical estimate.
    """
    for x in vals:
        x._derivative = None
    out = fn(*vals).sum()
    out.backward()

    for i, x in enumerate(vals):
        base = x.to_numpy()
        for index in np.ndindex(*x.shape):

            def f(value: float) -> float:
                perturbed = base.copy()
                perturbed[index] = value
                args = list(vals)
                args[i] = from_numpy(perturbed, requires_grad=False)
                with no_grad():
                    return fn(*args).sum().item()

            numerical = central_difference(f, float(base[index]), epsilon=epsilon)
            np.testing.assert_allclose(
                x.derivative.get(index),
                numerical,
                rtol=rtol,
                atol=atol,
                err_msg=f"Gradient check failed for argument {i} at index {index}",
            )
