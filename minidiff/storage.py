from __future__ import annotations

import itertools
import logging
from functools import reduce
from operator import mul
from typing import Any, Iterator, Optional, Sequence, Union

import numpy as np

from minidiff.errors import ShapeMismatchError

logger = logging.getLogger(__name__)

Index = Sequence[int]
Shape = tuple[int, ...]
Strides = tuple[int, ...]


def prod(shape: Sequence[int]) -> int:
    return reduce(mul, shape, 1)


def strides_from_shape(shape: Sequence[int]) -> Strides:
    """Row-major (C order) strides for `shape`, with no gaps."""
    strides = [1] * len(shape)
    stride = 1
    for i in range(len(shape) - 1, -1, -1):
        strides[i] = stride
        stride *= int(shape[i])
    return tuple(strides)


def index_to_position(index: Index, strides: Sequence[int], offset: int = 0) -> int:
    """
    Maps a multi-index to a position in the flat storage.

    Args:
        index (Sequence[int]): One index per dimension.
        strides (Sequence[int]): One stride per dimension.
        offset (int): Position of element `(0, ..., 0)`.

    Returns:
        int: `offset + sum(index[i] * strides[i])`.
    """
    position = offset
    for i, s in zip(index, strides):
        position += i * s
    return position


def to_index(ordinal: int, shape: Sequence[int]) -> list[int]:
    """Converts a row-major ordinal in `[0, prod(shape))` into a multi-index."""
    index = [0] * len(shape)
    for i in range(len(shape) - 1, -1, -1):
        index[i] = ordinal % shape[i]
        ordinal //= shape[i]
    return index


def broadcast_index(big_index: Index, big_shape: Sequence[int], shape: Sequence[int]) -> list[int]:
    """
    Maps an index of a broadcast result back to an index of one of its operands.

    Leading dimensions missing from `shape` are dropped, size-1 dimensions are pinned to 0.
    """
    lead = len(big_shape) - len(shape)
    return [0 if s == 1 else big_index[i + lead] for i, s in enumerate(shape)]


def shape_broadcast(shape1: Sequence[int], shape2: Sequence[int]) -> Shape:
    """
    Computes the shape two operands broadcast to, following the numpy rules.

    Raises:
        ShapeMismatchError: If a dimension differs and neither side is 1.
    """
    rank = max(len(shape1), len(shape2))
    a = (1,) * (rank - len(shape1)) + tuple(shape1)
    b = (1,) * (rank - len(shape2)) + tuple(shape2)
    out = []
    for d1, d2 in zip(a, b):
        if d1 == d2 or d2 == 1:
            out.append(d1)
        elif d1 == 1:
            out.append(d2)
        else:
            raise ShapeMismatchError(f"Cannot broadcast shapes {tuple(shape1)} and {tuple(shape2)}")
    return tuple(out)


class TensorStorage:
    """
    `minidiff.storage.TensorStorage` describes a strided view over a flat buffer.

    Several descriptors may share one buffer: reshape of a contiguous layout, permute,
    expand and slice only build a new `(shape, strides, offset)` triple. Methods that may
    have to copy return a `(layout, copied)` pair so callers can reason about aliasing.

    Attributes
    ----------
    shape (tuple[int, ...]): Logical shape.
    strides (tuple[int, ...]): Step, in buffer positions, per dimension. Broadcast dimensions use a stride of 0.
    offset (int): Buffer position of the first element.
    writeable (bool): `False` for layouts where several indices map to one position (broadcasts).
        Writing to such a layout first detaches it onto a private copy.
    """

    def __init__(
        self,
        storage: Union[np.ndarray, Sequence[float]],
        shape: Sequence[int],
        strides: Optional[Sequence[int]] = None,
        offset: int = 0,
        writeable: bool = True,
    ) -> None:
        buffer = np.asarray(storage, dtype=np.float64)
        if buffer.ndim != 1:
            raise ShapeMismatchError(f"Storage must be one dimensional, got {buffer.ndim} dimensions")
        self._storage = buffer
        self.shape: Shape = tuple(int(s) for s in shape)
        if any(s < 0 for s in self.shape):
            raise ShapeMismatchError(f"Negative dimension in shape {self.shape}")
        self.strides: Strides = (
            tuple(int(s) for s in strides) if strides is not None else strides_from_shape(self.shape)
        )
        if len(self.strides) != len(self.shape):
            raise ShapeMismatchError(
                f"Got {len(self.strides)} strides for a {len(self.shape)} dimensional shape"
            )
        if any(s < 0 for s in self.strides):
            raise ShapeMismatchError(f"Negative strides are not supported: {self.strides}")
        self.offset = int(offset)
        self.size = prod(self.shape)
        self.dims = len(self.shape)
        self.writeable = writeable
        self._check_bounds()

    @classmethod
    def zeros(cls, shape: Sequence[int]) -> TensorStorage:
        return cls(np.zeros(prod(shape), dtype=np.float64), shape)

    @classmethod
    def from_values(cls, values: Sequence[float], shape: Sequence[int]) -> TensorStorage:
        buffer = np.array(values, dtype=np.float64).reshape(-1)
        if buffer.size != prod(shape):
            raise ShapeMismatchError(
                f"Got {buffer.size} values for shape {tuple(shape)} (expected {prod(shape)})"
            )
        return cls(buffer, shape)

    def _check_bounds(self) -> None:
        if self.size == 0:
            return
        last = self.offset + sum(st * (s - 1) for s, st in zip(self.shape, self.strides))
        if self.offset < 0 or last >= len(self._storage):
            raise ShapeMismatchError(
                f"Layout shape={self.shape} strides={self.strides} offset={self.offset} "
                f"reaches position {last} of a buffer of {len(self._storage)} elements"
            )

    @property
    def storage(self) -> np.ndarray:
        return self._storage

    def shares_storage(self, other: TensorStorage) -> bool:
        return self._storage is other._storage

    def is_contiguous(self) -> bool:
        """
        Whether the strides are the row-major strides of the shape, with no gaps.

        Size-1 dimensions never move through the buffer, so their stride is ignored.
        """
        expected = strides_from_shape(self.shape)
        return all(
            s == e for dim, s, e in zip(self.shape, self.strides, expected) if dim != 1
        )

    def _normalise_index(self, index: Union[int, Index]) -> tuple[int, ...]:
        index = (index,) if isinstance(index, int) else tuple(index)
        if len(index) != self.dims:
            raise ShapeMismatchError(
                f"Index {index} has {len(index)} dimensions, layout has {self.dims}"
            )
        out = []
        for i, dim in zip(index, self.shape):
            if i < 0:
                i += dim
            if not 0 <= i < dim:
                raise IndexError(f"Index {index} out of range for shape {self.shape}")
            out.append(i)
        return tuple(out)

    def position(self, index: Union[int, Index]) -> int:
        return index_to_position(self._normalise_index(index), self.strides, self.offset)

    def get(self, index: Union[int, Index]) -> float:
        return float(self._storage[self.position(index)])

    def set(self, index: Union[int, Index], value: float) -> None:
        """
        Writes one element in place.

        Every writeable layout sharing this buffer observes the write. Broadcast layouts
        are not writeable: they are first detached onto a private contiguous copy.
        """
        self.ensure_writeable()
        self._storage[self.position(index)] = value

    def ensure_writeable(self) -> None:
        """Copy-on-write: detaches a broadcast layout onto a private buffer before a write."""
        if not self.writeable:
            self._detach()

    def _detach(self) -> None:
        logger.debug("copy-on-write: detaching broadcast layout %s onto a private buffer", self.shape)
        fresh = self.to_numpy().copy().reshape(-1)
        self._storage = fresh
        self.strides = strides_from_shape(self.shape)
        self.offset = 0
        self.writeable = True

    def view(self, shape: Sequence[int], strides: Sequence[int], offset: int) -> TensorStorage:
        """
        Builds a new descriptor over the same buffer. Never copies.

        Raises:
            ShapeMismatchError: If the descriptor reaches outside the buffer.
        """
        shape = tuple(shape)
        strides = tuple(strides)
        overlapping = any(st == 0 and s > 1 for s, st in zip(shape, strides))
        return TensorStorage(
            self._storage, shape, strides, offset, writeable=self.writeable and not overlapping
        )

    def permute(self, *order: int) -> TensorStorage:
        if sorted(order) != list(range(self.dims)):
            raise ShapeMismatchError(f"{order} is not a permutation of {self.dims} dimensions")
        return self.view(
            tuple(self.shape[i] for i in order),
            tuple(self.strides[i] for i in order),
            self.offset,
        )

    def _infer_shape(self, shape: Union[int, Sequence[int]]) -> Shape:
        shape = (shape,) if isinstance(shape, int) else tuple(int(s) for s in shape)
        if shape.count(-1) > 1:
            raise ShapeMismatchError(f"cannot reshape tensor to shape {shape}")
        if -1 in shape:
            known = prod(s for s in shape if s != -1)
            if known == 0 or self.size % known != 0:
                raise ShapeMismatchError(f"cannot reshape {self.shape} to {shape}")
            shape = tuple(self.size // known if s == -1 else s for s in shape)
        if prod(shape) != self.size:
            raise ShapeMismatchError(f"cannot reshape {self.shape} ({self.size} elements) to {shape}")
        return shape

    def reshape(self, shape: Union[int, Sequence[int]]) -> tuple[TensorStorage, bool]:
        """
        Reinterprets the layout with a new shape. One dimension may be `-1`.

        Returns:
            tuple[TensorStorage, bool]: The new layout and whether a copy was made.
            Contiguous layouts are reshaped without copying.
        """
        shape = self._infer_shape(shape)
        if self.is_contiguous():
            return TensorStorage(self._storage, shape, None, self.offset, self.writeable), False
        logger.debug("reshape %s -> %s needs a copy of %d elements", self.shape, shape, self.size)
        copied = self.copy()
        return TensorStorage(copied._storage, shape), True

    def expand(self, shape: Sequence[int]) -> TensorStorage:
        """
        Broadcasts size-1 dimensions (and prepends new leading dimensions) with a stride of 0.

        The result shares the buffer and is not writeable.
        """
        shape = tuple(int(s) for s in shape)
        if len(shape) < self.dims:
            raise ShapeMismatchError(f"Cannot expand {self.shape} to fewer dimensions {shape}")
        lead = len(shape) - self.dims
        strides = [0] * lead
        for i, (s, st) in enumerate(zip(self.shape, self.strides)):
            target = shape[lead + i]
            if s == target:
                strides.append(st)
            elif s == 1:
                strides.append(0)
            else:
                raise ShapeMismatchError(f"Cannot expand {self.shape} to {shape}")
        return self.view(shape, strides, self.offset)

    def slice(self, key: Any) -> TensorStorage:
        """
        Basic indexing: integers drop a dimension, slices with positive steps narrow it.

        The result is a view over the same buffer.
        """
        key = key if isinstance(key, tuple) else (key,)
        if len(key) > self.dims:
            raise ShapeMismatchError(f"Too many indices {key} for shape {self.shape}")
        key = key + (slice(None),) * (self.dims - len(key))

        offset = self.offset
        shape = []
        strides = []
        for k, dim, stride in zip(key, self.shape, self.strides):
            if isinstance(k, (int, np.integer)):
                k = int(k)
                if k < 0:
                    k += dim
                if not 0 <= k < dim:
                    raise IndexError(f"Index {k} out of range for dimension of size {dim}")
                offset += k * stride
            elif isinstance(k, slice):
                start, stop, step = k.indices(dim)
                if step <= 0:
                    raise ShapeMismatchError("Only positive slice steps are supported")
                length = len(range(start, stop, step))
                if length:
                    offset += start * stride
                shape.append(length)
                strides.append(stride * step)
            else:
                raise TypeError(f"Unsupported index {k!r} of type {type(k).__name__}")
        return self.view(shape, strides, offset)

    def copy(self) -> TensorStorage:
        """A fresh contiguous layout holding the same values."""
        return TensorStorage(self.to_numpy().copy().reshape(-1), self.shape)

    def contiguous(self) -> tuple[TensorStorage, bool]:
        if self.is_contiguous():
            return self, False
        return self.copy(), True

    def indices(self) -> Iterator[tuple[int, ...]]:
        """Iterates every multi-index in row-major order."""
        return itertools.product(*(range(s) for s in self.shape))

    def to_numpy(self, writeable: bool = False) -> np.ndarray:
        """
        A numpy view of this layout over the shared buffer (no copy).

        Args:
            writeable (bool): Return a view writes can go through. Only allowed on writeable layouts.
        """
        if writeable and not self.writeable:
            raise ValueError("Cannot write through a broadcast layout")
        itemsize = self._storage.itemsize
        base = self._storage[self.offset :] if self.size else self._storage[:0]
        return np.lib.stride_tricks.as_strided(
            base,
            shape=self.shape,
            strides=tuple(s * itemsize for s in self.strides),
            writeable=writeable,
        )

    def tolist(self) -> Union[list, float]:
        return self.to_numpy().tolist()

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(shape={self.shape}, strides={self.strides}, "
            f"offset={self.offset}, writeable={self.writeable})"
        )
