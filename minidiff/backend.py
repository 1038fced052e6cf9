from __future__ import annotations

import enum
import logging
import math
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Optional, Union

import numpy as np

from minidiff import config, operators
from minidiff.operators import Kernel
from minidiff.storage import TensorStorage, broadcast_index, index_to_position, to_index

logger = logging.getLogger(__name__)


class BackendKind(enum.Enum):
    PYTHON = "python"
    NUMPY = "numpy"
    THREADED = "threaded"


class Backend(ABC):
    """
    `minidiff.backend.Backend` is an execution strategy for tensor kernels.

    Every method writes its result into `out`, a writeable layout whose shape is the
    broadcast shape of the operands. The graph engine never sees which backend ran a
    kernel; forward and backward rules only call these four methods.
    """

    kind: BackendKind

    @abstractmethod
    def map(self, kernel: Kernel, out: TensorStorage, a: TensorStorage) -> None:
        """`out[i] = kernel(a[i])`, broadcasting `a` into `out.shape`."""

    @abstractmethod
    def zip(self, kernel: Kernel, out: TensorStorage, a: TensorStorage, b: TensorStorage) -> None:
        """`out[i] = kernel(a[i], b[i])`, broadcasting both operands into `out.shape`."""

    @abstractmethod
    def reduce(
        self, kernel: Kernel, out: TensorStorage, a: TensorStorage, dim: int, start: float
    ) -> None:
        """
        Folds `a` along `dim` with `kernel`, starting from `start`.

        `out.shape` equals `a.shape` with `dim` set to 1.
        """

    def copy(self, out: TensorStorage, a: TensorStorage) -> None:
        self.map(operators.ID, out, a)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def _check_out(out: TensorStorage) -> None:
    if not out.writeable:
        raise ValueError(f"Kernel output layout {out} is not writeable")


class _InterpretedBackend(Backend):
    """Index arithmetic over the strided layouts, one element at a time."""

    def _run(self, size: int, task: Callable[[int, int], None]) -> None:
        task(0, size)

    def map(self, kernel: Kernel, out: TensorStorage, a: TensorStorage) -> None:
        _check_out(out)
        fn = kernel.scalar
        dst, src = out.storage, a.storage

        def task(start: int, stop: int) -> None:
            for ordinal in range(start, stop):
                index = to_index(ordinal, out.shape)
                a_index = broadcast_index(index, out.shape, a.shape)
                dst[index_to_position(index, out.strides, out.offset)] = fn(
                    float(src[index_to_position(a_index, a.strides, a.offset)])
                )

        self._run(out.size, task)

    def zip(self, kernel: Kernel, out: TensorStorage, a: TensorStorage, b: TensorStorage) -> None:
        _check_out(out)
        fn = kernel.scalar
        dst, src_a, src_b = out.storage, a.storage, b.storage

        def task(start: int, stop: int) -> None:
            for ordinal in range(start, stop):
                index = to_index(ordinal, out.shape)
                a_index = broadcast_index(index, out.shape, a.shape)
                b_index = broadcast_index(index, out.shape, b.shape)
                dst[index_to_position(index, out.strides, out.offset)] = fn(
                    float(src_a[index_to_position(a_index, a.strides, a.offset)]),
                    float(src_b[index_to_position(b_index, b.strides, b.offset)]),
                )

        self._run(out.size, task)

    def reduce(
        self, kernel: Kernel, out: TensorStorage, a: TensorStorage, dim: int, start: float
    ) -> None:
        _check_out(out)
        fn = kernel.scalar
        dst, src = out.storage, a.storage
        reduce_size = a.shape[dim]

        def task(begin: int, end: int) -> None:
            for ordinal in range(begin, end):
                index = to_index(ordinal, out.shape)
                acc = start
                # each output cell folds serially in a fixed order
                for j in range(reduce_size):
                    index[dim] = j
                    acc = fn(acc, float(src[index_to_position(index, a.strides, a.offset)]))
                index[dim] = 0
                dst[index_to_position(index, out.strides, out.offset)] = acc

        self._run(out.size, task)


class PythonBackend(_InterpretedBackend):
    kind = BackendKind.PYTHON


class ThreadedBackend(_InterpretedBackend):
    """
    Splits the output positions into disjoint chunks and runs them on a thread pool.

    Iterations never depend on each other: every output cell is written by exactly one
    chunk and reductions fold each cell serially, so results do not depend on scheduling.

    Attributes
    ----------
    num_threads (int): Pool size. Defaults to `MINIDIFF_NUM_THREADS`.
    min_chunk (int): Outputs smaller than this run inline on the calling thread.
    """

    kind = BackendKind.THREADED

    def __init__(self, num_threads: Optional[int] = None, min_chunk: int = 1024) -> None:
        self.num_threads = max(1, num_threads or config.NUM_THREADS)
        self.min_chunk = min_chunk
        self._executor: Optional[ThreadPoolExecutor] = None

    @property
    def executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.num_threads, thread_name_prefix="minidiff-kernel"
            )
        return self._executor

    def _run(self, size: int, task: Callable[[int, int], None]) -> None:
        if self.num_threads == 1 or size < self.min_chunk:
            task(0, size)
            return
        chunk = math.ceil(size / self.num_threads)
        futures = [
            self.executor.submit(task, start, min(start + chunk, size))
            for start in range(0, size, chunk)
        ]
        for future in futures:
            future.result()

    def shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}(num_threads={self.num_threads})"


class NumpyBackend(Backend):
    """
    Vectorised kernels over strided numpy views of the shared buffers.

    Floating point warnings are silenced: domain errors produce the same `nan` and
    infinities as the interpreted backends, which never warn.
    """

    kind = BackendKind.NUMPY

    def map(self, kernel: Kernel, out: TensorStorage, a: TensorStorage) -> None:
        _check_out(out)
        with np.errstate(all="ignore"):
            out.to_numpy(writeable=True)[...] = kernel.vector(a.to_numpy())

    def zip(self, kernel: Kernel, out: TensorStorage, a: TensorStorage, b: TensorStorage) -> None:
        _check_out(out)
        with np.errstate(all="ignore"):
            out.to_numpy(writeable=True)[...] = kernel.vector(a.to_numpy(), b.to_numpy())

    def reduce(
        self, kernel: Kernel, out: TensorStorage, a: TensorStorage, dim: int, start: float
    ) -> None:
        _check_out(out)
        if not hasattr(kernel.vector, "reduce"):
            raise TypeError(f"Kernel {kernel.name} cannot be used as a reduction")
        with np.errstate(all="ignore"):
            out.to_numpy(writeable=True)[...] = kernel.vector.reduce(
                a.to_numpy(), axis=dim, keepdims=True, initial=start
            )


_BACKEND_TYPES = {
    BackendKind.PYTHON: PythonBackend,
    BackendKind.NUMPY: NumpyBackend,
    BackendKind.THREADED: ThreadedBackend,
}

_active_backend: Optional[Backend] = None


def make_backend(kind: Union[str, BackendKind]) -> Backend:
    """
    Creates a backend from its name.

    Raises:
        ValueError: If `kind` is not one of `python`, `numpy`, `threaded`.
    """
    if isinstance(kind, str):
        try:
            kind = BackendKind(kind.lower())
        except ValueError:
            valid = ", ".join(k.value for k in BackendKind)
            raise ValueError(f"Unknown backend {kind!r}, expected one of: {valid}") from None
    return _BACKEND_TYPES[kind]()


def get_backend() -> Backend:
    global _active_backend
    if _active_backend is None:
        _active_backend = make_backend(config.BACKEND)
        logger.debug("using %r kernel backend", _active_backend)
    return _active_backend


def set_backend(backend: Union[str, BackendKind, Backend]) -> Backend:
    """
    Selects the backend every subsequent kernel runs on.

    Returns:
        Backend: The previously active backend.
    """
    global _active_backend
    previous = get_backend()
    _active_backend = backend if isinstance(backend, Backend) else make_backend(backend)
    logger.debug("switched kernel backend from %r to %r", previous, _active_backend)
    return previous


class use_backend:
    """
    Runs the kernels inside a `with` block on another backend, restoring the previous one on exit.
    """

    def __init__(self, backend: Union[str, BackendKind, Backend]) -> None:
        self.backend = backend
        self.prev_backend: Optional[Backend] = None

    def __enter__(self) -> Backend:
        self.prev_backend = set_backend(self.backend)
        return get_backend()

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        set_backend(self.prev_backend)
