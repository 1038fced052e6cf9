import logging

from minidiff.autodiff import (
    Context,
    Function,
    History,
    backpropagate,
    central_difference,
    enable_grad,
    is_grad_enabled,
    no_grad,
    topological_sort,
)
from minidiff.backend import (
    Backend,
    BackendKind,
    NumpyBackend,
    PythonBackend,
    ThreadedBackend,
    get_backend,
    make_backend,
    set_backend,
    use_backend,
)
from minidiff.errors import (
    GraphConsistencyError,
    MinidiffError,
    MissingContextError,
    NoGradientError,
    ShapeMismatchError,
)
from minidiff.loss import L1Loss, Loss, MSELoss
from minidiff.module import FieldKind, Module, Parameter
from minidiff.node import Node
from minidiff.optim import SGD, Optim
from minidiff.storage import TensorStorage
from minidiff.tensor import (
    Tensor,
    from_numpy,
    full,
    grad_check,
    matmul,
    ones,
    rand,
    tensor,
    zeros,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    "Backend",
    "BackendKind",
    "Context",
    "FieldKind",
    "Function",
    "GraphConsistencyError",
    "History",
    "L1Loss",
    "Loss",
    "MSELoss",
    "MinidiffError",
    "MissingContextError",
    "Module",
    "NoGradientError",
    "Node",
    "NumpyBackend",
    "Optim",
    "Parameter",
    "PythonBackend",
    "SGD",
    "ShapeMismatchError",
    "Tensor",
    "TensorStorage",
    "ThreadedBackend",
    "backpropagate",
    "central_difference",
    "enable_grad",
    "from_numpy",
    "full",
    "get_backend",
    "grad_check",
    "is_grad_enabled",
    "make_backend",
    "matmul",
    "no_grad",
    "ones",
    "rand",
    "set_backend",
    "tensor",
    "topological_sort",
    "use_backend",
    "zeros",
]
