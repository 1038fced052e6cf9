from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, Iterator, NamedTuple, Union

import numpy as np

from minidiff.node import Node
from minidiff.tensor import Tensor

logger = logging.getLogger(__name__)

Value = Union[Node, Tensor]


class Parameter:
    """
    `minidiff.module.Parameter` holds a trainable leaf value of a `Module`.

    Attributes
    ----------
    value (Union[minidiff.Node, minidiff.Tensor]): The leaf currently held. Replaced by `update`.
    name (Optional[str]): Dotted name assigned when the parameter is registered on a module.
    """

    def __init__(self, value: Value, name: str | None = None) -> None:
        if not isinstance(value, (Node, Tensor)):
            raise TypeError(f"Parameters wrap a Node or a Tensor, not {type(value).__name__}")
        if not value.is_leaf():
            raise ValueError("Parameters must wrap a leaf value without history")
        self.value = value
        self.value.requires_grad = True
        self.name = name
        if name is not None:
            self.value.name = name

    def update(self, new_value: Any) -> None:
        """
        Replaces the held value with a fresh leaf.

        The old leaf keeps any graph that was built from it; values computed after the
        update use the new one.

        Args:
            new_value (Union[float, numpy.ndarray, list, minidiff.Node, minidiff.Tensor]): The new numbers.
        """
        if isinstance(self.value, Node):
            number = new_value.item() if isinstance(new_value, (Node, Tensor)) else float(new_value)
            fresh: Value = Node(number)
        else:
            if isinstance(new_value, Tensor):
                new_value = new_value.to_numpy()
            array = np.asarray(new_value, dtype=np.float64)
            if array.shape != self.value.shape:
                array = np.broadcast_to(array, self.value.shape)
            fresh = Tensor(array)
        if self.name is not None:
            fresh.name = self.name
        self.value = fresh

    @property
    def derivative(self) -> Any:
        return self.value.derivative

    @property
    def has_derivative(self) -> bool:
        return self.value.has_derivative

    def zero_grad(self) -> None:
        self.value.zero_grad()

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.value!r})"


class FieldKind(Enum):
    PARAMETER = "parameter"
    SUBMODULE = "submodule"
    PLAIN_DATA = "plain_data"


class Field(NamedTuple):
    kind: FieldKind
    value: Any


class Module(ABC):
    """
    `minidiff.module.Module` is the base class for a tree of trainable components.

    Fields are declared explicitly with `add_parameter`, `add_module` and `add_data` and kept
    in registration order; reading an attribute with a registered name returns the field.

    Attributes
    ----------
    training (bool): Whether the module is in training mode. Set through `train` and `eval`.
    """

    def __init__(self) -> None:
        self.__dict__["_fields"] = {}
        self.__dict__["training"] = True

    def __getattr__(self, name: str) -> Any:
        fields = self.__dict__.get("_fields", {})
        if name in fields:
            return fields[name].value
        raise AttributeError(f"{type(self).__name__} has no attribute {name!r}")

    def _register(self, name: str, kind: FieldKind, value: Any) -> None:
        if name in self.__dict__:
            raise ValueError(f"{name!r} is already a plain attribute of {type(self).__name__}")
        previous = self._fields.get(name)
        if previous is not None and previous.kind is not kind:
            raise ValueError(
                f"{name!r} is already registered as {previous.kind.value}, cannot re-register as {kind.value}"
            )
        self._fields[name] = Field(kind, value)

    def add_parameter(self, name: str, value: Union[Value, Parameter]) -> Parameter:
        """
        Registers a trainable leaf under `name`.

        Args:
            name (str): Attribute name of the parameter.
            value (Union[minidiff.Node, minidiff.Tensor, Parameter]): The leaf, wrapped in a `Parameter` if needed.

        Returns:
            Parameter: The registered parameter.
        """
        param = value if isinstance(value, Parameter) else Parameter(value, name)
        self._register(name, FieldKind.PARAMETER, param)
        return param

    def add_module(self, name: str, module: Module) -> Module:
        if not isinstance(module, Module):
            raise TypeError(f"Submodules must be Module instances, not {type(module).__name__}")
        self._register(name, FieldKind.SUBMODULE, module)
        return module

    def add_data(self, name: str, value: Any) -> Any:
        self._register(name, FieldKind.PLAIN_DATA, value)
        return value

    def children(self) -> list[Module]:
        return [f.value for f in self._fields.values() if f.kind is FieldKind.SUBMODULE]

    def named_children(self) -> list[tuple[str, Module]]:
        return [(n, f.value) for n, f in self._fields.items() if f.kind is FieldKind.SUBMODULE]

    def modules(self) -> list[Module]:
        """
        Returns this module and all of its descendants, depth first in registration order.
        """
        found: list[Module] = [self]
        for child in self.children():
            found.extend(child.modules())
        return found

    def named_parameters(self) -> list[tuple[str, Parameter]]:
        """
        Collects the parameters of this module and its descendants.

        Returns:
            list[tuple[str, Parameter]]: Pairs of dotted name (e.g. `"layer1.weights"`) and parameter,
                in registration order.
        """
        named: list[tuple[str, Parameter]] = []
        for name, f in self._fields.items():
            if f.kind is FieldKind.PARAMETER:
                named.append((name, f.value))
            elif f.kind is FieldKind.SUBMODULE:
                named.extend((f"{name}.{sub}", p) for sub, p in f.value.named_parameters())
        return named

    def parameters(self) -> list[Parameter]:
        return [p for _, p in self.named_parameters()]

    def train(self) -> None:
        """
        Puts this module and every descendant in training mode.
        """
        for m in self.modules():
            m.__dict__["training"] = True

    def eval(self) -> None:
        """
        Puts this module and every descendant in evaluation mode.
        """
        for m in self.modules():
            m.__dict__["training"] = False

    def zero_grad(self) -> None:
        """
        Sets the gradients of every parameter in the tree to zero.
        """
        params = self.parameters()
        for p in params:
            p.zero_grad()
        logger.debug("Zeroed gradients of %d parameters", len(params))

    def _iter_lines(self, indent: int = 0) -> Iterator[str]:
        pad = "  " * indent
        yield f"{pad}{type(self).__name__}("
        for name, f in self._fields.items():
            if f.kind is FieldKind.SUBMODULE:
                yield f"{pad}  {name}:"
                yield from f.value._iter_lines(indent + 2)
            else:
                yield f"{pad}  {name}: {f.kind.value}"
        yield f"{pad})"

    @abstractmethod
    def forward(self, *args: Any, **kwargs: Any) -> Any:
        pass

    def __call__(self, *args: Any, **kwargs: Any) -> Any:
        return self.forward(*args, **kwargs)

    def __repr__(self) -> str:
        return "\n".join(self._iter_lines())
