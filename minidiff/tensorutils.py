from __future__ import annotations

from typing import Any, Optional

import matplotlib.pyplot as plt
import networkx as nx

from minidiff.autodiff import Variable, topological_sort


class LossPlotter:
    """
    Records loss values per label and plots them as curves.
    """

    def __init__(self) -> None:
        self.datapoints: dict[str, list[float]] = {}
        self.labels: list[str] = []
        self.xs: dict[str, list[float]] = {}

    def register_datapoint(self, datapoint: Any, label: str, x: Optional[float] = None) -> None:
        if label not in self.labels:
            self.labels.append(label)
            self.datapoints[label] = []
            self.xs[label] = []

        if hasattr(datapoint, "item"):
            datapoint = datapoint.item()
        self.datapoints[label].append(float(datapoint))

        if x is not None:
            self.xs[label].append(x)
        else:
            self.xs[label].append(len(self.datapoints[label]) - 1)

    def plot(self, show: bool = True):
        """
        Draws one curve per label.

        Args:
            show (bool): Call `matplotlib.pyplot.show` and close the figure. When `False` the figure is returned open.

        Returns:
            Optional[matplotlib.figure.Figure]: The figure when `show` is `False`.
        """
        fig, ax = plt.subplots()
        for label in self.labels:
            ax.plot(self.xs[label], self.datapoints[label], label=label)
        ax.set_xlabel("Epoch")
        ax.set_ylabel("Loss")
        ax.legend()
        if not show:
            return fig
        plt.show()
        plt.close(fig)
        return None


def _describe(var: Any) -> str:
    value = var.item() if getattr(var, "size", 1) == 1 else f"shape={var.shape}"
    if isinstance(value, float):
        value = round(value, 2)
    if var.has_derivative and getattr(var.derivative, "size", 1) == 1:
        grad = var.derivative if isinstance(var.derivative, float) else var.derivative.item()
        return f"{var.name}\nVal: {value}\nGrad: {round(grad, 2)}"
    return f"{var.name}\nVal: {value}"


def to_networkx(root: Variable) -> nx.DiGraph:
    """
    Builds a directed graph of the history leading to `root`.

    Nodes are keyed by `unique_id` and carry `label`, `kind` (`"leaf"`, `"constant"` or
    `"op"`) and `fn` (the producing Function's name, `None` for leaves). Edges point from
    each input to the value computed from it and carry the Function name as `op`.
    """
    G = nx.DiGraph()
    for var in topological_sort(root):
        fn = var.history.last_fn.__name__ if var.history is not None and var.history.last_fn else None
        G.add_node(
            var.unique_id,
            label=_describe(var),
            kind="op" if fn is not None else "leaf",
            fn=fn,
        )
        for parent in var.parents:
            if parent.unique_id not in G:
                G.add_node(
                    parent.unique_id,
                    label=_describe(parent),
                    kind="constant" if parent.is_constant() else "leaf",
                    fn=None,
                )
            G.add_edge(parent.unique_id, var.unique_id, op=fn)
    return G


def visualise_graph(root: Variable, show: bool = True):
    """
    Draws the computation graph of `root` with matplotlib.

    Leaves are pastel blue, constants pastel green and computed values salmon.
    """
    G = to_networkx(root)
    colours = {"leaf": "#00B4D9", "constant": "#C1E1C1", "op": "#FFB6C1"}
    pos = nx.spring_layout(G, seed=0)
    fig, ax = plt.subplots()
    nx.draw(
        G,
        pos,
        ax=ax,
        labels=nx.get_node_attributes(G, "label"),
        with_labels=True,
        node_size=800,
        node_color=[colours[G.nodes[n]["kind"]] for n in G],
        font_size=6,
    )
    nx.draw_networkx_edge_labels(G, pos, ax=ax, edge_labels=nx.get_edge_attributes(G, "op"), font_size=5)
    if not show:
        return fig
    plt.show()
    plt.close(fig)
    return None
