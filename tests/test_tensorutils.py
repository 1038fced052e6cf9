import matplotlib.pyplot as plt

from minidiff import Node, tensor
from minidiff.tensorutils import LossPlotter, to_networkx, visualise_graph


def test_to_networkx_follows_history():
    m = Node(0.7, name="m")
    x = Node(2.0, requires_grad=False, name="x")
    c = Node(0.3, name="c")
    out = m * x + c

    G = to_networkx(out)
    assert set(G.nodes) == {m.unique_id, x.unique_id, c.unique_id, out.unique_id} | {
        p.unique_id for p in out.parents
    }
    product = [p for p in out.parents if p is not c][0]
    assert G.has_edge(m.unique_id, product.unique_id)
    assert G.has_edge(x.unique_id, product.unique_id)
    assert G.edges[product.unique_id, out.unique_id]["op"] == "Add"
    assert G.nodes[x.unique_id]["kind"] == "constant"
    assert G.nodes[m.unique_id]["kind"] == "leaf"
    assert G.nodes[out.unique_id]["fn"] == "Add"


def test_to_networkx_on_tensors():
    a = tensor([[1.0, 2.0]])
    b = (a * 2.0).sum()
    G = to_networkx(b)
    assert G.nodes[a.unique_id]["kind"] == "leaf"
    assert G.out_degree(a.unique_id) == 1


def test_visualise_graph_returns_figure():
    m = Node(0.5)
    loss = (m * 3.0).sigmoid()
    loss.backward(retain_graph=True)
    fig = visualise_graph(loss, show=False)
    assert fig is not None
    plt.close(fig)


def test_loss_plotter_records_datapoints():
    plotter = LossPlotter()
    plotter.register_datapoint(Node(2.0), "train")
    plotter.register_datapoint(1.0, "train")
    plotter.register_datapoint(3.0, "test", x=10)
    assert plotter.labels == ["train", "test"]
    assert plotter.datapoints["train"] == [2.0, 1.0]
    assert plotter.xs["train"] == [0, 1]
    assert plotter.xs["test"] == [10]

    fig = plotter.plot(show=False)
    assert len(fig.axes[0].lines) == 2
    plt.close(fig)
