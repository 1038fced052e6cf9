# Draws the computation graph of a small linear model with its values and gradients

from minidiff import MSELoss, Node
from minidiff.tensorutils import visualise_graph

if __name__ == "__main__":
    m = Node(0.7, name="m")
    c = Node(0.3, name="c")
    x = Node(2.0, requires_grad=False, name="x")
    target = Node(3.0, requires_grad=False, name="target")

    output = m * x + c
    loss = MSELoss()(output, target)
    loss.backward(retain_graph=True)

    visualise_graph(loss)
