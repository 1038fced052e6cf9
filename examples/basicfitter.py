# Fits a polynomial (ax^2 + bx + c) to a single value and optimised using SGD() and using minidiff.MSELoss as cost function
# This example does not use the minidiff.Module class but uses minidiff.Node to construct a polynomial

from minidiff import MSELoss, Node, Parameter, SGD
from minidiff.tensorutils import LossPlotter

if __name__ == "__main__":
    target = Node(10.0, requires_grad=False)
    x = Node(0.5, requires_grad=False)
    w_0 = Parameter(Node(0.9), "w_0")
    w_1 = Parameter(Node(0.6), "w_1")
    w_2 = Parameter(Node(0.4), "w_2")

    loss_fn = MSELoss()
    loss_plot = LossPlotter()
    optim = SGD([w_0, w_1, w_2], lr=0.1)

    for gen in range(10):
        optim.zero_grad()
        polynomial_result = w_0.value + w_1.value * x + w_2.value * (x**2)  # predictor function
        loss = loss_fn(polynomial_result, target)
        loss.backward()

        print(f"generation {gen}: {loss.value:2f}")

        optim.step()
        loss_plot.register_datapoint(loss.value, "ax^2+bx+c (minidiff)")
    loss_plot.plot()
