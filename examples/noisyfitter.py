# Given an equation of a line (y = mx + c) and random inputs from (-5,5) the linear model, built and trained using minidiff, will try and fit to the training data.
# There is random noise added to the resulting y value of the equation. This is to test the model's ability to adjust its weights for a line of best fit.


import random

from tqdm import tqdm

from minidiff import MSELoss, Module, Node, SGD
from minidiff.tensorutils import LossPlotter


class LinearModel(Module):
    def __init__(self):
        super().__init__()
        self.add_parameter("m", Node(0.6))
        self.add_parameter("c", Node(0.7))

    def forward(self, input_node):
        return self.m.value * input_node + self.c.value


if __name__ == "__main__":
    random.seed(42)

    target_m = 2.0
    target_c = 10.0

    X_train = [Node(random.uniform(-5, 5), requires_grad=False) for _ in range(10)]

    y_train = [
        Node(x.value * target_m + target_c + random.uniform(-1, 1), requires_grad=False)
        for x in X_train
    ]

    linear_model = LinearModel()
    loss_fn = MSELoss()
    optim = SGD(linear_model.parameters(), lr=1e-2)

    loss_plot = LossPlotter()

    for _ in tqdm(range(100), desc=f"Training {type(linear_model).__name__}-minidiff"):
        for X, y in zip(X_train, y_train):
            linear_model.zero_grad()
            output = linear_model(X)
            loss = loss_fn(output, y)
            loss.backward()
            optim.step()
            loss_plot.register_datapoint(loss, f"{type(linear_model).__name__}-minidiff")

    print(linear_model)
    print(f"m = {linear_model.m.value.item():.3f}, c = {linear_model.c.value.item():.3f}")
    loss_plot.plot()
