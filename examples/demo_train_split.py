"""
Train a split-and-join graph with plain SGD.

A [10, 2] input is split into its two columns, each column goes through its
own pair of Linear layers, and the results are joined into a 3-vector that is
regressed onto the first three entries of the first column.
"""

from __future__ import annotations

import os
import sys

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import modgraph
from modgraph import protos as P


TRAINING = modgraph.TrainLoopConfig(
    epochs=25,
    lr=0.02,
    log_every=1,
    grad_clip=5.0,
    shuffle=False,
)


def build_graph() -> modgraph.GraphModule:
    x = modgraph.Input("x")
    split = P.SplitTable(1)(x, name="split")
    left = P.Linear(3, 2)(P.Linear(10, 3)(P.SelectTable(0)(split)))
    right = P.Linear(7, 1)(P.Linear(10, 7)(P.SelectTable(1)(split)))
    joined = P.JoinTable(0)(left, right, name="joined")
    return modgraph.GraphModule([x], [joined], config=modgraph.GraphConfig(name="split"))


def main() -> None:
    torch.manual_seed(7)
    model = build_graph()
    x = torch.ones(10, 2)
    target = x[:3, 0].clone()

    watcher = modgraph.GradientWatcher(model)
    trainer = modgraph.Trainer(
        model,
        P.MSECriterion(),
        [(x, target)],
        TRAINING,
        grad_monitor=watcher,
        grad_summary_top_k=3,
    )
    history = trainer.run(seed=7)
    watcher.close()

    print(f"loss {history[0]:.4f} -> {history[-1]:.4f}")
    print(f"prediction: {model.forward(x).tolist()}")


if __name__ == "__main__":
    main()
