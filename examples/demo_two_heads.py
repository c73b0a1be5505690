"""
Two inputs, two heads: a shared sum feeds a sigmoid and a tanh output.

Runs one forward/backward/accumulate cycle with verbose tracing and prints the
forward graph in DOT syntax.
"""

from __future__ import annotations

import os
import sys

import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import modgraph
from modgraph import protos as P


def build_graph() -> modgraph.GraphModule:
    x1 = P.Linear(20, 20)(name="x1")
    x2 = P.Linear(10, 10)(name="x2")
    m0 = P.Linear(20, 1)(P.Tanh()(x1))
    m1 = P.Linear(10, 1)(P.Tanh()(x2))
    madd = P.CAddTable()(m0, m1, name="sum")
    m2 = P.Sigmoid()(madd, name="prob")
    m3 = P.Tanh()(madd, name="score")
    return modgraph.GraphModule(
        [x1, x2],
        [m2, m3],
        config=modgraph.GraphConfig(verbose=True, name="two_heads"),
    )


def main() -> None:
    torch.manual_seed(0)
    gm = build_graph()
    print(gm)

    x, y = torch.rand(20), torch.rand(10)
    prob, score = gm.forward([x, y])
    print(f"prob={prob.item():.4f} score={score.item():.4f}")

    grads = [torch.ones(1), torch.ones(1)]
    gm.zero_grad_parameters()
    gx, gy = gm.backward([x, y], grads)
    gm.accumulate_gradients([x, y], grads)
    print(f"|dx|={gx.norm():.4f} |dy|={gy.norm():.4f}")

    print(modgraph.summarize_gradients(gm, top_k=4).to_text())
    print(gm.forward_graph.to_dot("two_heads"))


if __name__ == "__main__":
    main()
