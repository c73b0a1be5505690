from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Optional

import torch

from .core import GraphModule
from .graph import ModuleNode


@dataclass
class StatRecord:
    name: str
    l2: float
    max_abs: float
    mean_abs: float
    zero_frac: float
    count: int = 0


@dataclass
class GradientSummary:
    """Gradient statistics split into parameter gradients and node output gradients."""

    modules: List[StatRecord]
    nodes: List[StatRecord]

    def to_text(self, top_k: Optional[int] = None) -> str:
        blocks: List[str] = []
        for title, rows in (("Module", self.modules), ("Node", self.nodes)):
            if not rows:
                continue
            shown = rows if top_k is None else rows[:top_k]
            blocks.append(f"{title} gradients:")
            blocks.extend(_format_row(rec) for rec in shown)
            if len(shown) < len(rows):
                blocks.append(f"  ... {len(rows) - len(shown)} more")
        return "\n".join(blocks)


def _format_row(rec: StatRecord) -> str:
    return (
        f"  {rec.name:<28} n={rec.count:<3d} l2={rec.l2:.3e} "
        f"max={rec.max_abs:.3e} mean={rec.mean_abs:.3e} zeros={rec.zero_frac:6.1%}"
    )


def _tensors(value: Any) -> Iterator[torch.Tensor]:
    """Tensors inside a (possibly tuple-valued) gradient payload."""
    if isinstance(value, (tuple, list)):
        for part in value:
            yield from _tensors(part)
    elif torch.is_tensor(value) and value.numel() > 0:
        yield value.detach()


@dataclass
class _RunningStats:
    count: int = 0
    l2_total: float = 0.0
    abs_total: float = 0.0
    max_abs: float = 0.0
    zeros: int = 0
    elements: int = 0

    def fold(self, value: Any) -> None:
        for tensor in _tensors(value):
            magnitude = tensor.abs()
            self.count += 1
            self.l2_total += float(torch.linalg.vector_norm(tensor))
            self.abs_total += float(magnitude.sum())
            self.max_abs = max(self.max_abs, float(magnitude.max()))
            self.zeros += int(torch.count_nonzero(magnitude <= 1e-9))
            self.elements += tensor.numel()

    def record(self, name: str) -> StatRecord:
        if self.count == 0:
            return StatRecord(name=name, l2=0.0, max_abs=0.0, mean_abs=0.0, zero_frac=0.0)
        return StatRecord(
            name=name,
            l2=self.l2_total / self.count,
            max_abs=self.max_abs,
            mean_abs=self.abs_total / self.elements,
            zero_frac=self.zeros / self.elements,
            count=self.count,
        )


def _ranked(stats: Dict[str, _RunningStats], top_k: Optional[int]) -> List[StatRecord]:
    records = sorted(
        (acc.record(name) for name, acc in stats.items()),
        key=lambda rec: rec.l2,
        reverse=True,
    )
    return records if top_k is None else records[:top_k]


def summarize_gradients(graph: GraphModule, *, top_k: Optional[int] = None) -> GradientSummary:
    """
    Statistics of the accumulated parameter gradients of every module node and
    of the output gradients each node received in the latest backward pass.
    """
    module_stats: Dict[str, _RunningStats] = {}
    for node in graph.module_nodes():
        found = node.module.parameters()
        if found:
            module_stats.setdefault(node.label(), _RunningStats()).fold(found[1])

    node_stats: Dict[str, _RunningStats] = {}
    received = graph.node_gradients()
    for node in graph.backward_order:
        if node.id in received:
            node_stats.setdefault(node.label(), _RunningStats()).fold(received[node.id])

    return GradientSummary(modules=_ranked(module_stats, top_k), nodes=_ranked(node_stats, top_k))


@dataclass
class GradientWatcher:
    """
    Folds the output gradient of every module node into running statistics
    after each backward pass of ``graph``, until ``pop_summary`` drains them.
    """

    graph: GraphModule
    passes: int = 0
    _stats: Dict[str, _RunningStats] = field(default_factory=dict, repr=False)

    def __post_init__(self) -> None:
        self._labels = {
            node.id: node.label() for node in self.graph.backward_order if isinstance(node, ModuleNode)
        }
        self.graph.register_event_listener(self._on_event)

    def close(self) -> None:
        self.graph.unregister_event_listener(self._on_event)

    def _on_event(self, payload: Dict[str, Any]) -> None:
        if payload.get("event") != "pass_end" or payload.get("pass") != "backward":
            return
        self.passes += 1
        for node_id, grad in self.graph.node_gradients().items():
            if node_id in self._labels:
                self._stats.setdefault(self._labels[node_id], _RunningStats()).fold(grad)

    def reset(self) -> None:
        self._stats.clear()
        self.passes = 0

    def pop_summary(self, *, top_k: Optional[int] = None) -> Optional[GradientSummary]:
        if not self._stats:
            return None
        nodes = _ranked(self._stats, top_k)
        self._stats.clear()
        return GradientSummary(modules=[], nodes=nodes)
