# modgraph/__init__.py

from .errors import (
    GraphError,
    MalformedGraphError,
    CycleDetectedError,
    ArityMismatchError,
    UnroutableNodeError,
    MissingInputError,
)
from .graph import (
    Edge,
    Node,
    ModuleNode,
    PassThroughNode,
    DispatchNode,
    SourceNode,
    SinkNode,
    Graph,
    Input,
)
from .core import (
    Module,
    GraphConfig,
    GraphModule,
    ForwardEvaluator,
    BackwardEvaluator,
)
from .record import record, Trace, TraversalEvent
from .training import train_graph, Trainer, TrainLoopConfig
from .diagnostics import GradientSummary, GradientWatcher, summarize_gradients
from . import protos

__all__ = [
    "GraphError",
    "MalformedGraphError",
    "CycleDetectedError",
    "ArityMismatchError",
    "UnroutableNodeError",
    "MissingInputError",
    "Edge",
    "Node",
    "ModuleNode",
    "PassThroughNode",
    "DispatchNode",
    "SourceNode",
    "SinkNode",
    "Graph",
    "Input",
    "Module",
    "GraphConfig",
    "GraphModule",
    "ForwardEvaluator",
    "BackwardEvaluator",
    "record",
    "Trace",
    "TraversalEvent",
    "train_graph",
    "Trainer",
    "TrainLoopConfig",
    "GradientSummary",
    "GradientWatcher",
    "summarize_gradients",
    "protos",
]
