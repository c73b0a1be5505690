# modgraph/core.py

from __future__ import annotations

import functools
import operator
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import torch

from .errors import ArityMismatchError, MalformedGraphError, MissingInputError, UnroutableNodeError
from .graph import (
    Edge,
    Graph,
    ModuleNode,
    Node,
    PassThroughNode,
    SinkNode,
    SourceNode,
)

EventListener = Callable[[Dict[str, Any]], None]
ParamLists = Tuple[List[torch.Tensor], List[torch.Tensor]]


class Module:
    """
    Differentiable computation unit with explicit gradient operations.

    Responsibilities:
      - update_output(input): compute and remember the output.
      - update_grad_input(input, grad_output): gradient w.r.t. the input,
        shaped like ``input`` (single value or tuple).
      - acc_grad_parameters(input, grad_output, scale): add into parameter
        gradient buffers.
      - parameters(): (params, grads) or None when there is no learnable state.

    Calling a module on nodes wires it into a graph and returns its node.
    """

    def __init__(self) -> None:
        self.output: Any = None
        self.grad_input: Any = None

    def __call__(self, *inputs: Node, name: Optional[str] = None) -> ModuleNode:
        if len(inputs) == 1 and isinstance(inputs[0], (list, tuple)):
            inputs = tuple(inputs[0])
        node = ModuleNode(self, name=name)
        for upstream in inputs:
            if not isinstance(upstream, Node):
                raise TypeError(f"Expected graph nodes as inputs, got {type(upstream).__name__}.")
            node.add(upstream)
        return node

    def update_output(self, input: Any) -> Any:
        raise NotImplementedError

    def update_grad_input(self, input: Any, grad_output: Any) -> Any:
        raise NotImplementedError

    def acc_grad_parameters(self, input: Any, grad_output: Any, scale: float = 1.0) -> None:
        return None

    def parameters(self) -> Optional[ParamLists]:
        return None

    def zero_grad_parameters(self) -> None:
        params = self.parameters()
        if not params:
            return
        for grad in _distinct(params[1]):
            grad.zero_()

    def update_parameters(self, lr: float) -> None:
        params = self.parameters()
        if not params:
            return
        seen = set()
        for param, grad in zip(*params):
            if id(param) in seen:
                continue
            seen.add(id(param))
            param.add_(grad, alpha=-lr)

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


def _distinct(tensors: Sequence[torch.Tensor]) -> List[torch.Tensor]:
    seen = set()
    out = []
    for tensor in tensors:
        if id(tensor) not in seen:
            seen.add(id(tensor))
            out.append(tensor)
    return out


@dataclass(frozen=True)
class GraphConfig:
    """
    Construction options for a GraphModule.

    verbose: print every visited node (via an event listener).
    name: label used in diagnostics and printed traces.
    """

    verbose: bool = False
    name: Optional[str] = None


def _sum_contributions(values: Sequence[Any]) -> Any:
    """Add gradient contributions from several consumers; tuples element-wise."""
    if len(values) == 1:
        return values[0]
    if isinstance(values[0], (tuple, list)):
        return tuple(_sum_contributions(parts) for parts in zip(*values))
    return functools.reduce(operator.add, values)


def _print_event(payload: Dict[str, Any]) -> None:
    kind = payload.get("event")
    tag = payload.get("graph") or "modgraph"
    if kind == "node_visit":
        print(f"[{tag}] {payload['pass']} V : {payload['node']}")
    elif kind == "node_skipped":
        print(f"[{tag}] {payload['pass']} skipping {payload['node']}: {payload['error']}")
    elif kind == "pass_start":
        print(f"[{tag}] {payload['pass']}")


class _ForwardContext:
    """Per-call forward buffers keyed by node id."""

    def __init__(self, inputs: Tuple[Any, ...]) -> None:
        self.inputs = inputs
        # node id -> slot -> delivered value
        self.buffers: Dict[int, Dict[int, Any]] = {}
        # node id -> assembled input passed to the node
        self.assembled: Dict[int, Any] = {}
        self.output: Any = None


class _BackwardContext:
    """Per-call backward buffers keyed by node id."""

    def __init__(self, forward: _ForwardContext, grad_outputs: Tuple[Any, ...]) -> None:
        self.forward = forward
        self.grad_outputs = grad_outputs
        # node id -> [(sender id, gradient)] in arrival order
        self.buffers: Dict[int, List[Tuple[int, Any]]] = {}
        # node id -> summed gradient w.r.t. the node's output
        self.summed: Dict[int, Any] = {}
        self.grad_input: Any = None

    def seeded_by(self, forward: Optional[_ForwardContext], grad_outputs: Tuple[Any, ...]) -> bool:
        return (
            forward is self.forward
            and len(grad_outputs) == len(self.grad_outputs)
            and all(a is b for a, b in zip(grad_outputs, self.grad_outputs))
        )


class _Evaluator:
    pass_name = ""

    def __init__(
        self,
        graph: Graph,
        order: List[Node],
        arity: Dict[int, int],
        emit: EventListener,
    ) -> None:
        self.graph = graph
        self.order = order
        self.arity = arity
        self.emit = emit

    def _visit(self, node: Node, index: int) -> None:
        self.emit(
            {
                "event": "node_visit",
                "pass": self.pass_name,
                "node": node.label(),
                "node_id": node.id,
                "kind": node.kind,
                "index": index,
            }
        )

    def _skip(self, node: Node, index: int, reason: str) -> None:
        self.emit(
            {
                "event": "node_skipped",
                "pass": self.pass_name,
                "node": node.label(),
                "node_id": node.id,
                "kind": node.kind,
                "index": index,
                "error": UnroutableNodeError(f"{node.label()}: {reason}"),
            }
        )


class ForwardEvaluator(_Evaluator):
    """Walks the forward order, assembling inputs and dispatching outputs."""

    pass_name = "forward"

    def run(self, inputs: Tuple[Any, ...]) -> _ForwardContext:
        ctx = _ForwardContext(inputs)
        for index, node in enumerate(self.order):
            if isinstance(node, SourceNode):
                for edge in self.graph.children(node):
                    self._deliver(ctx, edge, inputs[node.position(edge)])
            elif isinstance(node, SinkNode):
                ctx.output = self._assemble(ctx, node)
            elif isinstance(node, ModuleNode):
                x = self._assemble(ctx, node)
                ctx.assembled[node.id] = x
                out = node.module.update_output(x)
                if out is None:
                    self._skip(node, index, "module produced no output")
                    continue
                self._propagate(ctx, node, out)
            elif isinstance(node, PassThroughNode) and ctx.buffers.get(node.id):
                x = self._assemble(ctx, node)
                ctx.assembled[node.id] = x
                self._propagate(ctx, node, x)
            else:
                self._skip(node, index, "no module and no buffered input")
                continue
            self._visit(node, index)
        return ctx

    def _deliver(self, ctx: _ForwardContext, edge: Edge, value: Any) -> None:
        ctx.buffers.setdefault(edge.node.id, {})[edge.slot] = value

    def _propagate(self, ctx: _ForwardContext, node: Node, value: Any) -> None:
        for edge in self.graph.children(node):
            self._deliver(ctx, edge, value)

    def _assemble(self, ctx: _ForwardContext, node: Node) -> Any:
        buffer = ctx.buffers.get(node.id, {})
        arity = self.arity[node.id]
        missing = [slot for slot in range(arity) if slot not in buffer]
        if missing:
            raise MissingInputError(f"{node.label()} is missing input slot(s) {missing}.")
        if arity == 1:
            return buffer[0]
        return tuple(buffer[slot] for slot in range(arity))


class BackwardEvaluator(_Evaluator):
    """Walks the backward order, summing fan-out gradients and routing them by slot."""

    pass_name = "backward"

    def __init__(
        self,
        graph: Graph,
        order: List[Node],
        arity: Dict[int, int],
        emit: EventListener,
        source: SourceNode,
    ) -> None:
        super().__init__(graph, order, arity, emit)
        self.source = source

    def run(self, forward: _ForwardContext, grad_outputs: Tuple[Any, ...]) -> _BackwardContext:
        ctx = _BackwardContext(forward, grad_outputs)
        for index, node in enumerate(self.order):
            if isinstance(node, SourceNode):
                ctx.grad_input = self._collect_source(ctx, node)
            elif isinstance(node, SinkNode):
                for edge in self.graph.children(node):
                    self._contribute(ctx, edge.node, node, grad_outputs[node.position(edge)])
            elif isinstance(node, ModuleNode):
                grad = self._summed(ctx, node)
                if node.id not in forward.assembled:
                    raise MissingInputError(f"{node.label()} has no recorded forward input.")
                gi = node.module.update_grad_input(forward.assembled[node.id], grad)
                if gi is None:
                    self._skip(node, index, "module produced no input gradient")
                    continue
                self._route(ctx, node, gi)
            elif isinstance(node, PassThroughNode) and ctx.buffers.get(node.id):
                self._route(ctx, node, self._summed(ctx, node))
            else:
                self._skip(node, index, "no module and no buffered gradient")
                continue
            self._visit(node, index)
        return ctx

    def _contribute(self, ctx: _BackwardContext, target: Node, sender: Node, grad: Any) -> None:
        if grad is None:
            return
        ctx.buffers.setdefault(target.id, []).append((sender.id, grad))

    def _summed(self, ctx: _BackwardContext, node: Node) -> Any:
        received = ctx.buffers.get(node.id)
        if not received:
            raise MissingInputError(f"{node.label()} received no gradient.")
        grad = _sum_contributions([g for _, g in received])
        ctx.summed[node.id] = grad
        return grad

    def _route(self, ctx: _BackwardContext, node: Node, grad_input: Any) -> None:
        multi = self.arity[node.id] > 1
        for edge in self.graph.children(node):
            grad = grad_input[edge.slot] if multi else grad_input
            self._contribute(ctx, edge.node, node, grad)

    def _collect_source(self, ctx: _BackwardContext, node: SourceNode) -> Any:
        by_position: Dict[int, Any] = {}
        for sender_id, grad in ctx.buffers.get(node.id, []):
            by_position[node.positions[sender_id]] = grad
        missing = [i for i in range(len(node.targets)) if i not in by_position]
        if missing:
            raise MissingInputError(f"No gradient reached graph input(s) {missing}.")
        if len(node.targets) == 1:
            return by_position[0]
        return tuple(by_position[i] for i in range(len(node.targets)))


class GraphModule(Module):
    """
    Module built from a declarative wiring of module nodes.

    Responsibilities:
      - Build the backward graph (as declared, consumers pointing at
        producers) and the forward graph (its reversal) between a synthetic
        source and sink.
      - Precompute both topological orders once.
      - Run forward, backward and parameter-gradient accumulation passes.
      - Aggregate the parameters of every wrapped module.
    """

    def __init__(
        self,
        inputs: Sequence[Node],
        outputs: Sequence[Node],
        config: Optional[GraphConfig] = None,
    ) -> None:
        super().__init__()
        self.config = config or GraphConfig()
        self._listeners: List[EventListener] = []
        if self.config.verbose:
            self.register_event_listener(_print_event)

        self.inputs: List[Node] = list(inputs)
        self.outputs: List[Node] = list(outputs)
        self._check_declared()

        self.sink = SinkNode()
        self.source = SourceNode(self.inputs)
        sink_edges = [Edge(node, i) for i, node in enumerate(self.outputs)]
        entry_slots = {node.id: len(node.children) for node in self.inputs}

        def children_of(node: Node) -> List[Edge]:
            if node is self.sink:
                return sink_edges
            edges = list(node.children)
            if node.id in entry_slots:
                edges.append(Edge(self.source, entry_slots[node.id]))
            return edges

        self.backward_graph = Graph.from_roots([self.sink], children_of)
        unreachable = [node.label() for node in self.inputs if node not in self.backward_graph]
        if unreachable:
            raise MalformedGraphError(f"Inputs {unreachable} are not connected to any output.")
        self._check_slots()

        self.forward_graph = self.backward_graph.reverse()
        roots = self.forward_graph.roots()
        if len(roots) != 1 or roots[0] is not self.source:
            dangling = [node.label() for node in roots if node is not self.source]
            raise MalformedGraphError(
                f"Forward graph must have the input source as its only root; found {dangling}. "
                "Declare these nodes as inputs or connect them to one."
            )

        self.forward_order: List[Node] = self.forward_graph.topsort()
        self.backward_order: List[Node] = self.backward_graph.topsort()
        # number of forward inputs per node: single value if 1, else a tuple
        self.arity: Dict[int, int] = {
            node.id: len(self.backward_graph.children(node)) for node in self.backward_graph
        }

        self._forward_eval = ForwardEvaluator(self.forward_graph, self.forward_order, self.arity, self._emit)
        self._backward_eval = BackwardEvaluator(
            self.backward_graph, self.backward_order, self.arity, self._emit, self.source
        )
        self._last_forward: Optional[_ForwardContext] = None
        self._last_backward: Optional[_BackwardContext] = None

    @classmethod
    def build(
        cls,
        inputs: Sequence[Node],
        outputs: Sequence[Node],
        config: Optional[GraphConfig] = None,
    ) -> "GraphModule":
        return cls(inputs, outputs, config=config)

    # ------------------------------------------------------------ validation
    def _check_declared(self) -> None:
        if not self.inputs:
            raise MalformedGraphError("GraphModule requires at least one input node.")
        if not self.outputs:
            raise MalformedGraphError("GraphModule requires at least one output node.")
        for node in self.inputs + self.outputs:
            if not isinstance(node, Node):
                raise MalformedGraphError(f"Expected graph nodes, got {type(node).__name__}.")
        ids = [node.id for node in self.inputs]
        if len(set(ids)) != len(ids):
            raise MalformedGraphError("The same node is declared as an input more than once.")

    def _check_slots(self) -> None:
        for node in self.backward_graph:
            slots = sorted(edge.slot for edge in self.backward_graph.children(node))
            if slots != list(range(len(slots))):
                raise MalformedGraphError(
                    f"{node.label()} has argument slots {slots}; expected 0..{len(slots) - 1}."
                )

    # ---------------------------------------------------------------- events
    def register_event_listener(self, listener: EventListener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unregister_event_listener(self, listener: EventListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, payload: Dict[str, Any]) -> None:
        if not self._listeners:
            return
        if self.config.name is not None:
            payload.setdefault("graph", self.config.name)
        for listener in list(self._listeners):
            listener(payload)

    # ----------------------------------------------------------------- calls
    @staticmethod
    def _as_tuple(values: Any, expected: int, what: str) -> Tuple[Any, ...]:
        if not isinstance(values, (list, tuple)):
            values = (values,)
        if len(values) != expected:
            raise ArityMismatchError(
                f"Graph declares {expected} {what} but {len(values)} were given."
            )
        return tuple(values)

    def forward(self, inputs: Any) -> Any:
        """
        Evaluate the graph.

        Args:
          inputs: One value per declared input (a list or tuple); a bare
            value is accepted for single-input graphs.

        Returns:
          The output value, or a tuple of values in output declaration order.
        """
        values = self._as_tuple(inputs, len(self.inputs), "inputs")
        self._emit({"event": "pass_start", "pass": "forward", "count": len(values)})
        ctx = self._forward_eval.run(values)
        self._last_forward = ctx
        self._last_backward = None
        self.output = ctx.output
        self._emit({"event": "pass_end", "pass": "forward"})
        return self.output

    def backward(self, inputs: Any, grad_outputs: Any) -> Any:
        """
        Propagate output gradients back to every input.

        Reuses the latest forward pass when it was run on the same input
        objects, otherwise runs forward first. Returns the gradient w.r.t. the
        input, or a tuple in input declaration order.
        """
        values = self._as_tuple(inputs, len(self.inputs), "inputs")
        grads = self._as_tuple(grad_outputs, len(self.outputs), "output gradients")
        forward = self._forward_for(values)
        self._emit({"event": "pass_start", "pass": "backward", "count": len(grads)})
        ctx = self._backward_eval.run(forward, grads)
        self._last_backward = ctx
        self.grad_input = ctx.grad_input
        self._emit({"event": "pass_end", "pass": "backward"})
        return self.grad_input

    def accumulate_gradients(self, inputs: Any, grad_outputs: Any, scale: float = 1.0) -> None:
        """Call acc_grad_parameters on every module node with its summed output gradient."""
        values = self._as_tuple(inputs, len(self.inputs), "inputs")
        grads = self._as_tuple(grad_outputs, len(self.outputs), "output gradients")
        forward = self._forward_for(values)
        ctx = self._last_backward
        if ctx is None or not ctx.seeded_by(forward, grads):
            self.backward(values, grads)
            ctx = self._last_backward
            assert ctx is not None
        self._emit({"event": "pass_start", "pass": "accumulate", "count": len(grads)})
        for index, node in enumerate(self.backward_order):
            if not isinstance(node, ModuleNode) or node.id not in ctx.summed:
                continue
            node.module.acc_grad_parameters(forward.assembled[node.id], ctx.summed[node.id], scale)
            self._emit(
                {
                    "event": "node_visit",
                    "pass": "accumulate",
                    "node": node.label(),
                    "node_id": node.id,
                    "kind": node.kind,
                    "index": index,
                }
            )
        self._emit({"event": "pass_end", "pass": "accumulate"})

    def _forward_for(self, values: Tuple[Any, ...]) -> _ForwardContext:
        ctx = self._last_forward
        if ctx is not None and all(a is b for a, b in zip(values, ctx.inputs)):
            return ctx
        self.forward(values)
        assert self._last_forward is not None
        return self._last_forward

    # ------------------------------------------------------- module contract
    # As a node of another graph the payload shape follows the declared arity:
    # a single declared input or output takes the value as is, even a tuple.
    def _wrap_input(self, input: Any) -> Any:
        return (input,) if len(self.inputs) == 1 else input

    def _wrap_grad(self, grad_output: Any) -> Any:
        return (grad_output,) if len(self.outputs) == 1 else grad_output

    def update_output(self, input: Any) -> Any:
        return self.forward(self._wrap_input(input))

    def update_grad_input(self, input: Any, grad_output: Any) -> Any:
        return self.backward(self._wrap_input(input), self._wrap_grad(grad_output))

    def acc_grad_parameters(self, input: Any, grad_output: Any, scale: float = 1.0) -> None:
        self.accumulate_gradients(self._wrap_input(input), self._wrap_grad(grad_output), scale)

    def parameters(self) -> Optional[ParamLists]:
        """
        Flat, order-matched lists of parameters and gradient buffers of every
        module node, in breadth-first order from the input source, or None when no
        module has learnable state.
        """
        params: List[torch.Tensor] = []
        grads: List[torch.Tensor] = []
        for node in self.forward_graph.bfs(self.source):
            if not isinstance(node, ModuleNode):
                continue
            found = node.module.parameters()
            if not found:
                continue
            module_params, module_grads = found
            params.extend(module_params)
            grads.extend(module_grads)
        if not params:
            return None
        return params, grads

    def module_nodes(self) -> List[ModuleNode]:
        return [node for node in self.forward_order if isinstance(node, ModuleNode)]

    def node_gradients(self) -> Dict[int, Any]:
        """Summed output gradient per node id from the latest backward pass."""
        if self._last_backward is None:
            return {}
        return dict(self._last_backward.summed)

    def __repr__(self) -> str:
        name = self.config.name or "GraphModule"
        return f"{name}(inputs={len(self.inputs)}, outputs={len(self.outputs)}, nodes={len(self.forward_graph)})"
