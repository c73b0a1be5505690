# modgraph/record.py

from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .core import GraphModule
from .errors import UnroutableNodeError


@dataclass(frozen=True)
class TraversalEvent:
    """
    Lightweight description of a single node visit captured during a pass.
    """

    pass_: str
    node: str
    node_id: int
    kind: str
    index: int
    skipped: bool = False
    error: Optional[UnroutableNodeError] = None


class Trace:
    """
    Recording of GraphModule traversals.

    Responsibilities:
      - Capture visited and skipped nodes per pass, in execution order.
      - Count completed passes.
    """

    def __init__(self, graph: GraphModule) -> None:
        self.graph = graph
        self._events: List[TraversalEvent] = []
        self._passes: Dict[str, int] = {}
        self._active = False

    # ------------------------------------------------------------------ control
    def start(self) -> None:
        if self._active:
            return
        self._events.clear()
        self._passes.clear()
        self.graph.register_event_listener(self._handle_event)
        self._active = True

    def stop(self) -> None:
        if not self._active:
            return
        self.graph.unregister_event_listener(self._handle_event)
        self._active = False

    # ---------------------------------------------------------------- listeners
    def _handle_event(self, payload: Dict[str, Any]) -> None:
        kind = payload.get("event")
        if kind in ("node_visit", "node_skipped"):
            self._events.append(
                TraversalEvent(
                    pass_=str(payload["pass"]),
                    node=str(payload["node"]),
                    node_id=int(payload["node_id"]),
                    kind=str(payload["kind"]),
                    index=int(payload["index"]),
                    skipped=kind == "node_skipped",
                    error=payload.get("error"),
                )
            )
        elif kind == "pass_end":
            name = str(payload["pass"])
            self._passes[name] = self._passes.get(name, 0) + 1

    # ----------------------------------------------------------------- metadata
    @property
    def events(self) -> Tuple[TraversalEvent, ...]:
        return tuple(self._events)

    @property
    def skipped(self) -> Tuple[TraversalEvent, ...]:
        return tuple(event for event in self._events if event.skipped)

    def visits(self, pass_: str = "forward") -> List[int]:
        """Ids of nodes visited by ``pass_``, in visit order."""
        return [e.node_id for e in self._events if e.pass_ == pass_ and not e.skipped]

    def summary(self) -> Dict[str, Any]:
        return {
            "passes": dict(self._passes),
            "visits": sum(1 for e in self._events if not e.skipped),
            "skipped": [e.node for e in self._events if e.skipped],
        }


@contextmanager
def record(graph: GraphModule) -> Iterator[Trace]:
    """
    Context manager to record GraphModule traversals.

    Usage:
        with modgraph.record(gm) as trace:
            gm.forward([x, y])
        trace.visits("forward")
    """
    trace = Trace(graph)
    trace.start()
    try:
        yield trace
    finally:
        trace.stop()
