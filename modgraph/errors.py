# modgraph/errors.py

from __future__ import annotations


class GraphError(RuntimeError):
    """Base class for errors raised by the graph engine."""


class MalformedGraphError(GraphError, ValueError):
    """
    Wiring does not reduce to a single connected acyclic graph between one
    synthetic source and one synthetic sink.
    """


class CycleDetectedError(MalformedGraphError):
    """Topological sort could not order every node."""


class ArityMismatchError(GraphError, ValueError):
    """Number of supplied inputs or gradients differs from the declared count."""


class UnroutableNodeError(GraphError):
    """
    Soft error: a node could not be evaluated and was skipped.

    Never raised by the traversals; instances are attached to ``node_skipped``
    events so listeners can report them.
    """


class MissingInputError(GraphError):
    """A node that must be evaluated is missing one of its inputs or gradients."""
