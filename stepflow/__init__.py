"""Stepflow - declarative workflow execution engine.

Runs a graph of trigger/action nodes to completion, resolving cross-node
references, following branch decisions, iterating batches and joining paths.
"""

__version__ = "0.1.0"
