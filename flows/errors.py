"""
Flow engine errors.

Structural (graph) and simulation errors are contract violations raised to
the caller. Store errors happen at runtime and are expected to be handled:
the operation that hit them restores its prior in-memory state.
"""
from __future__ import annotations

from typing import Optional


class FlowError(Exception):
    """Base exception for all flow engine operations."""


# ── Graph structure ───────────────────────────────────

class GraphError(FlowError):
    pass


class DuplicateId(GraphError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' already exists")


class UnknownNode(GraphError):
    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Node '{node_id}' not found")


class DuplicateConnection(GraphError):
    def __init__(self, source: str, target: str):
        self.source = source
        self.target = target
        super().__init__(f"Connection '{source}' → '{target}' already exists")


# ── Simulation ────────────────────────────────────────

class SimulationError(FlowError):
    pass


class NoStartNode(SimulationError):
    def __init__(self):
        super().__init__("Flow has no start node")


class InvalidState(SimulationError):
    def __init__(self, operation: str, state: str):
        self.operation = operation
        self.state = state
        super().__init__(f"Cannot {operation} while simulation is {state}")


# ── Import / export ───────────────────────────────────

class InvalidFormat(FlowError):
    """A flow document could not be imported."""


# ── Template Store boundary ───────────────────────────

class StoreError(FlowError):
    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class StoreUnavailable(StoreError):
    """Network failure or unexpected response from the Template Store."""


class AuthExpired(StoreError):
    """The bearer credential was rejected (HTTP 401)."""

    def __init__(self, message: str = "Session expired", status_code: Optional[int] = 401):
        super().__init__(message, status_code)
