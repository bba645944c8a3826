from flows.graph import FlowGraph
from flows.repository import FlowRepository

__all__ = ["FlowGraph", "FlowRepository"]
