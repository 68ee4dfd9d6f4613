"""
Prometheus metrics for the coordinator and the agent
"""

from .metrics import AgentMetrics, CoordinatorMetrics

__all__ = [
    "AgentMetrics",
    "CoordinatorMetrics",
]
