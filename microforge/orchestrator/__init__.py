"""Local orchestration: dependency graph, readiness probes and supervisor."""

from microforge.orchestrator.graph import DependencyGraph, GraphNode, build_graph
from microforge.orchestrator.launchers import (
    ContainerLauncher,
    ExternalLauncher,
    ProcessLauncher,
    create_launcher,
)
from microforge.orchestrator.probes import HttpProbe, ProbeSettings, TcpProbe, wait_until_ready
from microforge.orchestrator.state import NodeEvent, NodeRuntimeState, NodeStatus
from microforge.orchestrator.supervisor import ProcessSupervisor

__all__ = [
    "ContainerLauncher",
    "DependencyGraph",
    "ExternalLauncher",
    "GraphNode",
    "HttpProbe",
    "NodeEvent",
    "NodeRuntimeState",
    "NodeStatus",
    "ProbeSettings",
    "ProcessLauncher",
    "ProcessSupervisor",
    "TcpProbe",
    "build_graph",
    "create_launcher",
    "wait_until_ready",
]
