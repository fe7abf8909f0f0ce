"""Runtime state tracking for ``run local``.

Each node moves through a small state machine owned by the supervisor::

    Pending -> Starting -> Ready -> Stopped
                  |-> Failed
                  '-> Stopped   (abandoned by a shutdown)

Every accepted transition produces a ``NodeEvent``; rejected transitions
raise ``InvalidTransitionError``.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from microforge.errors import InvalidTransitionError


class NodeStatus(str, Enum):
    """Lifecycle of a node during one orchestrator run."""
    PENDING = "pending"
    STARTING = "starting"
    READY = "ready"
    FAILED = "failed"
    STOPPED = "stopped"


_ALLOWED: dict[NodeStatus, frozenset[NodeStatus]] = {
    NodeStatus.PENDING: frozenset({NodeStatus.STARTING}),
    NodeStatus.STARTING: frozenset({NodeStatus.READY, NodeStatus.FAILED, NodeStatus.STOPPED}),
    NodeStatus.READY: frozenset({NodeStatus.STOPPED}),
    NodeStatus.FAILED: frozenset(),
    NodeStatus.STOPPED: frozenset(),
}


@dataclass(frozen=True)
class NodeEvent:
    """A single state transition, as reported to ``on_event`` callbacks."""

    node: str
    previous: NodeStatus
    current: NodeStatus
    wave: int
    detail: str = ""
    timestamp: float = field(default_factory=time.time)


@dataclass
class NodeRuntimeState:
    """Per-node execution state.

    Attributes:
        name: Node name (matches the manifest entry)
        wave: Start wave the node belongs to
        status: Current status
        started_at: When the node entered Starting
        ready_at: When the node entered Ready
        stopped_at: When the node reached Failed or Stopped
        error: Failure detail, if any
    """
    name: str
    wave: int = 0
    status: NodeStatus = NodeStatus.PENDING
    started_at: Optional[float] = None
    ready_at: Optional[float] = None
    stopped_at: Optional[float] = None
    error: Optional[str] = None

    def transition(self, target: NodeStatus, detail: str = "") -> NodeEvent:
        """Move to *target* and return the corresponding event.

        Raises:
            InvalidTransitionError: If *target* is not reachable from the
                current status.
        """
        if target not in _ALLOWED[self.status]:
            raise InvalidTransitionError(self.name, self.status.value, target.value)

        previous = self.status
        now = time.time()
        self.status = target
        if target == NodeStatus.STARTING:
            self.started_at = now
        elif target == NodeStatus.READY:
            self.ready_at = now
        else:
            self.stopped_at = now
            if target == NodeStatus.FAILED:
                self.error = detail or None
        return NodeEvent(
            node=self.name,
            previous=previous,
            current=target,
            wave=self.wave,
            detail=detail,
            timestamp=now,
        )

    @property
    def is_active(self) -> bool:
        """Starting or Ready: something may be running that needs stopping."""
        return self.status in (NodeStatus.STARTING, NodeStatus.READY)

    @property
    def startup_duration(self) -> Optional[float]:
        if self.started_at is not None and self.ready_at is not None:
            return self.ready_at - self.started_at
        return None
