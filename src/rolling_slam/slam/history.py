"""
Measurement History

Shared, tree-shaped record of the scans processed by the particle filter.
Each particle points at the tip of its lineage; resampling makes several
particles share ancestors, so history is a tree and not one list per
particle.

Nodes live in an arena addressed by integer id. A node's reference count
is the number of children plus the number of particles whose lineage tip
it is. The rolling-window mapper only flags nodes (retained / discarded);
a discarded node loses its measurement once forgotten and is removed
from the arena once nothing references it any more.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional

from ..interface.sensor_interface import LaserScan
from ..perception.transforms import Pose2D
from .scan_footprint import ScanFootprint

logger = logging.getLogger(__name__)


class NodeIdAllocator:
    """Monotonic id source handed to a history arena."""

    def __init__(self, start: int = 0):
        self._next = start

    def allocate(self) -> int:
        node_id = self._next
        self._next += 1
        return node_id

    @property
    def next_id(self) -> int:
        return self._next


@dataclass(eq=False)
class HistoryNode:
    """One scan + pose sample of one particle lineage."""
    node_id: int
    parent_id: Optional[int]
    pose: Pose2D
    timestamp: float
    reading: Optional[LaserScan] = None
    footprint: Optional[ScanFootprint] = None
    retained: bool = True
    refcount: int = 0

    @property
    def usable(self) -> bool:
        """Whether the node may still contribute to a map."""
        return self.retained and self.footprint is not None


class MeasurementHistory:
    """
    Arena of history nodes.

    Usage:
        history = MeasurementHistory(NodeIdAllocator())

        root = history.add(None, pose, timestamp, scan, footprint)
        history.acquire(root)             # a particle now ends here

        child = history.add(root, pose2, t2, scan2, footprint2)
        history.acquire(child)
        history.release(root)             # particle moved on to child

        for node in history.lineage(child):
            ...

        if history.mark_discarded(root):
            history.forget([root])
    """

    def __init__(self, allocator: NodeIdAllocator):
        self._allocator = allocator
        self._nodes: Dict[int, HistoryNode] = {}

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: int) -> bool:
        return node_id in self._nodes

    def get(self, node_id: int) -> HistoryNode:
        return self._nodes[node_id]

    def nodes(self) -> List[HistoryNode]:
        """Snapshot list of all nodes, oldest first."""
        return list(self._nodes.values())

    def add(
        self,
        parent: Optional[HistoryNode],
        pose: Pose2D,
        timestamp: float,
        reading: Optional[LaserScan] = None,
        footprint: Optional[ScanFootprint] = None,
    ) -> HistoryNode:
        """Append a node under ``parent`` (None for a root)."""
        node = HistoryNode(
            node_id=self._allocator.allocate(),
            parent_id=parent.node_id if parent is not None else None,
            pose=pose,
            timestamp=timestamp,
            reading=reading,
            footprint=footprint,
        )
        if parent is not None:
            parent.refcount += 1
        self._nodes[node.node_id] = node
        return node

    def parent(self, node: HistoryNode) -> Optional[HistoryNode]:
        if node.parent_id is None:
            return None
        return self._nodes.get(node.parent_id)

    def lineage(self, node: Optional[HistoryNode]) -> Iterator[HistoryNode]:
        """Walk from ``node`` back to its root."""
        while node is not None:
            yield node
            node = self.parent(node)

    def acquire(self, node: HistoryNode):
        """A particle took ``node`` as its lineage tip."""
        node.refcount += 1

    def release(self, node: HistoryNode):
        """A particle left ``node`` (moved on or died)."""
        if node.refcount <= 0:
            raise RuntimeError(f"History node {node.node_id} released more often than acquired")
        node.refcount -= 1
        self._collect(node)

    def mark_discarded(self, node: HistoryNode) -> bool:
        """
        Flag a node as no longer usable for map building.

        The measurement is kept until ``forget`` so that a generator can
        still erase what the node painted. Returns False if the node was
        already discarded.
        """
        if not node.retained:
            return False
        node.retained = False
        return True

    def forget(self, nodes: List[HistoryNode]):
        """
        Drop the measurements of discarded nodes for good.

        Nodes stay in the tree while lineage still references them.
        """
        for node in nodes:
            if node.retained:
                raise RuntimeError(f"History node {node.node_id} is still retained")
            node.reading = None
            node.footprint = None
            if node.node_id in self._nodes:
                self._collect(node)

    def prune(self) -> int:
        """Remove every discarded, unreferenced node. Returns the count removed."""
        before = len(self._nodes)
        for node in self.nodes():
            if node.node_id in self._nodes:
                self._collect(node)
        removed = before - len(self._nodes)
        if removed:
            logger.debug("[HISTORY] Pruned %d nodes, %d left", removed, len(self._nodes))
        return removed

    def _collect(self, node: HistoryNode):
        # Deleting a node dereferences its parent, which may cascade upwards
        while node is not None and not node.retained and node.refcount == 0:
            del self._nodes[node.node_id]
            parent = self.parent(node)
            if parent is None:
                break
            parent.refcount -= 1
            node = parent
