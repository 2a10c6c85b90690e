"""
Dream Automaton - Graph Engine

Builds the random weighted directed graph the player wanders:
- one node per biome (the Gateway sink is appended last)
- outgoing weights of every node sum to 1.0
- no node is left without an entry or an exit
- the Gateway is reachable only through rare, distant edges

The graph also serves the renderer: a read-only snapshot plus a change
notification hook, so nothing outside has to poll internal fields.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple
import logging
import random

from world import Biome, Variant, SINK_BIOME, walkable_biomes

logger = logging.getLogger(__name__)


# =============================================================================
# GENERATION CONSTANTS
# =============================================================================

# Cumulative thresholds for drawing a node's connection count (0..4 edges)
CONNECTION_COUNT_THRESHOLDS = (0.10, 0.45, 0.80, 0.95, 1.0)

SINK_SINGLE_EDGE_PROBABILITY = 0.8   # else two incoming edges
SINK_MIN_HOP_DISTANCE = 3
SINK_WEIGHT_MIN = 0.005
SINK_WEIGHT_MAX = 0.05

WEIGHT_TOLERANCE = 1e-6

EdgeKey = Tuple[Biome, Biome]
ChangeListener = Callable[[str], None]


# =============================================================================
# EXCEPTIONS
# =============================================================================

class GenerationAnomaly(Exception):
    """Graph generation finished, but with a structural defect (logged, not raised)."""
    pass


# =============================================================================
# DATA MODEL
# =============================================================================

@dataclass(eq=False)
class Node:
    """A biome state. Identity is the biome; edges are owned by the node."""

    biome: Biome
    variant: Variant = Variant.DEFAULT
    edges: List['Edge'] = field(default_factory=list, repr=False)
    discovered: bool = False

    @property
    def id(self) -> str:
        return self.biome.value

    def total_weight(self) -> float:
        return sum(edge.weight for edge in self.edges)

    def targets(self) -> List['Node']:
        return [edge.target for edge in self.edges]


@dataclass(eq=False)
class Edge:
    """A weighted transition. `target` is a non-owning reference."""

    source: Node
    target: Node
    weight: float = 0.0

    @property
    def key(self) -> EdgeKey:
        """Stable identity: (source biome, target biome)."""
        return (self.source.biome, self.target.biome)

    @property
    def id(self) -> str:
        return f"{self.source.id}-{self.target.id}"

    def __repr__(self) -> str:
        return f"Edge({self.source.id} -> {self.target.id}, weight={self.weight:.4f})"


def normalize_weights(edges: Sequence[Edge], total: float = 1.0) -> None:
    """Scale edge weights in place so they sum to `total`. No-op when the sum is 0."""
    current = sum(edge.weight for edge in edges)
    if current <= 0:
        return
    for edge in edges:
        edge.weight = edge.weight / current * total


class Graph:
    """
    Owns every node of one session's automaton.

    Topology is fixed after generation; only weights, variants and
    discovered flags change. The single exception is `remove_edge`, the
    hook reserved for permanent artifact effects.
    """

    def __init__(self, nodes: Iterable[Node]):
        self._nodes: Dict[Biome, Node] = {}
        for node in nodes:
            if node.biome in self._nodes:
                raise ValueError(f"Duplicate biome in graph: {node.biome.value}")
            self._nodes[node.biome] = node
        self.anomalies: List[GenerationAnomaly] = []
        self._listeners: List[ChangeListener] = []

    # -------------------------------------------------------------------------
    # QUERIES
    # -------------------------------------------------------------------------

    @property
    def nodes(self) -> List[Node]:
        return list(self._nodes.values())

    def node(self, biome: Biome) -> Node:
        return self._nodes[biome]

    def __contains__(self, biome: Biome) -> bool:
        return biome in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def edges(self) -> List[Edge]:
        """All edges, flattened in node order then edge order."""
        return [edge for node in self._nodes.values() for edge in node.edges]

    def edge(self, source: Biome, target: Biome) -> Optional[Edge]:
        for edge in self._nodes[source].edges:
            if edge.target.biome is target:
                return edge
        return None

    def incoming(self, node: Node) -> List[Edge]:
        return [edge for edge in self.edges() if edge.target is node]

    def hop_distances(self, start: Node) -> Dict[Biome, int]:
        """Breadth-first hop count from `start` over outgoing edges."""
        distances = {start.biome: 0}
        queue = deque([start])
        while queue:
            current = queue.popleft()
            for edge in current.edges:
                if edge.target.biome not in distances:
                    distances[edge.target.biome] = distances[current.biome] + 1
                    queue.append(edge.target)
        return distances

    @property
    def sink(self) -> Optional[Node]:
        return self._nodes.get(SINK_BIOME)

    # -------------------------------------------------------------------------
    # MUTATION HOOKS
    # -------------------------------------------------------------------------

    def add_node(self, node: Node) -> None:
        if node.biome in self._nodes:
            raise ValueError(f"Duplicate biome in graph: {node.biome.value}")
        self._nodes[node.biome] = node

    def remove_edge(self, source: Biome, target: Biome) -> Optional[Edge]:
        """Drop an edge and renormalize the source node. Returns the removed edge."""
        edge = self.edge(source, target)
        if edge is None:
            return None
        node = self._nodes[source]
        node.edges.remove(edge)
        normalize_weights(node.edges)
        logger.info(f"Edge removed: {edge.id}")
        self.notify('topology')
        return edge

    # -------------------------------------------------------------------------
    # RENDERER INTERFACE
    # -------------------------------------------------------------------------

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        """Register a change listener. Returns a callable that unsubscribes it."""
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def notify(self, reason: str) -> None:
        """Tell listeners that topology, weights or discovery flags changed."""
        for listener in list(self._listeners):
            listener(reason)

    def snapshot(self, current: Optional[Node] = None) -> Dict[str, object]:
        """Read-only view for renderers."""
        return {
            'nodes': [
                {
                    'id': node.id,
                    'biome': node.biome.value,
                    'variant': node.variant.value,
                    'discovered': node.discovered,
                }
                for node in self._nodes.values()
            ],
            'edges': [
                {
                    'id': edge.id,
                    'source': edge.source.id,
                    'target': edge.target.id,
                    'weight': edge.weight,
                }
                for edge in self.edges()
            ],
            'current_node_id': current.id if current else None,
        }


# =============================================================================
# GENERATION
# =============================================================================

def draw_connection_count(rng: random.Random) -> int:
    roll = rng.random()
    for count, threshold in enumerate(CONNECTION_COUNT_THRESHOLDS):
        if roll < threshold:
            return count
    return len(CONNECTION_COUNT_THRESHOLDS) - 1


def _connect(node: Node, targets: Sequence[Node], rng: random.Random) -> None:
    node.edges = [Edge(node, target, rng.random()) for target in targets]
    normalize_weights(node.edges)


def _repair_isolated(nodes: List[Node], rng: random.Random) -> None:
    for node in nodes:
        if node.edges:
            continue
        has_incoming = any(
            edge.target is node for other in nodes for edge in other.edges
        )
        if has_incoming:
            continue
        target = rng.choice([other for other in nodes if other is not node])
        node.edges = [Edge(node, target, 1.0)]
        normalize_weights(node.edges)
        logger.debug(f"Isolated node {node.id} forced to {target.id}")


def _attach_sink(graph: Graph, nodes: List[Node], rng: random.Random) -> Node:
    with_exits = [node for node in nodes if node.edges]
    sink = Node(SINK_BIOME)
    graph.add_node(sink)

    if not with_exits:
        anomaly = GenerationAnomaly("No node has outgoing edges; Gateway is unreachable")
        graph.anomalies.append(anomaly)
        logger.warning(str(anomaly))
        return sink

    reference = rng.choice(with_exits)
    distances = graph.hop_distances(reference)
    pool = [
        node for node in with_exits
        if distances.get(node.biome, -1) >= SINK_MIN_HOP_DISTANCE
    ]
    if not pool:
        logger.debug(
            f"No node {SINK_MIN_HOP_DISTANCE}+ hops from {reference.id}; "
            f"using any node with exits as Gateway source"
        )
        pool = with_exits

    count = 1 if rng.random() < SINK_SINGLE_EDGE_PROBABILITY else 2
    sources = rng.sample(pool, min(count, len(pool)))
    for source in sources:
        source.edges.append(
            Edge(source, sink, rng.uniform(SINK_WEIGHT_MIN, SINK_WEIGHT_MAX))
        )
    return sink


def generate(rng: Optional[random.Random] = None, seed: Optional[int] = None) -> Graph:
    """
    Create a random automaton.

    Args:
        rng: Random source to draw from (takes precedence over seed)
        seed: Seed for a fresh random source, for reproducible graphs

    Returns:
        A Graph whose last node is the Gateway sink
    """
    rng = rng or random.Random(seed)
    nodes = [Node(biome) for biome in walkable_biomes()]

    for node in nodes:
        count = draw_connection_count(rng)
        others = [other for other in nodes if other is not node]
        _connect(node, rng.sample(others, min(count, len(others))), rng)

    _repair_isolated(nodes, rng)

    graph = Graph(nodes)
    _attach_sink(graph, nodes, rng)

    for node in graph.nodes:
        normalize_weights(node.edges)

    logger.info(
        f"Generated automaton: {len(graph)} nodes, {len(graph.edges())} edges, "
        f"{len(graph.anomalies)} anomalies"
    )
    return graph


def build_graph(
    adjacency: Dict[Biome, Sequence[Tuple[Biome, float]]],
    variants: Optional[Dict[Biome, Variant]] = None,
) -> Graph:
    """
    Build a graph from an explicit adjacency description.

    Weights are taken verbatim. Useful for fixed scenarios and tests.
    """
    variants = variants or {}
    biomes = list(adjacency)
    for targets in adjacency.values():
        for target, _ in targets:
            if target not in biomes:
                biomes.append(target)

    nodes = {biome: Node(biome, variants.get(biome, Variant.DEFAULT)) for biome in biomes}
    for biome, targets in adjacency.items():
        source = nodes[biome]
        source.edges = [Edge(source, nodes[target], weight) for target, weight in targets]
    return Graph(nodes.values())
