"""
Dream Automaton - Effect Engine

Artifact effects bend the odds on a node's outgoing edges. Every temporary
change is snapshotted first, so removing the effect writes the exact
previous weights back.

Bookkeeping lives in the registry, never on the edges themselves:
- an undo stack per edge identity records which effects hold the edge
- a lock side-table records edges and nodes exempt from entropy
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Sequence
import logging

from automaton import Edge, EdgeKey, Graph, Node, normalize_weights
from entropy import EdgeGuard, Entropy
from world import Biome, Variant

logger = logging.getLogger(__name__)

DEFAULT_BIAS_MULTIPLIER = 1.5


@dataclass
class ActiveEffect:
    """
    A live artifact effect.

    remaining_uses: steps left before expiry; None means the effect is not
        step-limited (scope-bound, or permanent when `permanent` is set).
    modified_edges: edge identity -> weight before this effect first touched it.
    """

    id: str
    name: str
    description: str
    remaining_uses: Optional[int] = None
    modified_edges: Dict[EdgeKey, float] = field(default_factory=dict)
    scope_biome: Optional[Biome] = None
    permanent: bool = False
    entropy_factor: float = 1.0
    locked_edges: List[EdgeKey] = field(default_factory=list)
    locked_nodes: List[Biome] = field(default_factory=list)

    @property
    def is_step_limited(self) -> bool:
        return self.remaining_uses is not None

    @property
    def is_scope_bound(self) -> bool:
        return self.remaining_uses is None and not self.permanent and self.scope_biome is not None

    def to_dict(self) -> Dict[str, object]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'remaining_uses': self.remaining_uses,
            'scope_biome': self.scope_biome.value if self.scope_biome else None,
            'permanent': self.permanent,
        }


@dataclass
class EffectContext:
    """Everything an artifact may look at or touch when it is used."""
    graph: Graph
    entropy: Entropy
    registry: 'EffectRegistry'
    current_node: Node
    previous_node: Optional[Node] = None


EffectFactory = Callable[[EffectContext], Optional[ActiveEffect]]


# =============================================================================
# WEIGHT PRIMITIVES
# Pure transforms on one node's outgoing edges. They snapshot, then mutate.
# =============================================================================

def snapshot_weights(effect: ActiveEffect, edges: Sequence[Edge]) -> None:
    """Remember pre-mutation weights; an edge already in the map keeps its first value."""
    for edge in edges:
        if effect.scope_biome is None:
            effect.scope_biome = edge.source.biome
        if edge.key not in effect.modified_edges:
            effect.modified_edges[edge.key] = edge.weight


def bias_toward_biomes(
    effect: ActiveEffect,
    edges: Sequence[Edge],
    biomes: Iterable[Biome],
    multiplier: float = DEFAULT_BIAS_MULTIPLIER,
) -> None:
    if not edges:
        return
    targets = set(biomes)
    snapshot_weights(effect, edges)
    for edge in edges:
        if edge.target.biome in targets:
            edge.weight *= multiplier
    normalize_weights(edges)


def bias_toward_variants(
    effect: ActiveEffect,
    edges: Sequence[Edge],
    variants: Iterable[Variant],
    multiplier: float = DEFAULT_BIAS_MULTIPLIER,
) -> None:
    if not edges:
        return
    targets = set(variants)
    snapshot_weights(effect, edges)
    for edge in edges:
        if edge.target.variant in targets:
            edge.weight *= multiplier
    normalize_weights(edges)


def swap_top_two(effect: ActiveEffect, edges: Sequence[Edge]) -> None:
    """Exchange the weights of the two most likely edges."""
    if len(edges) < 2:
        return
    snapshot_weights(effect, edges)
    first, second = sorted(edges, key=lambda edge: edge.weight, reverse=True)[:2]
    first.weight, second.weight = second.weight, first.weight


def equalize(effect: ActiveEffect, edges: Sequence[Edge]) -> None:
    if not edges:
        return
    snapshot_weights(effect, edges)
    share = 1.0 / len(edges)
    for edge in edges:
        edge.weight = share


def lock_edges(effect: ActiveEffect, edges: Sequence[Edge]) -> None:
    """Exempt edges from entropy re-perturbation while the effect is active."""
    for edge in edges:
        if edge.key not in effect.locked_edges:
            effect.locked_edges.append(edge.key)


# -----------------------------------------------------------------------------
# Permanent hooks (major artifacts). No snapshot, no restoration.
# -----------------------------------------------------------------------------

def lock_node(effect: ActiveEffect, node: Node) -> None:
    """Exempt every current and future outgoing edge of a node from entropy."""
    if node.biome not in effect.locked_nodes:
        effect.locked_nodes.append(node.biome)


def set_variant(graph: Graph, node: Node, variant: Variant) -> None:
    if node.variant is variant:
        return
    logger.info(f"{node.id} variant {node.variant.value} -> {variant.value}")
    node.variant = variant
    graph.notify('variant')


def seal_edge(context: EffectContext, edge: Edge) -> None:
    """Remove an edge for good and stop entropy from tracking it."""
    context.entropy.forget_edge(edge)
    context.graph.remove_edge(*edge.key)


# =============================================================================
# REGISTRY
# =============================================================================

class EffectRegistry(EdgeGuard):
    """
    Tracks active effects and restores the weights they changed.

    Overlapping effects on one edge form an undo stack. Removing the top
    holder writes its snapshot back; removing a lower holder hands its
    snapshot to the holder above, so once every holder is gone the edge
    is back at its original weight whatever the removal order.
    """

    def __init__(self, graph: Graph):
        self.graph = graph
        self._active: Dict[str, ActiveEffect] = {}
        self._holders: Dict[EdgeKey, List[str]] = {}
        self._locked_edges: Dict[EdgeKey, List[str]] = {}
        self._locked_nodes: Dict[Biome, List[str]] = {}

    # -------------------------------------------------------------------------
    # EDGE GUARD
    # -------------------------------------------------------------------------

    def is_locked(self, edge: Edge) -> bool:
        return bool(self._locked_edges.get(edge.key)) or self.is_node_locked(edge.source)

    def is_modified(self, edge: Edge) -> bool:
        return bool(self._holders.get(edge.key))

    def is_node_locked(self, node: Node) -> bool:
        return bool(self._locked_nodes.get(node.biome))

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    def apply(self, factory: EffectFactory, context: EffectContext) -> Optional[ActiveEffect]:
        """Run an effect factory and register what it returns."""
        effect = factory(context)
        if effect is None:
            return None
        return self.add_effect(effect)

    def add_effect(self, effect: ActiveEffect) -> ActiveEffect:
        existing = self._active.get(effect.id)
        if existing is not None:
            # Same artifact used again while active: keep the oldest snapshots
            for key, weight in effect.modified_edges.items():
                if key not in existing.modified_edges:
                    existing.modified_edges[key] = weight
                    self._holders.setdefault(key, []).append(existing.id)
            for key in effect.locked_edges:
                if key not in existing.locked_edges:
                    existing.locked_edges.append(key)
                    self._locked_edges.setdefault(key, []).append(existing.id)
            for biome in effect.locked_nodes:
                if biome not in existing.locked_nodes:
                    existing.locked_nodes.append(biome)
                    self._locked_nodes.setdefault(biome, []).append(existing.id)
            existing.remaining_uses = effect.remaining_uses
            logger.debug(f"Effect refreshed: {existing.id}")
            if effect.modified_edges:
                self.graph.notify('weights')
            return existing

        self._active[effect.id] = effect
        for key in effect.modified_edges:
            self._holders.setdefault(key, []).append(effect.id)
        for key in effect.locked_edges:
            self._locked_edges.setdefault(key, []).append(effect.id)
        for biome in effect.locked_nodes:
            self._locked_nodes.setdefault(biome, []).append(effect.id)

        logger.info(f"Effect added: {effect.name} ({effect.id})")
        if effect.modified_edges:
            self.graph.notify('weights')
        return effect

    def remove_effect(self, effect_id: str) -> Optional[ActiveEffect]:
        """Remove an effect and restore the weights it still owns."""
        effect = self._active.pop(effect_id, None)
        if effect is None:
            return None

        restored = 0
        for key, weight in effect.modified_edges.items():
            holders = self._holders.get(key, [])
            if effect_id not in holders:
                continue
            position = holders.index(effect_id)
            if position == len(holders) - 1:
                edge = self.graph.edge(*key)
                if edge is not None:  # sealed edges have nothing to restore
                    edge.weight = weight
                    restored += 1
            else:
                above = self._active[holders[position + 1]]
                above.modified_edges[key] = weight
            holders.pop(position)
            if not holders:
                del self._holders[key]

        self._release(self._locked_edges, effect.locked_edges, effect_id)
        self._release(self._locked_nodes, effect.locked_nodes, effect_id)

        logger.info(f"Effect removed: {effect.name} ({restored} edges restored)")
        if restored:
            self.graph.notify('weights')
        return effect

    @staticmethod
    def _release(table: Dict, keys: Iterable, effect_id: str) -> None:
        for key in keys:
            owners = table.get(key, [])
            if effect_id in owners:
                owners.remove(effect_id)
            if not owners:
                table.pop(key, None)

    def get_active(self) -> List[ActiveEffect]:
        return list(self._active.values())

    def has_effect(self, effect_id: str) -> bool:
        return effect_id in self._active

    def get(self, effect_id: str) -> Optional[ActiveEffect]:
        return self._active.get(effect_id)

    def advance_one_step(self) -> List[ActiveEffect]:
        """Spend one use of every step-limited effect; expire those that run out."""
        expired = []
        for effect in list(self._active.values()):
            if effect.remaining_uses is None:
                continue
            effect.remaining_uses -= 1
            if effect.remaining_uses <= 0:
                expired.append(effect)

        # Newest first, so stacked snapshots unwind in order
        for effect in reversed(expired):
            self.remove_effect(effect.id)
        return expired

    def leave_scope(self, node: Node) -> List[ActiveEffect]:
        """Drop scope-bound effects whose scope is not `node`."""
        departed = [
            effect for effect in self._active.values()
            if effect.is_scope_bound and effect.scope_biome is not node.biome
        ]
        for effect in reversed(departed):
            self.remove_effect(effect.id)
        return departed

    def entropy_factor(self) -> float:
        factor = 1.0
        for effect in self._active.values():
            factor *= effect.entropy_factor
        return factor

    def clear(self) -> None:
        for effect_id in reversed(list(self._active)):
            self.remove_effect(effect_id)
