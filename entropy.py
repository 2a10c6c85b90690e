"""
Dream Automaton - Entropy Engine

A bounded accumulator with three regimes. Crossing a regime boundary upward
re-perturbs every tracked edge relative to the weights the graph was born
with, so repeated crossings never drift further from the original odds.
"""

from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple
import logging
import random

from automaton import Edge, Node, normalize_weights

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

ENTROPY_MAX = 100.0
SHIFTING_THRESHOLD = 31.0
CHAOTIC_THRESHOLD = 62.0
SHIFTING_VARIATION = 0.15
CHAOTIC_VARIATION = 0.40

NORMALIZE_PER_NODE = 'per_node'
NORMALIZE_GLOBAL = 'global'


class Regime(Enum):
    STABLE = 'Stable'
    SHIFTING = 'Shifting'
    CHAOTIC = 'Chaotic'


@dataclass
class EntropyConfig:
    """
    Tunables for the entropy engine.

    zero_on_stable: a pass fired while Stable zeroes every weight instead of
        leaving weights alone.
    normalization: 'per_node' keeps each node's outgoing sum at 1.0;
        'global' normalizes all edges as a single pool.
    """

    max: float = ENTROPY_MAX
    thresholds: Tuple[float, float] = (SHIFTING_THRESHOLD, CHAOTIC_THRESHOLD)
    shifting_variation: float = SHIFTING_VARIATION
    chaotic_variation: float = CHAOTIC_VARIATION
    zero_on_stable: bool = False
    normalization: str = NORMALIZE_PER_NODE

    def __post_init__(self):
        low, high = self.thresholds
        if not 0 < low < high <= self.max:
            raise ValueError(f"Thresholds must satisfy 0 < {low} < {high} <= {self.max}")
        if self.normalization not in (NORMALIZE_PER_NODE, NORMALIZE_GLOBAL):
            raise ValueError(f"Unknown normalization mode: {self.normalization}")


class EdgeGuard(ABC):
    """Answers whether an edge is exempt from re-perturbation."""

    @abstractmethod
    def is_locked(self, edge: Edge) -> bool:
        pass

    @abstractmethod
    def is_modified(self, edge: Edge) -> bool:
        pass


class Entropy:
    """
    Global instability meter.

    Only `update` changes the level. Regime is a pure function of the level.
    """

    def __init__(
        self,
        edges: Sequence[Edge],
        config: Optional[EntropyConfig] = None,
        rng: Optional[random.Random] = None,
        guard: Optional[EdgeGuard] = None,
        on_change: Optional[Callable[[str], None]] = None,
    ):
        self.config = config or EntropyConfig()
        self._rng = rng or random.Random()
        self.guard = guard
        self._on_change = on_change
        self._current = 0.0
        self._edges: List[Edge] = list(edges)
        self._base_weights: List[float] = [edge.weight for edge in self._edges]
        self.perturbation_count = 0

    # -------------------------------------------------------------------------
    # STATE
    # -------------------------------------------------------------------------

    @property
    def current(self) -> float:
        return self._current

    @property
    def max(self) -> float:
        return self.config.max

    @property
    def regime(self) -> Regime:
        low, high = self.config.thresholds
        if self._current < low:
            return Regime.STABLE
        if self._current < high:
            return Regime.SHIFTING
        return Regime.CHAOTIC

    def current_regime(self) -> Regime:
        return self.regime

    @property
    def base_weights(self) -> Tuple[float, ...]:
        return tuple(self._base_weights)

    @property
    def edges(self) -> List[Edge]:
        return list(self._edges)

    # -------------------------------------------------------------------------
    # UPDATE
    # -------------------------------------------------------------------------

    def update(self, delta: float) -> bool:
        """
        Move the level by `delta`, clamped to [0, max].

        Returns:
            True if an upward boundary crossing fired a re-perturbation pass
        """
        before = self._current
        self._current = max(0.0, min(self.config.max, self._current + delta))

        boundaries = (*self.config.thresholds, self.config.max)
        crossed = any(before < bound <= self._current for bound in boundaries)
        if crossed:
            logger.info(
                f"Entropy {before:.1f} -> {self._current:.1f}: entering {self.regime.value}"
            )
            self.reperturb()
        return crossed

    def forget_edge(self, edge: Edge) -> None:
        """Stop tracking an edge removed from the graph."""
        for index, tracked in enumerate(self._edges):
            if tracked is edge:
                del self._edges[index]
                del self._base_weights[index]
                return

    # -------------------------------------------------------------------------
    # RE-PERTURBATION
    # -------------------------------------------------------------------------

    def _is_exempt(self, edge: Edge) -> bool:
        if self.guard is None:
            return False
        return self.guard.is_locked(edge) or self.guard.is_modified(edge)

    def reperturb(self) -> None:
        """Rewrite every non-exempt tracked edge according to the current regime."""
        regime = self.regime
        free = [
            (edge, base) for edge, base in zip(self._edges, self._base_weights)
            if not self._is_exempt(edge)
        ]
        self.perturbation_count += 1

        if regime is Regime.STABLE:
            if self.config.zero_on_stable:
                for edge, _ in free:
                    edge.weight = 0.0
        else:
            variation = (
                self.config.shifting_variation if regime is Regime.SHIFTING
                else self.config.chaotic_variation
            )
            for edge, base in free:
                sign = -1 if self._rng.random() < 0.5 else 1
                edge.weight = max(0.0, base * (1 + sign * variation))
            self._renormalize([edge for edge, _ in free])

        logger.debug(
            f"Re-perturbation #{self.perturbation_count} ({regime.value}): "
            f"{len(free)}/{len(self._edges)} edges rewritten"
        )
        if self._on_change:
            self._on_change('weights')

    def _renormalize(self, free: List[Edge]) -> None:
        if self.config.normalization == NORMALIZE_GLOBAL:
            normalize_weights(free)
            return

        by_source: Dict[int, Tuple[Node, List[Edge]]] = OrderedDict()
        for edge in free:
            by_source.setdefault(id(edge.source), (edge.source, []))[1].append(edge)

        for source, edges in by_source.values():
            held = sum(edge.weight for edge in source.edges if edge not in edges)
            normalize_weights(edges, max(0.0, 1.0 - held))
