"""
Tests for the entropy engine - regimes, crossings and re-perturbation.
"""

import random

import pytest

from automaton import build_graph
from effects import ActiveEffect, EffectRegistry
from entropy import (
    ENTROPY_MAX, NORMALIZE_GLOBAL, Entropy, EntropyConfig, Regime,
)
from world import Biome


def make_graph():
    return build_graph({
        Biome.FOREST: [(Biome.DESERT, 0.5), (Biome.OCEAN, 0.5)],
        Biome.DESERT: [(Biome.FOREST, 1.0)],
        Biome.OCEAN: [(Biome.FOREST, 0.6), (Biome.DESERT, 0.4)],
    })


def weights_of(graph, biome):
    return [edge.weight for edge in graph.node(biome).edges]


class TestLevelAndRegime:
    """Level stays inside [0, max]; regime follows the level."""

    def setup_method(self):
        self.entropy = Entropy(make_graph().edges(), rng=random.Random(0))

    def test_starts_stable_at_zero(self):
        assert self.entropy.current == 0.0
        assert self.entropy.max == ENTROPY_MAX
        assert self.entropy.regime is Regime.STABLE

    def test_clamped_at_zero(self):
        assert self.entropy.update(-5) is False
        assert self.entropy.current == 0.0

    def test_clamped_at_max(self):
        assert self.entropy.update(500) is True
        assert self.entropy.current == ENTROPY_MAX
        assert self.entropy.regime is Regime.CHAOTIC

    @pytest.mark.parametrize('level,regime', [
        (0, Regime.STABLE),
        (30.9, Regime.STABLE),
        (31, Regime.SHIFTING),
        (61.9, Regime.SHIFTING),
        (62, Regime.CHAOTIC),
        (100, Regime.CHAOTIC),
    ])
    def test_regime_boundaries(self, level, regime):
        self.entropy.update(level)
        assert self.entropy.current_regime() is regime


class TestCrossings:
    """Only upward boundary crossings fire a re-perturbation pass."""

    def setup_method(self):
        self.graph = make_graph()
        self.changes = []
        self.entropy = Entropy(
            self.graph.edges(), rng=random.Random(0), on_change=self.changes.append
        )

    def test_crossing_shifting_fires_once(self):
        assert self.entropy.update(30) is False
        assert self.entropy.regime is Regime.STABLE
        assert self.entropy.perturbation_count == 0

        assert self.entropy.update(2) is True
        assert self.entropy.regime is Regime.SHIFTING
        assert self.entropy.perturbation_count == 1

        assert self.entropy.update(5) is False
        assert self.entropy.perturbation_count == 1
        assert self.changes == ['weights']

    def test_downward_move_does_not_fire(self):
        self.entropy.update(40)
        assert self.entropy.update(-20) is False
        assert self.entropy.regime is Regime.STABLE
        assert self.entropy.perturbation_count == 1

    def test_recrossing_fires_again(self):
        self.entropy.update(35)
        self.entropy.update(-10)
        assert self.entropy.update(10) is True
        assert self.entropy.perturbation_count == 2

    def test_multiple_boundaries_fire_one_pass(self):
        assert self.entropy.update(70) is True
        assert self.entropy.regime is Regime.CHAOTIC
        assert self.entropy.perturbation_count == 1

    def test_reaching_max_fires(self):
        self.entropy.update(70)
        assert self.entropy.update(40) is True
        assert self.entropy.perturbation_count == 2
        assert self.entropy.update(10) is False

    def test_custom_thresholds(self):
        entropy = Entropy(
            self.graph.edges(),
            config=EntropyConfig(max=50, thresholds=(10, 20)),
            rng=random.Random(0),
        )
        assert entropy.update(15) is True
        assert entropy.regime is Regime.SHIFTING


class TestReperturbation:

    @pytest.mark.parametrize('seed', range(20))
    def test_per_node_sums_stay_at_one(self, seed):
        graph = make_graph()
        entropy = Entropy(graph.edges(), rng=random.Random(seed))
        entropy.update(70)
        for node in graph.nodes:
            assert node.total_weight() == pytest.approx(1.0, abs=1e-6)

    def test_single_edge_keeps_full_weight(self):
        graph = make_graph()
        entropy = Entropy(graph.edges(), rng=random.Random(3))
        entropy.update(100)
        assert weights_of(graph, Biome.DESERT) == [pytest.approx(1.0)]

    def test_perturbs_relative_to_original_weights(self):
        """Weights drifted away from the originals are ignored by the next pass."""
        graph = make_graph()
        entropy = Entropy(graph.edges(), rng=random.Random(5))
        for edge, weight in zip(graph.node(Biome.FOREST).edges, (0.99, 0.01)):
            edge.weight = weight

        entropy.update(31)

        # 0.5 * (1 +/- 0.15), renormalized over two edges
        allowed = (0.5, 0.575, 0.425)
        for weight in weights_of(graph, Biome.FOREST):
            assert any(weight == pytest.approx(value) for value in allowed)

    def test_base_weights_captured_at_construction(self):
        graph = make_graph()
        entropy = Entropy(graph.edges(), rng=random.Random(0))
        entropy.update(90)
        assert entropy.base_weights == (0.5, 0.5, 1.0, 0.6, 0.4)

    def test_global_normalization(self):
        graph = make_graph()
        entropy = Entropy(
            graph.edges(),
            config=EntropyConfig(normalization=NORMALIZE_GLOBAL),
            rng=random.Random(0),
        )
        entropy.update(40)
        assert sum(edge.weight for edge in graph.edges()) == pytest.approx(1.0)

    def test_stable_pass_leaves_weights_by_default(self):
        graph = make_graph()
        entropy = Entropy(graph.edges(), rng=random.Random(0))
        entropy.reperturb()
        assert weights_of(graph, Biome.OCEAN) == [0.6, 0.4]
        assert entropy.perturbation_count == 1

    def test_stable_pass_can_zero_weights(self):
        graph = make_graph()
        entropy = Entropy(
            graph.edges(), config=EntropyConfig(zero_on_stable=True), rng=random.Random(0)
        )
        entropy.reperturb()
        assert all(edge.weight == 0.0 for edge in graph.edges())

    def test_forget_edge(self):
        graph = make_graph()
        entropy = Entropy(graph.edges(), rng=random.Random(0))
        edge = graph.edge(Biome.OCEAN, Biome.DESERT)
        entropy.forget_edge(edge)
        assert edge not in entropy.edges
        assert len(entropy.base_weights) == 4


class TestExemptEdges:
    """Locked edges and edges held by an active effect are never rewritten."""

    def setup_method(self):
        self.graph = build_graph({
            Biome.FOREST: [(Biome.DESERT, 0.5), (Biome.OCEAN, 0.3), (Biome.SWAMP, 0.2)],
            Biome.OCEAN: [(Biome.FOREST, 0.6), (Biome.DESERT, 0.4)],
        })
        self.registry = EffectRegistry(self.graph)
        self.entropy = Entropy(
            self.graph.edges(), rng=random.Random(11), guard=self.registry
        )

    def test_locked_node_untouched(self):
        self.registry.add_effect(ActiveEffect(
            id='anchor', name='Anchor', description='', locked_nodes=[Biome.FOREST],
        ))
        self.entropy.update(100)
        assert weights_of(self.graph, Biome.FOREST) == [0.5, 0.3, 0.2]

    def test_partially_locked_node_still_sums_to_one(self):
        self.registry.add_effect(ActiveEffect(
            id='lock', name='Lock', description='',
            locked_edges=[(Biome.FOREST, Biome.OCEAN)],
        ))
        self.entropy.update(100)
        assert self.graph.edge(Biome.FOREST, Biome.OCEAN).weight == 0.3
        assert self.graph.node(Biome.FOREST).total_weight() == pytest.approx(1.0)

    def test_modified_edges_untouched(self):
        held = ActiveEffect(
            id='held', name='Held', description='',
            modified_edges={(Biome.OCEAN, Biome.FOREST): 0.6, (Biome.OCEAN, Biome.DESERT): 0.4},
        )
        for edge in self.graph.node(Biome.OCEAN).edges:
            edge.weight = 0.5
        self.registry.add_effect(held)

        self.entropy.update(100)
        assert weights_of(self.graph, Biome.OCEAN) == [0.5, 0.5]

        self.registry.remove_effect('held')
        assert weights_of(self.graph, Biome.OCEAN) == [0.6, 0.4]


class TestConfigValidation:

    def test_thresholds_out_of_order(self):
        with pytest.raises(ValueError):
            EntropyConfig(thresholds=(70, 50))

    def test_threshold_above_max(self):
        with pytest.raises(ValueError):
            EntropyConfig(max=50, thresholds=(31, 62))

    def test_unknown_normalization(self):
        with pytest.raises(ValueError):
            EntropyConfig(normalization='bogus')
