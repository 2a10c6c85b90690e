"""
Artifacts - the items whose use bends the automaton.

Minor artifacts nudge the odds for a single step (or while the player
stays put). Major artifacts change the dream permanently.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional
import logging
import random

from effects import (
    ActiveEffect,
    EffectContext,
    EffectFactory,
    bias_toward_biomes,
    bias_toward_variants,
    equalize,
    lock_edges,
    lock_node,
    seal_edge,
    set_variant,
    swap_top_two,
)
from world import (
    ARID_BIOMES, COLD_BIOMES, HOT_BIOMES, HOT_VARIANTS, VERDANT_BIOMES,
    VERDANT_VARIANTS, WATER_BIOMES, Biome, Variant,
)

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

BIOME_BIAS = 1.5
VARIANT_BIAS = 1.3
STRONG_BIAS = 2.0
ENTROPY_BUFFER_FACTOR = 0.5
HEART_ENTROPY_RELIEF = 30.0

ARTIFACT_FIND_CHANCE = 0.5
MAJOR_ARTIFACT_CHANCE = 0.1

MINOR = 'minor'
MAJOR = 'major'


@dataclass(frozen=True)
class Artifact:
    name: str
    description: str
    artifact_class: str
    effect: EffectFactory


@dataclass
class Item:
    """An inventory entry. Artifacts become items when picked up."""
    id: str
    name: str
    description: str
    type: str = 'artifact'
    rarity: str = 'rare'
    quantity: int = 1

    def to_dict(self) -> Dict[str, object]:
        return {
            'id': self.id,
            'name': self.name,
            'description': self.description,
            'type': self.type,
            'rarity': self.rarity,
            'quantity': self.quantity,
        }


# =============================================================================
# MINOR ARTIFACT EFFECTS
# =============================================================================

def _one_shot(effect_id: str, name: str, description: str) -> ActiveEffect:
    return ActiveEffect(id=effect_id, name=name, description=description, remaining_uses=1)


def whispering_compass(context: EffectContext) -> ActiveEffect:
    effect = _one_shot('whispering-compass', 'Whispering Compass',
                       'Biasing transitions toward water biomes')
    bias_toward_biomes(effect, context.current_node.edges, WATER_BIOMES, BIOME_BIAS)
    return effect


def petrified_seed(context: EffectContext) -> ActiveEffect:
    effect = _one_shot('petrified-seed', 'Petrified Seed',
                       'Favoring forest and growing biomes')
    edges = context.current_node.edges
    bias_toward_biomes(effect, edges, VERDANT_BIOMES, BIOME_BIAS)
    bias_toward_variants(effect, edges, VERDANT_VARIANTS, VARIANT_BIAS)
    return effect


def sandglass_of_stillness(context: EffectContext) -> ActiveEffect:
    effect = _one_shot('sandglass-stillness', 'Sandglass of Stillness',
                       'Increasing probability of desert and barren biomes')
    edges = context.current_node.edges
    bias_toward_biomes(effect, edges, ARID_BIOMES, BIOME_BIAS)
    bias_toward_variants(effect, edges, [Variant.BARREN], VARIANT_BIAS)
    return effect


def frost_shard(context: EffectContext) -> ActiveEffect:
    effect = _one_shot('frost-shard', 'Frost Shard',
                       'Biasing toward snowy and frozen biomes')
    edges = context.current_node.edges
    bias_toward_biomes(effect, edges, COLD_BIOMES, BIOME_BIAS)
    bias_toward_variants(effect, edges, [Variant.FROZEN], VARIANT_BIAS)
    return effect


def ember_core(context: EffectContext) -> ActiveEffect:
    effect = _one_shot('ember-core', 'Ember Core',
                       'Favoring desert, mountain, and volcanic biomes')
    edges = context.current_node.edges
    bias_toward_biomes(effect, edges, HOT_BIOMES, BIOME_BIAS)
    bias_toward_variants(effect, edges, HOT_VARIANTS, VARIANT_BIAS)
    return effect


def probability_mirror(context: EffectContext) -> ActiveEffect:
    effect = _one_shot('probability-mirror', 'Probability Mirror',
                       'Swapped transition probabilities')
    swap_top_two(effect, context.current_node.edges)
    return effect


def reverse_current(context: EffectContext) -> Optional[ActiveEffect]:
    """Favor the way back. Topology is fixed, so it needs an existing edge back."""
    previous = context.previous_node
    if previous is None or context.graph.edge(context.current_node.biome, previous.biome) is None:
        logger.info("Reverse Current: no path back from here")
        return None
    effect = _one_shot('reverse-current', 'Reverse Current',
                       f'Current flows back toward {previous.id}')
    bias_toward_biomes(effect, context.current_node.edges, [previous.biome], STRONG_BIAS)
    return effect


def weight_shifter(context: EffectContext) -> ActiveEffect:
    effect = _one_shot('weight-shifter', 'Weight Shifter', 'All paths equally likely')
    equalize(effect, context.current_node.edges)
    return effect


def path_anchor(context: EffectContext) -> ActiveEffect:
    node = context.current_node
    effect = ActiveEffect(
        id='path-anchor',
        name='Path Anchor',
        description='Transition probabilities locked',
        scope_biome=node.biome,  # lasts until leaving this biome
    )
    lock_edges(effect, node.edges)
    return effect


def entropy_buffer(context: EffectContext) -> ActiveEffect:
    effect = _one_shot('entropy-buffer', 'Entropy Buffer', 'Next entropy gain reduced by 50%')
    effect.entropy_factor = ENTROPY_BUFFER_FACTOR
    return effect


# =============================================================================
# MAJOR ARTIFACT EFFECTS
# =============================================================================

def _permanent(effect_id: str, name: str, description: str, node) -> ActiveEffect:
    return ActiveEffect(id=effect_id, name=name, description=description,
                        scope_biome=node.biome, permanent=True)


def crystal_obelisk(context: EffectContext) -> ActiveEffect:
    node = context.current_node
    effect = _permanent('crystal-obelisk', 'Crystal Obelisk',
                        f'{node.id} crystallized into a stable anchor', node)
    set_variant(context.graph, node, Variant.CRYSTALLINE)
    lock_node(effect, node)
    return effect


def heart_of_the_dream(context: EffectContext) -> ActiveEffect:
    node = context.current_node
    effect = _permanent('heart-of-dream', 'Heart of the Dream',
                        f'{node.id} anchored; the dream calms', node)
    lock_node(effect, node)
    context.entropy.update(-HEART_ENTROPY_RELIEF)
    return effect


def weavers_loom(context: EffectContext) -> Optional[ActiveEffect]:
    """Seal the weakest ordinary path out of the current biome."""
    node = context.current_node
    candidates = [edge for edge in node.edges if edge.target.biome is not Biome.GATEWAY]
    if len(candidates) < 2:
        logger.info(f"Weaver's Loom: {node.id} has no path that can be sealed")
        return None
    if any(context.registry.is_modified(edge) for edge in node.edges):
        logger.info(f"Weaver's Loom: odds at {node.id} are held by another effect")
        return None

    weakest = min(candidates, key=lambda edge: edge.weight)
    seal_edge(context, weakest)
    return _permanent('weavers-loom', "The Weaver's Loom",
                      f'Path {weakest.id} sealed', node)


def anchor_of_memory(context: EffectContext) -> ActiveEffect:
    node = context.current_node
    effect = _permanent('anchor-of-memory', 'Anchor of Memory',
                        'Biome locked and immune to entropy', node)
    lock_node(effect, node)
    return effect


def threshold_key(context: EffectContext) -> ActiveEffect:
    node = context.current_node
    effect = ActiveEffect(
        id='threshold-key',
        name='Threshold Key',
        description='Increased chance of finding the Gateway',
        scope_biome=node.biome,
    )
    bias_toward_biomes(effect, node.edges, [Biome.GATEWAY], STRONG_BIAS)
    return effect


# =============================================================================
# CATALOGUE
# =============================================================================

MINOR_ARTIFACTS: List[Artifact] = [
    Artifact('Whispering Compass',
             'Points toward water. Biases transitions toward Ocean, River, Lake, Beach, and Swamp biomes.',
             MINOR, whispering_compass),
    Artifact('Petrified Seed',
             'A dormant seed that pulses with life. Favors Forest, Taiga, Plains, '
             'and Growing, Blooming, or Lush variants.',
             MINOR, petrified_seed),
    Artifact('Sandglass of Stillness',
             'Time moves slower around this artifact. Increases probability of Desert, '
             'Plains, and Barren variant biomes.',
             MINOR, sandglass_of_stillness),
    Artifact('Frost Shard',
             'A crystal of eternal winter. Biases toward Snowy, Taiga, Mountain, and Frozen variant biomes.',
             MINOR, frost_shard),
    Artifact('Ember Core',
             'A warm, glowing stone that never cools. Biases toward Desert, Mountain, '
             'and Volcanic or Burning variant biomes.',
             MINOR, ember_core),
    Artifact('Probability Mirror',
             'Swaps the odds of the two most likely paths from the current biome for one transition.',
             MINOR, probability_mirror),
    Artifact('Reverse Current',
             'Pulls the next transition back toward the biome you just left, if a path leads there.',
             MINOR, reverse_current),
    Artifact('Weight Shifter',
             'Makes every path out of the current biome equally likely for the next transition.',
             MINOR, weight_shifter),
    Artifact('Path Anchor',
             "Locks the current biome's odds against entropy until you leave it.",
             MINOR, path_anchor),
    Artifact('Entropy Buffer',
             'Absorbs half the entropy of the next transition. Consumed after one use.',
             MINOR, entropy_buffer),
]

MAJOR_ARTIFACTS: List[Artifact] = [
    Artifact('Crystal Obelisk',
             'Permanently transforms the current biome into a Crystalline variant, '
             'an anchor immune to entropy.',
             MAJOR, crystal_obelisk),
    Artifact('Heart of the Dream',
             'Sacrificed to anchor the current biome forever and calm the dream.',
             MAJOR, heart_of_the_dream),
    Artifact("The Weaver's Loom",
             'Rewrites reality: seals the weakest path out of the current biome for good.',
             MAJOR, weavers_loom),
    Artifact('Anchor of Memory',
             'Locks the current biome in its present state, immune to entropy.',
             MAJOR, anchor_of_memory),
    Artifact('Threshold Key',
             'Unlocks paths to the waking world. Favors the Gateway while you stay in this biome.',
             MAJOR, threshold_key),
]


def all_artifacts() -> List[Artifact]:
    return MINOR_ARTIFACTS + MAJOR_ARTIFACTS


def find_artifact(name: str) -> Optional[Artifact]:
    for artifact in all_artifacts():
        if artifact.name == name:
            return artifact
    return None


def roll_artifact(rng: random.Random) -> Optional[Artifact]:
    """Half the time nothing; otherwise a major artifact 10% of the time."""
    if rng.random() > ARTIFACT_FIND_CHANCE:
        return None
    pool = MAJOR_ARTIFACTS if rng.random() < MAJOR_ARTIFACT_CHANCE else MINOR_ARTIFACTS
    return rng.choice(pool)


def artifact_to_item(artifact: Artifact) -> Item:
    slug = artifact.name.lower().replace("'", '').replace(' ', '-')
    return Item(
        id=f'artifact-{slug}',
        name=artifact.name,
        description=artifact.description,
        type='artifact',
        rarity='legendary' if artifact.artifact_class == MAJOR else 'rare',
        quantity=1,
    )
