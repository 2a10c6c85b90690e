"""
World vocabulary for the dream automaton.

Biomes are the identity of a node; variants are a secondary modifier.
Pure data, no logic.
"""

from enum import Enum
from typing import FrozenSet


class Biome(Enum):
    """Kinds of biome. Each one appears at most once per graph."""
    OCEAN = 'Ocean'
    PLAINS = 'Plains'
    FOREST = 'Forest'
    MOUNTAIN = 'Mountain'
    DESERT = 'Desert'
    SWAMP = 'Swamp'
    TAIGA = 'Taiga'
    SNOWY = 'Snowy'
    BEACH = 'Beach'
    RIVER = 'River'
    LAKE = 'Lake'
    GATEWAY = 'Gateway'   # Sink node, the way out of the dream


class Variant(Enum):
    """Secondary node modifier, independent of the biome."""
    DEFAULT = 'Default'
    BURNING = 'Burning'
    DEAD = 'Dead'
    GROWING = 'Growing'
    SHROUDED = 'Shrouded'
    WEEPING = 'Weeping'
    WET = 'Wet'
    FROZEN = 'Frozen'
    BLOOMING = 'Blooming'
    BARREN = 'Barren'
    LUSH = 'Lush'
    TOXIC = 'Toxic'
    VOLCANIC = 'Volcanic'
    CRYSTALLINE = 'Crystalline'
    ANCIENT = 'Ancient'


SINK_BIOME = Biome.GATEWAY

# =============================================================================
# BIOME GROUPINGS - used by artifact biases
# =============================================================================

WATER_BIOMES: FrozenSet[Biome] = frozenset({
    Biome.OCEAN, Biome.RIVER, Biome.LAKE, Biome.BEACH, Biome.SWAMP,
})
VERDANT_BIOMES: FrozenSet[Biome] = frozenset({
    Biome.FOREST, Biome.TAIGA, Biome.PLAINS,
})
ARID_BIOMES: FrozenSet[Biome] = frozenset({Biome.DESERT, Biome.PLAINS})
COLD_BIOMES: FrozenSet[Biome] = frozenset({
    Biome.SNOWY, Biome.TAIGA, Biome.MOUNTAIN,
})
HOT_BIOMES: FrozenSet[Biome] = frozenset({Biome.DESERT, Biome.MOUNTAIN})

VERDANT_VARIANTS: FrozenSet[Variant] = frozenset({
    Variant.GROWING, Variant.BLOOMING, Variant.LUSH,
})
HOT_VARIANTS: FrozenSet[Variant] = frozenset({Variant.VOLCANIC, Variant.BURNING})


def walkable_biomes():
    """All biomes except the sink, in declaration order."""
    return [biome for biome in Biome if biome is not SINK_BIOME]
