"""
Dream Automaton - Game Engine

Per-session orchestration of the stochastic graph engine:
- builds the automaton, the entropy meter and the effect registry
- runs one turn: entropy -> weighted draw -> effect expiry
- applies artifact use and LLM decisions
- detects the end of the game (Gateway reached, or stuck)

Every random draw goes through one seeded RNG, so a seed replays a session.
"""

from typing import Any, Dict, List, Optional
import logging
import random
import threading

from automaton import Graph, Node, generate
from decision_client import ACTION_USE_ITEM, Decision, DecisionRequest, DEFAULT_GOAL
from effects import ActiveEffect, EffectContext, EffectRegistry
from entropy import Entropy, EntropyConfig
from items import artifact_to_item, find_artifact, roll_artifact
from player import InvalidSlotError, NoOutgoingEdges, Player
from world import SINK_BIOME

logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

ENTROPY_PER_STEP = 5.0

GAME_OVER_VICTORY = 'victory'
GAME_OVER_STUCK = 'stuck'


# =============================================================================
# EXCEPTIONS
# =============================================================================

class GameOverError(Exception):
    """Raised when attempting to play after game over."""
    pass


# =============================================================================
# GAME SESSION
# =============================================================================

class GameSession:
    """
    One player wandering one automaton.

    Turns are serialized with a lock, so a session may be shared by
    several callers (a UI handler and an autoplay loop, a web server).
    """

    def __init__(
        self,
        graph: Graph,
        start: Node,
        rng: Optional[random.Random] = None,
        entropy_config: Optional[EntropyConfig] = None,
        find_artifacts: bool = True,
    ):
        self.rng = rng or random.Random()
        self.graph = graph
        self.registry = EffectRegistry(graph)
        self.entropy = Entropy(
            graph.edges(),
            config=entropy_config,
            rng=self.rng,
            guard=self.registry,
            on_change=graph.notify,
        )
        self.player = Player(start, rng=self.rng)
        self.find_artifacts = find_artifacts
        self.turn_number = 0
        self.history: List[Dict[str, Any]] = []
        self.pending_artifact = None
        self._lock = threading.RLock()
        self._game_over = False
        self._victory = False
        self._game_over_reason: Optional[str] = None
        self._discover(start)

    # -------------------------------------------------------------------------
    # STATE
    # -------------------------------------------------------------------------

    @property
    def current_node(self) -> Node:
        return self.player.position

    def is_game_over(self) -> bool:
        return self._game_over

    def is_victory(self) -> bool:
        return self._victory

    def get_game_over_reason(self) -> Optional[str]:
        return self._game_over_reason

    def discovered_biomes(self) -> List[str]:
        return [node.id for node in self.graph.nodes if node.discovered]

    def _discover(self, node: Node) -> None:
        if not node.discovered:
            node.discovered = True
            self.graph.notify('discovered')

    def _context(self) -> EffectContext:
        return EffectContext(
            graph=self.graph,
            entropy=self.entropy,
            registry=self.registry,
            current_node=self.player.position,
            previous_node=self.player.previous,
        )

    # -------------------------------------------------------------------------
    # TURN LOOP
    # -------------------------------------------------------------------------

    def take_turn(self) -> Dict[str, Any]:
        """
        Execute one step.

        Order matters: entropy moves (and may re-perturb) before the draw, so
        the draw sees post-perturbation weights. Effects are spent right after
        the draw they biased, so every restoration lands before the next
        entropy update.

        Raises:
            GameOverError: the game has already ended
            NoOutgoingEdges: the player is stuck (the session ends)
        """
        with self._lock:
            if self._game_over:
                raise GameOverError(f"Game is over: {self._game_over_reason}")

            origin = self.player.position
            if not origin.edges:
                self._end(GAME_OVER_STUCK)
                raise NoOutgoingEdges(origin)

            gain = ENTROPY_PER_STEP * self.registry.entropy_factor()
            reperturbed = self.entropy.update(gain)

            modified = any(self.registry.is_modified(edge) for edge in origin.edges)
            destination = self.player.step()
            taken = self.graph.edge(origin.biome, destination.biome)
            odds = taken.weight if taken else 0.0

            expired = self.registry.advance_one_step()
            departed = self.registry.leave_scope(destination) if destination is not origin else []

            self._discover(destination)
            self.turn_number += 1

            found = None
            if destination.biome is SINK_BIOME:
                self._end(GAME_OVER_VICTORY)
            elif self.find_artifacts:
                found = roll_artifact(self.rng)
                self.pending_artifact = found

            record = {
                'turn': self.turn_number,
                'from': origin.id,
                'to': destination.id,
                'odds': odds,
                'modified_by_item': modified,
                'entropy': self.entropy.current,
                'regime': self.entropy.regime.value,
                'reperturbed': reperturbed,
                'expired_effects': [effect.id for effect in expired + departed],
                'artifact_found': found.name if found else None,
                'game_over': self._game_over,
                'victory': self._victory,
                'game_over_reason': self._game_over_reason,
            }
            self.history.append(record)
            logger.info(f"Turn {self.turn_number}: {origin.id} -> {destination.id} ({odds:.1%})")
            return record

    def _end(self, reason: str) -> None:
        self._game_over = True
        self._victory = reason == GAME_OVER_VICTORY
        self._game_over_reason = reason
        logger.info(f"Game over: {reason}")

    # -------------------------------------------------------------------------
    # ITEMS
    # -------------------------------------------------------------------------

    def pick_up_artifact(self) -> Optional[int]:
        """Put the last found artifact in the inventory. Returns the slot used."""
        with self._lock:
            if self.pending_artifact is None:
                return None
            slot = self.player.inventory.add(artifact_to_item(self.pending_artifact))
            if slot is not None:
                self.pending_artifact = None
            return slot

    def use_item(self, slot: int) -> Optional[ActiveEffect]:
        """
        Use the artifact in `slot` at the current node.

        The item is consumed even when its effect turns out to be a no-op.

        Raises:
            InvalidSlotError: empty slot, out of range, or not an artifact
        """
        with self._lock:
            if self._game_over:
                raise GameOverError(f"Game is over: {self._game_over_reason}")
            item = self.player.inventory.get(slot)
            if item is None:
                raise InvalidSlotError(f"Slot {slot} is empty")
            artifact = find_artifact(item.name)
            if artifact is None:
                raise InvalidSlotError(f"{item.name} has no effect")

            effect = self.registry.apply(artifact.effect, self._context())
            self.player.inventory.remove(slot)
            logger.info(
                f"Used {item.name} at {self.current_node.id}: "
                f"{effect.description if effect else 'nothing happened'}"
            )
            return effect

    # -------------------------------------------------------------------------
    # DECISION CLIENT BOUNDARY
    # -------------------------------------------------------------------------

    def build_decision_request(self) -> DecisionRequest:
        """Read-only snapshot for the decision client."""
        with self._lock:
            node = self.player.position
            return DecisionRequest(
                current_biome=node.id,
                transitions=[
                    {'target_biome': edge.target.id, 'weight': edge.weight}
                    for edge in node.edges
                ],
                inventory=self.player.inventory.snapshot(),
                entropy_level=self.entropy.current,
                entropy_max=self.entropy.max,
                discovered_biomes=self.discovered_biomes(),
                goal=DEFAULT_GOAL,
            )

    def apply_decision(self, decision: Decision) -> Dict[str, Any]:
        """
        Execute a decision. A use_item decision uses the item, then moves.

        A bad slot is logged and ignored; the move still happens.
        """
        with self._lock:
            used = None
            if decision.action == ACTION_USE_ITEM and decision.item_index is not None:
                try:
                    effect = self.use_item(decision.item_index)
                    used = effect.id if effect else None
                except InvalidSlotError as e:
                    logger.warning(f"Decision ignored item use: {e}")
            record = self.take_turn()
            record['decision'] = decision.to_dict()
            record['effect_used'] = used
            return record

    # -------------------------------------------------------------------------
    # PUBLIC API
    # -------------------------------------------------------------------------

    def get_active_effects(self) -> List[Dict[str, Any]]:
        return [effect.to_dict() for effect in self.registry.get_active()]

    def snapshot(self) -> Dict[str, Any]:
        """Renderer view: nodes, edges and the current node id."""
        return self.graph.snapshot(self.player.position)

    def get_turn_summary(self) -> Dict[str, Any]:
        return {
            'turn': self.turn_number,
            'position': self.current_node.id,
            'variant': self.current_node.variant.value,
            'entropy': round(self.entropy.current, 2),
            'entropy_max': self.entropy.max,
            'regime': self.entropy.regime.value,
            'active_effects': [effect.id for effect in self.registry.get_active()],
            'items': self.player.inventory.item_count(),
            'discovered': len(self.discovered_biomes()),
        }


# =============================================================================
# NEW GAME FACTORY
# =============================================================================

def new_game(
    seed: Optional[int] = None,
    entropy_config: Optional[EntropyConfig] = None,
    find_artifacts: bool = True,
) -> GameSession:
    """Create a new session on a freshly generated automaton."""
    rng = random.Random(seed)
    graph = generate(rng=rng)
    starts = [node for node in graph.nodes if node.biome is not SINK_BIOME and node.edges]
    start = rng.choice(starts)
    return GameSession(
        graph, start, rng=rng, entropy_config=entropy_config, find_artifacts=find_artifacts
    )


# =============================================================================
# MAIN ENTRY (for testing)
# =============================================================================

if __name__ == "__main__":
    session = new_game(seed=42)
    print("Initial state:", session.get_turn_summary())

    for _ in range(20):
        if session.is_game_over():
            break
        result = session.take_turn()
        print(f"Turn {result['turn']}: {result['from']} -> {result['to']} "
              f"({result['odds']:.1%}, {result['regime']})")
        if session.pick_up_artifact() is not None:
            print(f"  Picked up {result['artifact_found']}")

    print("\nFinal state:", session.get_turn_summary())
