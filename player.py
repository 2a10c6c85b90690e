"""
The walker: holds the current node and takes weighted random steps.
"""

from typing import Dict, List, Optional
import logging
import random

from automaton import Node
from items import Item

logger = logging.getLogger(__name__)

INVENTORY_SLOTS = 8


class NoOutgoingEdges(Exception):
    """The current node has no way out (the Gateway, or a dead end)."""

    def __init__(self, node: Node):
        super().__init__(f"No transitions available from state {node.id}")
        self.node = node


class InvalidSlotError(Exception):
    """Inventory slot index out of range or empty."""
    pass


class Inventory:
    """Fixed number of slots; items with the same id stack."""

    def __init__(self, slots: int = INVENTORY_SLOTS):
        self._slots: List[Optional[Item]] = [None] * slots

    def __len__(self) -> int:
        return len(self._slots)

    def _check(self, slot: int) -> None:
        if not 0 <= slot < len(self._slots):
            raise InvalidSlotError(f"Slot {slot} out of range (0-{len(self._slots) - 1})")

    def get(self, slot: int) -> Optional[Item]:
        self._check(slot)
        return self._slots[slot]

    def add(self, item: Item) -> Optional[int]:
        """Place an item. Returns the slot used, or None if the inventory is full."""
        for index, held in enumerate(self._slots):
            if held is not None and held.id == item.id:
                held.quantity += item.quantity
                return index
        for index, held in enumerate(self._slots):
            if held is None:
                self._slots[index] = item
                return index
        return None

    def remove(self, slot: int, quantity: int = 1) -> Item:
        self._check(slot)
        item = self._slots[slot]
        if item is None:
            raise InvalidSlotError(f"Slot {slot} is empty")
        item.quantity -= quantity
        if item.quantity <= 0:
            self._slots[slot] = None
        return item

    def move(self, source: int, target: int) -> None:
        self._check(source)
        self._check(target)
        self._slots[source], self._slots[target] = self._slots[target], self._slots[source]

    def item_count(self) -> int:
        return sum(1 for item in self._slots if item is not None)

    def has_space(self) -> bool:
        return any(item is None for item in self._slots)

    def snapshot(self) -> List[Optional[Dict[str, object]]]:
        return [item.to_dict() if item else None for item in self._slots]


class Player:
    """
    The agent walking the automaton.

    Marking the new node as discovered is left to the caller.
    """

    def __init__(
        self,
        position: Node,
        rng: Optional[random.Random] = None,
        inventory: Optional[Inventory] = None,
    ):
        self.position = position
        self.previous: Optional[Node] = None
        self.inventory = inventory or Inventory()
        self._rng = rng or random.Random()

    def step(self) -> Node:
        """
        Take one weighted random transition.

        Raises:
            NoOutgoingEdges: if the current node has no edges
        """
        edges = self.position.edges
        if not edges:
            raise NoOutgoingEdges(self.position)

        roll = self._rng.random()
        cumulative = 0.0
        chosen = edges[-1]  # weights summing slightly under 1.0 land here
        for edge in edges:
            cumulative += edge.weight
            if roll <= cumulative:
                chosen = edge
                break

        self.previous = self.position
        self.position = chosen.target
        logger.debug(f"Step {chosen.id} (roll {roll:.3f})")
        return self.position
