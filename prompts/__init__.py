"""
Prompt template system for the dream automaton's decision client.

Jinja2-based templates; inline fallbacks are used when no template file
exists on disk.
"""

from pathlib import Path
from typing import Any, Dict, Optional
from jinja2 import DictLoader, Environment, FileSystemLoader, TemplateNotFound

# Template directories
PROMPT_DIR = Path(__file__).parent


class PromptEngine:
    """
    Jinja2-based prompt template engine.

    Loads and renders templates for LLM decisions.
    """

    def __init__(self, template_dir: Optional[Path] = None):
        self.template_dir = template_dir or PROMPT_DIR

        # Set up Jinja2 environment
        if self.template_dir.exists():
            self.env = Environment(
                loader=FileSystemLoader(str(self.template_dir)),
                trim_blocks=True,
                lstrip_blocks=True,
            )
        else:
            # Fallback to dict loader with inline templates
            self.env = Environment(
                loader=DictLoader(DEFAULT_TEMPLATES),
                trim_blocks=True,
                lstrip_blocks=True,
            )

        # Register custom filters
        self.env.filters['percent'] = self._format_percent

    def _format_percent(self, value) -> str:
        """Format a 0-1 weight as a percentage."""
        try:
            return f"{float(value) * 100:.1f}%"
        except (ValueError, TypeError):
            return f"{value}%"

    def load_template(self, template_name: str) -> Optional[Any]:
        """Load a Jinja2 template by name."""
        try:
            return self.env.get_template(template_name)
        except TemplateNotFound:
            # Try with .j2 extension
            try:
                return self.env.get_template(f"{template_name}.j2")
            except TemplateNotFound:
                return None

    def render(self, template_name: str, context: Dict[str, Any]) -> str:
        """Render a template with context."""
        template = self.load_template(template_name)
        if template:
            return template.render(**context).strip()

        # Fallback to inline template
        if template_name in DEFAULT_TEMPLATES:
            return self.env.from_string(DEFAULT_TEMPLATES[template_name]).render(**context).strip()

        return f"[Template '{template_name}' not found]"


# =============================================================================
# INLINE FALLBACK TEMPLATES
# Used when template files don't exist
# =============================================================================

DEFAULT_TEMPLATES = {
    'decision/system.txt': '''
You are a strategic game-playing AI exploring a dream of shifting biomes.
Respond only with valid JSON.
''',

    'decision/turn.txt': '''
You are playing a dream exploration game. Navigate the biome graph to reach the Gateway.

CURRENT STATE:
- Location: {{ current_biome }}
- Entropy: {{ entropy_level | round(1) }}/{{ entropy_max | round(0) | int }} (high entropy = bad)
- Discovered biomes: {{ discovered_biomes | join(', ') if discovered_biomes else 'none' }}
- Goal: {{ goal }}

AVAILABLE TRANSITIONS (from current node):
{% for transition in transitions %}
  {{ loop.index }}. {{ transition.target_biome }} ({{ transition.weight | percent }} chance)
{% else %}
  (none)
{% endfor %}

INVENTORY (usable items that modify transition odds):
{% for item in inventory if item %}
  slot {{ item.slot }}: {{ item.name }} - {{ item.description }}
{% else %}
  (empty)
{% endfor %}

INSTRUCTIONS:
Decide your next action. You can either:
1. MOVE - Take a probabilistic step to one of the connected biomes
2. USE_ITEM - Use an inventory item (by slot number) to modify transition probabilities before moving

Respond in this exact JSON format:
{
  "action": "move" or "use_item",
  "item_index": <slot number if using an item, omit otherwise>,
  "reasoning": "<brief 1-2 sentence explanation>"
}
''',
}


# Global prompt engine instance
_engine: Optional[PromptEngine] = None


def get_prompt_engine() -> PromptEngine:
    """Get or create the global prompt engine."""
    global _engine
    if _engine is None:
        _engine = PromptEngine()
    return _engine


def render_template(template_name: str, context: Dict[str, Any]) -> str:
    """Convenience function to render a template."""
    return get_prompt_engine().render(template_name, context)
