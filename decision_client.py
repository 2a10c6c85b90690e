"""
Decision Client - LLM autoplay for the dream automaton.

Abstracts an Ollama-served model behind a typed request/response boundary.
The engine builds a read-only DecisionRequest; the client answers with one
Decision. Every failure (no server, timeout, garbage output) degrades to a
plain "move" so the turn loop never stalls on the decision service.

CRITICAL: This module only reads game state. Decisions are applied by the
engine through GameSession.apply_decision.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union
import asyncio
import inspect
import json
import logging
import re

import ollama

from prompts import render_template
from world import SINK_BIOME

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


# =============================================================================
# CONFIGURATION
# =============================================================================

DECISION_CONFIG = {
    'model': 'llama3.2',
    'base_url': 'http://localhost:11434',
    'timeout': 30,
    'max_retries': 3,
    'temperature': 0.7,
    'max_tokens': 150,
    'move_interval': 2.0,   # seconds between autoplay moves
    'error_delay': 3.0,     # seconds to wait after a failed tick
}

ACTION_MOVE = 'move'
ACTION_USE_ITEM = 'use_item'
DEFAULT_GOAL = 'Reach the Gateway biome to escape the dream.'

_JSON_OBJECT = re.compile(r'\{[\s\S]*?\}')


# =============================================================================
# EXCEPTIONS
# =============================================================================

class DecisionClientError(Exception):
    """Base exception for decision client errors."""
    pass


class DecisionClientUnavailable(DecisionClientError):
    """Cannot reach the decision service, or the model is missing."""
    pass


class DecisionTimeout(DecisionClientError):
    """The decision service did not answer in time."""
    pass


class MalformedDecisionResponse(DecisionClientError):
    """The service answered with something that is not a decision."""
    pass


# =============================================================================
# REQUEST / RESPONSE
# =============================================================================

@dataclass
class DecisionRequest:
    """Read-only game-state snapshot handed to the decision service."""
    current_biome: str
    transitions: List[Dict[str, Any]]
    inventory: List[Optional[Dict[str, Any]]]
    entropy_level: float
    entropy_max: float
    discovered_biomes: List[str] = field(default_factory=list)
    goal: str = DEFAULT_GOAL

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Decision:
    action: str = ACTION_MOVE
    item_index: Optional[int] = None
    reasoning: str = ''

    def to_dict(self) -> Dict[str, Any]:
        data = {'action': self.action, 'reasoning': self.reasoning}
        if self.item_index is not None:
            data['item_index'] = self.item_index
        return data


@dataclass
class DecisionResponse:
    decision: Decision
    raw_response: str = ''


def default_decision(reason: str) -> Decision:
    """The safe fallback: just move."""
    return Decision(action=ACTION_MOVE, reasoning=reason or 'Defaulting to move.')


def _coerce_index(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None


def extract_decision(raw: str) -> Decision:
    """
    Parse a decision out of raw model output.

    Raises:
        MalformedDecisionResponse: no JSON object, or JSON that does not parse
    """
    match = _JSON_OBJECT.search(raw or '')
    if not match:
        raise MalformedDecisionResponse('Could not parse response, defaulting to move.')
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise MalformedDecisionResponse(f'JSON parse error, defaulting to move. ({e.msg})')
    if not isinstance(parsed, dict):
        raise MalformedDecisionResponse('Response is not a JSON object, defaulting to move.')

    action = str(parsed.get('action', '')).strip().lower()
    index = _coerce_index(parsed.get('item_index', parsed.get('itemIndex')))
    reasoning = str(parsed.get('reasoning') or 'No reasoning provided.')

    if action == ACTION_USE_ITEM and index is not None:
        return Decision(action=ACTION_USE_ITEM, item_index=index, reasoning=reasoning)
    return Decision(action=ACTION_MOVE, reasoning=reasoning)


def parse_decision(raw: str) -> Decision:
    """Like extract_decision, but never raises: bad output becomes a move."""
    try:
        return extract_decision(raw)
    except MalformedDecisionResponse as e:
        logger.warning(f"Malformed decision response: {e}")
        return default_decision(str(e))


def build_prompt(request: DecisionRequest) -> str:
    context = request.to_dict()
    context['inventory'] = [
        dict(item, slot=slot) if item else None
        for slot, item in enumerate(request.inventory)
    ]
    return render_template('decision/turn.txt', context)


# =============================================================================
# ABSTRACT BASE CLASS
# =============================================================================

class DecisionClient(ABC):
    """
    Abstract interface for decision services.

    The engine and autoplay loop use this interface; they don't know about Ollama.
    """

    @abstractmethod
    async def decide(self, request: DecisionRequest) -> DecisionResponse:
        """
        Choose the next action.

        Args:
            request: Snapshot of the player's situation

        Returns:
            The parsed decision and the raw model output
        """
        pass

    @abstractmethod
    async def list_models(self) -> List[str]:
        """Names of the models the service can run."""
        pass

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the decision service is available."""
        pass


# =============================================================================
# OLLAMA CLIENT IMPLEMENTATION
# =============================================================================

class OllamaDecisionClient(DecisionClient):
    """
    Production decision client backed by a local Ollama server.

    Features:
    - Exponential backoff retry on connection problems and timeouts
    - JSON-constrained chat output
    - Default-to-move fallback on every failure
    """

    def __init__(
        self,
        model: str = None,
        base_url: str = None,
        timeout: float = None,
        max_retries: int = None,
        temperature: float = None,
    ):
        self.model = model or DECISION_CONFIG['model']
        self.base_url = base_url or DECISION_CONFIG['base_url']
        self.timeout = timeout or DECISION_CONFIG['timeout']
        self.max_retries = max_retries or DECISION_CONFIG['max_retries']
        self.temperature = temperature or DECISION_CONFIG['temperature']
        self.system_prompt = render_template('decision/system.txt', {})
        self._client = ollama.AsyncClient(host=self.base_url)
        logger.info(f"Ollama decision client initialized: {self.base_url} ({self.model})")

    async def _with_retry(
        self,
        operation: Callable[[], Awaitable[str]],
        operation_name: str = "Decision request",
    ) -> DecisionResponse:
        """
        Run operation with exponential backoff retry.

        Returns:
            Parsed response, or a default move if all retries fail
        """
        last_error: Optional[Exception] = None
        for attempt in range(self.max_retries):
            try:
                raw = await operation()
                return DecisionResponse(decision=parse_decision(raw), raw_response=raw)
            except (DecisionClientUnavailable, DecisionTimeout) as e:
                last_error = e
                wait_time = 2 ** attempt  # Exponential backoff: 1, 2, 4 seconds
                logger.warning(
                    f"{operation_name} failed (attempt {attempt + 1}/{self.max_retries}): {e}. "
                    f"Retrying in {wait_time}s..."
                )
                await asyncio.sleep(wait_time)
            except DecisionClientError as e:
                last_error = e
                logger.error(f"{operation_name} unexpected error: {e}")
                break

        logger.warning(f"{operation_name} defaulting to move after {self.max_retries} retries")
        return DecisionResponse(decision=default_decision(f"Error: {last_error}"))

    async def _call_ollama(self, messages: List[Dict[str, str]]) -> str:
        """
        Make the actual chat call.

        Raises:
            DecisionClientUnavailable: cannot connect, or model not found
            DecisionTimeout: request exceeded the timeout
            MalformedDecisionResponse: empty or unusable reply
        """
        try:
            response = await asyncio.wait_for(
                self._client.chat(
                    model=self.model,
                    messages=messages,
                    format='json',
                    options={
                        'temperature': self.temperature,
                        'num_predict': DECISION_CONFIG['max_tokens'],
                    },
                ),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            raise DecisionTimeout(f"Request timed out after {self.timeout}s")
        except ollama.ResponseError as e:
            if e.status_code == 404 or 'not found' in str(e).lower():
                raise DecisionClientUnavailable(f"Model '{self.model}' not found: {e}")
            raise MalformedDecisionResponse(f"Ollama response error: {e}")
        except Exception as e:
            error_str = str(e).lower()
            if 'connect' in error_str or 'refused' in error_str:
                raise DecisionClientUnavailable(f"Cannot connect to Ollama at {self.base_url}: {e}")
            if 'timeout' in error_str or 'timed out' in error_str:
                raise DecisionTimeout(f"Request timed out: {e}")
            raise MalformedDecisionResponse(f"Unexpected error: {e}")

        content = (response['message']['content'] or '').strip()
        if not content:
            raise MalformedDecisionResponse("Empty response from model")
        return content

    async def decide(self, request: DecisionRequest) -> DecisionResponse:
        messages = [
            {'role': 'system', 'content': self.system_prompt},
            {'role': 'user', 'content': build_prompt(request)},
        ]

        async def _generate():
            return await self._call_ollama(messages)

        return await self._with_retry(_generate, f"Decision at {request.current_biome}")

    async def list_models(self) -> List[str]:
        try:
            listing = await self._client.list()
        except Exception as e:
            logger.error(f"Error fetching models: {e}")
            return []
        return [model['model'] for model in listing['models']]

    async def health_check(self) -> bool:
        return bool(await self.list_models())


# =============================================================================
# MOCK CLIENT (for testing without Ollama)
# =============================================================================

class MockDecisionClient(DecisionClient):
    """
    Scripted client that replays canned raw responses.

    Useful for:
    - Unit testing without Ollama running
    - Exercising the malformed-response fallbacks
    """

    def __init__(
        self,
        responses: Optional[List[str]] = None,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ):
        self.responses = list(responses or [])
        self.error = error
        self.delay = delay
        self.call_count = 0
        self.call_history: List[DecisionRequest] = []

    async def decide(self, request: DecisionRequest) -> DecisionResponse:
        self.call_count += 1
        self.call_history.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        raw = self.responses.pop(0) if self.responses else (
            '{"action": "move", "reasoning": "Mock move."}'
        )
        return DecisionResponse(decision=parse_decision(raw), raw_response=raw)

    async def list_models(self) -> List[str]:
        return ['mock']

    async def health_check(self) -> bool:
        """Always healthy."""
        return True


# =============================================================================
# FACTORY FUNCTION
# =============================================================================

def create_decision_client(provider_type: str = 'ollama', **kwargs) -> DecisionClient:
    """
    Factory function to create a decision client.

    Args:
        provider_type: 'ollama' or 'mock'
        **kwargs: Client-specific configuration
    """
    if provider_type == 'ollama':
        return OllamaDecisionClient(**kwargs)
    elif provider_type == 'mock':
        return MockDecisionClient(**kwargs)
    else:
        raise ValueError(f"Unknown provider type: {provider_type}")


# =============================================================================
# AUTOPLAY CONTROLLER
# One per game session; owns its own stop signal.
# =============================================================================

@dataclass
class AutoplayStatus:
    is_playing: bool = False
    is_thinking: bool = False
    last_thought: Optional[str] = None


class AutoplayController:
    """
    Drives a session from an LLM: decide, apply, wait, repeat.

    Stopping is checked at every await boundary. A decision still in flight
    when stop() is called is cancelled and never applied.
    """

    def __init__(
        self,
        client: DecisionClient,
        get_request: Callable[[], DecisionRequest],
        execute: Callable[[Decision], Union[None, Awaitable[None]]],
        interval: float = None,
        error_delay: float = None,
        decision_timeout: float = None,
        on_decision: Optional[Callable[[Decision], None]] = None,
        on_status: Optional[Callable[[AutoplayStatus], None]] = None,
    ):
        self.client = client
        self._get_request = get_request
        self._execute = execute
        self.interval = DECISION_CONFIG['move_interval'] if interval is None else interval
        self.error_delay = DECISION_CONFIG['error_delay'] if error_delay is None else error_delay
        self.decision_timeout = decision_timeout or DECISION_CONFIG['timeout'] * DECISION_CONFIG['max_retries']
        self._on_decision = on_decision
        self._on_status = on_status
        self.status = AutoplayStatus()
        self.decisions: List[Decision] = []
        self._stopped = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def _update_status(self, **changes) -> None:
        for key, value in changes.items():
            setattr(self.status, key, value)
        if self._on_status:
            self._on_status(self.status)

    @property
    def is_playing(self) -> bool:
        return self.status.is_playing

    def start(self) -> asyncio.Task:
        """Schedule the loop on the running event loop."""
        self._stopped.clear()
        self._task = asyncio.ensure_future(self.run())
        return self._task

    def stop(self) -> None:
        self._stopped.set()
        self._update_status(is_playing=False, is_thinking=False)

    async def _sleep(self, seconds: float) -> None:
        """Sleep, waking early if stopped."""
        try:
            await asyncio.wait_for(self._stopped.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _decide(self, request: DecisionRequest) -> Tuple[Optional[Decision], bool]:
        """
        Ask the client.

        Returns:
            (decision, failed): decision is None if stopped while waiting;
            failed is True when the decision is a fallback for a client failure
        """
        decide_task = asyncio.ensure_future(
            asyncio.wait_for(self.client.decide(request), timeout=self.decision_timeout)
        )
        stop_task = asyncio.ensure_future(self._stopped.wait())
        done, _ = await asyncio.wait(
            {decide_task, stop_task}, return_when=asyncio.FIRST_COMPLETED
        )

        if decide_task not in done:
            decide_task.cancel()
            return None, False
        stop_task.cancel()

        try:
            return decide_task.result().decision, False
        except asyncio.TimeoutError:
            logger.warning(f"Decision timed out after {self.decision_timeout}s")
            timeout = DecisionTimeout(f"No decision within {self.decision_timeout}s")
            return default_decision(str(timeout)), True
        except DecisionClientError as e:
            logger.warning(f"Decision client failed: {e}")
            return default_decision(f"Error: {e}"), True
        except Exception as e:
            logger.error(f"Decision client crashed: {e}")
            return default_decision(f"Error: {e}"), True

    async def run(self) -> None:
        """Play until stopped, stuck, or at the Gateway. A stopped controller restarts through start()."""
        if self._stopped.is_set():
            return
        self._update_status(is_playing=True)
        try:
            while not self._stopped.is_set():
                request = self._get_request()

                if request.current_biome == SINK_BIOME.value:
                    self._update_status(is_thinking=False,
                                        last_thought='Reached the Gateway! Game complete.')
                    break
                if not request.transitions:
                    self._update_status(is_thinking=False,
                                        last_thought='No available transitions. Stuck!')
                    break

                self._update_status(is_thinking=True, last_thought='Analyzing game state...')
                decision, failed = await self._decide(request)
                if decision is None or self._stopped.is_set():
                    break

                self._update_status(is_thinking=False, last_thought=decision.reasoning)
                self.decisions.append(decision)
                if self._on_decision:
                    self._on_decision(decision)

                delay = self.error_delay if failed else self.interval
                try:
                    result = self._execute(decision)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    # Keep playing; the next tick re-reads the state
                    logger.error(f"Error in autoplay tick: {e}")
                    self._update_status(last_thought=f"Error: {e}")
                    delay = self.error_delay

                await self._sleep(delay)
        finally:
            self._update_status(is_playing=False, is_thinking=False)
