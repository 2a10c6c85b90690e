"""
Tests for the decision client and the autoplay loop.

No Ollama server is needed: everything runs against MockDecisionClient.
"""

import asyncio
import random

import pytest

from automaton import build_graph
from decision_client import (
    ACTION_MOVE, ACTION_USE_ITEM, AutoplayController, DecisionRequest,
    DecisionClientUnavailable, MalformedDecisionResponse, MockDecisionClient,
    build_prompt, create_decision_client, extract_decision, parse_decision,
)
from engine import GameSession
from world import Biome


def make_request(**overrides):
    values = dict(
        current_biome='Forest',
        transitions=[
            {'target_biome': 'Desert', 'weight': 0.5},
            {'target_biome': 'Ocean', 'weight': 0.5},
        ],
        inventory=[{'name': 'Frost Shard', 'description': 'Cold.'}, None],
        entropy_level=12.5,
        entropy_max=100.0,
        discovered_biomes=['Forest'],
    )
    values.update(overrides)
    return DecisionRequest(**values)


class TestParseDecision:
    """Every raw reply becomes a usable decision."""

    def test_move(self):
        decision = parse_decision('{"action": "move", "reasoning": "Onward."}')
        assert decision.action == ACTION_MOVE
        assert decision.item_index is None
        assert decision.reasoning == 'Onward.'

    def test_use_item(self):
        decision = parse_decision('{"action": "use_item", "item_index": 2, "reasoning": "Bias it."}')
        assert decision.action == ACTION_USE_ITEM
        assert decision.item_index == 2

    def test_json_inside_prose(self):
        decision = parse_decision('Sure! {"action": "USE_ITEM", "itemIndex": "1"} Good luck.')
        assert decision.action == ACTION_USE_ITEM
        assert decision.item_index == 1
        assert decision.reasoning == 'No reasoning provided.'

    def test_use_item_without_index_moves(self):
        decision = parse_decision('{"action": "use_item"}')
        assert decision.action == ACTION_MOVE

    @pytest.mark.parametrize('raw', [
        'not json at all',
        '{action: move}',
        '',
        None,
    ])
    def test_invalid_reply_moves(self, raw):
        decision = parse_decision(raw)
        assert decision.action == ACTION_MOVE
        assert decision.reasoning

    def test_extract_raises(self):
        with pytest.raises(MalformedDecisionResponse):
            extract_decision('no braces here')


class TestPrompt:

    def test_prompt_lists_state(self):
        prompt = build_prompt(make_request())
        assert 'Location: Forest' in prompt
        assert 'Desert (50.0% chance)' in prompt
        assert 'slot 0: Frost Shard - Cold.' in prompt
        assert 'Entropy: 12.5/100' in prompt
        assert '"item_index"' in prompt

    def test_empty_inventory(self):
        prompt = build_prompt(make_request(inventory=[None, None]))
        assert '(empty)' in prompt


class TestMockClient:

    def test_replays_responses(self):
        client = MockDecisionClient(responses=['{"action": "use_item", "item_index": 0}'])

        first = asyncio.run(client.decide(make_request()))
        second = asyncio.run(client.decide(make_request()))

        assert first.decision.action == ACTION_USE_ITEM
        assert second.decision.action == ACTION_MOVE
        assert client.call_count == 2
        assert client.call_history[0].current_biome == 'Forest'

    def test_raises_configured_error(self):
        client = MockDecisionClient(error=DecisionClientUnavailable('down'))
        with pytest.raises(DecisionClientUnavailable):
            asyncio.run(client.decide(make_request()))

    def test_factory(self):
        assert isinstance(create_decision_client('mock'), MockDecisionClient)
        with pytest.raises(ValueError):
            create_decision_client('carrier-pigeon')


def make_session(adjacency):
    graph = build_graph(adjacency)
    return GameSession(graph, graph.node(Biome.FOREST), rng=random.Random(0), find_artifacts=False)


class TestAutoplay:
    """The loop keeps going through failures and halts when it should."""

    def make_controller(self, session, client, **kwargs):
        kwargs.setdefault('interval', 0)
        kwargs.setdefault('error_delay', 0)
        return AutoplayController(
            client,
            get_request=session.build_decision_request,
            execute=session.apply_decision,
            **kwargs
        )

    def test_stops_at_gateway(self):
        session = make_session({
            Biome.FOREST: [(Biome.DESERT, 1.0)],
            Biome.DESERT: [(Biome.GATEWAY, 1.0)],
        })
        controller = self.make_controller(session, MockDecisionClient())

        asyncio.run(controller.run())

        assert session.is_victory()
        assert len(controller.decisions) == 2
        assert not controller.is_playing
        assert controller.status.last_thought == 'Reached the Gateway! Game complete.'

    def test_stops_when_stuck(self):
        session = make_session({Biome.FOREST: [(Biome.DESERT, 1.0)], Biome.DESERT: []})
        controller = self.make_controller(session, MockDecisionClient())

        asyncio.run(controller.run())

        assert session.turn_number == 1
        assert controller.status.last_thought == 'No available transitions. Stuck!'

    def test_failing_client_defaults_to_move(self):
        session = make_session({
            Biome.FOREST: [(Biome.DESERT, 1.0)],
            Biome.DESERT: [(Biome.GATEWAY, 1.0)],
        })
        client = MockDecisionClient(error=DecisionClientUnavailable('connection refused'))
        controller = self.make_controller(session, client)

        asyncio.run(controller.run())

        assert session.is_victory()
        assert all(d.action == ACTION_MOVE for d in controller.decisions)
        assert controller.decisions[0].reasoning.startswith('Error')

    def test_crashing_client_defaults_to_move(self):
        session = make_session({Biome.FOREST: [(Biome.GATEWAY, 1.0)]})
        controller = self.make_controller(session, MockDecisionClient(error=RuntimeError('boom')))

        asyncio.run(controller.run())

        assert session.is_victory()

    def test_slow_client_times_out_to_move(self):
        session = make_session({Biome.FOREST: [(Biome.GATEWAY, 1.0)]})
        controller = self.make_controller(
            session, MockDecisionClient(delay=5), decision_timeout=0.05
        )

        asyncio.run(controller.run())

        assert session.is_victory()
        assert controller.decisions[0].action == ACTION_MOVE

    def test_stop_discards_in_flight_decision(self):
        session = make_session({
            Biome.FOREST: [(Biome.DESERT, 1.0)],
            Biome.DESERT: [(Biome.FOREST, 1.0)],
        })
        controller = self.make_controller(session, MockDecisionClient(delay=5))

        async def scenario():
            task = controller.start()
            await asyncio.sleep(0.05)
            controller.stop()
            await asyncio.wait_for(task, timeout=1)

        asyncio.run(scenario())

        assert session.turn_number == 0
        assert controller.decisions == []
        assert not controller.is_playing

    def test_execute_errors_keep_loop_alive(self):
        session = make_session({
            Biome.FOREST: [(Biome.DESERT, 1.0)],
            Biome.DESERT: [(Biome.GATEWAY, 1.0)],
        })
        calls = []

        def flaky_execute(decision):
            calls.append(decision)
            if len(calls) == 1:
                raise RuntimeError('renderer hiccup')
            session.apply_decision(decision)

        controller = AutoplayController(
            MockDecisionClient(), session.build_decision_request, flaky_execute,
            interval=0, error_delay=0,
        )

        asyncio.run(controller.run())

        assert len(calls) == 3
        assert session.is_victory()

    def test_status_updates(self):
        session = make_session({Biome.FOREST: [(Biome.GATEWAY, 1.0)]})
        seen = []
        controller = self.make_controller(
            session, MockDecisionClient(),
            on_status=lambda status: seen.append(status.is_thinking),
        )

        asyncio.run(controller.run())

        assert True in seen
        assert seen[-1] is False

    def test_stop_right_after_start(self):
        session = make_session({
            Biome.FOREST: [(Biome.DESERT, 1.0)],
            Biome.DESERT: [(Biome.FOREST, 1.0)],
        })
        controller = self.make_controller(session, MockDecisionClient(), interval=0.01)

        async def scenario():
            task = controller.start()
            controller.stop()
            await asyncio.wait_for(task, timeout=1)

        asyncio.run(scenario())

        assert session.turn_number == 0
        assert controller.decisions == []
        assert not controller.is_playing

    def test_restart_after_stop(self):
        session = make_session({
            Biome.FOREST: [(Biome.DESERT, 1.0)],
            Biome.DESERT: [(Biome.GATEWAY, 1.0)],
        })
        controller = self.make_controller(session, MockDecisionClient())

        async def scenario():
            controller.stop()
            await asyncio.wait_for(controller.start(), timeout=1)

        asyncio.run(scenario())

        assert session.is_victory()

    def test_client_failure_waits_error_delay(self):
        """After a failed decision the loop backs off by error_delay, not the move interval."""
        session = make_session({
            Biome.FOREST: [(Biome.DESERT, 1.0)],
            Biome.DESERT: [(Biome.GATEWAY, 1.0)],
        })
        client = MockDecisionClient(error=DecisionClientUnavailable('connection refused'))
        controller = self.make_controller(session, client, interval=30, error_delay=0)

        asyncio.run(asyncio.wait_for(controller.run(), timeout=2))

        assert session.is_victory()
        assert client.call_count == 2

    def test_healthy_client_waits_interval(self):
        session = make_session({
            Biome.FOREST: [(Biome.DESERT, 1.0)],
            Biome.DESERT: [(Biome.GATEWAY, 1.0)],
        })
        controller = self.make_controller(session, MockDecisionClient(), interval=30, error_delay=0)

        async def scenario():
            task = controller.start()
            await asyncio.sleep(0.1)
            controller.stop()
            await asyncio.wait_for(task, timeout=1)

        asyncio.run(scenario())

        assert session.turn_number == 1
