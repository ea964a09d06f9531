import asyncio
from collections import defaultdict

import numpy as np
import pytest

from dialogue_mcts.core.mcts import MCTSConfig, SearchEngine, SearchError, mcts, widen
from dialogue_mcts.core.observer import SearchObserver
from dialogue_mcts.core.policy import OraclePolicy
from dialogue_mcts.core.state import DialogueState, Message
from dialogue_mcts.core.transposition import TranspositionTable
from dialogue_mcts.models import OracleUnavailableError, ScriptedOracle


def two_turn_state(query="how are you?"):
    return DialogueState(
        "you are a friendly assistant",
        (Message("user", "hi"), Message("assistant", "hello there")),
        query,
    )


def make_engine(oracle, seed=0, observer=None, **config):
    return SearchEngine(
        OraclePolicy(oracle),
        MCTSConfig(**config),
        rng=np.random.default_rng(seed),
        observer=observer or SearchObserver(),
    )


class RecordingObserver(SearchObserver):
    def __init__(self):
        self.events = []
        self.backprops = []

    def on_select(self, path):
        self.events.append("select")

    def on_expand(self, node, num_children):
        self.events.append("expand")

    def on_evaluate(self, node, value, metrics):
        self.events.append("evaluate")

    def on_backpropagate(self, path, value):
        self.events.append("backpropagate")
        self.backprops.append(([n.key for n in path], value))


class YieldingOracle(ScriptedOracle):
    async def generate(self, prompt, system_prompt=None, temperature=0.8, max_tokens=512):
        # give other simulations a chance to run, like real network latency
        await asyncio.sleep(0)
        return await super().generate(prompt, system_prompt, temperature, max_tokens)


def test_progressive_widening_counts():
    assert [widen(d) for d in range(6)] == [1, 1, 1, 1, 2, 2]


def test_end_to_end_selects_only_action():
    oracle = ScriptedOracle(actions=["OK"], evaluation="0.7, 0.7, 0.7")
    engine = make_engine(oracle, num_simulations=4, max_depth=2)

    result = asyncio.run(engine.find_best_response(two_turn_state()))

    assert result["best_response"] == "OK"
    assert engine.root.visits == 4, f"expected 4 root visits, got {engine.root.visits}"
    assert result["root_visits"] == 4
    assert result["value"] == pytest.approx(0.7)
    assert result["completion_tokens"] == len(oracle.calls)


def test_search_is_deterministic_with_seeded_rng():
    def run():
        oracle = ScriptedOracle(actions=["A", "B", "C"], prior_text="3\n1\n2")
        engine = make_engine(oracle, seed=42, num_simulations=6, max_depth=5, simulation_depth=5)
        result = asyncio.run(engine.find_best_response(two_turn_state()))
        return result["best_response"], result["completion_tokens"], result["children"]

    assert run() == run()


def test_accounting_matches_backpropagation_events():
    observer = RecordingObserver()
    oracle = ScriptedOracle(actions=["A", "B", "A", "C"], evaluation="0.9, 0.4, 0.6")
    engine = make_engine(oracle, observer=observer, num_simulations=8, max_depth=4, simulation_depth=2)

    asyncio.run(engine.find_best_response(two_turn_state()))

    counts = defaultdict(int)
    sums = defaultdict(float)
    for keys, value in observer.backprops:
        for key in keys:
            counts[key] += 1
            sums[key] += value

    assert len(observer.backprops) == 8
    for node in engine.table:
        assert node.visits == counts[node.key]
        assert node.total_value == pytest.approx(sums[node.key])


def test_backpropagate_updates_every_node_on_path():
    table = TranspositionTable()
    root = table.seed(two_turn_state())
    child, _ = table.get_or_create(root.state.with_appended_message("assistant", "x"), root, "x")
    root.add_child(child, 1.0)

    engine = make_engine(ScriptedOracle(), use_rave=False)
    for value in (0.2, 0.4, 0.8):
        engine.backpropagate([root, child], value)
    engine.backpropagate([root], 0.1)

    assert child.visits == 3
    assert child.total_value == pytest.approx(1.4)
    assert root.visits == 4
    assert root.total_value == pytest.approx(1.5)
    assert child.rave_visits == 0


def test_rave_credits_siblings_played_later():
    table = TranspositionTable()
    root = table.seed(two_turn_state())
    chosen, _ = table.get_or_create(root.state.with_appended_message("assistant", "tell a story"), root, "tell a story")
    sibling, _ = table.get_or_create(root.state.with_appended_message("assistant", "ask a question"), root, "ask a question")
    bystander, _ = table.get_or_create(root.state.with_appended_message("assistant", "say nothing"), root, "say nothing")
    for node in (chosen, sibling, bystander):
        root.add_child(node, 1 / 3)

    engine = make_engine(ScriptedOracle(), use_rave=True)
    engine.backpropagate([root, chosen], 0.6, actions=["ask a question"])

    assert chosen.rave_visits == 1 and chosen.rave_value == pytest.approx(0.6)
    assert sibling.rave_visits == 1 and sibling.rave_value == pytest.approx(0.6)
    assert sibling.visits == 0
    assert bystander.rave_visits == 0
    assert root.rave_visits == 0


def test_duplicate_candidates_share_one_child():
    oracle = ScriptedOracle(actions=["same", "same", "other"])
    engine = make_engine(oracle, num_simulations=1, max_depth=3, simulation_depth=0)

    asyncio.run(engine.find_best_response(two_turn_state()))

    actions = [c.action for c in engine.root.children]
    assert actions == ["same", "other"]
    assert sum(engine.root.priors.values()) == pytest.approx(1.0)


def test_rollout_widening_bounds_generation_calls():
    oracle = ScriptedOracle(actions=["a", "b"])
    engine = make_engine(oracle, simulation_depth=6, max_depth=100)
    node = TranspositionTable().seed(two_turn_state())

    result = asyncio.run(engine._rollout(node))

    assert oracle.count("generate") == 1 + 1 + 1 + 1 + 2 + 2
    assert oracle.count("evaluate") == 6
    assert result.steps == 6
    expected = sum(0.7 * 0.95 ** d for d in range(6)) / 6
    assert result.value == pytest.approx(expected)


def test_rollout_stops_at_terminal_state():
    oracle = ScriptedOracle(actions=["ok, goodbye!"])
    engine = make_engine(oracle, simulation_depth=5, max_depth=100)
    node = TranspositionTable().seed(two_turn_state())

    result = asyncio.run(engine._rollout(node))

    assert result.steps == 1
    assert result.actions == ["ok, goodbye!"]


def test_simulate_from_terminal_node_evaluates_it():
    oracle = ScriptedOracle(evaluation="1, 1, 1")
    engine = make_engine(oracle, max_depth=1)
    node = TranspositionTable().seed(two_turn_state().with_appended_message("assistant", "done"))

    value = asyncio.run(engine.simulate(node))

    assert value == pytest.approx(1.0)
    assert oracle.count("generate") == 0
    assert node.state.metrics is not None


def test_generation_failure_prunes_branch_once():
    # generation works for the root only, then every later call fails
    class RootOnlyOracle(ScriptedOracle):
        async def generate(self, prompt, system_prompt=None, temperature=0.8, max_tokens=512):
            if self.count("generate") >= 3:
                self.fail_on = {"generate"}
            return await super().generate(prompt, system_prompt, temperature, max_tokens)

    oracle = RootOnlyOracle(actions=["only"])
    engine = make_engine(oracle, num_simulations=3, max_depth=5, simulation_depth=1)

    result = asyncio.run(engine.find_best_response(two_turn_state()))

    child = engine.root.children[0]
    assert result["best_response"] == "only"
    assert child.is_fully_expanded
    assert child.children == []


def test_unreachable_oracle_is_fatal():
    oracle = ScriptedOracle(fail_on={"generate", "priors", "evaluate"})
    engine = make_engine(oracle, num_simulations=3)

    with pytest.raises(OracleUnavailableError):
        asyncio.run(engine.find_best_response(two_turn_state()))


def test_no_candidates_is_fatal_even_if_evaluation_works():
    oracle = ScriptedOracle(fail_on={"generate"})
    engine = make_engine(oracle, num_simulations=2)

    with pytest.raises(SearchError):
        asyncio.run(engine.find_best_response(two_turn_state()))
    assert engine.root.is_fully_expanded


@pytest.mark.parametrize("state", [
    two_turn_state(query="   "),
    DialogueState("sys", (), "thank you, goodbye"),
    two_turn_state(query="thanks, goodbye"),
    DialogueState("sys", (Message("robot", "beep"),), "hi"),
    DialogueState("sys", (), "hi", depth=-1),
])
def test_malformed_root_is_rejected(state):
    engine = make_engine(ScriptedOracle())
    with pytest.raises(ValueError):
        asyncio.run(engine.find_best_response(state))


def test_root_at_max_depth_is_rejected():
    engine = make_engine(ScriptedOracle(), max_depth=2)
    state = DialogueState("sys", (), "hi", depth=2)
    with pytest.raises(ValueError):
        asyncio.run(engine.find_best_response(state))


def test_virtual_loss_discourages_in_progress_children():
    table = TranspositionTable()
    root = table.seed(two_turn_state())
    a, _ = table.get_or_create(root.state.with_appended_message("assistant", "a"), root, "a")
    b, _ = table.get_or_create(root.state.with_appended_message("assistant", "b"), root, "b")
    root.add_child(a, 0.5)
    root.add_child(b, 0.5)
    root.is_fully_expanded = True
    root.visits = 1

    engine = make_engine(ScriptedOracle(), virtual_loss=1.0)
    engine.root = root

    first = engine.select(root)
    assert first[-1] is a
    assert engine.score(root, a) == pytest.approx(engine.score(root, b) - 1.0)

    # a is still marked, so a second concurrent walk goes elsewhere
    second = engine.select(root)
    assert second[-1] is b

    engine._release(first)
    engine._release(second)
    assert not engine._in_progress


def test_concurrent_simulations_keep_accounting():
    oracle = YieldingOracle(actions=["x", "y", "z"])
    engine = make_engine(oracle, num_simulations=9, max_concurrency=3, max_depth=4, simulation_depth=2)

    result = asyncio.run(engine.find_best_response(two_turn_state()))

    assert engine.root.visits == 9
    assert result["best_response"] in {"x", "y", "z"}
    assert not engine._in_progress
    assert sum(c["visits"] for c in result["children"].values()) <= 9


def test_unexpected_error_stops_concurrent_simulations():
    class BrokenEvaluationOracle(YieldingOracle):
        async def generate(self, prompt, system_prompt=None, temperature=0.8, max_tokens=512):
            completion = await super().generate(prompt, system_prompt, temperature, max_tokens)
            if self.calls[-1][0] == "evaluate":
                raise RuntimeError("malformed response object")
            return completion

    oracle = BrokenEvaluationOracle(actions=["x", "y", "z"])
    engine = make_engine(oracle, num_simulations=9, max_concurrency=3, max_depth=4, simulation_depth=2)

    async def run():
        with pytest.raises(RuntimeError):
            await engine.find_best_response(two_turn_state())
        calls_at_failure = len(oracle.calls)
        for _ in range(20):
            await asyncio.sleep(0)
        return calls_at_failure, len(oracle.calls)

    calls_at_failure, calls_later = asyncio.run(run())

    assert calls_later == calls_at_failure
    assert not engine._in_progress


def test_best_response_is_most_visited_child():
    oracle = ScriptedOracle(actions=["first", "second", "third"], prior_text="1\n9\n1")
    engine = make_engine(oracle, num_simulations=10, max_depth=3, simulation_depth=1)

    result = asyncio.run(engine.find_best_response(two_turn_state()))

    most_visited = max(engine.root.children, key=lambda c: c.visits)
    assert result["best_response"] == most_visited.action
    assert result["visits"] == most_visited.visits
    shares = [c["share"] for c in result["children"].values()]
    assert sum(shares) == pytest.approx(1.0)


def test_observer_sees_lifecycle_in_order():
    observer = RecordingObserver()
    engine = make_engine(ScriptedOracle(), observer=observer, num_simulations=1, max_depth=3, simulation_depth=1)

    asyncio.run(engine.find_best_response(two_turn_state()))

    assert observer.events == ["select", "expand", "evaluate", "backpropagate"]


def test_each_search_starts_fresh():
    engine = make_engine(ScriptedOracle(), num_simulations=2, max_depth=3, simulation_depth=1)
    asyncio.run(engine.find_best_response(two_turn_state()))
    first_root = engine.root

    asyncio.run(engine.find_best_response(two_turn_state()))

    assert engine.root is not first_root
    assert engine.root.visits == 2


def test_mcts_returns_text_and_tokens():
    oracle = ScriptedOracle(actions=["Sure, here you go."], tokens_per_call=2)

    text, tokens = asyncio.run(
        mcts(oracle, "can you help?", system="be nice", num_simulations=3, max_depth=3, simulation_depth=1,
             rng=np.random.default_rng(0), observer=SearchObserver())
    )

    assert text == "Sure, here you go."
    assert tokens == 2 * len(oracle.calls)


def test_config_rejects_bad_values():
    with pytest.raises(ValueError):
        MCTSConfig(num_simulations=0)
    with pytest.raises(ValueError):
        MCTSConfig(max_concurrency=0)
