import asyncio
import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from ..config import get_search_config
from ..models.action_generator import unique_actions
from ..models.oracle import Oracle, OracleError, OracleUnavailableError
from ..rewards.evaluator import Evaluation
from .observer import LoggingObserver, SearchObserver
from .policy import OraclePolicy, SearchPolicy
from .state import DEFAULT_CLOSING_PHRASES, VALID_ROLES, DialogueState
from .transposition import TranspositionTable
from .tree import SearchNode

logger = logging.getLogger(__name__)


class SearchError(Exception):
    """The search finished without a candidate response to return."""


@dataclass
class MCTSConfig:
    num_simulations: int = 5
    simulation_depth: int = 3
    max_depth: int = 10
    max_children: int = 3
    exploration_constant: float = 1.414
    use_rave: bool = True
    rave_equivalence: float = 1.0
    virtual_loss: float = 1.0
    max_concurrency: int = 1
    discount: float = 0.95
    closing_phrases: Tuple[str, ...] = DEFAULT_CLOSING_PHRASES

    def __post_init__(self):
        if self.num_simulations < 1:
            raise ValueError(f"num_simulations must be >= 1, got {self.num_simulations}")
        if self.simulation_depth < 0:
            raise ValueError(f"simulation_depth must be >= 0, got {self.simulation_depth}")
        if self.max_children < 1:
            raise ValueError(f"max_children must be >= 1, got {self.max_children}")
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got {self.max_concurrency}")

    @classmethod
    def from_config(cls, config: Optional[Dict] = None, **overrides) -> "MCTSConfig":
        config = config or get_search_config()
        mcts_cfg = config.get("mcts", {})
        rollout_cfg = config.get("rollout", {})

        values = {
            "num_simulations": int(mcts_cfg.get("num_simulations", 5)),
            "simulation_depth": int(mcts_cfg.get("simulation_depth", 3)),
            "max_depth": int(mcts_cfg.get("max_depth", 10)),
            "max_children": int(mcts_cfg.get("max_children", 3)),
            "exploration_constant": float(mcts_cfg.get("exploration_constant", 1.414)),
            "use_rave": bool(mcts_cfg.get("use_rave", True)),
            "rave_equivalence": float(mcts_cfg.get("rave_equivalence", 1.0)),
            "virtual_loss": float(mcts_cfg.get("virtual_loss", 1.0)),
            "max_concurrency": int(mcts_cfg.get("max_concurrency", 1)),
            "discount": float(rollout_cfg.get("discount", 0.95)),
            "closing_phrases": tuple(mcts_cfg.get("closing_phrases", DEFAULT_CLOSING_PHRASES)),
        }
        # explicit arguments beat the yaml / env values
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


def widen(depth: int) -> int:
    """Candidates considered at rollout step `depth` (0-based): 1,1,1,1,2,2,..."""
    return max(1, math.isqrt(depth))


@dataclass
class RolloutResult:
    value: float
    actions: List[str] = field(default_factory=list)
    steps: int = 0


class SearchEngine:
    """
    PUCT + RAVE tree search over dialogue continuations.

    One engine runs one search at a time: the transposition table, virtual-loss
    marks and root are rebuilt by every `find_best_response` call.
    """

    def __init__(
        self,
        policy: SearchPolicy,
        config: Optional[MCTSConfig] = None,
        rng: Optional[np.random.Generator] = None,
        observer: Optional[SearchObserver] = None
    ):
        self.policy = policy
        self.config = config or MCTSConfig.from_config()
        self.rng = rng if rng is not None else np.random.default_rng()
        self.observer = observer or LoggingObserver()

        self.table = TranspositionTable()
        self.root: Optional[SearchNode] = None
        self._in_progress: Counter = Counter()

    def is_terminal(self, state: DialogueState) -> bool:
        return state.is_terminal(self.config.max_depth, self.config.closing_phrases)

    def score(self, parent: SearchNode, child: SearchNode) -> float:
        value = parent.puct_rave_score(
            child,
            exploration_constant=self.config.exploration_constant,
            rave_equivalence=self.config.rave_equivalence,
            use_rave=self.config.use_rave,
        )
        pending = self._in_progress[child.key]
        if pending:
            value -= self.config.virtual_loss * pending
        return value

    def best_child(self, node: SearchNode) -> SearchNode:
        return max(node.children, key=lambda c: self.score(node, c))

    def _mark(self, node: SearchNode):
        self._in_progress[node.key] += 1

    def _release(self, path: Sequence[SearchNode]):
        for node in path[1:]:
            self._in_progress[node.key] -= 1
            if self._in_progress[node.key] <= 0:
                del self._in_progress[node.key]

    def select(self, root: SearchNode) -> List[SearchNode]:
        path = [root]
        node = root
        while not self.is_terminal(node.state) and node.is_fully_expanded and node.children:
            node = self.best_child(node)
            self._mark(node)
            path.append(node)

        self.observer.on_select(path)
        return path

    async def expand(self, node: SearchNode) -> List[SearchNode]:
        if self.is_terminal(node.state) or node.is_fully_expanded:
            return node.children

        actions = unique_actions(
            await self.policy.generate_actions(node.state, self.config.max_children)
        )
        if not actions:
            # dead end: never retried
            node.is_fully_expanded = True
            self.observer.on_expand(node, 0)
            return node.children

        priors = await self.policy.estimate_priors(node.state, actions)

        # a concurrent simulation may have expanded this node while we awaited
        if node.is_fully_expanded:
            return node.children

        for action in actions:
            child_state = node.state.with_appended_message("assistant", action)
            child, _ = self.table.get_or_create(child_state, parent=node, action=action)
            node.add_child(child, priors.get(action, 0.0))

        node.is_fully_expanded = True
        self.observer.on_expand(node, len(node.children))
        return node.children

    def _record_evaluation(self, node: SearchNode, evaluation: Evaluation):
        # same hash, now carrying the per-criterion metrics
        node.state = evaluation.state
        self.observer.on_evaluate(node, evaluation.score, evaluation.metrics)

    async def _rollout(self, node: SearchNode) -> RolloutResult:
        state = node.state
        total = 0.0
        played = []

        for depth in range(self.config.simulation_depth):
            if self.is_terminal(state):
                break

            width = widen(depth)
            actions = await self.policy.generate_actions(state, min(width, self.config.max_children))
            if not actions:
                break

            candidates = actions[:width]
            action = candidates[int(self.rng.integers(len(candidates)))]
            state = state.with_appended_message("assistant", action)

            evaluation = await self.policy.evaluate(state)
            total += evaluation.score * (self.config.discount ** depth)
            played.append(action)

        if not played:
            evaluation = await self.policy.evaluate(node.state)
            self._record_evaluation(node, evaluation)
            return RolloutResult(value=evaluation.score)

        value = total / len(played)
        self.observer.on_evaluate(node, value, None)
        return RolloutResult(value=value, actions=played, steps=len(played))

    async def simulate(self, node: SearchNode) -> float:
        result = await self._rollout(node)
        return result.value

    def backpropagate(
        self,
        path: Sequence[SearchNode],
        value: float,
        actions: Sequence[str] = ()
    ):
        for node in reversed(path):
            node.update(value)

        if self.config.use_rave:
            self._update_rave(path, value, actions)

        self.observer.on_backpropagate(list(path), value)

    def _update_rave(self, path: Sequence[SearchNode], value: float, actions: Sequence[str]):
        # all-moves-as-first: credit every sibling whose action was played later on
        played_after = set(actions)
        touched = set()

        for i in range(len(path) - 1, -1, -1):
            node = path[i]
            if i > 0 and node.key not in touched:
                node.update_rave(value)
                touched.add(node.key)

            for child in node.children:
                if child.action in played_after and child.key not in touched:
                    child.update_rave(value)
                    touched.add(child.key)

            if node.action is not None:
                played_after.add(node.action)

    async def _run_simulation(self):
        path = self.select(self.root)
        try:
            leaf = path[-1]
            actions: List[str] = []

            if self.is_terminal(leaf.state):
                evaluation = await self.policy.evaluate(leaf.state)
                self._record_evaluation(leaf, evaluation)
                value = evaluation.score
            else:
                await self.expand(leaf)
                start = leaf
                if leaf.children:
                    start = self.best_child(leaf)
                    self._mark(start)
                    path.append(start)
                rollout = await self._rollout(start)
                value, actions = rollout.value, rollout.actions

            self.backpropagate(path, value, actions)
        finally:
            self._release(path)

    def _validate_root(self, state: DialogueState):
        if not isinstance(state, DialogueState):
            raise ValueError(f"initial state must be a DialogueState, got {type(state).__name__}")
        if state.depth < 0:
            raise ValueError(f"initial depth must be >= 0, got {state.depth}")
        if not state.current_query.strip():
            raise ValueError("initial state has an empty query")
        for message in state.conversation_history:
            if message.role not in VALID_ROLES:
                raise ValueError(f"invalid message role: {message.role!r}")
        if self.is_terminal(state):
            raise ValueError("initial state is already terminal")

    async def find_best_response(self, initial_state: DialogueState) -> Dict:
        self._validate_root(initial_state)

        self.table = TranspositionTable()
        self._in_progress = Counter()
        self.root = self.table.seed(initial_state)

        usage = self.policy.usage
        tokens_before = usage.completion_tokens
        calls_before = usage.calls
        failures_before = usage.failures

        num_simulations = self.config.num_simulations
        self.observer.on_search_start(self.root, num_simulations)

        if self.config.max_concurrency == 1:
            for _ in range(num_simulations):
                await self._run_simulation()
        else:
            semaphore = asyncio.Semaphore(self.config.max_concurrency)

            async def bounded():
                async with semaphore:
                    await self._run_simulation()

            tasks = [asyncio.ensure_future(bounded()) for _ in range(num_simulations)]
            try:
                await asyncio.gather(*tasks)
            except BaseException:
                # no simulation may keep touching the tree once the search has failed
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                raise

        calls = usage.calls - calls_before
        failures = usage.failures - failures_before
        if calls > 0 and failures == calls:
            raise OracleUnavailableError(
                f"all {calls} oracle calls failed during search"
            ) from usage.last_error

        if not self.root.children:
            raise SearchError("search produced no candidate responses")

        best = self.root.select_best_child(mode="visits")
        self.observer.on_search_end(self.root, best)

        return {
            "best_response": best.action,
            "completion_tokens": usage.completion_tokens - tokens_before,
            "visits": best.visits,
            "value": best.average_value,
            "depth": best.depth,
            "tree_size": len(self.table),
            "root_visits": self.root.visits,
            "children": self.get_policy_distribution(self.root),
        }

    def get_policy_distribution(self, node: SearchNode) -> Dict[str, Dict[str, float]]:
        if not node.children:
            return {}

        visits = np.array([child.visits for child in node.children], dtype=np.float64)
        total_visits = visits.sum()
        if total_visits == 0:
            shares = np.ones(len(visits)) / len(visits)
        else:
            shares = visits / total_visits

        return {
            child.action: {
                "visits": child.visits,
                "value": child.average_value,
                "prior": node.prior_of(child),
                "share": float(share),
            }
            for child, share in zip(node.children, shares)
        }


async def mcts(
    oracle: Oracle,
    initial_query: str,
    system: str = "",
    history: Sequence[Dict[str, str]] = (),
    num_simulations: Optional[int] = None,
    simulation_depth: Optional[int] = None,
    max_depth: Optional[int] = None,
    max_children: Optional[int] = None,
    rng: Optional[np.random.Generator] = None,
    observer: Optional[SearchObserver] = None
) -> Tuple[str, int]:
    config = MCTSConfig.from_config(
        num_simulations=num_simulations,
        simulation_depth=simulation_depth,
        max_depth=max_depth,
        max_children=max_children,
    )
    engine = SearchEngine(OraclePolicy(oracle), config, rng=rng, observer=observer)
    state = DialogueState.from_messages(system, history, initial_query)

    try:
        result = await engine.find_best_response(state)
    except (OracleError, SearchError) as e:
        logger.error("mcts search failed: %s", e)
        raise

    return result["best_response"], result["completion_tokens"]
