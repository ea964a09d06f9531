import math
from typing import Dict, List, Optional

from .state import DialogueState


class SearchNode:
    def __init__(
        self,
        state: DialogueState,
        parent_key: Optional[str] = None,
        action: Optional[str] = None
    ):
        self.state = state
        self.key = state.hash()
        # first parent's key, resolved through the transposition table
        self.parent_key = parent_key
        self.action = action
        self.children: List["SearchNode"] = []
        self.priors: Dict[str, float] = {}
        self.visits = 0
        self.total_value = 0.0
        self.rave_visits = 0
        self.rave_value = 0.0
        self.is_fully_expanded = False

    @property
    def depth(self) -> int:
        return self.state.depth

    @property
    def average_value(self) -> float:
        if self.visits == 0:
            return 0.0
        return self.total_value / self.visits

    @property
    def rave_average(self) -> float:
        if self.rave_visits == 0:
            return 0.0
        return self.rave_value / self.rave_visits

    def prior_of(self, child: "SearchNode") -> float:
        return self.priors.get(child.key, 0.0)

    def has_child(self, key: str) -> bool:
        return any(child.key == key for child in self.children)

    def add_child(self, child: "SearchNode", prior: float) -> bool:
        if self.has_child(child.key):
            # same state reached twice from here, keep the stronger prior
            self.priors[child.key] = max(self.priors.get(child.key, 0.0), prior)
            return False
        self.children.append(child)
        self.priors[child.key] = prior
        return True

    def update(self, value: float):
        self.visits += 1
        self.total_value += value

    def update_rave(self, value: float):
        self.rave_visits += 1
        self.rave_value += value

    def puct_rave_score(
        self,
        child: "SearchNode",
        exploration_constant: float = 1.414,
        rave_equivalence: float = 1.0,
        use_rave: bool = True
    ) -> float:
        prior = self.prior_of(child)
        exploration = exploration_constant * prior * (
            math.sqrt(self.visits) / (1 + child.visits)
        )

        if not use_rave:
            return child.average_value + exploration

        denominator = child.visits + child.rave_visits + rave_equivalence * prior * self.visits
        beta = child.visits / denominator if denominator > 0 else 0.0

        return beta * child.average_value + (1 - beta) * child.rave_average + exploration

    def select_best_child(self, mode: str = "visits") -> "SearchNode":
        if not self.children:
            return self

        if mode == "visits":
            return max(self.children, key=lambda c: c.visits)
        elif mode == "value":
            return max(self.children, key=lambda c: c.average_value)
        elif mode == "prior":
            return max(self.children, key=lambda c: self.prior_of(c))
        else:
            raise ValueError(f"Invalid mode: {mode}. Must be 'visits', 'value' or 'prior'")

    def get_subtree_size(self, _seen=None) -> int:
        # transpositions make this a DAG, so count each node once
        seen = set() if _seen is None else _seen
        if self.key in seen:
            return 0
        seen.add(self.key)
        return 1 + sum(child.get_subtree_size(seen) for child in self.children)

    def __repr__(self) -> str:
        action = (self.action or "<root>")[:30]
        return (
            f"SearchNode(action={action!r}, visits={self.visits}, "
            f"value={self.total_value:.3f}, depth={self.depth})"
        )
