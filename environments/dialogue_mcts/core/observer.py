import logging
from typing import List, Optional

from .state import EvaluationMetrics
from .tree import SearchNode

logger = logging.getLogger(__name__)


class SearchObserver:
    """
    Lifecycle hook for a search. Subclass and override what you need;
    every method is a no-op by default.
    """

    def on_search_start(self, root: SearchNode, num_simulations: int):
        pass

    def on_select(self, path: List[SearchNode]):
        pass

    def on_expand(self, node: SearchNode, num_children: int):
        pass

    def on_evaluate(self, node: SearchNode, value: float, metrics: Optional[EvaluationMetrics]):
        pass

    def on_backpropagate(self, path: List[SearchNode], value: float):
        pass

    def on_search_end(self, root: SearchNode, best: SearchNode):
        pass


class LoggingObserver(SearchObserver):
    def __init__(self, level: int = logging.DEBUG):
        self.level = level

    def on_search_start(self, root: SearchNode, num_simulations: int):
        logger.log(self.level, "search start: %d simulations from %r", num_simulations, root.state)

    def on_select(self, path: List[SearchNode]):
        logger.log(self.level, "selected %r (path length %d)", path[-1], len(path))

    def on_expand(self, node: SearchNode, num_children: int):
        if num_children == 0:
            logger.log(self.level, "expanded %r: no candidates, branch pruned", node)
        else:
            logger.log(self.level, "expanded %r into %d children", node, num_children)

    def on_evaluate(self, node: SearchNode, value: float, metrics: Optional[EvaluationMetrics]):
        logger.log(self.level, "evaluated %r: %.3f %s", node, value, metrics.to_dict() if metrics else "")

    def on_backpropagate(self, path: List[SearchNode], value: float):
        logger.log(self.level, "backpropagated %.3f over %d nodes", value, len(path))

    def on_search_end(self, root: SearchNode, best: SearchNode):
        logger.log(
            self.level,
            "search done: root visits=%d, best=%r",
            root.visits,
            best,
        )
