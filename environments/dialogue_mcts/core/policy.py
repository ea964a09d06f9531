from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from ..config import get_search_config
from ..models.action_generator import ActionGenerator
from ..models.oracle import Oracle, TrackedOracle, UsageTracker
from ..rewards.evaluator import Evaluation, StateEvaluator
from ..rewards.priors import ActionPriorEstimator
from .state import DialogueState


class SearchPolicy(ABC):
    """
    What the search needs from the outside world. Production, cached and
    deterministic test policies are interchangeable behind this interface.
    """

    usage: UsageTracker

    @abstractmethod
    async def generate_actions(self, state: DialogueState, k: int) -> List[str]:
        ...

    @abstractmethod
    async def estimate_priors(self, state: DialogueState, actions: Sequence[str]) -> Dict[str, float]:
        ...

    @abstractmethod
    async def evaluate(self, state: DialogueState) -> Evaluation:
        ...


class OraclePolicy(SearchPolicy):
    def __init__(
        self,
        oracle: Oracle,
        config: Optional[Dict] = None
    ):
        config = config or get_search_config()
        gen_cfg = config.get("generation", {})
        prior_cfg = config.get("priors", {})
        eval_cfg = config.get("evaluation", {})

        self.oracle = TrackedOracle(oracle)
        self.usage = self.oracle.usage

        self.generator = ActionGenerator(
            self.oracle,
            base_temperature=gen_cfg.get("base_temperature", 0.8),
            temperature_step=gen_cfg.get("temperature_step", 0.1),
            max_tokens=gen_cfg.get("max_tokens", 4096),
        )
        self.prior_estimator = ActionPriorEstimator(
            self.oracle,
            temperature=prior_cfg.get("temperature", 0.1),
            max_tokens=prior_cfg.get("max_tokens", 256),
        )
        self.evaluator = StateEvaluator(
            self.oracle,
            weights=eval_cfg.get("weights"),
            default_score=eval_cfg.get("default_score", 0.5),
            temperature=eval_cfg.get("temperature", 0.1),
            max_tokens=eval_cfg.get("max_tokens", 256),
        )

    async def generate_actions(self, state: DialogueState, k: int) -> List[str]:
        return await self.generator.generate_actions(state, k)

    async def estimate_priors(self, state: DialogueState, actions: Sequence[str]) -> Dict[str, float]:
        return await self.prior_estimator.calculate_action_priors(state, actions)

    async def evaluate(self, state: DialogueState) -> Evaluation:
        return await self.evaluator.evaluate(state)
