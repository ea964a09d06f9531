import logging
import re
from dataclasses import dataclass
from typing import Dict, Optional

from ..core.state import DialogueState, EvaluationMetrics
from ..models.oracle import Oracle, OracleError
from ..prompts import evaluation_messages

logger = logging.getLogger(__name__)

LEADING_NUMBER_RE = re.compile(r"[-+]?(?:\d+(?:\.\d*)?|\.\d+)")

DEFAULT_WEIGHTS = {"coherence": 0.3, "relevance": 0.4, "engagement": 0.3}


@dataclass
class Evaluation:
    score: float
    metrics: Optional[EvaluationMetrics]
    state: DialogueState


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def parse_metrics(text: str) -> EvaluationMetrics:
    parts = [p.strip() for p in text.strip().split(",")]
    if len(parts) < 3:
        raise ValueError(f"expected three comma-separated numbers, got {text!r}")

    values = []
    for part in parts[:3]:
        # "0.7." or "0.7\nsome commentary": only the leading number counts
        match = LEADING_NUMBER_RE.match(part)
        if not match:
            raise ValueError(f"not a number: {part!r}")
        values.append(clamp01(float(match.group())))

    return EvaluationMetrics(coherence=values[0], relevance=values[1], engagement=values[2])


class StateEvaluator:
    def __init__(
        self,
        oracle: Oracle,
        weights: Optional[Dict[str, float]] = None,
        default_score: float = 0.5,
        temperature: float = 0.1,
        max_tokens: int = 256
    ):
        self.oracle = oracle
        self.weights = dict(weights or DEFAULT_WEIGHTS)
        self.default_score = default_score
        self.temperature = temperature
        self.max_tokens = max_tokens

    def combine(self, metrics: EvaluationMetrics) -> float:
        return (
            self.weights["coherence"] * metrics.coherence +
            self.weights["relevance"] * metrics.relevance +
            self.weights["engagement"] * metrics.engagement
        )

    async def evaluate(self, state: DialogueState) -> Evaluation:
        try:
            completion = await self.oracle.generate(
                evaluation_messages(state),
                system_prompt=state.system_prompt,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OracleError as e:
            logger.warning("evaluation failed, using neutral score: %s", e)
            return Evaluation(score=self.default_score, metrics=None, state=state)

        try:
            metrics = parse_metrics(completion.text)
        except ValueError as e:
            logger.warning("unparsable evaluation, using neutral score: %s", e)
            return Evaluation(score=self.default_score, metrics=None, state=state)

        return Evaluation(
            score=self.combine(metrics),
            metrics=metrics,
            state=state.with_metrics(metrics),
        )
