import logging
import re
from typing import Dict, List, Optional, Sequence

import numpy as np

from ..core.state import DialogueState
from ..models.oracle import Oracle, OracleError
from ..prompts import rate_actions_prompt

logger = logging.getLogger(__name__)

NUMBER_RE = re.compile(r"-?\d+(?:\.\d+)?")
ENUMERATION_RE = re.compile(r"^\s*\d+[.):]\s+")


def softmax(scores: Sequence[float]) -> np.ndarray:
    values = np.asarray(scores, dtype=np.float64)
    shifted = np.exp(values - values.max())
    return shifted / shifted.sum()


def uniform_priors(actions: Sequence[str]) -> Dict[str, float]:
    if not actions:
        return {}
    p = 1.0 / len(actions)
    return {action: p for action in actions}


def parse_scores(text: str) -> List[float]:
    scores = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        # "2. 7.5", "7.5" or "9/10": the first number after any enumeration
        match = NUMBER_RE.search(ENUMERATION_RE.sub("", line, count=1)) or NUMBER_RE.search(line)
        if not match:
            raise ValueError(f"no score on line: {line!r}")
        scores.append(float(match.group()))
    return scores


class ActionPriorEstimator:
    def __init__(
        self,
        oracle: Oracle,
        temperature: float = 0.1,
        max_tokens: int = 256
    ):
        self.oracle = oracle
        self.temperature = temperature
        self.max_tokens = max_tokens

    async def calculate_action_priors(
        self,
        state: DialogueState,
        actions: Sequence[str]
    ) -> Dict[str, float]:
        actions = list(actions)
        if not actions:
            return {}
        if len(actions) == 1:
            return {actions[0]: 1.0}

        try:
            completion = await self.oracle.generate(
                rate_actions_prompt(state, actions),
                system_prompt=state.system_prompt,
                temperature=self.temperature,
                max_tokens=self.max_tokens,
            )
        except OracleError as e:
            logger.warning("prior estimation failed, using uniform priors: %s", e)
            return uniform_priors(actions)

        priors = self._priors_from_text(completion.text, actions)
        if priors is None:
            logger.warning("could not parse %d action scores from %r, using uniform priors", len(actions), completion.text[:80])
            return uniform_priors(actions)
        return priors

    def _priors_from_text(self, text: str, actions: List[str]) -> Optional[Dict[str, float]]:
        try:
            scores = parse_scores(text)
        except ValueError:
            return None

        if len(scores) != len(actions) or not np.all(np.isfinite(scores)):
            return None

        probs = softmax(scores)
        priors: Dict[str, float] = {}
        for action, p in zip(actions, probs):
            # duplicated texts share one child, so their mass adds up
            priors[action] = priors.get(action, 0.0) + float(p)
        return priors
