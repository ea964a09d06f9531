import logging
from typing import List, Optional

from ..core.state import DialogueState
from ..prompts import next_utterance_messages
from .oracle import Oracle, OracleError

logger = logging.getLogger(__name__)


class ActionGenerator:
    def __init__(
        self,
        oracle: Oracle,
        base_temperature: float = 0.8,
        temperature_step: float = 0.1,
        max_tokens: int = 4096
    ):
        self.oracle = oracle
        self.base_temperature = base_temperature
        self.temperature_step = temperature_step
        self.max_tokens = max_tokens

    def temperature_for(self, index: int) -> float:
        return self.base_temperature + index * self.temperature_step

    async def generate_actions(self, state: DialogueState, k: int) -> List[str]:
        """
        Draws k candidate next utterances, one oracle call each, with an
        ascending temperature schedule for diversity. A failed call anywhere in
        the batch yields no candidates so the caller prunes the branch.
        """
        messages = next_utterance_messages(state)
        actions = []

        for i in range(k):
            try:
                completion = await self.oracle.generate(
                    messages,
                    system_prompt=state.system_prompt,
                    temperature=self.temperature_for(i),
                    max_tokens=self.max_tokens,
                )
            except OracleError as e:
                logger.warning("action generation failed at depth %d: %s", state.depth, e)
                return []

            text = completion.text.strip()
            if text:
                actions.append(text)

        return actions


def unique_actions(actions: List[str], limit: Optional[int] = None) -> List[str]:
    seen = set()
    unique = []
    for action in actions:
        if action in seen:
            continue
        seen.add(action)
        unique.append(action)
    return unique[:limit] if limit is not None else unique
