from typing import Iterable, List, Optional, Sequence, Tuple

from ..prompts import evaluate_conversation_prompt
from .oracle import Completion, Messages, Oracle, OracleError, as_messages

GENERATE = "generate"
PRIORS = "priors"
EVALUATE = "evaluate"


def classify_prompt(prompt: Messages) -> str:
    messages = as_messages(prompt)
    last = messages[-1]["content"] if messages else ""
    if last == evaluate_conversation_prompt():
        return EVALUATE
    if "candidate responses:" in last:
        return PRIORS
    return GENERATE


class ScriptedOracle(Oracle):
    """
    Deterministic oracle for tests and offline runs.

    Generation calls cycle through `actions`, prior calls answer `prior_text`
    (or one "5" per line) and evaluation calls answer `evaluation`. Call kinds
    listed in `fail_on` raise OracleError instead.
    """

    def __init__(
        self,
        actions: Sequence[str] = ("OK",),
        evaluation: str = "0.7, 0.7, 0.7",
        prior_text: Optional[str] = None,
        tokens_per_call: int = 1,
        fail_on: Iterable[str] = ()
    ):
        self.actions = list(actions)
        self.evaluation = evaluation
        self.prior_text = prior_text
        self.tokens_per_call = tokens_per_call
        self.fail_on = set(fail_on)
        self.calls: List[Tuple[str, float]] = []
        self._generated = 0

    def count(self, kind: str) -> int:
        return sum(1 for k, _ in self.calls if k == kind)

    async def generate(
        self,
        prompt: Messages,
        system_prompt: Optional[str] = None,
        temperature: float = 0.8,
        max_tokens: int = 512
    ) -> Completion:
        kind = classify_prompt(prompt)
        self.calls.append((kind, temperature))

        if kind in self.fail_on:
            raise OracleError(f"scripted {kind} failure")

        if kind == EVALUATE:
            text = self.evaluation
        elif kind == PRIORS:
            text = self.prior_text if self.prior_text is not None else self._default_priors(prompt)
        else:
            text = self.actions[self._generated % len(self.actions)] if self.actions else ""
            self._generated += 1

        return Completion(text=text, completion_tokens=self.tokens_per_call)

    def _default_priors(self, prompt: Messages) -> str:
        last = as_messages(prompt)[-1]["content"]
        block = last.split("candidate responses:", 1)[1].split("rate how", 1)[0]
        n = sum(1 for line in block.strip().splitlines() if line.strip())
        return "\n".join(["5"] * n)
