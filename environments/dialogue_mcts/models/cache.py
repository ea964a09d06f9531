import hashlib
import json
from typing import Dict, Optional

from .oracle import Completion, Messages, Oracle, as_messages


def _cache_key(
    prompt: Messages,
    system_prompt: Optional[str],
    temperature: float,
    max_tokens: int
) -> str:
    raw = json.dumps(
        {
            "messages": as_messages(prompt),
            "system": system_prompt or "",
            "temperature": round(float(temperature), 6),
            "max_tokens": int(max_tokens),
        },
        sort_keys=True,
        ensure_ascii=False,
    ).encode("utf-8")
    return hashlib.sha256(raw).hexdigest()


class CachedOracle(Oracle):
    """
    Memoizes completions by (messages, system prompt, sampling params).

    Hits report zero completion tokens since nothing was generated. Failures
    are not cached.
    """

    def __init__(self, oracle: Oracle):
        self.oracle = oracle
        self._cache: Dict[str, Completion] = {}
        self.hits = 0
        self.misses = 0

    async def generate(
        self,
        prompt: Messages,
        system_prompt: Optional[str] = None,
        temperature: float = 0.8,
        max_tokens: int = 512
    ) -> Completion:
        key = _cache_key(prompt, system_prompt, temperature, max_tokens)
        if key in self._cache:
            self.hits += 1
            return Completion(text=self._cache[key].text, completion_tokens=0)

        self.misses += 1
        completion = await self.oracle.generate(
            prompt,
            system_prompt=system_prompt,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        self._cache[key] = completion
        return completion

    def clear_cache(self):
        self._cache.clear()
