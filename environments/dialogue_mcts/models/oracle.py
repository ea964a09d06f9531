import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Union

import openai
from dotenv import load_dotenv
from openai import AsyncOpenAI

from ..config import get_oracle_settings


Messages = Union[str, Sequence[Dict[str, str]]]


class OracleError(Exception):
    """A single oracle call failed (transport, timeout, rate limit)."""


class OracleUnavailableError(OracleError):
    """No oracle call succeeded during a whole search."""


@dataclass
class Completion:
    text: str
    completion_tokens: int = 0


def as_messages(prompt: Messages) -> List[Dict[str, str]]:
    if isinstance(prompt, str):
        return [{"role": "user", "content": prompt}]
    return [dict(m) for m in prompt]


class Oracle(ABC):
    """Generative text capability the search queries for actions, priors and values."""

    @abstractmethod
    async def generate(
        self,
        prompt: Messages,
        system_prompt: Optional[str] = None,
        temperature: float = 0.8,
        max_tokens: int = 512
    ) -> Completion:
        ...


class OpenAIOracle(Oracle):
    def __init__(
        self,
        model_name: Optional[str] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[AsyncOpenAI] = None
    ):
        load_dotenv()
        settings = get_oracle_settings()

        if model_name is None:
            model_name = os.environ.get(settings.get("model_env", "ORACLE_MODEL"), settings.get("name"))

        if base_url is None:
            base_url = os.environ.get(settings.get("base_url_env", "ORACLE_BASE_URL"), settings.get("base_url"))

        if api_key is None:
            api_key = os.environ.get(settings.get("api_key_env", "ORACLE_API_KEY"), "")

        if not model_name:
            raise ValueError("oracle model name is not configured")

        self.model_name = model_name
        self.base_url = base_url
        self.client = client or AsyncOpenAI(
            base_url=base_url,
            api_key=api_key or None,
            timeout=timeout if timeout is not None else settings.get("timeout", 60.0),
            max_retries=settings.get("max_retries", 2),
        )

    async def generate(
        self,
        prompt: Messages,
        system_prompt: Optional[str] = None,
        temperature: float = 0.8,
        max_tokens: int = 512
    ) -> Completion:
        messages = as_messages(prompt)
        if system_prompt:
            messages = [{"role": "system", "content": system_prompt}] + messages

        try:
            result = await self.client.chat.completions.create(
                model=self.model_name,
                messages=messages,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except openai.APIError as e:
            # APIConnectionError / APITimeoutError / APIStatusError all derive from APIError
            raise OracleError(f"{self.model_name}: {e}") from e

        if not result.choices:
            return Completion(text="", completion_tokens=0)

        text = (result.choices[0].message.content or "").strip()
        tokens = result.usage.completion_tokens if result.usage else 0
        return Completion(text=text, completion_tokens=tokens or 0)


@dataclass
class UsageTracker:
    completion_tokens: int = 0
    calls: int = 0
    failures: int = 0
    last_error: Optional[BaseException] = None

    @property
    def successes(self) -> int:
        return self.calls - self.failures

    def record(self, completion: Completion):
        self.calls += 1
        self.completion_tokens += completion.completion_tokens

    def record_failure(self, error: BaseException):
        self.calls += 1
        self.failures += 1
        self.last_error = error


class TrackedOracle(Oracle):
    """Meters every call of the wrapped oracle into one UsageTracker."""

    def __init__(self, oracle: Oracle, usage: Optional[UsageTracker] = None):
        self.oracle = oracle
        self.usage = usage or UsageTracker()

    async def generate(
        self,
        prompt: Messages,
        system_prompt: Optional[str] = None,
        temperature: float = 0.8,
        max_tokens: int = 512
    ) -> Completion:
        try:
            completion = await self.oracle.generate(
                prompt,
                system_prompt=system_prompt,
                temperature=temperature,
                max_tokens=max_tokens,
            )
        except OracleError as e:
            self.usage.record_failure(e)
            raise
        self.usage.record(completion)
        return completion
