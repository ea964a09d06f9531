import hashlib
import json
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Sequence, Tuple

VALID_ROLES = ("system", "user", "assistant")
DEFAULT_CLOSING_PHRASES = ("goodbye", "thank you")


@dataclass(frozen=True)
class Message:
    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}


@dataclass(frozen=True)
class EvaluationMetrics:
    coherence: float
    relevance: float
    engagement: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "coherence": self.coherence,
            "relevance": self.relevance,
            "engagement": self.engagement,
        }


@dataclass(frozen=True)
class DialogueState:
    """
    Immutable snapshot of a conversation being searched over.

    `depth` counts the messages appended since the search started, not the
    length of `conversation_history`.
    """
    system_prompt: str
    conversation_history: Tuple[Message, ...] = ()
    current_query: str = ""
    depth: int = 0
    metrics: Optional[EvaluationMetrics] = field(default=None, compare=False)

    @classmethod
    def from_messages(
        cls,
        system_prompt: str,
        messages: Sequence[Dict[str, str]],
        current_query: str,
        depth: int = 0
    ) -> "DialogueState":
        history = tuple(Message(m["role"], m["content"]) for m in messages)
        return cls(system_prompt, history, current_query, depth)

    def with_appended_message(self, role: str, content: str) -> "DialogueState":
        return DialogueState(
            system_prompt=self.system_prompt,
            conversation_history=self.conversation_history + (Message(role, content),),
            current_query=self.current_query,
            depth=self.depth + 1,
        )

    def with_metrics(self, metrics: Optional[EvaluationMetrics]) -> "DialogueState":
        return replace(self, metrics=metrics)

    def hash(self) -> str:
        payload = {
            "history": [[m.role, m.content] for m in self.conversation_history],
            "query": self.current_query,
            "depth": self.depth,
        }
        raw = json.dumps(payload, sort_keys=True, ensure_ascii=False).encode("utf-8")
        return hashlib.sha256(raw).hexdigest()

    def last_response(self) -> Optional[str]:
        if self.conversation_history and self.conversation_history[-1].role == "assistant":
            return self.conversation_history[-1].content
        return None

    def is_terminal(
        self,
        max_depth: int,
        closing_phrases: Sequence[str] = DEFAULT_CLOSING_PHRASES
    ) -> bool:
        # keyword heuristic, not semantic understanding
        if self.depth >= max_depth:
            return True
        texts = [self.current_query]
        if self.conversation_history:
            texts.append(self.conversation_history[-1].content)
        return any(phrase in text.lower() for text in texts for phrase in closing_phrases)

    def to_messages(self) -> List[Dict[str, str]]:
        messages = [m.to_dict() for m in self.conversation_history]
        messages.append({"role": "user", "content": self.current_query})
        return messages

    def __repr__(self) -> str:
        return (
            f"DialogueState(depth={self.depth}, turns={len(self.conversation_history)}, "
            f"query={self.current_query[:40]!r})"
        )
