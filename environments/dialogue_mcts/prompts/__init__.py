from .action_gen import (
    next_utterance_messages,
    rate_actions_prompt,
)

from .evaluation import (
    evaluate_conversation_prompt,
    evaluation_messages,
)

__all__ = [
    "next_utterance_messages",
    "rate_actions_prompt",
    "evaluate_conversation_prompt",
    "evaluation_messages",
]
