from typing import Dict, List

from ..core.state import DialogueState


def evaluate_conversation_prompt() -> str:
    return """Evaluate this conversation on the following criteria:
1. Coherence (0-1)
2. Relevance (0-1)
3. Engagement (0-1)
Respond with three numbers separated by commas."""


def evaluation_messages(state: DialogueState) -> List[Dict[str, str]]:
    messages = [m.to_dict() for m in state.conversation_history]
    messages.append({"role": "user", "content": evaluate_conversation_prompt()})
    return messages
