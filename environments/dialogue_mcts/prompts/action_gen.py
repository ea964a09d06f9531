from typing import Dict, List, Sequence

from ..core.state import DialogueState


def next_utterance_messages(state: DialogueState) -> List[Dict[str, str]]:
    return state.to_messages()


def rate_actions_prompt(state: DialogueState, actions: Sequence[str]) -> str:
    transcript = "\n".join(
        f"{m.role}: {m.content}" for m in state.conversation_history
    ) or "(no previous messages)"

    numbered = "\n".join(
        f"{i}. {action.strip()}" for i, action in enumerate(actions, 1)
    )

    return f"""conversation so far:
{transcript}

user query: {state.current_query}

candidate responses:
{numbered}

rate how appropriate each candidate response is as the next message, on a scale of 0 to 10.
respond with exactly {len(actions)} lines, one score per line, in the same order. numbers only.

scores:"""
