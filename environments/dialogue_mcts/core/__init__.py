from .state import DialogueState, EvaluationMetrics, Message
from .tree import SearchNode
from .transposition import TranspositionTable
from .observer import LoggingObserver, SearchObserver

__all__ = [
    "DialogueState",
    "EvaluationMetrics",
    "Message",
    "SearchNode",
    "TranspositionTable",
    "LoggingObserver",
    "SearchObserver",
]
