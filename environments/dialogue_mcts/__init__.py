from .core.mcts import MCTSConfig, SearchEngine, SearchError, mcts, widen
from .core.policy import OraclePolicy, SearchPolicy
from .core.state import DialogueState, EvaluationMetrics, Message
from .core.observer import LoggingObserver, SearchObserver
from .models import (
    CachedOracle,
    Completion,
    OpenAIOracle,
    Oracle,
    OracleError,
    OracleUnavailableError,
    ScriptedOracle,
)

__all__ = [
    "MCTSConfig",
    "SearchEngine",
    "SearchError",
    "mcts",
    "widen",
    "OraclePolicy",
    "SearchPolicy",
    "DialogueState",
    "EvaluationMetrics",
    "Message",
    "LoggingObserver",
    "SearchObserver",
    "CachedOracle",
    "Completion",
    "OpenAIOracle",
    "Oracle",
    "OracleError",
    "OracleUnavailableError",
    "ScriptedOracle",
]
