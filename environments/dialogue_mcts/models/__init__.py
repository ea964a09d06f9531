from .oracle import (
    Completion,
    Oracle,
    OpenAIOracle,
    OracleError,
    OracleUnavailableError,
    TrackedOracle,
    UsageTracker,
)
from .cache import CachedOracle
from .scripted import ScriptedOracle
from .action_generator import ActionGenerator

__all__ = [
    'Completion',
    'Oracle',
    'OpenAIOracle',
    'OracleError',
    'OracleUnavailableError',
    'TrackedOracle',
    'UsageTracker',
    'CachedOracle',
    'ScriptedOracle',
    'ActionGenerator',
]
