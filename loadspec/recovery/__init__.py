"""loadspec -- Error recovery module.

Classifies pipeline failures into a level/type taxonomy and drives
confidence-ranked retry, fallback, and prompt-enhancement strategies.

Public API
----------
.. autoclass:: ErrorRecoverySystem
.. autoclass:: ErrorRecoveryConfig
.. autoclass:: ParseError
.. autoclass:: RecoveryStrategy
.. autoclass:: RecoveryContext
.. autoclass:: RecoveryResult
.. autoclass:: ParseFailure
"""

from .errors import (
    DEADLINE_EXCEEDED,
    MAX_RETRIES_EXCEEDED,
    ErrorLevel,
    ParseError,
    ParseFailure,
    RecoveryContext,
    RecoveryResult,
    RecoveryState,
    RecoveryStrategy,
    StrategyKind,
)
from .recovery import ClassificationRule, ErrorRecoveryConfig, ErrorRecoverySystem

__all__ = [
    "ErrorRecoverySystem",
    "ErrorRecoveryConfig",
    "ClassificationRule",
    "ErrorLevel",
    "StrategyKind",
    "RecoveryState",
    "ParseError",
    "ParseFailure",
    "RecoveryContext",
    "RecoveryResult",
    "RecoveryStrategy",
    "MAX_RETRIES_EXCEEDED",
    "DEADLINE_EXCEEDED",
]
