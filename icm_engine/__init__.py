"""
icm_engine: derivation, evaluation and lifecycle engine for incentive compensation.
"""

__version__ = "0.1.0"

from .errors import (
    BatchNotFound,
    ConcurrentTransitionError,
    ConfigurationError,
    EngineError,
    InvalidTransition,
    LifecycleError,
    PersistenceFailure,
    SeparationOfDutiesViolation,
)
