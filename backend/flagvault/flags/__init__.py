"Feature flag evaluation: context lookup, rules, segments, rollout hashing and the engine."

from .attributes import EvaluationContext  # noqa: F401
from .engine import FlagEvaluationEngine, build_preview_context  # noqa: F401
from .errors import Conflict, FlagError, FlagNotFound, InvalidArgument  # noqa: F401
from .models import EvaluationResult, Flag, FlagSnapshot, Reason, TargetingConfig  # noqa: F401
from .registry import DatabaseFlagRegistry, InMemoryFlagRegistry  # noqa: F401
