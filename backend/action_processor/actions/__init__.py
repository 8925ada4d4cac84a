"""Action model, result vocabulary, dispatcher and handlers."""

from action_processor.actions.models import Action, ActionType, Platform
from action_processor.actions.results import ResultKind, UniformResult

__all__ = ["Action", "ActionType", "Platform", "ResultKind", "UniformResult"]
