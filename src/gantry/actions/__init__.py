from .images import default_actions
from .registry import ActionContext, ActionRegistry, ActionSpec, Input

__all__ = ["default_actions", "ActionContext", "ActionRegistry", "ActionSpec", "Input"]
