"""Action step handlers and template personalization."""

from .handlers import HANDLERS, ActionContext, ActionOutcome, run_action
from .personalization import TOKENS, personalize, unknown_tokens

__all__ = [
    "HANDLERS",
    "TOKENS",
    "ActionContext",
    "ActionOutcome",
    "personalize",
    "run_action",
    "unknown_tokens",
]
