"""crmflow: workflow automation engine for CRM contacts."""

from .engine import WorkflowEngine
from .models import Workflow
from .contracts import BatchReport, Enrollment
from .persistence import get_repository
from .runner import BatchRunner
from .triggers import TriggerDispatcher, TriggerEvent
from .workflows import WorkflowManager

__version__ = "0.1.0"
__all__ = [
    "BatchReport",
    "BatchRunner",
    "Enrollment",
    "TriggerDispatcher",
    "TriggerEvent",
    "Workflow",
    "WorkflowEngine",
    "WorkflowManager",
    "get_repository",
]
