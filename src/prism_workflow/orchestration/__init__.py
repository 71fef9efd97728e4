"""Orchestration components for the workflow control plane.

This package contains:
- WorkflowOrchestrator: sequences detection, credentials, locking, sessions and steps
- WorkflowRecoveryManager: stop requests and resume guidance
- SkillStep / LLMClient / StepContext: the collaborator boundary
- default_steps(): the five-step discovery pipeline
"""

from .pipeline import default_steps
from .protocols import LLMClient, SkillStep, StepContext
from .recovery import WorkflowRecoveryManager
from .workflow import WorkflowOrchestrator, calculate_retry_delay

__all__ = [
    "WorkflowOrchestrator",
    "WorkflowRecoveryManager",
    "SkillStep",
    "LLMClient",
    "StepContext",
    "default_steps",
    "calculate_retry_delay",
]
