"""Protocol definitions for the workflow's external collaborators.

These protocols define the boundary between the control plane and the
work it sequences:
- SkillStep: one step of the document pipeline
- LLMClient: the language-model backend, driven through a cancellation token

Steps and clients are injected, so tests drive the orchestrator with
simple fakes instead of a network backend.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol, runtime_checkable

from ..timeout import CancellationToken


@runtime_checkable
class LLMClient(Protocol):
    """Protocol for the language-model backend."""

    async def complete(
        self,
        prompt: str,
        token: CancellationToken,
        system: Optional[str] = None,
    ) -> str:
        """Return the model's text reply; must honour the token."""
        ...


@dataclass
class StepContext:
    """Everything a step may read while it runs."""
    session_id: str
    session_dir: Path
    step_dir: Path
    inputs: dict[str, Any]
    prior_outputs: dict[str, Any]
    token: CancellationToken
    llm: Optional[LLMClient] = None
    attempt: int = 1


@runtime_checkable
class SkillStep(Protocol):
    """Protocol for a workflow step.

    A step returns the outputs to record on the session. Returning
    {"skipped": "<reason>"} records the step as completed without work.
    Long-running work must poll or await ctx.token.
    """

    step_id: str
    name: str

    async def run(self, ctx: StepContext) -> dict[str, Any]:
        """Execute the step and return its outputs."""
        ...
