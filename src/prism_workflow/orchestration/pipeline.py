"""Default discovery pipeline.

Five steps, run in this order:
1. prd-analysis     - extract requirements from the PRD
2. figma-analysis   - extract UI components (skipped without a design source)
3. validation       - cross-check requirements against the components
4. clarification    - list open questions for stakeholders
5. tdd-generation   - draft the technical design document

Each step is thin glue: build a prompt from the inputs and earlier
outputs, ask the LLM client, write the reply into the step's directory and
return its path as the step output.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from ..errors import StepFailure
from ..session_store import atomic_write
from .protocols import StepContext


SYSTEM_PROMPT = (
    "You are a senior business analyst and software architect. "
    "Answer with the requested document only, without preamble."
)

# Upper bound on document text placed in a prompt
MAX_DOCUMENT_CHARS = 100_000


def _read_text(path: str, step_id: str) -> str:
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise StepFailure(step_id, f"could not read {path}: {e}", cause=e) from e
    return text[:MAX_DOCUMENT_CHARS]


class PromptStep(ABC):
    """A step that turns one prompt into one output document."""

    step_id = ""
    name = ""
    output_filename = ""
    output_key = ""

    @abstractmethod
    def build_prompt(self, ctx: StepContext) -> str:
        """Build the user prompt for this step."""
        pass

    def skip_reason(self, ctx: StepContext) -> Optional[str]:
        return None

    async def run(self, ctx: StepContext) -> dict[str, Any]:
        reason = self.skip_reason(ctx)
        if reason:
            return {"skipped": reason}
        if ctx.llm is None:
            raise StepFailure(self.step_id, "no LLM client configured")

        prompt = self.build_prompt(ctx)
        ctx.token.raise_if_cancelled()
        reply = await ctx.llm.complete(prompt, ctx.token, system=SYSTEM_PROMPT)
        if not reply.strip():
            raise StepFailure(self.step_id, "the model returned an empty response")

        output_path = ctx.step_dir / self.output_filename
        atomic_write(output_path, reply.encode("utf-8"))
        return {self.output_key: str(output_path)}


class PRDAnalysisStep(PromptStep):
    step_id = "prd-analysis"
    name = "Analyze PRD"
    output_filename = "requirements.yaml"
    output_key = "requirements_path"

    def build_prompt(self, ctx: StepContext) -> str:
        prd = _read_text(ctx.inputs["prd_path"], self.step_id)
        return (
            "Extract every functional and non-functional requirement from this PRD. "
            "Return YAML: a list under `requirements`, each with id (REQ-NNN), type, "
            "priority, title, description, acceptance_criteria and confidence (0-1).\n\n"
            f"<prd>\n{prd}\n</prd>"
        )


class FigmaAnalysisStep(PromptStep):
    step_id = "figma-analysis"
    name = "Analyze Figma design"
    output_filename = "components.yaml"
    output_key = "components_path"

    def skip_reason(self, ctx: StepContext) -> Optional[str]:
        if not ctx.inputs.get("figma_source"):
            return "no Figma source provided"
        return None

    def build_prompt(self, ctx: StepContext) -> str:
        source = ctx.inputs["figma_source"]
        if Path(source).is_file():
            source = _read_text(source, self.step_id)
        return (
            "Extract the UI components from this design description. Return YAML: a "
            "list under `components`, each with id (COMP-NNN), name, type, variants "
            "and the requirement ids it serves if known.\n\n"
            f"<design>\n{source}\n</design>"
        )


class ValidationStep(PromptStep):
    step_id = "validation"
    name = "Validate requirements"
    output_filename = "validation-report.md"
    output_key = "validation_report_path"

    def build_prompt(self, ctx: StepContext) -> str:
        requirements = _read_text(ctx.prior_outputs["requirements_path"], self.step_id)
        components = ""
        if ctx.prior_outputs.get("components_path"):
            components = _read_text(ctx.prior_outputs["components_path"], self.step_id)
        return (
            "Validate these requirements for completeness, consistency and testability"
            + (" and check each one is covered by a UI component" if components else "")
            + ". Return a Markdown report listing gaps by severity.\n\n"
            f"<requirements>\n{requirements}\n</requirements>\n"
            + (f"<components>\n{components}\n</components>" if components else "")
        )


class ClarificationStep(PromptStep):
    step_id = "clarification"
    name = "Generate clarification questions"
    output_filename = "questions.md"
    output_key = "questions_path"

    def build_prompt(self, ctx: StepContext) -> str:
        report = _read_text(ctx.prior_outputs["validation_report_path"], self.step_id)
        return (
            "Turn the gaps in this validation report into clear questions for the "
            "product owner, grouped by requirement. Return Markdown.\n\n"
            f"<report>\n{report}\n</report>"
        )


class TDDGenerationStep(PromptStep):
    step_id = "tdd-generation"
    name = "Generate technical design"
    output_filename = "TDD.md"
    output_key = "tdd_path"

    def build_prompt(self, ctx: StepContext) -> str:
        requirements = _read_text(ctx.prior_outputs["requirements_path"], self.step_id)
        questions = _read_text(ctx.prior_outputs["questions_path"], self.step_id)
        project = ctx.inputs.get("project_name") or "the project"
        return (
            f"Write a technical design document for {project}: architecture, data "
            "model, API surface, and an implementation plan. Note open questions "
            "as assumptions.\n\n"
            f"<requirements>\n{requirements}\n</requirements>\n"
            f"<open_questions>\n{questions}\n</open_questions>"
        )


def default_steps() -> list[PromptStep]:
    return [
        PRDAnalysisStep(),
        FigmaAnalysisStep(),
        ValidationStep(),
        ClarificationStep(),
        TDDGenerationStep(),
    ]
