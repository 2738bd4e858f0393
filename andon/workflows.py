"""
Workflow definitions.

Each CLI entry point runs one workflow: what the units are, which agent
role does the work, whether it changes the tree, and how it is verified.
The instructions themselves are external skill content; the strings here
are only the fallback when no SKILL.md is present.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from andon.config import AndonConfig
    from andon.models import WorkUnit
    from andon.skill_loader import SkillDefinition


@dataclass(frozen=True)
class WorkflowSpec:
    name: str
    role: str
    default_instructions: str
    mutates: bool = True
    verify: str = "command"                      # "command", "agent" or "none"
    scope_kind: str = "files"                    # "tickets", "files", "modules", "batches"
    parallel_analysis: bool = False
    batch_sizes: dict[str, int] = field(default_factory=dict)
    include: list[str] = field(default_factory=list)
    exclude: list[str] = field(default_factory=list)

    def batch_size_for(self, aggression: str) -> int:
        return self.batch_sizes.get(aggression, 1)


_SOURCE_GLOBS = ["*.py"]
_TEST_GLOBS = ["test_*.py", "*_test.py", "tests/*", "*/tests/*", "conftest.py"]

WORKFLOWS: dict[str, WorkflowSpec] = {
    "iterate": WorkflowSpec(
        name="iterate",
        role="coder",
        default_instructions=(
            "Implement the ticket below. Write or update tests that cover its "
            "acceptance criteria and keep the change as small as possible."
        ),
        scope_kind="tickets",
    ),
    "project": WorkflowSpec(
        name="project",
        role="coder",
        default_instructions=(
            "Build the blueprint item below on top of what earlier items produced. "
            "Add tests for the behavior it introduces."
        ),
        scope_kind="tickets",
    ),
    "refactor": WorkflowSpec(
        name="refactor",
        role="refactorer",
        default_instructions=(
            "Refactor the files in scope without changing behavior: remove dead code, "
            "simplify control flow, reduce duplication. Do not change public interfaces."
        ),
        scope_kind="batches",
        batch_sizes={"maximum": 8, "high": 5, "low": 2},
        include=_SOURCE_GLOBS,
        exclude=_TEST_GLOBS,
    ),
    "test-mutate": WorkflowSpec(
        name="test-mutate",
        role="mutation-tester",
        default_instructions=(
            "Mutation-test the source file in scope. Introduce small faults one at a time, "
            "run the tests, and strengthen the tests until no mutant survives. Only edit "
            'test files. Report "killed", "survived" and "total" in payload and list '
            'surviving mutants under "examples".'
        ),
        scope_kind="files",
        include=_SOURCE_GLOBS,
        exclude=_TEST_GLOBS,
    ),
    "test-cover": WorkflowSpec(
        name="test-cover",
        role="test-writer",
        default_instructions=(
            "Add tests for the untested behavior of the source file in scope. Only add or "
            'edit test files. Report "covered" and "total" branches in payload.'
        ),
        scope_kind="files",
        include=_SOURCE_GLOBS,
        exclude=_TEST_GLOBS,
    ),
    "arch-review": WorkflowSpec(
        name="arch-review",
        role="architect",
        default_instructions=(
            "Review the module in scope for layering violations, coupling, and "
            "unclear responsibilities. Do not modify any file. Report each problem as a "
            'finding and give the module a "score" from 0 to 100 in payload.'
        ),
        mutates=False,
        verify="none",
        scope_kind="modules",
        parallel_analysis=True,
        include=_SOURCE_GLOBS,
        exclude=_TEST_GLOBS,
    ),
}

AGGRESSION_GUIDANCE = {
    "maximum": "Aggression ceiling: maximum. Larger structural changes are allowed when tests stay green.",
    "high": "Aggression ceiling: high. Make substantial improvements but keep public behavior identical.",
    "low": "Aggression ceiling: low. Only make small, obviously safe changes.",
}


class UnknownWorkflowError(KeyError):
    pass


def get_workflow(name: str) -> WorkflowSpec:
    try:
        return WORKFLOWS[name]
    except KeyError:
        raise UnknownWorkflowError(name) from None


def build_instructions(
    spec: WorkflowSpec,
    config: AndonConfig,
    skill: Optional[SkillDefinition] = None,
) -> str:
    """
    Run-level instructions: skill content, aggression ceiling and how the
    change will be verified. Resolved once per run.
    """
    parts = [(skill.content if skill else spec.default_instructions).strip()]
    parts.append(AGGRESSION_GUIDANCE[config.pipeline.aggression])
    if spec.mutates and spec.verify == "command" and config.verification.command:
        parts.append(
            f"The change will be verified with `{config.verification.command}`; "
            "it must exit 0."
        )
    return "\n\n".join(parts)


def unit_instructions(run_instructions: str, unit: WorkUnit) -> str:
    """Append the unit's own description to the run-level instructions."""
    text = f"{run_instructions}\n\n## Work unit {unit.id}\n\n{unit.description}"
    if unit.body:
        text += f"\n\n{unit.body}"
    return text
