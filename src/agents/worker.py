"""Claude-backed workers - one role preset per specialty."""

import re
from dataclasses import dataclass
from typing import Any

import anthropic
import structlog

from src.orchestrator.config import Settings
from src.orchestrator.task import Task, WorkerResult

from .base import BaseWorker

logger = structlog.get_logger()

CONFIDENCE_PATTERN = re.compile(r"^\s*CONFIDENCE:\s*([01](?:\.\d+)?)\s*$", re.MULTILINE | re.IGNORECASE)
SHARED_PATTERN = re.compile(r"^\s*SHARED\s+([\w.-]+)\s*:\s*(.+?)\s*$", re.MULTILINE)


@dataclass(frozen=True)
class RolePreset:
    """Static metadata and system prompt for a worker role."""
    system: str
    specialties: frozenset[str]
    capabilities: frozenset[str]
    priority: int = 5


ROLE_PRESETS: dict[str, RolePreset] = {
    "code_analyst": RolePreset(
        system="""You are a senior software engineer.
Analyze and write code that is correct, readable and idiomatic.
Point out bugs and risky constructs explicitly.""",
        specialties=frozenset({"code", "code_analysis"}),
        capabilities=frozenset({"coding", "testing"}),
        priority=7,
    ),
    "architect": RolePreset(
        system="""You are a software architect.
Reason about module boundaries, data flow and trade-offs.
Prefer simple designs and name the constraints that drive them.""",
        specialties=frozenset({"architecture"}),
        capabilities=frozenset({"coding", "documentation"}),
        priority=6,
    ),
    "security": RolePreset(
        system="""You are an application security reviewer.
Identify vulnerabilities, unsafe defaults and missing validation.
Rank findings by severity.""",
        specialties=frozenset({"security"}),
        capabilities=frozenset({"security", "coding"}),
        priority=8,
    ),
    "performance": RolePreset(
        system="""You are a performance engineer.
Find hot paths, needless allocations and slow queries.
Quantify the expected gain of each suggestion.""",
        specialties=frozenset({"performance"}),
        capabilities=frozenset({"performance", "coding"}),
        priority=6,
    ),
    "testing": RolePreset(
        system="""You are a test engineer.
Design focused tests that pin down behavior and edge cases.""",
        specialties=frozenset({"testing"}),
        capabilities=frozenset({"testing", "coding"}),
        priority=5,
    ),
    "documentation": RolePreset(
        system="""You are a technical writer.
Write accurate, concise documentation aimed at the stated audience.""",
        specialties=frozenset({"documentation"}),
        capabilities=frozenset({"documentation"}),
        priority=4,
    ),
    "devops": RolePreset(
        system="""You are a DevOps engineer.
Focus on build, deployment, observability and operational risk.""",
        specialties=frozenset({"devops"}),
        capabilities=frozenset({"deployment", "security"}),
        priority=5,
    ),
}


class ClaudeWorker(BaseWorker):
    """Worker that answers a task with one Messages API call."""

    def __init__(
        self,
        settings: Settings,
        role: str = "code_analyst",
        client: anthropic.AsyncAnthropic | None = None,
    ):
        if role not in ROLE_PRESETS:
            raise ValueError(f"Unknown worker role: {role}")
        preset = ROLE_PRESETS[role]
        super().__init__(
            specialties=set(preset.specialties),
            capabilities=set(preset.capabilities),
            priority=preset.priority,
        )
        self.settings = settings
        self.role = role
        self.system = preset.system
        self.client = client or anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
        self.tokens_used: dict[str, int] = {}

    @property
    def worker_type(self) -> str:
        return self.role

    async def execute(self, task: Task) -> WorkerResult:
        """Prompt the model with the task and any strategy context."""
        complexity = self._estimate_complexity(task)
        model = self._select_model(complexity)

        response = await self._complete(self._build_prompt(task), model=model, system=self.system)

        output, confidence = _split_confidence(response)
        shared_updates = dict(SHARED_PATTERN.findall(output)) if task.collaboration else {}

        return WorkerResult(
            success=True,
            output=output,
            confidence=confidence,
            shared_updates=shared_updates,
            tokens_used=self.tokens_used.copy(),
        )

    def _estimate_complexity(self, task: Task) -> str:
        """Cheap heuristic; no model call."""
        if task.collaboration or len(task.requirements) > 5:
            return "complex"
        if len(task.description) < 80 and not task.requirements and task.previous_result is None:
            return "trivial"
        return "standard"

    def _select_model(self, complexity: str = "standard") -> str:
        """Select appropriate model based on complexity."""
        if complexity == "trivial":
            return self.settings.model_haiku
        elif complexity == "complex":
            return self.settings.model_opus
        else:
            return self.settings.model_sonnet

    def _build_prompt(self, task: Task) -> str:
        sections = [f"Task: {task.description}"]

        if task.type:
            sections.append(f"Task type: {task.type}")
        if task.requirements:
            sections.append("Requirements:\n" + "\n".join(f"- {r}" for r in task.requirements))

        if task.pipeline_context is not None:
            ctx = task.pipeline_context
            sections.append(
                f"You are step {ctx.step + 1} of {ctx.total_steps} in a pipeline.\n"
                f"Output of the previous step:\n{_output_text(task.previous_result)}"
            )

        if task.collaboration is not None:
            ctx = task.collaboration
            others = "\n".join(
                f"- {getattr(c, 'worker_id', '?')} (round {getattr(c, 'iteration', '?')}): "
                f"{_output_text(getattr(c, 'result', None))}"
                for c in ctx.previous_results
            )
            shared = "\n".join(f"- {k}: {v}" for k, v in ctx.shared_context.items())
            sections.append(
                f"Collaboration round {ctx.iteration} of {ctx.max_iterations} "
                f"with {', '.join(ctx.participants)}.\n"
                f"Shared notes:\n{shared or '(none)'}\n"
                f"Earlier contributions:\n{others or '(none)'}\n"
                "To add a shared note, write a line `SHARED <key>: <value>`."
            )

        if task.parallel is not None:
            sections.append(
                f"You handle slice {task.parallel.index + 1} of {task.parallel.total} "
                "of this task in parallel with other workers."
            )

        sections.append("End your answer with a line `CONFIDENCE: <0.0-1.0>`.")
        return "\n\n".join(sections)

    async def _complete(
        self,
        prompt: str,
        model: str | None = None,
        system: str | None = None,
        max_tokens: int = 4096,
    ) -> str:
        """Make completion request to Claude."""
        if model is None:
            model = self.settings.model_sonnet

        messages = [{"role": "user", "content": prompt}]

        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens,
            "messages": messages,
        }

        if system:
            kwargs["system"] = system

        response = await self.client.messages.create(**kwargs)

        # Track token usage
        input_tokens = response.usage.input_tokens
        output_tokens = response.usage.output_tokens
        self.tokens_used[model] = self.tokens_used.get(model, 0) + input_tokens + output_tokens

        logger.debug(
            "Completion",
            role=self.role,
            model=model,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
        )

        text_blocks = [
            block.text for block in response.content
            if hasattr(block, "text")
        ]
        return "\n".join(text_blocks)


def build_worker_pool(
    settings: Settings,
    roles: list[str] | None = None,
    client: anthropic.AsyncAnthropic | None = None,
) -> dict[str, ClaudeWorker]:
    """One worker per role, keyed by role name, sharing a single client."""
    if client is None:
        client = anthropic.AsyncAnthropic(api_key=settings.anthropic_api_key)
    return {
        role: ClaudeWorker(settings, role=role, client=client)
        for role in (roles or list(ROLE_PRESETS))
    }


def _split_confidence(text: str) -> tuple[str, float | None]:
    """Strip a trailing CONFIDENCE line and return (text, score)."""
    matches = list(CONFIDENCE_PATTERN.finditer(text))
    if not matches:
        return text.strip(), None
    last = matches[-1]
    score = min(1.0, max(0.0, float(last.group(1))))
    return (text[:last.start()] + text[last.end():]).strip(), score


def _output_text(result: Any) -> str:
    if result is None:
        return "(none)"
    output = getattr(result, "output", result)
    return output if isinstance(output, str) else repr(output)
