"""
Prompt Templates
================

Builds the chat messages sent upstream: one system prompt (persona, role,
level, audience and tone, JSON contract), the recent history, and the
enhanced user message.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import ClassVar

from tutorflow.infra.upstream import ChatMessage

from .intent import ResponseType, UserLevel

BASE_PERSONA = (
    "You are a professional AI tutor who produces structured, accurate and "
    "pedagogically sound educational content.\n"
    "Rules:\n"
    "- Organise the answer logically, from fundamentals to applications.\n"
    "- Use concrete, specific examples.\n"
    "- Never use placeholder text such as \"[Content to be added]\" or \"[Example here]\".\n"
    "- Only include sections you can fill completely; omit anything you cannot."
)

ROLES: dict[ResponseType, str] = {
    ResponseType.EXPLANATION: (
        "Role: Concept Explainer. Explain the topic step by step, define key terms, "
        "and finish with a worked example."
    ),
    ResponseType.STUDY_PLAN: (
        "Role: Study Plan Creator. Produce a week-by-week plan with learning goals, "
        "time estimates and resources for each week, building from basics to advanced work."
    ),
    ResponseType.PRACTICE_SET: (
        "Role: Practice Designer. Write graded practice problems, each with a full "
        "worked solution and the concept it tests."
    ),
    ResponseType.CONCEPT_ANALYSIS: (
        "Role: Concept Analyst. Give a precise definition, the underlying principles, "
        "relationships to neighbouring ideas and common misconceptions."
    ),
    ResponseType.FREE_CHAT: (
        "Role: Friendly Tutor. Answer concisely and conversationally, and stay accurate."
    ),
}

LEVEL_ADJUSTMENTS: dict[UserLevel, str] = {
    UserLevel.BEGINNER: "Use simple language, basic examples and step-by-step breakdowns.",
    UserLevel.INTERMEDIATE: "Assume working familiarity and focus on practical applications.",
    UserLevel.ADVANCED: "Provide in-depth analysis, complex examples and theoretical depth.",
}

JSON_CONTRACT = (
    "Respond with a single JSON object and nothing else, using exactly this shape:\n"
    '{"title": string, "tldr": string, '
    '"sections": [{"heading": string, "body": string (Markdown allowed), '
    '"code": [{"language": string, "content": string, "caption": string}]}], '
    '"references": [{"label": string, "url": string}]}\n'
    "title and at least one section with heading and body are required; "
    "code and references may be empty arrays."
)

@dataclass(frozen=True, slots=True)
class PromptInputs:
    """Inputs for one prompt build."""

    task: str
    response_type: ResponseType
    structured: bool = True
    audience: str | None = None
    tone: str | None = None
    subject: str | None = None
    topic: str | None = None
    user_level: UserLevel | None = None

class PromptBuilder:
    """Assembles the message list for an upstream completion."""

    HISTORY_ROLES: ClassVar[frozenset[str]] = frozenset({"user", "assistant"})

    def __init__(self, max_history: int = 10):
        self.max_history = max_history

    def system_prompt(self, inputs: PromptInputs) -> str:
        parts = [BASE_PERSONA, ROLES[inputs.response_type]]
        if inputs.user_level is not None:
            parts.append(f"Student level: {inputs.user_level.value}. {LEVEL_ADJUSTMENTS[inputs.user_level]}")
        context = ", ".join(
            f"{label}: {value.strip()}"
            for label, value in (("Subject", inputs.subject), ("Topic", inputs.topic))
            if value and value.strip()
        )
        if context:
            parts.append(context)
        if inputs.audience:
            parts.append(f"Audience: {inputs.audience}. Pitch vocabulary and depth accordingly.")
        if inputs.tone:
            parts.append(f"Tone: {inputs.tone}.")
        if inputs.structured:
            parts.append(JSON_CONTRACT)
        return "\n\n".join(parts)

    @staticmethod
    def enhance_user_message(task: str) -> str:
        lower = task.lower()
        if "explain" in lower or "what is" in lower:
            return (
                f"{task}\n\nPlease give a structured explanation: overview, key concepts, "
                "a worked example and a short summary."
            )
        if "solve" in lower or "calculate" in lower:
            return (
                f"{task}\n\nPlease show the step-by-step working, explain each step, "
                "and state the final answer clearly."
            )
        return task

    def build(
        self, inputs: PromptInputs, history: Sequence[ChatMessage] = ()
    ) -> list[ChatMessage]:
        """Messages in order: system, last N history turns, user."""
        turns = [m for m in history if m.role in self.HISTORY_ROLES]
        if self.max_history <= 0:
            turns = []
        else:
            turns = turns[-self.max_history:]
        return [
            ChatMessage(role="system", content=self.system_prompt(inputs)),
            *turns,
            ChatMessage(role="user", content=self.enhance_user_message(inputs.task)),
        ]
