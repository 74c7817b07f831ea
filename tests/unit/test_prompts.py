"""Prompt builder tests."""

from tutorflow.api.middleware.intent import ResponseType, UserLevel
from tutorflow.api.middleware.prompts import (
    BASE_PERSONA,
    JSON_CONTRACT,
    LEVEL_ADJUSTMENTS,
    ROLES,
    PromptBuilder,
    PromptInputs,
)
from tutorflow.infra.upstream import ChatMessage


class TestPromptBuilder:

    def setup_method(self):
        self.builder = PromptBuilder(max_history=2)

    def test_structured_prompt_carries_json_contract(self):
        inputs = PromptInputs(task="Explain recursion", response_type=ResponseType.EXPLANATION)
        prompt = self.builder.system_prompt(inputs)
        assert prompt.startswith(BASE_PERSONA)
        assert ROLES[ResponseType.EXPLANATION] in prompt
        assert JSON_CONTRACT in prompt

    def test_free_text_prompt_has_no_contract(self):
        inputs = PromptInputs(task="hi", response_type=ResponseType.FREE_CHAT, structured=False)
        assert JSON_CONTRACT not in self.builder.system_prompt(inputs)

    def test_context_lines(self):
        inputs = PromptInputs(
            task="Explain limits",
            response_type=ResponseType.EXPLANATION,
            audience="high-school students",
            tone="encouraging",
            subject="Math",
            topic="Calculus",
            user_level=UserLevel.BEGINNER,
        )
        prompt = self.builder.system_prompt(inputs)
        assert LEVEL_ADJUSTMENTS[UserLevel.BEGINNER] in prompt
        assert "Subject: Math, Topic: Calculus" in prompt
        assert "Audience: high-school students." in prompt
        assert "Tone: encouraging." in prompt

    def test_blank_subject_is_omitted(self):
        inputs = PromptInputs(task="x", response_type=ResponseType.EXPLANATION, subject="  ")
        assert "Subject:" not in self.builder.system_prompt(inputs)

    def test_enhance_explanations(self):
        enhanced = PromptBuilder.enhance_user_message("What is entropy")
        assert enhanced.startswith("What is entropy\n\n")
        assert "worked example" in enhanced

    def test_enhance_calculations(self):
        enhanced = PromptBuilder.enhance_user_message("Solve 2x + 3 = 7")
        assert "step-by-step" in enhanced

    def test_other_tasks_unchanged(self):
        assert PromptBuilder.enhance_user_message("Quiz me on fractions") == "Quiz me on fractions"

    def test_message_order_and_history_window(self):
        history = [
            ChatMessage(role="user", content="one"),
            ChatMessage(role="assistant", content="two"),
            ChatMessage(role="system", content="ignored"),
            ChatMessage(role="user", content="three"),
        ]
        inputs = PromptInputs(task="Quiz me", response_type=ResponseType.PRACTICE_SET)
        messages = self.builder.build(inputs, history)
        assert [m.role for m in messages] == ["system", "assistant", "user", "user"]
        assert [m.content for m in messages[1:3]] == ["two", "three"]
        assert messages[-1].content == "Quiz me"

    def test_zero_history(self):
        builder = PromptBuilder(max_history=0)
        inputs = PromptInputs(task="Quiz me", response_type=ResponseType.PRACTICE_SET)
        messages = builder.build(inputs, [ChatMessage(role="user", content="earlier")])
        assert [m.role for m in messages] == ["system", "user"]
