"""Tests for the AI text service wrapper and JSON extraction."""

import pytest

from ai_service import (
    DEFAULT_DESIGN_SUGGESTION,
    AIResponseError,
    AIServiceError,
    AITextService,
    extract_json,
)


class FakeRunner:
    def __init__(self, reply="", error=None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def __call__(self, instructions, prompt):
        self.calls.append((instructions, prompt))
        if self.error is not None:
            raise self.error
        return self.reply


class TestExtractJson:
    def test_object_surrounded_by_prose(self):
        text = 'Sure! Here is the command:\n{"action": "addElement", "parameters": {"kind": "text"}}\nDone.'

        assert extract_json(text) == {"action": "addElement", "parameters": {"kind": "text"}}

    def test_spans_from_first_to_last_brace(self):
        assert extract_json('{"a": {"b": 1}}') == {"a": {"b": 1}}

    @pytest.mark.parametrize("text", ["no json here", "", "{broken", '{"a": 1} and {"b": 2}'])
    def test_unusable_text(self, text):
        with pytest.raises(AIResponseError):
            extract_json(text)


class TestProcessDesignPrompt:
    @pytest.mark.asyncio
    async def test_returns_structured_command(self):
        runner = FakeRunner('{"action": "createPortfolio", "parameters": {"template": "minimalist"}}')
        service = AITextService(api_key="key", run=runner)

        result = await service.process_design_prompt("A minimal portfolio", designer_name="Kim", design_style="modern")

        assert result == {"action": "createPortfolio", "parameters": {"template": "minimalist"}}
        instructions, prompt = runner.calls[0]
        assert "JSON" in instructions
        assert "Designer: Kim" in prompt
        assert "Preferred style: modern" in prompt
        assert prompt.endswith("A minimal portfolio")

    @pytest.mark.asyncio
    async def test_requires_api_key(self):
        runner = FakeRunner("{}")
        service = AITextService(api_key=None, run=runner)

        with pytest.raises(AIServiceError):
            await service.process_design_prompt("anything")
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_reply_without_json(self):
        service = AITextService(api_key="key", run=FakeRunner("I cannot help with that."))

        with pytest.raises(AIResponseError):
            await service.process_design_prompt("anything")

    @pytest.mark.asyncio
    async def test_provider_failure_is_wrapped(self):
        service = AITextService(api_key="key", run=FakeRunner(error=RuntimeError("rate limited")))

        with pytest.raises(AIServiceError, match="rate limited"):
            await service.process_design_prompt("anything")


class TestFallbacks:
    @pytest.mark.asyncio
    async def test_suggest_design(self):
        service = AITextService(api_key="key", run=FakeRunner('{"suggestedTemplate": "creative"}'))

        assert await service.suggest_design({"name": "Kim"}) == {"suggestedTemplate": "creative"}

    @pytest.mark.asyncio
    async def test_suggest_design_falls_back_to_default(self):
        service = AITextService(api_key="key", run=FakeRunner("no json"))

        suggestion = await service.suggest_design({"name": "Kim"})

        assert suggestion == DEFAULT_DESIGN_SUGGESTION
        suggestion["suggestedTemplate"] = "mutated"
        assert DEFAULT_DESIGN_SUGGESTION["suggestedTemplate"] == "minimalist"

    @pytest.mark.asyncio
    async def test_generate_content_strips_reply(self):
        runner = FakeRunner("  A designer who loves grids.  \n")
        service = AITextService(api_key="key", run=runner)

        assert await service.generate_content("bio", {"name": "Kim"}) == "A designer who loves grids."
        assert '"name": "Kim"' in runner.calls[0][1]

    @pytest.mark.asyncio
    async def test_generate_content_placeholder_without_key(self):
        service = AITextService(api_key=None)

        assert await service.generate_content("bio", {}) == "[Enter bio content here]"
