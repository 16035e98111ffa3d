"""
AI Text Service

Thin wrapper around an LLM used for portfolio prompts. Text goes in, text
comes out; structured answers are pulled out of the reply with a regex.
"""

import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Optional

from agents import Agent, Runner
from agents.extensions.models.litellm_model import LitellmModel
from agents.tracing import set_tracing_disabled

from relay_config import DEFAULT_MODEL
from system_prompt import (
    CONTENT_PROMPTS,
    DEFAULT_CONTENT_PROMPT,
    DESIGN_COMMAND_PROMPT,
    SUGGEST_DESIGN_PROMPT,
)

set_tracing_disabled(True)

logger = logging.getLogger(__name__)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

DEFAULT_DESIGN_SUGGESTION: Dict[str, Any] = {
    "suggestedTemplate": "minimalist",
    "colorScheme": {
        "primary": {"r": 0.1, "g": 0.1, "b": 0.1, "a": 1},
        "secondary": {"r": 0.5, "g": 0.5, "b": 0.5, "a": 1},
        "accent": {"r": 0.9, "g": 0.2, "b": 0.2, "a": 1},
    },
    "typography": {"heading": "Inter", "body": "Inter"},
    "styleNotes": "A clean, professional minimalist design is recommended.",
}


class AIServiceError(Exception):
    """The AI text service is unavailable or failed."""


class AIResponseError(AIServiceError):
    """The AI reply did not contain a usable JSON object."""


def extract_json(text: str) -> Dict[str, Any]:
    """Parse the outermost {...} span of a free-text reply.

    Raises:
        AIResponseError: If no JSON object can be found or parsed
    """
    match = _JSON_OBJECT.search(text or "")
    if not match:
        raise AIResponseError("Could not find JSON in the AI response")
    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise AIResponseError(f"Failed to parse AI response: {e}") from e
    if not isinstance(parsed, dict):
        raise AIResponseError("AI response JSON is not an object")
    return parsed


class AITextService:
    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        api_key: Optional[str] = None,
        run: Optional[Callable[[str, str], Awaitable[str]]] = None,
    ):
        """
        Args:
            model: LiteLLM model name
            api_key: Provider API key; without one every call fails fast
            run: Coroutine (instructions, prompt) -> reply text. Defaults to
                running an Agents SDK agent over LiteLLM.
        """
        self.model = model
        self.api_key = api_key
        self._run = run or self._run_agent

    @property
    def available(self) -> bool:
        return bool(self.api_key)

    async def _run_agent(self, instructions: str, prompt: str) -> str:
        agent = Agent(
            name="PortfolioAssistant",
            instructions=instructions,
            model=LitellmModel(model=self.model, api_key=self.api_key),
        )
        result = await Runner.run(agent, prompt)
        final_output = result.final_output
        return final_output if isinstance(final_output, str) else str(final_output)

    async def complete(self, prompt: str, instructions: str = "") -> str:
        """Send one prompt and return the model's text reply."""
        if not self.available:
            raise AIServiceError("No AI API key configured. Set LITELLM_API_KEY in .env")
        logger.info(f"🧠 Sending prompt to {self.model} ({len(prompt)} chars)")
        try:
            return await self._run(instructions, prompt)
        except Exception as e:
            logger.error(f"AI request failed: {e}")
            raise AIServiceError(f"AI request failed: {e}") from e

    async def process_design_prompt(
        self,
        prompt: str,
        designer_name: Optional[str] = None,
        design_style: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Turn a natural-language request into a structured {action, parameters} command."""
        context = []
        if designer_name:
            context.append(f"Designer: {designer_name}")
        if design_style:
            context.append(f"Preferred style: {design_style}")
        full_prompt = "\n".join(context + [prompt]) if context else prompt

        text = await self.complete(full_prompt, DESIGN_COMMAND_PROMPT)
        return extract_json(text)

    async def suggest_design(self, user_data: Dict[str, Any]) -> Dict[str, Any]:
        """Suggest a template, colors and typography. Falls back to a default suggestion."""
        try:
            text = await self.complete(json.dumps(user_data, ensure_ascii=False, indent=2), SUGGEST_DESIGN_PROMPT)
            return extract_json(text)
        except AIServiceError as e:
            logger.warning(f"⚠️ Design suggestion unavailable, using default: {e}")
            return json.loads(json.dumps(DEFAULT_DESIGN_SUGGESTION))

    async def generate_content(self, kind: str, context: Dict[str, Any]) -> str:
        """Write short portfolio copy. Falls back to a placeholder."""
        template = CONTENT_PROMPTS.get(kind, DEFAULT_CONTENT_PROMPT)
        prompt = template.format(context=json.dumps(context or {}, ensure_ascii=False, indent=2))
        try:
            return (await self.complete(prompt)).strip()
        except AIServiceError as e:
            logger.warning(f"⚠️ Content generation unavailable for {kind}: {e}")
            return f"[Enter {kind} content here]"
