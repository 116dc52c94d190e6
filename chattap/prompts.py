"""
Prompt templates and response parsing for the suggestion service.

Both prompts ask for a bare JSON object {"replies": [...]}. Models wrap it in
code fences or chatter around it often enough that parsing is lenient:
strip fences, take the outermost {...}, and failing that the first [...].
"""

from __future__ import annotations

import json
import logging
import re

from chattap.errors import SuggestionServiceError

logger = logging.getLogger(__name__)


REPLY_PROMPT = """{persona}You are helping the user answer a WhatsApp chat.

CONVERSATION:
{transcript}

Your job: write 5 natural reply options to what the other person just said.

- Answer their actual question or concern first
- Use normal chat language: short, friendly, matching their tone
- Some replies can be short and direct, some can add a little detail
- Do not sound scripted or pushy

Return ONLY a JSON object, no markdown, no explanation:
{{"replies": ["Reply 1", "Reply 2", "Reply 3", "Reply 4", "Reply 5"]}}"""


IMPROVEMENT_PROMPT = """Help improve a message the user is typing.

CHAT CONTEXT:
{transcript}

USER'S DRAFT: "{draft}"

Give 3-5 better versions of their message:
- Fix typos and grammar naturally
- Make it clearer, and complete it if it seems unfinished
- Keep their original tone, meaning and personality
- Stay casual if the chat is casual, professional if it is business

Return ONLY a JSON object, no markdown, no explanation:
{{"replies": ["First improved version", "Second improved version", "Third improved version"]}}"""


def build_reply_prompt(transcript: str, persona: str = "") -> str:
    persona_line = f"{persona.strip()}\n\n" if persona and persona.strip() else ""
    return REPLY_PROMPT.format(persona=persona_line, transcript=transcript)


def build_improvement_prompt(draft: str, transcript: str) -> str:
    return IMPROVEMENT_PROMPT.format(draft=draft, transcript=transcript)


def _strip_fences(text: str) -> str:
    cleaned = text.strip()
    if "```" in cleaned:
        lines = [l for l in cleaned.split("\n") if not l.strip().startswith("```")]
        cleaned = "\n".join(lines).strip()
    return cleaned


def _as_strings(items) -> list[str]:
    return [str(i).strip() for i in items if isinstance(i, (str, int, float)) and str(i).strip()]


def parse_suggestions(text: str) -> list[str]:
    """
    Extract the suggestion list from a model response.

    Raises:
        SuggestionServiceError: if no non-empty list can be recovered.
    """
    cleaned = _strip_fences(text)

    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start >= 0 and end > start:
        try:
            data = json.loads(cleaned[start:end + 1])
            replies = _as_strings(data.get("replies", [])) if isinstance(data, dict) else []
            if replies:
                return replies
            logger.debug("Response JSON had no usable 'replies' key")
        except json.JSONDecodeError as e:
            logger.debug("Response object was not valid JSON: %s", e)

    match = re.search(r"\[.*\]", cleaned, re.DOTALL)
    if match:
        try:
            data = json.loads(match.group(0))
            replies = _as_strings(data) if isinstance(data, list) else []
            if replies:
                return replies
        except json.JSONDecodeError as e:
            logger.debug("Fallback array parse failed: %s", e)

    raise SuggestionServiceError(f"Could not parse suggestions from response: {text[:120]!r}")
