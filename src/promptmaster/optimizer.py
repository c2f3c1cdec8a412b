"""Pass-through to a hosted text-generation API for prompt optimization.

Both helpers call the Gemini ``generateContent`` REST endpoint through
``requests`` so that tests can mock the HTTP call without an API key.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional

import requests

from .config import settings
from .errors import ServiceUnavailableError, UpstreamError, ValidationError

logger = logging.getLogger(__name__)

OPTIMIZE_INSTRUCTION = """You are an expert Prompt Engineer. Your goal is to take a raw, potentially vague user idea and transform it into a highly effective, structured, and clear prompt suitable for Large Language Models.

Guidelines:
1. Clarity & Specificity: Remove ambiguity. Specify the persona, context, task, and constraints.
2. Structure: Use markdown (bullet points, headers) if complex.
3. Output Format: Explicitly state how the output should look (JSON, code, table, essay, etc.).
4. Tone: Define the desired tone (professional, witty, academic, etc.).
5. Language: If the input is in Chinese, the output MUST be in Chinese. If the input is English, the output must be English.

Input: The user's draft prompt.
Output: ONLY the optimized prompt text. Do not add conversational filler."""

IDEAS_TEMPLATE = (
    'Generate 5 creative and useful prompt ideas related to the topic: "{topic}". '
    "Return them as a simple JSON array of strings. "
    "If the topic is Chinese, return Chinese ideas."
)


def _generate(
    contents: str,
    system_instruction: Optional[str] = None,
    generation_config: Optional[Dict[str, Any]] = None,
) -> str:
    """Send one generateContent request and return the first candidate's text."""
    if not settings.gemini_api_key:
        raise ServiceUnavailableError("AI optimization is not configured")

    url = f"{settings.gemini_api_url}/{settings.gemini_model}:generateContent"
    body: Dict[str, Any] = {"contents": [{"parts": [{"text": contents}]}]}
    if system_instruction:
        body["systemInstruction"] = {"parts": [{"text": system_instruction}]}
    if generation_config:
        body["generationConfig"] = generation_config

    try:
        response = requests.post(
            url, params={"key": settings.gemini_api_key}, json=body, timeout=30
        )
        response.raise_for_status()
        data = response.json()
    except (requests.RequestException, ValueError) as exc:
        logger.error("text generation request failed model=%s", settings.gemini_model, exc_info=exc)
        raise UpstreamError("Text generation request failed") from exc

    try:
        parts = data["candidates"][0]["content"]["parts"]
        text = "".join(part.get("text", "") for part in parts)
    except (KeyError, IndexError, TypeError, AttributeError) as exc:
        raise UpstreamError("No response text received") from exc
    if not text.strip():
        raise UpstreamError("No response text received")
    return text.strip()


def optimize_prompt(original: str) -> str:
    """Rewrite a draft prompt into a clearer, structured one."""
    if not original or not original.strip():
        raise ValidationError("Prompt cannot be empty")
    return _generate(
        original,
        system_instruction=OPTIMIZE_INSTRUCTION,
        generation_config={"temperature": 0.7},
    )


def generate_ideas(topic: str) -> List[str]:
    """Suggest prompt ideas for a topic; unparsable output yields no ideas."""
    if not topic or not topic.strip():
        raise ValidationError("Topic cannot be empty")
    text = _generate(
        IDEAS_TEMPLATE.format(topic=topic.strip()),
        generation_config={"responseMimeType": "application/json"},
    )
    try:
        ideas = json.loads(text)
    except ValueError:
        logger.warning("unparsable ideas response topic=%s", topic)
        return []
    if not isinstance(ideas, list):
        return []
    return [str(idea) for idea in ideas if str(idea).strip()]
