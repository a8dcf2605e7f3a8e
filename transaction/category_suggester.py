import json
import logging
import os
from dataclasses import dataclass
from typing import Iterable, Optional

import google.generativeai as genai

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gemini-2.0-flash"


class SuggestionError(Exception):
    """The model could not produce usable category suggestions"""


@dataclass(frozen=True)
class CategorySuggestions:
    primary: str
    alternative: str
    suggested: str

    def as_dict(self):
        return {"primary": self.primary, "alternative": self.alternative, "suggested": self.suggested}


def build_prompt(merchant: str, additional_info: str, categories: Iterable[str]) -> str:
    category_list = "\n".join(f"- {c}" for c in categories) or "- (no categories yet)"
    return f"""
You help categorize merchants for a personal beancount ledger.

Merchant Name: {merchant}
Additional Information: {additional_info}

Available categories:
{category_list}

Return ONLY a JSON object with three keys:
- primary: the most appropriate category from the list above
- alternative: another suitable category from the list above
- suggested: a new beancount account name (e.g. "Expenses:Food:Dining") if none of the existing ones fit well

Example output format:
{{"primary": "Expenses:Food", "alternative": "Expenses:Shopping:Offline", "suggested": "Expenses:Food:Dining"}}
"""


def parse_suggestions(response_text: str) -> CategorySuggestions:
    """Parse the model reply, tolerating markdown code fences"""
    text = (response_text or "").strip()

    if text.startswith("```json"):
        text = text[7:]
    if text.startswith("```"):
        text = text[3:]
    if text.endswith("```"):
        text = text[:-3]
    text = text.strip()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise SuggestionError(f"Failed to parse JSON from model response: {e}") from e

    if not isinstance(data, dict):
        raise SuggestionError("Model response is not a JSON object")

    values = {}
    for key in ("primary", "alternative", "suggested"):
        value = data.get(key)
        if not isinstance(value, str) or not value.strip():
            raise SuggestionError(f"Missing required field: {key}")
        values[key] = value.strip()

    return CategorySuggestions(**values)


class CategorySuggester:
    """Asks Gemini for three ranked category options for a merchant"""

    def __init__(self, api_key: Optional[str] = None, model_name: Optional[str] = None):
        api_key = api_key or os.getenv("GEMINI_API_KEY")
        if not api_key:
            raise ValueError("GEMINI_API_KEY must be set")

        genai.configure(api_key=api_key)
        self.model = genai.GenerativeModel(model_name or os.getenv("GEMINI_MODEL") or DEFAULT_MODEL)

    async def suggest(self, merchant: str, additional_info: str, categories: Iterable[str]) -> CategorySuggestions:
        prompt = build_prompt(merchant, additional_info, categories)

        logger.info(f"🤖 Asking Gemini to categorize: {merchant}")
        try:
            response = await self.model.generate_content_async(prompt)
            response_text = response.text
        except Exception as e:
            raise SuggestionError(f"Error calling Gemini: {e}") from e

        suggestions = parse_suggestions(response_text)
        logger.info(
            f"✅ Suggestions for {merchant}: {suggestions.primary} / "
            f"{suggestions.alternative} / {suggestions.suggested}"
        )
        return suggestions
