from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from transaction import category_suggester
from transaction.category_suggester import (
    CategorySuggester,
    SuggestionError,
    build_prompt,
    parse_suggestions,
)

REPLY = '{"primary": "Expenses:Food", "alternative": "Expenses:Shopping", "suggested": "Expenses:Food:Dining"}'


def test_parse_plain_json():
    suggestions = parse_suggestions(REPLY)

    assert suggestions.primary == "Expenses:Food"
    assert suggestions.as_dict()["suggested"] == "Expenses:Food:Dining"


def test_parse_fenced_json():
    assert parse_suggestions(f"```json\n{REPLY}\n```").alternative == "Expenses:Shopping"


@pytest.mark.parametrize("text", [
    "",
    "not json",
    "[1, 2, 3]",
    '{"primary": "Expenses:Food", "alternative": "Expenses:Shopping"}',
    '{"primary": "", "alternative": "a", "suggested": "b"}',
])
def test_parse_rejects_bad_replies(text):
    with pytest.raises(SuggestionError):
        parse_suggestions(text)


def test_prompt_lists_categories():
    prompt = build_prompt("ACME", "hardware store", ["Expenses:Food", "Expenses:Shopping"])

    assert "Merchant Name: ACME" in prompt
    assert "- Expenses:Shopping" in prompt


def test_requires_api_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)

    with pytest.raises(ValueError):
        CategorySuggester()


@pytest.fixture
def fake_genai(monkeypatch):
    genai = MagicMock()
    monkeypatch.setattr(category_suggester, "genai", genai)
    return genai


@pytest.mark.asyncio
async def test_suggest_calls_model(fake_genai):
    model = fake_genai.GenerativeModel.return_value
    model.generate_content_async = AsyncMock(return_value=SimpleNamespace(text=REPLY))

    suggester = CategorySuggester(api_key="key", model_name="gemini-test")
    suggestions = await suggester.suggest("ACME", "hardware", ["Expenses:Food"])

    fake_genai.configure.assert_called_once_with(api_key="key")
    fake_genai.GenerativeModel.assert_called_once_with("gemini-test")
    assert suggestions.primary == "Expenses:Food"
    assert "ACME" in model.generate_content_async.await_args.args[0]


@pytest.mark.asyncio
async def test_model_errors_become_suggestion_errors(fake_genai):
    model = fake_genai.GenerativeModel.return_value
    model.generate_content_async = AsyncMock(side_effect=RuntimeError("quota"))

    suggester = CategorySuggester(api_key="key")

    with pytest.raises(SuggestionError):
        await suggester.suggest("ACME", "hardware", [])
