import json

import pytest

from config import Settings, get_settings
from text_generation import (
    GeminiTextGenerator,
    GenerationServiceError,
    build_review_prompt,
    is_first_month,
)

CURRENT = {"transaction_count": 4, "total_income_cents": 500000, "period": {"month": "May 2024"}}
PREVIOUS = {"transaction_count": 2, "total_income_cents": 400000, "period": {"month": "April 2024"}}


def test_first_month_detection() -> None:
    assert is_first_month(None)
    assert is_first_month({})
    assert is_first_month({"transaction_count": 0})
    assert not is_first_month(PREVIOUS)


def test_first_month_prompt_uses_welcome_framing() -> None:
    prompt = build_review_prompt(CURRENT, {"transaction_count": 0}, "Ada Lovelace")
    assert '"Ada Lovelace"' in prompt
    assert "first month" in prompt
    assert "previous_month" not in prompt
    data = json.loads(prompt.split("Data:\n", 1)[1])
    assert data == CURRENT


def test_comparison_prompt_embeds_both_months() -> None:
    prompt = build_review_prompt(CURRENT, PREVIOUS, "Ada Lovelace")
    assert "first month" not in prompt
    data = json.loads(prompt.split("Data:\n", 1)[1])
    assert data == {"current_month": CURRENT, "previous_month": PREVIOUS}


def test_generator_without_api_key_is_unavailable() -> None:
    options = dict(vars(get_settings()), gemini_api_key=None)
    generator = GeminiTextGenerator(Settings(**options))

    with pytest.raises(GenerationServiceError):
        generator.check_available()
    with pytest.raises(GenerationServiceError):
        generator.generate("hello")
