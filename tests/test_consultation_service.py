import openai
import pytest

from app.consultation_service import (
    MAX_TOKENS,
    ConsultationGenerator,
    ConsultationInput,
    build_prompt,
    render_fallback,
)
from app.domain import ConsultationType

DATA = ConsultationInput(
    consultation_type=ConsultationType.DETAILED,
    birth_date="1990-05-17",
    birth_time="14:30",
    birth_place="Lisbon",
    questions="How should I arrange my home office for focus?",
)


def _completion(mocker, content):
    message = mocker.Mock(content=content)
    return mocker.Mock(choices=[mocker.Mock(message=message)])


def test_prompt_carries_customer_details():
    prompt = build_prompt(DATA)

    assert "1990-05-17" in prompt
    assert "14:30" in prompt
    assert "Lisbon" in prompt
    assert DATA.questions in prompt


@pytest.mark.parametrize("consultation_type", list(ConsultationType))
def test_every_type_has_a_non_empty_fallback(consultation_type):
    data = ConsultationInput(
        consultation_type=consultation_type,
        birth_date="1990-05-17",
        birth_place="Lisbon",
        questions="What colours suit my bedroom best?",
    )

    assert render_fallback(data).strip()


def test_without_client_the_fallback_is_used():
    result = ConsultationGenerator(None).generate(DATA)

    assert result.source == "fallback"
    assert "Lisbon" in result.text


def test_llm_text_is_returned(mocker):
    client = mocker.Mock()
    client.chat.completions.create.return_value = _completion(mocker, "  Your reading...  ")

    result = ConsultationGenerator(client, model="gpt-4").generate(DATA)

    assert result.source == "openai"
    assert result.text == "Your reading..."
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["model"] == "gpt-4"
    assert kwargs["max_tokens"] == MAX_TOKENS[ConsultationType.DETAILED]
    assert kwargs["temperature"] == 0.7


def test_llm_error_falls_back(mocker):
    client = mocker.Mock()
    client.chat.completions.create.side_effect = openai.OpenAIError("quota exceeded")

    result = ConsultationGenerator(client).generate(DATA)

    assert result.source == "fallback"
    assert result.text.strip()


def test_empty_llm_answer_falls_back(mocker):
    client = mocker.Mock()
    client.chat.completions.create.return_value = _completion(mocker, None)

    assert ConsultationGenerator(client).generate(DATA).source == "fallback"


@pytest.mark.parametrize("completion", [
    {"choices": []},
    {"choices": None},
    {"choices": [None]},
])
def test_malformed_llm_answer_falls_back(mocker, completion):
    client = mocker.Mock()
    client.chat.completions.create.return_value = mocker.Mock(**completion)

    result = ConsultationGenerator(client).generate(DATA)

    assert result.source == "fallback"
    assert "Lisbon" in result.text
