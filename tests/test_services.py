from datetime import datetime
from types import SimpleNamespace

from openai import OpenAIError

from quizreview.models import Attempt
from quizreview.services import (
    DEFAULT_TIMEOUT_SECONDS,
    FALLBACK_KEYWORDS,
    PLACEHOLDER_EXPLANATION,
    PLACEHOLDER_KEYWORDS,
    ExplanationService,
    decode_list,
    encode_list,
    group_attempts_by_date,
    has_usable_api_key,
    is_correct_selection,
    latest_attempts_by_question,
    reduce_to_still_incorrect,
)

VALID_KEY = "sk-" + "x" * 45


def make_attempt(attempt_id, question_id, is_correct, created_at, selected=(0,)):
    return Attempt(
        id=attempt_id,
        user_id="user-1",
        question_id=question_id,
        selected_answers_json=encode_list(selected),
        is_correct=is_correct,
        time_spent=5,
        created_at=created_at,
    )


class FakeResponses:
    def __init__(self, outputs):
        self.outputs = list(outputs)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        output = self.outputs.pop(0)
        if isinstance(output, Exception):
            raise output
        return SimpleNamespace(output_text=output)


def make_service(monkeypatch, outputs):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    service = ExplanationService()
    service.client = SimpleNamespace(responses=FakeResponses(outputs))
    return service


def test_correctness_ignores_order_but_not_extra_selections():
    assert is_correct_selection([1, 3], [3, 1])
    assert not is_correct_selection([1, 3, 2], [1, 3])
    assert not is_correct_selection([1], [1, 3])
    assert not is_correct_selection([0, 2], [1, 3])


def test_list_codec_round_trips_indices_and_utf8_keywords():
    assert decode_list(encode_list([0, 2, 4])) == [0, 2, 4]
    assert decode_list(encode_list(["고가용성", "Multi-AZ"])) == ["고가용성", "Multi-AZ"]
    assert decode_list(None) == []
    assert decode_list("") == []


def test_latest_attempt_wins_when_final_answer_is_wrong():
    attempts = [
        make_attempt(1, 10, False, datetime(2024, 5, 1, 9, 0)),
        make_attempt(2, 10, True, datetime(2024, 5, 2, 9, 0)),
        make_attempt(3, 10, False, datetime(2024, 5, 3, 9, 0)),
    ]

    still_incorrect = reduce_to_still_incorrect(attempts)

    assert [a.id for a in still_incorrect] == [3]


def test_question_answered_correctly_last_is_excluded():
    attempts = [
        make_attempt(1, 10, False, datetime(2024, 5, 1, 9, 0)),
        make_attempt(2, 20, True, datetime(2024, 5, 1, 9, 0)),
        make_attempt(3, 30, False, datetime(2024, 5, 1, 9, 0)),
        make_attempt(4, 30, True, datetime(2024, 5, 1, 10, 0)),
    ]

    still_incorrect = reduce_to_still_incorrect(attempts)

    assert {a.question_id for a in still_incorrect} == {10}


def test_reducer_does_not_depend_on_input_order():
    attempts = [
        make_attempt(1, 10, False, datetime(2024, 5, 1, 9, 0)),
        make_attempt(2, 10, True, datetime(2024, 5, 1, 12, 0)),
        make_attempt(3, 20, True, datetime(2024, 5, 1, 9, 0)),
        make_attempt(4, 20, False, datetime(2024, 5, 2, 9, 0)),
    ]

    forward = reduce_to_still_incorrect(attempts)
    backward = reduce_to_still_incorrect(list(reversed(attempts)))

    assert [a.id for a in forward] == [a.id for a in backward] == [4]
    assert [a.id for a in reduce_to_still_incorrect(attempts)] == [a.id for a in forward]


def test_one_entry_per_question_with_maximum_timestamp():
    attempts = [
        make_attempt(1, 10, False, datetime(2024, 5, 1, 9, 0)),
        make_attempt(2, 10, False, datetime(2024, 5, 4, 9, 0)),
        make_attempt(3, 20, False, datetime(2024, 5, 3, 9, 0)),
        make_attempt(4, 10, False, datetime(2024, 5, 2, 9, 0)),
    ]

    latest = latest_attempts_by_question(attempts)

    assert len(latest) == 2
    for entry in latest:
        newest = max(a.created_at for a in attempts if a.question_id == entry.question_id)
        assert entry.created_at == newest
    assert [a.id for a in latest] == [2, 3]


def test_identical_timestamps_resolve_to_later_insert():
    same_time = datetime(2024, 5, 1, 9, 0)
    attempts = [
        make_attempt(7, 10, False, same_time),
        make_attempt(8, 10, True, same_time),
    ]

    assert reduce_to_still_incorrect(attempts) == []
    assert reduce_to_still_incorrect(list(reversed(attempts))) == []


def test_group_attempts_by_date_orders_newest_day_first():
    attempts = [
        make_attempt(1, 10, False, datetime(2024, 5, 3, 18, 0)),
        make_attempt(2, 20, False, datetime(2024, 5, 3, 8, 0)),
        make_attempt(3, 30, False, datetime(2024, 5, 1, 8, 0)),
        make_attempt(4, 40, False, datetime(2024, 5, 2, 8, 0)),
    ]

    groups = group_attempts_by_date(attempts)

    assert [date for date, _ in groups] == ["2024-05-03", "2024-05-02", "2024-05-01"]
    assert [a.id for a in groups[0][1]] == [1, 2]


def test_placeholder_key_returns_canned_explanation_without_client(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "your-openai-api-key-here")
    service = ExplanationService()

    result = service.generate_explanation(question="Q", options=["a", "b", "c", "d"], correct_answers=[0])

    assert service.client is None
    assert result.explanation == PLACEHOLDER_EXPLANATION
    assert result.keywords == PLACEHOLDER_KEYWORDS
    assert result.generated is False


def test_short_api_key_is_rejected():
    assert not has_usable_api_key(None)
    assert not has_usable_api_key("sk-short")
    assert has_usable_api_key(VALID_KEY)


def test_model_name_override_from_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", VALID_KEY)
    monkeypatch.setenv("OPENAI_MODEL", "gpt-4.1-mini")

    service = ExplanationService()

    assert service.model == "gpt-4.1-mini"
    assert service.client is not None


def test_explanation_prompt_uses_one_based_answer_numbers(monkeypatch):
    service = make_service(monkeypatch, ["Because S3 is durable.", '["S3", "durability"]'])

    result = service.generate_explanation(
        question="Which service stores objects?",
        options=["EC2", "S3", "RDS", "SQS"],
        correct_answers=[1],
    )

    calls = service.client.responses.calls
    assert len(calls) == 2
    assert "2. S3" in calls[0]["input"]
    assert "Correct answer: 2" in calls[0]["input"]
    assert "1 - EC2" in calls[1]["input"]
    assert result.explanation == "Because S3 is durable."
    assert result.keywords == ["S3", "durability"]
    assert result.generated is True


def test_keyword_response_in_code_fence_is_decoded(monkeypatch):
    service = make_service(monkeypatch, ["explanation", '```json\n["Multi-AZ", "RDS"]\n```'])

    result = service.generate_explanation(question="Q", options=["a", "b", "c", "d"], correct_answers=[0, 2])

    assert result.keywords == ["Multi-AZ", "RDS"]


def test_undecodable_keywords_fall_back_to_default_pair(monkeypatch):
    service = make_service(monkeypatch, ["explanation text", "Keywords: S3, Glacier"])

    result = service.generate_explanation(question="Q", options=["a", "b", "c", "d"], correct_answers=[0])

    assert result.explanation == "explanation text"
    assert result.keywords == FALLBACK_KEYWORDS


def test_keyword_call_failure_falls_back_to_default_pair(monkeypatch):
    service = make_service(monkeypatch, ["explanation text", OpenAIError("rate limited")])

    result = service.generate_explanation(question="Q", options=["a", "b", "c", "d"], correct_answers=[0])

    assert result.explanation == "explanation text"
    assert result.keywords == FALLBACK_KEYWORDS


def test_explanation_call_failure_raises_generation_error(monkeypatch):
    from quizreview.services import ExplanationGenerationError

    service = make_service(monkeypatch, [OpenAIError("boom")])

    try:
        service.generate_explanation(question="Q", options=["a", "b", "c", "d"], correct_answers=[0])
    except ExplanationGenerationError as exc:
        assert "Failed to generate explanation" in str(exc)
    else:
        raise AssertionError("Expected ExplanationGenerationError")
    assert len(service.client.responses.calls) == 1


def test_correctness_rejects_repeated_selection():
    assert not is_correct_selection([1, 1], [1, 3])
    assert not is_correct_selection([3, 3], [3])


def test_non_numeric_timeout_falls_back_to_default(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", VALID_KEY)
    monkeypatch.setenv("OPENAI_TIMEOUT_SECONDS", "soon")

    service = ExplanationService()

    assert service.client is not None
    assert service.client.timeout == DEFAULT_TIMEOUT_SECONDS


def test_empty_explanation_is_a_generation_error(monkeypatch):
    from quizreview.services import ExplanationGenerationError

    service = make_service(monkeypatch, ["   "])

    try:
        service.generate_explanation(question="Q", options=["a", "b", "c", "d"], correct_answers=[0])
    except ExplanationGenerationError as exc:
        assert "empty explanation" in str(exc)
    else:
        raise AssertionError("Expected ExplanationGenerationError")
    assert len(service.client.responses.calls) == 1
