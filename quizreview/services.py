import json
import logging
import os
from dataclasses import dataclass, field
from typing import Iterable, List, Sequence

from openai import OpenAI, OpenAIError

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"
DEFAULT_EXAM_NAME = "AWS SAA-C03"
DEFAULT_TIMEOUT_SECONDS = 60.0
PLACEHOLDER_API_KEY = "your-openai-api-key-here"
MIN_API_KEY_LENGTH = 40

PLACEHOLDER_EXPLANATION = (
    "AI explanations require a valid OpenAI API key. Please contact the administrator."
)
PLACEHOLDER_KEYWORDS = ["AWS", "SAA-C03"]
FALLBACK_KEYWORDS = ["AWS", "Cloud Architecture"]


class ExplanationGenerationError(RuntimeError):
    pass


class KeywordDecodeError(ValueError):
    pass


def encode_list(values: Sequence) -> str:
    return json.dumps(list(values), ensure_ascii=False)


def decode_list(raw: str | None) -> list:
    if not raw:
        return []
    decoded = json.loads(raw)
    if not isinstance(decoded, list):
        raise ValueError(f"Expected a JSON array, got {type(decoded).__name__}")
    return decoded


def is_correct_selection(selected: Iterable[int], correct: Iterable[int]) -> bool:
    """Order-irrelevant comparison used both when answering and when reviewing."""
    selected = list(selected)
    correct = list(correct)
    return len(selected) == len(correct) and set(selected) == set(correct)


def latest_attempts_by_question(attempts):
    """Return the newest attempt per question, newest first.

    Attempts are sorted on ``(created_at, id)`` descending before grouping, so
    the result never depends on the order the store handed them over. Two
    attempts sharing a timestamp are resolved in favour of the later insert.
    """
    ordered = sorted(attempts, key=lambda a: (a.created_at, a.id or 0), reverse=True)
    latest = {}
    for attempt in ordered:
        if attempt.question_id not in latest:
            latest[attempt.question_id] = attempt
    return list(latest.values())


def reduce_to_still_incorrect(attempts):
    return [a for a in latest_attempts_by_question(attempts) if not a.is_correct]


def group_attempts_by_date(attempts):
    groups: dict[str, list] = {}
    for attempt in attempts:
        groups.setdefault(attempt.created_at.date().isoformat(), []).append(attempt)
    return sorted(groups.items(), key=lambda item: item[0], reverse=True)


def _read_timeout(raw: str | None) -> float:
    if not raw:
        return DEFAULT_TIMEOUT_SECONDS
    try:
        timeout = float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric OPENAI_TIMEOUT_SECONDS=%r; using %ss", raw, DEFAULT_TIMEOUT_SECONDS)
        return DEFAULT_TIMEOUT_SECONDS
    if timeout <= 0:
        logger.warning("Ignoring non-positive OPENAI_TIMEOUT_SECONDS=%r; using %ss", raw, DEFAULT_TIMEOUT_SECONDS)
        return DEFAULT_TIMEOUT_SECONDS
    return timeout


def has_usable_api_key(api_key: str | None) -> bool:
    return bool(api_key) and api_key != PLACEHOLDER_API_KEY and len(api_key) >= MIN_API_KEY_LENGTH


@dataclass
class ExplanationResult:
    explanation: str
    keywords: List[str] = field(default_factory=list)
    generated: bool = True


class ExplanationService:
    def __init__(self):
        self.api_key = os.getenv("OPENAI_API_KEY")
        self.model = os.getenv("OPENAI_MODEL") or DEFAULT_MODEL
        self.exam_name = os.getenv("EXAM_NAME") or DEFAULT_EXAM_NAME
        timeout = _read_timeout(os.getenv("OPENAI_TIMEOUT_SECONDS"))
        self.client = OpenAI(api_key=self.api_key, timeout=timeout) if has_usable_api_key(self.api_key) else None

    def generate_explanation(
        self,
        *,
        question: str,
        options: List[str],
        correct_answers: List[int],
    ) -> ExplanationResult:
        if not self.client:
            logger.warning("OpenAI API key missing or invalid; returning placeholder explanation")
            return ExplanationResult(
                explanation=PLACEHOLDER_EXPLANATION,
                keywords=list(PLACEHOLDER_KEYWORDS),
                generated=False,
            )

        logger.info(
            "Generating explanation via OpenAI (model=%s, options=%s, correct_answers=%s)",
            self.model,
            len(options),
            correct_answers,
        )
        try:
            response = self.client.responses.create(
                model=self.model,
                instructions=(
                    f"You are an expert tutor for the {self.exam_name} exam. Explain clearly and simply, "
                    "and highlight the key points that separate the correct answer from the distractors."
                ),
                input=self._explanation_prompt(question, options, correct_answers),
                temperature=0.7,
                max_output_tokens=1000,
            )
        except OpenAIError as exc:
            logger.exception("Explanation generation failed")
            raise ExplanationGenerationError("Failed to generate explanation") from exc

        explanation = (response.output_text or "").strip()
        logger.info("OpenAI explanation response length=%s", len(explanation))
        if not explanation:
            raise ExplanationGenerationError("Model returned an empty explanation")
        keywords = self._generate_keywords(question, options, correct_answers)
        return ExplanationResult(explanation=explanation, keywords=keywords)

    def _generate_keywords(self, question: str, options: List[str], correct_answers: List[int]) -> List[str]:
        try:
            response = self.client.responses.create(
                model=self.model,
                instructions=(
                    f"You analyse {self.exam_name} exam questions. Extract only the key terms that "
                    "distinguish the correct answer from the wrong ones."
                ),
                input=self._keyword_prompt(question, options, correct_answers),
                temperature=0.3,
                max_output_tokens=100,
            )
            return self._parse_keywords(response.output_text or "[]")
        except (OpenAIError, KeywordDecodeError) as exc:
            logger.warning("Keyword extraction failed (%s); using default keywords", exc)
            return list(FALLBACK_KEYWORDS)

    def _explanation_prompt(self, question: str, options: List[str], correct_answers: List[int]) -> str:
        numbered = "\n".join(f"{idx + 1}. {option}" for idx, option in enumerate(options))
        answer_numbers = ", ".join(str(idx + 1) for idx in correct_answers)
        return (
            f"The following is a {self.exam_name} exam question.\n\n"
            f"Question: {question}\n\n"
            f"Options:\n{numbered}\n\n"
            f"Correct answer: {answer_numbers}\n\n"
            "Write a detailed explanation in this format:\n"
            "1. Why the correct option(s) are right\n"
            "2. Why each wrong option is wrong and how it differs from the correct answer\n\n"
            "Keep the explanation clear and easy to follow."
        )

    def _keyword_prompt(self, question: str, options: List[str], correct_answers: List[int]) -> str:
        correct_text = ", ".join(str(idx + 1) for idx in correct_answers)
        correct_options = ", ".join(options[idx] for idx in correct_answers if 0 <= idx < len(options))
        wrong_options = " / ".join(
            f"{idx + 1} - {option}" for idx, option in enumerate(options) if idx not in correct_answers
        )
        return (
            f"From this {self.exam_name} question, give 3-5 key terms that separate the correct option "
            "from the wrong ones, as a JSON array only.\n\n"
            f"Question: {question}\n\n"
            f"Correct: {correct_text} - {correct_options}\n\n"
            f"Wrong: {wrong_options}\n\n"
            'Example: ["High availability", "Multi-AZ", "Automated backups", "Read replica", "RDS"]\n\n'
            "Answer with the JSON array only:"
        )

    @staticmethod
    def _parse_keywords(text: str) -> List[str]:
        cleaned = text.replace("```json", "").replace("```", "").strip()
        try:
            keywords = json.loads(cleaned)
        except json.JSONDecodeError as exc:
            preview = cleaned[:120].replace("\n", " ")
            raise KeywordDecodeError(f"Keywords are not valid JSON. Preview: {preview!r}") from exc
        if not isinstance(keywords, list) or not all(isinstance(k, str) for k in keywords):
            raise KeywordDecodeError("Keywords must be a JSON array of strings")
        return keywords
