from datetime import datetime
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class QuestionOut(CamelModel):
    id: int
    prompt: str
    options: List[str]
    correct_answers: List[int]
    explanation: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)
    topic: str
    difficulty: str


class RecordAttemptRequest(CamelModel):
    question_id: int
    user_id: str = Field(min_length=1)
    selected_answers: List[int] = Field(min_length=1)
    is_correct: Optional[bool] = None
    time_spent: int = Field(default=0, ge=0)

    @model_validator(mode="after")
    def selected_answers_are_distinct_indices(self):
        if any(idx < 0 for idx in self.selected_answers):
            raise ValueError("selectedAnswers must be 0-based option indices")
        if len(set(self.selected_answers)) != len(self.selected_answers):
            raise ValueError("selectedAnswers must not contain duplicates")
        return self


class AttemptOut(CamelModel):
    id: int
    question_id: int
    user_id: str
    selected_answers: List[int]
    is_correct: bool
    time_spent: int
    created_at: datetime


class IncorrectAttemptOut(AttemptOut):
    question: QuestionOut


class IncorrectDateGroupOut(CamelModel):
    date: str
    attempts: List[IncorrectAttemptOut]


class ClearIncorrectResponse(CamelModel):
    deleted_count: int


class ExplanationRequest(CamelModel):
    question_id: int
    question: Optional[str] = None
    options: Optional[Annotated[List[str], Field(min_length=4, max_length=6)]] = None
    correct_answers: Optional[Annotated[List[int], Field(min_length=1)]] = None


class ExplanationResponse(CamelModel):
    explanation: str
    keywords: List[str]


class ImportQuestionIn(CamelModel):
    prompt: str = Field(min_length=1)
    options: List[str] = Field(min_length=4, max_length=6)
    correct_answers: List[int] = Field(min_length=1)
    topic: str = ""
    difficulty: str = ""
    explanation: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def correct_answers_point_at_options(self):
        if len(set(self.correct_answers)) != len(self.correct_answers):
            raise ValueError("correctAnswers must not contain duplicates")
        if any(idx < 0 or idx >= len(self.options) for idx in self.correct_answers):
            raise ValueError("correctAnswers must index into options")
        return self


class DatasetImportRequest(CamelModel):
    questions: List[ImportQuestionIn] = Field(min_length=1)


class DatasetImportResponse(CamelModel):
    imported_questions: int
    question_ids: List[int]
