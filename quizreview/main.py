import logging
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, joinedload

from quizreview.database import Base, engine, get_db
from quizreview.models import Attempt, Question
from quizreview.schemas import (
    AttemptOut,
    ClearIncorrectResponse,
    DatasetImportRequest,
    DatasetImportResponse,
    ExplanationRequest,
    ExplanationResponse,
    IncorrectAttemptOut,
    IncorrectDateGroupOut,
    QuestionOut,
    RecordAttemptRequest,
)
from quizreview.services import (
    ExplanationGenerationError,
    ExplanationService,
    decode_list,
    encode_list,
    group_attempts_by_date,
    is_correct_selection,
    reduce_to_still_incorrect,
)


app = FastAPI(title="Quiz Review")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)
service = ExplanationService()

Base.metadata.create_all(bind=engine)

MAX_RANDOM_QUESTIONS = 100


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error("Unhandled exception on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def get_user_id(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    x_user_id: Optional[str] = Header(default=None),
) -> str:
    resolved = (user_id or x_user_id or "").strip()
    if not resolved:
        raise HTTPException(status_code=400, detail="User ID is required")
    return resolved


def _question_payload(question: Question) -> dict:
    return {
        "id": question.id,
        "prompt": question.prompt,
        "options": decode_list(question.options_json),
        "correct_answers": decode_list(question.correct_answers_json),
        "explanation": question.explanation,
        "keywords": decode_list(question.keywords_json),
        "topic": question.topic or "",
        "difficulty": question.difficulty or "",
    }


def _attempt_payload(attempt: Attempt) -> dict:
    return {
        "id": attempt.id,
        "question_id": attempt.question_id,
        "user_id": attempt.user_id,
        "selected_answers": decode_list(attempt.selected_answers_json),
        "is_correct": attempt.is_correct,
        "time_spent": attempt.time_spent,
        "created_at": attempt.created_at,
    }


def _incorrect_attempt_payload(attempt: Attempt) -> dict:
    return {**_attempt_payload(attempt), "question": _question_payload(attempt.question)}


def _still_incorrect_for_user(db: Session, user_id: str) -> List[Attempt]:
    attempts = (
        db.query(Attempt)
        .options(joinedload(Attempt.question))
        .filter(Attempt.user_id == user_id)
        .order_by(Attempt.created_at.desc(), Attempt.id.desc())
        .all()
    )
    still_incorrect = reduce_to_still_incorrect(attempts)
    logger.info(
        "Reduced %s attempts to %s still-incorrect questions (user_id=%r)",
        len(attempts),
        len(still_incorrect),
        user_id,
    )
    return still_incorrect


def _get_question_or_404(db: Session, question_id: int) -> Question:
    question = db.query(Question).filter(Question.id == question_id).first()
    if not question:
        raise HTTPException(status_code=404, detail="Question not found")
    return question


@app.get("/api/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}


@app.get("/api/questions/random", response_model=List[QuestionOut])
def get_random_questions(count: int = Query(default=10), db: Session = Depends(get_db)):
    count = max(1, min(count, MAX_RANDOM_QUESTIONS))
    questions = db.query(Question).order_by(func.random()).limit(count).all()
    return [_question_payload(q) for q in questions]


@app.get("/api/questions/{question_id}", response_model=QuestionOut)
def get_question(question_id: int, db: Session = Depends(get_db)):
    return _question_payload(_get_question_or_404(db, question_id))


@app.post("/api/attempts", response_model=AttemptOut)
def record_attempt(payload: RecordAttemptRequest, db: Session = Depends(get_db)):
    try:
        question = _get_question_or_404(db, payload.question_id)
        options = decode_list(question.options_json)
        if any(idx >= len(options) for idx in payload.selected_answers):
            raise HTTPException(status_code=400, detail="selectedAnswers must index into the question's options")

        is_correct = is_correct_selection(payload.selected_answers, decode_list(question.correct_answers_json))
        if payload.is_correct is not None and payload.is_correct != is_correct:
            logger.warning(
                "Client correctness flag disagrees with server evaluation (user_id=%r, question_id=%s, client=%s, server=%s)",
                payload.user_id,
                question.id,
                payload.is_correct,
                is_correct,
            )

        attempt = Attempt(
            user_id=payload.user_id,
            question_id=question.id,
            selected_answers_json=encode_list(payload.selected_answers),
            is_correct=is_correct,
            time_spent=payload.time_spent,
        )
        db.add(attempt)
        db.commit()
        db.refresh(attempt)
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to save attempt (user_id=%r, question_id=%s)", payload.user_id, payload.question_id)
        raise HTTPException(status_code=500, detail="Failed to save attempt")

    logger.info(
        "Recorded attempt %s (user_id=%r, question_id=%s, is_correct=%s)",
        attempt.id,
        attempt.user_id,
        attempt.question_id,
        attempt.is_correct,
    )
    return _attempt_payload(attempt)


@app.get("/api/attempts/incorrect", response_model=List[IncorrectAttemptOut])
def list_incorrect_attempts(user_id: str = Depends(get_user_id), db: Session = Depends(get_db)):
    try:
        return [_incorrect_attempt_payload(a) for a in _still_incorrect_for_user(db, user_id)]
    except SQLAlchemyError:
        logger.exception("Failed to fetch incorrect attempts (user_id=%r)", user_id)
        raise HTTPException(status_code=500, detail="Failed to fetch incorrect attempts")


@app.get("/api/attempts/incorrect/grouped", response_model=List[IncorrectDateGroupOut])
def list_incorrect_attempts_by_date(user_id: str = Depends(get_user_id), db: Session = Depends(get_db)):
    try:
        still_incorrect = _still_incorrect_for_user(db, user_id)
        return [
            {"date": date, "attempts": [_incorrect_attempt_payload(a) for a in attempts]}
            for date, attempts in group_attempts_by_date(still_incorrect)
        ]
    except SQLAlchemyError:
        logger.exception("Failed to fetch incorrect attempts (user_id=%r)", user_id)
        raise HTTPException(status_code=500, detail="Failed to fetch incorrect attempts")


@app.delete("/api/attempts/incorrect/clear", response_model=ClearIncorrectResponse)
def clear_incorrect_attempts(user_id: str = Depends(get_user_id), db: Session = Depends(get_db)):
    try:
        deleted_count = db.query(Attempt).filter(Attempt.user_id == user_id).delete(synchronize_session=False)
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to clear incorrect attempts (user_id=%r)", user_id)
        raise HTTPException(status_code=500, detail="Failed to clear incorrect attempts")

    logger.info("Cleared %s attempts (user_id=%r)", deleted_count, user_id)
    return {"deleted_count": deleted_count}


@app.post("/api/explanations", response_model=ExplanationResponse)
def generate_explanation(payload: ExplanationRequest, db: Session = Depends(get_db)):
    question = _get_question_or_404(db, payload.question_id)
    options = payload.options or decode_list(question.options_json)
    correct_answers = payload.correct_answers or decode_list(question.correct_answers_json)
    if (
        not correct_answers
        or len(set(correct_answers)) != len(correct_answers)
        or any(idx < 0 or idx >= len(options) for idx in correct_answers)
    ):
        raise HTTPException(status_code=400, detail="correctAnswers must be distinct indices into the options")

    try:
        result = service.generate_explanation(
            question=payload.question or question.prompt,
            options=options,
            correct_answers=correct_answers,
        )
    except ExplanationGenerationError:
        raise HTTPException(status_code=500, detail="Failed to generate explanation")

    if result.generated:
        question.explanation = result.explanation
        question.keywords_json = encode_list(result.keywords)
        try:
            db.commit()
        except SQLAlchemyError:
            db.rollback()
            logger.exception("Failed to save explanation (question_id=%s)", question.id)
            raise HTTPException(status_code=500, detail="Failed to save explanation")
        logger.info("Cached explanation on question %s (keywords=%s)", question.id, len(result.keywords))

    return {"explanation": result.explanation, "keywords": result.keywords}


@app.post("/api/dataset/import", response_model=DatasetImportResponse)
def import_dataset(payload: DatasetImportRequest, db: Session = Depends(get_db)):
    imported = []
    for incoming in payload.questions:
        question = Question(
            prompt=incoming.prompt,
            options_json=encode_list(incoming.options),
            correct_answers_json=encode_list(sorted(incoming.correct_answers)),
            explanation=incoming.explanation,
            keywords_json=encode_list(incoming.keywords) if incoming.keywords else None,
            topic=incoming.topic,
            difficulty=incoming.difficulty,
        )
        db.add(question)
        imported.append(question)
    try:
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("Failed to import questions (count=%s)", len(imported))
        raise HTTPException(status_code=500, detail="Failed to import questions")
    logger.info("Imported %s questions", len(imported))
    return {"imported_questions": len(imported), "question_ids": [q.id for q in imported]}
