"""Server-side grading of rank-up trial answers"""
import math
import re
import sys
from typing import List, Optional, Sequence, Union

from hive_rewards.models.contribution import GradeSummary, Question, QuestionType

MIXED_FRACTION = re.compile(r'^(-?\d+)\s+(\d+)\s*/\s*(\d+)$')
SIMPLE_FRACTION = re.compile(r'^(-?\d+)\s*/\s*(\d+)$')
LEADING_INTEGER = re.compile(r'^\s*([+-]?\d+)')
EXACT_EPSILON = 1e-10

Answer = Union[int, float, str]


def parse_numeric(value: Optional[str]) -> Optional[float]:
    """
    Parse a decimal, "a/b" fraction or "w a/b" mixed fraction.

    Returns None for anything else, including non-finite values.
    """
    if value is None:
        return None
    trimmed = str(value).strip()
    if not trimmed:
        return None

    if '/' in trimmed:
        mixed = MIXED_FRACTION.match(trimmed)
        if mixed:
            whole, numerator, denominator = (int(g) for g in mixed.groups())
            if denominator == 0:
                return None
            magnitude = abs(whole) + numerator / denominator
            return -magnitude if trimmed.startswith('-') else magnitude

        simple = SIMPLE_FRACTION.match(trimmed)
        if simple:
            numerator, denominator = (int(g) for g in simple.groups())
            if denominator == 0:
                return None
            return numerator / denominator
        return None

    try:
        parsed = float(trimmed)
    except ValueError:
        return None
    return parsed if math.isfinite(parsed) else None


def grade_numeric(answer: Optional[str], correct: Optional[str], tolerance: Optional[float]) -> bool:
    """Compare a numeric answer with the stored answer within tolerance"""
    user_value = parse_numeric(answer)
    correct_value = parse_numeric(correct)
    if user_value is None or correct_value is None:
        return False

    difference = abs(user_value - correct_value)
    if tolerance is None:
        return difference < EXACT_EPSILON
    return difference <= tolerance + sys.float_info.epsilon


def parse_index(answer: Answer) -> Optional[Union[int, float]]:
    """
    Read an MCQ answer as an option index.

    Numbers are taken as given. Strings yield their leading integer, so "2",
    " 2 " and "2.9" all select option 2 while "B" selects nothing.
    """
    if isinstance(answer, bool):
        return None
    if isinstance(answer, (int, float)):
        return answer
    match = LEADING_INTEGER.match(str(answer))
    return int(match.group(1)) if match else None


def grade_answer(question: Question, answer: Answer) -> bool:
    """Grade one answer against the question bank record, never against client flags"""
    if question.question_type == QuestionType.NUMERIC:
        return grade_numeric(str(answer), question.numeric_answer, question.numeric_tolerance)

    index = parse_index(answer)
    return index is not None and question.correct_index is not None and index == question.correct_index


def grade_trial(questions: Sequence[Question], answers: Sequence[Answer]) -> GradeSummary:
    """Grade answers position by position against their questions"""
    if len(questions) != len(answers):
        raise ValueError("Questions and answers must have the same length")
    if not answers:
        raise ValueError("At least one answer is required")

    correct_count = 0
    total_difficulty = 0
    results: List[dict] = []
    for question, answer in zip(questions, answers):
        is_correct = grade_answer(question, answer)
        total_difficulty += question.complexity
        if is_correct:
            correct_count += 1
        results.append({'question_id': question.id, 'correct': is_correct})

    total = len(answers)
    return GradeSummary(
        correct_count=correct_count,
        total_count=total,
        accuracy=correct_count / total,
        avg_difficulty=total_difficulty / total,
        results=results
    )
