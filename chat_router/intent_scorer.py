"""
Intent Scorer — multi-signal scoring по ключевым триггерам.

Формула для одного интента:
    +3 за триггер, совпавший целым словом
    +2 за триггер, совпавший только подстрокой
    +0.5 * (N - 1) бонус, если совпало N > 1 разных триггеров

Детерминирован: ни случайности, ни зависимости от времени.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Optional

from chat_router.models import BusinessConfig, IntentDefinition
from chat_router.settings import settings


WHOLE_WORD_SCORE = 3.0
SUBSTRING_SCORE = 2.0
CORROBORATION_BONUS = 0.5

# Граница слова: начало/конец строки, пробел или , ! ?
_BOUNDARY = r"[\s,!?]"


@lru_cache(maxsize=2048)
def _whole_word_pattern(trigger_lower: str) -> "re.Pattern[str]":
    return re.compile(f"(?:^|{_BOUNDARY}){re.escape(trigger_lower)}(?:$|{_BOUNDARY})")


@dataclass
class IntentScore:
    """Score одного интента для сообщения"""
    intent: IntentDefinition
    score: float
    matched_triggers: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "intent": self.intent.name,
            "intent_id": self.intent.id,
            "score": self.score,
            "matched_triggers": list(self.matched_triggers),
        }


def score_trigger(message_lower: str, trigger: str) -> float:
    """Очки одного триггера (0 если не найден)"""
    t = trigger.lower()
    if not t or t not in message_lower:
        return 0.0
    if _whole_word_pattern(t).search(message_lower):
        return WHOLE_WORD_SCORE
    return SUBSTRING_SCORE


def score_intents(message: str, business: BusinessConfig) -> List[IntentScore]:
    """
    Оценить все активные интенты бизнеса.

    Returns:
        Список IntentScore по убыванию score (при равенстве сохраняется
        порядок конфигурации). Интенты с нулевым score исключены.
    """
    lower = message.lower()
    scores: List[IntentScore] = []

    for intent in business.intents:
        if not intent.active or not intent.triggers:
            continue

        score = 0.0
        matched: List[str] = []
        for trigger in intent.triggers:
            points = score_trigger(lower, trigger)
            if points:
                matched.append(trigger)
                score += points

        if len(matched) > 1:
            score += CORROBORATION_BONUS * (len(matched) - 1)
        if score > 0:
            scores.append(IntentScore(intent=intent, score=score, matched_triggers=matched))

    return sorted(scores, key=lambda s: -s.score)


def classify_intent(
    message: str,
    business: BusinessConfig,
    threshold: float = None,
) -> Optional[IntentScore]:
    """Лучший интент, если его score >= threshold (по умолчанию 2)"""
    if threshold is None:
        threshold = settings.pipeline.intent_threshold
    return top_intent(score_intents(message, business), threshold)


def top_intent(scores: List[IntentScore], threshold: float) -> Optional[IntentScore]:
    if scores and scores[0].score >= threshold:
        return scores[0]
    return None


def scores_summary(scores: List[IntentScore], limit: int = 5) -> List[Dict[str, Any]]:
    """Компактный вид для details трейса"""
    return [{"intent": s.intent.name, "score": s.score} for s in scores[:limit]]
