"""
Clarification Engine — уточняющий вопрос, когда маршрутизировать нечего.

Срабатывает узко: top score == 0, нет активного товара в контексте,
сообщение длиннее одного символа и не входит в SKIP_WORDS. Любая другая
неоднозначность остаётся последующим слоям каскада.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from chat_router.context_extractor import ConversationContext
from chat_router.intent_scorer import IntentScore
from chat_router.models import BusinessConfig


# Приветствия, подтверждения и одиночная пунктуация:
# на них лучше отвечает default fallback
SKIP_WORDS = frozenset({
    "สวัสดี", "หวัดดี", "hello", "hi", "ok", "โอเค",
    "ครับ", "ค่ะ", "ได้", "เอา", "?", "??",
})

MAX_OPTIONS = 4
GENERIC_OPTIONS = ("ราคาสินค้า", "สินค้าแนะนำ", "ติดต่อเรา")

QUESTION_TEMPLATE = "ขอบคุณที่ติดต่อ {name} ครับ สอบถามเรื่องอะไรได้เลยครับ"


@dataclass
class ClarifyResult:
    """Вопрос + quick-reply варианты"""
    question: str
    options: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"question": self.question, "options": list(self.options)}


def build_clarification(
    message: str,
    scores: Sequence[IntentScore],
    context: ConversationContext,
    business: BusinessConfig,
) -> Optional[ClarifyResult]:
    """
    Построить уточняющий вопрос или вернуть None.

    Args:
        message: Текст сообщения
        scores: Результат score_intents (отсортирован)
        context: Контекст диалога
        business: Конфигурация бизнеса

    Returns:
        ClarifyResult с 1-4 вариантами или None
    """
    trimmed = message.strip()
    top_score = scores[0].score if scores else 0

    if top_score > 0 or context.active_product is not None or len(trimmed) <= 1:
        return None

    if trimmed.lower() in SKIP_WORDS:
        return None

    options = [s.label for s in business.category_shortcuts[:MAX_OPTIONS]]
    if not options:
        options = list(GENERIC_OPTIONS)

    return ClarifyResult(
        question=QUESTION_TEMPLATE.format(name=business.name),
        options=options,
    )
