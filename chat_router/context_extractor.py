"""
Context Extractor — восстанавливает контекст диалога из истории.

Чистая функция: никаких побочных эффектов, одинаковый вход -> одинаковый
ConversationContext.

Использование:
    from chat_router.context_extractor import extract_context

    ctx = extract_context(history, "ราคาเท่าไหร่", business)
    ctx.active_product, ctx.recent_topic, ctx.is_follow_up
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from chat_router.models import BusinessConfig, ChatMessage, MessageRole, Product
from chat_router.settings import settings


# =============================================================================
# Словари
# =============================================================================

FOLLOW_UP_PATTERNS: Tuple[str, ...] = (
    "รุ่นนี้", "ตัวนี้", "อันนี้", "เครื่องนี้", "สินค้านี้",
    "ราคาเท่าไหร่", "ราคาเท่าไร", "กี่บาท",
    "มีสีอะไร", "สีอะไรบ้าง",
    "มีประกัน", "ประกันกี่ปี", "ประกันเท่าไหร่",
    "ส่งกี่วัน", "ส่งฟรีไหม", "ค่าส่งเท่าไหร่", "จัดส่งยังไง",
    "มีโปรไหม", "ลดราคาไหม",
    "สเปค", "spec", "รายละเอียด",
    "ผ่อนได้ไหม", "ผ่อนกี่งวด",
    "เอาอันนี้", "สั่งได้เลย", "จะสั่ง", "สั่งซื้อ",
    "เปรียบเทียบ", "ต่างกันยังไง", "อะไรดีกว่า",
    "มีของไหม", "มีสต็อกไหม", "พร้อมส่งไหม",
    "แถมอะไร", "ได้อะไรบ้าง", "มาพร้อมอะไร",
    "this one", "how much", "what color", "any discount",
    "specs", "details", "warranty", "shipping",
    "compare", "difference", "better",
    "i want it", "order", "buy this",
    "เอา", "ได้", "ครับ", "ค่ะ", "โอเค", "ok", "yes",
    "แล้วก็", "แล้ว", "อีกอย่าง",
)

# Порядок важен: первая тема с совпадением побеждает
TOPIC_PATTERNS: Tuple[Tuple[str, Tuple[str, ...]], ...] = (
    ("price", ("ราคา", "กี่บาท", "เท่าไหร่", "เท่าไร", "price", "how much", "cost")),
    ("warranty", ("ประกัน", "warranty", "เคลม", "care refresh", "service plus")),
    ("shipping", ("ส่ง", "จัดส่ง", "shipping", "delivery", "ค่าส่ง", "กี่วัน")),
    ("color", ("สี", "color", "สีอะไร")),
    ("specs", ("สเปค", "spec", "รายละเอียด", "detail", "คุณสมบัติ", "feature")),
    ("installment", ("ผ่อน", "installment", "งวด", "บัตรเครดิต")),
    ("promotion", ("โปร", "ส่วนลด", "promotion", "discount", "ลดราคา", "แถม")),
    ("compare", ("เปรียบเทียบ", "compare", "ต่างกัน", "vs", "อะไรดีกว่า", "difference")),
    ("stock", ("สต็อก", "ของ", "พร้อมส่ง", "stock", "available", "มีไหม")),
    ("order", ("สั่ง", "ซื้อ", "เอา", "order", "buy")),
)

# Теги короче этого порога дают ложные срабатывания ("4K", "EM")
MIN_TAG_LENGTH = 4

_BOLD_RE = re.compile(r"\*\*(.+?)\*\*")


@dataclass
class ConversationContext:
    """Контекст диалога, построенный заново для каждого запроса."""
    recent_products: List[Product] = field(default_factory=list)
    active_product: Optional[Product] = None
    recent_topic: Optional[str] = None
    is_follow_up: bool = False
    recent_user_messages: List[str] = field(default_factory=list)
    summary: str = "No prior context"

    def matched_follow_up_phrases(self, message: str) -> List[str]:
        lower = message.lower()
        return [p for p in FOLLOW_UP_PATTERNS if p in lower]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recent_products": [p.name for p in self.recent_products],
            "active_product": self.active_product.name if self.active_product else None,
            "recent_topic": self.recent_topic,
            "is_follow_up": self.is_follow_up,
            "recent_user_messages": list(self.recent_user_messages),
            "summary": self.summary,
        }


def build_conversation(history: Sequence[ChatMessage], current: str) -> List[ChatMessage]:
    """
    История + текущее сообщение.

    Транспорт может прислать историю, которая уже заканчивается текущим
    сообщением пользователя. Тогда оно не дублируется.
    """
    conversation = list(history)
    last = conversation[-1] if conversation else None
    if last is None or last.role != MessageRole.USER or last.content != current:
        conversation.append(ChatMessage(role=MessageRole.USER, content=current))
    return conversation


def detect_topic(message: str) -> Optional[str]:
    lower = message.lower()
    for topic, keys in TOPIC_PATTERNS:
        if any(k in lower for k in keys):
            return topic
    return None


def _add_unique(products: List[Product], product: Product) -> None:
    if all(p.id != product.id for p in products):
        products.append(product)


def _scan_products(text: str, business: BusinessConfig, found: List[Product]) -> None:
    lower = text.lower()
    for product in business.products:
        if product.name.lower() in lower:
            _add_unique(found, product)
            continue
        for tag in product.tags:
            if len(tag) >= MIN_TAG_LENGTH and tag.lower() in lower:
                _add_unique(found, product)
                break


def _scan_bold_mentions(text: str, business: BusinessConfig, found: List[Product]) -> None:
    """Ассистент выделяет показанные товары как **Название** (пробелы внутри нормализуются)"""
    for mention in _BOLD_RE.findall(text):
        product = business.find_product(" ".join(mention.split()))
        if product is not None:
            _add_unique(found, product)


def _build_summary(
    active: Optional[Product],
    products: List[Product],
    topic: Optional[str],
    is_follow_up: bool,
) -> str:
    parts = []
    if active:
        parts.append(f"Active product: {active.name}")
    if len(products) > 1:
        parts.append(f"{len(products)} products in context")
    if topic:
        parts.append(f"Topic: {topic}")
    if is_follow_up:
        parts.append("Follow-up detected")
    return " | ".join(parts) if parts else "No prior context"


def is_follow_up_message(message: str, conversation_length: int, max_length: int = None) -> bool:
    """
    Follow-up = диалог уже идёт И есть фраза продолжения И
    (сообщение короткое ИЛИ фраза продолжения всё равно есть).

    Короткие подтверждения вроде "ok" работают в коротких сообщениях,
    явные фразы ("ราคาเท่าไหร่") работают на любой длине.
    """
    if max_length is None:
        max_length = settings.pipeline.follow_up_max_length
    lower = message.lower()
    has_phrase = any(p in lower for p in FOLLOW_UP_PATTERNS)
    return (
        conversation_length > 1
        and has_phrase
        and (len(message) < max_length or has_phrase)
    )


def extract_context(
    history: Sequence[ChatMessage],
    current: str,
    business: BusinessConfig,
    window: int = None,
) -> ConversationContext:
    """
    Построить ConversationContext.

    Args:
        history: Предыдущие сообщения (может уже содержать current)
        current: Текущее сообщение пользователя
        business: Конфигурация бизнеса (read-only)
        window: Сколько последних сообщений сканировать (по умолчанию 8)

    Returns:
        ConversationContext; отсутствие сигналов даёт пустые поля
    """
    if window is None:
        window = settings.pipeline.context_window

    conversation = build_conversation(history, current)
    products: List[Product] = []
    user_messages: List[str] = []

    for message in conversation[-window:]:
        if message.role == MessageRole.USER:
            user_messages.append(message.content)
        _scan_products(message.content, business, products)
        if message.role == MessageRole.ASSISTANT:
            _scan_bold_mentions(message.content, business, products)

    active = products[-1] if products else None
    topic = detect_topic(current)
    follow_up = is_follow_up_message(current, len(conversation))

    return ConversationContext(
        recent_products=products,
        active_product=active,
        recent_topic=topic,
        is_follow_up=follow_up,
        recent_user_messages=user_messages,
        summary=_build_summary(active, products, topic, follow_up),
    )
