"""
Модель данных Chat Router.

Все сущности бизнес-конфигурации неизменяемы (frozen dataclass + tuple):
один BusinessConfig разделяется всеми конкурентными запросами без блокировок.

Сущности, производные от запроса (ConversationContext, IntentScore,
PipelineTrace, RoutingResult), живут в своих модулях.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple


# =============================================================================
# Сообщения
# =============================================================================

class MessageRole(str, Enum):
    """Роль автора сообщения"""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass(frozen=True)
class ChatMessage:
    """Одно сообщение истории диалога"""
    role: MessageRole
    content: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(role=MessageRole(data["role"]), content=data.get("content") or "")

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


# =============================================================================
# Каталог
# =============================================================================

class ProductStatus(str, Enum):
    ACTIVE = "active"
    DISCONTINUE = "discontinue"


@dataclass(frozen=True)
class Product:
    """Товар из каталога бизнеса"""
    id: int
    name: str
    description: str
    price: float
    category: str
    tags: Tuple[str, ...] = ()
    status: ProductStatus = ProductStatus.ACTIVE
    recommended_alternative: Optional[str] = None

    @property
    def is_discontinued(self) -> bool:
        return self.status == ProductStatus.DISCONTINUE

    @property
    def summary_line(self) -> str:
        """Первая строка описания (короткая карточка)"""
        return self.description.split("\n")[0]


@dataclass(frozen=True)
class FaqEntry:
    question: str
    answer: str
    category: str = ""


@dataclass(frozen=True)
class KnowledgeDoc:
    id: int
    title: str
    content: str
    triggers: Tuple[str, ...] = ()
    tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SaleScript:
    id: int
    triggers: Tuple[str, ...]
    admin_reply: str
    customer_example: str = ""
    tags: Tuple[str, ...] = ()


@dataclass(frozen=True)
class CategoryShortcut:
    """Ключевые слова -> категория каталога (или псевдо-категория Budget)"""
    keys: Tuple[str, ...]
    category: str
    label: str


@dataclass(frozen=True)
class FaqTerm:
    """Набор ключевых слов -> тема FAQ (слой 9)"""
    keys: Tuple[str, ...]
    topic: str


@dataclass(frozen=True)
class DiscontinuedMapping:
    """Снятая с продажи линейка -> рекомендуемая замена"""
    triggers: Tuple[str, ...]
    recommended: str
    note: Optional[str] = None


# =============================================================================
# Интенты
# =============================================================================

@dataclass(frozen=True)
class IntentDefinition:
    """
    Политика интента из конфигурации бизнеса.

    handler: имя стратегии в IntentHandlerRegistry (по умолчанию = id).
    category: категория каталога для стратегий вида "catalog".
    """
    id: str
    number: int
    name: str
    triggers: Tuple[str, ...] = ()
    policy: str = ""
    response_template: str = ""
    description: str = ""
    active: bool = True
    handler: Optional[str] = None
    category: Optional[str] = None


# =============================================================================
# Возможности бизнеса (matchers / response builders)
# =============================================================================

@dataclass(frozen=True)
class BusinessMatchers:
    """Предикаты слоёв 1-4, 7, 8, 10. Все принимают исходный текст сообщения."""
    admin_escalation: Callable[[str], bool]
    vat_refund: Callable[[str], bool]
    stock_inquiry: Callable[[str], bool]
    discontinued: Callable[[str], Optional[DiscontinuedMapping]]
    sale_script: Callable[[str], Optional[SaleScript]]
    knowledge_doc: Callable[[str], Optional[KnowledgeDoc]]
    search_products: Callable[[str], List[Product]]


@dataclass(frozen=True)
class ResponseBuilders:
    """Фиксированные ответы бизнеса"""
    admin_escalation: Callable[[], str]
    vat_refund: Callable[[], str]
    stock_check: Callable[[], str]
    discontinued: Callable[[DiscontinuedMapping], str]
    contact_channels: Callable[[], str]


@dataclass(frozen=True)
class BusinessConfig:
    """
    Всё, что нужно каскаду для одного бизнеса.

    Read-only: ни каскад, ни dispatcher его не меняют.
    """
    id: str
    name: str
    matchers: BusinessMatchers
    builders: ResponseBuilders
    default_fallback_message: str
    short_name: str = ""
    products: Tuple[Product, ...] = ()
    faq_entries: Tuple[FaqEntry, ...] = ()
    knowledge_docs: Tuple[KnowledgeDoc, ...] = ()
    sale_scripts: Tuple[SaleScript, ...] = ()
    intents: Tuple[IntentDefinition, ...] = ()
    category_shortcuts: Tuple[CategoryShortcut, ...] = ()
    faq_terms: Tuple[FaqTerm, ...] = ()
    order_channels_text: str = ""
    system_prompt_identity: str = ""
    generic_product_tags: Tuple[str, ...] = field(default=())

    # -------------------------------------------------------------------------
    # Catalog helpers
    # -------------------------------------------------------------------------

    def active_products(self) -> List[Product]:
        return [p for p in self.products if not p.is_discontinued]

    def discontinued_products(self) -> List[Product]:
        return [p for p in self.products if p.is_discontinued]

    def categories(self) -> List[str]:
        """Категории в порядке первого появления в каталоге"""
        seen: Dict[str, None] = {}
        for product in self.products:
            seen.setdefault(product.category, None)
        return list(seen)

    def products_by_category(self, category: str) -> List[Product]:
        target = category.lower()
        return [p for p in self.products if p.category.lower() == target]

    def cheapest_products(self, limit: int = 5) -> List[Product]:
        return sorted(self.active_products(), key=lambda p: p.price)[:limit]

    def find_product(self, name: str) -> Optional[Product]:
        """Точное (без учёта регистра) совпадение имени"""
        target = name.lower()
        for product in self.products:
            if product.name.lower() == target:
                return product
        return None
