"""
Intent Handler Registry — стратегии ответа для слоя 6.

Каждый интент обслуживается именованной стратегией. Поиск стратегии:
    1. intent.handler (явно указан в конфигурации бизнеса)
    2. intent.id (если стратегия с таким именем зарегистрирована)
    3. "template" (ответ = response_template интента)

Стратегия возвращает IntentReply или None (pass-through: слой 6 получает
статус checked, и каскад идёт дальше).

Example:
    @intent_handlers.handler("greeting", description="Приветствие")
    def greeting(request: IntentRequest) -> Optional[IntentReply]:
        return IntentReply(content=request.intent.response_template)
"""

import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from chat_router import responses
from chat_router.context_extractor import ConversationContext
from chat_router.intent_scorer import IntentScore
from chat_router.models import BusinessConfig, IntentDefinition, Product


DEFAULT_HANDLER = "template"

_BUDGET_RE = re.compile(r"(\d[\d,]*)\s*(?:บาท|฿)?")


class HandlerNotFoundError(Exception):
    """Raised when a handler is not found in the registry."""

    def __init__(self, handler_name: str, registry_name: str = ""):
        self.handler_name = handler_name
        self.registry_name = registry_name
        message = f"Intent handler '{handler_name}' not found"
        if registry_name:
            message += f" in registry '{registry_name}'"
        super().__init__(message)


class HandlerAlreadyRegisteredError(Exception):
    """Raised when trying to register a handler that already exists."""

    def __init__(self, handler_name: str, registry_name: str = ""):
        self.handler_name = handler_name
        self.registry_name = registry_name
        message = f"Intent handler '{handler_name}' already registered"
        if registry_name:
            message += f" in registry '{registry_name}'"
        super().__init__(message)


# =============================================================================
# Request / Reply
# =============================================================================

@dataclass
class IntentRequest:
    """Всё, что получает стратегия"""
    message: str
    score: IntentScore
    business: BusinessConfig
    context: ConversationContext

    @property
    def intent(self) -> IntentDefinition:
        return self.score.intent

    @property
    def lower(self) -> str:
        return self.message.lower()


@dataclass
class IntentReply:
    """Ответ стратегии + side signals для транспорта"""
    content: str
    matched_products: List[str] = field(default_factory=list)
    is_admin_escalation: bool = False
    is_cancel_escalation: bool = False


IntentHandler = Callable[[IntentRequest], Optional[IntentReply]]


@dataclass
class IntentHandlerMetadata:
    name: str
    func: IntentHandler
    description: str = ""


# =============================================================================
# Registry
# =============================================================================

class IntentHandlerRegistry:
    """
    Реестр стратегий интентов.

    Каждая стратегия тестируется отдельно; каскад не знает id интентов.
    """

    def __init__(self, name: str, allow_overwrite: bool = False):
        self.name = name
        self.allow_overwrite = allow_overwrite
        self._handlers: Dict[str, IntentHandlerMetadata] = {}

    def handler(
        self,
        name: str,
        description: str = "",
    ) -> Callable[[IntentHandler], IntentHandler]:
        """Decorator для регистрации стратегии."""
        def decorator(func: IntentHandler) -> IntentHandler:
            self.register(name, func, description or (func.__doc__ or "").strip())
            return func
        return decorator

    def register(self, name: str, func: IntentHandler, description: str = "") -> None:
        if name in self._handlers and not self.allow_overwrite:
            raise HandlerAlreadyRegisteredError(name, self.name)
        self._handlers[name] = IntentHandlerMetadata(name=name, func=func, description=description)

    def unregister(self, name: str) -> None:
        self._handlers.pop(name, None)

    def has(self, name: str) -> bool:
        return name in self._handlers

    def get(self, name: str) -> IntentHandlerMetadata:
        if name not in self._handlers:
            raise HandlerNotFoundError(name, self.name)
        return self._handlers[name]

    def list_handlers(self) -> List[str]:
        return sorted(self._handlers)

    def resolve(self, intent: IntentDefinition) -> IntentHandlerMetadata:
        """Стратегия для интента (см. порядок поиска в docstring модуля)"""
        if intent.handler:
            return self.get(intent.handler)
        if intent.id in self._handlers:
            return self._handlers[intent.id]
        return self.get(DEFAULT_HANDLER)

    def dispatch(self, request: IntentRequest) -> Optional[IntentReply]:
        return self.resolve(request.intent).func(request)

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, name: str) -> bool:
        return name in self._handlers


intent_handlers = IntentHandlerRegistry("intent_handlers")


# =============================================================================
# Вспомогательные функции
# =============================================================================

def _template_reply(request: IntentRequest) -> Optional[IntentReply]:
    template = request.intent.response_template
    return IntentReply(content=template) if template else None


def _signalled_categories(request: IntentRequest) -> List[str]:
    """Категории, ключевые слова которых есть в сообщении (без Budget)"""
    lower = request.lower
    found = []
    for shortcut in request.business.category_shortcuts:
        if shortcut.category == responses.BUDGET_CATEGORY:
            continue
        if any(k.lower() in lower for k in shortcut.keys) and shortcut.category not in found:
            found.append(shortcut.category)
    return found


def _narrow_by_category(
    pool: List[Product],
    request: IntentRequest,
    preferred: Optional[str] = None,
) -> List[Product]:
    """
    Сузить выборку до категории, если сигнал однозначен.

    Несколько категорий в сообщении = сигнал неоднозначен, выборка не меняется.
    Без сигналов используется preferred (category интента).
    """
    categories = _signalled_categories(request)
    if len(categories) == 1:
        target = categories[0]
    elif not categories and preferred:
        target = preferred
    else:
        return pool
    narrowed = [p for p in pool if p.category == target]
    return narrowed or pool


def _brand_prefix(products: List[Product]) -> str:
    """Общее первое слово названий ("EM Legend", "EM Milano" -> "em ")"""
    first_words = {p.name.split(" ", 1)[0].lower() for p in products if " " in p.name}
    if len(first_words) == 1 and all(" " in p.name for p in products):
        return first_words.pop() + " "
    return ""


def find_specific_product(
    message_lower: str,
    products: List[Product],
    generic_tags: frozenset = frozenset(),
) -> Optional[Product]:
    """
    Конкретная модель, названная в сообщении.

    Три прохода, от более специфичного к менее специфичному:
    полное имя -> имя модели без бренда -> негенерический тег.
    Длинные имена моделей проверяются первыми ("legend pro" раньше "legend").
    """
    prefix = _brand_prefix(products)
    candidates = []
    for product in products:
        name = product.name.lower()
        model = name[len(prefix):].strip() if prefix and name.startswith(prefix) else name
        candidates.append((product, model))
    candidates.sort(key=lambda c: len(c[1]), reverse=True)

    for product, _ in candidates:
        if product.name.lower() in message_lower:
            return product

    for product, model in candidates:
        if len(model) > 2 and model in message_lower:
            return product

    for product, _ in candidates:
        for tag in product.tags:
            t = tag.lower()
            if len(t) > 2 and t not in generic_tags and t in message_lower:
                return product

    return None


def _generic_tags(business: BusinessConfig) -> frozenset:
    tags = {t.lower() for t in business.generic_product_tags}
    tags.update(c.lower() for c in business.categories())
    return frozenset(tags)


# =============================================================================
# Встроенные стратегии
# =============================================================================

@intent_handlers.handler("template", description="Ответ = response_template интента")
def template_handler(request: IntentRequest) -> Optional[IntentReply]:
    return _template_reply(request)


@intent_handlers.handler("greeting", description="Приветствие по шаблону")
def greeting_handler(request: IntentRequest) -> Optional[IntentReply]:
    return _template_reply(request)


@intent_handlers.handler("pass_through", description="Передать ход следующим слоям")
def pass_through_handler(request: IntentRequest) -> Optional[IntentReply]:
    return None


@intent_handlers.handler("contact_channels", description="Официальные каналы связи бизнеса")
def contact_channels_handler(request: IntentRequest) -> Optional[IntentReply]:
    return IntentReply(content=request.business.builders.contact_channels())


@intent_handlers.handler("admin_escalation", description="Передача диалога оператору")
def admin_escalation_handler(request: IntentRequest) -> Optional[IntentReply]:
    return IntentReply(
        content=request.business.builders.admin_escalation(),
        is_admin_escalation=True,
    )


@intent_handlers.handler("cancel_order", description="Отмена заказа: шаблон + сигнал оператору")
def cancel_order_handler(request: IntentRequest) -> Optional[IntentReply]:
    content = request.intent.response_template or request.business.builders.admin_escalation()
    return IntentReply(content=content, is_cancel_escalation=True)


@intent_handlers.handler("budget_recommendation", description="Подбор по бюджету")
def budget_recommendation_handler(request: IntentRequest) -> Optional[IntentReply]:
    business = request.business
    match = _BUDGET_RE.search(request.lower)
    budget = int(match.group(1).replace(",", "")) if match else None

    if budget:
        pool = [p for p in business.active_products() if p.price <= budget]
    else:
        pool = business.cheapest_products(5)
    pool = _narrow_by_category(pool, request, preferred=request.intent.category)

    if not pool:
        content = (
            "ขออภัยครับ ไม่พบสินค้าในงบประมาณที่ระบุ\n\n"
            f"สินค้าราคาเริ่มต้นของเราครับ:\n"
            f"{responses.price_list(business.cheapest_products(3), bold_price=False)}"
        )
        return IntentReply(content=content)

    shown = pool[:5]
    content = (
        f"สินค้าที่เหมาะกับงบของคุณครับ 💰\n\n{responses.price_list(shown)}\n\n"
        f"สนใจรุ่นไหนให้ผมแจ้งรายละเอียดเพิ่มเติมได้เลยครับ!"
    )
    return IntentReply(content=content, matched_products=[p.name for p in shown])


@intent_handlers.handler("recommendation", description="Популярные товары")
def recommendation_handler(request: IntentRequest) -> Optional[IntentReply]:
    pool = _narrow_by_category(request.business.active_products(), request)
    popular = pool[:4]
    listing = responses.price_list(popular, icon="🏆", bold_price=False)
    content = f"สินค้าแนะนำยอดนิยมครับ\n\n{listing}"
    if request.intent.response_template:
        content += f"\n\n{request.intent.response_template}"
    return IntentReply(content=content, matched_products=[p.name for p in popular])


@intent_handlers.handler("product_inquiry", description="Категории с количеством активных товаров")
def product_inquiry_handler(request: IntentRequest) -> Optional[IntentReply]:
    return IntentReply(content=responses.category_overview(request.business, active_only=True))


@intent_handlers.handler("catalog", description="Каталог категории или карточка конкретной модели")
def catalog_handler(request: IntentRequest) -> Optional[IntentReply]:
    business = request.business
    category = request.intent.category
    products = [p for p in business.active_products() if category and p.category == category]
    if not products:
        return _template_reply(request)

    specific = find_specific_product(request.lower, products, _generic_tags(business))
    if specific is not None:
        return IntentReply(
            content=responses.product_spec_detail(specific, business),
            matched_products=[specific.name],
        )

    heading = f"{business.name} — {category} ครับ"
    return IntentReply(content=responses.catalog_listing(products, heading))


@intent_handlers.handler("compare_models", description="Таблица сравнения двух моделей")
def compare_models_handler(request: IntentRequest) -> Optional[IntentReply]:
    lower = request.lower
    named = [p for p in request.business.products if p.name.lower() in lower]
    pair = named[:2] if len(named) >= 2 else request.context.recent_products[-2:]
    if len(pair) < 2:
        return _template_reply(request)
    first, second = pair
    return IntentReply(
        content=responses.comparison_table(first, second),
        matched_products=[first.name, second.name],
    )
