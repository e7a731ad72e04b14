"""
Business Loader — конфигурации бизнесов из YAML.

Каждый бизнес описан одним файлом в chat_router/businesses/ (см.
settings.business.directory). Загрузчик превращает данные в read-only
BusinessConfig: строит keyword matchers для слоёв 1-4, 7, 8, 10 и
фиксированные ответы. Ошибки конфигурации поднимаются при загрузке
(старт приложения), а не на запросе.

Использование:
    registry = BusinessRegistry.from_directory()
    business = registry.get("dji13store")
"""

from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import yaml

from chat_router.intent_handlers import IntentHandlerRegistry, intent_handlers
from chat_router.logger import logger
from chat_router.models import (
    BusinessConfig,
    BusinessMatchers,
    CategoryShortcut,
    DiscontinuedMapping,
    FaqEntry,
    FaqTerm,
    IntentDefinition,
    KnowledgeDoc,
    Product,
    ProductStatus,
    ResponseBuilders,
    SaleScript,
)
from chat_router.off_hours import (
    WEEKDAYS,
    BusinessHours,
    DaySchedule,
    OffHoursAnnotator,
    default_schedule,
    parse_hhmm,
)
from chat_router.settings import settings


PACKAGE_DIR = Path(__file__).parent


# =============================================================================
# Ключевые слова по умолчанию (бизнес может переопределить в triggers:)
# =============================================================================

ADMIN_ESCALATION_TRIGGERS = (
    "แอดมิน", "admin", "พนักงาน", "คนจริง", "เจ้าหน้าที่",
    "ตัวแทน", "representative", "human", "คุยกับคน",
)

STOCK_TRIGGERS = (
    "มีของไหม", "มีของมั้ย", "ของมีไหม", "ของเหลือไหม", "เหลือไหม",
    "สต็อก", "stock", "availability", "available", "พร้อมส่งไหม",
)

VAT_REFUND_TRIGGERS = (
    "vat refund", "tax refund", "refund vat", "คืน vat", "คืนภาษี", "นักท่องเที่ยว", "tourist",
)

STOCK_CHECK_RESPONSE = (
    "ผมขออนุญาตตรวจสอบกับทีมงานให้แน่ชัดก่อนนะครับ เพื่อข้อมูลที่ถูกต้อง 100% ครับ "
    "ระหว่างนี้ ให้ผมช่วยแนะนำข้อมูลส่วนอื่นก่อนไหมครับ?"
)


class BusinessConfigError(Exception):
    """Raised when a business configuration file is invalid."""

    def __init__(self, source: str, errors: List[str]):
        self.source = source
        self.errors = errors
        message = f"Business config '{source}' is invalid ({len(errors)} error(s)):\n"
        message += "\n".join(f"  - {e}" for e in errors)
        super().__init__(message)


class UnknownBusinessError(KeyError):
    """Raised when a business id is not registered."""

    def __init__(self, business_id: str):
        self.business_id = business_id
        super().__init__(business_id)

    def __str__(self) -> str:
        return f"Unknown business '{self.business_id}'"


# =============================================================================
# Matchers / builders
# =============================================================================

def includes_any(text_lower: str, triggers: Iterable[str]) -> bool:
    return any(t.lower() in text_lower for t in triggers)


def _keyword_matcher(triggers: Sequence[str]):
    def match(message: str) -> bool:
        return includes_any(message.lower(), triggers)
    return match


def _first_by_triggers(items: Sequence[Any]):
    """Первый элемент, у которого хотя бы один trigger входит в сообщение"""
    def match(message: str):
        lower = message.lower()
        for item in items:
            if includes_any(lower, item.triggers):
                return item
        return None
    return match


def _product_search(products: Sequence[Product]):
    """Весь запрос как подстрока имени, описания, категории или тега"""
    def search(query: str) -> List[Product]:
        lower = query.lower()
        return [
            p for p in products
            if lower in p.name.lower()
            or lower in p.description.lower()
            or lower in p.category.lower()
            or any(lower in t.lower() for t in p.tags)
        ]
    return search


def discontinued_response(mapping: DiscontinuedMapping) -> str:
    content = (
        "ขออภัยครับ รุ่นที่สอบถาม **ยกเลิกการจำหน่าย/ไม่อยู่ในไลน์สินค้าแล้ว** ครับ\n"
        f"ผมแนะนำรุ่นใหม่ในซีรีส์เดียวกันคือ **{mapping.recommended}** แทนครับ"
    )
    if mapping.note:
        content += f"\n\nหมายเหตุ: {mapping.note}"
    return content


def _constant(text: str):
    def build() -> str:
        return text
    return build


def _default_responses(name: str, line_id: str, order_channels_text: str) -> Dict[str, str]:
    return {
        "admin_escalation": (
            "ได้เลยครับ! ผมจะโอนการสนทนาให้ทีมงานดูแลต่อทันทีครับ\n"
            "ทีมงานจะติดต่อกลับโดยเร็วที่สุดครับ\n\n"
            f"ติดต่อด่วน: LINE {line_id}"
        ),
        "vat_refund": (
            f"ขออภัยครับ ทาง {name} **ไม่มีบริการ VAT Refund สำหรับนักท่องเที่ยว** ครับ "
            "เป็นการจำหน่ายภายในประเทศไทยเท่านั้นครับ"
        ),
        "stock_check": STOCK_CHECK_RESPONSE,
        "contact_channels": f"ช่องทางติดต่อ {name} ครับ\n\n{order_channels_text}".rstrip(),
    }


# =============================================================================
# Parsing
# =============================================================================

def _tuple(value: Any) -> Tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(v) for v in value)


def _parse_products(raw: List[Dict[str, Any]], errors: List[str]) -> Tuple[Product, ...]:
    products = []
    seen_ids = set()
    for index, item in enumerate(raw or []):
        where = f"products[{index}]"
        missing = [k for k in ("id", "name", "price", "category") if k not in item]
        if missing:
            errors.append(f"{where}: отсутствуют поля {missing}")
            continue
        if item["id"] in seen_ids:
            errors.append(f"{where}: id {item['id']} дублируется")
            continue
        seen_ids.add(item["id"])
        try:
            status = ProductStatus(item.get("status", ProductStatus.ACTIVE.value))
        except ValueError:
            errors.append(f"{where}: неизвестный status '{item.get('status')}'")
            continue
        products.append(Product(
            id=int(item["id"]),
            name=str(item["name"]),
            description=str(item.get("description", "")),
            price=float(item["price"]),
            category=str(item["category"]),
            tags=_tuple(item.get("tags")),
            status=status,
            recommended_alternative=item.get("recommended_alternative"),
        ))
    return tuple(products)


def _parse_intents(
    raw: List[Dict[str, Any]],
    handlers: IntentHandlerRegistry,
    errors: List[str],
) -> Tuple[IntentDefinition, ...]:
    intents = []
    seen = set()
    for index, item in enumerate(raw or []):
        where = f"intents[{index}]"
        if "id" not in item or "number" not in item or "name" not in item:
            errors.append(f"{where}: нужны поля id, number, name")
            continue
        if item["id"] in seen:
            errors.append(f"{where}: id '{item['id']}' дублируется")
            continue
        seen.add(item["id"])
        handler = item.get("handler")
        if handler and handler not in handlers:
            errors.append(f"{where}: стратегия '{handler}' не зарегистрирована")
        intents.append(IntentDefinition(
            id=str(item["id"]),
            number=int(item["number"]),
            name=str(item["name"]),
            triggers=_tuple(item.get("triggers")),
            policy=str(item.get("policy", "")),
            response_template=str(item.get("response_template", "")),
            description=str(item.get("description", "")),
            active=bool(item.get("active", True)),
            handler=handler,
            category=item.get("category"),
        ))
    return tuple(intents)


def _parse_keyed(raw: List[Dict[str, Any]], section: str, errors: List[str], factory) -> tuple:
    items = []
    for index, item in enumerate(raw or []):
        try:
            items.append(factory(item))
        except (KeyError, TypeError, ValueError) as e:
            errors.append(f"{section}[{index}]: {e!r}")
    return tuple(items)


def parse_hours(raw: Optional[Dict[str, Any]], errors: List[str]) -> Optional[BusinessHours]:
    """Секция hours: timezone, open/close по умолчанию, days для исключений"""
    if raw is None:
        return None
    try:
        schedule = {d.day: d for d in default_schedule(raw.get("open", "09:00"), raw.get("close", "18:00"))}
        for day in raw.get("days") or []:
            name = str(day["day"]).lower()
            if name not in WEEKDAYS:
                errors.append(f"hours.days: неизвестный день '{day['day']}'")
                continue
            base = schedule[name]
            schedule[name] = DaySchedule(
                day=name,
                open=parse_hhmm(day["open"]) if "open" in day else base.open,
                close=parse_hhmm(day["close"]) if "close" in day else base.close,
                active=bool(day.get("active", True)),
            )
    except (KeyError, TypeError, ValueError) as e:
        errors.append(f"hours: {e!r}")
        return None

    kwargs: Dict[str, Any] = {
        "timezone": raw.get("timezone", "Asia/Bangkok"),
        "schedule": tuple(schedule[d] for d in WEEKDAYS),
        "enabled": bool(raw.get("enabled", True)),
    }
    if raw.get("prompt_note"):
        kwargs["prompt_note"] = str(raw["prompt_note"])
    return BusinessHours(**kwargs)


def parse_business(
    data: Dict[str, Any],
    source: str = "<dict>",
    handlers: IntentHandlerRegistry = None,
) -> Tuple[BusinessConfig, Optional[BusinessHours]]:
    """
    Собрать BusinessConfig из словаря.

    Raises:
        BusinessConfigError: если в конфигурации есть ошибки
    """
    handlers = handlers or intent_handlers
    if not isinstance(data, dict):
        raise BusinessConfigError(source, ["корень файла должен быть mapping"])

    errors: List[str] = []
    for key in ("id", "name", "default_fallback_message"):
        if not data.get(key):
            errors.append(f"поле '{key}' обязательно")

    name = str(data.get("name", ""))
    order_channels_text = str(data.get("order_channels_text", ""))
    products = _parse_products(data.get("products"), errors)
    intents = _parse_intents(data.get("intents"), handlers, errors)

    faq_entries = _parse_keyed(data.get("faq"), "faq", errors, lambda i: FaqEntry(
        question=str(i["question"]), answer=str(i["answer"]), category=str(i.get("category", "")),
    ))
    knowledge_docs = _parse_keyed(data.get("knowledge_docs"), "knowledge_docs", errors, lambda i: KnowledgeDoc(
        id=int(i["id"]), title=str(i["title"]), content=str(i["content"]),
        triggers=_tuple(i.get("triggers")), tags=_tuple(i.get("tags")),
    ))
    sale_scripts = _parse_keyed(data.get("sale_scripts"), "sale_scripts", errors, lambda i: SaleScript(
        id=int(i["id"]), triggers=_tuple(i["triggers"]), admin_reply=str(i["admin_reply"]),
        customer_example=str(i.get("customer_example", "")), tags=_tuple(i.get("tags")),
    ))
    shortcuts = _parse_keyed(data.get("category_shortcuts"), "category_shortcuts", errors, lambda i: CategoryShortcut(
        keys=_tuple(i["keys"]), category=str(i["category"]), label=str(i.get("label", i["category"])),
    ))
    faq_terms = _parse_keyed(data.get("faq_terms"), "faq_terms", errors, lambda i: FaqTerm(
        keys=_tuple(i["keys"]), topic=str(i["topic"]),
    ))
    discontinued = _parse_keyed(data.get("discontinued"), "discontinued", errors, lambda i: DiscontinuedMapping(
        triggers=_tuple(i["triggers"]), recommended=str(i["recommended"]), note=i.get("note"),
    ))
    hours = parse_hours(data.get("hours"), errors)

    if errors:
        raise BusinessConfigError(source, errors)

    triggers = data.get("triggers") or {}
    line_id = str(data.get("line_id", ""))
    texts = _default_responses(name, line_id, order_channels_text)
    texts.update({k: str(v) for k, v in (data.get("responses") or {}).items() if k in texts})

    matchers = BusinessMatchers(
        admin_escalation=_keyword_matcher(_tuple(triggers.get("admin_escalation", ADMIN_ESCALATION_TRIGGERS))),
        vat_refund=_keyword_matcher(_tuple(triggers.get("vat_refund", VAT_REFUND_TRIGGERS))),
        stock_inquiry=_keyword_matcher(_tuple(triggers.get("stock_inquiry", STOCK_TRIGGERS))),
        discontinued=_first_by_triggers(discontinued),
        sale_script=_first_by_triggers(sale_scripts),
        knowledge_doc=_first_by_triggers(knowledge_docs),
        search_products=_product_search(products),
    )
    builders = ResponseBuilders(
        admin_escalation=_constant(texts["admin_escalation"]),
        vat_refund=_constant(texts["vat_refund"]),
        stock_check=_constant(texts["stock_check"]),
        discontinued=discontinued_response,
        contact_channels=_constant(texts["contact_channels"]),
    )

    business = BusinessConfig(
        id=str(data["id"]),
        name=name,
        matchers=matchers,
        builders=builders,
        default_fallback_message=str(data["default_fallback_message"]),
        short_name=str(data.get("short_name", name)),
        products=products,
        faq_entries=faq_entries,
        knowledge_docs=knowledge_docs,
        sale_scripts=sale_scripts,
        intents=intents,
        category_shortcuts=shortcuts,
        faq_terms=faq_terms,
        order_channels_text=order_channels_text,
        system_prompt_identity=str(data.get(
            "system_prompt_identity",
            f"คุณคือผู้ช่วยฝ่ายขายของ {name} ตอบเป็นภาษาไทยอย่างสุภาพ ลงท้ายด้วย \"ครับ\"",
        )),
        generic_product_tags=_tuple(data.get("generic_product_tags")),
    )
    return business, hours


def load_business(path: Union[str, Path], handlers: IntentHandlerRegistry = None) -> Tuple[BusinessConfig, Optional[BusinessHours]]:
    """
    Загрузить бизнес из YAML файла.

    Raises:
        BusinessConfigError: файл не читается, не парсится или невалиден
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise BusinessConfigError(str(path), [f"YAML parse error: {e}"]) from e
    except OSError as e:
        raise BusinessConfigError(str(path), [str(e)]) from e
    return parse_business(data, source=str(path), handlers=handlers)


# =============================================================================
# Registry
# =============================================================================

class BusinessRegistry:
    """
    Реестр бизнесов по id.

    Args:
        businesses: Конфигурации бизнесов
        default_id: Бизнес для запросов без business_id
        hours: Расписания работы по id бизнеса
    """

    def __init__(
        self,
        businesses: Iterable[BusinessConfig] = (),
        default_id: Optional[str] = None,
        hours: Optional[Dict[str, BusinessHours]] = None,
    ):
        self._businesses: Dict[str, BusinessConfig] = {}
        for business in businesses:
            if business.id in self._businesses:
                raise BusinessConfigError(business.id, [f"business id '{business.id}' дублируется"])
            self._businesses[business.id] = business
        self.default_id = default_id
        self._hours: Dict[str, BusinessHours] = dict(hours or {})

    @classmethod
    def from_directory(
        cls,
        directory: Union[str, Path, None] = None,
        default_id: Optional[str] = None,
        handlers: IntentHandlerRegistry = None,
    ) -> "BusinessRegistry":
        """Загрузить все *.yaml из каталога (по умолчанию settings.business.directory)"""
        if directory is None:
            directory = settings.business.directory
        directory = Path(directory)
        if not directory.is_absolute() and not directory.exists():
            directory = PACKAGE_DIR / directory
        if not directory.is_dir():
            raise BusinessConfigError(str(directory), ["каталог бизнесов не найден"])

        businesses = []
        hours: Dict[str, BusinessHours] = {}
        for path in sorted(directory.glob("*.yaml")):
            business, business_hours = load_business(path, handlers=handlers)
            businesses.append(business)
            if business_hours is not None:
                hours[business.id] = business_hours
            logger.info("Business loaded", business_id=business.id, products=len(business.products))

        registry = cls(businesses, default_id=default_id or settings.business.default_id, hours=hours)
        if registry.default_id and registry.default_id not in registry:
            raise BusinessConfigError(str(directory), [f"default_id '{registry.default_id}' не найден"])
        return registry

    def get(self, business_id: Optional[str] = None) -> BusinessConfig:
        """
        Raises:
            UnknownBusinessError: если бизнес не зарегистрирован
        """
        business_id = business_id or self.default_id
        if business_id not in self._businesses:
            raise UnknownBusinessError(str(business_id))
        return self._businesses[business_id]

    def hours(self, business_id: str) -> Optional[BusinessHours]:
        return self._hours.get(business_id)

    def ids(self) -> List[str]:
        return list(self._businesses)

    def build_annotators(self) -> Dict[str, OffHoursAnnotator]:
        """Таблица off-hours аннотаторов для ChatRouter"""
        return {business_id: OffHoursAnnotator(h) for business_id, h in self._hours.items()}

    def __contains__(self, business_id: str) -> bool:
        return business_id in self._businesses

    def __len__(self) -> int:
        return len(self._businesses)
