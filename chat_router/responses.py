"""
Шаблоны ответов каскада (Markdown, тайский язык).

Только форматирование: решения о том, какой ответ нужен, принимают
pipeline и intent_handlers.
"""

import re
from typing import Iterable, List, Optional, Sequence

from chat_router.context_extractor import ConversationContext
from chat_router.models import BusinessConfig, Product


AFFIRMATIONS = ("เอา", "ได้", "ครับ", "ค่ะ", "โอเค", "ok", "yes", "ตกลง", "เอาเลย")

BUDGET_CATEGORY = "Budget"

# Строка описания со спецификацией: "Motor: 2000W | Range: 90 km | ..."
_SPEC_LINE_RE = re.compile(r"^\s*[\w .\-/]+:\s*[^|]+(\|\s*[\w .\-/]+:\s*[^|]+)+$")


def format_price(price: float) -> str:
    """12650 -> '12,650'"""
    if float(price).is_integer():
        return f"{int(price):,}"
    return f"{price:,.2f}"


def status_badge(product: Product) -> str:
    return "⚠️ DISCONTINUE" if product.is_discontinued else "✅ พร้อมจำหน่าย"


def spec_items(product: Product) -> List[str]:
    """Пункты строки спецификации (пусто, если её нет)"""
    for line in product.description.split("\n"):
        if _SPEC_LINE_RE.match(line):
            return [item.strip() for item in line.split("|") if item.strip()]
    return []


# =============================================================================
# Карточки товара
# =============================================================================

def product_card(product: Product) -> str:
    """Короткая карточка для списка результатов"""
    alternative = ""
    if product.recommended_alternative:
        alternative = f"\n➡️ แนะนำรุ่นใหม่: **{product.recommended_alternative}**"
    return (
        f"**{product.name}**\n"
        f"💰 **{format_price(product.price)} บาท** | {product.category}\n"
        f"{status_badge(product)}{alternative}\n"
        f"{product.summary_line}"
    )


def product_detail(product: Product, business: BusinessConfig) -> str:
    """Подробная карточка: описание построчно, статус и каналы заказа"""
    if product.price > 0:
        price = f"**{format_price(product.price)} บาท**"
    else:
        price = "**ฟรี** (รวมในค่าสินค้า)"

    lines = [f"**{product.name}** ครับ", "", f"💰 ราคา: {price}", "", "📋 รายละเอียด:"]
    lines.extend(f"  {line.strip()}" for line in product.description.split("\n") if line.strip())
    lines.extend(["", f"📂 หมวดหมู่: {product.category}"])

    if product.is_discontinued:
        lines.append("⚠️ สินค้ายกเลิกจำหน่ายแล้ว")
        if product.recommended_alternative:
            lines.append(f"➡️ แนะนำ: **{product.recommended_alternative}**")
    else:
        lines.append("✅ พร้อมจำหน่าย")

    lines.extend(["", "📞 สนใจสั่งซื้อหรือสอบถามเพิ่มเติมได้เลยครับ", business.order_channels_text])
    return "\n".join(lines)


def product_spec_detail(product: Product, business: BusinessConfig) -> str:
    """Подробная карточка модели со спецификацией по пунктам"""
    lines = [
        f"**{product.name}** ครับ",
        "",
        f"💰 ราคา: **{format_price(product.price)} บาท**",
        "",
        "📋 สเปค:",
    ]
    lines.extend(f"  • {item}" for item in spec_items(product))
    lines.extend(["", "✨ จุดเด่น:", f"  • {product.summary_line}"])
    if product.is_discontinued and product.recommended_alternative:
        lines.append(f"  ⚠️ ยกเลิกจำหน่าย → แนะนำ **{product.recommended_alternative}**")
    lines.extend(["", "📞 สนใจสั่งซื้อหรือนัดทดลองได้เลยครับ", business.order_channels_text])
    return "\n".join(lines)


def best_detail(product: Product, business: BusinessConfig) -> str:
    if spec_items(product):
        return product_spec_detail(product, business)
    return product_detail(product, business)


def catalog_listing(products: Sequence[Product], heading: str) -> str:
    """Список моделей категории по возрастанию цены"""
    lines = [heading, "", "รุ่นที่มีจำหน่าย:"]
    for product in sorted(products, key=lambda p: p.price):
        items = spec_items(product)[:3]
        specs = f" ({', '.join(items)})" if items else ""
        lines.append(f"• **{product.name}** — {format_price(product.price)} บาท{specs}")
    lines.extend(["", "สนใจรุ่นไหนครับ? พิมพ์ชื่อรุ่นได้เลย ผมจะให้รายละเอียดเต็มครับ!"])
    return "\n".join(lines)


def price_list(products: Iterable[Product], icon: str = "💰", bold_price: bool = True) -> str:
    rows = []
    for product in products:
        price = format_price(product.price)
        price = f"**{price} บาท**" if bold_price else f"{price} บาท"
        rows.append(f"{icon} **{product.name}** — {price}")
    return "\n".join(rows)


def comparison_table(first: Product, second: Product) -> str:
    """Markdown-таблица: цена, категория, статус"""
    def state(p: Product) -> str:
        return "ยกเลิก" if p.is_discontinued else "จำหน่าย"

    return (
        f"เปรียบเทียบ **{first.name}** vs **{second.name}** ครับ\n\n"
        f"| | **{first.name}** | **{second.name}** |\n"
        f"|---|---|---|\n"
        f"| ราคา | {format_price(first.price)} บาท | {format_price(second.price)} บาท |\n"
        f"| หมวดหมู่ | {first.category} | {second.category} |\n"
        f"| สถานะ | {state(first)} | {state(second)} |\n\n"
        f"สนใจรุ่นไหนมากกว่าครับ?"
    )


# =============================================================================
# Слой 5: ответы по контексту
# =============================================================================

def _is_affirmation(message_lower: str) -> bool:
    return any(message_lower == a or message_lower.startswith(a + " ") for a in AFFIRMATIONS)


def contextual_response(
    context: ConversationContext,
    message: str,
    business: BusinessConfig,
) -> Optional[str]:
    """
    Ответ по теме вопроса об активном товаре.

    None, если активного товара нет.
    """
    p = context.active_product
    if p is None:
        return None

    price = format_price(p.price)
    topic = context.recent_topic

    if topic == "price":
        discontinued = ""
        if p.is_discontinued:
            discontinued = "\n\n⚠️ สินค้านี้ยกเลิกจำหน่ายแล้ว"
            if p.recommended_alternative:
                discontinued += f" แนะนำ **{p.recommended_alternative}**"
            discontinued += " ครับ"
        return f"**{p.name}** ราคา **{price} บาท** ครับ 💰{discontinued}\n\nสนใจสอบถามเพิ่มเติมไหมครับ?"

    if topic == "warranty":
        return (
            f"**{p.name}** — ข้อมูลการรับประกันครับ\n\n"
            f"กรุณาสอบถามรายละเอียดการรับประกันเฉพาะสินค้านี้กับทีมงานครับ\n\n"
            f"สนใจดูรายละเอียดเพิ่มไหมครับ?"
        )

    if topic == "shipping":
        return (
            f"การจัดส่ง **{p.name}** ครับ\n\n"
            f"กรุณาสอบถามรายละเอียดการจัดส่งกับทีมงานครับ\n\n"
            f"ต้องการสั่งซื้อเลยไหมครับ?"
        )

    if topic == "specs":
        return (
            f"รายละเอียด **{p.name}** ครับ\n\n{p.description}\n\n"
            f"💰 ราคา: **{price} บาท**\n📂 หมวดหมู่: {p.category}\n\n"
            f"มีคำถามเพิ่มเติมไหมครับ?"
        )

    if topic == "installment":
        return f"**{p.name}** ราคา **{price} บาท** ครับ\n\nสอบถามเงื่อนไขการผ่อนชำระได้ที่ทีมงานครับ"

    if topic == "promotion":
        return (
            f"โปรโมชั่นสำหรับ **{p.name}** ครับ\n\n"
            f"💰 ราคา: **{price} บาท**\n\nสอบถามโปรโมชั่นล่าสุดได้ที่ทีมงานครับ"
        )

    if topic == "stock":
        # Наличие никогда не утверждается
        return (
            f"ผมขออนุญาตตรวจสอบสต็อก **{p.name}** กับทีมงานให้แน่ชัดก่อนนะครับ\n\n"
            f"เพื่อข้อมูลที่ถูกต้อง 100% ครับ"
        )

    if topic == "compare":
        if len(context.recent_products) >= 2:
            first, second = context.recent_products[-2:]
            return comparison_table(first, second)
        return f"สำหรับ **{p.name}** ราคา **{price} บาท** ครับ\n\nอยากเปรียบเทียบกับรุ่นไหนครับ?"

    if topic == "order":
        return (
            f"ขอบคุณที่สนใจ **{p.name}** ครับ!\n\n💰 ราคา: **{price} บาท**\n\n"
            f"ช่องทางสั่งซื้อครับ:\n{business.order_channels_text}\n\n"
            f"ทีมงานจะช่วยดำเนินการสั่งซื้อและแจ้งรายละเอียดการชำระเงินให้ครับ"
        )

    if not context.is_follow_up:
        return None

    if _is_affirmation(message.strip().lower()):
        return (
            f"ดีเลยครับ! สำหรับ **{p.name}** ราคา **{price} บาท**\n\n"
            f"สามารถสั่งซื้อได้ผ่าน:\n{business.order_channels_text}\n\n"
            f"หรือต้องการทราบข้อมูลเพิ่มเติมก่อนไหมครับ?"
        )

    if p.is_discontinued and p.recommended_alternative:
        status = f"⚠️ ยกเลิกจำหน่าย → แนะนำ **{p.recommended_alternative}**"
    elif p.is_discontinued:
        status = "⚠️ ยกเลิกจำหน่าย"
    else:
        status = "✅ พร้อมจำหน่าย"
    return (
        f"**{p.name}** ครับ\n\n{p.summary_line}\n💰 ราคา: **{price} บาท**\n"
        f"📂 หมวดหมู่: {p.category}\n{status}\n\nต้องการทราบเรื่องอะไรเพิ่มเติมครับ?"
    )


# =============================================================================
# Слои 10-13
# =============================================================================

def search_results(products: Sequence[Product], business: BusinessConfig) -> str:
    """1-2 совпадения -> подробно, больше -> топ-3 карточки + остаток"""
    if len(products) <= 2:
        return "\n\n---\n\n".join(best_detail(p, business) for p in products)

    cards = "\n\n---\n\n".join(product_card(p) for p in products[:3])
    more = ""
    if len(products) > 3:
        more = f"\n\n_...และอีก {len(products) - 3} รายการ_"
    return (
        f"พบสินค้าที่เกี่ยวข้อง {len(products)} รายการครับ\n\n{cards}{more}\n\n"
        f"สนใจรุ่นไหนเพิ่มเติมไหมครับ?"
    )


def category_overview(business: BusinessConfig, active_only: bool = False) -> str:
    """Категории с количеством товаров"""
    rows = []
    for category in business.categories():
        if active_only:
            count = len([p for p in business.active_products() if p.category == category])
            rows.append(f"• **{category}** — {count} รายการ")
        else:
            rows.append(f"• **{category}** ({len(business.products_by_category(category))} รายการ)")
    return f"📂 หมวดหมู่สินค้าของ {business.name} ครับ:\n\n" + "\n".join(rows) + "\n\nสนใจหมวดไหนครับ?"


def budget_listing(business: BusinessConfig) -> str:
    return (
        f"💡 สินค้าราคาเริ่มต้นครับ:\n\n{price_list(business.cheapest_products(5))}\n\n"
        f"สนใจรุ่นไหนบอกได้เลยครับ!"
    )


def category_listing(label: str, products: Sequence[Product]) -> str:
    rows = "\n".join(f"• **{p.name}** — {format_price(p.price)} บาท" for p in products[:5])
    more = ""
    if len(products) > 5:
        more = f"\n\n_...และอีก {len(products) - 5} รายการ_"
    return f"{label} ที่มีจำหน่ายครับ:\n\n{rows}{more}\n\nสนใจรุ่นไหนครับ?"


def context_fallback(product: Product) -> str:
    return (
        f"เกี่ยวกับ **{product.name}** ครับ:\n\n{product.summary_line}\n"
        f"💰 ราคา: **{format_price(product.price)} บาท**\n\n"
        f"สนใจสอบถามเรื่องไหนเพิ่มเติมครับ?\n- รายละเอียดสเปค\n- ประกัน\n- การสั่งซื้อ\n\n"
        f"หรือจะดูสินค้าอื่นก็บอกได้เลยครับ!"
    )


def stock_check_for(product: Product) -> str:
    return (
        f"ผมขออนุญาตตรวจสอบสต็อก **{product.name}** กับทีมงานให้แน่ชัดก่อนนะครับ\n\n"
        f"เพื่อข้อมูลที่ถูกต้อง 100% ครับ ระหว่างนี้ ให้ผมช่วยแนะนำข้อมูลส่วนอื่นก่อนไหมครับ?"
    )


def knowledge_answer(title: str, content: str) -> str:
    return f"📚 **{title}**\n\n{content}"


def faq_answer(question: str, answer: str) -> str:
    return f"📋 **{question}**\n\n{answer}"
