"""
System prompt для генеративного fallback.

Собирается из той же конфигурации бизнеса, что и каскад, чтобы модель
отвечала в рамках каталога, FAQ и политик интентов.
"""

from typing import List, Optional

from chat_router.models import BusinessConfig, Product
from chat_router.responses import format_price


SAFETY_RULES = """## กฎเหล็ก (ห้ามละเมิดเด็ดขาด):
1. **ห้ามยืนยันสต็อก** — ไม่มีข้อมูลสต็อกเรียลไทม์ ให้ตอบว่า "ผมขออนุญาตตรวจสอบกับทีมงานให้แน่ชัดก่อนนะครับ"
2. **ถ้าลูกค้าขอคุยกับแอดมิน/คนจริง** — โอนทันทีและหยุดตอบ
3. **ไม่มี VAT Refund** สำหรับนักท่องเที่ยว
4. **สินค้า DISCONTINUE** — แจ้งและแนะนำรุ่นทดแทนเสมอ
5. **ห้ามแต่งข้อมูลสินค้า** ที่ไม่มีในระบบ
6. **ห้ามส่ง payment link** ทาง chat
7. ราคาแสดงเป็นบาทเสมอ รูปแบบ: 12,650 บาท
8. ถ้าไม่มีข้อมูล ให้แนะนำติดต่อผ่านช่องทางอย่างเป็นทางการ"""


def _format_product(product: Product) -> str:
    line = (
        f"- [ID:{product.id}] {product.name} | ราคา {format_price(product.price)} บาท | "
        f"{product.category} | {product.summary_line}"
    )
    if product.recommended_alternative:
        line += f" → แนะนำ: {product.recommended_alternative}"
    return line


def _product_section(business: BusinessConfig) -> str:
    lines: List[str] = ["### Active Products:"]
    lines.extend(_format_product(p) for p in business.active_products())
    discontinued = business.discontinued_products()
    if discontinued:
        lines.extend(["", "### Discontinued Products (แจ้งลูกค้าและแนะนำรุ่นทดแทนเสมอ):"])
        lines.extend(_format_product(p) for p in discontinued)
    return "\n".join(lines)


def _intent_section(business: BusinessConfig) -> str:
    blocks = []
    for intent in sorted((i for i in business.intents if i.active), key=lambda i: i.number):
        triggers = ", ".join(intent.triggers) if intent.triggers else "(fallback/default)"
        blocks.append(
            f"### Intent #{intent.number}: {intent.name}\n"
            f"Triggers: {triggers}\n"
            f"Policy: {intent.policy}\n"
            f"Template: {intent.response_template}"
        )
    return "\n\n".join(blocks)


def build_system_prompt(business: BusinessConfig, off_hours_note: Optional[str] = None) -> str:
    """
    Собрать system prompt.

    Args:
        business: Конфигурация бизнеса
        off_hours_note: Пометка о нерабочем времени (если бизнес закрыт)

    Returns:
        Текст system prompt
    """
    faq = "\n\n".join(f"Q: {f.question}\nA: {f.answer}" for f in business.faq_entries)
    scripts = "\n".join(
        f"- Triggers: {', '.join(s.triggers)}\n  Reply: {s.admin_reply}"
        for s in business.sale_scripts
    )
    knowledge = "\n\n".join(f"[{d.title}]\n{d.content}" for d in business.knowledge_docs)

    sections = [
        business.system_prompt_identity,
        f"## หมวดหมู่สินค้า: {', '.join(business.categories())}",
        f"## รายการสินค้า:\n{_product_section(business)}",
        f"## FAQ:\n{faq}",
        f"## Sale Scripts (ยึดตามนี้เมื่อตรงกับคำถาม):\n{scripts}",
        f"## Knowledge Base:\n{knowledge}",
        f"## Intent Policies (ต้องยึดตาม policy ของแต่ละ intent อย่างเคร่งครัด):\n{_intent_section(business)}",
        SAFETY_RULES,
    ]
    if off_hours_note:
        sections.append(f"## เวลาทำการ:\n{off_hours_note}")
    return "\n\n".join(sections)
