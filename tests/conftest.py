"""
Общие фикстуры тестов Chat Router.

- shop_data / make_business: небольшой магазин, собранный через parse_business
- FakeClock: детерминированные монотонные часы
- StubBackend: генеративный бэкенд без сети
- reset_flags: runtime overrides флагов не протекают между тестами
"""

import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import pytest

from chat_router.business_loader import parse_business
from chat_router.feature_flags import flags
from chat_router.llm import BackendConfig, BackendError, GenerativeBackend


# 10:00 по Бангкоку, понедельник
OPEN_TIME = datetime(2026, 1, 5, 3, 0, tzinfo=timezone.utc)
# 20:00 по Бангкоку, понедельник
CLOSED_TIME = datetime(2026, 1, 5, 13, 0, tzinfo=timezone.utc)

DEFAULT_FALLBACK = "ขออภัยครับ ผมยังไม่เข้าใจคำถาม ติดต่อทีมงานได้ที่ LINE @testshop ครับ"

SHOP_DATA: Dict[str, Any] = {
    "id": "testshop",
    "name": "Test Drone Shop",
    "short_name": "TDS",
    "line_id": "@testshop",
    "order_channels_text": "LINE: @testshop\nโทร: 02-000-0000",
    "default_fallback_message": DEFAULT_FALLBACK,
    "system_prompt_identity": "คุณคือผู้ช่วยฝ่ายขายของ Test Drone Shop",
    "hours": {"timezone": "Asia/Bangkok", "open": "09:00", "close": "18:00"},
    "products": [
        {
            "id": 1,
            "name": "DJI Mini 4 Pro",
            "description": "โดรนกล้องน้ำหนักเบา 249 กรัม\nกล้อง 4K/60fps HDR",
            "price": 27500,
            "category": "Camera Drone",
            "tags": ["mini 4 pro", "โดรนจิ๋ว"],
        },
        {
            "id": 2,
            "name": "DJI Air 3",
            "description": "โดรนกล้องคู่ระดับกลาง",
            "price": 39900,
            "category": "Camera Drone",
            "tags": ["air 3"],
        },
        {
            "id": 3,
            "name": "Osmo Pocket 3",
            "description": "กล้องพกพาพร้อมกิมบอล",
            "price": 14450,
            "category": "Action Camera",
            "tags": ["pocket 3"],
        },
        {
            "id": 4,
            "name": "DJI Mavic Air 2",
            "description": "โดรนรุ่นเก่า",
            "price": 25900,
            "category": "Camera Drone",
            "status": "discontinue",
            "recommended_alternative": "DJI Air 3",
        },
        {
            "id": 5,
            "name": "EM Legend Pro",
            "description": "มอเตอร์ไซค์ไฟฟ้ารุ่นท็อป\nMotor: 3000W | Battery: 72V 50Ah | Range: 120 km",
            "price": 49900,
            "category": "มอเตอร์ไซค์ไฟฟ้า",
            "tags": ["legend pro"],
        },
        {
            "id": 6,
            "name": "EM Legend",
            "description": "มอเตอร์ไซค์ไฟฟ้ารุ่นเริ่มต้น\nMotor: 2000W | Battery: 72V 38Ah | Range: 90 km",
            "price": 39900,
            "category": "มอเตอร์ไซค์ไฟฟ้า",
        },
    ],
    "faq": [
        {"question": "มีค่าส่งไหม", "answer": "ส่งฟรีทั่วประเทศครับ", "category": "shipping"},
    ],
    "faq_terms": [
        {"keys": ["ส่งฟรี", "ค่าส่ง"], "topic": "shipping"},
    ],
    "category_shortcuts": [
        {"keys": ["โดรน", "drone"], "category": "Camera Drone", "label": "โดรนถ่ายภาพ"},
        {"keys": ["กล้องแอคชั่น", "action cam"], "category": "Action Camera", "label": "กล้องแอคชั่น"},
        {"keys": ["ราคาถูก", "ถูกสุด"], "category": "Budget", "label": "สินค้าราคาประหยัด"},
    ],
    "discontinued": [
        {"triggers": ["mavic air 2"], "recommended": "DJI Air 3", "note": "Air 3 บินได้นานขึ้นครับ"},
    ],
    "sale_scripts": [
        {"id": 1, "triggers": ["ผ่อน"], "admin_reply": "ผ่อน 0% 10 เดือนผ่านบัตรเครดิตได้ครับ"},
    ],
    "knowledge_docs": [
        {
            "id": 1,
            "title": "การลงทะเบียนโดรน",
            "content": "โดรนที่มีกล้องต้องลงทะเบียนกับ กสทช. และ CAAT ครับ",
            "triggers": ["ลงทะเบียน"],
        },
    ],
    "intents": [
        {
            "id": "greeting",
            "number": 1,
            "name": "Greeting",
            "triggers": ["สวัสดี", "hello"],
            "response_template": "สวัสดีครับ ยินดีต้อนรับสู่ Test Drone Shop ครับ",
        },
        {
            "id": "contact_channels",
            "number": 8,
            "name": "Contact Channels",
            "triggers": ["ติดต่อ", "เบอร์โทร"],
        },
        {
            "id": "em_motorcycle",
            "number": 12,
            "name": "EM Motorcycle",
            "triggers": ["em", "มอเตอร์ไซค์ไฟฟ้า"],
            "handler": "catalog",
            "category": "มอเตอร์ไซค์ไฟฟ้า",
            "response_template": "สนใจ EM รุ่นไหนครับ",
        },
        {
            "id": "budget_recommendation",
            "number": 15,
            "name": "Budget Recommendation",
            "triggers": ["งบ", "budget"],
        },
        {
            "id": "compare_models",
            "number": 16,
            "name": "Compare Models",
            "triggers": ["เทียบ", "vs"],
            "response_template": "อยากเปรียบเทียบรุ่นไหนกับรุ่นไหนครับ",
        },
        {
            "id": "offtopic",
            "number": 18,
            "name": "Off-topic",
            "triggers": ["การเมือง"],
            "handler": "pass_through",
        },
        {
            "id": "cancel_order",
            "number": 20,
            "name": "Cancel Order",
            "triggers": ["ยกเลิกออเดอร์"],
            "response_template": "รับทราบครับ จะแจ้งทีมงานยกเลิกออเดอร์ให้ครับ",
        },
        {
            "id": "legacy_promo",
            "number": 30,
            "name": "Legacy Promo",
            "triggers": ["โปรเก่า"],
            "active": False,
        },
    ],
}


# =============================================================================
# Business
# =============================================================================

@pytest.fixture
def shop_data() -> Dict[str, Any]:
    return copy.deepcopy(SHOP_DATA)


@pytest.fixture
def make_business(shop_data):
    """Фабрика: make_business(**overrides) -> BusinessConfig"""
    def factory(**overrides):
        data = copy.deepcopy(shop_data)
        data.update(overrides)
        business, _ = parse_business(data, source="test")
        return business
    return factory


@pytest.fixture
def business(make_business):
    return make_business()


# =============================================================================
# Clocks
# =============================================================================

class FakeClock:
    """Монотонные часы: каждый вызов сдвигает время на step секунд."""

    def __init__(self, start: float = 100.0, step: float = 0.001):
        self.now = start
        self.step = step

    def __call__(self) -> float:
        value = self.now
        self.now += self.step
        return value

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def make_clock():
    return FakeClock


@pytest.fixture
def open_time() -> datetime:
    return OPEN_TIME


@pytest.fixture
def closed_time() -> datetime:
    return CLOSED_TIME


# =============================================================================
# Backends
# =============================================================================

class StubBackend(GenerativeBackend):
    """
    Бэкенд без сети.

    Args:
        name: Имя бэкенда (попадает в трейс)
        reply: Ответ generate()
        deltas: Дельты stream()
        error: Ошибка до первого ответа/дельты
        fail_after: stream() падает после N дельт
        configured: Есть ли API-ключ
        timeout: Таймаут бэкенда
        clock: FakeClock, который сдвигается перед каждой дельтой
        delta_seconds: На сколько сдвигать clock
    """

    kind = "stub"

    def __init__(
        self,
        name: str,
        reply: str = "คำตอบจากโมเดลครับ",
        deltas: Sequence[str] = ("คำตอบ", "จากโมเดลครับ"),
        error: Optional[str] = None,
        fail_after: Optional[int] = None,
        configured: bool = True,
        timeout: float = 30,
        clock: Optional[FakeClock] = None,
        delta_seconds: float = 0.0,
    ):
        super().__init__(
            BackendConfig(
                name=name,
                kind="stub",
                model=f"{name}-model",
                base_url="http://stub.local",
                timeout=timeout,
                api_key="test-key" if configured else None,
            ),
            max_tokens=64,
            temperature=0.0,
        )
        self.reply = reply
        self.deltas = list(deltas)
        self.error = error
        self.fail_after = fail_after
        self.clock = clock
        self.delta_seconds = delta_seconds
        self.calls: List[Dict[str, Any]] = []
        self.closed = False

    def generate(self, system_prompt, messages, timeout=None):
        self.calls.append({"system_prompt": system_prompt, "messages": list(messages), "timeout": timeout})
        if self.error:
            raise BackendError(self.name, self.error)
        return self.reply

    async def stream(self, system_prompt, messages, timeout=None):
        self.calls.append({"system_prompt": system_prompt, "messages": list(messages), "timeout": timeout})
        try:
            if self.error:
                raise BackendError(self.name, self.error)
            for index, delta in enumerate(self.deltas):
                if self.fail_after is not None and index == self.fail_after:
                    raise BackendError(self.name, "connection reset")
                if self.clock is not None:
                    self.clock.advance(self.delta_seconds)
                yield delta
        finally:
            self.closed = True


@pytest.fixture
def stub_backend():
    return StubBackend


# =============================================================================
# Flags
# =============================================================================

@pytest.fixture(autouse=True)
def reset_flags():
    """Runtime overrides флагов сбрасываются после каждого теста"""
    yield
    flags.clear_all_overrides()
