"""
Тесты текстов ответов слоя 5 (responses.py).
"""

from dataclasses import replace

import pytest

from chat_router.context_extractor import ConversationContext
from chat_router.responses import contextual_response


@pytest.fixture
def mavic(business):
    return next(p for p in business.products if p.name == "DJI Mavic Air 2")


def _context(product, topic=None, follow_up=False):
    return ConversationContext(
        recent_products=[product],
        active_product=product,
        recent_topic=topic,
        is_follow_up=follow_up,
    )


class TestDiscontinuedProduct:

    def test_price_names_alternative(self, business, mavic):
        reply = contextual_response(_context(mavic, topic="price"), "ราคาเท่าไหร่", business)
        assert "ยกเลิกจำหน่ายแล้ว แนะนำ **DJI Air 3** ครับ" in reply

    def test_price_without_alternative(self, business, mavic):
        product = replace(mavic, recommended_alternative=None)
        reply = contextual_response(_context(product, topic="price"), "ราคาเท่าไหร่", business)
        assert "ยกเลิกจำหน่ายแล้ว ครับ" in reply
        assert "None" not in reply
        assert "แนะนำ" not in reply

    def test_follow_up_status_without_alternative(self, business, mavic):
        product = replace(mavic, recommended_alternative=None)
        reply = contextual_response(_context(product, follow_up=True), "แล้วตัวนี้ล่ะ", business)
        assert "⚠️ ยกเลิกจำหน่าย\n" in reply
        assert "None" not in reply

    def test_follow_up_status_with_alternative(self, business, mavic):
        reply = contextual_response(_context(mavic, follow_up=True), "แล้วตัวนี้ล่ะ", business)
        assert "⚠️ ยกเลิกจำหน่าย → แนะนำ **DJI Air 3**" in reply
