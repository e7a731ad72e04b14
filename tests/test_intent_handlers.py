"""
Тесты реестра стратегий интентов (intent_handlers.py).
"""

import pytest

from chat_router.context_extractor import ConversationContext, extract_context
from chat_router.intent_handlers import (
    DEFAULT_HANDLER,
    HandlerAlreadyRegisteredError,
    HandlerNotFoundError,
    IntentHandlerRegistry,
    IntentReply,
    IntentRequest,
    find_specific_product,
    intent_handlers,
)
from chat_router.intent_scorer import IntentScore
from chat_router.models import ChatMessage, IntentDefinition, MessageRole


def _intent(business, intent_id):
    return next(i for i in business.intents if i.id == intent_id)


def _request(business, intent, message, context=None):
    return IntentRequest(
        message=message,
        score=IntentScore(intent=intent, score=3.0, matched_triggers=[]),
        business=business,
        context=context or ConversationContext(),
    )


class TestRegistry:

    def test_builtin_handlers_registered(self):
        for name in (
            "template", "greeting", "pass_through", "contact_channels", "admin_escalation",
            "cancel_order", "budget_recommendation", "recommendation", "product_inquiry",
            "catalog", "compare_models",
        ):
            assert name in intent_handlers

    def test_decorator_registers(self):
        registry = IntentHandlerRegistry("test")

        @registry.handler("echo")
        def echo(request):
            """Повторить сообщение"""
            return IntentReply(content=request.message)

        assert registry.has("echo")
        assert registry.get("echo").description == "Повторить сообщение"
        assert len(registry) == 1

    def test_duplicate_registration_raises(self):
        registry = IntentHandlerRegistry("test")
        registry.register("echo", lambda r: None)
        with pytest.raises(HandlerAlreadyRegisteredError):
            registry.register("echo", lambda r: None)

    def test_overwrite_allowed(self):
        registry = IntentHandlerRegistry("test", allow_overwrite=True)
        registry.register("echo", lambda r: None)
        registry.register("echo", lambda r: IntentReply(content="x"))
        assert registry.list_handlers() == ["echo"]

    def test_missing_handler_raises(self):
        registry = IntentHandlerRegistry("test")
        with pytest.raises(HandlerNotFoundError) as exc_info:
            registry.get("missing")
        assert "missing" in str(exc_info.value)
        assert "test" in str(exc_info.value)


class TestResolve:

    def test_explicit_handler_first(self):
        intent = IntentDefinition(id="greeting", number=1, name="Greeting", handler="pass_through")
        assert intent_handlers.resolve(intent).name == "pass_through"

    def test_handler_by_intent_id(self):
        intent = IntentDefinition(id="cancel_order", number=20, name="Cancel")
        assert intent_handlers.resolve(intent).name == "cancel_order"

    def test_template_by_default(self):
        intent = IntentDefinition(id="warranty_policy", number=9, name="Warranty")
        assert intent_handlers.resolve(intent).name == DEFAULT_HANDLER


class TestBuiltinHandlers:

    def test_template_without_text_passes_through(self, business):
        intent = IntentDefinition(id="empty", number=99, name="Empty")
        assert intent_handlers.dispatch(_request(business, intent, "x")) is None

    def test_admin_escalation_signal(self, business):
        intent = IntentDefinition(id="admin_escalation", number=3, name="Admin")
        reply = intent_handlers.dispatch(_request(business, intent, "ขอคุยกับคน"))
        assert reply.is_admin_escalation is True
        assert reply.content == business.builders.admin_escalation()

    def test_recommendation_appends_template(self, business):
        intent = IntentDefinition(
            id="recommendation", number=4, name="Recommendation",
            response_template="สนใจรุ่นไหนบอกได้เลยครับ",
        )
        reply = intent_handlers.dispatch(_request(business, intent, "แนะนำหน่อย"))
        assert reply.content.startswith("สินค้าแนะนำยอดนิยมครับ")
        assert reply.content.endswith("สนใจรุ่นไหนบอกได้เลยครับ")
        assert len(reply.matched_products) == 4
        assert "DJI Mavic Air 2" not in reply.matched_products

    def test_recommendation_narrowed_by_category(self, business):
        intent = IntentDefinition(id="recommendation", number=4, name="Recommendation")
        reply = intent_handlers.dispatch(_request(business, intent, "แนะนำโดรนหน่อย"))
        assert reply.matched_products == ["DJI Mini 4 Pro", "DJI Air 3"]

    def test_ambiguous_category_signal_keeps_pool(self, business):
        intent = IntentDefinition(id="recommendation", number=4, name="Recommendation")
        reply = intent_handlers.dispatch(_request(business, intent, "โดรนหรือกล้องแอคชั่นดี"))
        assert "Osmo Pocket 3" in reply.matched_products
        assert "DJI Mini 4 Pro" in reply.matched_products

    def test_product_inquiry_counts_active_only(self, business):
        intent = IntentDefinition(id="product_inquiry", number=2, name="Products")
        reply = intent_handlers.dispatch(_request(business, intent, "มีอะไรขายบ้าง"))
        assert "**Camera Drone** — 2 รายการ" in reply.content

    def test_catalog_without_products_uses_template(self, business):
        intent = IntentDefinition(
            id="catalog_x", number=40, name="Catalog", handler="catalog",
            category="ไม่มีหมวดนี้", response_template="ยังไม่มีสินค้าครับ",
        )
        reply = intent_handlers.dispatch(_request(business, intent, "อะไรก็ได้"))
        assert reply.content == "ยังไม่มีสินค้าครับ"

    def test_compare_uses_context_products(self, business):
        history = [
            ChatMessage(role=MessageRole.USER, content="DJI Mini 4 Pro"),
            ChatMessage(role=MessageRole.ASSISTANT, content="แนะนำ **DJI Air 3** ด้วยครับ"),
        ]
        ctx = extract_context(history, "เทียบให้หน่อย", business)
        reply = intent_handlers.dispatch(
            _request(business, _intent(business, "compare_models"), "เทียบให้หน่อย", ctx)
        )
        assert reply.matched_products == ["DJI Mini 4 Pro", "DJI Air 3"]

    def test_compare_without_pair_uses_template(self, business):
        reply = intent_handlers.dispatch(
            _request(business, _intent(business, "compare_models"), "เทียบให้หน่อย")
        )
        assert reply.content == "อยากเปรียบเทียบรุ่นไหนกับรุ่นไหนครับ"


class TestFindSpecificProduct:

    def test_model_name_without_brand(self, business):
        products = [p for p in business.products if p.category == "มอเตอร์ไซค์ไฟฟ้า"]
        assert find_specific_product("สนใจ legend pro", products).name == "EM Legend Pro"

    def test_longer_model_checked_first(self, business):
        products = [p for p in business.products if p.category == "มอเตอร์ไซค์ไฟฟ้า"]
        assert find_specific_product("legend ราคาเท่าไหร่", products).name == "EM Legend"
        assert find_specific_product("legend pro ราคาเท่าไหร่", products).name == "EM Legend Pro"

    def test_generic_tags_ignored(self, business):
        products = [p for p in business.products if p.category == "Camera Drone"]
        assert find_specific_product("อยากได้โดรนจิ๋ว", products, frozenset({"โดรนจิ๋ว"})) is None
        assert find_specific_product("อยากได้โดรนจิ๋ว", products).name == "DJI Mini 4 Pro"
