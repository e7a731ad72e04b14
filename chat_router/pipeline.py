"""
Layer Cascade — фиксированная цепочка слоёв 0-14 с коротким замыканием.

Контракт:
- слои вычисляются по возрастанию номера;
- первый сработавший слой формирует ответ и останавливает каскад;
- каждый слой (сработал он или нет) даёт ровно один PipelineStep;
- недостигнутые слои получают статус not_reached (TraceBuilder.finish).

Каскад синхронный и не хранит состояния между запросами:
BusinessConfig read-only, контекст строится заново из истории.

Использование:
    pipeline = RoutingPipeline(business)
    result = pipeline.run("ราคาเท่าไหร่", history)
    result.content, result.trace.final_layer
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from chat_router import responses
from chat_router.clarification import build_clarification
from chat_router.context_extractor import (
    ConversationContext,
    build_conversation,
    extract_context,
)
from chat_router.feature_flags import flags
from chat_router.intent_handlers import (
    IntentHandlerRegistry,
    IntentRequest,
    intent_handlers,
)
from chat_router.intent_scorer import IntentScore, score_intents, scores_summary, top_intent
from chat_router.logger import logger
from chat_router.models import BusinessConfig, ChatMessage
from chat_router.settings import settings
from chat_router.trace import (
    TERMINAL_LAYER,
    PipelineTrace,
    StepStatus,
    TraceBuilder,
    layer_definition,
)


# Ключевые слова слоя 11 ("что вы продаёте")
CATEGORY_BROWSE_KEYS = ("หมวด", "ประเภท", "category", "มีอะไรบ้าง", "ขายอะไร")

# Слой 13 отвечает по контексту только в уже идущем диалоге
CONTEXT_FALLBACK_MIN_MESSAGES = 3


@dataclass
class RoutingResult:
    """Результат маршрутизации одного сообщения."""
    content: str
    trace: PipelineTrace
    is_admin_escalation: bool = False
    is_cancel_escalation: bool = False
    clarify_options: Optional[List[str]] = None

    @property
    def reached_default_fallback(self) -> bool:
        return self.trace.final_layer == TERMINAL_LAYER

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"content": self.content, "trace": self.trace.to_dict()}
        if self.is_admin_escalation:
            result["is_admin_escalation"] = True
        if self.is_cancel_escalation:
            result["is_cancel_escalation"] = True
        if self.clarify_options is not None:
            result["clarify_options"] = list(self.clarify_options)
        return result


@dataclass
class LayerMatch:
    """Сработавший слой: ответ + поля для трейса и транспорта."""
    content: str
    final_layer_name: str
    final_intent: Optional[str] = None
    is_admin_escalation: bool = False
    is_cancel_escalation: bool = False
    clarify_options: Optional[List[str]] = None


@dataclass
class _RoutingState:
    """Данные одного прохода каскада."""
    message: str
    conversation: List[ChatMessage]
    builder: TraceBuilder
    context: Optional[ConversationContext] = None
    scores: Optional[List[IntentScore]] = None
    layer: int = 0

    @property
    def lower(self) -> str:
        return self.message.lower()


class RoutingPipeline:
    """
    Каскад слоёв для одного бизнеса.

    Args:
        business: Конфигурация бизнеса (read-only)
        handlers: Реестр стратегий интентов для слоя 6
        clock: Монотонные часы в секундах (по умолчанию time.perf_counter)
        wall_clock: Часы для timestamp трейса
        intent_threshold: Минимальный score интента (по умолчанию из settings)
    """

    def __init__(
        self,
        business: BusinessConfig,
        handlers: IntentHandlerRegistry = None,
        clock: Optional[Callable[[], float]] = None,
        wall_clock: Optional[Callable[[], datetime]] = None,
        intent_threshold: float = None,
    ):
        self.business = business
        self.handlers = handlers or intent_handlers
        self._clock = clock
        self._wall_clock = wall_clock
        if intent_threshold is None:
            intent_threshold = settings.pipeline.intent_threshold
        self.intent_threshold = intent_threshold

        # Порядок = приоритет. Слой 0 выполняется отдельно и никогда не терминален.
        self._layers = (
            (1, self._admin_escalation),
            (2, self._vat_refund),
            (3, self._stock_inquiry),
            (4, self._discontinued),
            (5, self._context_resolution),
            (6, self._intent_engine),
            (7, self._sale_script),
            (8, self._knowledge_base),
            (9, self._faq_search),
            (10, self._product_search),
            (11, self._category_browse),
            (12, self._category_specific),
            (13, self._context_fallback),
            (14, self._default_fallback),
        )

    # =========================================================================
    # Public API
    # =========================================================================

    def run(self, message: str, history: Sequence[ChatMessage] = ()) -> RoutingResult:
        """Провести сообщение через каскад."""
        builder = TraceBuilder(message, clock=self._clock, wall_clock=self._wall_clock)
        state = _RoutingState(
            message=message,
            conversation=build_conversation(history, message),
            builder=builder,
        )

        self._context_extraction(state, history)

        match: Optional[LayerMatch] = None
        for layer, evaluate in self._layers:
            state.layer = layer
            match = evaluate(state)
            if match is not None:
                break

        trace = builder.finish(
            final_layer=state.layer,
            final_layer_name=match.final_layer_name,
            final_intent=match.final_intent,
        )

        if flags.structured_logging:
            logger.event(
                "pipeline_routed",
                business_id=self.business.id,
                final_layer=trace.final_layer,
                final_layer_name=trace.final_layer_name,
                final_intent=trace.final_intent,
                duration_ms=trace.total_duration_ms,
            )

        return RoutingResult(
            content=match.content,
            trace=trace,
            is_admin_escalation=match.is_admin_escalation,
            is_cancel_escalation=match.is_cancel_escalation,
            clarify_options=match.clarify_options,
        )

    # =========================================================================
    # Helpers
    # =========================================================================

    def _record(
        self,
        state: _RoutingState,
        status: StepStatus,
        start: float,
        details: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
        name: Optional[str] = None,
    ) -> None:
        layer, default_name, default_description = layer_definition(state.layer)
        state.builder.record(
            layer,
            name or default_name,
            description or default_description,
            status,
            start,
            details,
        )

    def _scores(self, state: _RoutingState) -> List[IntentScore]:
        if state.scores is None:
            state.scores = score_intents(state.message, self.business)
        return state.scores

    # =========================================================================
    # Layer 0
    # =========================================================================

    def _context_extraction(self, state: _RoutingState, history: Sequence[ChatMessage]) -> None:
        t = state.builder.now()
        state.context = extract_context(history, state.message, self.business)
        self._record(state, StepStatus.CHECKED, t, {
            "intent": state.context.summary,
            "matched_products": [p.name for p in state.context.recent_products],
            "products_count": len(state.context.recent_products),
        })

    # =========================================================================
    # Layers 1-4: safety
    # =========================================================================

    def _admin_escalation(self, state: _RoutingState) -> Optional[LayerMatch]:
        t = state.builder.now()
        if self.business.matchers.admin_escalation(state.message):
            self._record(state, StepStatus.MATCHED, t, {
                "matched_triggers": ["admin escalation keywords"],
            })
            return LayerMatch(
                content=self.business.builders.admin_escalation(),
                final_layer_name="Safety: Admin Escalation",
                is_admin_escalation=True,
            )
        self._record(state, StepStatus.SKIPPED, t)
        return None

    def _vat_refund(self, state: _RoutingState) -> Optional[LayerMatch]:
        t = state.builder.now()
        if self.business.matchers.vat_refund(state.message):
            self._record(state, StepStatus.MATCHED, t)
            return LayerMatch(
                content=self.business.builders.vat_refund(),
                final_layer_name="Safety: VAT Refund",
            )
        self._record(state, StepStatus.SKIPPED, t)
        return None

    def _stock_inquiry(self, state: _RoutingState) -> Optional[LayerMatch]:
        """Наличие никогда не подтверждается: только "уточню у команды"."""
        t = state.builder.now()
        if not self.business.matchers.stock_inquiry(state.message):
            self._record(state, StepStatus.SKIPPED, t)
            return None

        product = state.context.active_product
        if product is not None:
            self._record(
                state, StepStatus.MATCHED, t,
                {"matched_products": [product.name]},
                description="ตรวจจับคำถามสต็อก + มีบริบทสินค้า",
            )
            return LayerMatch(
                content=responses.stock_check_for(product),
                final_layer_name="Safety: Stock (contextual)",
            )

        self._record(state, StepStatus.MATCHED, t)
        return LayerMatch(
            content=self.business.builders.stock_check(),
            final_layer_name="Safety: Stock Inquiry",
        )

    def _discontinued(self, state: _RoutingState) -> Optional[LayerMatch]:
        t = state.builder.now()
        mapping = self.business.matchers.discontinued(state.message)
        if mapping is not None:
            self._record(state, StepStatus.MATCHED, t, {
                "matched_triggers": [mapping.recommended],
                "intent": "discontinued_product",
            })
            return LayerMatch(
                content=self.business.builders.discontinued(mapping),
                final_layer_name="Discontinued Detection",
                final_intent="discontinued_product",
            )
        self._record(state, StepStatus.SKIPPED, t)
        return None

    # =========================================================================
    # Layer 5: context continuation
    # =========================================================================

    def _context_resolution(self, state: _RoutingState) -> Optional[LayerMatch]:
        t = state.builder.now()
        ctx = state.context

        if not flags.context_resolution:
            self._record(state, StepStatus.SKIPPED, t, description="ปิดใช้งาน (feature flag)")
            return None
        if not ctx.is_follow_up:
            self._record(state, StepStatus.SKIPPED, t, description="ไม่ใช่ follow-up message")
            return None
        if ctx.active_product is None:
            self._record(state, StepStatus.SKIPPED, t, description="Follow-up แต่ไม่มีสินค้าในบริบท")
            return None

        product = ctx.active_product
        content = responses.contextual_response(ctx, state.message, self.business)
        if content is None:
            self._record(
                state, StepStatus.CHECKED, t,
                {"matched_products": [product.name]},
                description="ตอบต่อเนื่องจากบริบทสนทนา (ไม่จับ topic ได้)",
            )
            return None

        self._record(state, StepStatus.MATCHED, t, {
            "intent": f"follow-up: {ctx.recent_topic or 'general'}",
            "matched_products": [product.name],
            "matched_triggers": ctx.matched_follow_up_phrases(state.message),
        })
        return LayerMatch(
            content=content,
            final_layer_name=f"Context: {product.name} → {ctx.recent_topic or 'detail'}",
        )

    # =========================================================================
    # Layer 6: intent engine
    # =========================================================================

    def _intent_engine(self, state: _RoutingState) -> Optional[LayerMatch]:
        t = state.builder.now()
        scores = self._scores(state)
        top = top_intent(scores, self.intent_threshold)

        if top is None:
            self._record(state, StepStatus.SKIPPED, t, {"all_scores": scores_summary(scores)})
            return None

        intent = top.intent
        details: Dict[str, Any] = {
            "intent": intent.name,
            "intent_id": intent.id,
            "score": top.score,
            "matched_triggers": list(top.matched_triggers),
            "all_scores": scores_summary(scores),
        }
        handler = self.handlers.resolve(intent)
        details["handler"] = handler.name
        reply = handler.func(IntentRequest(
            message=state.message,
            score=top,
            business=self.business,
            context=state.context,
        ))

        if reply is None:
            self._record(
                state, StepStatus.CHECKED, t, details,
                description="จับ intent แล้วแต่ pass-through",
            )
            return None

        if reply.matched_products:
            details["matched_products"] = list(reply.matched_products)
        self._record(state, StepStatus.MATCHED, t, details)
        return LayerMatch(
            content=reply.content,
            final_layer_name=f"Intent: {intent.name}",
            final_intent=intent.id,
            is_admin_escalation=reply.is_admin_escalation,
            is_cancel_escalation=reply.is_cancel_escalation,
        )

    # =========================================================================
    # Layers 7-9: scripted knowledge
    # =========================================================================

    def _sale_script(self, state: _RoutingState) -> Optional[LayerMatch]:
        t = state.builder.now()
        script = self.business.matchers.sale_script(state.message)
        if script is not None:
            self._record(state, StepStatus.MATCHED, t, {"matched_script": ", ".join(script.triggers)})
            return LayerMatch(content=script.admin_reply, final_layer_name="Sale Script")
        self._record(state, StepStatus.SKIPPED, t)
        return None

    def _knowledge_base(self, state: _RoutingState) -> Optional[LayerMatch]:
        t = state.builder.now()
        doc = self.business.matchers.knowledge_doc(state.message)
        if doc is not None:
            self._record(state, StepStatus.MATCHED, t, {"matched_doc": doc.title})
            return LayerMatch(
                content=responses.knowledge_answer(doc.title, doc.content),
                final_layer_name=f"Knowledge: {doc.title}",
            )
        self._record(state, StepStatus.SKIPPED, t)
        return None

    def _faq_search(self, state: _RoutingState) -> Optional[LayerMatch]:
        """Первый набор ключей с попаданием И подходящей записью FAQ побеждает."""
        t = state.builder.now()
        lower = state.lower
        for term in self.business.faq_terms:
            keys = [k.lower() for k in term.keys]
            if not any(k in lower for k in keys):
                continue
            for entry in self.business.faq_entries:
                question = entry.question.lower()
                answer = entry.answer.lower()
                if any(k in question or k in answer for k in keys):
                    self._record(state, StepStatus.MATCHED, t, {
                        "matched_faq_topic": term.topic,
                        "matched_triggers": [k for k in keys if k in lower],
                    })
                    return LayerMatch(
                        content=responses.faq_answer(entry.question, entry.answer),
                        final_layer_name=f"FAQ: {term.topic}",
                    )
        self._record(state, StepStatus.SKIPPED, t)
        return None

    # =========================================================================
    # Layers 10-12: catalog
    # =========================================================================

    def _product_search(self, state: _RoutingState) -> Optional[LayerMatch]:
        t = state.builder.now()
        found = self.business.matchers.search_products(state.message)
        if found:
            self._record(state, StepStatus.MATCHED, t, {
                "matched_products": [p.name for p in found[:3]],
                "products_count": len(found),
            })
            return LayerMatch(
                content=responses.search_results(found, self.business),
                final_layer_name="Product Search",
            )
        self._record(state, StepStatus.SKIPPED, t)
        return None

    def _category_browse(self, state: _RoutingState) -> Optional[LayerMatch]:
        t = state.builder.now()
        if any(k in state.lower for k in CATEGORY_BROWSE_KEYS):
            self._record(state, StepStatus.MATCHED, t)
            return LayerMatch(
                content=responses.category_overview(self.business),
                final_layer_name="Category Browse",
            )
        self._record(state, StepStatus.SKIPPED, t)
        return None

    def _category_specific(self, state: _RoutingState) -> Optional[LayerMatch]:
        """
        Шорткаты категорий, затем второй проход слоя 12: уточняющий вопрос.

        Второй проход заменяет шаг слоя, поэтому в трейсе один шаг слоя 12.
        """
        t = state.builder.now()
        lower = state.lower

        for shortcut in self.business.category_shortcuts:
            if not any(k.lower() in lower for k in shortcut.keys):
                continue
            content = ""
            if shortcut.category == responses.BUDGET_CATEGORY:
                content = responses.budget_listing(self.business)
            else:
                items = [p for p in self.business.active_products() if p.category == shortcut.category]
                if items:
                    content = responses.category_listing(shortcut.label, items)
            if content:
                self._record(
                    state, StepStatus.MATCHED, t,
                    {"matched_category": shortcut.category},
                    description=f"ค้นหาตามหมวด {shortcut.label}",
                )
                return LayerMatch(content=content, final_layer_name=f"Category: {shortcut.label}")

        self._record(state, StepStatus.SKIPPED, t)

        if not flags.clarification:
            return None

        t = state.builder.now()
        scores = self._scores(state)
        clarify = build_clarification(state.message, scores, state.context, self.business)
        if clarify is None:
            return None

        state.builder.replace(
            12, "Clarification", "ข้อความคลุมเครือ — ถามเพิ่มเติม", StepStatus.MATCHED, t,
            {"intent": "clarify", "all_scores": scores_summary(scores, 3)},
        )
        return LayerMatch(
            content=clarify.question,
            final_layer_name="Clarification",
            clarify_options=clarify.options,
        )

    # =========================================================================
    # Layers 13-14: fallbacks
    # =========================================================================

    def _context_fallback(self, state: _RoutingState) -> Optional[LayerMatch]:
        t = state.builder.now()
        product = state.context.active_product
        if product is not None and len(state.conversation) >= CONTEXT_FALLBACK_MIN_MESSAGES:
            self._record(state, StepStatus.MATCHED, t, {"matched_products": [product.name]})
            return LayerMatch(
                content=responses.context_fallback(product),
                final_layer_name=f"Context Fallback: {product.name}",
            )
        self._record(state, StepStatus.SKIPPED, t)
        return None

    def _default_fallback(self, state: _RoutingState) -> Optional[LayerMatch]:
        t = state.builder.now()
        self._record(state, StepStatus.MATCHED, t)
        return LayerMatch(
            content=self.business.default_fallback_message,
            final_layer_name="Default Fallback",
        )
