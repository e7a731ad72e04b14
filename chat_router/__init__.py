"""
Chat Router — маршрутизация сообщений чата магазина через каскад слоёв 0-14
с генеративным fallback.

    from chat_router.router import ChatRouter

    router = ChatRouter.from_settings()
    result = router.route("มีโดรนรุ่นไหนบ้าง", business_id="dji13store")
"""

__version__ = "1.0.0"
