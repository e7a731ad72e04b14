"""
Тесты system prompt для генеративного fallback (prompt_builder.py).
"""

from chat_router.prompt_builder import SAFETY_RULES, build_system_prompt


class TestBuildSystemPrompt:

    def test_starts_with_identity(self, business):
        prompt = build_system_prompt(business)
        assert prompt.startswith("คุณคือผู้ช่วยฝ่ายขายของ Test Drone Shop")

    def test_products_listed_with_prices(self, business):
        prompt = build_system_prompt(business)
        assert "- [ID:1] DJI Mini 4 Pro | ราคา 27,500 บาท | Camera Drone | โดรนกล้องน้ำหนักเบา 249 กรัม" in prompt

    def test_discontinued_section(self, business):
        prompt = build_system_prompt(business)
        active, discontinued = prompt.split("### Discontinued Products", 1)
        assert "DJI Mavic Air 2" not in active.split("## FAQ")[0]
        assert "DJI Mavic Air 2 | ราคา 25,900 บาท" in discontinued
        assert "→ แนะนำ: DJI Air 3" in discontinued

    def test_knowledge_sections(self, business):
        prompt = build_system_prompt(business)
        assert "Q: มีค่าส่งไหม\nA: ส่งฟรีทั่วประเทศครับ" in prompt
        assert "Reply: ผ่อน 0% 10 เดือนผ่านบัตรเครดิตได้ครับ" in prompt
        assert "[การลงทะเบียนโดรน]" in prompt

    def test_intents_sorted_and_active_only(self, business):
        prompt = build_system_prompt(business)
        assert prompt.index("### Intent #1: Greeting") < prompt.index("### Intent #20: Cancel Order")
        assert "Legacy Promo" not in prompt

    def test_safety_rules_included(self, business):
        assert SAFETY_RULES in build_system_prompt(business)

    def test_off_hours_note(self, business):
        assert "## เวลาทำการ" not in build_system_prompt(business)
        prompt = build_system_prompt(business, off_hours_note="ร้านปิดแล้วครับ")
        assert prompt.endswith("## เวลาทำการ:\nร้านปิดแล้วครับ")
