"""
Тесты Intent Scorer (intent_scorer.py).
"""

import pytest

from chat_router.intent_scorer import (
    SUBSTRING_SCORE,
    WHOLE_WORD_SCORE,
    classify_intent,
    score_intents,
    score_trigger,
    scores_summary,
)


class TestScoreTrigger:

    def test_whole_word(self):
        assert score_trigger("say hello now", "hello") == WHOLE_WORD_SCORE

    def test_whole_word_at_boundaries(self):
        assert score_trigger("hello", "hello") == WHOLE_WORD_SCORE
        assert score_trigger("hi, hello!", "hello") == WHOLE_WORD_SCORE

    def test_substring_only(self):
        assert score_trigger("สวัสดีครับ", "สวัสดี") == SUBSTRING_SCORE

    def test_case_insensitive_trigger(self):
        assert score_trigger("dji vs air", "VS") == WHOLE_WORD_SCORE

    def test_missing(self):
        assert score_trigger("ราคาเท่าไหร่", "สวัสดี") == 0.0

    def test_empty_trigger(self):
        assert score_trigger("อะไรก็ได้", "") == 0.0


class TestScoreIntents:

    def test_single_substring_match(self, business):
        scores = score_intents("สวัสดีครับ", business)
        assert len(scores) == 1
        assert scores[0].intent.id == "greeting"
        assert scores[0].score == 2.0
        assert scores[0].matched_triggers == ["สวัสดี"]

    def test_corroboration_bonus(self, business):
        scores = score_intents("hello สวัสดี", business)
        assert scores[0].intent.id == "greeting"
        assert scores[0].score == pytest.approx(6.5)

    def test_sorted_descending(self, business):
        scores = score_intents("สวัสดีครับ ขอเทียบ DJI Mini 4 Pro vs DJI Air 3", business)
        assert [s.intent.id for s in scores] == ["compare_models", "greeting"]
        assert scores[0].score > scores[1].score

    def test_inactive_intent_excluded(self, business):
        assert score_intents("มีโปรเก่าไหม", business) == []

    def test_zero_scores_excluded(self, business):
        assert score_intents("อืม", business) == []

    def test_deterministic(self, business):
        first = [s.to_dict() for s in score_intents("งบ 30000 ติดต่อ", business)]
        second = [s.to_dict() for s in score_intents("งบ 30000 ติดต่อ", business)]
        assert first == second


class TestClassifyIntent:

    def test_threshold_met(self, business):
        top = classify_intent("สวัสดีครับ", business, threshold=2)
        assert top.intent.id == "greeting"

    def test_threshold_not_met(self, business):
        assert classify_intent("สวัสดีครับ", business, threshold=3) is None

    def test_nothing_matched(self, business):
        assert classify_intent("อืม", business) is None


def test_scores_summary_limit(business):
    scores = score_intents("สวัสดีครับ ขอเทียบ DJI Mini 4 Pro vs DJI Air 3", business)
    summary = scores_summary(scores, limit=1)
    assert summary == [{"intent": "Compare Models", "score": scores[0].score}]
