"""Tests for rule-based kind, emotion and importance scoring."""
import pytest

from mind.heuristics import (
    EMOTION_RULES,
    KIND_RULES,
    calculate_importance,
    classify_kind,
    detect_emotion,
)
from mind.types import EmotionType, MemoryKind


class TestClassifyKind:
    @pytest.mark.parametrize("text,expected", [
        ("I prefer tea over coffee", MemoryKind.PREFERENCE),
        ("My favorite color is blue", MemoryKind.PREFERENCE),
        ("Yesterday I went to the market", MemoryKind.EVENT),
        ("The meeting starts at 10:30", MemoryKind.EVENT),
        ("I'm working on a compiler project", MemoryKind.PROJECT),
        ("My name is Alex", MemoryKind.FACT),
        ("The conference is held in Berlin", MemoryKind.OTHER),
        ("I learned that octopuses have three hearts", MemoryKind.KNOWLEDGE),
        ("I feel tired", MemoryKind.EMOTION),
        ("Random words here", MemoryKind.OTHER),
    ])
    def test_categories(self, text, expected):
        assert classify_kind(text) == expected

    def test_preference_beats_event(self):
        assert classify_kind("I love going to concerts") == MemoryKind.PREFERENCE

    def test_project_beats_fact(self):
        # "i'm" is a fact phrase but the project rule comes first
        assert classify_kind("I'm building a boat") == MemoryKind.PROJECT

    def test_place_name_alone_is_not_a_fact(self):
        assert classify_kind("My sister lives in Tokyo") == MemoryKind.OTHER
        assert classify_kind("I live in Tokyo") == MemoryKind.FACT

    def test_rule_order(self):
        assert [category for _, category in KIND_RULES] == [
            MemoryKind.PREFERENCE,
            MemoryKind.EVENT,
            MemoryKind.PROJECT,
            MemoryKind.FACT,
            MemoryKind.KNOWLEDGE,
            MemoryKind.EMOTION,
        ]

    def test_case_insensitive(self):
        assert classify_kind("I LOVE PIZZA") == MemoryKind.PREFERENCE


class TestDetectEmotion:
    @pytest.mark.parametrize("text,expected", [
        ("I'm so excited, can't wait!", EmotionType.EXCITED),
        ("That show was amazing", EmotionType.EXCITED),
        ("That's great news", EmotionType.HAPPY),
        ("I was a bit disappointed", EmotionType.SAD),
        ("I'm frustrated with this bug", EmotionType.FRUSTRATED),
        ("I'm worried about the exam", EmotionType.ANXIOUS),
        ("I'm wondering how this works", EmotionType.CURIOUS),
        ("I will definitely finish it", EmotionType.CONFIDENT),
        ("The weather is mild today.", EmotionType.NEUTRAL),
    ])
    def test_emotions(self, text, expected):
        assert detect_emotion(text) == expected

    def test_plain_excited_is_happy(self):
        assert detect_emotion("I got excited") == EmotionType.HAPPY

    def test_excited_checked_before_happy(self):
        order = [category for _, category in EMOTION_RULES]
        assert order.index(EmotionType.EXCITED) < order.index(EmotionType.HAPPY)

    def test_emoji(self):
        assert detect_emotion("new job \U0001f929") == EmotionType.EXCITED


class TestImportance:
    def test_short_text_penalized(self):
        assert calculate_importance("ok then", MemoryKind.OTHER, EmotionType.NEUTRAL) == pytest.approx(0.4)

    def test_kind_bonus(self):
        score = calculate_importance(
            "i prefer green tea every morning", MemoryKind.PREFERENCE, EmotionType.NEUTRAL
        )
        assert score == pytest.approx(0.65)

    def test_capitalized_words(self):
        score = calculate_importance("Alice met Bob in Paris", MemoryKind.OTHER, EmotionType.NEUTRAL)
        assert score == pytest.approx(0.56)

    def test_emotion_bonus(self):
        base = calculate_importance("we talked about the weekend plans", MemoryKind.OTHER, EmotionType.NEUTRAL)
        excited = calculate_importance("we talked about the weekend plans", MemoryKind.OTHER, EmotionType.EXCITED)
        assert excited == pytest.approx(base + 0.1)

    def test_length_bonus(self):
        medium = " ".join(["word"] * 25)
        long = " ".join(["word"] * 60)
        assert calculate_importance(medium, MemoryKind.OTHER, None) == pytest.approx(0.6)
        assert calculate_importance(long, MemoryKind.OTHER, None) == pytest.approx(0.7)

    def test_clamped_to_unit_interval(self):
        text = "I love Colorado " * 70
        score = calculate_importance(text, MemoryKind.PREFERENCE, EmotionType.EXCITED)
        assert score == 1.0
        assert 0.0 <= calculate_importance("", MemoryKind.OTHER, None) <= 1.0
