"""Tests for the classification parser: untrusted model output in, typed result out."""

import pytest

from courier.common.errors import Notice
from courier.common.schemas import Category
from courier.pipeline.classification_parser import parse


class TestWellFormedOutput:
    def test_confident_projects(self):
        result = parse('{"category": "projects", "sub_area": "house", "confidence": 0.91}')
        assert result.category == Category.PROJECTS
        assert result.sub_area == "house"
        assert result.confidence == pytest.approx(0.91)
        assert result.notice is None
        assert not result.is_degraded

    def test_fenced_output(self):
        raw = '```json\n{"category": "ideas", "confidence": 0.7, "fields": {"one_liner": "Solar shed"}}\n```'
        result = parse(raw)
        assert result.category == Category.IDEAS
        assert result.raw_fields["one_liner"] == "Solar shed"

    def test_preamble_text_is_ignored(self):
        raw = 'Here you go:\n{"category": "people", "sub_area": "Alice", "confidence": 0.8}'
        assert parse(raw).category == Category.PEOPLE

    def test_category_normalized(self):
        assert parse('{"category": " Projects ", "confidence": 0.9}').category == Category.PROJECTS
        assert parse('{"category": "needs-review", "confidence": 0.9}').category == Category.NEEDS_REVIEW

    def test_extra_top_level_fields_kept(self):
        result = parse('{"category": "ideas", "confidence": 0.9, "title": "Shed", "fields": {"tags": ["a"]}}')
        assert result.raw_fields == {"tags": ["a"], "title": "Shed"}

    def test_placeholder_sub_area_dropped(self):
        assert parse('{"category": "ideas", "sub_area": "null", "confidence": 0.9}').sub_area is None
        assert parse('{"category": "ideas", "sub_area": "  ", "confidence": 0.9}').sub_area is None


class TestMalformedOutput:
    @pytest.mark.parametrize("raw", [
        "",
        "I'm not sure",
        "{not json}",
        '{"category": ',
        "[]",
        '["projects"]',
        "null",
        None,
        42,
        b'{"category": "projects"}',
    ])
    def test_always_needs_review(self, raw):
        result = parse(raw)
        assert result.category == Category.NEEDS_REVIEW
        assert result.confidence == 0.0
        assert result.notice == Notice.CLASSIFICATION_DEGRADED

    def test_unknown_category_coerced(self):
        result = parse('{"category": "recipes", "confidence": 0.95}')
        assert result.category == Category.NEEDS_REVIEW
        assert result.raw_fields["original_category"] == "recipes"
        assert result.is_degraded

    def test_non_string_category(self):
        result = parse('{"category": 3, "confidence": 0.95}')
        assert result.category == Category.NEEDS_REVIEW
        assert result.raw_fields["original_category"] == 3


class TestConfidence:
    def test_below_threshold_overrides_category(self):
        result = parse('{"category": "projects", "sub_area": "house", "confidence": 0.4}')
        assert result.category == Category.NEEDS_REVIEW
        assert result.confidence == pytest.approx(0.4)
        assert result.raw_fields["original_category"] == "projects"
        assert result.sub_area == "house"
        assert "below threshold" in result.degraded_reason

    def test_at_threshold_accepted(self):
        assert parse('{"category": "ideas", "confidence": 0.6}').category == Category.IDEAS

    def test_custom_threshold(self):
        assert parse('{"category": "ideas", "confidence": 0.7}', threshold=0.8).category == Category.NEEDS_REVIEW

    def test_out_of_range_clamped(self):
        result = parse('{"category": "ideas", "confidence": 7}')
        assert result.confidence == 1.0
        assert result.category == Category.IDEAS
        assert result.raw_fields["original_confidence"] == 7

        low = parse('{"category": "ideas", "confidence": -0.5}')
        assert low.confidence == 0.0
        assert low.category == Category.NEEDS_REVIEW

    @pytest.mark.parametrize("value", ['"high"', "true", "null", "NaN", "Infinity", "[0.9]"])
    def test_invalid_confidence_defaults_to_zero(self, value):
        result = parse('{"category": "ideas", "confidence": %s}' % value)
        assert result.confidence == 0.0
        assert result.category == Category.NEEDS_REVIEW
        assert "original_confidence" in result.raw_fields

    def test_numeric_string_accepted(self):
        assert parse('{"category": "ideas", "confidence": "0.75"}').confidence == pytest.approx(0.75)

    def test_missing_confidence(self):
        result = parse('{"category": "ideas"}')
        assert result.confidence == 0.0
        assert result.category == Category.NEEDS_REVIEW

    def test_needs_review_from_model_is_not_degraded(self):
        result = parse('{"category": "needs_review", "confidence": 0.2}')
        assert result.category == Category.NEEDS_REVIEW
        assert result.notice is None
