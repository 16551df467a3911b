"""Tests for turning model answers into JSON payloads."""
import pytest

from services.errors import ParseError
from services.llm.parsing import (
    as_photo_results,
    parse_model_json,
    parse_photo_results,
    unwrap_result,
)


class TestParseModelJson:
    def test_plain_json(self):
        assert parse_model_json('[{"a": 1}]') == [{"a": 1}]

    def test_markdown_fence(self):
        assert parse_model_json('```json\n{"genre": ["street"]}\n```') == {"genre": ["street"]}

    def test_prose_around_payload(self):
        text = 'Here are the results:\n[{"story": "x"}]\nHope this helps!'
        assert parse_model_json(text) == [{"story": "x"}]

    def test_single_quotes_and_trailing_commas(self):
        assert parse_model_json("{'context': 'a park', 'tags': ['dog',],}") == {
            "context": "a park",
            "tags": ["dog"],
        }

    @pytest.mark.parametrize("text", [None, "", "   ", "no json here"])
    def test_unparsable(self, text):
        with pytest.raises(ParseError):
            parse_model_json(text)

    def test_parse_error_keeps_raw_text(self):
        with pytest.raises(ParseError) as exc:
            parse_model_json("nothing")
        assert exc.value.raw == "nothing"


class TestPhotoResults:
    def test_unwrap_result_key(self):
        assert unwrap_result({"result": [1]}) == [1]
        assert unwrap_result({"items": [2]}) == [2]
        assert unwrap_result({"other": 3}) == {"other": 3}

    def test_single_object_for_single_photo(self):
        assert as_photo_results({"story": "x"}, 1) == [{"story": "x"}]

    def test_count_must_match(self):
        with pytest.raises(ParseError, match="Expected 2 results, got 1"):
            as_photo_results([{"story": "x"}], 2)

    def test_items_must_be_objects(self):
        with pytest.raises(ParseError):
            as_photo_results(["x", "y"], 2)

    def test_parse_photo_results(self):
        text = '```json\n{"results": [{"a": 1}, {"a": 2}]}\n```'
        assert parse_photo_results(text, 2) == [{"a": 1}, {"a": 2}]
