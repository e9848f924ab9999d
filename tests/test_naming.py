import pytest

from tether_mcp.mcp.naming import (
    MAX_PREFIX_LENGTH,
    MAX_TOOL_NAME_LENGTH,
    is_valid_tool_name,
    namespaced,
    normalize,
    unique_prefix,
)


class TestNormalize:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("Weather", "Weather"),
            ("My Weather Server!", "My_Weather_Server"),
            ("  a..b  c ", "a_b_c"),
            ("__x__", "x"),
            ("data-api_v2", "data-api_v2"),
            ("!!!", "server"),
            ("", "server"),
            ("Überwetter", "berwetter"),
        ],
    )
    def test_examples(self, name, expected):
        assert normalize(name) == expected

    @pytest.mark.parametrize(
        "name",
        ["x" * 100, "🙂" * 40, "a b " * 30, "----", "_" * 50, "In-Memory Test Server"],
    )
    def test_result_always_fits_the_prefix_contract(self, name):
        prefix = normalize(name)
        assert 1 <= len(prefix) <= MAX_PREFIX_LENGTH
        assert is_valid_tool_name(prefix)

    def test_is_deterministic(self):
        assert normalize("Weather Service #1") == normalize("Weather Service #1")


class TestNamespaced:
    def test_joins_with_double_underscore(self):
        assert namespaced("weather", "get_forecast") == "weather__get_forecast"

    def test_long_tool_name_is_cut_to_the_limit(self):
        name = namespaced("p" * MAX_PREFIX_LENGTH, "t" * 100)
        assert len(name) == MAX_TOOL_NAME_LENGTH
        assert is_valid_tool_name(name)

    def test_invalid_characters_in_tool_name_are_replaced(self):
        assert namespaced("fs", "read.file") == "fs__read_file"


class TestUniquePrefix:
    def test_free_prefix_is_kept(self):
        assert unique_prefix("weather", ["notes"]) == "weather"

    def test_taken_prefix_gets_a_number(self):
        assert unique_prefix("weather", ["weather"]) == "weather_2"
        assert unique_prefix("weather", ["weather", "weather_2"]) == "weather_3"

    def test_suffix_stays_within_length(self):
        prefix = "w" * MAX_PREFIX_LENGTH
        result = unique_prefix(prefix, [prefix])
        assert len(result) == MAX_PREFIX_LENGTH
        assert result.endswith("_2")
