"""Tests for Python source rendering and callback token rewriting."""

import pytest

from framecall._internal.codegen import (
    CALLBACK_PLACEHOLDER,
    callback_token,
    camel_to_snake,
    generate_unique_variable_name,
    method_call_code,
    python_arguments,
    python_literal,
    rewrite_callback_token,
)
from framecall._internal.values import Name


class TestNames:
    @pytest.mark.parametrize(
        "name, expected",
        [
            ("sample", "sample"),
            ("readCsv", "read_csv"),
            ("cols.toUpperCase", "cols.to_upper_case"),
            ("getHTTPResponse", "get_http_response"),
            ("already_snake", "already_snake"),
        ],
    )
    def test_camel_to_snake(self, name, expected):
        assert camel_to_snake(name) == expected

    def test_unique_variable_names(self):
        names = {generate_unique_variable_name("dataframe") for _ in range(100)}

        assert len(names) == 100
        assert all(name.startswith("dataframe_") and name.isidentifier() for name in names)

    def test_prefix_is_made_an_identifier(self):
        assert generate_unique_variable_name("my-frame").startswith("my_frame_")
        assert generate_unique_variable_name("1x").isidentifier()


class TestLiterals:
    def test_scalars(self):
        assert python_literal(None) == "None"
        assert python_literal(True) == "True"
        assert python_literal(3) == "3"
        assert python_literal(1.5) == "1.5"
        assert python_literal(float("nan")) == 'float("nan")'

    def test_strings_are_escaped(self):
        assert python_literal('say "hi"\n') == '"say \\"hi\\"\\n"'

    def test_names_render_bare(self):
        assert python_literal(Name("df1")) == "df1"
        assert python_literal([Name("a"), "b"]) == '[a, "b"]'

    def test_containers(self):
        assert python_literal({"a": (1,)}) == '{"a": (1,)}'

    def test_unrenderable_value(self):
        with pytest.raises(TypeError):
            python_literal(object())

    def test_arguments_skip_routing_keys(self):
        kwargs = {"source": "df", "target": "t", "request_options": {}, "randomState": 0, "n": 3}
        assert python_arguments(kwargs) == "random_state=0, n=3"


class TestMethodCallCode:
    def test_in_place_operation(self):
        code = method_call_code("cols.upper", {"cols": "*"}, source="df1", target="df1")
        assert code == 'df1 = df1.cols.upper(cols="*")'

    def test_new_target(self):
        code = method_call_code("cols.upper", {"cols": "*"}, source=Name("df1"), target="df2")
        assert code == 'df2 = df1.cols.upper(cols="*")'

    def test_without_source_or_target(self):
        assert method_call_code("readCsv", {"sep": ","}) == 'read_csv(sep=",")'


class TestCallbackTokens:
    def test_rewrites_code(self):
        message = {"code": f"df.apply({CALLBACK_PLACEHOLDER})"}
        token = rewrite_callback_token(message, 4)

        assert token == callback_token(4) == f"{CALLBACK_PLACEHOLDER}4_default"
        assert message["code"] == f"df.apply({token})"

    def test_rewrites_named_callback(self):
        message = {"code": "progress(on_step)"}
        token = rewrite_callback_token(message, 9, "on_step")

        assert token == f"{CALLBACK_PLACEHOLDER}9_on_step"
        assert message["code"] == f"progress({token})"

    def test_rewrites_name_in_kwargs(self):
        original = {"func": Name(CALLBACK_PLACEHOLDER), "n": 1}
        message = {"kwargs": original}
        token = rewrite_callback_token(message, 2)

        assert message["kwargs"] == {"func": Name(token), "n": 1}
        assert original["func"] == Name(CALLBACK_PLACEHOLDER)

    def test_same_placeholder_gives_distinct_tokens(self):
        first = {"code": f"run({CALLBACK_PLACEHOLDER})"}
        second = {"code": f"run({CALLBACK_PLACEHOLDER})"}

        assert rewrite_callback_token(first, 1) != rewrite_callback_token(second, 2)
        assert first["code"] != second["code"]
