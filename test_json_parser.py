# -*- coding: utf-8 -*-
"""容错 JSON 解析器的测试

覆盖 LLM 常见的输出问题：代码块、说明文字、字符串内换行、多余逗号、
未加引号的键、截断，以及全部失败时的部分提取。
"""
import json

import pytest

from json_parser import TolerantJSONParser, is_valid_json, parse_json, safe_parse_json


@pytest.fixture
def parser():
    return TolerantJSONParser()


class TestDirectParse:
    """测试合法 JSON"""

    def test_valid_object(self, parser):
        assert parser.parse('{"a": 1, "b": [1, 2]}') == {"a": 1, "b": [1, 2]}

    def test_valid_array_with_bom_and_whitespace(self, parser):
        assert parser.parse('\ufeff  [1, 2, 3]  \n') == [1, 2, 3]

    def test_non_string_input(self, parser):
        assert parser.parse(None) is None
        assert parser.parse(123) is None

    def test_empty_input(self, parser):
        assert parser.parse("") is None
        assert parser.parse("   ") is None


class TestRepairs:
    """测试修复策略"""

    def test_markdown_fence(self, parser):
        text = '```json\n{"title": "逆袭", "events": []}\n```'
        assert parser.parse(text) == {"title": "逆袭", "events": []}

    def test_fence_without_language(self, parser):
        assert parser.parse('```\n[{"id": "C01"}]\n```') == [{"id": "C01"}]

    def test_surrounding_prose(self, parser):
        text = '好的，下面是结果：{"episodes": [{"number": 1}]} 希望对你有帮助'
        assert parser.parse(text) == {"episodes": [{"number": 1}]}

    def test_prose_with_odd_quote_before_json(self, parser):
        """说明文字里落单的引号不应让后面的 JSON 被当作字符串转义"""
        assert parser.parse('He said "ok\n{"a": 1,\n"b": 2}') == {"a": 1, "b": 2}

    def test_prose_with_odd_quote_before_truncated_json(self, parser):
        assert parser.parse('模型说："好的\n{"a": 1,\n"b": [2, 3') == {"a": 1, "b": [2, 3]}

    def test_raw_newline_inside_string(self, parser):
        text = '{"narration": "第一行\n第二行", "emotion": "紧张"}'
        result = parser.parse(text)
        assert result["narration"] == "第一行\n第二行"
        assert result["emotion"] == "紧张"

    def test_trailing_commas(self, parser):
        assert parser.parse('{"a": [1, 2,], "b": 3,}') == {"a": [1, 2], "b": 3}

    def test_comma_inside_string_untouched(self, parser):
        assert parser.parse('{"a": "x,}", "b": [1,],}') == {"a": "x,}", "b": [1]}

    def test_bare_keys(self, parser):
        assert parser.parse('{title: "逆袭", count: 3}') == {"title": "逆袭", "count": 3}

    def test_fence_and_trailing_comma_combined(self, parser):
        text = '```json\n{"clips": [{"id": "C01"},],}\n```'
        assert parser.parse(text) == {"clips": [{"id": "C01"}]}

    def test_truncated_string_and_object(self, parser):
        text = '{"title": "逆袭", "estimatedEpisodes": 5, "mainTheme": "复仇'
        result = parser.parse(text)
        assert result == {"title": "逆袭", "estimatedEpisodes": 5, "mainTheme": "复仇"}

    def test_truncated_nested_array(self, parser):
        assert parser.parse('[1, 2, [3, 4') == [1, 2, [3, 4]]

    def test_truncated_after_key(self, parser):
        assert parser.parse('{"a": 1, "b":') == {"a": 1, "b": None}


class TestStepFunctions:
    """测试单个修复步骤"""

    def test_strip_code_fence_no_fence(self):
        assert TolerantJSONParser.strip_code_fence('{"a": 1}') is None

    def test_escape_control_characters_keeps_structure(self):
        text = '{\n  "a": "x\ty"\n}'
        fixed = TolerantJSONParser.escape_control_characters(text)
        assert fixed == '{\n  "a": "x\\ty"\n}'

    def test_extract_balanced_picks_longest(self):
        text = 'x {"a": 1} y {"b": [1, 2, 3]} z'
        assert TolerantJSONParser.extract_balanced(text) == '{"b": [1, 2, 3]}'

    def test_close_brackets_nothing_open(self):
        assert TolerantJSONParser.close_brackets('{"a": 1}') is None


class TestPartialExtraction:
    """测试部分提取"""

    def test_salvage_complete_items_from_truncated_array(self, parser):
        text = '"title": "逆袭", "events": [{"id": "E01"}, {"id": "E02", "summary": "被截'
        result = parser.extract_partial(text)
        assert result["_parseError"] is True
        assert result["events"] == [{"id": "E01"}]
        assert result["title"] == "逆袭"

    def test_estimated_episodes(self, parser):
        result = parser.extract_partial('"estimatedEpisodes": 12, "characters": [')
        assert result["estimatedEpisodes"] == 12
        assert result["characters"] == []

    def test_raw_content_limited(self):
        parser = TolerantJSONParser(raw_content_limit=20)
        result = parser.extract_partial('"title": "x" ' + "y" * 100)
        assert len(result["_rawContent"]) == 20

    def test_nothing_recognisable(self, parser):
        assert parser.parse("这里没有任何结构化内容") is None


class TestIdempotence:
    """解析结果重新序列化后再解析，结果不变"""

    @pytest.mark.parametrize("text", [
        '```json\n{"a": [1, 2,]}\n```',
        '说明 {"b": "第一行\n第二行"} 结束',
        '{c: {"d": [true, null]}}',
        '[{"id": "C01"}, {"id": "C02"',
    ])
    def test_reparse_is_stable(self, parser, text):
        first = parser.parse(text)
        assert first is not None
        assert parser.parse(json.dumps(first, ensure_ascii=False)) == first


class TestHelpers:
    """测试快捷函数"""

    def test_parse_json(self):
        assert parse_json('```json\n{"a": 1}\n```') == {"a": 1}

    def test_safe_parse_json_default(self):
        assert safe_parse_json("无效") == {}
        assert safe_parse_json("无效", default=[]) == []

    def test_is_valid_json(self):
        assert is_valid_json('{"a": 1}')
        assert not is_valid_json('{"a": 1,}')
        assert not is_valid_json(None)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
