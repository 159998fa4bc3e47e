# -*- coding: utf-8 -*-
"""Phase 1: 故事圣经提取的测试 - LLM 驱动版本

使用 Mock LLM 测试单块解析、长文本分块合并与降级处理。
"""
import json

import pytest

from llm_client import MockLLMClient
from models import CharacterRole, EventType, StoryBible
from story_bible import StoryBibleExtractor


# ==================== Mock LLM 响应数据 ====================

def get_story_bible_response():
    return json.dumps({
        "title": "逆袭",
        "mainTheme": "隐忍与反击",
        "toneKeywords": ["爽", "悬疑"],
        "characters": [
            {"id": "C01", "name": "林凡", "role": "protagonist", "traits": ["隐藏", "冷静"]},
            {"id": "C02", "name": "赵总", "role": "antagonist", "traits": ["傲慢"]},
            {"id": "C03", "name": "小美", "role": "ally", "traits": ["善良"]}
        ],
        "events": [
            {"id": "E01", "summary": "林凡在公司被赵总当众嘲讽", "type": "load_bearing",
             "dependsOn": [], "enables": ["E02"], "characters": ["C01", "C02"]},
            {"id": "E02", "summary": "林凡得知公司的秘密", "type": "reinforcing",
             "characters": ["C01"]},
            {"id": "E03", "summary": "林凡的真实身份被揭示", "type": "load_bearing",
             "characters": ["C01", "C02"]}
        ],
        "estimatedEpisodes": 4
    }, ensure_ascii=False)


@pytest.fixture
def extractor():
    return StoryBibleExtractor(MockLLMClient(get_story_bible_response()))


class TestParseChunk:
    """测试单块解析"""

    def test_extract_basic(self, extractor):
        bible = extractor.extract("林凡是公司里最不起眼的职员。", "逆袭")
        assert isinstance(bible, StoryBible)
        assert bible.title == "逆袭"
        assert len(bible.characters) == 3
        assert len(bible.events) == 3
        assert bible.protagonist.name == "林凡"
        assert not bible.fallback

    def test_archetypes_inferred(self, extractor):
        bible = extractor.extract("正文", "逆袭")
        archetypes = {c.name: c.archetype for c in bible.characters}
        assert archetypes["林凡"] == "hidden_identity"
        assert archetypes["赵总"] == "oppressor"
        assert archetypes["小美"] == "ally"

    def test_beat_potential_inferred(self, extractor):
        bible = extractor.extract("正文", "逆袭")
        assert bible.find_event("E01").beat_potential == ["slap"]
        assert bible.find_event("E02").beat_potential == ["info"]
        assert bible.find_event("E03").beat_potential == ["identity"]

    def test_dependencies_inferred(self, extractor):
        bible = extractor.extract("正文", "逆袭")
        assert bible.find_event("E02").depends_on == ["E01"]
        assert bible.find_event("E03").depends_on == ["E01"]
        assert bible.event_chains[0]["events"] == ["E01", "E02"]

    def test_prompt_contains_content_and_title(self):
        client = MockLLMClient(get_story_bible_response())
        StoryBibleExtractor(client).extract("独一无二的小说正文", "测试标题")
        assert client.call_count == 1
        assert "独一无二的小说正文" in client.prompts[0]
        assert "测试标题" in client.prompts[0]

    def test_fenced_response(self):
        client = MockLLMClient("```json\n" + get_story_bible_response() + "\n```")
        bible = StoryBibleExtractor(client).extract("正文", "逆袭")
        assert len(bible.events) == 3

    def test_unknown_types_defaulted(self):
        response = json.dumps({
            "characters": [{"name": "路人", "role": "passerby"}],
            "events": [{"id": "E01", "summary": "日常", "type": "side_story"}]
        }, ensure_ascii=False)
        bible = StoryBibleExtractor(MockLLMClient(response)).extract("正文", "标题")
        assert bible.title == "标题"
        assert bible.characters[0].role == CharacterRole.SUPPORTING
        assert bible.events[0].type == EventType.REINFORCING


class TestFallback:
    """测试降级处理"""

    def test_unparseable_response(self):
        bible = StoryBibleExtractor(MockLLMClient("抱歉，我无法完成")).extract("正文" * 600, "标题")
        assert bible.fallback
        assert bible.parse_error
        assert bible.events == []
        assert bible.characters[0].name == "主角"
        assert bible.estimated_episodes == 2
        assert "抱歉" in bible.error

    def test_llm_exception(self):
        client = MockLLMClient(responses=[RuntimeError("连接超时")])
        bible = StoryBibleExtractor(client).extract("正文", "标题")
        assert bible.fallback
        assert bible.error == "连接超时"

    def test_truncated_response_keeps_complete_events(self):
        truncated = ('{"title": "逆袭", "events": [{"id": "E01", "summary": "开端", "type": "load_bearing"}, '
                     '{"id": "E02", "summ')
        bible = StoryBibleExtractor(MockLLMClient(truncated)).extract("正文", "逆袭")
        assert not bible.fallback
        assert [e.id for e in bible.events] == ["E01"]


class TestChunking:
    """测试长文本分块与合并"""

    def make_novel(self):
        return "\n".join(f"第{n}章 标题{n}\n" + "林凡在城里奔波。" * 40 for n in range(1, 3))

    def chunk_response(self, name, summary):
        return json.dumps({
            "characters": [{"id": "C01", "name": name, "role": "protagonist", "traits": [summary[:2]]}],
            "events": [
                {"id": "E01", "summary": summary, "type": "load_bearing"},
                {"id": "E02", "summary": summary + "之后", "dependsOn": ["E01"]}
            ],
            "toneKeywords": ["悬疑"],
            "worldInfo": {"setting": "都市", "rules": ["规则一"]}
        }, ensure_ascii=False)

    def test_two_chunks_logically_merged(self):
        client = MockLLMClient(responses=[
            self.chunk_response("林凡", "林凡被嘲讽"),
            self.chunk_response("林凡", "林凡复仇成功"),
        ])
        extractor = StoryBibleExtractor(client, chunk_size=400)
        bible = extractor.extract(self.make_novel(), "逆袭")

        assert client.call_count == 2
        assert "第 2/2 部分" in client.prompts[1]
        assert [c.name for c in bible.characters] == ["林凡"]
        assert [e.id for e in bible.events] == ["E01", "E02", "E03", "E04"]
        assert bible.find_event("E04").depends_on == ["E03"]
        assert bible.world_info["rules"] == ["规则一"]
        assert bible.tone_keywords == ["悬疑"]
        assert bible.estimated_episodes == 3

    def test_logical_merge_merges_traits(self):
        extractor = StoryBibleExtractor(MockLLMClient())
        first = StoryBible.from_dict(json.loads(self.chunk_response("林凡", "被嘲讽")))
        second = StoryBible.from_dict(json.loads(self.chunk_response("林凡", "复仇")))
        merged = extractor.logical_merge([first, second], "逆袭")
        assert merged.characters[0].traits == ["被嘲", "复仇"]

    def test_many_chunks_use_llm_merge(self):
        merged = json.dumps({"events": [{"id": "E01", "summary": "合并后的事件"}],
                             "characters": [{"name": "林凡", "role": "protagonist"}]},
                            ensure_ascii=False)
        client = MockLLMClient(merged)
        extractor = StoryBibleExtractor(client)
        partials = [StoryBible(title="逆袭") for _ in range(4)]
        bible = extractor.merge(partials, "逆袭")
        assert client.call_count == 1
        assert bible.events[0].summary == "合并后的事件"

    def test_llm_merge_failure_falls_back_to_logical(self):
        extractor = StoryBibleExtractor(MockLLMClient("不是 JSON"))
        partials = [StoryBible.from_dict(json.loads(self.chunk_response("林凡", f"事件{i}"))) for i in range(4)]
        bible = extractor.merge(partials, "逆袭")
        assert len(bible.events) == 8


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
