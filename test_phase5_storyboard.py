# -*- coding: utf-8 -*-
"""Phase 4: 分镜转化模块的测试 - 5D 框架

时间码排布、一致性锚点、批量 / 逐片段合成、缓存与失败降级。
"""
import csv
import io
import json

import pytest

from errors import SynthesisError
from llm_client import MockLLMClient
from models import Anchor, AnchorType, Clip
from presets import get_style_preset
from storyboard_generator import (
    ClipSynthesizer, StoryboardGenerator, anchors_for_clip, collect_anchors, ensure_anchor_tokens,
    extract_locations, mentioned_names, template_five_d
)


# ==================== 测试数据 ====================

def five_d(subject="a man in a suit", environment="grand hall"):
    return {
        "d1_subject": subject,
        "d2_environment": environment,
        "d3_material": "silk texture",
        "d4_camera": "close-up, slow push",
        "d5_mood": "tense"
    }


def make_clips():
    return [
        Clip.from_dict({"id": "C01", "visual": "场景：宴会厅，Lin 冷冷地看着众人", "emotion": "悬疑",
                        "narration": "字" * 50,
                        "dialogue": [{"speaker": "Lin", "line": "你们会后悔的"}]}),
        Clip.from_dict({"id": "C02", "visual": "赵总端着酒杯大笑", "emotion": "平静",
                        "narration": "字" * 50}),
        Clip.from_dict({"id": "C03", "visual": "Lin 扇了赵总一个耳光", "emotion": "高潮",
                        "narration": "字" * 25, "beatType": "slap"}),
    ]


def make_episode_script(number=1):
    return {
        "number": number,
        "title": f"第{number}集",
        "clips": [c.to_dict() for c in make_clips()]
    }


class TestAnchors:
    """测试一致性锚点"""

    def test_extract_locations_label(self):
        assert extract_locations("场景：宴会厅，灯火通明") == ["宴会厅"]

    def test_extract_locations_keyword(self):
        assert extract_locations("两人在天台对峙") == ["天台"]
        assert extract_locations("") == []

    def test_collect_anchors(self):
        anchors = collect_anchors(make_clips())
        tokens = [a.token for a in anchors.values()]
        assert tokens == ["{@char_Lin}", "{@loc_宴会厅}"]

    def test_ensure_anchor_tokens(self):
        lin = Anchor(AnchorType.CHAR, "Lin")
        assert ensure_anchor_tokens("a man", [lin]) == "{@char_Lin} a man"
        assert ensure_anchor_tokens("{@char_Lin} walks", [lin]) == "{@char_Lin} walks"
        assert ensure_anchor_tokens("", [lin]) == "{@char_Lin}"

    def test_mentioned_names_longest_first(self):
        assert mentioned_names("林婉儿泪流满面", ["林", "林婉儿"]) == ["林婉儿"]
        assert mentioned_names("林婉儿看着林", ["林", "林婉儿"]) == ["林婉儿", "林"]
        assert mentioned_names("空无一人", ["林"]) == []

    def test_short_name_inside_longer_name_not_anchored(self):
        """林 与 林婉儿 同集出现时，林婉儿 的片段不应带上 林 的锚点"""
        clips = [
            Clip.from_dict({"id": "C01", "visual": "林站在门口",
                            "dialogue": [{"speaker": "林", "line": "我回来了"}]}),
            Clip.from_dict({"id": "C02", "visual": "林婉儿泪流满面",
                            "dialogue": [{"speaker": "林婉儿", "line": "你终于回来了"}]}),
        ]
        anchors = collect_anchors(clips)
        assert [a.name for a in anchors_for_clip(clips[1], anchors)["characters"]] == ["林婉儿"]
        assert [a.name for a in anchors_for_clip(clips[0], anchors)["characters"]] == ["林"]

        enriched = ClipSynthesizer(MockLLMClient()).synthesize_episode_clips(clips, use_llm=False)
        assert enriched[1].prompt.d1_subject == "{@char_林婉儿} tearful expression"
        assert "{@char_林}" not in enriched[1].prompt.d1_subject
        assert enriched[0].prompt.d1_subject == "{@char_林} standing figure"


class TestLayout:
    """测试时间码排布"""

    def test_sequential_time_codes(self):
        clips = StoryboardGenerator(use_llm=False).layout_clips(make_clips())
        assert [(c.time_code.start, c.time_code.end) for c in clips] == [(0, 10), (10, 25), (25, 30)]

    def test_max_duration_ceiling(self):
        clips = StoryboardGenerator(use_llm=False, max_duration=8).layout_clips(make_clips())
        assert [c.duration for c in clips] == [5, 5, 5]


class TestSynthesizer:
    """测试提示词合成"""

    def test_batch_anchor_consistency(self):
        response = json.dumps([five_d(), five_d("a laughing man"), five_d("a man striking")])
        client = MockLLMClient(response)
        clips = ClipSynthesizer(client).synthesize_episode_clips(make_clips())

        assert client.call_count == 1
        assert "{@char_Lin}" in client.prompts[0]
        assert clips[0].prompt.d1_subject.startswith("{@char_Lin}")
        assert clips[2].prompt.d1_subject.startswith("{@char_Lin}")
        assert "{@char_Lin}" not in clips[1].prompt.d1_subject
        assert clips[0].prompt.d2_environment.startswith("{@loc_宴会厅}")
        assert all(c.prompt.source == "llm" for c in clips)

    def test_anchor_kept_when_llm_includes_it(self):
        response = json.dumps([five_d("{@char_Lin} in a suit")] * 3)
        clips = ClipSynthesizer(MockLLMClient(response)).synthesize_episode_clips(make_clips())
        assert clips[0].prompt.d1_subject.count("{@char_Lin}") == 1

    def test_batch_wrapped_in_object(self):
        response = json.dumps({"clips": [five_d()] * 3})
        clips = ClipSynthesizer(MockLLMClient(response)).synthesize_episode_clips(make_clips())
        assert clips[1].prompt.source == "llm"

    def test_batch_count_mismatch_lenient(self):
        response = json.dumps([five_d(), five_d()])
        clips = ClipSynthesizer(MockLLMClient(response)).synthesize_episode_clips(make_clips())
        assert [c.prompt.source for c in clips] == ["llm", "llm", "template"]
        assert clips[2].prompt.d1_subject.startswith("{@char_Lin}")

    def test_batch_count_mismatch_strict(self):
        response = json.dumps([five_d(), five_d()])
        with pytest.raises(SynthesisError):
            ClipSynthesizer(MockLLMClient(response)).synthesize_episode_clips(make_clips(), strict_batch=True)

    def test_batch_invalid_item_uses_template(self):
        response = json.dumps([five_d(), "oops", five_d()])
        clips = ClipSynthesizer(MockLLMClient(response)).synthesize_episode_clips(make_clips())
        assert [c.prompt.source for c in clips] == ["llm", "template", "llm"]

    def test_batch_truncated_uses_salvaged_clips(self):
        """响应在第三个片段处被截断时，前两个完整片段仍采用 LLM 结果"""
        response = '{"clips": [' + json.dumps(five_d()) + ', ' + json.dumps(five_d("a laughing man")) + ', {"d1_sub'
        clips = ClipSynthesizer(MockLLMClient(response)).synthesize_episode_clips(make_clips())
        assert [c.prompt.source for c in clips] == ["llm", "llm", "template"]
        assert clips[1].prompt.d1_subject == "a laughing man"

    def test_batch_truncated_strict_raises(self):
        response = '{"clips": [' + json.dumps(five_d()) + ', {"d1_sub'
        with pytest.raises(SynthesisError):
            ClipSynthesizer(MockLLMClient(response)).synthesize_episode_clips(make_clips(), strict_batch=True)

    def test_batch_unparseable_raises_with_raw(self):
        synthesizer = ClipSynthesizer(MockLLMClient("完全不是 JSON"))
        with pytest.raises(SynthesisError) as exc_info:
            synthesizer.synthesize_episode_clips(make_clips())
        assert exc_info.value.raw_response == "完全不是 JSON"

    def test_batch_call_failure_raises(self):
        synthesizer = ClipSynthesizer(MockLLMClient(responses=[RuntimeError("超时")]))
        with pytest.raises(SynthesisError):
            synthesizer.synthesize_episode_clips(make_clips())

    def test_per_clip_cache(self):
        client = MockLLMClient(json.dumps(five_d()))
        synthesizer = ClipSynthesizer(client)
        same = [Clip(id="A", visual="雨夜街头", emotion="紧张"), Clip(id="B", visual="雨夜街头", emotion="紧张")]
        clips = synthesizer.synthesize_episode_clips(same, use_batch=False)
        assert client.call_count == 1
        assert [c.prompt.source for c in clips] == ["llm", "cache"]
        assert synthesizer.cache_size == 1
        synthesizer.clear_cache()
        assert synthesizer.cache_size == 0

    def test_cache_key_depends_on_style(self):
        clip = Clip(id="A", visual="雨夜", emotion="紧张")
        assert (ClipSynthesizer.cache_key(clip, get_style_preset("neutral_cinematic"))
                != ClipSynthesizer.cache_key(clip, get_style_preset("hitchcock")))

    def test_per_clip_unparseable_raises(self):
        synthesizer = ClipSynthesizer(MockLLMClient("{}"))
        with pytest.raises(SynthesisError):
            synthesizer.synthesize_episode_clips(make_clips(), use_batch=False)

    def test_template_only(self):
        client = MockLLMClient()
        clips = ClipSynthesizer(client).synthesize_episode_clips(make_clips(), use_llm=False)
        assert client.call_count == 0
        assert all(c.prompt.source == "template" for c in clips)
        assert "mid-strike motion" in clips[2].prompt.d1_subject
        assert clips[2].prompt.d4_camera.startswith("close-up")

    def test_combined_negative_and_chinese(self):
        style = get_style_preset(None)
        clips = StoryboardGenerator(use_llm=False).layout_clips(make_clips())
        prompt = ClipSynthesizer().synthesize_episode_clips(clips, style, use_llm=False)[0].prompt
        assert prompt.combined.startswith(prompt.d1_subject)
        assert style.prompt_modifiers[0] in prompt.combined
        assert "plastic skin" in prompt.negative
        assert prompt.chinese.startswith("【10秒片段】画面：场景：宴会厅")
        assert "对白：Lin：你们会后悔的" in prompt.chinese

    def test_template_deterministic(self):
        style = get_style_preset(None)
        clip = make_clips()[0]
        assert template_five_d(clip, style) == template_five_d(clip, style)

    def test_input_clips_not_mutated(self):
        clips = make_clips()
        ClipSynthesizer().synthesize_episode_clips(clips, use_llm=False)
        assert all(c.prompt is None for c in clips)

    def test_empty_clips(self):
        assert ClipSynthesizer(MockLLMClient("x")).synthesize_episode_clips([]) == []


class TestStoryboardGenerator:
    """测试分镜生成器"""

    def test_generate_episode(self):
        response = json.dumps([five_d()] * 3)
        generator = StoryboardGenerator(MockLLMClient(response), style="hitchcock")
        result = generator.generate_episode(make_episode_script())
        assert result["episodeNumber"] == 1
        assert result["style"] == "hitchcock"
        assert result["totalDuration"] == 30
        assert [a["token"] for a in result["anchors"]] == ["{@char_Lin}", "{@loc_宴会厅}"]
        assert result["clips"][0]["timeCode"] == {"start": 0, "end": 10}

    def test_speech_rate_warnings(self):
        # C01: 50 字 / 10 秒，C02: 50 字 / 15 秒，C03: 25 字 / 5 秒
        result = StoryboardGenerator(use_llm=False).generate_episode(make_episode_script())
        assert result["speechRateWarnings"] == []
        script = make_episode_script()
        script["clips"][2]["narration"] = "字" * 40
        result = StoryboardGenerator(use_llm=False).generate_episode(script)
        assert [w["clipId"] for w in result["speechRateWarnings"]] == ["C03"]
        assert result["speechRateWarnings"][0]["verdict"] == "too_fast"

    def test_failed_episode_falls_back_to_template(self):
        client = MockLLMClient(json.dumps([five_d()] * 3), responses=["无法解析"])
        storyboard = StoryboardGenerator(client).generate_storyboard({
            "episodes": [make_episode_script(2), make_episode_script(1)]
        })
        assert [ep["episodeNumber"] for ep in storyboard["episodes"]] == [1, 2]
        assert storyboard["failedEpisodes"] == [1]
        first, second = storyboard["episodes"]
        assert first["fallback"] is True
        assert all(clip["fallback"] for clip in first["clips"])
        assert all(clip["prompt"]["source"] == "template" for clip in first["clips"])
        assert first["clips"][0]["prompt"]["d1_subject"].startswith("{@char_Lin}")
        assert "fallback" not in second

    def test_storyboard_shape(self):
        storyboard = StoryboardGenerator(use_llm=False, max_duration=10).generate_storyboard(
            {"episodes": [make_episode_script()]})
        assert storyboard["style"]["id"] == "neutral_cinematic"
        assert storyboard["maxDuration"] == 10
        assert storyboard["failedEpisodes"] == []

    def test_replace_episode_clears_failure(self):
        client = MockLLMClient(json.dumps([five_d()] * 3), responses=["无法解析"])
        generator = StoryboardGenerator(client)
        storyboard = generator.generate_storyboard({"episodes": [make_episode_script(1), make_episode_script(2)]})
        assert storyboard["failedEpisodes"] == [1]

        regenerated = generator.generate_episode_with_fallback(make_episode_script(1))
        updated = StoryboardGenerator.replace_episode(storyboard, regenerated)
        assert [ep["episodeNumber"] for ep in updated["episodes"]] == [1, 2]
        assert updated["failedEpisodes"] == []
        assert "fallback" not in updated["episodes"][0]
        assert storyboard["failedEpisodes"] == [1]

    def test_replace_episode_inserts_in_order(self):
        generator = StoryboardGenerator(use_llm=False)
        storyboard = generator.generate_storyboard({"episodes": [make_episode_script(1), make_episode_script(3)]})
        updated = StoryboardGenerator.replace_episode(storyboard, generator.generate_episode(make_episode_script(2)))
        assert [ep["episodeNumber"] for ep in updated["episodes"]] == [1, 2, 3]


class TestExport:
    """测试分镜导出"""

    def test_export_csv_one_row_per_clip(self):
        storyboard = StoryboardGenerator(use_llm=False).generate_storyboard(
            {"episodes": [make_episode_script(1), make_episode_script(2)]})
        rows = list(csv.reader(io.StringIO(StoryboardGenerator.export_csv(storyboard))))

        assert rows[0] == StoryboardGenerator.CSV_HEADERS
        assert len(rows) == 1 + 6
        assert [row[0] for row in rows[1:]] == ["1", "1", "1", "2", "2", "2"]
        first = rows[1]
        assert first[1] == "C01"
        assert float(first[3]) == 0 and float(first[4]) == 10 and float(first[5]) == 10
        assert first[8] == "Lin：你们会后悔的"
        clip = storyboard["episodes"][0]["clips"][0]
        assert first[12] == clip["prompt"]["combined"]
        assert first[13] == clip["prompt"]["negative"]

    def test_export_csv_empty_storyboard(self):
        assert StoryboardGenerator.export_csv({"episodes": []}).strip() == ",".join(StoryboardGenerator.CSV_HEADERS)

    def test_export_json(self):
        storyboard = StoryboardGenerator(use_llm=False).generate_storyboard({"episodes": [make_episode_script()]})
        exported = StoryboardGenerator.export_json(storyboard)
        restored = json.loads(exported)
        assert [c["id"] for c in restored["episodes"][0]["clips"]] == ["C01", "C02", "C03"]
        assert restored["style"]["id"] == "neutral_cinematic"
        assert "宴会厅" in exported


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
