# -*- coding: utf-8 -*-
"""Phase 3: 剧本生成模块的测试 - LLM 驱动版本

逐集生成、单集失败降级、节奏模板降级剧本。
"""
import json

import pytest

from errors import ClipNotFoundError, EpisodeNotFoundError, LLMResponseError
from llm_client import MockLLMClient
from models import Architecture, BeatAssignment, Character, CharacterRole, Episode, Event, EventType, StoryBible
from script_generator import ScriptGenerator, find_episode_script, replace_episode_script, update_clip


# ==================== Mock LLM 响应数据 ====================

def get_script_mock_response(number=1):
    return json.dumps({
        "number": number,
        "clips": [
            {"id": "C01", "segmentName": "开场钩子", "timeCode": {"start": 0, "end": 5},
             "narration": "你敢信？一个小职员竟然让总裁下跪。", "visual": "场景：宴会厅，林凡站在人群中央",
             "emotion": "悬疑"},
            {"id": "C02", "segmentName": "高潮回报", "timeCode": {"start": 5, "end": 10},
             "narration": "真相揭开的那一刻，所有人都愣住了。", "visual": "赵总脸色惨白",
             "dialogue": [{"speaker": "林凡", "line": "现在，你还觉得我配不上吗？"}],
             "emotion": "高潮", "beatType": "slap"}
        ]
    }, ensure_ascii=False)


@pytest.fixture
def bible():
    return StoryBible(
        title="逆袭",
        characters=[Character("C01", "林凡", CharacterRole.PROTAGONIST)],
        events=[
            Event("E01", "林凡被当众嘲讽", EventType.LOAD_BEARING),
            Event("E02", "林凡亮明身份", EventType.LOAD_BEARING),
        ]
    )


@pytest.fixture
def architecture():
    return Architecture(total_episodes=2, episodes=[
        Episode(2, assigned_events=["E02"], title="第2集：亮明身份"),
        Episode(1, assigned_events=["E01"], title="第1集：被嘲讽",
                beat_map={"opening": BeatAssignment("info"), "climax": BeatAssignment("slap"),
                          "closing": BeatAssignment("identity")}),
    ])


class TestEpisodeScript:
    """测试单集生成"""

    def test_generate_episode_script(self, bible, architecture):
        generator = ScriptGenerator(MockLLMClient(get_script_mock_response()))
        clips = generator.generate_episode_script(architecture.find_episode(1), bible)
        assert [c.id for c in clips] == ["C01", "C02"]
        assert clips[1].speakers == ["林凡"]
        assert clips[1].beat_type == "slap"

    def test_prompt_contains_episode_information(self, bible, architecture):
        client = MockLLMClient(get_script_mock_response())
        ScriptGenerator(client).generate_episode_script(architecture.find_episode(1), bible)
        prompt = client.prompts[0]
        assert "逆袭" in prompt
        assert "第1集：被嘲讽" in prompt
        assert "林凡被当众嘲讽" in prompt
        assert "slap" in prompt
        assert "开场钩子(0-5s)" in prompt

    def test_list_response_accepted(self, bible, architecture):
        clips = json.loads(get_script_mock_response())["clips"]
        generator = ScriptGenerator(MockLLMClient(json.dumps(clips, ensure_ascii=False)))
        assert len(generator.generate_episode_script(architecture.find_episode(1), bible)) == 2

    def test_unparseable_raises(self, bible, architecture):
        generator = ScriptGenerator(MockLLMClient("抱歉"))
        with pytest.raises(LLMResponseError) as exc_info:
            generator.generate_episode_script(architecture.find_episode(1), bible)
        assert exc_info.value.raw_response == "抱歉"

    def test_empty_clips_raises(self, bible, architecture):
        generator = ScriptGenerator(MockLLMClient('{"clips": []}'))
        with pytest.raises(LLMResponseError):
            generator.generate_episode_script(architecture.find_episode(1), bible)


class TestFullScript:
    """测试完整剧本"""

    def test_episodes_in_ascending_order(self, bible, architecture):
        generator = ScriptGenerator(MockLLMClient(get_script_mock_response()))
        script = generator.generate_full_script(bible, architecture)
        assert [ep["number"] for ep in script["episodes"]] == [1, 2]
        assert script["failedEpisodes"] == []
        assert script["totalEpisodes"] == 2
        assert script["episodes"][0]["clips"][0]["segmentName"] == "开场钩子"

    def test_failed_episode_uses_fallback(self, bible, architecture):
        client = MockLLMClient(get_script_mock_response(), responses=["无效输出"])
        script = ScriptGenerator(client).generate_full_script(bible, architecture)
        first, second = script["episodes"]
        assert script["failedEpisodes"] == [1]
        assert first["fallback"] is True
        assert "error" in first
        assert all(clip["fallback"] for clip in first["clips"])
        assert "fallback" not in second

    def test_episode_range(self, bible, architecture):
        generator = ScriptGenerator(MockLLMClient(get_script_mock_response()))
        script = generator.generate_full_script(bible, architecture, episode_range=(2, 2))
        assert [ep["number"] for ep in script["episodes"]] == [2]

    def test_find_episode_script(self, bible, architecture):
        script = ScriptGenerator(MockLLMClient(get_script_mock_response())).generate_full_script(bible, architecture)
        assert find_episode_script(script, 2)["number"] == 2
        with pytest.raises(EpisodeNotFoundError):
            find_episode_script(script, 5)


class TestEditing:
    """测试单集重新生成与片段修改"""

    def test_regenerate_failed_episode(self, bible, architecture):
        client = MockLLMClient(get_script_mock_response(), responses=["无效输出"])
        generator = ScriptGenerator(client)
        script = generator.generate_full_script(bible, architecture)
        assert script["failedEpisodes"] == [1]

        updated = generator.regenerate_episode(script, bible, architecture, 1)
        assert [ep["number"] for ep in updated["episodes"]] == [1, 2]
        assert updated["failedEpisodes"] == []
        assert "fallback" not in updated["episodes"][0]
        assert script["failedEpisodes"] == [1]

    def test_regenerate_records_new_failure(self, bible, architecture):
        client = MockLLMClient("无效输出", responses=[get_script_mock_response(), get_script_mock_response()])
        generator = ScriptGenerator(client)
        script = generator.generate_full_script(bible, architecture)
        updated = generator.regenerate_episode(script, bible, architecture, 2)
        assert updated["failedEpisodes"] == [2]
        assert find_episode_script(updated, 2)["fallback"] is True

    def test_regenerate_missing_episode(self, bible, architecture):
        generator = ScriptGenerator(MockLLMClient(get_script_mock_response()))
        script = generator.generate_full_script(bible, architecture)
        with pytest.raises(EpisodeNotFoundError):
            generator.regenerate_episode(script, bible, architecture, 7)

    def test_replace_inserts_missing_episode(self):
        script = {"episodes": [{"number": 2}], "failedEpisodes": []}
        updated = replace_episode_script(script, {"number": 1, "fallback": True})
        assert [ep["number"] for ep in updated["episodes"]] == [1, 2]
        assert updated["failedEpisodes"] == [1]

    def test_update_clip(self, bible, architecture):
        script = ScriptGenerator(MockLLMClient(get_script_mock_response())).generate_full_script(bible, architecture)
        clip = update_clip(script, 1, "C02", {"narration": "新旁白", "visual": None, "dialogue": "赵总：我错了"})
        assert clip["narration"] == "新旁白"
        assert clip["visual"] == "赵总脸色惨白"
        assert clip["dialogue"] == [{"speaker": "赵总", "line": "我错了"}]
        assert find_episode_script(script, 1)["clips"][1]["narration"] == "新旁白"

    def test_update_clip_ignores_other_fields(self, bible, architecture):
        script = ScriptGenerator(MockLLMClient(get_script_mock_response())).generate_full_script(bible, architecture)
        clip = update_clip(script, 1, "C01", {"timeCode": {"start": 0, "end": 99}, "emotion": "愤怒"})
        assert clip["timeCode"] == {"start": 0, "end": 5}
        assert clip["emotion"] == "愤怒"

    def test_update_missing_clip(self, bible, architecture):
        script = ScriptGenerator(MockLLMClient(get_script_mock_response())).generate_full_script(bible, architecture)
        with pytest.raises(ClipNotFoundError):
            update_clip(script, 1, "C09", {"narration": "x"})
        with pytest.raises(EpisodeNotFoundError):
            update_clip(script, 5, "C01", {"narration": "x"})


class TestFallbackScript:
    """测试降级剧本"""

    def test_one_clip_per_segment(self, bible, architecture):
        clips = ScriptGenerator().generate_fallback_script(architecture.find_episode(1), bible)
        assert len(clips) == 6
        assert [c.id for c in clips] == ["C01", "C02", "C03", "C04", "C05", "C06"]
        assert clips[0].time_code.start == 0
        assert clips[-1].time_code.end == 90
        assert clips[0].narration == "你敢信？林凡的故事，就从这里开始..."
        assert clips[1].narration == "林凡被当众嘲讽"

    def test_beats_follow_positions(self, bible, architecture):
        clips = ScriptGenerator().generate_fallback_script(architecture.find_episode(1), bible)
        assert clips[0].beat_type == "info"
        assert clips[4].beat_type == "slap"
        assert clips[5].beat_type == "identity"
        assert clips[4].emotion == "高潮"
        assert clips[1].emotion == "铺垫"

    def test_no_events(self, bible):
        clips = ScriptGenerator().generate_fallback_script(Episode(3), bible, "fast_60")
        assert len(clips) == 5
        assert clips[2].narration == "故事还在继续..."

    def test_no_protagonist(self, architecture):
        clips = ScriptGenerator().generate_fallback_script(architecture.find_episode(1), StoryBible(title="x"))
        assert clips[0].narration.startswith("你敢信？主角")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
