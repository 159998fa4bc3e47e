# -*- coding: utf-8 -*-
"""系统流水线整合测试

Mock LLM 只返回故事圣经，其余阶段全部走降级路径，验证流水线整体不中断。
"""
import json

import pytest

from config import PipelineConfig
from llm_client import MockLLMClient
from main import NovelProcessor, main, save_result

NOVEL = "第一章 屈辱\n林凡在公司被赵总当众嘲讽。\n第二章 反击\n林凡的真实身份被揭示。"


def get_story_bible_response():
    return json.dumps({
        "title": "逆袭",
        "characters": [
            {"id": "C01", "name": "林凡", "role": "protagonist"},
            {"id": "C02", "name": "赵总", "role": "antagonist"}
        ],
        "events": [
            {"id": "E01", "summary": "林凡在公司被赵总当众嘲讽", "type": "load_bearing"},
            {"id": "E02", "summary": "林凡的真实身份被揭示", "type": "load_bearing", "dependsOn": ["E01"]}
        ]
    }, ensure_ascii=False)


@pytest.fixture
def processor():
    client = MockLLMClient(responses=[get_story_bible_response()])
    return NovelProcessor(client, config=PipelineConfig())


class TestNovelProcessor:
    """测试完整流水线"""

    def test_process_with_degraded_stages(self, processor):
        result = processor.process(NOVEL, "逆袭", target_episodes=2)

        assert set(result) == {"storyBible", "architecture", "script", "storyboard", "assets", "metadata"}
        assert [c["name"] for c in result["storyBible"]["characters"]] == ["林凡", "赵总"]
        assert result["architecture"]["totalEpisodes"] == 2

        meta = result["metadata"]
        assert meta["title"] == "逆袭"
        assert meta["novelLength"] == len(NOVEL)
        assert meta["totalEpisodes"] == 2
        assert meta["failedScriptEpisodes"] == [1, 2]
        assert meta["failedStoryboardEpisodes"] == [1, 2]
        assert meta["durationSeconds"] >= 0

        assert [ep["episodeNumber"] for ep in result["storyboard"]["episodes"]] == [1, 2]
        for episode in result["storyboard"]["episodes"]:
            assert episode["clips"]
            assert all(clip["prompt"]["source"] == "template" for clip in episode["clips"])
        assert len(result["assets"]["characters"]) == 2

    def test_skip_assets(self, processor):
        result = processor.process(NOVEL, "逆袭", target_episodes=1, skip_assets=True)
        assert result["assets"] is None
        assert result["metadata"]["totalEpisodes"] == 1

    def test_style_passed_to_storyboard(self, processor):
        result = processor.process(NOVEL, "逆袭", target_episodes=1, style="kubrick", skip_assets=True)
        assert result["storyboard"]["style"]["id"] == "kubrick"

    def test_default_client_from_config(self):
        processor = NovelProcessor(config=PipelineConfig())
        assert isinstance(processor.llm_client, MockLLMClient)

    def test_result_is_json_serializable(self, processor, tmp_path):
        result = processor.process(NOVEL, "逆袭", target_episodes=1)
        output = tmp_path / "out" / "result.json"
        save_result(result, str(output))
        saved = json.loads(output.read_text(encoding="utf-8"))
        assert saved["metadata"]["title"] == "逆袭"


class TestCommandLine:
    """测试命令行入口"""

    @pytest.fixture(autouse=True)
    def no_llm(self, monkeypatch):
        monkeypatch.setenv("LLM_API_KEY", "")
        monkeypatch.delenv("LOG_FILE", raising=False)

    def test_missing_file(self, tmp_path):
        with pytest.raises(SystemExit) as exc_info:
            main(["--file", str(tmp_path / "missing.txt")])
        assert exc_info.value.code == 1

    def test_invalid_episode_count(self, tmp_path):
        novel = tmp_path / "novel.txt"
        novel.write_text(NOVEL, encoding="utf-8")
        with pytest.raises(SystemExit):
            main(["--file", str(novel), "--episodes", "0"])

    def test_run_to_file(self, tmp_path):
        novel = tmp_path / "novel.txt"
        novel.write_text(NOVEL, encoding="utf-8")
        output = tmp_path / "result.json"
        main(["--file", str(novel), "--output", str(output), "--skip-assets", "--no-llm-storyboard"])

        saved = json.loads(output.read_text(encoding="utf-8"))
        assert saved["metadata"]["title"] == "novel"
        assert saved["assets"] is None
        assert saved["storyBible"]["characters"][0]["name"] == "主角"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
