# -*- coding: utf-8 -*-
"""系统流水线整合

小说 → 故事圣经 → 分集架构 → 剧本 → 分镜 → 资产提示词。
每个阶段的结果都是驼峰命名的 JSON 结构，与 HTTP 接口的任务状态一致。
"""
import argparse
import json
import logging
import os
import sys
from datetime import datetime
from typing import Dict, Any, Optional

from config import PipelineConfig, load_config
from logger_config import setup_logging
from llm_client import LLMClient, create_llm_client
from models import Architecture, StoryBible
from chunking_engine import NovelReader
from story_bible import StoryBibleExtractor
from episode_architect import EpisodeArchitect
from script_generator import ScriptGenerator
from storyboard_generator import StoryboardGenerator
from asset_generator import AssetGenerator

logger = logging.getLogger(__name__)


class NovelProcessor:
    """小说处理器 - 完整的自动化处理流水线"""

    def __init__(self, llm_client: Optional[LLMClient] = None,
                 config: Optional[PipelineConfig] = None):
        """
        初始化小说处理器

        Args:
            llm_client: LLM 客户端实例，如果为 None 则按配置创建
            config: 流水线配置，如果为 None 则从环境变量加载
        """
        self.config = config or load_config()
        self.llm_client = llm_client or create_llm_client(self.config)

        self.story_bible_extractor = StoryBibleExtractor(
            self.llm_client, chunk_size=self.config.chunk_size,
            max_output_tokens=self.config.llm_max_output_tokens
        )
        self.architect = EpisodeArchitect(
            self.llm_client,
            max_events_per_episode=self.config.max_events_per_episode,
            min_events_per_episode=self.config.min_events_per_episode,
            default_rhythm=self.config.default_rhythm,
            max_output_tokens=self.config.llm_max_output_tokens
        )
        self.script_generator = ScriptGenerator(self.llm_client, default_rhythm=self.config.default_rhythm)

    # ==================== 单阶段 ====================

    def build_story_bible(self, novel_text: str, title: str = "未命名") -> StoryBible:
        return self.story_bible_extractor.extract(novel_text, title)

    def build_architecture(self, bible: StoryBible, target_episodes: Optional[int] = None,
                           rhythm: Optional[str] = None, use_llm: bool = True) -> Architecture:
        return self.architect.generate_architecture(bible, target_episodes, rhythm, use_llm=use_llm)

    def build_script(self, bible: StoryBible, architecture: Architecture) -> Dict[str, Any]:
        return self.script_generator.generate_full_script(bible, architecture)

    def rebuild_script_episode(self, script: Dict[str, Any], bible: StoryBible,
                               architecture: Architecture, number: int) -> Dict[str, Any]:
        return self.script_generator.regenerate_episode(script, bible, architecture, number)

    def storyboard_generator(self, style: Optional[str] = None, max_duration: Optional[float] = None,
                             use_llm: bool = True, use_batch: bool = True) -> StoryboardGenerator:
        """每次调用新建一个分镜生成器，缓存只在本任务内复用"""
        return StoryboardGenerator(
            self.llm_client, style=style or self.config.default_style,
            max_duration=max_duration, use_llm=use_llm, use_batch=use_batch
        )

    def build_storyboard(self, script: Dict[str, Any], style: Optional[str] = None,
                         max_duration: Optional[float] = None, use_llm: bool = True,
                         use_batch: bool = True) -> Dict[str, Any]:
        generator = self.storyboard_generator(style, max_duration, use_llm, use_batch)
        return generator.generate_storyboard(script)

    def rebuild_storyboard_episode(self, storyboard: Optional[Dict[str, Any]], episode_script: Dict[str, Any],
                                   style: Optional[str] = None, max_duration: Optional[float] = None,
                                   use_llm: bool = True, use_batch: bool = True) -> Dict[str, Any]:
        """重新生成单集分镜并替换到已有分镜中；未指定的风格和时长沿用已有分镜"""
        storyboard = storyboard or {}
        style = style or (storyboard.get("style") or {}).get("id")
        if max_duration is None:
            max_duration = storyboard.get("maxDuration")
        generator = self.storyboard_generator(style, max_duration, use_llm, use_batch)
        if not storyboard:
            storyboard = generator.generate_storyboard({"episodes": []})
        return generator.replace_episode(storyboard, generator.generate_episode_with_fallback(episode_script))

    def asset_generator(self, style: Optional[str] = None, use_llm: bool = True) -> AssetGenerator:
        return AssetGenerator(self.llm_client, style=style or self.config.default_style, use_llm=use_llm)

    def build_assets(self, bible: StoryBible, style: Optional[str] = None,
                     use_llm: bool = True) -> Dict[str, Any]:
        return self.asset_generator(style, use_llm).generate_all_assets(bible)

    # ==================== 完整流水线 ====================

    def process(self, novel_text: str, title: str = "未命名", target_episodes: Optional[int] = None,
                style: Optional[str] = None, max_duration: Optional[float] = None,
                llm_storyboard: bool = True, per_clip: bool = False,
                skip_assets: bool = False) -> Dict[str, Any]:
        """
        处理小说文本，执行完整的流水线

        流程：
        1. 提取故事圣经
        2. 生成分集架构
        3. 逐集生成剧本
        4. 生成分镜（时长决策 + 5D 提示词）
        5. 生成资产提示词

        返回：包含所有结果的字典
        """
        started = datetime.now()

        logger.info("[Pipeline] 阶段 1/5：故事圣经")
        bible = self.build_story_bible(novel_text, title)

        logger.info("[Pipeline] 阶段 2/5：分集架构")
        architecture = self.build_architecture(bible, target_episodes)

        logger.info("[Pipeline] 阶段 3/5：剧本")
        script = self.build_script(bible, architecture)

        logger.info("[Pipeline] 阶段 4/5：分镜")
        storyboard = self.build_storyboard(script, style, max_duration,
                                           use_llm=llm_storyboard, use_batch=not per_clip)

        assets = None
        if not skip_assets:
            logger.info("[Pipeline] 阶段 5/5：资产")
            assets = self.build_assets(bible, style)

        finished = datetime.now()
        return {
            "storyBible": bible.to_dict(),
            "architecture": architecture.to_dict(),
            "script": script,
            "storyboard": storyboard,
            "assets": assets,
            "metadata": {
                "title": title,
                "novelLength": len(novel_text),
                "totalEpisodes": architecture.total_episodes,
                "failedScriptEpisodes": script.get("failedEpisodes", []),
                "failedStoryboardEpisodes": storyboard.get("failedEpisodes", []),
                "startedAt": started.isoformat(),
                "finishedAt": finished.isoformat(),
                "durationSeconds": round((finished - started).total_seconds(), 2)
            }
        }


def save_result(result: Dict[str, Any], output_path: str) -> None:
    """保存结果到文件"""
    indent = 2 if os.environ.get("OUTPUT_INDENT", "true").lower() == "true" else None
    output_dir = os.path.dirname(output_path)
    if output_dir:
        os.makedirs(output_dir, exist_ok=True)
    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(result, f, ensure_ascii=False, indent=indent)
    logger.info("[SAVE] 结果已保存到：%s", output_path)


def log_summary(result: Dict[str, Any]) -> None:
    """输出处理摘要"""
    meta = result["metadata"]
    bible = result["storyBible"]
    logger.info("=" * 60)
    logger.info("处理完成！用时 %.1f 秒", meta["durationSeconds"])
    logger.info("   角色数量：%d", len(bible.get("characters", [])))
    logger.info("   事件数量：%d", len(bible.get("events", [])))
    logger.info("   总集数：%d", meta["totalEpisodes"])
    if meta["failedScriptEpisodes"]:
        logger.warning("   剧本降级集：%s", meta["failedScriptEpisodes"])
    if meta["failedStoryboardEpisodes"]:
        logger.warning("   分镜降级集：%s", meta["failedStoryboardEpisodes"])


def main(argv=None):
    """主函数 - 命令行入口"""
    parser = argparse.ArgumentParser(
        description="小说转漫剧流水线 - 从小说文本生成分集剧本、分镜与资产提示词",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
示例:
  # 处理小说文件并输出结果
  python main.py --file novel.txt --output result.json

  # 指定集数与风格，单片段最长 10 秒
  python main.py --file novel.txt --episodes 8 --style hitchcock --max-duration 10

  # 分镜只用模板，跳过资产生成
  python main.py --file novel.txt --no-llm-storyboard --skip-assets
        """
    )
    parser.add_argument("--file", "-f", type=str, required=True, help="小说文件路径（.txt 格式）")
    parser.add_argument("--output", "-o", type=str, default=None, help="输出文件路径（.json 格式）")
    parser.add_argument("--title", "-t", type=str, default=None, help="小说标题（默认取文件名）")
    parser.add_argument("--episodes", type=int, default=None, help="目标集数（默认自动计算）")
    parser.add_argument("--style", type=str, default=None, help="视觉风格预设 id")
    parser.add_argument("--max-duration", type=float, default=None, help="单片段最大时长（秒）")
    parser.add_argument("--no-llm-storyboard", action="store_true", help="分镜提示词只用模板生成")
    parser.add_argument("--per-clip", action="store_true", help="分镜逐片段调用 LLM（默认每集一次批量调用）")
    parser.add_argument("--skip-assets", action="store_true", help="跳过资产生成")

    args = parser.parse_args(argv)

    config = load_config()
    setup_logging(config.log_level, config.log_file)

    # 检查文件是否存在
    if not os.path.exists(args.file):
        logger.error("[ERROR] 文件不存在 - %s", args.file)
        sys.exit(1)
    if args.episodes is not None and args.episodes < 1:
        logger.error("[ERROR] 集数必须 ≥ 1")
        sys.exit(1)

    novel_text = NovelReader().read_file(args.file)
    title = args.title or os.path.splitext(os.path.basename(args.file))[0]
    output_path = args.output or f"{title}_result.json"

    processor = NovelProcessor(config=config)
    try:
        result = processor.process(
            novel_text, title,
            target_episodes=args.episodes,
            style=args.style,
            max_duration=args.max_duration,
            llm_storyboard=not args.no_llm_storyboard,
            per_clip=args.per_clip,
            skip_assets=args.skip_assets
        )
    except Exception:
        logger.exception("[ERROR] 处理失败")
        sys.exit(1)

    save_result(result, output_path)
    log_summary(result)


if __name__ == "__main__":
    main()
