# -*- coding: utf-8 -*-
"""Phase 1: 故事圣经提取 - LLM 驱动版本

从小说文本中提取人物、事件（含依赖关系）、转折点与世界观信息。
长文本按章节分块逐块解析，再合并为一份完整的故事圣经。
"""
import json
import logging
import math
import time
from typing import List, Optional, Dict, Any

from models import StoryBible, Character, Event, CharacterRole
from llm_client import LLMClient, MockLLMClient
from json_parser import TolerantJSONParser
from chunking_engine import NovelReader
from presets import identify_archetype, identify_beat_type

logger = logging.getLogger(__name__)


# ==================== Prompt 模板 ====================

STORY_BIBLE_PROMPT = """你是漫剧剧本分析师。分析《{title}》提取故事圣经。{chunk_note}{context_note}

## 输出格式（纯JSON，无代码块）
{{
  "title": "标题",
  "mainTheme": "主题",
  "toneKeywords": ["氛围词"],
  "characters": [
    {{"id": "C01", "name": "角色名", "role": "protagonist/antagonist/ally/supporting", "archetype": "原型", "traits": ["特征1", "特征2"], "desires": "核心欲望", "fears": "核心恐惧"}}
  ],
  "events": [
    {{"id": "E01", "summary": "事件摘要", "type": "load_bearing/reinforcing/decorative", "dependsOn": [], "enables": ["E02"], "beatPotential": ["爽点类型"], "characters": ["C01"]}}
  ],
  "turningPoints": [{{"position": "位置描述", "description": "转折点说明"}}],
  "worldInfo": {{"setting": "背景设定", "rules": ["规则"], "uniqueElements": ["独特元素"]}},
  "estimatedEpisodes": 5
}}

## 事件要求
1. 事件必须按故事发生的先后顺序列出，E01 是最早发生的事件
2. dependsOn: 此事件发生前必须已经发生的事件ID；开头事件为 []
3. enables: 此事件发生后才可能发生的事件ID；结局事件为 []
4. 事件类型：load_bearing 承重事件（推动主线）、reinforcing 强化事件、decorative 装饰事件
5. 爽点类型：slap打脸, upgrade升级, revenge复仇, identity身份揭露, info信息揭露, comeback反杀, emotion情感
6. 角色原型：underdog逆袭型, hidden_identity隐身份型, gray灰度型, oppressor压迫者, wildcard搅局者, ally盟友

---
小说内容：
{content}"""

MERGE_PROMPT = """你是一个专业的剧本分析师。请将以下多个部分的故事圣经合并成一个完整的故事圣经。

{parts}

## 合并要求
1. 角色去重：合并重复的角色，保留最完整的描述
2. 事件整合：按时间顺序整合事件，重新编号为 E01、E02……并修复 dependsOn / enables 引用
3. 原型统一：确保同一角色的原型一致

## 输出格式
返回完整的 JSON 格式故事圣经，结构与输入相同。只返回 JSON。"""


class StoryBibleExtractor:
    """故事圣经提取器"""

    def __init__(self, llm_client: Optional[LLMClient] = None, chunk_size: int = 8000,
                 max_output_tokens: int = 8192, chunk_delay: float = 0.0):
        """
        Args:
            llm_client: LLM 客户端实例，如果为 None 则使用 MockLLMClient
            chunk_size: 超过该字数的文本按章节分块解析
            max_output_tokens: 单次调用的最大输出 token
            chunk_delay: 分块调用之间的间隔（秒），用于规避限流
        """
        self.llm_client = llm_client or MockLLMClient()
        self.chunk_size = chunk_size
        self.max_output_tokens = max_output_tokens
        self.chunk_delay = chunk_delay
        self.parser = TolerantJSONParser()

    def extract(self, content: str, title: str = "未命名") -> StoryBible:
        """解析小说 - 总入口"""
        if len(content) <= self.chunk_size:
            return self.parse_chunk(content, title)

        logger.info("[StoryBible] 长文本处理: %d 字，启用分块策略", len(content))
        return self.parse_with_chunking(content, title)

    def parse_chunk(self, chunk: str, title: str, chunk_index: Optional[int] = None,
                    chunk_total: Optional[int] = None, previous_context: str = "") -> StoryBible:
        """解析单块文本；LLM 调用失败或无法解析时返回降级版故事圣经"""
        chunk_note = ""
        if chunk_index is not None:
            chunk_note = f"\n\n**注意**：这是小说的第 {chunk_index + 1}/{chunk_total} 部分。请只分析这部分内容。"
        context_note = ""
        if previous_context:
            context_note = f"\n\n**前文上下文**：\n{previous_context[-300:]}\n\n请保持一致性。"

        prompt = STORY_BIBLE_PROMPT.format(
            title=title, chunk_note=chunk_note, context_note=context_note, content=chunk[:12000]
        )

        try:
            response = self.llm_client.generate(prompt, max_output_tokens=self.max_output_tokens)
        except Exception as e:
            logger.error("[StoryBible] 解析错误: %s", e)
            return self.create_fallback_bible(chunk, title, str(e))

        data = self.parser.parse(response)
        if not isinstance(data, dict):
            logger.warning("[StoryBible] JSON 解析失败，返回基础结构")
            return self.create_fallback_bible(chunk, title, response)

        data.setdefault("title", title)
        return self.enhance(StoryBible.from_dict(data))

    def parse_with_chunking(self, content: str, title: str) -> StoryBible:
        """分块解析长文本"""
        chunks = NovelReader(max_chunk_size=self.chunk_size).smart_chunk(content)
        logger.info("[StoryBible] 分块结果: %d 块", len(chunks))

        partials = []
        previous_context = ""
        for i, chunk in enumerate(chunks):
            logger.info("[StoryBible] 解析第 %d/%d 块...", i + 1, len(chunks))
            partials.append(self.parse_chunk(
                chunk.content, title, chunk_index=i, chunk_total=len(chunks),
                previous_context=previous_context[-500:]
            ))
            previous_context = chunk.content
            if self.chunk_delay and i < len(chunks) - 1:
                time.sleep(self.chunk_delay)

        if len(partials) == 1:
            return partials[0]
        return self.merge(partials, title)

    def merge(self, partials: List[StoryBible], title: str) -> StoryBible:
        """合并多个部分故事圣经：少量分块逻辑合并，较多时交给 LLM 合并"""
        logger.info("[StoryBible] 合并 %d 个部分...", len(partials))
        if len(partials) <= 3:
            return self.logical_merge(partials, title)

        parts = "\n".join(
            f"### 第 {i + 1} 部分\n{json.dumps(p.to_dict(), ensure_ascii=False)}"
            for i, p in enumerate(partials)
        )
        try:
            response = self.llm_client.generate(MERGE_PROMPT.format(parts=parts),
                                                max_output_tokens=self.max_output_tokens)
            data = self.parser.parse(response)
            if isinstance(data, dict) and data.get("events") and not data.get("_parseError"):
                data.setdefault("title", title)
                return self.enhance(StoryBible.from_dict(data))
            logger.warning("[StoryBible] LLM 合并结果不完整，使用逻辑合并")
        except Exception as e:
            logger.warning("[StoryBible] LLM 合并失败，使用逻辑合并: %s", e)

        return self.logical_merge(partials, title)

    def logical_merge(self, partials: List[StoryBible], title: str) -> StoryBible:
        """逻辑合并（不使用 LLM）"""
        characters: Dict[str, Character] = {}
        for partial in partials:
            for char in partial.characters:
                existing = characters.get(char.name)
                if existing is None:
                    characters[char.name] = char
                    continue
                for trait in char.traits:
                    if trait not in existing.traits:
                        existing.traits.append(trait)
                existing.description = existing.description or char.description
                existing.desires = existing.desires or char.desires
                existing.fears = existing.fears or char.fears
                existing.appearance = existing.appearance or char.appearance
                existing.archetype = existing.archetype or char.archetype

        # 每个分块内的事件 id 是局部的，重新编号后按分块修复依赖
        events: List[Event] = []
        for partial in partials:
            new_ids = [f"E{len(events) + i + 1:02d}" for i in range(len(partial.events))]
            id_map = {}
            for event, new_id in zip(partial.events, new_ids):
                id_map.setdefault(event.id, new_id)
            renumbered = list(partial.events)
            for event, new_id in zip(renumbered, new_ids):
                event.id = new_id
                event.depends_on = [id_map[d] for d in event.depends_on if d in id_map]
                event.enables = [id_map[d] for d in event.enables if d in id_map]
            events.extend(renumbered)

        world_info: Dict[str, Any] = {"setting": "", "rules": [], "uniqueElements": []}
        for partial in partials:
            info = partial.world_info or {}
            world_info["setting"] = world_info["setting"] or info.get("setting", "")
            for key in ("rules", "uniqueElements"):
                for item in info.get(key) or []:
                    if item not in world_info[key]:
                        world_info[key].append(item)

        tone_keywords: List[str] = []
        for partial in partials:
            for keyword in partial.tone_keywords:
                if keyword not in tone_keywords:
                    tone_keywords.append(keyword)

        load_bearing = sum(1 for e in events if e.is_load_bearing)
        if load_bearing:
            estimated = -(-load_bearing * 13 // 10)
        else:
            known = [p.estimated_episodes or 0 for p in partials]
            estimated = math.ceil(sum(known) / len(known)) if known else None

        return self.enhance(StoryBible(
            title=title,
            characters=list(characters.values()),
            events=events,
            turning_points=[tp for p in partials for tp in p.turning_points],
            main_theme=next((p.main_theme for p in partials if p.main_theme), ""),
            tone_keywords=tone_keywords[:5],
            world_info=world_info,
            estimated_episodes=estimated,
            parse_error=any(p.parse_error for p in partials)
        ))

    # ==================== 后处理 ====================

    def enhance(self, bible: StoryBible) -> StoryBible:
        """补全原型、爽点潜力、事件依赖与事件链"""
        self.assign_archetypes(bible)
        for event in bible.events:
            if not event.beat_potential:
                beat_type = identify_beat_type(event.summary or event.description or "", event.keywords)
                if beat_type:
                    event.beat_potential = [beat_type]
        if bible.events:
            self.build_event_dependencies(bible)
        return bible

    @staticmethod
    def assign_archetypes(bible: StoryBible, force: bool = False) -> None:
        """推断角色原型；已有原型的角色只有 force=True 时才重新计算"""
        for char in bible.characters:
            if force or not char.archetype:
                char.archetype = identify_archetype(char)

    def build_event_dependencies(self, bible: StoryBible) -> None:
        """为缺少依赖关系的事件推断基本依赖"""
        events = bible.events
        for i, event in enumerate(events):
            if not event.enables and event.is_load_bearing and i < len(events) - 1:
                event.enables = [events[i + 1].id]
            if not event.depends_on and i > 0:
                previous = next((e for e in reversed(events[:i]) if e.is_load_bearing), None)
                if previous is not None:
                    event.depends_on = [previous.id]
        bible.event_chains = self.identify_event_chains(events)

    @staticmethod
    def identify_event_chains(events: List[Event]) -> List[Dict[str, Any]]:
        """沿 enables[0] 串起事件链，按长度降序返回"""
        by_id = {e.id: e for e in events}
        visited = set()
        chains = []
        for event in events:
            chain = []
            current = event
            while current is not None and current.id not in visited:
                visited.add(current.id)
                chain.append(current.id)
                current = by_id.get(current.enables[0]) if current.enables else None
            if len(chain) > 1:
                chains.append({"events": chain, "length": len(chain)})
        chains.sort(key=lambda c: c["length"], reverse=True)
        return chains

    @staticmethod
    def create_fallback_bible(content: str, title: str, error: Optional[str]) -> StoryBible:
        """创建降级版故事圣经"""
        return StoryBible(
            title=title,
            characters=[Character(id="C01", name="主角", role=CharacterRole.PROTAGONIST,
                                  archetype="underdog")],
            events=[],
            estimated_episodes=max(1, math.ceil(len(content) / 1000)),
            parse_error=True,
            fallback=True,
            error=(error or "")[:500]
        )


if __name__ == "__main__":
    from logger_config import setup_logging

    setup_logging()
    demo = json.dumps({
        "title": "逆袭",
        "characters": [{"id": "C01", "name": "林凡", "role": "protagonist", "traits": ["隐忍", "底层出身"]}],
        "events": [
            {"id": "E01", "summary": "林凡被同事当众嘲讽", "type": "load_bearing"},
            {"id": "E02", "summary": "林凡的真实身份被揭示", "type": "load_bearing"}
        ]
    }, ensure_ascii=False)
    bible = StoryBibleExtractor(MockLLMClient(demo)).extract("林凡是公司里最不起眼的职员。", "逆袭")
    print(json.dumps(bible.to_dict(), ensure_ascii=False, indent=2))
