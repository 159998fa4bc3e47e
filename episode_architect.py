# -*- coding: utf-8 -*-
"""Phase 2: 分集架构生成

集数计算、事件分配、爽点地图规划、弧线设计。
LLM 给出的架构必须恰好覆盖全部事件且不违反依赖顺序，否则使用算法生成。
"""
import json
import logging
import math
from datetime import datetime
from typing import List, Optional, Dict, Any

from models import Architecture, BeatAssignment, Episode, Event, StoryBible
from llm_client import LLMClient, MockLLMClient
from json_parser import TolerantJSONParser
from event_scheduler import EventScheduler
from errors import EpisodeNotFoundError
from presets import (
    BEAT_TYPES, FOUR_STEP_TIMING, generate_four_step_beat, get_beat_config, get_rhythm_template
)

logger = logging.getLogger(__name__)

BEAT_POSITIONS = ("opening", "early", "mid", "climax", "closing")

# 分配顺序：先保证开场、高潮、结尾
POSITION_PLANNING_ORDER = ("opening", "climax", "closing", "early", "mid")

PREFERRED_BEATS_BY_POSITION = {
    "opening": ("identity", "info", "slap"),
    "early": ("info", "upgrade", "emotion"),
    "mid": ("upgrade", "emotion", "revenge"),
    "climax": ("slap", "revenge", "comeback", "identity"),
    "closing": ("info", "emotion", "identity"),
}

GUARANTEED_BEATS = {
    "opening": ("info", "揭示关键信息，吸引观众"),
    "climax": ("slap", "关键转折，情绪高潮"),
    "closing": ("info", "留下悬念，引导下一集"),
}


# ==================== Prompt 模板 ====================

ARCHITECTURE_PROMPT = """你是一个专业的漫剧分集架构师。请根据以下故事圣经，设计完整的分集架构。
**目标集数**：{episode_count} 集

## 故事圣经
{bible}

## 爽点类型
{beat_types}

## 四步法结构
{four_steps}

## 节奏模板（{rhythm_name} - {rhythm_duration}秒）
{rhythm_segments}

## 输出要求
请严格按照以下 JSON 格式返回：
{{
  "totalEpisodes": {episode_count},
  "episodes": [
    {{
      "number": 1,
      "title": "集标题",
      "logline": "一句话卖点",
      "assignedEvents": ["E01", "E02"],
      "beatMap": {{
        "opening": {{"type": "slap/upgrade/...", "hookDescription": "钩子描述"}},
        "climax": {{"type": "...", "hookDescription": "..."}},
        "closing": {{"type": "...", "hookDescription": "..."}}
      }},
      "emotionalArc": "情绪弧线",
      "keyCharacters": ["C01"]
    }}
  ]
}}

## 事件分配规则
1. 每个事件必须且只能分配到一集
2. 必须按故事时间顺序分配事件
3. 如果事件B dependsOn 事件A，那么A必须在B之前或同一集
4. 每集 1-3 个主要事件，承重事件优先分配"""

ADJUST_PROMPT = """请调整以下分集设计：

## 当前集设计
{episode}

## 故事圣经上下文
角色: {characters}
事件: {events}

## 调整要求
{instruction}

## 输出要求
返回调整后的集设计 JSON，只允许修改 title、logline、beatMap、emotionalArc。"""


class EpisodeArchitect:
    """分集架构师"""

    def __init__(self, llm_client: Optional[LLMClient] = None, max_events_per_episode: int = 3,
                 min_events_per_episode: int = 1, default_rhythm: str = "standard_90",
                 max_output_tokens: int = 8192):
        self.llm_client = llm_client or MockLLMClient()
        self.scheduler = EventScheduler(max_events_per_episode, min_events_per_episode)
        self.default_rhythm = default_rhythm
        self.max_output_tokens = max_output_tokens
        self.parser = TolerantJSONParser()

    def calculate_episode_count(self, bible: StoryBible) -> int:
        return self.scheduler.calculate_episode_count(bible.events)

    def generate_architecture(self, bible: StoryBible, target_episodes: Optional[int] = None,
                              rhythm: Optional[str] = None, use_llm: bool = True) -> Architecture:
        """生成完整分集架构"""
        rhythm = rhythm or self.default_rhythm
        episode_count = target_episodes or self.calculate_episode_count(bible)
        if episode_count < 1:
            raise ValueError(f"集数必须 ≥ 1，实际为 {episode_count}")
        logger.info("[EpisodeArchitect] 计划生成 %d 集", episode_count)

        if use_llm and bible.events:
            try:
                proposed = self._request_llm_architecture(bible, episode_count, rhythm)
                if proposed is not None:
                    return proposed
            except Exception as e:
                logger.warning("[EpisodeArchitect] LLM 生成失败，使用算法生成: %s", e)

        return self.algorithmic_architecture(bible, episode_count, rhythm)

    # ==================== LLM 架构 ====================

    def _request_llm_architecture(self, bible: StoryBible, episode_count: int,
                                  rhythm_id: str) -> Optional[Architecture]:
        rhythm = get_rhythm_template(rhythm_id)
        prompt = ARCHITECTURE_PROMPT.format(
            episode_count=episode_count,
            bible=json.dumps(bible.to_dict(), ensure_ascii=False, indent=2),
            beat_types="\n".join(f"- {c.name}({c.id.value}): {c.description} [强度:{c.intensity}]"
                                 for c in BEAT_TYPES.values()),
            four_steps=" → ".join(f"{label}({timing})" for _, label, timing in FOUR_STEP_TIMING),
            rhythm_name=rhythm.name,
            rhythm_duration=rhythm.duration,
            rhythm_segments="\n".join(f"- {s.name}({s.start}-{s.end}s): {s.description} [强度:{s.intensity}]"
                                      for s in rhythm.segments)
        )
        response = self.llm_client.generate(prompt, max_output_tokens=self.max_output_tokens)
        data = self.parser.parse(response)
        if not isinstance(data, dict) or data.get("_parseError") or not data.get("episodes"):
            logger.warning("[EpisodeArchitect] LLM 架构无法解析，使用算法生成")
            return None

        architecture = Architecture.from_dict(data)
        problem = self.validate_partition(architecture, bible, episode_count)
        if problem:
            logger.warning("[EpisodeArchitect] LLM 架构不合法（%s），使用算法生成", problem)
            return None
        return self.validate_and_enhance(architecture, bible, rhythm_id)

    def validate_partition(self, architecture: Architecture, bible: StoryBible,
                           episode_count: Optional[int] = None) -> Optional[str]:
        """检查集数、事件是否恰好分配一次、依赖不晚于被依赖方，合法返回 None"""
        if episode_count is not None and len(architecture.episodes) != episode_count:
            return f"集数 {len(architecture.episodes)} 与要求的 {episode_count} 不一致"
        expected = sorted(e.id for e in bible.events)
        assigned = sorted(eid for ep in architecture.episodes for eid in ep.assigned_events)
        if assigned != expected:
            return "事件分配与故事圣经不一致"

        episode_of = {}
        for index, ep in enumerate(sorted(architecture.episodes, key=lambda e: e.number)):
            for eid in ep.assigned_events:
                episode_of[eid] = index
        self.scheduler.topological_sort(bible.events)
        if not self.scheduler.has_cycle:
            for event in bible.events:
                for dep in event.depends_on:
                    if dep in episode_of and episode_of[dep] > episode_of[event.id]:
                        return f"{dep} 被安排在 {event.id} 之后"
        return None

    def validate_and_enhance(self, architecture: Architecture, bible: StoryBible,
                             rhythm_id: str) -> Architecture:
        """补全 LLM 架构缺失的字段"""
        architecture.episodes.sort(key=lambda e: e.number)
        total = len(architecture.episodes)
        architecture.total_episodes = total
        rhythm = get_rhythm_template(rhythm_id)
        for index, episode in enumerate(architecture.episodes):
            episode.number = index + 1
            if not any(episode.beat_map.values()):
                episode.beat_map = {
                    position: BeatAssignment(beat, hook, generate_four_step_beat(beat))
                    for position, (beat, hook) in GUARANTEED_BEATS.items()
                }
            if not episode.emotional_arc:
                episode.emotional_arc = self.determine_emotional_arc(episode.number, total)
            if not episode.title:
                episode.title = f"第{episode.number}集"
            episode.estimated_duration = episode.estimated_duration or rhythm.duration

        architecture.overview = architecture.overview or self.generate_overview(total)
        architecture.arcs = architecture.arcs or self.design_arcs(total)
        architecture.beat_distribution = self.calculate_beat_distribution(architecture.episodes)
        architecture.rhythm_template = rhythm_id
        architecture.source = "llm"
        architecture.generated_at = datetime.now().isoformat()
        return architecture

    # ==================== 算法架构 ====================

    def algorithmic_architecture(self, bible: StoryBible, episode_count: int,
                                 rhythm_id: str) -> Architecture:
        """按调度器结果生成架构"""
        rhythm = get_rhythm_template(rhythm_id)
        assignments = self.scheduler.schedule_events(bible.events, episode_count)
        beat_maps = self.plan_beat_maps(assignments)

        episodes = []
        for index, events in enumerate(assignments):
            number = index + 1
            episodes.append(Episode(
                number=number,
                title=self.generate_episode_title(events, number),
                logline=self.generate_episode_logline(events),
                assigned_events=[e.id for e in events],
                beat_map=beat_maps[index],
                emotional_arc=self.determine_emotional_arc(number, episode_count),
                key_characters=self.identify_episode_characters(events, bible),
                estimated_duration=rhythm.duration
            ))

        load_bearing = sum(1 for e in bible.events if e.is_load_bearing)
        return Architecture(
            total_episodes=episode_count,
            episodes=episodes,
            formula=f"承重事件({load_bearing}) × 1.3 = {episode_count}",
            overview=self.generate_overview(episode_count),
            arcs=self.design_arcs(episode_count),
            beat_distribution=self.calculate_beat_distribution(episodes),
            rhythm_template=rhythm.id,
            source="algorithm",
            has_cycle=self.scheduler.has_cycle,
            generated_at=datetime.now().isoformat()
        )

    def plan_beat_maps(self, assignments: List[List[Event]]) -> List[Dict[str, Optional[BeatAssignment]]]:
        """为每集规划爽点地图"""
        beat_maps = []
        for events in assignments:
            beat_map: Dict[str, Optional[BeatAssignment]] = {p: None for p in BEAT_POSITIONS}
            potentials = [beat for e in events for beat in e.beat_potential]
            used = set()

            for position in POSITION_PLANNING_ORDER:
                beat = self.select_beat_for_position(position, potentials, used)
                if beat:
                    used.add(beat)
                    beat_map[position] = BeatAssignment(
                        type=beat,
                        hook_description=self.generate_beat_hook(beat, events, position),
                        four_steps=generate_four_step_beat(beat)
                    )

            for position, (beat, hook) in GUARANTEED_BEATS.items():
                if beat_map[position] is None:
                    beat_map[position] = BeatAssignment(beat, hook, generate_four_step_beat(beat))
            beat_maps.append(beat_map)
        return beat_maps

    @staticmethod
    def select_beat_for_position(position: str, potentials: List[str], used: set) -> Optional[str]:
        """位置偏好且未使用的爽点 > 任意未使用的潜力爽点 > 位置偏好的第一个未使用爽点"""
        preferred = PREFERRED_BEATS_BY_POSITION.get(position, ())
        for beat in preferred:
            if beat in potentials and beat not in used:
                return beat
        for beat in potentials:
            if beat not in used and get_beat_config(beat):
                return beat
        for beat in preferred:
            if beat not in used:
                return beat
        return None

    @staticmethod
    def generate_beat_hook(beat_type: str, events: List[Event], position: str) -> str:
        config = get_beat_config(beat_type)
        name = config.name if config else ""
        event_desc = events[0].summary if events else ""
        templates = {
            "opening": f"开场{name or '钩子'}：通过{event_desc or '关键信息'}吸引观众",
            "early": f"早期铺垫：为{name or '后续'}做准备",
            "mid": f"中段升级：{name or '情节'}深入发展",
            "climax": f"高潮{name or '爆发'}：{event_desc or '情绪顶点'}",
            "closing": f"结尾钩子：留下{name or '悬念'}引导下集",
        }
        return templates.get(position, f"{name or '爽点'}点")

    @staticmethod
    def design_arcs(episode_count: int) -> Dict[str, Any]:
        """小弧线（每 3 集）与主要转折点"""
        mini_arcs = []
        for start in range(0, episode_count, 3):
            end = min(start + 3, episode_count)
            if end - start >= 2:
                mini_arcs.append({
                    "name": f"小弧线 {len(mini_arcs) + 1}",
                    "episodes": list(range(start + 1, end + 1)),
                    "setup": f"第{start + 1}集建立",
                    "climax": f"第{(start + end) // 2 + 1}集高潮",
                    "resolution": f"第{end}集解决"
                })

        turning_points = []
        midpoint = math.ceil(episode_count / 2)
        if 1 < midpoint < episode_count:
            turning_points.append({"episode": midpoint, "type": "midpoint", "description": "故事中点，局势反转"})
        lowpoint = -(-episode_count * 3 // 4)
        if lowpoint != midpoint and lowpoint < episode_count:
            turning_points.append({"episode": lowpoint, "type": "all_is_lost", "description": "至暗时刻，最大危机"})

        return {"miniArcs": mini_arcs, "majorTurningPoints": turning_points}

    @staticmethod
    def generate_overview(episode_count: int) -> Dict[str, Any]:
        act1_end = -(-episode_count // 4)
        act2_end = -(-episode_count * 3 // 4)
        return {
            "act1": {"episodes": f"1-{act1_end}", "focus": "铺垫与建立"},
            "act2": {"episodes": f"{act1_end + 1}-{act2_end}", "focus": "冲突升级"},
            "act3": {"episodes": f"{act2_end + 1}-{episode_count}", "focus": "高潮与解决"},
        }

    @staticmethod
    def determine_emotional_arc(episode_number: int, total_episodes: int) -> str:
        progress = episode_number / total_episodes
        if progress <= 0.25:
            return "建立 -> 期待"
        if progress <= 0.5:
            return "期待 -> 紧张"
        if progress <= 0.75:
            return "紧张 -> 危机"
        return "危机 -> 释放"

    @staticmethod
    def identify_episode_characters(events: List[Event], bible: StoryBible) -> List[str]:
        ids = []
        for event in events:
            for cid in event.characters:
                if cid not in ids:
                    ids.append(cid)
        protagonist = bible.protagonist
        if protagonist and protagonist.id not in ids:
            ids.append(protagonist.id)
        return ids[:3]

    @staticmethod
    def generate_episode_title(events: List[Event], number: int) -> str:
        if not events:
            return f"第{number}集"
        main_event = next((e for e in events if e.is_load_bearing), events[0])
        return f"第{number}集：{main_event.summary[:10] or '未命名'}"

    @staticmethod
    def generate_episode_logline(events: List[Event]) -> str:
        if not events:
            return "故事继续展开"
        return "；".join(e.summary for e in events[:2])[:50]

    @staticmethod
    def calculate_beat_distribution(episodes: List[Episode]) -> Dict[str, int]:
        distribution: Dict[str, int] = {}
        for episode in episodes:
            for position in BEAT_POSITIONS:
                beat = episode.beat_map.get(position)
                if beat and beat.type:
                    distribution[beat.type] = distribution.get(beat.type, 0) + 1
        return distribution

    # ==================== 单集调整 ====================

    def adjust_episode(self, architecture: Architecture, episode_number: int,
                       adjustments: Dict[str, Any], bible: Optional[StoryBible] = None,
                       use_llm: bool = False) -> Architecture:
        """
        调整单集的标题、卖点、爽点地图；事件分配保持不变

        Raises:
            EpisodeNotFoundError: 集数不存在
        """
        episode = architecture.find_episode(episode_number)
        if episode is None:
            raise EpisodeNotFoundError(episode_number)

        self._apply_adjustments(episode, adjustments)

        if use_llm:
            prompt = ADJUST_PROMPT.format(
                episode=json.dumps(episode.to_dict(), ensure_ascii=False, indent=2),
                characters=", ".join(c.name for c in bible.characters) if bible else "",
                events=", ".join(e.id for e in bible.events) if bible else "",
                instruction=adjustments.get("instruction") or "请优化这一集的设计"
            )
            try:
                data = self.parser.parse(self.llm_client.generate(prompt, max_output_tokens=4096))
                if isinstance(data, dict) and not data.get("_parseError"):
                    self._apply_adjustments(episode, data)
                else:
                    logger.warning("[EpisodeArchitect] LLM 调整结果无法解析，保留直接调整")
            except Exception as e:
                logger.warning("[EpisodeArchitect] LLM 调整失败: %s", e)

        architecture.beat_distribution = self.calculate_beat_distribution(architecture.episodes)
        return architecture

    @staticmethod
    def _apply_adjustments(episode: Episode, adjustments: Dict[str, Any]) -> None:
        if adjustments.get("title"):
            episode.title = str(adjustments["title"])
        if adjustments.get("logline"):
            episode.logline = str(adjustments["logline"])
        if adjustments.get("emotionalArc"):
            episode.emotional_arc = str(adjustments["emotionalArc"])
        beat_map = adjustments.get("beatMap")
        if isinstance(beat_map, dict):
            for position, beat in beat_map.items():
                if isinstance(beat, dict) and beat.get("type"):
                    episode.beat_map[position] = BeatAssignment.from_dict(beat)
