# -*- coding: utf-8 -*-
"""Phase 3: 剧本生成模块 - LLM 驱动版本

按分集架构逐集生成结构化剧本（片段列表）。
LLM 负责把本集事件和爽点规划写成旁白、画面与对白；
单集失败时用节奏模板生成降级剧本，不影响其余集。
"""
import json
import logging
import time
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple

from models import Architecture, Clip, Episode, StoryBible, TimeCode, parse_dialogue
from llm_client import LLMClient, MockLLMClient
from json_parser import TolerantJSONParser
from errors import ClipNotFoundError, EpisodeNotFoundError, LLMResponseError
from presets import RhythmTemplate, get_rhythm_template

logger = logging.getLogger(__name__)


# ==================== Prompt 模板 ====================

SCRIPT_PROMPT = """你是漫剧编剧。为《{title}》生成第{number}集剧本。

## 本集信息
- 标题：{episode_title}
- 卖点：{logline}
- 时长：{duration}秒
- 风格：{style}

## 角色列表
{characters}

## 本集事件
{events}

## 爽点规划
{beats}

## 节奏结构
{segments}

## 输出要求
直接输出纯JSON（无代码块），格式如下：
{{
  "number": {number},
  "clips": [
    {{
      "id": "C01",
      "segmentName": "开场钩子",
      "timeCode": {{"start": 0, "end": 5}},
      "narration": "说书体旁白",
      "visual": "画面描述：镜头、场景、人物动作",
      "dialogue": [{{"speaker": "角色名", "line": "台词"}}],
      "emotion": "悬疑",
      "beatType": "slap/upgrade/..."
    }}
  ]
}}

## 关键要求
1. 旁白语速约 5 字/秒：5秒片段约 25 字，10秒约 50 字，15秒约 75 字
2. 每个节奏段落对应一个片段，按时间顺序排列
3. 冲突、转折、高潮片段必须有对白，对白每句 10-30 字
4. visual 写清镜头、场景和人物动作；场景请以"场景：地点"开头
5. emotion 为该片段的情绪基调"""

STYLE_NAMES = {
    "narrated": "解说漫(旁白为主)",
    "panel": "分格漫剧",
}


class ScriptGenerator:
    """剧本生成器 - 使用 LLM 把分集设计写成片段列表"""

    def __init__(self, llm_client: Optional[LLMClient] = None, style: str = "narrated",
                 default_rhythm: str = "standard_90", max_output_tokens: int = 4096,
                 batch_delay: float = 0.0):
        """
        初始化剧本生成器

        Args:
            llm_client: LLM 客户端实例，如果为 None 则使用 MockLLMClient
            style: 剧本风格 narrated / panel
            default_rhythm: 默认节奏模板 id
            max_output_tokens: 单集最大输出 token
            batch_delay: 相邻两集之间的等待秒数
        """
        self.llm_client = llm_client or MockLLMClient()
        self.style = style
        self.default_rhythm = default_rhythm
        self.max_output_tokens = max_output_tokens
        self.batch_delay = batch_delay
        self.parser = TolerantJSONParser()

    def generate_full_script(self, bible: StoryBible, architecture: Architecture,
                             rhythm: Optional[str] = None,
                             episode_range: Optional[Tuple[int, int]] = None) -> Dict[str, Any]:
        """
        按集数升序生成全部剧本，单集失败使用降级剧本

        Returns:
            {"episodes": [...], "failedEpisodes": [...], ...}
        """
        rhythm_id = rhythm or architecture.rhythm_template or self.default_rhythm
        episodes = sorted(architecture.episodes, key=lambda e: e.number)
        if episode_range:
            episodes = [e for e in episodes if episode_range[0] <= e.number <= episode_range[1]]

        logger.info("[ScriptWriter] 计划生成 %d 集剧本", len(episodes))
        generated = []
        failed = []

        for index, episode in enumerate(episodes):
            entry = self.generate_episode_entry(episode, bible, rhythm_id)
            if entry.get("fallback"):
                failed.append(episode.number)
            generated.append(entry)

            if self.batch_delay and index < len(episodes) - 1:
                time.sleep(self.batch_delay)

        return {
            "totalEpisodes": architecture.total_episodes,
            "style": self.style,
            "rhythmTemplate": rhythm_id,
            "episodes": generated,
            "failedEpisodes": failed,
            "generatedAt": datetime.now().isoformat()
        }

    def generate_episode_entry(self, episode: Episode, bible: StoryBible,
                               rhythm: Optional[str] = None) -> Dict[str, Any]:
        """生成单集剧本条目，失败时使用降级剧本并记录错误"""
        logger.info("[ScriptWriter] 生成第 %d 集...", episode.number)
        entry = {"number": episode.number, "title": episode.title, "logline": episode.logline}
        try:
            clips = self.generate_episode_script(episode, bible, rhythm)
            entry["clips"] = [c.to_dict() for c in clips]
        except Exception as e:
            logger.warning("[ScriptWriter] 第 %d 集生成失败，使用降级剧本: %s", episode.number, e)
            clips = self.generate_fallback_script(episode, bible, rhythm)
            entry["clips"] = [c.to_dict() for c in clips]
            entry["fallback"] = True
            entry["error"] = str(e)
        return entry

    def regenerate_episode(self, script: Dict[str, Any], bible: StoryBible,
                           architecture: Architecture, number: int) -> Dict[str, Any]:
        """
        重新生成某一集并替换到剧本中

        Returns:
            新的剧本字典（原字典不修改）

        Raises:
            EpisodeNotFoundError: 架构中没有该集
        """
        episode = architecture.find_episode(number)
        if episode is None:
            raise EpisodeNotFoundError(number)
        rhythm_id = script.get("rhythmTemplate") or architecture.rhythm_template or self.default_rhythm
        return replace_episode_script(script, self.generate_episode_entry(episode, bible, rhythm_id))

    def generate_episode_script(self, episode: Episode, bible: StoryBible,
                                rhythm: Optional[str] = None) -> List[Clip]:
        """
        生成单集剧本

        Raises:
            LLMResponseError: 响应中解析不出片段列表
        """
        template = get_rhythm_template(rhythm or self.default_rhythm)
        prompt = self.build_prompt(episode, bible, template)
        response = self.llm_client.generate(prompt, max_output_tokens=self.max_output_tokens)

        data = self.parser.parse(response)
        raw_clips = None
        if isinstance(data, dict) and not data.get("_parseError"):
            raw_clips = data.get("clips") or data.get("segments")
        elif isinstance(data, list):
            raw_clips = data
        if not raw_clips:
            raise LLMResponseError(f"第{episode.number}集剧本无法解析出片段", response)

        clips = [Clip.from_dict(item, i) for i, item in enumerate(raw_clips) if isinstance(item, dict)]
        if not clips:
            raise LLMResponseError(f"第{episode.number}集剧本片段格式错误", response)
        return clips

    def build_prompt(self, episode: Episode, bible: StoryBible, template: RhythmTemplate) -> str:
        character_ids = episode.key_characters or [c.id for c in bible.characters[:3]]
        characters = [
            {"id": c.id, "name": c.name, "role": c.role.value}
            for c in bible.characters if c.id in character_ids
        ][:3]
        events = []
        for event_id in episode.assigned_events[:5]:
            event = bible.find_event(event_id)
            if event:
                events.append({"id": event.id, "summary": event.summary})
        beats = [
            {"position": position, "type": beat.type, "hook": beat.hook_description}
            for position, beat in episode.beat_map.items() if beat and beat.type
        ]
        return SCRIPT_PROMPT.format(
            title=bible.title or "未命名",
            number=episode.number,
            episode_title=episode.title or "待定",
            logline=episode.logline or "待定",
            duration=template.duration,
            style=STYLE_NAMES.get(self.style, self.style),
            characters=json.dumps(characters, ensure_ascii=False, indent=2),
            events=json.dumps(events, ensure_ascii=False, indent=2),
            beats=json.dumps(beats, ensure_ascii=False, indent=2),
            segments="\n".join(f"- {s.name}({s.start}-{s.end}s): {s.description}" for s in template.segments)
        )

    def generate_fallback_script(self, episode: Episode, bible: StoryBible,
                                 rhythm: Optional[str] = None) -> List[Clip]:
        """按节奏模板生成降级剧本，旁白取自本集事件摘要"""
        template = get_rhythm_template(rhythm or self.default_rhythm)
        protagonist = bible.protagonist
        main_name = protagonist.name if protagonist else "主角"
        events = [e for e in (bible.find_event(eid) for eid in episode.assigned_events) if e]
        climax_index = max(range(len(template.segments)), key=lambda i: template.segments[i].intensity)

        clips = []
        for index, segment in enumerate(template.segments):
            if index == 0:
                narration = f"你敢信？{main_name}的故事，就从这里开始..."
            elif events:
                narration = events[min(index, len(events) - 1)].summary or "故事继续发展..."
            else:
                narration = "故事还在继续..."

            if index == 0:
                position = "opening"
            elif index == climax_index:
                position = "climax"
            elif index == len(template.segments) - 1:
                position = "closing"
            else:
                position = None
            beat = episode.beat_map.get(position) if position else None

            clips.append(Clip(
                id=f"C{index + 1:02d}",
                segment_name=segment.name,
                time_code=TimeCode(segment.start, segment.end),
                narration=narration,
                visual=narration if index else segment.description,
                emotion=self._emotion_for_intensity(segment.intensity),
                beat_type=beat.type if beat else None,
                fallback=True
            ))
        return clips

    @staticmethod
    def _emotion_for_intensity(intensity: int) -> str:
        if intensity >= 9:
            return "高潮"
        if intensity <= 3:
            return "铺垫"
        if intensity >= 7:
            return "紧张"
        return "期待"


def find_episode_script(script: Dict[str, Any], number: int) -> Dict[str, Any]:
    """在剧本结果中按集数查找单集"""
    for entry in script.get("episodes", []):
        if entry.get("number") == number:
            return entry
    raise EpisodeNotFoundError(number)


def replace_episode_script(script: Dict[str, Any], entry: Dict[str, Any]) -> Dict[str, Any]:
    """用新的单集条目替换（或插入）剧本中的同一集，保持集数升序"""
    number = entry["number"]
    episodes = [e for e in script.get("episodes", []) if e.get("number") != number]
    episodes.append(entry)
    episodes.sort(key=lambda e: e.get("number") or 0)
    failed = [n for n in script.get("failedEpisodes", []) if n != number]
    if entry.get("fallback"):
        failed.append(number)
    return {**script, "episodes": episodes, "failedEpisodes": sorted(failed)}


EDITABLE_CLIP_FIELDS = ("narration", "visual", "emotion", "dialogue")


def update_clip(script: Dict[str, Any], number: int, clip_id: str,
                updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    修改单集中某个片段的旁白 / 画面 / 情绪 / 对白，返回修改后的片段

    只接受 EDITABLE_CLIP_FIELDS 中的字段，值为 None 的字段保持不变。

    Raises:
        EpisodeNotFoundError: 集数不存在
        ClipNotFoundError: 该集没有此片段
    """
    entry = find_episode_script(script, number)
    for clip in entry.get("clips", []):
        if clip.get("id") != clip_id:
            continue
        for field in EDITABLE_CLIP_FIELDS:
            value = updates.get(field)
            if value is None:
                continue
            clip[field] = parse_dialogue(value) if field == "dialogue" else value
        return clip
    raise ClipNotFoundError(number, clip_id)
