# -*- coding: utf-8 -*-
"""Phase 4: 分镜转化模块 - 5D 框架提示词合成

剧本片段 → 时长决策 → 5D 视觉提示词（主体 / 环境 / 材质 / 镜头 / 氛围）。

一致性锚点（角色、地点）在每集开始时一次性收集，之后无论批量调用、
逐片段调用还是模板生成，主体与环境描述里都保证带上对应锚点。
"""
import csv
import hashlib
import io
import json
import logging
import re
from dataclasses import replace
from datetime import datetime
from typing import List, Optional, Dict, Any

from models import Anchor, AnchorType, Clip, ClipPrompt, TimeCode
from llm_client import LLMClient, MockLLMClient
from json_parser import TolerantJSONParser
from errors import SynthesisError
from duration_engine import classify_emotion, decide_duration, validate_speech_rate
from presets import (
    StyleConfig, generate_negative_prompt, get_style_preset, pick_imperfections
)

logger = logging.getLogger(__name__)


# ==================== 锚点识别 ====================

LOCATION_LABEL = re.compile(r"(?:场景|地点|location)\s*[：:]\s*([^，,。；;|\s]{1,20})", re.IGNORECASE)

LOCATION_KEYWORDS = (
    "宴会厅", "会议室", "办公室", "地下室", "实验室", "咖啡馆", "停车场",
    "客厅", "卧室", "书房", "走廊", "大厅", "天台", "仓库", "医院", "学校", "教室",
    "餐厅", "酒店", "酒吧", "公司", "别墅", "豪宅", "花园", "庭院", "街道", "街头",
    "机场", "法庭", "宫殿", "大殿", "客栈", "山顶", "森林", "海边", "河边", "车内",
)


def extract_locations(text: str) -> List[str]:
    """从画面描述中识别地点：优先"场景：XX"标注，其次地点关键词"""
    found = []
    for match in LOCATION_LABEL.finditer(text or ""):
        name = match.group(1).strip()
        if name and name not in found:
            found.append(name)
    if found:
        return found
    for keyword in LOCATION_KEYWORDS:
        if keyword in (text or "") and not any(keyword in name for name in found):
            found.append(keyword)
    return found


def collect_anchors(clips: List[Clip]) -> Dict[str, Anchor]:
    """
    收集一集内全部角色与地点锚点（按出现顺序，按名称去重）

    必须在任何片段合成之前调用。
    """
    anchors: Dict[str, Anchor] = {}
    for clip in clips:
        for speaker in clip.speakers:
            anchor = Anchor(AnchorType.CHAR, speaker)
            anchors.setdefault(anchor.key, anchor)
        for location in extract_locations(clip.visual):
            anchor = Anchor(AnchorType.LOC, location)
            anchors.setdefault(anchor.key, anchor)
    return anchors


def mentioned_names(text: str, names: List[str]) -> List[str]:
    """从长到短查找文本中出现的名字；命中的部分被遮蔽，短名不会命中长名的一部分"""
    found = []
    remaining = text
    for name in sorted(set(names), key=len, reverse=True):
        if name and name in remaining:
            found.append(name)
            remaining = remaining.replace(name, "\x00" * len(name))
    return found


def anchors_for_clip(clip: Clip, anchors: Dict[str, Anchor]) -> Dict[str, List[Anchor]]:
    """片段相关的锚点：本片段的说话人、画面中提到的已知角色、本片段的地点"""
    characters = []
    locations = []
    text = f"{clip.visual} {clip.narration}"
    clip_locations = extract_locations(clip.visual)
    speakers = set(clip.speakers)
    mentioned = set(mentioned_names(
        text, [anchor.name for anchor in anchors.values() if anchor.type == AnchorType.CHAR]
    ))
    for anchor in anchors.values():
        if anchor.type == AnchorType.CHAR:
            if anchor.name in speakers or anchor.name in mentioned:
                characters.append(anchor)
        elif anchor.type == AnchorType.LOC and anchor.name in clip_locations:
            locations.append(anchor)
    return {"characters": characters, "locations": locations}


def ensure_anchor_tokens(text: str, anchors: List[Anchor]) -> str:
    """把缺失的锚点 token 加到描述前面"""
    missing = [a.token for a in anchors if a.token not in (text or "")]
    if not missing:
        return text or ""
    return " ".join(missing + ([text] if text else []))


# ==================== 模板词表 ====================

SUBJECT_PHRASES = (
    (("扇", "耳光", "打"), "mid-strike motion"),
    (("跪",), "kneeling figure"),
    (("哭", "泪"), "tearful expression"),
    (("笑",), "subtle smile"),
    (("怒", "瞪"), "clenched jaw, furious glare"),
    (("拥抱", "抱"), "two figures embracing"),
    (("盯", "看", "凝视"), "intense gaze"),
    (("走", "跑"), "figure in motion"),
    (("站",), "standing figure"),
)

ENVIRONMENT_PHRASES = (
    (("夜", "深夜", "晚上"), "night scene"),
    (("雨",), "rain-soaked surroundings"),
    (("办公室", "公司", "会议室"), "modern office interior"),
    (("宴会",), "lavish banquet hall"),
    (("街",), "busy city street"),
    (("天台",), "rooftop overlooking the city"),
    (("宫", "大殿", "古"), "ancient palace hall"),
    (("医院",), "hospital corridor"),
    (("森林", "山"), "misty mountain forest"),
    (("卧室", "客厅", "家"), "lived-in home interior"),
)

MOOD_PHRASES = {
    "intense": "explosive tension, dramatic climax",
    "calm": "calm, contemplative atmosphere",
    "moderate": "suspenseful, rising tension",
}


def _match_phrases(text: str, table) -> List[str]:
    phrases = []
    for keywords, phrase in table:
        if any(k in text for k in keywords) and phrase not in phrases:
            phrases.append(phrase)
    return phrases


def template_five_d(clip: Clip, style: StyleConfig) -> Dict[str, str]:
    """按关键词表和风格预设确定性地生成 5D 描述"""
    visual = clip.visual or ""
    level = classify_emotion(clip.emotion)

    subject = _match_phrases(visual, SUBJECT_PHRASES)[:2] or ["central figure in scene"]
    environment = _match_phrases(visual, ENVIRONMENT_PHRASES)[:2] + [style.lighting_examples[0]]
    material = pick_imperfections(visual or clip.id) + ["environmental details"]
    shot = "close-up" if level == "intense" else style.shots[0]
    movement = "slow zoom" if level == "moderate" else style.movements[0]

    return {
        "d1_subject": ", ".join(subject),
        "d2_environment": ", ".join(environment),
        "d3_material": ", ".join(material),
        "d4_camera": f"{shot}, {movement}",
        "d5_mood": MOOD_PHRASES.get(level, "cinematic mood")
    }


# ==================== Prompt 模板 ====================

BATCH_PROMPT = """你是专业分镜师。为以下 {count} 个片段生成英文 5D 视觉描述。

## 视觉风格
{style_name}：{style_description}（{characteristics}）

## 一致性锚点
以下 token 代表固定的角色/地点形象，描述中涉及时必须原样保留：
{anchors}

## 片段列表
{clips}

## 输出要求
返回 JSON 数组，长度必须为 {count}，顺序与片段列表一致：
[
  {{"d1_subject": "主体", "d2_environment": "环境光线", "d3_material": "材质细节",
    "d4_camera": "镜头运动", "d5_mood": "氛围情绪"}}
]
全部字段使用英文，直接输出 JSON，不要代码块。"""

CLIP_PROMPT = """你是专业分镜师。为以下片段生成英文 5D 视觉描述。

## 视觉风格
{style_name}：{style_description}

## 片段
- 段落：{segment}
- 情绪：{emotion}
- 画面：{visual}
- 锚点：{anchors}

## 输出要求
返回 JSON：
{{"d1_subject": "", "d2_environment": "", "d3_material": "", "d4_camera": "", "d5_mood": ""}}
全部字段使用英文，锚点 token 原样保留，直接输出 JSON。"""


# ==================== 片段合成 ====================

class ClipSynthesizer:
    """片段提示词合成器

    每个实例持有自己的逐片段缓存，可在同一任务的多集之间顺序复用，
    不要在并发的不同任务之间共享。
    """

    def __init__(self, llm_client: Optional[LLMClient] = None, max_output_tokens: int = 8192,
                 visual_preview_length: int = 80):
        self.llm_client = llm_client or MockLLMClient()
        self.max_output_tokens = max_output_tokens
        self.visual_preview_length = visual_preview_length
        self.parser = TolerantJSONParser()
        self._cache: Dict[str, Dict[str, str]] = {}

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()

    @staticmethod
    def cache_key(clip: Clip, style: StyleConfig) -> str:
        raw = f"{clip.visual}|{clip.emotion}|{style.id}"
        return hashlib.sha1(raw.encode("utf-8")).hexdigest()

    def synthesize_episode_clips(self, clips: List[Clip], style: Optional[StyleConfig] = None,
                                 use_llm: bool = True, use_batch: bool = True,
                                 strict_batch: bool = False,
                                 anchors: Optional[Dict[str, Anchor]] = None) -> List[Clip]:
        """
        为一集的全部片段合成提示词

        Args:
            clips: 已排好时间码的片段
            style: 风格预设，默认中性电影风格
            use_llm: False 时只用模板
            use_batch: True 时一次调用覆盖全部片段，否则逐片段调用（带缓存）
            strict_batch: 批量结果数量不符时直接报错
            anchors: 预先收集的锚点，为空时在这里收集

        Raises:
            SynthesisError: LLM 调用失败或结果无法解析
        """
        style = style or get_style_preset(None)
        if anchors is None:
            anchors = collect_anchors(clips)
        if not clips:
            return []

        if not use_llm:
            results = [(template_five_d(c, style), "template") for c in clips]
        elif use_batch:
            results = self._synthesize_batch(clips, style, anchors, strict_batch)
        else:
            results = [self._synthesize_single(c, style, anchors) for c in clips]

        enriched = []
        for clip, (five_d, source) in zip(clips, results):
            enriched.append(replace(clip, prompt=self.build_prompt(clip, five_d, style, anchors, source)))
        return enriched

    def _synthesize_batch(self, clips: List[Clip], style: StyleConfig,
                          anchors: Dict[str, Anchor], strict: bool):
        prompt = BATCH_PROMPT.format(
            count=len(clips),
            style_name=style.name,
            style_description=style.description,
            characteristics="、".join(style.characteristics),
            anchors=self._describe_anchors(list(anchors.values())),
            clips="\n".join(
                f"{i}. [{c.segment_name or c.id}] 情绪：{c.emotion or '中性'} | 画面：{c.visual[:self.visual_preview_length]}"
                for i, c in enumerate(clips)
            )
        )
        try:
            response = self.llm_client.generate(prompt, max_output_tokens=self.max_output_tokens)
        except Exception as e:
            raise SynthesisError(f"批量合成调用失败: {e}") from e

        data = self.parser.parse(response)
        if isinstance(data, dict):
            # 截断响应的部分结果里仍可能有已完整的 clips 元素
            if data.get("_parseError"):
                logger.warning("[Storyboard] 批量合成响应不完整，使用已抢救的 %d 条",
                               len(data.get("clips") or []))
            data = data.get("clips") or data.get("prompts")
        if not isinstance(data, list) or not data:
            raise SynthesisError("批量合成结果无法解析", response)

        if len(data) != len(clips):
            logger.warning("[Storyboard] 批量合成返回 %d 条，期望 %d 条，按序号对齐", len(data), len(clips))
            if strict:
                raise SynthesisError(f"批量合成数量不符: {len(data)}/{len(clips)}", response)

        results = []
        for index, clip in enumerate(clips):
            item = data[index] if index < len(data) else None
            five_d = self._extract_five_d(item)
            if five_d is None:
                results.append((template_five_d(clip, style), "template"))
            else:
                results.append((five_d, "llm"))
        return results

    def _synthesize_single(self, clip: Clip, style: StyleConfig, anchors: Dict[str, Anchor]):
        key = self.cache_key(clip, style)
        if key in self._cache:
            return dict(self._cache[key]), "cache"

        related = anchors_for_clip(clip, anchors)
        prompt = CLIP_PROMPT.format(
            style_name=style.name,
            style_description=style.description,
            segment=clip.segment_name or clip.id,
            emotion=clip.emotion or "中性",
            visual=clip.visual,
            anchors=self._describe_anchors(related["characters"] + related["locations"])
        )
        try:
            response = self.llm_client.generate(prompt, max_output_tokens=2048)
        except Exception as e:
            raise SynthesisError(f"片段 {clip.id} 合成调用失败: {e}") from e

        data = self.parser.parse(response)
        if isinstance(data, dict) and isinstance(data.get("prompt"), dict):
            data = data["prompt"]
        five_d = self._extract_five_d(data)
        if five_d is None:
            raise SynthesisError(f"片段 {clip.id} 合成结果无法解析", response)

        self._cache[key] = dict(five_d)
        return five_d, "llm"

    @staticmethod
    def _extract_five_d(item: Any) -> Optional[Dict[str, str]]:
        if not isinstance(item, dict) or item.get("_parseError"):
            return None
        five_d = {name: str(item.get(name) or "").strip() for name in ClipPrompt.FIELDS}
        if not any(five_d.values()):
            return None
        return five_d

    @staticmethod
    def _describe_anchors(anchors: List[Anchor]) -> str:
        if not anchors:
            return "（无）"
        return "\n".join(f"- {a.token}：{a.name}" for a in anchors)

    def build_prompt(self, clip: Clip, five_d: Dict[str, str], style: StyleConfig,
                     anchors: Dict[str, Anchor], source: str) -> ClipPrompt:
        """补齐锚点并组装英文、负面、中文提示词"""
        related = anchors_for_clip(clip, anchors)
        prompt = ClipPrompt(**five_d, source=source)
        prompt.d1_subject = ensure_anchor_tokens(prompt.d1_subject, related["characters"])
        prompt.d2_environment = ensure_anchor_tokens(prompt.d2_environment, related["locations"])

        parts = [getattr(prompt, name) for name in ClipPrompt.FIELDS]
        parts.extend(style.prompt_modifiers[:3])
        prompt.combined = ", ".join(p for p in parts if p)
        prompt.negative = generate_negative_prompt(extra=style.negative_prompt)

        dialogue = "；".join(
            f"{d['speaker']}：{d['line']}" if d.get("speaker") else d.get("line", "")
            for d in clip.dialogue
        )
        duration = int(clip.duration) if clip.duration == int(clip.duration) else clip.duration
        prompt.chinese = (
            f"【{duration}秒片段】画面：{clip.visual or '待补充'} | 镜头：{prompt.d4_camera} | "
            f"情绪：{clip.emotion or '中性'} | 旁白：{clip.narration or '无'} | 对白：{dialogue or '无'}"
        )
        return prompt


# ==================== 分镜生成器 ====================

class StoryboardGenerator:
    """分镜生成器 - 时间码排布、提示词合成、语速校验

    一个实例对应一个任务，内部只有一个 ClipSynthesizer（一份缓存）。
    """

    def __init__(self, llm_client: Optional[LLMClient] = None, style: Optional[str] = None,
                 max_duration: Optional[float] = None, use_llm: bool = True,
                 use_batch: bool = True, strict_batch: bool = False):
        """
        初始化分镜生成器

        Args:
            llm_client: LLM 客户端实例，如果为 None 则使用 MockLLMClient
            style: 风格预设 id
            max_duration: 单片段时长上限（秒）
            use_llm: 是否使用 LLM 合成提示词
            use_batch: 批量模式（每集一次调用）或逐片段模式
            strict_batch: 批量结果数量不符时视为失败
        """
        self.synthesizer = ClipSynthesizer(llm_client)
        self.style = get_style_preset(style)
        self.max_duration = max_duration
        self.use_llm = use_llm
        self.use_batch = use_batch
        self.strict_batch = strict_batch

    def layout_clips(self, clips: List[Clip]) -> List[Clip]:
        """按时长决策从 0 秒开始依次排布时间码"""
        laid_out = []
        cursor = 0
        for clip in clips:
            duration = decide_duration(clip.emotion, clip.beat_type, self.max_duration)
            laid_out.append(replace(clip, time_code=TimeCode(cursor, cursor + duration)))
            cursor += duration
        return laid_out

    def generate_episode(self, episode_script: Dict[str, Any], use_llm: Optional[bool] = None) -> Dict[str, Any]:
        """
        生成单集分镜

        Raises:
            SynthesisError: LLM 合成失败
        """
        use_llm = self.use_llm if use_llm is None else use_llm
        number = episode_script.get("number")
        raw_clips = [c for c in episode_script.get("clips", []) if isinstance(c, dict)]
        clips = self.layout_clips([Clip.from_dict(c, i) for i, c in enumerate(raw_clips)])

        anchors = collect_anchors(clips)
        enriched = self.synthesizer.synthesize_episode_clips(
            clips, self.style, use_llm=use_llm, use_batch=self.use_batch,
            strict_batch=self.strict_batch, anchors=anchors
        )

        warnings = []
        for clip in enriched:
            if not clip.narration or clip.duration <= 0:
                continue
            result = validate_speech_rate(clip.narration, clip.duration)
            if not result.valid:
                warnings.append({"clipId": clip.id, **result.to_dict()})
        if warnings:
            logger.info("[Storyboard] 第 %s 集有 %d 个片段语速异常", number, len(warnings))

        return {
            "episodeNumber": number,
            "title": episode_script.get("title", ""),
            "style": self.style.id,
            "clips": [c.to_dict() for c in enriched],
            "anchors": [a.to_dict() for a in anchors.values()],
            "totalDuration": sum(c.duration for c in enriched),
            "speechRateWarnings": warnings
        }

    def generate_episode_with_fallback(self, episode_script: Dict[str, Any]) -> Dict[str, Any]:
        """生成单集分镜；合成失败时改用模板结果，并打上 fallback / error 标记"""
        try:
            return self.generate_episode(episode_script)
        except Exception as e:
            logger.warning("[Storyboard] 第 %s 集合成失败，使用模板: %s", episode_script.get("number"), e)
            fallback = self.generate_episode(episode_script, use_llm=False)
            fallback["fallback"] = True
            fallback["error"] = str(e)
            for clip in fallback["clips"]:
                clip["fallback"] = True
            return fallback

    def generate_storyboard(self, script: Dict[str, Any]) -> Dict[str, Any]:
        """按集数升序生成全部分镜，单集失败时用模板结果替代"""
        episodes = sorted(
            (e for e in script.get("episodes", []) if isinstance(e, dict)),
            key=lambda e: e.get("number") or 0
        )
        logger.info("[Storyboard] 生成 %d 集分镜，风格: %s", len(episodes), self.style.id)

        results = []
        failed = []
        for episode_script in episodes:
            result = self.generate_episode_with_fallback(episode_script)
            if result.get("fallback"):
                failed.append(episode_script.get("number"))
            results.append(result)

        return {
            "style": self.style.to_dict(),
            "maxDuration": self.max_duration,
            "episodes": results,
            "failedEpisodes": failed,
            "generatedAt": datetime.now().isoformat()
        }

    @staticmethod
    def replace_episode(storyboard: Dict[str, Any], episode: Dict[str, Any]) -> Dict[str, Any]:
        """用新生成的单集分镜替换（或插入）原分镜中的同一集，保持集数升序"""
        number = episode.get("episodeNumber")
        episodes = [e for e in storyboard.get("episodes", []) if e.get("episodeNumber") != number]
        episodes.append(episode)
        episodes.sort(key=lambda e: e.get("episodeNumber") or 0)
        failed = [n for n in storyboard.get("failedEpisodes", []) if n != number]
        if episode.get("fallback"):
            failed.append(number)
        return {**storyboard, "episodes": episodes, "failedEpisodes": sorted(failed)}

    # ==================== 导出 ====================

    CSV_HEADERS = ["Episode", "ID", "Segment", "Start", "End", "Duration", "Emotion",
                   "Narration", "Dialogue", "Subject", "Camera", "Mood", "Prompt", "Negative"]

    @staticmethod
    def export_json(storyboard: Dict[str, Any]) -> str:
        return json.dumps(storyboard, ensure_ascii=False, indent=2)

    @classmethod
    def export_csv(cls, storyboard: Dict[str, Any]) -> str:
        """所有集的片段展开为一行一个片段的 CSV"""
        output = io.StringIO()
        writer = csv.writer(output, lineterminator="\n")
        writer.writerow(cls.CSV_HEADERS)
        for episode in storyboard.get("episodes", []):
            for clip in episode.get("clips", []):
                time_code = clip.get("timeCode") or {}
                prompt = clip.get("prompt") or {}
                start = time_code.get("start", 0)
                end = time_code.get("end", 0)
                writer.writerow([
                    episode.get("episodeNumber"),
                    clip.get("id", ""),
                    clip.get("segmentName", ""),
                    start,
                    end,
                    end - start,
                    clip.get("emotion", ""),
                    clip.get("narration", ""),
                    " / ".join(
                        f"{d.get('speaker')}：{d.get('line')}" if d.get("speaker") else d.get("line", "")
                        for d in clip.get("dialogue", [])
                    ),
                    prompt.get("d1_subject", ""),
                    prompt.get("d4_camera", ""),
                    prompt.get("d5_mood", ""),
                    prompt.get("combined", ""),
                    prompt.get("negative", ""),
                ])
        return output.getvalue()
