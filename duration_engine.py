# -*- coding: utf-8 -*-
"""片段时长决策与旁白语速校验

时长只取 5 / 10 / 15 秒三档：激烈情绪短、平缓情绪长。
旁白按 2.5 ~ 5.5 字/秒校验，超出范围给出字数建议。
"""
import logging
import math
import unicodedata
from dataclasses import dataclass
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

DURATION_OPTIONS = (5, 10, 15)
DEFAULT_DURATION = 10

# 顺序即优先级，第一个命中的情绪档位生效
EMOTION_TRIGGERS: Tuple[Tuple[str, int, Tuple[str, ...]], ...] = (
    ("intense", 5, ("高潮", "爆发", "打脸", "反杀", "激烈", "愤怒", "震惊",
                    "climax", "slap", "intense", "shock", "rage", "fight")),
    ("calm", 15, ("平静", "舒缓", "温馨", "铺垫", "背景", "介绍", "日常",
                  "calm", "peaceful", "intro", "establishing", "serene")),
    ("moderate", 10, ("悬疑", "期待", "紧张", "转折", "suspense", "tension", "curious")),
)

BEAT_TYPE_DURATIONS = {
    "slap": 5,
    "revenge": 5,
    "comeback": 5,
    "identity": 5,
    "emotion": 15,
    "upgrade": 10,
    "info": 10,
}

MIN_SPEECH_RATE = 2.5
MAX_SPEECH_RATE = 5.5


def classify_emotion(emotion: Optional[str]) -> Optional[str]:
    """返回情绪档位 intense / calm / moderate，未命中返回 None"""
    text = (emotion or "").lower()
    for level, _, triggers in EMOTION_TRIGGERS:
        if any(trigger in text for trigger in triggers):
            return level
    return None


def decide_duration(emotion: Optional[str] = None, beat_type: Optional[str] = None,
                    max_duration_ceiling: Optional[float] = None) -> int:
    """
    决定片段时长

    Args:
        emotion: 片段情绪描述（中英文皆可）
        beat_type: 爽点类型，命中时覆盖情绪结果
        max_duration_ceiling: 时长上限，≤ 0 视为未设置

    Returns:
        5 / 10 / 15 之一；上限低于 5 时返回上限本身
    """
    duration = DEFAULT_DURATION
    text = (emotion or "").lower()
    for _, value, triggers in EMOTION_TRIGGERS:
        if any(trigger in text for trigger in triggers):
            duration = value
            break

    if beat_type:
        duration = BEAT_TYPE_DURATIONS.get(str(beat_type).lower(), duration)

    if max_duration_ceiling is not None and max_duration_ceiling > 0:
        allowed = [d for d in DURATION_OPTIONS if d <= max_duration_ceiling]
        if not allowed:
            return int(min(max_duration_ceiling, 15))
        # 距离相同时取较短的一档
        duration = min(allowed, key=lambda d: (abs(d - duration), d))

    return duration


@dataclass
class SpeechRateResult:
    """旁白语速校验结果"""
    char_count: int
    rate: float
    valid: bool
    suggestion: str = ""
    verdict: str = "ok"  # ok / too_slow / too_fast

    def to_dict(self):
        return {
            "charCount": self.char_count,
            "rate": round(self.rate, 2),
            "valid": self.valid,
            "suggestion": self.suggestion,
            "verdict": self.verdict
        }


def count_speech_chars(text: Optional[str]) -> int:
    """统计朗读字数：不计空白和标点"""
    count = 0
    for char in text or "":
        category = unicodedata.category(char)
        if category[0] in ("P", "Z") or char.isspace():
            continue
        count += 1
    return count


def validate_speech_rate(text: Optional[str], duration_seconds: float) -> SpeechRateResult:
    """
    校验旁白语速

    Raises:
        ValueError: 时长不为正
    """
    if duration_seconds <= 0:
        raise ValueError(f"时长必须为正数，实际为 {duration_seconds}")

    char_count = count_speech_chars(text)
    rate = char_count / duration_seconds

    if rate < MIN_SPEECH_RATE:
        minimum = math.ceil(MIN_SPEECH_RATE * duration_seconds)
        return SpeechRateResult(char_count, rate, False, f"语速过慢，建议至少 {minimum} 字", "too_slow")
    if rate > MAX_SPEECH_RATE:
        maximum = math.floor(MAX_SPEECH_RATE * duration_seconds)
        return SpeechRateResult(char_count, rate, False, f"语速过快，建议不超过 {maximum} 字", "too_fast")
    return SpeechRateResult(char_count, rate, True)
