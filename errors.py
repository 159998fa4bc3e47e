# -*- coding: utf-8 -*-
"""流水线异常定义"""
from typing import Optional


def truncate_response(raw: Optional[str], limit: int = 500) -> str:
    """截断原始响应，用于错误信息诊断"""
    if raw is None:
        return ""
    text = str(raw)
    if len(text) <= limit:
        return text
    return text[:limit] + "...(已截断)"


class PipelineError(Exception):
    """流水线异常基类"""


class LLMResponseError(PipelineError):
    """LLM 返回内容无法解析为期望的结构"""

    def __init__(self, message: str, raw_response: Optional[str] = None):
        self.raw_response = raw_response
        detail = truncate_response(raw_response)
        if detail:
            message = f"{message} | 原始响应: {detail}"
        super().__init__(message)


class SynthesisError(LLMResponseError):
    """分镜提示词合成失败（LLM 路径被显式请求时抛出，由调用方决定重试或降级）"""

    def __init__(self, message: str, raw_response: Optional[str] = None,
                 episode_number: Optional[int] = None):
        self.episode_number = episode_number
        if episode_number is not None:
            message = f"第{episode_number}集: {message}"
        super().__init__(message, raw_response)


class EpisodeNotFoundError(PipelineError):
    """指定集数不存在"""

    def __init__(self, episode_number: int):
        self.episode_number = episode_number
        super().__init__(f"Episode {episode_number} not found")


class StageNotReadyError(PipelineError):
    """前置阶段尚未完成"""

    def __init__(self, stage: str, prerequisite: str):
        self.stage = stage
        self.prerequisite = prerequisite
        super().__init__(f"无法执行 {stage}：请先完成 {prerequisite}")


class ClipNotFoundError(PipelineError):
    """指定集中不存在该片段"""

    def __init__(self, episode_number: int, clip_id: str):
        self.episode_number = episode_number
        self.clip_id = clip_id
        super().__init__(f"Clip {clip_id} not found in episode {episode_number}")
