# -*- coding: utf-8 -*-
"""运行配置 - 从 .env / 环境变量加载"""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)


@dataclass
class PipelineConfig:
    """流水线配置"""
    llm_api_key: str = ""
    llm_base_url: str = ""
    llm_model: str = "gpt-4o-mini"
    llm_max_output_tokens: int = 8192
    llm_temperature: float = 0.7
    max_events_per_episode: int = 3
    min_events_per_episode: int = 1
    default_style: str = "neutral_cinematic"
    default_rhythm: str = "standard_90"
    chunk_size: int = 8000
    log_level: str = "INFO"
    log_file: Optional[str] = None

    @property
    def has_llm(self) -> bool:
        return bool(self.llm_api_key)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("[CONFIG] %s=%r 不是有效整数，使用默认值 %s", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("[CONFIG] %s=%r 不是有效数字，使用默认值 %s", name, raw, default)
        return default


def load_config(dotenv: bool = True) -> PipelineConfig:
    """加载配置

    Args:
        dotenv: 是否先读取当前目录的 .env 文件
    """
    if dotenv:
        load_dotenv()

    return PipelineConfig(
        llm_api_key=os.environ.get("LLM_API_KEY", ""),
        llm_base_url=os.environ.get("LLM_BASE_URL", ""),
        llm_model=os.environ.get("LLM_MODEL", "gpt-4o-mini"),
        llm_max_output_tokens=_env_int("LLM_MAX_OUTPUT_TOKENS", 8192),
        llm_temperature=_env_float("LLM_TEMPERATURE", 0.7),
        max_events_per_episode=_env_int("MAX_EVENTS_PER_EPISODE", 3),
        min_events_per_episode=_env_int("MIN_EVENTS_PER_EPISODE", 1),
        default_style=os.environ.get("DEFAULT_STYLE", "neutral_cinematic"),
        default_rhythm=os.environ.get("DEFAULT_RHYTHM", "standard_90"),
        chunk_size=_env_int("CHUNK_SIZE", 8000),
        log_level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        log_file=os.environ.get("LOG_FILE") or None
    )
