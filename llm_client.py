# -*- coding: utf-8 -*-
"""LLM 客户端

所有流水线阶段共用的文本生成调用接口。
LLM 的返回内容一律视为不可信文本，由 json_parser 负责容错解析。
"""
import logging
import random
import time
from collections import deque
from typing import List, Optional, Dict, Any, Union

from openai import OpenAI, APIStatusError, APIConnectionError

from config import PipelineConfig, load_config

logger = logging.getLogger(__name__)


# ==================== LLM 客户端接口 ====================

class LLMClient:
    """LLM 客户端基类 - 可继承实现不同平台的调用"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None):
        self.api_key = api_key or ""
        self.base_url = base_url or ""

    def chat(self, messages: List[Dict[str, str]], temperature: float = 0.7,
             max_tokens: Optional[int] = None) -> str:
        """发送对话请求并返回响应文本"""
        raise NotImplementedError("子类必须实现 chat 方法")

    def generate(self, prompt: str, max_output_tokens: Optional[int] = None,
                 temperature: float = 0.7) -> str:
        """单轮文本生成"""
        messages = [{"role": "user", "content": prompt}]
        return self.chat(messages, temperature=temperature, max_tokens=max_output_tokens)


class MockLLMClient(LLMClient):
    """Mock LLM 客户端 - 用于测试时无需真实 API 调用

    responses 队列按顺序消费，元素为异常实例时直接抛出；
    队列耗尽后返回 mock_response。所有收到的 prompt 记录在 prompts 中。
    """

    def __init__(self, mock_response: str = "",
                 responses: Optional[List[Union[str, Exception]]] = None):
        super().__init__()
        self.mock_response = mock_response
        self.responses = deque(responses or [])
        self.prompts: List[str] = []
        self.call_count = 0

    def chat(self, messages: List[Dict[str, str]], temperature: float = 0.7,
             max_tokens: Optional[int] = None) -> str:
        """返回预设的 mock 响应"""
        self.call_count += 1
        self.prompts.append(messages[-1]["content"] if messages else "")
        if self.responses:
            response = self.responses.popleft()
            if isinstance(response, Exception):
                raise response
            return response
        return self.mock_response


class OpenAICompatibleClient(LLMClient):
    """OpenAI 兼容 API 客户端 - 支持 JSON 模式和自动重试"""

    def __init__(self, api_key: Optional[str] = None, base_url: Optional[str] = None,
                 model: str = "gpt-4o-mini", use_json_mode: bool = False,
                 max_retries: int = 3, retry_delay: float = 1.0):
        """
        初始化 OpenAI 兼容客户端

        Args:
            api_key: API 密钥
            base_url: API 基础 URL
            model: 模型名称
            use_json_mode: 是否启用 JSON 结构化输出（response_format=json_object）
            max_retries: 最大重试次数
            retry_delay: 基础重试延迟（秒），实际延迟按指数退避计算
        """
        super().__init__(api_key, base_url)
        self.model = model
        self.use_json_mode = use_json_mode
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client = None

    def _get_client(self) -> OpenAI:
        if self._client is None:
            self._client = OpenAI(
                api_key=self.api_key,
                base_url=self.base_url if self.base_url else None
            )
        return self._client

    def _backoff(self, attempt: int) -> float:
        # 指数退避 + 抖动
        return self.retry_delay * (2 ** attempt) + random.uniform(0, 1)

    def chat(self, messages: List[Dict[str, str]], temperature: float = 0.7,
             max_tokens: Optional[int] = None, json_mode: bool = False) -> str:
        """
        调用 OpenAI 兼容 API（带自动重试）

        Retries:
            - HTTP 429 (Rate Limit): 重试
            - HTTP 5xx (Server Error): 重试
            - Connection Error: 重试
            - HTTP 4xx (Client Error): 不重试
        """
        request_kwargs: Dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature
        }
        if max_tokens:
            request_kwargs["max_tokens"] = max_tokens
        if self.use_json_mode or json_mode:
            request_kwargs["response_format"] = {"type": "json_object"}
            if messages and messages[0].get("role") != "system":
                request_kwargs["messages"] = [{
                    "role": "system",
                    "content": "You must respond with valid JSON only. No other text, no markdown code blocks."
                }] + list(messages)

        for attempt in range(self.max_retries + 1):
            try:
                response = self._get_client().chat.completions.create(**request_kwargs)
                return response.choices[0].message.content or ""

            except APIStatusError as e:
                status_code = e.status_code
                retryable = status_code == 429 or 500 <= status_code < 600
                if not retryable:
                    logger.error("[ERROR] 客户端错误 (%s): %s", status_code, e)
                    raise
                if attempt >= self.max_retries:
                    logger.error("[ERROR] 达到最大重试次数，HTTP %s 错误仍未解决", status_code)
                    raise
                delay = self._backoff(attempt)
                reason = "遇到限流 (429)" if status_code == 429 else f"服务器错误 ({status_code})"
                logger.warning("[RETRY] %s，%.1f秒后重试... (尝试 %d/%d)",
                               reason, delay, attempt + 1, self.max_retries)
                time.sleep(delay)

            except APIConnectionError:
                if attempt >= self.max_retries:
                    logger.error("[ERROR] 达到最大重试次数，连接错误仍未解决")
                    raise
                delay = self._backoff(attempt)
                logger.warning("[RETRY] 连接错误，%.1f秒后重试... (尝试 %d/%d)",
                               delay, attempt + 1, self.max_retries)
                time.sleep(delay)

        raise RuntimeError("重试循环异常退出")


def create_llm_client(config: Optional[PipelineConfig] = None) -> LLMClient:
    """根据配置创建 LLM 客户端，未配置 API Key 时返回 Mock 客户端"""
    config = config or load_config()
    if not config.has_llm:
        logger.warning("[WARN] 未配置 LLM_API_KEY，使用 Mock LLM 客户端（仅模板输出）")
        return MockLLMClient()
    return OpenAICompatibleClient(
        api_key=config.llm_api_key,
        base_url=config.llm_base_url,
        model=config.llm_model
    )
