# -*- coding: utf-8 -*-
"""容错 JSON 解析器

LLM 的输出经常夹带说明文字、Markdown 代码块、字符串里的裸换行，
或者在 token 上限附近被截断。TolerantJSONParser 按固定顺序尝试一系列
修复手段，每一步只处理一种问题，互相独立，任何一步失败都只是落到下一步。
"""
import json
import logging
import re
from typing import Any, Callable, List, Optional, Tuple

logger = logging.getLogger(__name__)

_FENCED_BLOCK = re.compile(r"```[ \t]*[A-Za-z0-9_-]*[ \t]*\n?(.*?)\n?[ \t]*```", re.DOTALL)
_LEADING_FENCE = re.compile(r"^```[ \t]*[A-Za-z0-9_-]*[ \t]*\n?")
_TRAILING_FENCE = re.compile(r"\n?[ \t]*```\s*$")
_UNQUOTED_KEY = re.compile(
    r"([{,]\s*)([A-Za-z_\u4e00-\u9fa5][A-Za-z0-9_\u4e00-\u9fa5]*)(\s*:)"
)
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")

_CONTROL_ESCAPES = {"\n": "\\n", "\r": "\\r", "\t": "\\t", "\b": "\\b", "\f": "\\f"}
_CLOSERS = {"{": "}", "[": "]"}

PARTIAL_ARRAY_KEYS = ("characters", "events", "episodes", "clips")
PARTIAL_STRING_KEYS = ("title", "mainTheme")


def _split_strings(text: str) -> List[Tuple[bool, str]]:
    """把文本切成 (是否字符串字面量, 片段) 序列，未闭合的字符串算到末尾"""
    segments = []
    buf = []
    in_string = False
    escape = False
    for char in text:
        if in_string:
            buf.append(char)
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                segments.append((True, "".join(buf)))
                buf = []
                in_string = False
        elif char == '"':
            if buf:
                segments.append((False, "".join(buf)))
            buf = [char]
            in_string = True
        else:
            buf.append(char)
    if buf:
        segments.append((in_string, "".join(buf)))
    return segments


def _find_balanced_end(text: str, start: int) -> Optional[int]:
    """从 text[start]（必须是 { 或 [）开始找到匹配的结束位置（含），字符串内的括号不计"""
    stack = []
    in_string = False
    escape = False
    for i in range(start, len(text)):
        char = text[i]
        if in_string:
            if escape:
                escape = False
            elif char == "\\":
                escape = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in "}]":
            if not stack or stack[-1] != char:
                return None
            stack.pop()
            if not stack:
                return i
    return None


class TolerantJSONParser:
    """容错 JSON 解析器，parse() 永不抛出异常"""

    def __init__(self, raw_content_limit: int = 1000):
        self.raw_content_limit = raw_content_limit
        self.repair_steps: List[Tuple[str, Callable[[str], Optional[str]]]] = [
            ("strip_code_fence", self.strip_code_fence),
            ("escape_control_characters", self.escape_control_characters),
            ("remove_trailing_commas", self.remove_trailing_commas),
            ("quote_bare_keys", self.quote_bare_keys),
        ]

    def parse(self, text: Any) -> Any:
        """解析文本，返回对象；全部失败时返回带 _parseError 标记的部分结果或 None"""
        if not isinstance(text, str):
            return None
        current = self.preprocess(text)
        if not current:
            return None

        ok, value = self._try_load(current)
        if ok:
            return value

        # 文本级修复：每一步都接收上一步的输出
        # 修复可能误伤 JSON 之外的说明文字（如落单的引号）；
        # 后续的提取依次尝试每个中间结果，从修复最多的文本退回到原文
        candidates = [current]
        for name, step in self.repair_steps:
            repaired = self._run_step(name, step, current)
            if repaired is None:
                continue
            ok, value = self._try_load(repaired)
            if ok:
                logger.debug("[JSON] 修复策略 %s 成功", name)
                return value
            current = repaired
            candidates.append(repaired)
        candidates.reverse()

        extracted_texts = []
        for candidate in candidates:
            extracted = self._run_step("extract_balanced", self.extract_balanced, candidate)
            extracted_texts.append(extracted)
            if extracted is not None:
                ok, value = self._try_load(extracted)
                if ok:
                    logger.debug("[JSON] 修复策略 extract_balanced 成功")
                    return value

        for candidate, extracted in zip(candidates, extracted_texts):
            closed = self._run_step("close_brackets", self.close_brackets,
                                    extracted if extracted is not None else candidate)
            if closed is not None:
                ok, value = self._try_load(closed)
                if ok:
                    logger.debug("[JSON] 修复策略 close_brackets 成功")
                    return value

        partial = None
        for candidate in candidates:
            partial = self._run_step("extract_partial", self.extract_partial, candidate)
            if partial is not None:
                break
        if partial is None:
            logger.warning("[JSON] 无法从响应中解析出任何结构化内容 (长度 %d)", len(text))
        else:
            logger.warning("[JSON] 仅提取到部分内容: %s",
                           [k for k in partial if not k.startswith("_")])
        return partial

    # ==================== 基础工具 ====================

    @staticmethod
    def preprocess(text: str) -> str:
        text = text.strip()
        if text.startswith("\ufeff"):
            text = text[1:].strip()
        return text

    @staticmethod
    def _try_load(text: str) -> Tuple[bool, Any]:
        try:
            return True, json.loads(text)
        except (ValueError, RecursionError):
            return False, None

    @staticmethod
    def _run_step(name: str, step: Callable[[str], Any], text: str) -> Any:
        try:
            return step(text)
        except Exception as e:  # 每一步单独隔离，失败即落到下一步
            logger.debug("[JSON] 修复策略 %s 出错: %s", name, e)
            return None

    # ==================== 修复策略 ====================

    @staticmethod
    def strip_code_fence(text: str) -> Optional[str]:
        """去掉 ```json ... ``` 代码块标记"""
        match = _FENCED_BLOCK.search(text)
        if match:
            return match.group(1).strip()
        stripped = _TRAILING_FENCE.sub("", _LEADING_FENCE.sub("", text))
        return stripped.strip() if stripped != text else None

    @staticmethod
    def escape_control_characters(text: str) -> Optional[str]:
        """只转义字符串字面量内部的裸控制字符，结构性空白保持不变"""
        result = []
        in_string = False
        escape = False
        changed = False
        for char in text:
            if escape:
                result.append(char)
                escape = False
                continue
            if in_string and char == "\\":
                result.append(char)
                escape = True
                continue
            if char == '"':
                in_string = not in_string
                result.append(char)
                continue
            if in_string and ord(char) < 0x20:
                result.append(_CONTROL_ESCAPES.get(char, "\\u%04x" % ord(char)))
                changed = True
                continue
            result.append(char)
        return "".join(result) if changed else None

    @staticmethod
    def remove_trailing_commas(text: str) -> Optional[str]:
        """删除 } 或 ] 之前的多余逗号（字符串内部不处理）"""
        result = []
        changed = False
        for is_string, segment in _split_strings(text):
            if is_string:
                result.append(segment)
                continue
            fixed = _TRAILING_COMMA.sub(r"\1", segment)
            if fixed != segment:
                changed = True
            result.append(fixed)
        return "".join(result) if changed else None

    @staticmethod
    def quote_bare_keys(text: str) -> Optional[str]:
        """给未加引号的键补上引号：{key: 1} -> {"key": 1}"""
        result = []
        changed = False
        for is_string, segment in _split_strings(text):
            if is_string:
                result.append(segment)
                continue
            fixed = _UNQUOTED_KEY.sub(r'\1"\2"\3', segment)
            if fixed != segment:
                changed = True
            result.append(fixed)
        return "".join(result) if changed else None

    @staticmethod
    def extract_balanced(text: str) -> Optional[str]:
        """提取最长的顶层平衡 {...} 或 [...] 子串

        遇到未闭合的顶层括号即停止：其后的内容都属于被截断的外层结构。
        """
        best: Optional[Tuple[int, int]] = None
        i = 0
        while i < len(text):
            if text[i] in _CLOSERS:
                end = _find_balanced_end(text, i)
                if end is None:
                    break
                if best is None or end - i > best[1] - best[0]:
                    best = (i, end)
                i = end + 1
                continue
            i += 1
        if best is None:
            return None
        candidate = text[best[0]:best[1] + 1]
        return candidate if candidate != text else None

    @staticmethod
    def close_brackets(text: str) -> Optional[str]:
        """补齐被截断的 JSON：先闭合未结束的字符串，再按嵌套顺序补括号"""
        starts = [pos for pos in (text.find("{"), text.find("[")) if pos != -1]
        if not starts:
            return None
        body = text[min(starts):]

        stack = []
        in_string = False
        escape = False
        for char in body:
            if in_string:
                if escape:
                    escape = False
                elif char == "\\":
                    escape = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char in _CLOSERS:
                stack.append(_CLOSERS[char])
            elif char in "}]" and stack and stack[-1] == char:
                stack.pop()

        if in_string:
            if escape:
                body = body[:-1]
            body += '"'
        if not stack:
            return None

        body = body.rstrip()
        if body.endswith(","):
            body = body[:-1].rstrip()
        if body.endswith(":"):
            body += " null"
        return body + "".join(reversed(stack))

    # ==================== 部分提取 ====================

    def extract_partial(self, text: str) -> Optional[dict]:
        """逐字段提取已知的顶层字段，整体 JSON 无效时使用"""
        result = {
            "_parseError": True,
            "_rawContent": text[:self.raw_content_limit]
        }

        for key in PARTIAL_ARRAY_KEYS:
            match = re.search(r'"%s"\s*:\s*\[' % key, text)
            if match:
                result[key] = self._salvage_array(text, match.end() - 1)

        episodes_match = re.search(r'"estimatedEpisodes"\s*:\s*(\d+)', text)
        if episodes_match:
            result["estimatedEpisodes"] = int(episodes_match.group(1))

        for key in PARTIAL_STRING_KEYS:
            match = re.search(r'"%s"\s*:\s*"((?:[^"\\]|\\.)*)"' % key, text)
            if match:
                ok, value = self._try_load('"%s"' % match.group(1))
                result[key] = value if ok else match.group(1)

        return result if len(result) > 2 else None

    def _salvage_array(self, text: str, start: int) -> list:
        """解析从 start 开始的数组；数组被截断时逐个抢救已完整的对象元素"""
        end = _find_balanced_end(text, start)
        if end is not None:
            ok, value = self._try_load(text[start:end + 1])
            if ok and isinstance(value, list):
                return value

        items = []
        i = start + 1
        while i < len(text):
            char = text[i]
            if char == "{":
                obj_end = _find_balanced_end(text, i)
                if obj_end is None:
                    break
                chunk = text[i:obj_end + 1]
                ok, value = self._try_load(chunk)
                if not ok:
                    fixed = self.remove_trailing_commas(chunk)
                    ok, value = self._try_load(fixed) if fixed else (False, None)
                if ok:
                    items.append(value)
                i = obj_end + 1
                continue
            if char == "]":
                break
            i += 1
        return items


# ==================== 快捷函数 ====================

def parse_json(text: Any) -> Any:
    """快捷解析函数"""
    return TolerantJSONParser().parse(text)


def safe_parse_json(text: Any, default: Any = None) -> Any:
    """安全解析，解析失败时返回默认值"""
    result = TolerantJSONParser().parse(text)
    if result is None:
        return {} if default is None else default
    return result


def is_valid_json(text: Any) -> bool:
    """检查字符串是否是严格有效的 JSON"""
    if not isinstance(text, str):
        return False
    try:
        json.loads(text)
        return True
    except ValueError:
        return False
