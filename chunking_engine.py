# -*- coding: utf-8 -*-
"""长文本分块引擎 (Chunking Pipeline)

按章节智能切分小说文本，避免单次 LLM 调用超出上下文限制：
1. 优先识别章节标题（第N章 / 第N回 / Chapter N）
2. 无章节标记时按大小切分，尽量在段落或句子边界断开
3. 过长的章节再次按大小细分
"""
import logging
import re
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)


@dataclass
class TextChunk:
    """文本块 - 代表小说的一个章节或片段"""
    chapter_number: int
    chapter_title: Optional[str]
    content: str
    start_position: int
    end_position: int
    word_count: int = 0
    parent_chapter: Optional[str] = None

    def __post_init__(self):
        if self.word_count == 0:
            self.word_count = len(self.content)


class NovelReader:
    """小说阅读器 - 负责读取和切分小说文本"""

    # 章节标题必须独占一行的开头
    CHAPTER_PATTERNS = [
        r'^[ \t　]*第\s*([零〇一二两三四五六七八九十百千万\d]+)\s*[章回节集][^\n]*',
        r'^[ \t]*(?:Chapter|CHAPTER)\s+(\d+)[^\n]*',
    ]

    CHINESE_DIGITS = {
        '零': 0, '〇': 0, '一': 1, '二': 2, '两': 2, '三': 3, '四': 4,
        '五': 5, '六': 6, '七': 7, '八': 8, '九': 9
    }
    CHINESE_UNITS = {'十': 10, '百': 100, '千': 1000, '万': 10000}

    SENTENCE_ENDERS = ['。', '！', '？', '…', '.', '!', '?']

    def __init__(self, max_chunk_size: int = 8000, overlap_size: int = 200,
                 min_chunk_size: Optional[int] = None):
        """
        初始化小说阅读器

        Args:
            max_chunk_size: 每个块的最大字符数（考虑 Token 限制）
            overlap_size: 按大小切分时块之间重叠的字符数
            min_chunk_size: 边界搜索时块的最小长度，默认为 max_chunk_size 的一半
        """
        self.max_chunk_size = max_chunk_size
        self.overlap_size = min(overlap_size, max_chunk_size // 4)
        self.min_chunk_size = min_chunk_size if min_chunk_size is not None else max_chunk_size // 2
        self.chunks: List[TextChunk] = []

    def read_file(self, file_path: str) -> str:
        """读取小说文件，自动检测编码"""
        encodings = ['utf-8', 'gbk', 'gb18030', 'big5']

        for encoding in encodings:
            try:
                with open(file_path, 'r', encoding=encoding) as f:
                    return f.read()
            except UnicodeDecodeError:
                continue

        logger.warning("[WARN] 无法识别文件编码，按 utf-8 忽略错误读取: %s", file_path)
        with open(file_path, 'r', encoding='utf-8', errors='ignore') as f:
            return f.read()

    def _chinese_to_int(self, s: str) -> int:
        """将中文数字转换为整数（支持 十二 / 二十 / 一百零五 等）"""
        if not s:
            return 0
        if s.isdigit():
            return int(s)

        total = 0
        section = 0
        number = 0
        for char in s:
            if char in self.CHINESE_DIGITS:
                number = self.CHINESE_DIGITS[char]
            elif char == '万':
                section = (section + number) * 10000
                total += section
                section = 0
                number = 0
            elif char in self.CHINESE_UNITS:
                section += (number or 1) * self.CHINESE_UNITS[char]
                number = 0
            else:
                break
        result = total + section + number
        return result if result > 0 else 1

    @staticmethod
    def _clean_title(heading: str) -> str:
        match = re.search(r'[:：]\s*(.+)$', heading)
        if match:
            return match.group(1).strip()
        return heading.strip()

    def split_by_chapters(self, text: str) -> List[TextChunk]:
        """
        按章节切分小说文本，找不到章节标记时按大小切分

        Args:
            text: 完整的小说文本

        Returns:
            按章节切分的文本块列表
        """
        positions = []
        for pattern in self.CHAPTER_PATTERNS:
            for match in re.finditer(pattern, text, re.MULTILINE):
                positions.append((match.start(), match.end(), self._chinese_to_int(match.group(1)),
                                  match.group().strip()))
        positions.sort(key=lambda x: x[0])

        # 同一标题可能被多个模式命中
        unique = []
        for item in positions:
            if unique and item[0] < unique[-1][1]:
                continue
            unique.append(item)

        if not unique:
            self.chunks = self._split_by_size(text)
            return self.chunks

        self.chunks = []
        for i, (pos, _, chapter_num, heading) in enumerate(unique):
            end_pos = unique[i + 1][0] if i + 1 < len(unique) else len(text)
            content = text[pos:end_pos].strip()
            self.chunks.append(TextChunk(
                chapter_number=chapter_num,
                chapter_title=self._clean_title(heading),
                content=content,
                start_position=pos,
                end_position=end_pos,
                word_count=len(content)
            ))
        return self.chunks

    def _find_break(self, text: str, start: int, end: int) -> int:
        """在 [start, end) 的后半段寻找段落或句子边界，找不到返回 end"""
        floor = start + self.min_chunk_size
        window = text[floor:end]

        paragraph = window.rfind('\n\n')
        if paragraph >= 0:
            return floor + paragraph + 2

        best = -1
        for ender in self.SENTENCE_ENDERS:
            best = max(best, window.rfind(ender))
        if best >= 0:
            return floor + best + 1

        newline = window.rfind('\n')
        if newline >= 0:
            return floor + newline + 1
        return end

    def _split_by_size(self, text: str, base_number: int = 1,
                       title_prefix: Optional[str] = None) -> List[TextChunk]:
        """当无法识别章节时，按固定大小切分"""
        chunks = []
        start = 0
        number = base_number

        while start < len(text):
            end = min(start + self.max_chunk_size, len(text))
            if end < len(text):
                end = self._find_break(text, start, end)

            content = text[start:end].strip()
            if content:
                title = f"{title_prefix} ({number - base_number + 1})" if title_prefix else f"第{number}部分"
                chunks.append(TextChunk(
                    chapter_number=number,
                    chapter_title=title,
                    content=content,
                    start_position=start,
                    end_position=end,
                    word_count=len(content),
                    parent_chapter=title_prefix
                ))
                number += 1

            if end >= len(text):
                break
            start = max(end - self.overlap_size, start + 1)

        return chunks

    def smart_chunk(self, text: str) -> List[TextChunk]:
        """先按章节切分，再把超长章节按大小细分"""
        result = []
        for chapter in self.split_by_chapters(text):
            if chapter.word_count <= self.max_chunk_size:
                result.append(chapter)
                continue
            for sub in self._split_by_size(chapter.content, base_number=chapter.chapter_number,
                                           title_prefix=chapter.chapter_title):
                sub.chapter_number = chapter.chapter_number
                sub.start_position += chapter.start_position
                sub.end_position += chapter.start_position
                result.append(sub)
        self.chunks = result
        return result

    def get_context_window(self, chunk_index: int, include_previous: int = 1) -> str:
        """获取包含前文块的文本窗口"""
        if not self.chunks:
            return ""
        start_idx = max(0, chunk_index - include_previous)
        return "\n\n".join(c.content for c in self.chunks[start_idx:chunk_index + 1])


def smart_chunk_text(text: str, max_chunk_size: int = 8000) -> List[TextChunk]:
    """快捷函数：智能分块"""
    return NovelReader(max_chunk_size=max_chunk_size).smart_chunk(text)
