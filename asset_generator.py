# -*- coding: utf-8 -*-
"""Phase 5: 资产设定图提示词

角色（肖像 / 全身 / 动作 / 表情 + 四视图 + 表情参考）、场景、道具。
场景与道具优先由 LLM 从故事圣经中提取，失败时用关键词提取；
每个资产的 LLM 增强失败时回退到模板（fallback: true）。
"""
import json
import logging
import re
import time
from datetime import datetime
from typing import List, Optional, Dict, Any, Tuple

from models import Anchor, AnchorType, Character, StoryBible
from llm_client import LLMClient, MockLLMClient
from json_parser import TolerantJSONParser
from presets import get_style_preset, pick_imperfections

logger = logging.getLogger(__name__)

MAX_PROPS = 8
MAX_LOCATIONS = 6
DEFAULT_PROPS = ("信件", "钥匙", "放大镜")

PROP_KEYWORDS = (
    "剑", "枪", "刀", "武器", "匕首", "凶器",
    "手机", "电话", "信件", "信封",
    "钥匙", "汽车", "马车",
    "日记", "笔记本", "书籍",
    "戒指", "项链", "手表", "怀表", "玉佩", "珠宝",
    "药瓶", "毒药", "药",
    "金币", "钞票", "合同", "支票",
    "照片", "画像",
    "蜡烛", "油灯",
    "镜子", "血迹", "指纹", "证据", "文件",
    "放大镜", "显微镜",
)

LOCATION_PATTERNS: Tuple[Tuple[str, str], ...] = (
    (r"图书馆|书馆|书房|藏书", "图书馆/书房"),
    (r"街道|马路|巷|街头", "街道"),
    (r"公寓|房间|卧室|起居室", "公寓/房间"),
    (r"酒吧|酒馆|咖啡|茶馆", "酒吧/茶馆"),
    (r"办公室|事务所|公司|会议室", "办公室"),
    (r"宴会|晚宴|宴席", "宴会厅"),
    (r"森林|树林", "森林"),
    (r"海边|海滩|港口|码头", "海边/港口"),
    (r"山顶|山谷|山洞", "山区"),
    (r"医院|诊所|医务室", "医院/诊所"),
    (r"学校|大学|教室|校园", "学校/校园"),
    (r"宫殿|大殿|皇宫|朝堂", "宫殿"),
    (r"监狱|牢房|拘留所", "监狱"),
    (r"餐厅|饭馆|厨房", "餐厅/厨房"),
    (r"花园|公园|庭院", "花园/庭院"),
    (r"地下室|阁楼|屋顶|天台", "地下室/天台"),
    (r"凶案|现场|命案", "案发现场"),
)

TONE_LOCATIONS = {
    "古典": "古典建筑",
    "哥特": "哥特式建筑",
    "恐怖": "阴暗场景",
    "悬疑": "神秘场所",
}

ARCHETYPE_VISUAL_TRAITS = {
    "underdog": "humble appearance, determined eyes, resilient posture",
    "hidden_identity": "mysterious aura, composed expression, subtle confidence",
    "gray": "complex expression, morally ambiguous vibe, sharp features",
    "oppressor": "intimidating presence, arrogant posture, commanding aura",
    "wildcard": "unpredictable energy, mischievous smile, dynamic pose",
    "ally": "warm expression, trustworthy appearance, supportive posture",
}

EXPRESSION_TYPES = (
    ("neutral", "中性/平静", "neutral calm expression"),
    ("happy", "喜悦", "happy smiling expression"),
    ("sad", "悲伤", "sad melancholic expression"),
    ("angry", "愤怒", "angry furious expression"),
    ("surprised", "惊讶", "surprised shocked expression"),
    ("fearful", "恐惧", "fearful scared expression"),
)

TURNAROUND_VIEWS = (
    ("front", "正面", "front view facing camera, symmetrical pose"),
    ("side", "侧面", "side view profile facing left"),
    ("back", "背面", "back view from behind"),
    ("three_quarter", "四分之三", "three-quarter view, 45 degree angle"),
)


# ==================== Prompt 模板 ====================

EXTRACT_PROMPT = """你是一个专业的资产提取助手。请从以下故事信息中提取出重要的场景和道具。

## 故事标题
{title}

## 故事主题
{theme}

## 主要角色
{characters}

## 主要事件
{events}

## 输出格式（纯JSON，无代码块）
{{
  "scenes": [{{"name": "场景名称", "description": "场景描述", "atmosphere": "氛围"}}],
  "props": [{{"name": "道具名称", "description": "道具描述", "type": "道具类型"}}]
}}
场景 3-6 个，道具 3-8 个，只提取故事中明确提及或暗示的内容。"""

CHARACTER_PROMPT = """为以下角色生成设定图提示词（英文）：

## 角色信息
{character}

## 风格要求
{style_name}: {modifiers}

## 输出要求
返回 JSON：
{{
  "basePrompt": "基础角色描述",
  "variations": {{
    "portrait": {{"prompt": "肖像特写提示词"}},
    "fullBody": {{"prompt": "全身立绘提示词"}},
    "action": {{"prompt": "动态姿势提示词"}},
    "expression": {{"prompt": "表情集提示词"}}
  }},
  "colorPalette": {{"primary": "主色", "secondary": "辅色", "accent": "强调色"}},
  "keyFeatures": ["关键特征"]
}}"""

SCENE_PROMPT = """为以下场景生成参考图提示词（英文）：

名称: {name}
描述: {description}
氛围: {atmosphere}
风格: {style_name}: {modifiers}

返回 JSON：
{{
  "basePrompt": "基础场景描述",
  "variations": {{
    "wide": {{"prompt": ""}}, "establishing": {{"prompt": ""}},
    "detail": {{"prompt": ""}}, "atmosphere": {{"prompt": ""}}
  }},
  "lighting": "光线描述",
  "mood": "氛围描述"
}}"""


class AssetGenerator:
    """资产提示词生成器"""

    def __init__(self, llm_client: Optional[LLMClient] = None, style: Optional[str] = None,
                 use_llm: bool = True, request_delay: float = 0.0):
        self.llm_client = llm_client or MockLLMClient()
        self.style = get_style_preset(style)
        self.use_llm = use_llm
        self.request_delay = request_delay
        self.parser = TolerantJSONParser()

    def generate_all_assets(self, bible: StoryBible) -> Dict[str, Any]:
        """从故事圣经生成全部资产"""
        logger.info("[Asset] 生成 %d 个角色资产...", len(bible.characters))
        characters = []
        for character in bible.characters:
            characters.append(self.generate_character_asset(character))
            self._pause()

        scenes, props = self.extract_assets_with_llm(bible) if self.use_llm else ([], [])
        if not scenes:
            scenes = self.extract_locations(bible)
        if not props:
            props = self.extract_props(bible)

        logger.info("[Asset] 生成 %d 个场景资产, %d 个道具资产", len(scenes), len(props))
        scene_assets = []
        for scene in scenes:
            scene_assets.append(self.generate_scene_asset(scene))
            self._pause()
        prop_assets = [self.generate_prop_asset(prop) for prop in props]

        return {
            "style": self.style.id,
            "characters": characters,
            "scenes": scene_assets,
            "props": prop_assets,
            "generatedAt": datetime.now().isoformat()
        }

    def _pause(self) -> None:
        if self.use_llm and self.request_delay:
            time.sleep(self.request_delay)

    def _ask(self, prompt: str, max_output_tokens: int = 2048) -> Optional[Dict[str, Any]]:
        """调用 LLM 并解析为 dict，失败返回 None"""
        try:
            data = self.parser.parse(self.llm_client.generate(prompt, max_output_tokens=max_output_tokens))
        except Exception as e:
            logger.warning("[Asset] LLM 调用失败: %s", e)
            return None
        if isinstance(data, dict) and not data.get("_parseError"):
            return data
        return None

    # ==================== 角色 ====================

    def generate_character_asset(self, character: Character) -> Dict[str, Any]:
        """角色设定：LLM 增强或模板，附带四视图和表情参考"""
        asset = None
        if self.use_llm:
            data = self._ask(CHARACTER_PROMPT.format(
                character=json.dumps(character.to_dict(), ensure_ascii=False, indent=2),
                style_name=self.style.name,
                modifiers=", ".join(self.style.prompt_modifiers[:5])
            ), max_output_tokens=4096)
            if data and isinstance(data.get("variations"), dict):
                asset = self.enhance_character_asset(character, data)
            else:
                logger.warning("[Asset] 角色 %s 使用模板生成", character.name)
        if asset is None:
            asset = self.generate_character_from_template(character)

        asset["turnaround"] = self.generate_character_turnaround(character)
        asset["expressions"] = self.generate_character_expressions(character)
        return asset

    def enhance_character_asset(self, character: Character, data: Dict[str, Any]) -> Dict[str, Any]:
        token = Anchor(AnchorType.CHAR, character.name).token
        base = str(data.get("basePrompt") or self.build_character_base(character))
        if token not in base:
            base = f"{token} {base}"
        negative = self.build_character_negative()
        details = pick_imperfections(character.name, ("skin", "hair"))

        variations = {}
        for key, variation in data["variations"].items():
            if not isinstance(variation, dict):
                continue
            prompt = str(variation.get("prompt") or base)
            if token not in prompt:
                prompt = f"{token} {prompt}"
            variations[key] = {
                "description": variation.get("description", key),
                "prompt": ", ".join([prompt] + details),
                "negative": variation.get("negative") if len(variation.get("negative") or "") >= 50 else negative
            }

        return {
            "characterId": character.id,
            "characterName": character.name,
            "anchor": token,
            "basePrompt": base,
            "variations": variations,
            "colorPalette": data.get("colorPalette") or {},
            "keyFeatures": data.get("keyFeatures") or list(character.traits),
            "generatedAt": datetime.now().isoformat()
        }

    def build_character_base(self, character: Character) -> str:
        parts = [character.appearance or f"{character.name}, young adult"]
        if character.archetype:
            parts.append(ARCHETYPE_VISUAL_TRAITS.get(character.archetype, "distinctive character presence"))
        return ", ".join(parts)

    def generate_character_from_template(self, character: Character) -> Dict[str, Any]:
        token = Anchor(AnchorType.CHAR, character.name).token
        base = ", ".join([token, self.build_character_base(character)] + list(self.style.prompt_modifiers[:3]))
        details = ", ".join(pick_imperfections(character.name, ("skin", "hair")))
        negative = self.build_character_negative()

        shots = (
            ("portrait", "肖像特写", "close-up portrait, detailed face, looking at camera"),
            ("fullBody", "全身立绘", "full body standing, character sheet, white background"),
            ("action", "动态姿势", "dynamic action pose, motion blur, dramatic lighting"),
            ("expression", "表情集", "expression sheet, multiple expressions, character reference"),
        )
        return {
            "characterId": character.id,
            "characterName": character.name,
            "anchor": token,
            "basePrompt": base,
            "variations": {
                key: {"description": desc, "prompt": f"{base}, {shot}, {details}", "negative": negative}
                for key, desc, shot in shots
            },
            "colorPalette": {"primary": "待确定", "secondary": "待确定", "accent": "待确定"},
            "keyFeatures": list(character.traits),
            "fallback": True,
            "generatedAt": datetime.now().isoformat()
        }

    def build_character_negative(self) -> str:
        parts = list(self.style.negative_prompt) + [
            "multiple people", "crowd", "blurry", "low quality", "bad anatomy",
            "deformed", "extra limbs", "watermark", "signature"
        ]
        return ", ".join(dict.fromkeys(parts))

    def build_turnaround_negative(self) -> str:
        parts = [
            "inconsistent design", "different faces", "asymmetrical features", "deformed",
            "distorted", "blurry", "low quality", "bad anatomy", "extra limbs", "missing limbs",
            "different clothing", "different hair"
        ] + list(self.style.negative_prompt)
        return ", ".join(dict.fromkeys(parts))

    def generate_character_turnaround(self, character: Character) -> Dict[str, Any]:
        """四视图（正面 / 侧面 / 背面 / 四分之三）"""
        token = Anchor(AnchorType.CHAR, character.name).token
        base = f"{token} {self.build_character_base(character)}"
        modifiers = list(self.style.prompt_modifiers[:2])
        views = {
            key: {
                "angle": angle,
                "angleCn": angle_cn,
                "prompt": ", ".join([base, angle, "character turnaround sheet", "consistent design",
                                     "clean background", "full body"] + modifiers)
            }
            for key, angle_cn, angle in TURNAROUND_VIEWS
        }
        combined = ", ".join([
            base, "character turnaround sheet",
            "four views: front view, side view, back view, three-quarter view",
            "same character in all views", "white background", "reference sheet layout"
        ] + list(self.style.prompt_modifiers[:3]))
        return {
            "type": "character_turnaround",
            "characterId": character.id,
            "characterName": character.name,
            "archetype": character.archetype or "unknown",
            "views": views,
            "combinedPrompt": combined,
            "negativePrompt": self.build_turnaround_negative()
        }

    def generate_character_expressions(self, character: Character) -> Dict[str, Any]:
        """六种表情参考"""
        token = Anchor(AnchorType.CHAR, character.name).token
        base = f"{token} {self.build_character_base(character)}"
        modifiers = list(self.style.prompt_modifiers[:2])
        expressions = [{
            "id": expr_id,
            "name": name,
            "nameEn": name_en,
            "prompt": ", ".join([base, name_en, "face close-up portrait", "detailed facial features"] + modifiers)
        } for expr_id, name, name_en in EXPRESSION_TYPES]
        combined = ", ".join([
            base, "expression sheet",
            "expressions: " + ", ".join(name for _, name, _ in EXPRESSION_TYPES),
            "same character", "grid layout", "reference sheet"
        ] + list(self.style.prompt_modifiers[:3]))
        return {
            "type": "character_expression",
            "characterId": character.id,
            "characterName": character.name,
            "expressions": expressions,
            "combinedPrompt": combined,
            "negativePrompt": self.build_turnaround_negative()
        }

    # ==================== 场景与道具提取 ====================

    def extract_assets_with_llm(self, bible: StoryBible) -> Tuple[List[Dict[str, Any]], List[Dict[str, Any]]]:
        """LLM 提取场景和道具，失败返回空列表"""
        data = self._ask(EXTRACT_PROMPT.format(
            title=bible.title or "未命名",
            theme=bible.main_theme,
            characters="\n".join(f"- {c.name}: {', '.join(c.traits[:3])}" for c in bible.characters[:5]),
            events="\n".join(f"- {e.id}: {e.summary}" for e in bible.events[:20])
        ))
        if not data:
            return [], []

        scenes = [
            {"id": f"S{i + 1:02d}", "name": str(s.get("name")), "description": s.get("description", ""),
             "atmosphere": s.get("atmosphere", "")}
            for i, s in enumerate(x for x in data.get("scenes") or [] if isinstance(x, dict) and x.get("name"))
        ][:MAX_LOCATIONS]
        props = [
            {"id": f"P{i + 1:02d}", "name": str(p.get("name")), "description": p.get("description", ""),
             "type": p.get("type", "道具")}
            for i, p in enumerate(x for x in data.get("props") or [] if isinstance(x, dict) and x.get("name"))
        ][:MAX_PROPS]
        logger.info("[Asset] LLM 提取到 %d 个场景, %d 个道具", len(scenes), len(props))
        return scenes, props

    @staticmethod
    def extract_props(bible: StoryBible) -> List[Dict[str, Any]]:
        """关键词提取道具，不足 3 个时补默认道具"""
        props = []
        found = set()

        def add(name: str, description: str, importance: str) -> None:
            found.add(name)
            props.append({"id": f"P{len(props) + 1:02d}", "name": name, "description": description,
                          "type": "道具", "importance": importance})

        for event in bible.events:
            text = event.summary or ""
            for keyword in PROP_KEYWORDS:
                if keyword in text and keyword not in found:
                    add(keyword, f"来自事件: {text[:80]}", "普通")
        for character in bible.characters:
            text = " ".join(character.traits) + " " + character.description
            for keyword in PROP_KEYWORDS:
                if keyword in text and keyword not in found:
                    add(keyword, f"{character.name} 相关道具", "重要")

        if len(props) < 3:
            for name in DEFAULT_PROPS:
                if name not in found:
                    add(name, "故事相关道具", "普通")

        logger.info("[Asset] 提取到 %d 个道具", min(len(props), MAX_PROPS))
        return props[:MAX_PROPS]

    @staticmethod
    def extract_locations(bible: StoryBible) -> List[Dict[str, Any]]:
        """关键词提取场景，每个事件最多一个，找不到时给出主场景"""
        locations: Dict[str, Dict[str, Any]] = {}
        for event in bible.events:
            text = event.summary or ""
            for pattern, name in LOCATION_PATTERNS:
                if name not in locations and re.search(pattern, text):
                    locations[name] = {"id": f"S{len(locations) + 1:02d}", "name": name,
                                       "description": f"来自事件: {text[:80]}", "atmosphere": "悬疑"}
                    break

        for tone in bible.tone_keywords:
            name = TONE_LOCATIONS.get(tone)
            if name and name not in locations:
                locations[name] = {"id": f"S{len(locations) + 1:02d}", "name": name,
                                   "description": f"基于故事氛围: {tone}", "atmosphere": tone}

        if not locations:
            locations["主场景"] = {"id": "S01", "name": "主场景",
                                   "description": bible.title or "故事主场景", "atmosphere": "悬疑"}

        return list(locations.values())[:MAX_LOCATIONS]

    # ==================== 场景与道具资产 ====================

    def build_scene_negative(self) -> str:
        parts = list(self.style.negative_prompt) + [
            "people", "characters", "text", "watermark", "blurry", "low quality"
        ]
        return ", ".join(dict.fromkeys(parts))

    def generate_scene_asset(self, scene: Dict[str, Any]) -> Dict[str, Any]:
        if self.use_llm:
            data = self._ask(SCENE_PROMPT.format(
                name=scene["name"],
                description=scene.get("description") or "无",
                atmosphere=scene.get("atmosphere") or "中性",
                style_name=self.style.name,
                modifiers=", ".join(self.style.prompt_modifiers[:3])
            ))
            if data and isinstance(data.get("variations"), dict):
                return self.enhance_scene_asset(scene, data)
            logger.warning("[Asset] 场景 %s 使用模板生成", scene["name"])
        return self.generate_scene_from_template(scene)

    def enhance_scene_asset(self, scene: Dict[str, Any], data: Dict[str, Any]) -> Dict[str, Any]:
        token = Anchor(AnchorType.LOC, scene["name"]).token
        details = ", ".join(pick_imperfections(scene["name"], ("environment",)))
        negative = self.build_scene_negative()
        variations = {}
        for key, variation in data["variations"].items():
            if not isinstance(variation, dict) or not variation.get("prompt"):
                continue
            prompt = str(variation["prompt"])
            if token not in prompt:
                prompt = f"{token} {prompt}"
            variations[key] = {"prompt": f"{prompt}, {details}", "negative": variation.get("negative") or negative}
        return {
            "sceneId": scene.get("id", "S01"),
            "sceneName": scene["name"],
            "anchor": token,
            "basePrompt": data.get("basePrompt") or scene["name"],
            "variations": variations,
            "lighting": data.get("lighting", ""),
            "mood": data.get("mood") or scene.get("atmosphere") or "cinematic",
            "generatedAt": datetime.now().isoformat()
        }

    def generate_scene_from_template(self, scene: Dict[str, Any]) -> Dict[str, Any]:
        token = Anchor(AnchorType.LOC, scene["name"]).token
        lighting = self.style.lighting_examples[0]
        base = ", ".join([token, scene.get("description") or scene["name"], lighting]
                         + list(self.style.prompt_modifiers[:3]))
        details = ", ".join(pick_imperfections(scene["name"], ("environment",)))
        negative = self.build_scene_negative()
        shots = (
            ("wide", "wide establishing shot, panoramic view"),
            ("establishing", "establishing shot, environmental storytelling"),
            ("detail", "close-up detail, textural elements"),
            ("atmosphere", "atmospheric shot, mood lighting, dust particles in air"),
        )
        return {
            "sceneId": scene.get("id", "S01"),
            "sceneName": scene["name"],
            "anchor": token,
            "basePrompt": base,
            "variations": {key: {"prompt": f"{base}, {shot}, {details}", "negative": negative}
                           for key, shot in shots},
            "lighting": lighting,
            "mood": scene.get("atmosphere") or "cinematic",
            "fallback": True,
            "generatedAt": datetime.now().isoformat()
        }

    def generate_prop_asset(self, prop: Dict[str, Any]) -> Dict[str, Any]:
        """道具只用模板生成（主视图 / 细节 / 使用场景）"""
        token = Anchor(AnchorType.PROP, prop["name"]).token
        base = ", ".join([token, prop["name"], prop.get("description") or "detailed object",
                          "product photography style"] + list(self.style.prompt_modifiers[:2]))
        negative = "blurry, low quality, watermark"
        return {
            "propId": prop.get("id", "P01"),
            "propName": prop["name"],
            "anchor": token,
            "basePrompt": base,
            "views": {
                "main": {"prompt": f"{base}, front view, white background", "negative": negative},
                "detail": {"prompt": f"{base}, close-up detail, macro shot", "negative": negative},
                "context": {"prompt": f"{base}, in use, environmental context", "negative": negative},
            },
            "fallback": True,
            "generatedAt": datetime.now().isoformat()
        }
