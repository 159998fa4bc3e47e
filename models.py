"""核心数据结构定义

故事圣经、分集架构、剧本片段、分镜片段与锚点的实体。
所有实体都提供 from_dict / to_dict，任务状态以 camelCase JSON 保存。
"""
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Dict, Any


class EventType(str, Enum):
    """事件类型"""
    LOAD_BEARING = "load_bearing"
    REINFORCING = "reinforcing"
    DECORATIVE = "decorative"

    @classmethod
    def parse(cls, value: Any) -> "EventType":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.REINFORCING


class CharacterRole(str, Enum):
    """角色定位"""
    PROTAGONIST = "protagonist"
    ANTAGONIST = "antagonist"
    ALLY = "ally"
    SUPPORTING = "supporting"

    @classmethod
    def parse(cls, value: Any) -> "CharacterRole":
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.SUPPORTING


class AnchorType(str, Enum):
    """锚点类型"""
    CHAR = "char"
    LOC = "loc"
    PROP = "prop"


def _pick(data: Dict[str, Any], *keys: str, default: Any = None) -> Any:
    """按顺序取第一个存在的键（兼容 camelCase 与 snake_case）"""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _str_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value if v is not None and str(v) != ""]


@dataclass
class Character:
    """小说人物实体"""
    id: str
    name: str
    role: CharacterRole = CharacterRole.SUPPORTING
    archetype: Optional[str] = None
    traits: List[str] = field(default_factory=list)
    description: str = ""
    desires: str = ""
    fears: str = ""
    appearance: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> "Character":
        name = str(_pick(data, "name", default="")) or f"角色{index + 1}"
        return cls(
            id=str(_pick(data, "id", default=f"C{index + 1:02d}")),
            name=name,
            role=CharacterRole.parse(_pick(data, "role", default="supporting")),
            archetype=_pick(data, "archetype"),
            traits=_str_list(_pick(data, "traits")),
            description=str(_pick(data, "description", default="")),
            desires=str(_pick(data, "desires", default="")),
            fears=str(_pick(data, "fears", default="")),
            appearance=_pick(data, "appearance")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id, "name": self.name, "role": self.role.value,
            "archetype": self.archetype, "traits": list(self.traits),
            "description": self.description, "desires": self.desires,
            "fears": self.fears, "appearance": self.appearance
        }


@dataclass
class Event:
    """叙事事件实体

    depends_on / enables 只应引用同一事件集合中的 id，
    悬空引用在调度时视为不存在。
    """
    id: str
    summary: str
    type: EventType = EventType.REINFORCING
    depends_on: List[str] = field(default_factory=list)
    enables: List[str] = field(default_factory=list)
    beat_potential: List[str] = field(default_factory=list)
    description: Optional[str] = None
    characters: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)

    @property
    def is_load_bearing(self) -> bool:
        return self.type == EventType.LOAD_BEARING

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> "Event":
        return cls(
            id=str(_pick(data, "id", default=f"E{index + 1:02d}")),
            summary=str(_pick(data, "summary", "description", default="")),
            type=EventType.parse(_pick(data, "type", default="reinforcing")),
            depends_on=_str_list(_pick(data, "dependsOn", "depends_on")),
            enables=_str_list(_pick(data, "enables")),
            beat_potential=_str_list(_pick(data, "beatPotential", "beat_potential")),
            description=_pick(data, "description"),
            characters=_str_list(_pick(data, "characters", "character_ids")),
            keywords=_str_list(_pick(data, "keywords"))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id, "summary": self.summary, "type": self.type.value,
            "dependsOn": list(self.depends_on), "enables": list(self.enables),
            "beatPotential": list(self.beat_potential),
            "description": self.description,
            "characters": list(self.characters),
            "keywords": list(self.keywords)
        }


@dataclass
class BeatAssignment:
    """爽点地图中某一位置的爽点分配"""
    type: str
    hook_description: str = ""
    four_steps: Optional[Dict[str, Any]] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BeatAssignment":
        return cls(
            type=str(_pick(data, "type", default="info")),
            hook_description=str(_pick(data, "hookDescription", "hook_description", default="")),
            four_steps=_pick(data, "fourSteps", "four_steps")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "hookDescription": self.hook_description,
            "fourSteps": self.four_steps
        }


@dataclass
class Episode:
    """分集架构中的单集"""
    number: int
    assigned_events: List[str] = field(default_factory=list)
    beat_map: Dict[str, Optional[BeatAssignment]] = field(default_factory=dict)
    title: str = ""
    logline: str = ""
    emotional_arc: str = ""
    key_characters: List[str] = field(default_factory=list)
    estimated_duration: int = 90

    def __post_init__(self):
        if self.number < 1:
            raise ValueError(f"集数必须 ≥ 1，实际为 {self.number}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Episode":
        raw_map = _pick(data, "beatMap", "beat_map", default={}) or {}
        beat_map = {
            position: BeatAssignment.from_dict(beat) if isinstance(beat, dict) else None
            for position, beat in raw_map.items()
        }
        return cls(
            number=int(_pick(data, "number", default=1)),
            assigned_events=_str_list(_pick(data, "assignedEvents", "assigned_events")),
            beat_map=beat_map,
            title=str(_pick(data, "title", default="")),
            logline=str(_pick(data, "logline", default="")),
            emotional_arc=str(_pick(data, "emotionalArc", "emotional_arc", default="")),
            key_characters=_str_list(_pick(data, "keyCharacters", "key_characters")),
            estimated_duration=int(_pick(data, "estimatedDuration", "estimated_duration", default=90))
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "number": self.number,
            "title": self.title,
            "logline": self.logline,
            "assignedEvents": list(self.assigned_events),
            "beatMap": {
                position: beat.to_dict() if beat else None
                for position, beat in self.beat_map.items()
            },
            "emotionalArc": self.emotional_arc,
            "keyCharacters": list(self.key_characters),
            "estimatedDuration": self.estimated_duration
        }


@dataclass
class TimeCode:
    """片段时间码（秒）"""
    start: float = 0
    end: float = 0

    @property
    def duration(self) -> float:
        return self.end - self.start

    def to_dict(self) -> Dict[str, Any]:
        return {"start": self.start, "end": self.end}


@dataclass
class ClipPrompt:
    """5D 框架视觉提示词"""
    d1_subject: str = ""
    d2_environment: str = ""
    d3_material: str = ""
    d4_camera: str = ""
    d5_mood: str = ""
    combined: str = ""
    negative: str = ""
    chinese: str = ""
    source: str = "template"  # llm / cache / template

    FIELDS = ("d1_subject", "d2_environment", "d3_material", "d4_camera", "d5_mood")

    def five_d(self) -> Dict[str, str]:
        return {name: getattr(self, name) for name in self.FIELDS}

    def to_dict(self) -> Dict[str, Any]:
        data = self.five_d()
        data.update({
            "combined": self.combined,
            "negative": self.negative,
            "chinese": self.chinese,
            "source": self.source
        })
        return data


_DIALOGUE_LINE = re.compile(r"^\s*([^：:\"“]{1,20})[：:]\s*(.+)$")


def parse_dialogue(value: Any) -> List[Dict[str, str]]:
    """把对白统一为 [{"speaker", "line"}]，兼容 "林：台词" 字符串格式"""
    if not value:
        return []
    items = value if isinstance(value, list) else [value]
    result = []
    for item in items:
        if isinstance(item, dict):
            speaker = _pick(item, "speaker", "character", "character_id", "name", default="")
            line = _pick(item, "line", "text", "content", default="")
            result.append({"speaker": str(speaker).strip(), "line": str(line).strip()})
            continue
        for raw_line in str(item).splitlines():
            if not raw_line.strip():
                continue
            match = _DIALOGUE_LINE.match(raw_line)
            if match:
                result.append({"speaker": match.group(1).strip(), "line": match.group(2).strip()})
            else:
                result.append({"speaker": "", "line": raw_line.strip()})
    return result


@dataclass
class Clip:
    """分镜片段（剧本片段经过时长决策与提示词合成后的结果）"""
    id: str
    segment_name: str = ""
    time_code: TimeCode = field(default_factory=TimeCode)
    narration: str = ""
    visual: str = ""
    emotion: str = ""
    dialogue: List[Dict[str, str]] = field(default_factory=list)
    beat_type: Optional[str] = None
    prompt: Optional[ClipPrompt] = None
    fallback: bool = False

    @property
    def duration(self) -> float:
        return self.time_code.duration

    @property
    def speakers(self) -> List[str]:
        return [d["speaker"] for d in self.dialogue if d.get("speaker")]

    @classmethod
    def from_dict(cls, data: Dict[str, Any], index: int = 0) -> "Clip":
        raw_time = _pick(data, "timeCode", "time_code", "duration", default={}) or {}
        if isinstance(raw_time, dict):
            start = float(_pick(raw_time, "start", default=0))
            end = float(_pick(raw_time, "end", default=start))
        else:
            start, end = 0.0, float(raw_time)
        return cls(
            id=str(_pick(data, "id", default=f"V{index + 1:02d}")),
            segment_name=str(_pick(data, "segmentName", "segment_name", "name", "title", default="")),
            time_code=TimeCode(start=start, end=end),
            narration=str(_pick(data, "narration", default="")),
            visual=str(_pick(data, "visual", "description", default="")),
            emotion=str(_pick(data, "emotion", default="")),
            dialogue=parse_dialogue(_pick(data, "dialogue", "dialogues")),
            beat_type=_pick(data, "beatType", "beat_type", "beat")
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "segmentName": self.segment_name,
            "timeCode": self.time_code.to_dict(),
            "narration": self.narration,
            "dialogue": [dict(d) for d in self.dialogue],
            "visual": self.visual,
            "emotion": self.emotion,
            "beatType": self.beat_type,
            "prompt": self.prompt.to_dict() if self.prompt else None
        }
        if self.fallback:
            data["fallback"] = True
        return data


@dataclass
class Anchor:
    """跨片段一致性锚点"""
    type: AnchorType
    name: str
    token: str = ""

    def __post_init__(self):
        if not self.token:
            self.token = self.make_token(self.type, self.name)

    @property
    def key(self) -> str:
        return f"{self.type.value}:{self.name}"

    @staticmethod
    def make_token(anchor_type: AnchorType, name: str) -> str:
        safe_name = re.sub(r"\s+", "_", name.strip())
        return f"{{@{anchor_type.value}_{safe_name}}}"

    def to_dict(self) -> Dict[str, str]:
        return {"type": self.type.value, "name": self.name, "token": self.token}


@dataclass
class StoryBible:
    """故事圣经"""
    title: str
    characters: List[Character] = field(default_factory=list)
    events: List[Event] = field(default_factory=list)
    turning_points: List[Dict[str, Any]] = field(default_factory=list)
    main_theme: str = ""
    tone_keywords: List[str] = field(default_factory=list)
    world_info: Dict[str, Any] = field(default_factory=dict)
    estimated_episodes: Optional[int] = None
    event_chains: List[Dict[str, Any]] = field(default_factory=list)
    parse_error: bool = False
    fallback: bool = False
    error: Optional[str] = None

    def find_event(self, event_id: str) -> Optional[Event]:
        for event in self.events:
            if event.id == event_id:
                return event
        return None

    def find_character(self, character_id: str) -> Optional[Character]:
        for character in self.characters:
            if character.id == character_id:
                return character
        return None

    @property
    def protagonist(self) -> Optional[Character]:
        for character in self.characters:
            if character.role == CharacterRole.PROTAGONIST:
                return character
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StoryBible":
        estimated = _pick(data, "estimatedEpisodes", "estimated_episodes")
        try:
            estimated = int(estimated) if estimated is not None else None
        except (TypeError, ValueError):
            estimated = None
        return cls(
            title=str(_pick(data, "title", default="未命名")),
            characters=[Character.from_dict(c, i) for i, c in enumerate(_pick(data, "characters", default=[]))
                        if isinstance(c, dict)],
            events=[Event.from_dict(e, i) for i, e in enumerate(_pick(data, "events", default=[]))
                    if isinstance(e, dict)],
            turning_points=list(_pick(data, "turningPoints", "turning_points", default=[])),
            main_theme=str(_pick(data, "mainTheme", "main_theme", default="")),
            tone_keywords=_str_list(_pick(data, "toneKeywords", "tone_keywords")),
            world_info=dict(_pick(data, "worldInfo", "world_info", default={}) or {}),
            estimated_episodes=estimated,
            event_chains=list(_pick(data, "_eventChains", "eventChains", default=[])),
            parse_error=bool(_pick(data, "_parseError", "parseError", default=False)),
            fallback=bool(_pick(data, "_fallback", "fallback", default=False)),
            error=_pick(data, "_error", "error")
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "title": self.title,
            "characters": [c.to_dict() for c in self.characters],
            "events": [e.to_dict() for e in self.events],
            "turningPoints": list(self.turning_points),
            "mainTheme": self.main_theme,
            "toneKeywords": list(self.tone_keywords),
            "worldInfo": dict(self.world_info),
            "estimatedEpisodes": self.estimated_episodes,
            "_eventChains": list(self.event_chains)
        }
        if self.parse_error:
            data["_parseError"] = True
        if self.fallback:
            data["_fallback"] = True
            data["_error"] = self.error
        return data


@dataclass
class Architecture:
    """分集架构：所有事件恰好分配到一集"""
    total_episodes: int
    episodes: List[Episode] = field(default_factory=list)
    formula: str = ""
    overview: Dict[str, Any] = field(default_factory=dict)
    arcs: Dict[str, Any] = field(default_factory=dict)
    beat_distribution: Dict[str, int] = field(default_factory=dict)
    rhythm_template: str = "standard_90"
    source: str = "algorithm"  # llm / algorithm
    has_cycle: bool = False
    generated_at: Optional[str] = None

    def find_episode(self, number: int) -> Optional[Episode]:
        for episode in self.episodes:
            if episode.number == number:
                return episode
        return None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Architecture":
        episodes = [Episode.from_dict(ep) for ep in _pick(data, "episodes", default=[]) if isinstance(ep, dict)]
        return cls(
            total_episodes=int(_pick(data, "totalEpisodes", "total_episodes", default=len(episodes))),
            episodes=episodes,
            formula=str(_pick(data, "formula", default="")),
            overview=dict(_pick(data, "overview", default={}) or {}),
            arcs=dict(_pick(data, "arcs", default={}) or {}),
            beat_distribution=dict(_pick(data, "beatDistribution", "beat_distribution", default={}) or {}),
            rhythm_template=str(_pick(data, "rhythmTemplate", "rhythm_template", default="standard_90")),
            source=str(_pick(data, "source", default="algorithm")),
            has_cycle=bool(_pick(data, "hasCycle", "has_cycle", default=False)),
            generated_at=_pick(data, "generatedAt", "generated_at")
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalEpisodes": self.total_episodes,
            "formula": self.formula,
            "overview": self.overview,
            "episodes": [ep.to_dict() for ep in self.episodes],
            "arcs": self.arcs,
            "beatDistribution": dict(self.beat_distribution),
            "rhythmTemplate": self.rhythm_template,
            "source": self.source,
            "hasCycle": self.has_cycle,
            "generatedAt": self.generated_at
        }
