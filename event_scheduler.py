# -*- coding: utf-8 -*-
"""事件依赖调度器

把故事圣经中的事件分配到各集：
1. 按 dependsOn 做拓扑排序（带循环检测），失败则保留原始顺序
2. 承重事件均匀铺满全部集数
3. 其余事件优先跟随相关事件所在的集，超出上限时放到最空的集
4. 事件数不足下限的集从最满的集借调非承重事件

排序有效时，每个事件只会放在所有已放置祖先之后、所有已放置后代之前，
因此依赖事件所在的集序号不会大于被依赖方。
"""
import logging
from typing import List, Optional, Set

from models import Event

logger = logging.getLogger(__name__)


class EventScheduler:
    """事件到分集的调度器"""

    def __init__(self, max_events_per_episode: int = 3, min_events_per_episode: int = 1):
        self.max_events_per_episode = max_events_per_episode
        self.min_events_per_episode = min_events_per_episode
        self.has_cycle = False
        self.used_original_order = False

    # ==================== 集数计算 ====================

    @staticmethod
    def calculate_episode_count(events: List[Event]) -> int:
        """集数 = ceil(承重事件数 × 1.3)，限制在 [3, 20]，再保证不少于 ceil(总事件数 / 2.5)"""
        load_bearing = sum(1 for e in events if e.is_load_bearing)
        count = -(-load_bearing * 13 // 10)
        count = min(max(count, 3), 20)
        if events:
            count = max(count, -(-len(events) * 2 // 5))
        return count

    # ==================== 拓扑排序 ====================

    def topological_sort(self, events: List[Event]) -> List[Event]:
        """按 dependsOn 深度优先排序；出现循环或结果数量不一致时返回原始顺序"""
        self.has_cycle = False
        self.used_original_order = False

        by_id = {}
        for event in events:
            by_id.setdefault(event.id, event)

        visited: Set[str] = set()
        visiting: Set[str] = set()
        ordered: List[Event] = []

        for root in events:
            if root.id in visited:
                continue
            visiting.add(root.id)
            stack = [(root, iter(root.depends_on))]
            while stack:
                node, deps = stack[-1]
                pushed = False
                for dep_id in deps:
                    dep = by_id.get(dep_id)
                    if dep is None or dep_id in visited:
                        continue
                    if dep_id in visiting:
                        path = [n.id for n, _ in stack] + [dep_id]
                        logger.warning("[Scheduler] 检测到循环依赖: %s", " → ".join(path))
                        self.has_cycle = True
                        continue
                    visiting.add(dep_id)
                    stack.append((dep, iter(dep.depends_on)))
                    pushed = True
                    break
                if not pushed:
                    stack.pop()
                    visiting.discard(node.id)
                    visited.add(node.id)
                    ordered.append(node)

        if self.has_cycle:
            logger.warning("[Scheduler] 存在循环依赖，使用原始事件顺序")
            self.used_original_order = True
            return list(events)
        if len(ordered) != len(events):
            logger.warning("[Scheduler] 排序结果不完整: %d/%d，使用原始顺序", len(ordered), len(events))
            self.used_original_order = True
            return list(events)
        return ordered

    # ==================== 事件分配 ====================

    def schedule_events(self, events: List[Event], episode_count: Optional[int] = None) -> List[List[Event]]:
        """
        把事件划分到 episode_count 集

        Returns:
            长度为 episode_count 的列表，每个事件恰好出现一次
        """
        if episode_count is None:
            episode_count = self.calculate_episode_count(events)
        if episode_count < 1:
            raise ValueError(f"集数必须 ≥ 1，实际为 {episode_count}")

        ordered = self.topological_sort(events)
        causal = not self.used_original_order
        ancestors, descendants = self._closures(ordered) if causal else ([], [])

        slots: List[List[int]] = [[] for _ in range(episode_count)]
        slot_of = {}

        def place(index: int, slot: int) -> None:
            slots[slot].append(index)
            slot_of[index] = slot

        def window(index: int) -> range:
            if not causal:
                return range(episode_count)
            low = max((slot_of[a] for a in ancestors[index] if a in slot_of), default=0)
            high = min((slot_of[d] for d in descendants[index] if d in slot_of), default=episode_count - 1)
            return range(low, high + 1)

        # 承重事件按顺序均匀铺开
        load_bearing = [i for i, e in enumerate(ordered) if e.is_load_bearing]
        for position, index in enumerate(load_bearing):
            slot = min(position * episode_count // len(load_bearing), episode_count - 1)
            allowed = window(index)
            place(index, min(max(slot, allowed.start), allowed.stop - 1))

        for index, event in enumerate(ordered):
            if event.is_load_bearing:
                continue
            allowed = window(index)
            related = self._find_related_slot(event, ordered, slot_of)
            if (related is not None and related in allowed
                    and len(slots[related]) < self.max_events_per_episode):
                place(index, related)
            else:
                # 并列时取序号最小的集
                place(index, min(allowed, key=lambda s: len(slots[s])))

        self._rebalance(ordered, slots, slot_of, window)

        return [[ordered[i] for i in sorted(slot)] for slot in slots]

    @staticmethod
    def _find_related_slot(event: Event, ordered: List[Event], slot_of: dict) -> Optional[int]:
        """dependsOn 命中则放在同一集；enables 命中则放在前一集"""
        placed = {}
        for index, slot in slot_of.items():
            placed.setdefault(ordered[index].id, slot)
        for dep_id in event.depends_on:
            if dep_id in placed:
                return placed[dep_id]
        for enabled_id in event.enables:
            if enabled_id in placed:
                return max(0, placed[enabled_id] - 1)
        return None

    @staticmethod
    def _closures(ordered: List[Event]):
        """计算每个事件的全部祖先与后代（按下标），要求 ordered 已是拓扑序"""
        position = {e.id: i for i, e in enumerate(ordered)}
        parents = [
            {position[d] for d in e.depends_on if d in position and position[d] != i}
            for i, e in enumerate(ordered)
        ]
        ancestors: List[Set[int]] = []
        for i in range(len(ordered)):
            closure = set(parents[i])
            for p in parents[i]:
                closure |= ancestors[p]
            ancestors.append(closure)

        descendants: List[Set[int]] = [set() for _ in ordered]
        for i, closure in enumerate(ancestors):
            for a in closure:
                descendants[a].add(i)
        return ancestors, descendants

    def _rebalance(self, ordered: List[Event], slots: List[List[int]], slot_of: dict, window) -> None:
        """事件不足下限的集从最满的集借调非承重事件（不破坏因果窗口）"""
        minimum = self.min_events_per_episode
        if minimum <= 0:
            return
        for target in range(len(slots)):
            while len(slots[target]) < minimum:
                donors = sorted(
                    (s for s in range(len(slots)) if s != target and len(slots[s]) > minimum),
                    key=lambda s: (-len(slots[s]), s)
                )
                moved = False
                for donor in donors:
                    for index in reversed(list(slots[donor])):
                        if ordered[index].is_load_bearing or target not in window(index):
                            continue
                        slots[donor].remove(index)
                        slots[target].append(index)
                        slot_of[index] = target
                        moved = True
                        break
                    if moved:
                        break
                if not moved:
                    break
