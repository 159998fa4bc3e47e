# -*- coding: utf-8 -*-
"""事件依赖调度器的测试

验证完整性（每个事件恰好分配一次）、因果顺序、循环回退与集数计算。
"""
import pytest

from models import Event, EventType
from event_scheduler import EventScheduler


def make_chain(count, event_type=EventType.REINFORCING):
    """E01 → E02 → ... 的线性依赖链"""
    events = []
    for i in range(count):
        event_id = f"E{i + 1:02d}"
        depends = [f"E{i:02d}"] if i else []
        events.append(Event(event_id, f"事件{i + 1}", event_type, depends_on=depends))
    return events


def episode_index(assignments):
    return {event.id: index for index, events in enumerate(assignments) for event in events}


class TestEpisodeCount:
    """测试集数计算"""

    def test_load_bearing_times_1_3(self):
        events = [Event(f"E{i}", "x", EventType.LOAD_BEARING) for i in range(5)]
        assert EventScheduler.calculate_episode_count(events) == 7

    def test_minimum_three(self):
        assert EventScheduler.calculate_episode_count([]) == 3
        assert EventScheduler.calculate_episode_count([Event("E01", "x", EventType.LOAD_BEARING)]) == 3

    def test_maximum_twenty(self):
        events = [Event(f"E{i}", "x", EventType.LOAD_BEARING) for i in range(20)]
        assert EventScheduler.calculate_episode_count(events) == 20

    def test_enough_episodes_for_all_events(self):
        events = [Event(f"E{i}", "x") for i in range(10)]
        assert EventScheduler.calculate_episode_count(events) == 4


class TestTopologicalSort:
    """测试拓扑排序"""

    def test_dependencies_come_first(self):
        scheduler = EventScheduler()
        events = list(reversed(make_chain(4)))
        ordered = [e.id for e in scheduler.topological_sort(events)]
        assert ordered == ["E01", "E02", "E03", "E04"]
        assert not scheduler.has_cycle

    def test_unknown_dependency_ignored(self):
        scheduler = EventScheduler()
        events = [Event("E01", "x", depends_on=["E99"]), Event("E02", "y", depends_on=["E01"])]
        assert [e.id for e in scheduler.topological_sort(events)] == ["E01", "E02"]
        assert not scheduler.used_original_order

    def test_cycle_falls_back_to_original_order(self):
        scheduler = EventScheduler()
        events = [
            Event("E01", "a", depends_on=["E02"]),
            Event("E02", "b", depends_on=["E01"]),
            Event("E03", "c"),
        ]
        ordered = scheduler.topological_sort(events)
        assert scheduler.has_cycle
        assert scheduler.used_original_order
        assert ordered == events

    def test_self_dependency_is_cycle(self):
        scheduler = EventScheduler()
        scheduler.topological_sort([Event("E01", "a", depends_on=["E01"])])
        assert scheduler.has_cycle

    def test_duplicate_ids_fall_back(self):
        scheduler = EventScheduler()
        events = [Event("E01", "a"), Event("E01", "b")]
        assert scheduler.topological_sort(events) == events
        assert scheduler.used_original_order


class TestScheduleEvents:
    """测试事件分配"""

    def test_every_event_assigned_exactly_once(self):
        events = make_chain(6) + [Event(f"X{i}", "独立事件", EventType.DECORATIVE) for i in range(4)]
        assignments = EventScheduler().schedule_events(events, 4)
        assert len(assignments) == 4
        ids = sorted(e.id for episode in assignments for e in episode)
        assert ids == sorted(e.id for e in events)

    def test_dependencies_never_scheduled_later(self):
        events = make_chain(6)
        assignments = EventScheduler().schedule_events(events, 3)
        index = episode_index(assignments)
        for event in events:
            for dep in event.depends_on:
                assert index[dep] <= index[event.id]

    def test_chain_split_respects_max_per_episode(self):
        assignments = EventScheduler(max_events_per_episode=3).schedule_events(make_chain(6), 3)
        assert [[e.id for e in ep] for ep in assignments] == [
            ["E01", "E02", "E03"], ["E04", "E05"], ["E06"]
        ]

    def test_load_bearing_spread_evenly(self):
        events = [Event(f"E{i + 1:02d}", "主线", EventType.LOAD_BEARING) for i in range(3)]
        assignments = EventScheduler().schedule_events(events, 3)
        assert [[e.id for e in ep] for ep in assignments] == [["E01"], ["E02"], ["E03"]]

    def test_load_bearing_chain_keeps_order(self):
        events = make_chain(8, EventType.LOAD_BEARING)
        assignments = EventScheduler().schedule_events(events, 4)
        index = episode_index(assignments)
        assert [index[e.id] for e in events] == sorted(index[e.id] for e in events)
        assert all(assignments)

    def test_unrelated_events_fill_least_loaded_first(self):
        events = [Event(f"E{i + 1:02d}", "支线") for i in range(6)]
        assignments = EventScheduler().schedule_events(events, 3)
        assert [len(ep) for ep in assignments] == [2, 2, 2]
        assert [e.id for e in assignments[0]] == ["E01", "E04"]

    def test_rebalance_fills_empty_episodes(self):
        events = [Event("E01", "起因")] + [
            Event(f"E{i:02d}", "后续", depends_on=["E01"]) for i in range(2, 5)
        ]
        assignments = EventScheduler(min_events_per_episode=1).schedule_events(events, 3)
        assert [[e.id for e in ep] for ep in assignments] == [["E01", "E02"], ["E04"], ["E03"]]
        index = episode_index(assignments)
        assert all(index["E01"] <= index[e.id] for e in events)

    def test_cycle_still_complete(self):
        events = [
            Event("E01", "a", EventType.LOAD_BEARING, depends_on=["E03"]),
            Event("E02", "b", depends_on=["E01"]),
            Event("E03", "c", depends_on=["E02"]),
        ]
        scheduler = EventScheduler()
        assignments = scheduler.schedule_events(events, 2)
        assert scheduler.has_cycle
        assert sorted(e.id for ep in assignments for e in ep) == ["E01", "E02", "E03"]

    def test_more_episodes_than_events(self):
        assignments = EventScheduler().schedule_events(make_chain(2), 4)
        assert len(assignments) == 4
        assert sum(len(ep) for ep in assignments) == 2

    def test_invalid_episode_count(self):
        with pytest.raises(ValueError):
            EventScheduler().schedule_events(make_chain(2), 0)

    def test_default_episode_count(self):
        assert len(EventScheduler().schedule_events(make_chain(2))) == 3

    def test_deterministic(self):
        events = make_chain(5) + [Event("D1", "装饰", EventType.DECORATIVE, enables=["E03"])]
        first = EventScheduler().schedule_events(events, 3)
        second = EventScheduler().schedule_events(events, 3)
        assert [[e.id for e in ep] for ep in first] == [[e.id for e in ep] for ep in second]


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
