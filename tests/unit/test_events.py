"""Tests for swarmbox.sandbox.events and swarmbox.sandbox.commands."""

from __future__ import annotations

import pytest

from swarmbox.models import AgentState, Task
from swarmbox.sandbox.commands import AgentCliCommandBuilder, ShellCommandBuilder
from swarmbox.sandbox.events import LifecycleEvent, LifecycleEventBus, LifecycleEventKind

K = LifecycleEventKind


def _event(kind: LifecycleEventKind = K.CONTAINER_CREATED, session: str = "s1") -> LifecycleEvent:
    return LifecycleEvent(kind=kind, session_id=session, container_id="abc", container_name="swarmbox-x")


class TestLifecycleEventBus:
    def test_subscribers_receive_events(self) -> None:
        bus = LifecycleEventBus()
        seen: list[LifecycleEvent] = []
        bus.subscribe(seen.append)
        bus.emit(_event())
        assert [e.kind for e in seen] == [K.CONTAINER_CREATED]

    def test_kind_filter(self) -> None:
        bus = LifecycleEventBus()
        seen: list[LifecycleEvent] = []
        bus.subscribe(seen.append, kinds=[K.CONTAINER_REMOVED])
        bus.emit(_event(K.CONTAINER_CREATED))
        bus.emit(_event(K.CONTAINER_REMOVED))
        assert [e.kind for e in seen] == [K.CONTAINER_REMOVED]

    def test_unsubscribe(self) -> None:
        bus = LifecycleEventBus()
        seen: list[LifecycleEvent] = []
        sub_id = bus.subscribe(seen.append)
        assert bus.subscriber_count == 1
        assert bus.unsubscribe(sub_id) is True
        assert bus.unsubscribe(sub_id) is False
        bus.emit(_event())
        assert seen == []

    def test_subscription_ids_unique(self) -> None:
        bus = LifecycleEventBus()
        ids = {bus.subscribe(lambda e: None) for _ in range(5)}
        assert len(ids) == 5

    def test_failing_subscriber_isolated(self) -> None:
        bus = LifecycleEventBus()
        seen: list[LifecycleEvent] = []

        def broken(_event: LifecycleEvent) -> None:
            raise RuntimeError("observer bug")

        bus.subscribe(broken)
        bus.subscribe(seen.append)
        bus.emit(_event())
        assert len(seen) == 1

    def test_recent_history_bounded(self) -> None:
        bus = LifecycleEventBus(history_size=3)
        for i in range(5):
            bus.emit(_event(session=f"s{i}"))
        assert [e.session_id for e in bus.recent()] == ["s2", "s3", "s4"]
        assert [e.session_id for e in bus.recent(2)] == ["s3", "s4"]

    def test_to_dict(self) -> None:
        data = _event(K.CONTAINER_ERROR).to_dict()
        assert data["kind"] == "container.error"
        assert data["container_name"] == "swarmbox-x"
        assert isinstance(data["timestamp"], float)


class TestShellCommandBuilder:
    def test_explicit_command_verbatim(self) -> None:
        task = Task(id="t", description="ignored", command=("python3", "-c", "print(1)"))
        assert ShellCommandBuilder().build(task, AgentState(id="a", type="coder")) == ["python3", "-c", "print(1)"]

    def test_description_single_argument(self) -> None:
        task = Task(id="t", description="echo a; echo b")
        assert ShellCommandBuilder("bash").build(task, AgentState(id="a", type="coder")) == [
            "bash",
            "-c",
            "echo a; echo b",
        ]


class TestAgentCliCommandBuilder:
    @pytest.fixture
    def agent(self) -> AgentState:
        return AgentState(id="a", type="reviewer")

    def test_full_invocation(self, agent: AgentState) -> None:
        argv = AgentCliCommandBuilder().build(Task(id="t-1", description="review PR"), agent)
        assert argv == ["agent", "run", "review PR", "--agent-type", "reviewer", "--task-id", "t-1"]

    def test_minimal_invocation(self, agent: AgentState) -> None:
        builder = AgentCliCommandBuilder("claw", "", pass_agent_type=False, pass_task_id=False)
        assert builder.build(Task(id="t", description="go"), agent) == ["claw", "go"]

    def test_explicit_command_wins(self, agent: AgentState) -> None:
        task = Task(id="t", description="x", command=("true",))
        assert AgentCliCommandBuilder().build(task, agent) == ["true"]
