"""Strategies that turn a task into the argument vector run inside a container.

The lifecycle manager takes a ``CommandBuilder`` at construction time, so
tests and alternate agent runtimes can substitute their own.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from swarmbox.models import AgentState, Task


class CommandBuilder(Protocol):
    """Builds the in-container command for one task."""

    def build(self, task: Task, agent: AgentState) -> list[str]:
        ...


class ShellCommandBuilder:
    """Runs ``task.command`` verbatim, or ``sh -c <description>`` when absent.

    The description is passed as a single argument to the in-container
    shell; it is never interpolated into a host-side command line.
    """

    def __init__(self, shell: str = "sh") -> None:
        self._shell = shell

    def build(self, task: Task, agent: AgentState) -> list[str]:
        if task.command:
            return list(task.command)
        return [self._shell, "-c", task.description]


class AgentCliCommandBuilder:
    """Invokes an agent CLI inside the container with the task description.

    Produces ``<executable> <subcommand> <description> [--agent-type T]
    [--task-id ID]``.
    """

    def __init__(
        self,
        executable: str = "agent",
        subcommand: str = "run",
        *,
        pass_agent_type: bool = True,
        pass_task_id: bool = True,
    ) -> None:
        self._executable = executable
        self._subcommand = subcommand
        self._pass_agent_type = pass_agent_type
        self._pass_task_id = pass_task_id

    def build(self, task: Task, agent: AgentState) -> list[str]:
        if task.command:
            return list(task.command)
        argv = [self._executable]
        if self._subcommand:
            argv.append(self._subcommand)
        argv.append(task.description)
        if self._pass_agent_type:
            argv += ["--agent-type", agent.type]
        if self._pass_task_id:
            argv += ["--task-id", task.id]
        return argv
