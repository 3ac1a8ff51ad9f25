"""swarmbox: sandboxed container execution for agent-generated tasks."""

__version__ = "0.1.0"
