from .agent import Agent, LocalAgent
from .models import ExecResult, WorkingState
from .pool import AgentPool, PoolSet

__all__ = ["Agent", "AgentPool", "ExecResult", "LocalAgent", "PoolSet", "WorkingState"]
