from fluttery.workers.base import Worker, WorkerContext, extract_requirements
from fluttery.workers.code import CodeWorker
from fluttery.workers.design import DesignWorker
from fluttery.workers.planner import AgentPlanner, Planner, StaticPlanner
from fluttery.workers.testing import TestWorker

__all__ = [
    "AgentPlanner",
    "CodeWorker",
    "DesignWorker",
    "Planner",
    "StaticPlanner",
    "TestWorker",
    "Worker",
    "WorkerContext",
    "extract_requirements",
]
