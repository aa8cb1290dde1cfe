# automation/nodes/__init__.py
from automation.nodes.base import WorkflowStep
from automation.nodes.factory import create_step
from automation.nodes.runner import execute_node

__all__ = [
    "WorkflowStep",
    "create_step",
    "execute_node",
]
