# automation/nodes/base.py
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import ClassVar, Generic, Type, TypeVar

from automation.events import EventBus
from automation.nodes.models import GraphNode, NodeConfig, NodeRunResult, NodeType, RunState, WorkflowGraph

ConfigT = TypeVar("ConfigT", bound=NodeConfig)


class WorkflowStep(ABC, Generic[ConfigT]):
    """
    Base class for all workflow steps.

    A step is the behaviour of one node type: it receives the node's parsed
    configuration and the current run, does its single unit of work (usually
    emitting an intent event for an external collaborator) and reports where the
    run should go next.
    """

    node_type: ClassVar[NodeType]
    config_model: ClassVar[Type[NodeConfig]]

    def __init__(self, node: GraphNode, config: ConfigT):
        self.node = node
        self.config = config

    @abstractmethod
    def execute(self, run: RunState, graph: WorkflowGraph, event_bus: EventBus) -> NodeRunResult:
        """
        Execute the step for ``run``.

        Args:
            run: The run being driven (ids, contact and context)
            graph: The workflow graph, for edge lookups
            event_bus: Sink for intent events

        Returns:
            NodeRunResult; ``next_node_id`` overrides the default edge walk and
            ``metadata["waitUntil"]`` suspends the run.
        """
        pass

    def validate_input(self, run: RunState) -> None:
        """
        Check run-level preconditions (e.g. a contact is attached).
        Raises ValueError if the step cannot run.
        """
        pass

    @staticmethod
    def require_contact(run: RunState, purpose: str) -> str:
        if not run.contact_id:
            raise ValueError(f"No contact ID available for {purpose}")
        return run.contact_id
