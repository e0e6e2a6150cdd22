# /flowbot/engine/nodes/registry.py

import logging
from typing import Dict, List, Optional

from flowbot.engine.nodes.base import NodeExecutor, validation_result
from flowbot.models.execution import NodeValidation
from flowbot.models.flow import FlowEdge, FlowGraph, FlowNode

logger = logging.getLogger(__name__)


class NodeExecutorRegistry:
    """
    Explicit mapping from node type tag to executor.

    Built once at process start (see `build_default_registry`) and injected
    into the engine and the validator. After `freeze()` it is read-only and
    safe to share between concurrent steps.
    """

    def __init__(self):
        self._executors: Dict[str, NodeExecutor] = {}
        self._frozen = False

    def register(self, executor: NodeExecutor) -> "NodeExecutorRegistry":
        if self._frozen:
            raise RuntimeError("Cannot register node executors on a frozen registry")
        if not executor.node_type:
            raise ValueError(f"{executor!r} does not declare a node_type")
        if executor.node_type in self._executors:
            raise ValueError(f"Node type '{executor.node_type}' is already registered")
        self._executors[executor.node_type] = executor
        return self

    def freeze(self) -> "NodeExecutorRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def get(self, node_type: str) -> Optional[NodeExecutor]:
        return self._executors.get(node_type)

    def has(self, node_type: str) -> bool:
        return node_type in self._executors

    def types(self) -> List[str]:
        return sorted(self._executors)

    def __contains__(self, node_type: str) -> bool:
        return self.has(node_type)

    def __len__(self) -> int:
        return len(self._executors)

    def validate_node(self, node: FlowNode, edges: List[FlowEdge], graph: Optional[FlowGraph] = None) -> NodeValidation:
        executor = self.get(node.type)
        if executor is None:
            return validation_result([f"Unknown node type '{node.type}'"])
        try:
            return executor.validate(node, edges, graph)
        except Exception as e:
            logger.error(f"Validator for node type '{node.type}' crashed on node {node.id}: {e}", exc_info=True)
            return validation_result([f"Node configuration could not be validated: {e}"])


def build_default_registry(ai_client=None, http_client=None) -> NodeExecutorRegistry:
    """Register every bundled node type and return the frozen registry."""
    from flowbot.engine.nodes.messages import (
        MessageNode, ImageNode, VideoNode, AudioNode, DocumentNode, StickerNode,
        LocationNode, ContactsNode, ReactionNode,
    )
    from flowbot.engine.nodes.interactive import ButtonsNode, ListNode, CtaUrlNode, CarouselNode
    from flowbot.engine.nodes.menu import MenuNode
    from flowbot.engine.nodes.input import InputNode
    from flowbot.engine.nodes.control import StartNode, EndNode, ConditionNode, DelayNode, JumpNode, HandoffNode
    from flowbot.engine.nodes.template import TemplateNode
    from flowbot.engine.nodes.integrations import AIAgentNode, HttpRequestNode

    registry = NodeExecutorRegistry()
    for executor in (
        StartNode(), EndNode(), MessageNode(),
        ImageNode(), VideoNode(), AudioNode(), DocumentNode(), StickerNode(),
        LocationNode(), ContactsNode(), ReactionNode(),
        ButtonsNode(), ListNode(), CtaUrlNode(), CarouselNode(), MenuNode(),
        InputNode(), ConditionNode(), DelayNode(), JumpNode(), HandoffNode(),
        TemplateNode(), AIAgentNode(client=ai_client), HttpRequestNode(client=http_client),
    ):
        registry.register(executor)

    logger.info(f"Node executor registry built with {len(registry)} node types.")
    return registry.freeze()
