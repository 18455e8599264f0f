# campaign_engine/services/campaign_graph.py
"""
Campaign flow graph

A campaign is an ordered list of blocks plus directed connections between
them. ``CampaignGraph`` builds the adjacency map once per campaign document so
successor lookups during a sweep are O(1), and resolves which successors a
branching block routes an outcome to.
"""
from collections import defaultdict
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from ..models.campaign import (
    BlockType,
    CampaignBlock,
    WaitBlock,
    parse_block,
)
from ..models.errors import CampaignValidationError


def _normalize_label(label: Optional[str]) -> Optional[str]:
    if label is None:
        return None
    label = str(label).strip().lower()
    return label or None


class CampaignGraph:
    """Typed, indexed view of a campaign's blocks and connections"""

    def __init__(self, blocks: List[CampaignBlock], connections: List[Dict[str, Any]]):
        self.blocks: Dict[str, CampaignBlock] = {}
        self.order: List[str] = []
        for block in blocks:
            self.blocks[block.id] = block
            self.order.append(block.id)

        self._outgoing: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for connection in connections:
            self._outgoing[connection["from"]].append(connection)

    @classmethod
    def from_documents(
        cls,
        block_docs: Iterable[Dict[str, Any]],
        connection_docs: Iterable[Dict[str, Any]]
    ) -> "CampaignGraph":
        try:
            blocks = [parse_block(doc) for doc in block_docs]
        except ValidationError as e:
            raise CampaignValidationError(f"Invalid block definition: {e}") from e
        return cls(blocks, list(connection_docs))

    @classmethod
    def from_campaign(cls, campaign: Dict[str, Any]) -> "CampaignGraph":
        return cls.from_documents(campaign.get("blocks") or [], campaign.get("connections") or [])

    @property
    def entry_block_id(self) -> Optional[str]:
        """First declared block; every enrollment starts here"""
        return self.order[0] if self.order else None

    def block(self, block_id: str) -> Optional[CampaignBlock]:
        return self.blocks.get(block_id)

    def outgoing(self, block_id: str) -> List[Dict[str, Any]]:
        return list(self._outgoing.get(block_id, []))

    def successors(self, block_id: str, outcome: Optional[str] = None) -> List[str]:
        """
        Block ids to schedule after ``block_id`` completed with ``outcome``

        Plain blocks follow their outgoing connection. Branching blocks follow
        the connections labelled with the outcome plus the ids their data
        declares for that outcome, de-duplicated in order.
        """
        block = self.blocks.get(block_id)
        if block is None:
            return []

        edges = self._outgoing.get(block_id, [])
        if not block.is_branching:
            return [edge["to"] for edge in edges if edge["to"] in self.blocks]

        wanted = _normalize_label(outcome)
        if wanted is None:
            return []

        targets = [
            edge["to"] for edge in edges
            if _normalize_label(edge.get("label")) == wanted
        ]
        targets.extend(block.declared_path(outcome))

        return [t for t in dict.fromkeys(targets) if t in self.blocks and t != block_id]

    def delay_after(self, block_id: str) -> timedelta:
        """Time gap before the successors of ``block_id`` become due"""
        block = self.blocks.get(block_id)
        if isinstance(block, WaitBlock):
            return block.data.to_timedelta()
        return timedelta(0)


def validate_campaign_graph(
    block_docs: List[Dict[str, Any]],
    connection_docs: List[Dict[str, Any]]
) -> CampaignGraph:
    """
    Check structural rules of a campaign definition

    Raises:
        CampaignValidationError: duplicate block ids, dangling or self-loop
            connections, duplicate edges, plain blocks with more than one
            outgoing connection, unlabelled or mislabelled branch edges,
            declared branch paths pointing at unknown blocks
    """
    graph = CampaignGraph.from_documents(block_docs, connection_docs)

    if len(graph.blocks) != len(block_docs):
        raise CampaignValidationError("Block ids must be unique within a campaign")

    seen_edges: set = set()
    for connection in connection_docs:
        source, target = connection["from"], connection["to"]

        if source == target:
            raise CampaignValidationError(f"Connection {source} -> {target} is a self-loop")
        if source not in graph.blocks or target not in graph.blocks:
            raise CampaignValidationError(f"Connection {source} -> {target} references an unknown block")

        edge: Tuple[str, str] = (source, target)
        if edge in seen_edges:
            raise CampaignValidationError(f"Duplicate connection {source} -> {target}")
        seen_edges.add(edge)

    for block_id, block in graph.blocks.items():
        edges = graph.outgoing(block_id)

        if not block.is_branching:
            if len(edges) > 1:
                raise CampaignValidationError(
                    f"Block {block_id} ({block.type}) can only have one outgoing connection"
                )
            continue

        allowed = {_normalize_label(o) for o in block.branch_outcomes}
        for edge in edges:
            if _normalize_label(edge.get("label")) not in allowed:
                raise CampaignValidationError(
                    f"Connection {block_id} -> {edge['to']} must be labelled with one of "
                    f"{', '.join(block.branch_outcomes)}"
                )

        for outcome in block.branch_outcomes:
            for target in block.declared_path(outcome):
                if target not in graph.blocks or target == block_id:
                    raise CampaignValidationError(
                        f"Block {block_id} routes '{outcome}' to unknown block {target}"
                    )

    return graph


def validate_for_activation(graph: CampaignGraph) -> None:
    """Rules that only need to hold once a campaign starts executing"""
    if not graph.blocks:
        raise CampaignValidationError("Campaign must have at least one block")

    for block_id, block in graph.blocks.items():
        if block.type == BlockType.SEND_WHATSAPP.value and not block.data.template_id:
            raise CampaignValidationError(f"Block {block_id} has no WhatsApp template selected")
        if block.type in (BlockType.ADD_TAG.value, BlockType.REMOVE_TAG.value) and not block.data.tag_id:
            raise CampaignValidationError(f"Block {block_id} has no tag selected")
        if block.type == BlockType.SEND_EMAIL.value and not block.data.content.strip():
            raise CampaignValidationError(f"Block {block_id} has no email content")
