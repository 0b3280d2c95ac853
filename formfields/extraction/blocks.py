"""
Typed view of the OCR provider's flat block graph.

The provider returns a flat list of loosely-typed blocks linked by id.
``BlockGraph`` converts each into a dataclass per block kind and builds
every relationship index once, so the parser never walks raw dicts.
"""

import logging
from dataclasses import dataclass
from typing import Dict, Iterable, Iterator, List, Optional, Set, Tuple, Type, TypeVar

from formfields.fields import BoundingBox

logger = logging.getLogger(__name__)

# Relationship types
CHILD = "CHILD"
VALUE = "VALUE"


# ============================================================================
# Block kinds
# ============================================================================

@dataclass(frozen=True)
class Block:
    id: str
    confidence: float
    bbox: Optional[BoundingBox]
    page: int


@dataclass(frozen=True)
class WordBlock(Block):
    text: str = ""


@dataclass(frozen=True)
class SelectionBlock(Block):
    selected: bool = False


@dataclass(frozen=True)
class LineBlock(Block):
    text: str = ""


@dataclass(frozen=True)
class KeyValueBlock(Block):
    is_key: bool = False


@dataclass(frozen=True)
class TableBlock(Block):
    pass


@dataclass(frozen=True)
class CellBlock(Block):
    row: int = 0
    col: int = 0
    row_span: int = 1
    col_span: int = 1
    is_column_header: bool = False


B = TypeVar("B", bound=Block)


def _parse_bbox(raw: Dict, page: int) -> Optional[BoundingBox]:
    geometry = raw.get("Geometry") or {}
    return BoundingBox.from_dict(geometry.get("BoundingBox"), page=page)


def _build_block(raw: Dict) -> Optional[Block]:
    """Convert one provider block into its typed variant (None for kinds we ignore)."""
    block_id = raw.get("Id")
    if not block_id:
        return None

    page = int(raw.get("Page") or 1)
    common = dict(
        id=block_id,
        confidence=float(raw.get("Confidence") or 0.0),
        bbox=_parse_bbox(raw, page),
        page=page,
    )
    block_type = raw.get("BlockType")

    if block_type == "WORD":
        return WordBlock(text=raw.get("Text") or "", **common)
    if block_type == "SELECTION_ELEMENT":
        return SelectionBlock(selected=raw.get("SelectionStatus") == "SELECTED", **common)
    if block_type == "LINE":
        return LineBlock(text=raw.get("Text") or "", **common)
    if block_type == "KEY_VALUE_SET":
        entity_types = raw.get("EntityTypes") or []
        return KeyValueBlock(is_key="KEY" in entity_types, **common)
    if block_type == "TABLE":
        return TableBlock(**common)
    if block_type == "CELL":
        entity_types = raw.get("EntityTypes") or []
        return CellBlock(
            row=int(raw.get("RowIndex") or 0),
            col=int(raw.get("ColumnIndex") or 0),
            row_span=int(raw.get("RowSpan") or 1),
            col_span=int(raw.get("ColumnSpan") or 1),
            is_column_header="COLUMN_HEADER" in entity_types,
            **common,
        )
    return None


# ============================================================================
# Graph
# ============================================================================

class BlockGraph:
    """Arena of typed blocks plus the relationship indices the parser needs."""

    def __init__(self, blocks: Iterable[Block], relations: Dict[str, Dict[str, List[str]]]):
        self.blocks: Dict[str, Block] = {b.id: b for b in blocks}
        self._relations = relations

        # key -> value and value -> key
        self.value_of: Dict[str, str] = {}
        self.key_of: Dict[str, str] = {}
        for block in self.of_type(KeyValueBlock):
            if not block.is_key:
                continue
            for value_id in self._relations.get(block.id, {}).get(VALUE, []):
                value_block = self.blocks.get(value_id)
                if isinstance(value_block, KeyValueBlock) and not value_block.is_key:
                    self.value_of[block.id] = value_id
                    self.key_of[value_id] = block.id
                    break

        # Selection elements already owned by a key/value pair or a table cell
        self.attached_selection_ids: Set[str] = set()
        for block in self.blocks.values():
            if isinstance(block, (KeyValueBlock, CellBlock)):
                for child in self.children(block.id, SelectionBlock):
                    self.attached_selection_ids.add(child.id)

    @classmethod
    def from_textract(cls, raw_blocks: Iterable[Dict]) -> "BlockGraph":
        """Build the graph from raw provider blocks (Textract ``Blocks`` list)."""
        blocks: List[Block] = []
        relations: Dict[str, Dict[str, List[str]]] = {}
        skipped = 0

        for raw in raw_blocks:
            block = _build_block(raw)
            if block is None:
                skipped += 1
                continue
            blocks.append(block)
            rel_map: Dict[str, List[str]] = {}
            for rel in raw.get("Relationships") or []:
                rel_map.setdefault(rel.get("Type"), []).extend(rel.get("Ids") or [])
            relations[block.id] = rel_map

        logger.debug("Block graph: %d typed blocks (%d ignored)", len(blocks), skipped)
        return cls(blocks, relations)

    def __len__(self) -> int:
        return len(self.blocks)

    def get(self, block_id: str) -> Optional[Block]:
        return self.blocks.get(block_id)

    def of_type(self, kind: Type[B], page: Optional[int] = None) -> Iterator[B]:
        for block in self.blocks.values():
            if isinstance(block, kind) and (page is None or block.page == page):
                yield block

    def children(self, block_id: str, kind: Type[B] = Block) -> List[B]:
        """CHILD blocks of ``block_id`` (optionally of one kind), in provider order."""
        result = []
        for child_id in self._relations.get(block_id, {}).get(CHILD, []):
            child = self.blocks.get(child_id)
            if isinstance(child, kind):
                result.append(child)
        return result

    def text_and_selection(self, block_id: str) -> Tuple[str, Optional[SelectionBlock]]:
        """
        Concatenate the literal words under a block.

        Selection elements are excluded from the text and returned
        separately (the first one found).
        """
        words = [c.text for c in self.children(block_id, WordBlock) if c.text]
        selections = self.children(block_id, SelectionBlock)
        return " ".join(words).strip(), (selections[0] if selections else None)

    def pages(self) -> List[int]:
        return sorted({b.page for b in self.blocks.values()})
