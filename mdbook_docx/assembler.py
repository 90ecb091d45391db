from __future__ import annotations

import copy
import dataclasses
from pathlib import Path
from typing import Sequence

from .blocks import Block, CompiledDocument, CompileResult, Fragment, MediaTable, Table
from .log import get_logger
from .style_merge import RenameMap, StyleMerger
from .style_registry import StyleKind, StyleRegistry

LOGGER = get_logger(__name__)


def assemble_document(
    template_registry: StyleRegistry,
    chapters: Sequence[CompileResult],
    prepend: Sequence[Fragment] = (),
    append: Sequence[Fragment] = (),
    *,
    template_path: Path | str,
) -> CompiledDocument:
    """Merge fragment registries into the template's and concatenate all blocks.

    Order is prepend fragments, chapter blocks, append fragments, each in
    configured order.
    """
    merger = StyleMerger(template_registry)
    media = MediaTable()

    prepend_blocks: list[Block] = []
    for fragment in prepend:
        prepend_blocks.extend(_rebind_fragment(fragment, merger))
        media.merge(fragment.media)

    chapter_blocks: list[Block] = []
    for result in chapters:
        chapter_blocks.extend(result.blocks)
        media.merge(result.media)

    append_blocks: list[Block] = []
    for fragment in append:
        append_blocks.extend(_rebind_fragment(fragment, merger))
        media.merge(fragment.media)

    blocks = prepend_blocks + chapter_blocks + append_blocks
    registry = merger.registry()
    LOGGER.info(
        "Assembled %d blocks (%d prepend, %d chapter, %d append), %d styles, %d media",
        len(blocks),
        len(prepend_blocks),
        len(chapter_blocks),
        len(append_blocks),
        len(registry),
        len(media),
    )
    return CompiledDocument(
        registry=registry,
        blocks=blocks,
        media=media,
        template_path=str(template_path),
        warnings=list(merger.warnings),
    )


def _rebind_fragment(fragment: Fragment, merger: StyleMerger) -> list[Block]:
    renames = merger.merge(fragment.registry, label=fragment.path)
    return [_rebind_block(block, renames) for block in fragment.blocks]


def _rebind_block(block: Block, renames: RenameMap) -> Block:
    source = copy.deepcopy(block.source) if block.source is not None else None
    if source is not None:
        renames.apply(source)
    if block.style_id:
        style_id = renames.styles.get(block.style_id, block.style_id)
    else:
        kind = StyleKind.TABLE if isinstance(block, Table) else StyleKind.PARAGRAPH
        style_id = renames.defaults.get(kind)
    return dataclasses.replace(
        block,
        style_id=style_id,
        source=source,
        media_refs=dict(block.media_refs),
        link_refs=dict(block.link_refs),
    )
