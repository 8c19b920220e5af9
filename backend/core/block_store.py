# backend/core/block_store.py
# 功能: 课时页面内容块序列的结构操作（插入 / 移动 / 复制 / 删除 / 重排）
# 主要函数:
#   - insert_at(): 在指定位置插入（越界或 None 时追加）
#   - move_adjacent(): 与相邻块交换
#   - duplicate(): 深拷贝并插在源块之后
#   - delete_block(): 删除（已持久化的块先删库，失败则不改动序列）
#   - renormalize(): order_index 重排为 0..n-1
# 数据结构: List[Block]，所有函数返回新列表

"""
内容块序列操作

每个公开操作开始和结束时，order_index 都是与数组位置一致的 0..n-1。
"插在 X 之后" 用的 +0.5 临时排序键只存在于 _insert_then_compact 内部。
"""

import logging
from typing import List, Optional, Literal, TYPE_CHECKING

from core.block_schema import Block, generate_block_id
from core.errors import PersistenceError

if TYPE_CHECKING:
    from core.persistence import PersistenceAdapter

logger = logging.getLogger("blocks")

Direction = Literal["up", "down"]


def renormalize(sequence: List[Block]) -> List[Block]:
    """按当前数组顺序把 order_index 重写为位置，幂等"""
    return [
        block if block.order_index == position
        else block.model_copy(update={"order_index": position})
        for position, block in enumerate(sequence)
    ]


def _find_index(sequence: List[Block], block_id: str) -> int:
    for position, block in enumerate(sequence):
        if block.id == block_id:
            return position
    return -1


def _insert_then_compact(sequence: List[Block], after_index: int, new_block: Block) -> List[Block]:
    """以 sequence[after_index].order_index + 0.5 为临时排序键插入，再压缩回整数"""
    anchor = sequence[after_index]
    staged = list(sequence) + [
        new_block.model_copy(update={"order_index": anchor.order_index + 0.5})
    ]
    staged.sort(key=lambda block: block.order_index)
    return renormalize(staged)


def insert_at(sequence: List[Block], index: Optional[int], new_block: Block) -> List[Block]:
    """
    在 index 位置插入新块。

    index 为 None 或不在 [0, len] 范围内时追加到末尾。
    """
    blocks = list(sequence)
    if index is None or index < 0 or index > len(blocks):
        blocks.append(new_block)
    else:
        blocks.insert(index, new_block)
    logger.debug(f"插入内容块 {new_block.id} ({new_block.type}) at {index}")
    return renormalize(blocks)


def move_adjacent(sequence: List[Block], block_id: str, direction: Direction) -> List[Block]:
    """与上 / 下相邻块交换；已在边界或 id 不存在时原样返回"""
    position = _find_index(sequence, block_id)
    if position < 0:
        return list(sequence)

    target = position - 1 if direction == "up" else position + 1
    if target < 0 or target >= len(sequence):
        return list(sequence)

    blocks = list(sequence)
    blocks[position], blocks[target] = blocks[target], blocks[position]
    return renormalize(blocks)


def duplicate(sequence: List[Block], block_id: str) -> List[Block]:
    """
    复制块并插在源块之后。

    副本是深拷贝（内容 / 布局 / 元数据互不影响），拿到新 id；
    副本尚未持久化，saved_to_db 重置为 False。
    """
    position = _find_index(sequence, block_id)
    if position < 0:
        return list(sequence)

    copy = sequence[position].model_copy(
        deep=True,
        update={"id": generate_block_id(), "saved_to_db": False},
    )
    logger.debug(f"复制内容块 {block_id} -> {copy.id}")
    return _insert_then_compact(renormalize(sequence), position, copy)


async def delete_block(
    sequence: List[Block],
    block_id: str,
    adapter: "PersistenceAdapter",
) -> List[Block]:
    """
    删除块并重排。

    已持久化的块必须先由 adapter 删除成功；失败时抛出 PersistenceError，
    调用方手里的序列保持不变。
    """
    position = _find_index(sequence, block_id)
    if position < 0:
        return list(sequence)

    if sequence[position].saved_to_db:
        try:
            await adapter.delete_block(block_id)
        except Exception as e:
            logger.error(f"删除内容块失败 {block_id}: {e}")
            raise PersistenceError("Failed to delete block. Please try again.") from e
        logger.info(f"已从数据库删除内容块 {block_id}")

    blocks = list(sequence[:position]) + list(sequence[position + 1:])
    return renormalize(blocks)
