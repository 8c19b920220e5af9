# backend/core/editor_session.py
# 功能: 单个课时页面的编辑会话（内容块序列 + 面板状态 + 每块的元数据工作流）及会话注册表
# 主要类:
#   - LessonEditorSession: 页面编辑会话，是 block_store 的调用方
#   - SessionRegistry: 进程内会话表（按 page_id，一页一个会话）
# 数据结构:
#   - blocks: List[Block]，order_index 始终为 0..n-1
#   - pending_insert_index: 插入菜单打开时记住的位置
#   - open_metadata_panel_id / open_appearance_panel_id: 当前打开面板的块
#   - has_unsaved_changes: 有未保存修改

"""
编辑会话

界面状态（打开的面板、待插入位置、未保存标记）都挂在会话上，
不使用模块级全局变量。每个块独立保存，保存失败不影响其他块的内存状态。
"""

import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from core import block_store, list_nesting
from core.block_codec import (
    extract_block_text,
    media_type_for,
    to_content_json,
)
from core.block_schema import (
    Block,
    ImageContent,
    ImageTextContent,
    list_items_of,
    new_block,
    with_list_items,
)
from core.debounce import Debouncer, DebounceOutcome
from core.errors import BlockNotFoundError, BlockValidationError, PersistenceError
from core.metadata_review import (
    MetadataReviewWorkflow,
    SanityReview,
    WorkflowResult,
    apply_human_edit,
)
from core.persistence import UpsertBlockParams

logger = logging.getLogger("editor_session")

MSG_SAVED = "Lesson saved successfully!"
MSG_SAVE_FAILED = "Error saving lesson. Please try again."

_APPEARANCE_FIELDS = ("style", "custom_background_color", "layout", "animation", "animation_duration")


class LessonEditorSession:
    """单个课时页面的编辑会话"""

    def __init__(
        self,
        page_id: str,
        persistence,
        service,
        suggestion_log,
        debounce_ms: Optional[int] = None,
    ):
        self.page_id = page_id
        self.persistence = persistence
        self.service = service
        self.suggestion_log = suggestion_log

        self.blocks: List[Block] = []
        self.has_unsaved_changes = False
        self.pending_insert_index: Optional[int] = None
        self.open_metadata_panel_id: Optional[str] = None
        self.open_appearance_panel_id: Optional[str] = None

        self._workflows: Dict[str, MetadataReviewWorkflow] = {}
        self._renamed: Dict[str, str] = {}
        self._search = Debouncer(debounce_ms)

    # ============== 读取 ==============

    async def load(self) -> List[Block]:
        blocks = await self.persistence.load_blocks(self.page_id)
        self.blocks = block_store.renormalize(blocks)
        self.has_unsaved_changes = False
        self._workflows.clear()
        self._renamed.clear()
        logger.info(f"[session] 页面 {self.page_id} 加载 {len(self.blocks)} 个内容块")
        return self.blocks

    def get_block(self, block_id: str) -> Block:
        for block in self.blocks:
            if block.id == block_id:
                return block
        raise BlockNotFoundError(f"Block {block_id} not found")

    def _replace_block(self, updated: Block, dirty: bool = True) -> Block:
        self.blocks = [updated if block.id == updated.id else block for block in self.blocks]
        if dirty:
            self.has_unsaved_changes = True
        return updated

    def _set_blocks(self, blocks: List[Block]) -> List[Block]:
        self.blocks = blocks
        self.has_unsaved_changes = True
        return self.blocks

    # ============== 结构操作 ==============

    def open_insert_menu(self, index: Optional[int]) -> None:
        self.pending_insert_index = index

    def insert_block(self, block_type: str, index: Optional[int] = None) -> Block:
        """插入新块；未给出位置时使用插入菜单记住的位置，仍没有则追加"""
        try:
            block = new_block(block_type)
        except ValueError as e:
            raise BlockValidationError(str(e)) from e
        if index is None:
            index = self.pending_insert_index
        self.pending_insert_index = None
        self._set_blocks(block_store.insert_at(self.blocks, index, block))
        return self.get_block(block.id)

    def move_block(self, block_id: str, direction: str) -> List[Block]:
        self.get_block(block_id)
        moved = block_store.move_adjacent(self.blocks, block_id, direction)
        if [b.id for b in moved] != [b.id for b in self.blocks]:
            self._set_blocks(moved)
        return self.blocks

    def duplicate_block(self, block_id: str) -> Block:
        self.get_block(block_id)
        before = {block.id for block in self.blocks}
        self._set_blocks(block_store.duplicate(self.blocks, block_id))
        return next(block for block in self.blocks if block.id not in before)

    async def delete_block(self, block_id: str) -> List[Block]:
        self.get_block(block_id)
        self.blocks = await block_store.delete_block(self.blocks, block_id, self.persistence)
        self._workflows.pop(block_id, None)
        if self.open_metadata_panel_id == block_id:
            self.open_metadata_panel_id = None
        if self.open_appearance_panel_id == block_id:
            self.open_appearance_panel_id = None
        return self.blocks

    # ============== 内容编辑 ==============

    def update_content(self, block_id: str, changes: Dict[str, Any]) -> Block:
        """修改块内容；不能改变块类型"""
        block = self.get_block(block_id)
        if "block_type" in changes and changes["block_type"] != block.type:
            raise BlockValidationError("Block type cannot be changed.")
        data = {**block.content.model_dump(), **changes}
        try:
            content = type(block.content).model_validate(data)
        except ValueError as e:
            raise BlockValidationError(f"Invalid content: {e}") from e
        return self._replace_block(block.model_copy(update={"content": content}))

    def update_appearance(self, block_id: str, changes: Dict[str, Any]) -> Block:
        """修改外观属性（样式 / 背景色 / 布局 / 动画）；layout 支持部分更新"""
        block = self.get_block(block_id)
        unknown = set(changes) - set(_APPEARANCE_FIELDS)
        if unknown:
            raise BlockValidationError(f"Unknown appearance fields: {sorted(unknown)}")
        data = {**block.model_dump(), **changes}
        if isinstance(changes.get("layout"), dict):
            data["layout"] = {**block.layout.model_dump(), **changes["layout"]}
        try:
            validated = Block.model_validate(data)
        except ValueError as e:
            raise BlockValidationError(f"Invalid appearance: {e}") from e
        updates = {name: getattr(validated, name) for name in changes}
        return self._replace_block(block.model_copy(update=updates))

    def edit_metadata(self, block_id: str, changes: Dict[str, Any]) -> Block:
        """作者直接修改元数据字段（来源标记为 human）"""
        block = self.get_block(block_id)
        metadata = apply_human_edit(block.metadata, changes)
        return self._replace_block(block.model_copy(update={"metadata": metadata}))

    # ============== 列表操作 ==============

    def _list_op(self, block_id: str, op: Callable, *args) -> Block:
        block = self.get_block(block_id)
        items = list_items_of(block)
        if items is None:
            raise BlockValidationError("This block is not a list.")
        try:
            new_items = op(items, *args)
        except ValueError as e:
            raise BlockValidationError(f"Invalid list item: {e}") from e
        return self._replace_block(with_list_items(block, new_items))

    def indent_item(self, block_id: str, index: int) -> Block:
        return self._list_op(block_id, list_nesting.indent, index)

    def outdent_item(self, block_id: str, parent_index: int, child_index: int) -> Block:
        return self._list_op(block_id, list_nesting.outdent, parent_index, child_index)

    def add_list_item(self, block_id: str) -> Block:
        return self._list_op(block_id, list_nesting.add_item)

    def add_child_item(self, block_id: str, parent_index: int) -> Block:
        return self._list_op(block_id, list_nesting.add_child, parent_index)

    def remove_list_item(self, block_id: str, index: int) -> Block:
        return self._list_op(block_id, list_nesting.remove_item, index)

    def remove_child_item(self, block_id: str, parent_index: int, child_index: int) -> Block:
        return self._list_op(block_id, list_nesting.remove_child, parent_index, child_index)

    def update_list_item(
        self,
        block_id: str,
        index: int,
        body: str,
        child_index: Optional[int] = None,
    ) -> Block:
        if child_index is None:
            return self._list_op(block_id, list_nesting.update_item_body, index, body)
        return self._list_op(block_id, list_nesting.update_child_body, index, child_index, body)

    # ============== 面板 ==============

    def toggle_metadata_panel(self, block_id: str) -> Optional[str]:
        self.get_block(block_id)
        self.open_metadata_panel_id = None if self.open_metadata_panel_id == block_id else block_id
        return self.open_metadata_panel_id

    def toggle_appearance_panel(self, block_id: str) -> Optional[str]:
        self.get_block(block_id)
        self.open_appearance_panel_id = None if self.open_appearance_panel_id == block_id else block_id
        return self.open_appearance_panel_id

    # ============== 保存 ==============

    async def save(self) -> str:
        """
        逐块保存。每块保存成功后立即标记为已持久化，持久化层返回的新 id
        立即回写到内存中的块、工作流和面板状态。
        某块保存失败时抛出 PersistenceError；之前已保存的块保持已持久化状态，
        失败的块及其后的块不变。
        """
        for block in list(self.blocks):
            media_asset_id = (
                block.content.media_asset_id
                if isinstance(block.content, (ImageContent, ImageTextContent))
                else None
            )
            params = UpsertBlockParams(
                id=block.id,
                page_id=self.page_id,
                type=block.type,
                order_index=block.order_index,
                content_json=to_content_json(block),
                media_type=media_type_for(block.type),
                media_asset_id=media_asset_id,
            )
            try:
                saved_id = await self.persistence.upsert_block(params)
            except Exception as e:
                logger.error(f"[session] 保存内容块失败 {block.id}: {e}")
                raise PersistenceError(MSG_SAVE_FAILED) from e
            self._mark_saved(block.id, saved_id or block.id)

        self.has_unsaved_changes = False
        logger.info(f"[session] 页面 {self.page_id} 已保存 {len(self.blocks)} 个内容块")
        return MSG_SAVED

    def _mark_saved(self, old_id: str, new_id: str) -> None:
        """单块保存成功：标记已持久化，id 变化时同步工作流、面板和改名表"""
        self.blocks = [
            block.model_copy(update={"id": new_id, "saved_to_db": True}) if block.id == old_id else block
            for block in self.blocks
        ]
        if new_id == old_id:
            return
        self._renamed[old_id] = new_id
        if old_id in self._workflows:
            self._workflows[new_id] = self._workflows.pop(old_id)
        if self.open_metadata_panel_id == old_id:
            self.open_metadata_panel_id = new_id
        if self.open_appearance_panel_id == old_id:
            self.open_appearance_panel_id = new_id

    # ============== 元数据工作流 ==============

    def _resolve_id(self, block_id: str) -> str:
        """沿改名表找到块当前的 id（保存可能在 AI 请求期间替换 id）"""
        seen = set()
        while block_id in self._renamed and block_id not in seen:
            seen.add(block_id)
            block_id = self._renamed[block_id]
        return block_id

    def _latest(self, block_id: str, fallback: Block) -> Callable[[], Block]:
        def latest() -> Block:
            try:
                return self.get_block(self._resolve_id(block_id))
            except BlockNotFoundError:
                return fallback
        return latest

    def workflow(self, block_id: str) -> MetadataReviewWorkflow:
        self.get_block(block_id)
        if block_id not in self._workflows:
            self._workflows[block_id] = MetadataReviewWorkflow(
                self.service, self.suggestion_log, self.persistence
            )
        return self._workflows[block_id]

    def _apply_result(self, block_id: str, result: WorkflowResult) -> WorkflowResult:
        """只回写元数据字段；过期结果不回写"""
        try:
            current = self.get_block(self._resolve_id(block_id))
        except BlockNotFoundError:
            logger.warning(f"[session] 元数据结果返回时内容块 {block_id} 已被删除")
            return result
        if result.stale:
            return WorkflowResult(block=current, notice=result.notice, stale=True)
        if (
            current.metadata == result.block.metadata
            and current.raw_ai_metadata == result.block.raw_ai_metadata
        ):
            return WorkflowResult(block=current, notice=result.notice)
        updated = self._replace_block(current.model_copy(update={
            "metadata": result.block.metadata,
            "raw_ai_metadata": result.block.raw_ai_metadata,
        }))
        return WorkflowResult(block=updated, notice=result.notice)

    async def generate_metadata(self, block_id: str) -> WorkflowResult:
        workflow = self.workflow(block_id)
        block = self.get_block(block_id)
        result = await workflow.generate(block, latest=self._latest(block_id, block))
        return self._apply_result(block_id, result)

    async def run_sanity_check(self, block_id: str) -> SanityReview:
        return await self.workflow(block_id).run_sanity_check(self.get_block(block_id))

    def set_review_decision(self, block_id: str, field_name: str, decision: str) -> SanityReview:
        return self.workflow(block_id).set_decision(field_name, decision)

    def dismiss_review(self, block_id: str) -> None:
        self.workflow(block_id).dismiss_review()

    async def apply_corrections(self, block_id: str) -> WorkflowResult:
        workflow = self.workflow(block_id)
        block = self.get_block(block_id)
        result = await workflow.apply_corrections(block, latest=self._latest(block_id, block))
        return self._apply_result(block_id, result)

    async def clear_metadata(self, block_id: str) -> WorkflowResult:
        workflow = self.workflow(block_id)
        block = self.get_block(block_id)
        result = await workflow.clear(block, latest=self._latest(block_id, block))
        return self._apply_result(block_id, result)

    # ============== 搜索 ==============

    def _match_blocks(self, query: str) -> List[str]:
        needle = query.strip().lower()
        if not needle:
            return []
        return [block.id for block in self.blocks if needle in extract_block_text(block).lower()]

    async def search(self, query: str) -> DebounceOutcome:
        """按纯文本搜索块；被更新的搜索取代时结果标记为 superseded"""
        return await self._search.run(self._match_blocks, query)


# ============== 会话注册表 ==============

_SESSIONS: Dict[str, LessonEditorSession] = {}
_SESSIONS_LOCK = threading.Lock()


class SessionRegistry:
    """
    进程内会话表，一页一个会话。

    factory(page_id) 负责创建会话（注入持久化层和 AI 服务）。
    """

    def __init__(self, factory: Callable[[str], LessonEditorSession], sessions: Optional[dict] = None):
        self._factory = factory
        self._sessions = _SESSIONS if sessions is None else sessions

    def get(self, page_id: str) -> Optional[LessonEditorSession]:
        with _SESSIONS_LOCK:
            return self._sessions.get(page_id)

    async def get_or_load(self, page_id: str) -> LessonEditorSession:
        """
        已有会话直接返回；否则新建并加载，加载成功后才登记。
        并发加载同一页时先完成者登记，后完成者返回已登记的会话。
        """
        existing = self.get(page_id)
        if existing is not None:
            return existing
        session = self._factory(page_id)
        await session.load()
        with _SESSIONS_LOCK:
            existing = self._sessions.get(page_id)
            if existing is not None:
                return existing
            self._sessions[page_id] = session
        return session

    def drop(self, page_id: str) -> None:
        with _SESSIONS_LOCK:
            self._sessions.pop(page_id, None)
