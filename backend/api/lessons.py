# backend/api/lessons.py
# 功能: 课时页面编辑 API：页面创建/读取、内容块增删改移、列表项操作、元数据人工编辑、保存、搜索、面板
# 主要路由: /api/lessons, /{page_id}, /{page_id}/blocks/*, /{page_id}/save, /{page_id}/search
# 数据结构: PageCreate, BlockInsertRequest, BlockMoveRequest, ContentUpdateRequest,
#   AppearanceUpdateRequest, MetadataEditRequest, ListItemRequest, SearchRequest
# 依赖注入: get_registry() 返回进程内 SessionRegistry，测试中通过 dependency_overrides 替换

"""
课时编辑 API

编辑操作作用在服务端的编辑会话上（一页一个），只有 /save 才写库；
删除是例外，已保存的块会立即从库中删除。
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlalchemy.orm import Session

from core.database import get_db, get_session_maker
from core.errors import (
    EditorError,
    BlockNotFoundError,
    BlockValidationError,
    MetadataValidationError,
    WorkflowStateError,
)
from core.ai_metadata_service import LLMMetadataService
from core.block_schema import Block
from core.editor_session import LessonEditorSession, SessionRegistry
from core.models import LessonPage
from core.persistence import SqlPersistenceAdapter, SqlSuggestionLog

logger = logging.getLogger("api.lessons")

router = APIRouter(prefix="/api/lessons", tags=["lessons"])


# ============== 依赖 ==============

def _create_session(page_id: str) -> LessonEditorSession:
    session_maker = get_session_maker()
    suggestion_log = SqlSuggestionLog(session_maker)
    return LessonEditorSession(
        page_id,
        persistence=SqlPersistenceAdapter(session_maker),
        service=LLMMetadataService(session_maker, suggestion_log),
        suggestion_log=suggestion_log,
    )


_registry = SessionRegistry(_create_session)


def get_registry() -> SessionRegistry:
    return _registry


def http_error(e: EditorError) -> HTTPException:
    """核心异常 → HTTPException（detail 为可直接展示的消息）"""
    if isinstance(e, (BlockValidationError, MetadataValidationError)):
        status_code = 400
    elif isinstance(e, BlockNotFoundError):
        status_code = 404
    elif isinstance(e, WorkflowStateError):
        status_code = 409
    else:
        status_code = 502
    return HTTPException(status_code=status_code, detail=e.message)


async def load_session(page_id: str, registry: SessionRegistry, db: Session) -> LessonEditorSession:
    """页面必须存在；会话不存在时从库中加载"""
    if db.get(LessonPage, page_id) is None:
        raise HTTPException(status_code=404, detail="Lesson page not found")
    try:
        return await registry.get_or_load(page_id)
    except EditorError as e:
        raise http_error(e) from e


# ============== Schemas ==============

class PageCreate(BaseModel):
    """创建课时页面请求"""
    title: str = "Lesson"
    module_id: Optional[str] = None


class BlockInsertRequest(BaseModel):
    """插入内容块；index 为空时使用插入菜单记住的位置，仍为空则追加"""
    block_type: str
    index: Optional[int] = None


class InsertMenuRequest(BaseModel):
    index: Optional[int] = None


class BlockMoveRequest(BaseModel):
    direction: str  # "up" / "down"


class ContentUpdateRequest(BaseModel):
    changes: Dict[str, Any]


class AppearanceUpdateRequest(BaseModel):
    changes: Dict[str, Any]


class MetadataEditRequest(BaseModel):
    """作者直接修改的元数据字段（snake_case）"""
    changes: Dict[str, Any]


class ListItemRequest(BaseModel):
    """列表项定位：index 为一级项，child_index 为其下的二级项"""
    index: int = 0
    child_index: Optional[int] = None
    body: Optional[str] = None


class SearchRequest(BaseModel):
    query: str


def block_to_response(block: Block) -> Dict[str, Any]:
    data = block.model_dump(mode="json")
    data["type"] = block.type
    return data


def session_to_response(session: LessonEditorSession) -> Dict[str, Any]:
    return {
        "page_id": session.page_id,
        "blocks": [block_to_response(block) for block in session.blocks],
        "has_unsaved_changes": session.has_unsaved_changes,
        "pending_insert_index": session.pending_insert_index,
        "open_metadata_panel_id": session.open_metadata_panel_id,
        "open_appearance_panel_id": session.open_appearance_panel_id,
    }


# ============== 页面 ==============

@router.post("/", status_code=201)
def create_page(data: PageCreate, db: Session = Depends(get_db)):
    """创建课时页面"""
    page = LessonPage(title=data.title, module_id=data.module_id)
    db.add(page)
    db.commit()
    db.refresh(page)
    logger.info(f"[lessons] 创建课时页面 {page.id} title={page.title}")
    return page.to_dict()


@router.get("/{page_id}")
async def get_page(
    page_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    """获取页面及其编辑会话状态"""
    session = await load_session(page_id, registry, db)
    page = db.get(LessonPage, page_id)
    return {"page": page.to_dict(), **session_to_response(session)}


@router.post("/{page_id}/reload")
async def reload_page(
    page_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    """丢弃未保存的修改，从库中重新加载"""
    registry.drop(page_id)
    session = await load_session(page_id, registry, db)
    return session_to_response(session)


# ============== 内容块 ==============

@router.get("/{page_id}/blocks")
async def list_blocks(
    page_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    return [block_to_response(block) for block in session.blocks]


@router.post("/{page_id}/insert-menu")
async def open_insert_menu(
    page_id: str,
    data: InsertMenuRequest,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    """记住插入位置（插入菜单打开）"""
    session = await load_session(page_id, registry, db)
    session.open_insert_menu(data.index)
    return {"pending_insert_index": session.pending_insert_index}


@router.post("/{page_id}/blocks", status_code=201)
async def insert_block(
    page_id: str,
    data: BlockInsertRequest,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        block = session.insert_block(data.block_type, data.index)
    except EditorError as e:
        raise http_error(e) from e
    return {"block": block_to_response(block), **session_to_response(session)}


@router.put("/{page_id}/blocks/{block_id}/content")
async def update_block_content(
    page_id: str,
    block_id: str,
    data: ContentUpdateRequest,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        block = session.update_content(block_id, data.changes)
    except EditorError as e:
        raise http_error(e) from e
    return block_to_response(block)


@router.put("/{page_id}/blocks/{block_id}/appearance")
async def update_block_appearance(
    page_id: str,
    block_id: str,
    data: AppearanceUpdateRequest,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        block = session.update_appearance(block_id, data.changes)
    except EditorError as e:
        raise http_error(e) from e
    return block_to_response(block)


@router.put("/{page_id}/blocks/{block_id}/metadata")
async def edit_block_metadata(
    page_id: str,
    block_id: str,
    data: MetadataEditRequest,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    """人工编辑元数据字段"""
    session = await load_session(page_id, registry, db)
    try:
        block = session.edit_metadata(block_id, data.changes)
    except EditorError as e:
        raise http_error(e) from e
    return block_to_response(block)


@router.post("/{page_id}/blocks/{block_id}/move")
async def move_block(
    page_id: str,
    block_id: str,
    data: BlockMoveRequest,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    if data.direction not in ("up", "down"):
        raise HTTPException(status_code=400, detail="direction must be 'up' or 'down'")
    session = await load_session(page_id, registry, db)
    try:
        session.move_block(block_id, data.direction)
    except EditorError as e:
        raise http_error(e) from e
    return session_to_response(session)


@router.post("/{page_id}/blocks/{block_id}/duplicate", status_code=201)
async def duplicate_block(
    page_id: str,
    block_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        block = session.duplicate_block(block_id)
    except EditorError as e:
        raise http_error(e) from e
    return {"block": block_to_response(block), **session_to_response(session)}


@router.delete("/{page_id}/blocks/{block_id}")
async def delete_block(
    page_id: str,
    block_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    """删除内容块；已保存的块先从库中删除，失败时内存序列不变"""
    session = await load_session(page_id, registry, db)
    try:
        await session.delete_block(block_id)
    except EditorError as e:
        raise http_error(e) from e
    return session_to_response(session)


# ============== 列表项 ==============

@router.post("/{page_id}/blocks/{block_id}/list/indent")
async def indent_list_item(
    page_id: str,
    block_id: str,
    data: ListItemRequest,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    """把第 index 项缩进为上一项的子项"""
    session = await load_session(page_id, registry, db)
    try:
        block = session.indent_item(block_id, data.index)
    except EditorError as e:
        raise http_error(e) from e
    return block_to_response(block)


@router.post("/{page_id}/blocks/{block_id}/list/outdent")
async def outdent_list_item(
    page_id: str,
    block_id: str,
    data: ListItemRequest,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    """把 index 项下的第 child_index 个子项提升为一级项"""
    if data.child_index is None:
        raise HTTPException(status_code=400, detail="child_index is required")
    session = await load_session(page_id, registry, db)
    try:
        block = session.outdent_item(block_id, data.index, data.child_index)
    except EditorError as e:
        raise http_error(e) from e
    return block_to_response(block)


@router.post("/{page_id}/blocks/{block_id}/list/items")
async def add_list_item(
    page_id: str,
    block_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        block = session.add_list_item(block_id)
    except EditorError as e:
        raise http_error(e) from e
    return block_to_response(block)


@router.post("/{page_id}/blocks/{block_id}/list/children")
async def add_child_list_item(
    page_id: str,
    block_id: str,
    data: ListItemRequest,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        block = session.add_child_item(block_id, data.index)
    except EditorError as e:
        raise http_error(e) from e
    return block_to_response(block)


@router.post("/{page_id}/blocks/{block_id}/list/remove")
async def remove_list_item(
    page_id: str,
    block_id: str,
    data: ListItemRequest,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    """删除一级项（child_index 为空）或子项；只剩一项时不删除"""
    session = await load_session(page_id, registry, db)
    try:
        if data.child_index is None:
            block = session.remove_list_item(block_id, data.index)
        else:
            block = session.remove_child_item(block_id, data.index, data.child_index)
    except EditorError as e:
        raise http_error(e) from e
    return block_to_response(block)


@router.put("/{page_id}/blocks/{block_id}/list/items")
async def update_list_item(
    page_id: str,
    block_id: str,
    data: ListItemRequest,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    if data.body is None:
        raise HTTPException(status_code=400, detail="body is required")
    session = await load_session(page_id, registry, db)
    try:
        block = session.update_list_item(block_id, data.index, data.body, data.child_index)
    except EditorError as e:
        raise http_error(e) from e
    return block_to_response(block)


# ============== 面板 ==============

@router.post("/{page_id}/blocks/{block_id}/panels/metadata")
async def toggle_metadata_panel(
    page_id: str,
    block_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        open_id = session.toggle_metadata_panel(block_id)
    except EditorError as e:
        raise http_error(e) from e
    return {"open_metadata_panel_id": open_id}


@router.post("/{page_id}/blocks/{block_id}/panels/appearance")
async def toggle_appearance_panel(
    page_id: str,
    block_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        open_id = session.toggle_appearance_panel(block_id)
    except EditorError as e:
        raise http_error(e) from e
    return {"open_appearance_panel_id": open_id}


# ============== 保存 / 搜索 ==============

@router.post("/{page_id}/save")
async def save_page(
    page_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        message = await session.save()
    except EditorError as e:
        raise http_error(e) from e
    return {"message": message, **session_to_response(session)}


@router.post("/{page_id}/search")
async def search_blocks(
    page_id: str,
    data: SearchRequest,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    """按纯文本搜索块；被更新的搜索取代时 superseded 为 true，block_ids 为空"""
    session = await load_session(page_id, registry, db)
    outcome = await session.search(data.query)
    return {
        "query": data.query,
        "superseded": outcome.superseded,
        "block_ids": [] if outcome.superseded else outcome.value,
    }
