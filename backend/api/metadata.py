# backend/api/metadata.py
# 功能: 单个内容块的 AI 元数据工作流 API（生成、复核、逐字段决定、应用修改、清除）
# 主要路由: GET /state, POST /generate, /sanity-check, /decision, /dismiss, /apply-corrections, /clear
# 数据结构: DecisionRequest
# 前缀: /api/lessons/{page_id}/blocks/{block_id}/metadata

"""
元数据工作流 API

工作流状态保存在编辑会话中（每块一个）。
生成 / 应用 / 清除返回更新后的块和可选的提示消息 notice。
"""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from api.lessons import block_to_response, get_registry, http_error, load_session
from core.database import get_db
from core.editor_session import LessonEditorSession, SessionRegistry
from core.errors import EditorError
from core.metadata_review import WorkflowResult

logger = logging.getLogger("api.metadata")

router = APIRouter(
    prefix="/api/lessons/{page_id}/blocks/{block_id}/metadata",
    tags=["metadata"],
)


class DecisionRequest(BaseModel):
    field_name: str
    decision: str  # "accept" / "ignore"


def _state_response(session: LessonEditorSession, block_id: str) -> Dict[str, Any]:
    workflow = session.workflow(block_id)
    return {
        "state": workflow.state.value,
        "review": workflow.review.to_dict() if workflow.review else None,
    }


def _result_response(
    session: LessonEditorSession, block_id: str, result: WorkflowResult
) -> Dict[str, Any]:
    # 请求期间保存可能替换了块 id，状态按结果块的当前 id 读取
    return {
        "block": block_to_response(result.block),
        "notice": result.notice,
        "stale": result.stale,
        **_state_response(session, result.block.id),
    }


@router.get("/state")
async def get_workflow_state(
    page_id: str,
    block_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        return _state_response(session, block_id)
    except EditorError as e:
        raise http_error(e) from e


@router.post("/generate")
async def generate_metadata(
    page_id: str,
    block_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    """请求 AI 生成元数据；人工填写的字段保持不变"""
    session = await load_session(page_id, registry, db)
    try:
        result = await session.generate_metadata(block_id)
        return _result_response(session, block_id, result)
    except EditorError as e:
        logger.warning(f"[metadata] 生成失败 page={page_id} block={block_id}: {e.message}")
        raise http_error(e) from e


@router.post("/sanity-check")
async def run_sanity_check(
    page_id: str,
    block_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        await session.run_sanity_check(block_id)
        return _state_response(session, block_id)
    except EditorError as e:
        logger.warning(f"[metadata] 复核失败 page={page_id} block={block_id}: {e.message}")
        raise http_error(e) from e


@router.post("/decision")
async def set_review_decision(
    page_id: str,
    block_id: str,
    data: DecisionRequest,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        session.set_review_decision(block_id, data.field_name, data.decision)
        return _state_response(session, block_id)
    except EditorError as e:
        raise http_error(e) from e


@router.post("/dismiss")
async def dismiss_review(
    page_id: str,
    block_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        session.dismiss_review(block_id)
        return _state_response(session, block_id)
    except EditorError as e:
        raise http_error(e) from e


@router.post("/apply-corrections")
async def apply_corrections(
    page_id: str,
    block_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        result = await session.apply_corrections(block_id)
        return _result_response(session, block_id, result)
    except EditorError as e:
        logger.warning(f"[metadata] 应用修改失败 page={page_id} block={block_id}: {e.message}")
        raise http_error(e) from e


@router.post("/clear")
async def clear_metadata(
    page_id: str,
    block_id: str,
    registry: SessionRegistry = Depends(get_registry),
    db: Session = Depends(get_db),
):
    session = await load_session(page_id, registry, db)
    try:
        result = await session.clear_metadata(block_id)
        return _result_response(session, block_id, result)
    except EditorError as e:
        raise http_error(e) from e
