# backend/core/persistence.py
# 功能: 内容块与元数据复核日志的持久化契约及 SQLAlchemy 实现
# 主要类:
#   - PersistenceAdapter: 内容块的加载 / 保存 / 删除 / 清除 AI 原始元数据
#   - SuggestionLog: 复核建议日志（待处理查询 / 记录 / 标记已处理）
#   - SqlPersistenceAdapter, SqlSuggestionLog: 基于 SQLAlchemy Session 的实现
# 数据结构:
#   UpsertBlockParams: 保存单个块的参数（id 缺省 = 新增）

"""
持久化层

每个内容块是独立保存的单元，不提供跨块事务。
所有方法都是 async，调用方统一 await；SQL 实现内部使用同步 Session。
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from core.block_codec import block_from_row, db_type_for
from core.block_schema import Block
from core.database import get_session_maker
from core.errors import BlockNotFoundError, PersistenceError
from core.models import ContentModuleBlock, MetadataReviewLog, generate_uuid

logger = logging.getLogger("persistence")

SANITY_CHECKER = "ai-sanity-checker"


@dataclass
class UpsertBlockParams:
    """保存单个块的参数；id 为 None 时新增并由持久化层分配 id"""
    page_id: str
    type: str
    order_index: float
    content_json: Dict[str, Any]
    id: Optional[str] = None
    learning_goal: Optional[str] = None
    media_type: Optional[str] = None
    is_core: Optional[bool] = None
    difficulty_level: Optional[int] = None
    media_asset_id: Optional[str] = None


class PersistenceAdapter(ABC):
    """内容块持久化契约"""

    @abstractmethod
    async def load_blocks(self, page_id: str) -> List[Block]:
        """按 order_index 升序返回页面的所有块"""

    @abstractmethod
    async def upsert_block(self, params: UpsertBlockParams) -> str:
        """保存块，返回持久化后的 id"""

    @abstractmethod
    async def delete_block(self, block_id: str) -> None:
        ...

    @abstractmethod
    async def clear_raw_ai_metadata(self, block_id: str) -> None:
        ...


class SuggestionLog(ABC):
    """复核建议日志契约"""

    @abstractmethod
    async def pending_suggestions(self, block_id: str) -> List[Dict[str, Any]]:
        """accepted 和 processed 均未设置的建议"""

    @abstractmethod
    async def record_suggestions(
        self,
        block_id: str,
        suggestions: Iterable[Dict[str, Any]],
        created_by: str = SANITY_CHECKER,
    ) -> int:
        ...

    @abstractmethod
    async def mark_processed(self, block_id: str, field_names: List[str], accepted: bool) -> int:
        """把未处理的行标记为 processed（accepted → applied，否则 ignored），返回更新行数"""


SessionFactory = Callable[[], Session]


class _SqlBase:
    def __init__(self, session_factory: Optional[SessionFactory] = None):
        self._session_factory = session_factory or get_session_maker()


class SqlPersistenceAdapter(_SqlBase, PersistenceAdapter):
    """content_module_blocks 表的实现"""

    async def load_blocks(self, page_id: str) -> List[Block]:
        db = self._session_factory()
        try:
            rows = (
                db.query(ContentModuleBlock)
                .filter(ContentModuleBlock.page_id == page_id)
                .order_by(ContentModuleBlock.order_index.asc())
                .all()
            )
            blocks = []
            for row in rows:
                block = block_from_row(row)
                if block is not None:
                    blocks.append(block)
            logger.debug(f"加载页面 {page_id}: {len(blocks)}/{len(rows)} 个内容块")
            return blocks
        except SQLAlchemyError as e:
            logger.error(f"加载内容块失败 page={page_id}: {e}")
            raise PersistenceError("Failed to load lesson blocks.") from e
        finally:
            db.close()

    async def upsert_block(self, params: UpsertBlockParams) -> str:
        db = self._session_factory()
        try:
            row = db.get(ContentModuleBlock, params.id) if params.id else None
            if row is None:
                row = ContentModuleBlock(id=params.id or generate_uuid(), page_id=params.page_id)
                db.add(row)

            row.page_id = params.page_id
            row.type = db_type_for(params.type)
            row.order_index = params.order_index
            row.content_json = params.content_json
            row.learning_goal = params.learning_goal
            row.media_type = params.media_type or "text"
            row.is_core = params.is_core if isinstance(params.is_core, bool) else False
            row.difficulty_level = (
                params.difficulty_level if isinstance(params.difficulty_level, int) else 0
            )
            row.media_asset_id = params.media_asset_id
            db.commit()
            return row.id
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"保存内容块失败 id={params.id}: {e}")
            raise PersistenceError("Error saving lesson. Please try again.") from e
        finally:
            db.close()

    async def delete_block(self, block_id: str) -> None:
        db = self._session_factory()
        try:
            deleted = (
                db.query(ContentModuleBlock)
                .filter(ContentModuleBlock.id == block_id)
                .delete(synchronize_session=False)
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"删除内容块失败 id={block_id}: {e}")
            raise PersistenceError("Failed to delete block. Please try again.") from e
        finally:
            db.close()
        if not deleted:
            raise BlockNotFoundError(f"Block {block_id} not found")

    async def clear_raw_ai_metadata(self, block_id: str) -> None:
        db = self._session_factory()
        try:
            row = db.get(ContentModuleBlock, block_id)
            if row is None:
                raise BlockNotFoundError(f"Block {block_id} not found")
            row.mbl_metadata = None
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"清除 mbl_metadata 失败 id={block_id}: {e}")
            raise PersistenceError("Failed to clear AI metadata.") from e
        finally:
            db.close()


def _suggestion_to_dict(row: MetadataReviewLog) -> Dict[str, Any]:
    return {
        "field_name": row.field_name,
        "original_value": row.original_value,
        "suggested_value": row.suggested_value,
        "reason": row.reason,
        "confidence": row.confidence,
    }


def _as_text(value: Any) -> str:
    return "" if value is None else str(value)


class SqlSuggestionLog(_SqlBase, SuggestionLog):
    """metadata_review_log 表的实现"""

    async def pending_suggestions(self, block_id: str) -> List[Dict[str, Any]]:
        db = self._session_factory()
        try:
            rows = (
                db.query(MetadataReviewLog)
                .filter(
                    MetadataReviewLog.block_id == block_id,
                    MetadataReviewLog.accepted.is_(None),
                    MetadataReviewLog.processed.is_(None),
                )
                .order_by(MetadataReviewLog.created_at.asc())
                .all()
            )
            return [_suggestion_to_dict(row) for row in rows]
        except SQLAlchemyError as e:
            logger.error(f"查询待处理建议失败 block={block_id}: {e}")
            raise PersistenceError("Failed to load pending suggestions.") from e
        finally:
            db.close()

    async def record_suggestions(
        self,
        block_id: str,
        suggestions: Iterable[Dict[str, Any]],
        created_by: str = SANITY_CHECKER,
    ) -> int:
        db = self._session_factory()
        try:
            count = 0
            for suggestion in suggestions:
                if not suggestion.get("field_name"):
                    continue
                confidence = suggestion.get("confidence")
                db.add(MetadataReviewLog(
                    id=generate_uuid(),
                    block_id=block_id,
                    field_name=suggestion["field_name"],
                    original_value=_as_text(suggestion.get("original_value")),
                    suggested_value=_as_text(suggestion.get("suggested_value")),
                    reason=_as_text(suggestion.get("reason")),
                    confidence=confidence if isinstance(confidence, (int, float)) else None,
                    created_by=created_by,
                ))
                count += 1
            db.commit()
            return count
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"记录复核建议失败 block={block_id}: {e}")
            raise PersistenceError("Failed to record suggestions.") from e
        finally:
            db.close()

    async def mark_processed(self, block_id: str, field_names: List[str], accepted: bool) -> int:
        if not field_names:
            return 0
        db = self._session_factory()
        try:
            updated = (
                db.query(MetadataReviewLog)
                .filter(
                    MetadataReviewLog.block_id == block_id,
                    MetadataReviewLog.field_name.in_(field_names),
                    MetadataReviewLog.processed.is_(None),
                )
                .update(
                    {
                        MetadataReviewLog.accepted: accepted,
                        MetadataReviewLog.processed: True,
                        MetadataReviewLog.action: "applied" if accepted else "ignored",
                    },
                    synchronize_session=False,
                )
            )
            db.commit()
            return updated
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"更新复核日志失败 block={block_id}: {e}")
            raise PersistenceError("Failed to update the review log.") from e
        finally:
            db.close()
