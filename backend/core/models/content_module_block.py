# backend/core/models/content_module_block.py
# 功能: 内容块的持久化行（每块独立保存）
# 主要类: ContentModuleBlock
# 数据结构:
#   content_json: {blockType, content, metadata, style, animation, animationDuration}
#   mbl_metadata: AI 最近一次返回的原始元数据（展示/审计用）

"""
ContentModuleBlock 模型
内容块的持久化形态。所有文字类内容块在库中的 type 都是 "text"，
真实类型保存在 content_json.blockType 中。
"""

from typing import Optional, Any, TYPE_CHECKING

from sqlalchemy import String, Text, JSON, ForeignKey, Integer, Boolean, Float
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.models.base import BaseModel

if TYPE_CHECKING:
    from core.models.lesson_page import LessonPage


# 库中的内容块类型（文字类统一为 text）
DB_BLOCK_TYPES = {
    "text": "文字类内容块",
    "numbered-list": "编号列表",
    "bullet-list": "项目符号列表",
    "image-centered": "居中图片",
    "image-fullwidth": "通栏图片",
    "image-text": "图文",
    "flashcards": "闪卡",
    "tabs": "选项卡",
    "sorting_activity": "分类排序活动",
}


class ContentModuleBlock(BaseModel):
    """
    内容块持久化行

    Attributes:
        page_id: 所属页面
        type: 库中类型（见 DB_BLOCK_TYPES）
        order_index: 页面内排序
        content_json: 带类型标签的内容 JSON
        learning_goal / media_type / difficulty_level / is_core: 学习分析字段
        media_asset_id: 图片类块引用的媒体资源
        mbl_metadata: AI 原始元数据
    """
    __tablename__ = "content_module_blocks"

    page_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("lesson_pages.id"), nullable=False, index=True
    )
    type: Mapped[str] = mapped_column(String(50), nullable=False, default="text")
    order_index: Mapped[float] = mapped_column(Float, default=0)

    content_json: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    learning_goal: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    media_type: Mapped[str] = mapped_column(String(20), default="text")
    difficulty_level: Mapped[int] = mapped_column(Integer, default=0)
    is_core: Mapped[bool] = mapped_column(Boolean, default=False)
    media_asset_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    mbl_metadata: Mapped[Optional[Any]] = mapped_column(JSON, nullable=True)

    page: Mapped["LessonPage"] = relationship("LessonPage", back_populates="blocks")
