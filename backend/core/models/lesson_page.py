# backend/core/models/lesson_page.py
# 功能: 课时页面模型，内容块的容器
# 主要类: LessonPage

"""
LessonPage 模型
一个课时页面持有一组按 order_index 排序的内容块
"""

from typing import Optional, List, TYPE_CHECKING

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.models.base import BaseModel

if TYPE_CHECKING:
    from core.models.content_module_block import ContentModuleBlock


class LessonPage(BaseModel):
    """
    课时页面

    Attributes:
        title: 页面标题
        module_id: 所属课程模块（外部系统的 ID，可为空）
    """
    __tablename__ = "lesson_pages"

    title: Mapped[str] = mapped_column(String(200), nullable=False, default="Lesson")
    module_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)

    blocks: Mapped[List["ContentModuleBlock"]] = relationship(
        "ContentModuleBlock",
        back_populates="page",
        order_by="ContentModuleBlock.order_index",
        cascade="all, delete-orphan",
    )
