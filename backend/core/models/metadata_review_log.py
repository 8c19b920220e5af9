# backend/core/models/metadata_review_log.py
# 功能: 持久化元数据复核（sanity check）给出的逐字段建议及其处理状态

from typing import Optional

from sqlalchemy import String, Text, Float, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from core.models.base import BaseModel


# 处理动作
REVIEW_ACTIONS = {
    "applied": "已采纳",
    "ignored": "已忽略",
}


class MetadataReviewLog(BaseModel):
    __tablename__ = "metadata_review_log"

    block_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    field_name: Mapped[str] = mapped_column(String(50), nullable=False)

    original_value: Mapped[str] = mapped_column(Text, default="")
    suggested_value: Mapped[str] = mapped_column(Text, default="")
    reason: Mapped[str] = mapped_column(Text, default="")
    confidence: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    created_by: Mapped[str] = mapped_column(String(50), default="ai-sanity-checker")

    # None = 尚未处理
    accepted: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    processed: Mapped[Optional[bool]] = mapped_column(Boolean, nullable=True)
    action: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
