# backend/core/models/__init__.py
# 功能: 模型包入口，导出所有SQLAlchemy模型
# 包含: 所有数据表模型类

"""
数据模型包
导出所有SQLAlchemy模型供其他模块使用
"""

from core.models.base import BaseModel, generate_uuid
from core.models.lesson_page import LessonPage
from core.models.content_module_block import ContentModuleBlock, DB_BLOCK_TYPES
from core.models.metadata_review_log import MetadataReviewLog, REVIEW_ACTIONS

__all__ = [
    # 基础
    "BaseModel",
    "generate_uuid",

    # 课时页面
    "LessonPage",

    # 内容块持久化
    "ContentModuleBlock",
    "DB_BLOCK_TYPES",

    # 元数据复核日志
    "MetadataReviewLog",
    "REVIEW_ACTIONS",
]
