# backend/tests/test_models.py
# 功能: 测试数据模型的CRUD操作
# 主要函数: test_*

"""
数据模型测试
验证页面、内容块、复核日志的增删改查与级联
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from core.database import Base
from core.models import (
    LessonPage,
    ContentModuleBlock,
    MetadataReviewLog,
    DB_BLOCK_TYPES,
)


@pytest.fixture
def db_session():
    """创建测试用的内存数据库"""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = SessionLocal()

    yield session

    session.close()


class TestLessonPage:
    """测试课时页面模型"""

    def test_create_with_defaults(self, db_session):
        page = LessonPage()
        db_session.add(page)
        db_session.commit()

        assert page.id is not None
        assert page.title == "Lesson"
        assert page.module_id is None
        assert page.created_at is not None

    def test_to_dict(self, db_session):
        page = LessonPage(title="Breathing basics", module_id="mod-1")
        db_session.add(page)
        db_session.commit()

        data = page.to_dict()
        assert data["title"] == "Breathing basics"
        assert data["module_id"] == "mod-1"
        assert isinstance(data["created_at"], str)


class TestContentModuleBlock:
    """测试内容块持久化行"""

    def test_blocks_ordered_by_order_index(self, db_session):
        page = LessonPage(title="Ordering")
        db_session.add(page)
        db_session.flush()

        for order, text in [(2, "third"), (0, "first"), (1, "second")]:
            db_session.add(ContentModuleBlock(
                page_id=page.id,
                order_index=order,
                content_json={"blockType": "paragraph", "content": text},
            ))
        db_session.commit()
        db_session.refresh(page)

        assert [b.content_json["content"] for b in page.blocks] == ["first", "second", "third"]

    def test_defaults(self, db_session):
        page = LessonPage()
        db_session.add(page)
        db_session.flush()
        row = ContentModuleBlock(page_id=page.id)
        db_session.add(row)
        db_session.commit()

        assert row.type == "text"
        assert row.media_type == "text"
        assert row.difficulty_level == 0
        assert row.is_core is False
        assert row.mbl_metadata is None
        assert row.type in DB_BLOCK_TYPES

    def test_delete_page_cascades(self, db_session):
        page = LessonPage()
        db_session.add(page)
        db_session.flush()
        db_session.add(ContentModuleBlock(page_id=page.id))
        db_session.commit()

        db_session.delete(page)
        db_session.commit()
        assert db_session.query(ContentModuleBlock).count() == 0


class TestMetadataReviewLog:
    """测试复核日志"""

    def test_pending_by_default(self, db_session):
        entry = MetadataReviewLog(
            block_id="blk-1",
            field_name="difficulty",
            original_value="3",
            suggested_value="5",
            reason="Requires analysis.",
            confidence=0.8,
        )
        db_session.add(entry)
        db_session.commit()

        assert entry.created_by == "ai-sanity-checker"
        assert entry.accepted is None
        assert entry.processed is None
        assert entry.action is None
