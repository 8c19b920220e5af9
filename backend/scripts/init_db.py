# backend/scripts/init_db.py
# 功能: 初始化数据库，创建表，可选插入一个演示课时页面
# 主要函数: init_database(), seed_demo_page()
# 用法: python -m scripts.init_db [--demo]

"""
数据库初始化脚本
运行: python -m scripts.init_db
"""

import sys
from pathlib import Path

# 确保可以导入core模块
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.block_codec import db_type_for, media_type_for, to_content_json
from core.block_schema import (
    Block,
    HeadingContent,
    ListItem,
    NumberedListContent,
    ParagraphContent,
)
from core.database import init_db, get_session_maker
from core.models import LessonPage, ContentModuleBlock

DEMO_TITLE = "Demo lesson"


def init_database():
    """创建所有数据库表"""
    print("正在创建数据库表...")
    init_db()
    print("数据库表创建完成！")


def _demo_blocks():
    return [
        Block(content=HeadingContent(heading="Welcome to the lesson")),
        Block(content=ParagraphContent(
            html="<p>This lesson introduces the <strong>core ideas</strong>.</p>"
        )),
        Block(content=NumberedListContent(list_items=[
            ListItem(body="Read the overview", children=[ListItem(body="Take notes")]),
            ListItem(body="Try the exercise"),
            ListItem(body="Reflect on the result"),
        ])),
    ]


def seed_demo_page():
    """插入演示页面（已存在同名页面则跳过）"""
    print("正在插入演示页面...")
    SessionLocal = get_session_maker()
    db = SessionLocal()
    try:
        if db.query(LessonPage).filter(LessonPage.title == DEMO_TITLE).first():
            print("  - 演示页面已存在，跳过")
            return
        page = LessonPage(title=DEMO_TITLE)
        db.add(page)
        db.flush()
        for index, block in enumerate(_demo_blocks()):
            db.add(ContentModuleBlock(
                id=block.id,
                page_id=page.id,
                type=db_type_for(block.type),
                order_index=float(index),
                content_json=to_content_json(block),
                media_type=media_type_for(block.type),
            ))
        db.commit()
        print(f"  - 创建了演示页面 {page.id}")
    except Exception as e:
        db.rollback()
        print(f"错误: {e}")
        raise
    finally:
        db.close()


def main():
    """主函数"""
    print("=" * 50)
    print("课时编辑器 - 数据库初始化")
    print("=" * 50)

    init_database()
    if "--demo" in sys.argv[1:]:
        seed_demo_page()

    print("=" * 50)
    print("初始化完成！")
    print("=" * 50)


if __name__ == "__main__":
    main()
