# backend/core/database.py
# 功能: 数据库连接管理
# 主要函数: get_engine(), get_session_maker(), init_db(), get_db()
# 数据结构: Base (SQLAlchemy declarative base)

"""
数据库连接管理模块
使用 SQLAlchemy 2.0 声明式模型
"""

import os

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from core.config import settings


class Base(DeclarativeBase):
    """SQLAlchemy 声明式基类"""
    pass


_engine = None


def get_engine():
    """
    获取数据库引擎（进程内复用）
    SQLite使用StaticPool确保单连接（适合本地单用户）
    """
    global _engine
    if _engine is None:
        _ensure_sqlite_dir(settings.database_url)
        connect_args = {"check_same_thread": False}
        _engine = create_engine(
            settings.database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=False,
        )
    return _engine


def _ensure_sqlite_dir(database_url: str) -> None:
    """sqlite:///./data/x.db 这类文件库需要目录先存在"""
    prefix = "sqlite:///"
    if not database_url.startswith(prefix) or ":memory:" in database_url:
        return
    directory = os.path.dirname(database_url[len(prefix):])
    if directory:
        os.makedirs(directory, exist_ok=True)


def get_session_maker():
    """获取Session工厂"""
    engine = get_engine()
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db():
    """初始化数据库（创建所有表）"""
    engine = get_engine()
    # 导入所有模型以确保它们被注册
    from core import models  # noqa
    Base.metadata.create_all(bind=engine)
    _ensure_content_module_block_columns(engine)
    _ensure_review_log_columns(engine)


def _ensure_content_module_block_columns(engine) -> None:
    """兼容旧库：为 content_module_blocks 补齐后加的列。"""
    new_columns = {
        "media_asset_id": "VARCHAR(36)",
        "mbl_metadata": "JSON",
    }
    _add_missing_columns(engine, "content_module_blocks", new_columns)


def _ensure_review_log_columns(engine) -> None:
    """兼容旧库：metadata_review_log 的处理状态列是后加的。"""
    new_columns = {
        "accepted": "BOOLEAN",
        "processed": "BOOLEAN",
        "action": "VARCHAR(20)",
    }
    _add_missing_columns(engine, "metadata_review_log", new_columns)


def _add_missing_columns(engine, table: str, columns: dict[str, str]) -> None:
    """通用：检查并补齐缺失列。columns = {col_name: col_definition}"""
    if engine.dialect.name != "sqlite":
        return
    with engine.begin() as conn:
        rows = conn.execute(text(f"PRAGMA table_info({table})")).fetchall()
        existing = {row[1] for row in rows}
        for col_name, col_def in columns.items():
            if col_name not in existing:
                conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {col_name} {col_def}"))


# 依赖注入用的Session生成器
def get_db():
    """FastAPI依赖: 获取数据库Session"""
    SessionLocal = get_session_maker()
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
