# backend/api/__init__.py
# 功能: API模块入口
# 注意: 各路由模块在 main.py 中导入注册，这里不做 eager import

"""
FastAPI 路由模块
"""
