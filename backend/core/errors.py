# backend/core/errors.py
# 功能: 编辑器核心的异常类型
# 主要类: EditorError 及其子类
#   - BlockNotFoundError: 块 / 页面不存在
#   - BlockValidationError: 块内容 / 外观 / 列表操作的参数非法
#   - PersistenceError: 持久化层调用失败
#   - MetadataValidationError: 校验失败（同步拒绝，不发起网络调用）
#   - MetadataTransportError: AI 服务调用失败
#   - WorkflowStateError: 当前状态不允许该操作

"""
编辑器异常

每个异常都带有可直接展示给作者的 message。
API 层负责映射为 HTTPException。
"""


class EditorError(Exception):
    """编辑器异常基类"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class BlockNotFoundError(EditorError):
    pass


class PersistenceError(EditorError):
    pass


class MetadataValidationError(EditorError):
    pass


class MetadataTransportError(EditorError):
    pass


class WorkflowStateError(EditorError):
    pass


class BlockValidationError(EditorError):
    pass
