"""领域异常定义。

权限拒绝不在此列：授权器把拒绝收敛为 `Deny` 结果，
只有传输层才会把它转换为异常或错误字符串。
"""


class FalconError(Exception):
    """服务内领域异常基类。"""


class InfrastructureError(FalconError):
    """权限/工具/数据源存储不可用。

    表示“无法校验”，必须与“已校验且拒绝”区分开。
    """


class ToolNotFound(FalconError):
    """工具不存在或当前用户不可见。"""


class BridgeAccessDenied(FalconError):
    """桥接调用被授权器拒绝。"""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"access denied: {reason}")


class BridgeExecutionError(FalconError):
    """授权通过后执行器返回的错误，原样透传给沙箱调用方。"""
