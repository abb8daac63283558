"""
测试守护进程相关的异常定义。

- 准备阶段（二进制缺失、端口分配、init、进程启动、存活探测）失败属于致命错误，继承 RuntimeError。
- 命令断言与链同步超时属于测试断言失败，继承 AssertionError，便于 pytest 直接报告。
"""


class HarnessError(RuntimeError):
    """测试框架内部错误的基类。"""


class SetupError(HarnessError):
    """节点准备阶段失败，测试无法继续。"""


class LivenessError(SetupError):
    """节点控制接口在重试预算内未能就绪。"""


class DeadlineExceededError(HarnessError):
    """命令在截止时间前未退出；记录在 CommandResult.error 中而不是直接抛出。"""


class CommandAssertionError(AssertionError):
    """命令的退出码、stdout 或 stderr 不符合预期。"""


class ConvergenceTimeoutError(AssertionError):
    """在等待时间内各节点的链头未能一致。"""

    def __init__(self, message: str, pending: list[str] | None = None):
        super().__init__(message)
        self.pending = pending or []
