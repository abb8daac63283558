"""
测试节点管理服务模块集合。

此包包含命令执行、存活探测、节点进程管理、链同步协调与场景辅助的实现，按功能拆分以提高可维护性。
"""

from .command import CommandResult, run_command, run_init
from .convergence import ConvergenceSpec, check_convergence, must_have_chain_head_by
from .daemon import TestDaemon, new_daemon
from .environment import EnvironmentAllocator, LocalEnvironment
from .liveness import wait_for_api

__all__ = [
    "CommandResult",
    "run_command",
    "run_init",
    "ConvergenceSpec",
    "check_convergence",
    "must_have_chain_head_by",
    "TestDaemon",
    "new_daemon",
    "EnvironmentAllocator",
    "LocalEnvironment",
    "wait_for_api",
]
