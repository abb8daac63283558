"""
运行环境分配：空闲端口与临时仓库目录。

分配能力以 EnvironmentAllocator 的形式注入 new_daemon，而不是直接调用全局函数，
测试可以替换为自己的实现以避免并行运行时的端口/目录冲突。
"""

from __future__ import annotations

import socket
import tempfile

from src.harness.config import config
from src.harness.daemon.errors import SetupError


def get_free_port() -> int:
    """向内核申请一个空闲的本地 TCP 端口。"""
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            s.bind(("127.0.0.1", 0))
            return s.getsockname()[1]
    except OSError as e:
        raise SetupError(f"分配空闲端口失败：{e}") from e


class EnvironmentAllocator:
    """为单个节点分配端口与仓库目录的接口。"""

    def free_port(self) -> int:
        raise NotImplementedError

    def repo_dir(self) -> str:
        raise NotImplementedError


class LocalEnvironment(EnvironmentAllocator):
    """默认实现：内核分配端口，系统临时目录下新建仓库目录。"""

    def __init__(self, base_dir: str | None = None, prefix: str | None = None) -> None:
        self._base_dir = base_dir
        self._prefix = prefix or config.repo_dir_prefix
        # 同一个分配器内不重复返回端口
        self._issued: set[int] = set()

    def free_port(self) -> int:
        for _ in range(20):
            port = get_free_port()
            if port not in self._issued:
                self._issued.add(port)
                return port
        raise SetupError("连续多次分配到重复端口")

    def repo_dir(self) -> str:
        try:
            return tempfile.mkdtemp(prefix=self._prefix, dir=self._base_dir)
        except OSError as e:
            raise SetupError(f"创建仓库目录失败：{e}") from e
