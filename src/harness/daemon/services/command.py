"""
文件功能：
    命令执行器：以子进程方式针对某个节点执行一条 CLI 命令，带截止时间并完整捕获输出。

公开接口：
    - CommandResult: 一次命令执行的结果（只读，内部加锁，可并发读取）
    - run_command(binary, args, repo_dir, cmd_addr, timeout_s, stdin) -> CommandResult
    - run_bare_command(cmd, *opts) -> subprocess.CompletedProcess
      不附加 --repodir/--cmdapiaddr，stdout 与 stderr 合并
    - run_init(*opts) -> subprocess.CompletedProcess

内部方法：
    - _split_args(args) -> list[str]

说明：
    - 退出码只区分 0 和 1，不还原具体的系统退出码。
    - 超时后进程被杀掉，超时前已经输出的内容全部保留。
"""

from __future__ import annotations

import os
import signal
import subprocess
import threading
from typing import Sequence

from loguru import logger

from src.harness.config import config, get_ledger_binary
from src.harness.daemon.errors import CommandAssertionError, DeadlineExceededError

# 超时杀进程后，继续读取剩余输出的最长时间（秒）
DRAIN_TIMEOUT_S = 2.0


class CommandResult:
    """一次 CLI 调用的结果。"""

    def __init__(
        self,
        input: str,
        args: list[str],
        code: int,
        stdout: bytes = b"",
        stderr: bytes = b"",
        error: BaseException | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self._input = input
        self._args = list(args)
        self._code = code
        self._stdout = bytes(stdout)
        self._stderr = bytes(stderr)
        self._error = error

    @property
    def input(self) -> str:
        return self._input

    @property
    def args(self) -> list[str]:
        return list(self._args)

    @property
    def code(self) -> int:
        return self._code

    @property
    def error(self) -> BaseException | None:
        return self._error

    def read_stdout(self) -> str:
        with self._lock:
            return self._stdout.decode("utf-8", errors="replace")

    def read_stderr(self) -> str:
        with self._lock:
            return self._stderr.decode("utf-8", errors="replace")

    def read_stdout_trim_newlines(self) -> str:
        """返回去掉首尾换行的 stdout。"""
        return self.read_stdout().strip("\r\n")

    def describe(self) -> str:
        """命令参数、退出码与两路输出，用于断言失败时的诊断信息。"""
        return (
            f"args={self._args!r} code={self._code} error={self._error!r}\n"
            f"--- stdout ---\n{self.read_stdout()}\n"
            f"--- stderr ---\n{self.read_stderr()}"
        )

    def assert_success(self) -> "CommandResult":
        """断言命令成功：无调用错误、退出码为 0、stderr 不含禁止出现的标记。"""
        if self._error is not None:
            raise CommandAssertionError(f"命令调用失败：{self._error}\n{self.describe()}")
        if self._code != 0:
            raise CommandAssertionError(f"命令退出码非 0\n{self.describe()}")
        stderr = self.read_stderr()
        for marker in config.forbidden_stderr_markers:
            if marker in stderr:
                raise CommandAssertionError(f"stderr 中出现 {marker!r}\n{self.describe()}")
        return self

    def assert_fail(self, err: str) -> "CommandResult":
        """断言命令失败：退出码为 1、stdout 为空，且 stderr 包含 err。"""
        if self._error is not None:
            raise CommandAssertionError(f"命令调用失败：{self._error}\n{self.describe()}")
        if self._code != 1:
            raise CommandAssertionError(f"期望退出码为 1\n{self.describe()}")
        if self.read_stdout():
            raise CommandAssertionError(f"期望 stdout 为空\n{self.describe()}")
        if err not in self.read_stderr():
            raise CommandAssertionError(f"stderr 中未找到 {err!r}\n{self.describe()}")
        return self

    def __repr__(self) -> str:
        return f"CommandResult(args={self._args!r}, code={self._code}, error={self._error!r})"


def _split_args(args: str | Sequence[str]) -> list[str]:
    # 支持 run("cmd subcmd") 的写法
    if isinstance(args, str):
        return args.split()
    args = list(args)
    if len(args) == 1:
        return args[0].split()
    return args


def _kill_group(proc: subprocess.Popen) -> None:
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except ProcessLookupError:
        # 进程组已不存在
        pass
    except OSError as e:
        logger.debug(f"killpg 失败，改为只杀主进程：{e}")
        proc.kill()


def run_command(
    binary: str,
    args: str | Sequence[str],
    *,
    repo_dir: str,
    cmd_addr: str,
    timeout_s: float,
    stdin: str | bytes | None = None,
) -> CommandResult:
    """针对指定仓库与控制地址执行一条命令，阻塞直到进程退出或超时。"""
    tokens = _split_args(args)
    input_line = " ".join(tokens)
    final_args = [*tokens, f"--repodir={repo_dir}", f"--cmdapiaddr={cmd_addr}"]
    logger.debug(f"run: {' '.join(final_args)!r}")

    stdin_bytes = stdin.encode("utf-8") if isinstance(stdin, str) else stdin
    try:
        proc = subprocess.Popen(
            [binary, *final_args],
            stdin=subprocess.PIPE if stdin_bytes is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            # 独立进程组，超时时连同子孙进程一起杀掉
            start_new_session=True,
        )
    except OSError as e:
        logger.debug(f"命令启动失败：{e}")
        return CommandResult(input_line, tokens, code=1, error=e)

    try:
        out, err = proc.communicate(input=stdin_bytes, timeout=timeout_s)
    except subprocess.TimeoutExpired as e:
        _kill_group(proc)
        # 再次 communicate 会返回超时前后累积的全部输出
        try:
            out, err = proc.communicate(timeout=DRAIN_TIMEOUT_S)
        except subprocess.TimeoutExpired as drain:
            logger.warning(f"超时后读取输出仍未结束，放弃剩余输出：pid={proc.pid}")
            out, err = drain.output, drain.stderr
        error = DeadlineExceededError(
            f"context deadline exceeded for command: {' '.join(final_args)!r}"
        )
        error.__cause__ = e
        return CommandResult(input_line, tokens, code=1, stdout=out or b"", stderr=err or b"", error=error)

    code = 0 if proc.returncode == 0 else 1
    return CommandResult(input_line, tokens, code=code, stdout=out or b"", stderr=err or b"")


def run_bare_command(cmd: str, *opts: str) -> subprocess.CompletedProcess:
    """执行 `<binary> <cmd> <opts...>`，stderr 合并到 stdout。"""
    binary = get_ledger_binary()
    return subprocess.run(
        [binary, cmd, *opts],
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        timeout=config.cmd_timeout_s,
        check=False,
    )


def run_init(*opts: str) -> subprocess.CompletedProcess:
    """等价于执行 `<binary> init <opts...>`。"""
    return run_bare_command("init", *opts)
