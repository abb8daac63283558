"""
文件功能：
    节点进程管理：持有单个测试节点的子进程、配置与仓库目录，负责启动、存活等待、
    首次启动导入密钥以及关闭（优雅或强制）后清理仓库目录。

公开接口：
    - new_daemon(options, env) -> TestDaemon: 按配置项创建节点（必要时先执行 init），不启动进程
    - TestDaemon.start() / shutdown() / shutdown_success() / shutdown_easy()
    - TestDaemon.run() / run_with_stdin() / run_success() / run_fail()
    - TestDaemon.get_id() / get_address() / connect_success()
    - 链同步与场景辅助方法转发到 convergence 与 scenarios 模块

内部方法：
    - TestDaemon._pump(stream, buf): 后台线程持续读取守护进程输出
    - TestDaemon._signal_and_wait(sig): 发送信号并等待退出，超时则强制杀死

状态流转：
    Configured -> (Initialized) -> Started -> Ready -> Running -> Terminated
    准备阶段任何失败都抛出 SetupError；运行阶段的命令失败以断言错误报告。
"""

from __future__ import annotations

import shutil
import signal
import subprocess
import threading
import tomllib
from functools import partial
from pathlib import Path
from typing import IO, Any, Sequence

from loguru import logger

from src.harness.config import config, genesis_file_path, get_ledger_binary, key_file_paths
from src.harness.daemon.errors import CommandAssertionError, HarnessError, LivenessError, SetupError
from src.harness.daemon.schemas import DaemonOptions, HeadState, NodeIdentity
from . import convergence, scenarios
from .command import CommandResult, run_command, run_init
from .environment import EnvironmentAllocator, LocalEnvironment
from .liveness import wait_for_api


class TestDaemon:
    """管理一个用于测试的账本节点实例。"""

    # 避免 pytest 把它当作测试类收集
    __test__ = False

    def __init__(
        self,
        binary: str,
        cmd_addr: str,
        swarm_addr: str,
        repo_dir: str,
        *,
        cmd_timeout_s: float,
        key_files: Sequence[str] = (),
        mock_mine: bool = True,
        wallet_file: str = "",
        wallet_addr: str = "",
        genesis_file: str = "",
    ) -> None:
        self._binary = binary
        self._cmd_addr = cmd_addr
        self._swarm_addr = swarm_addr
        self._repo_dir = repo_dir
        self._cmd_timeout_s = cmd_timeout_s
        self._key_files = list(key_files)
        self._mock_mine = mock_mine
        self._wallet_file = wallet_file
        self._wallet_addr = wallet_addr
        self._genesis_file = genesis_file
        self._first_run = True

        self._process: subprocess.Popen | None = None
        self._terminated = False
        self._readers: list[threading.Thread] = []
        self._lock = threading.Lock()
        self._stdout = bytearray()
        self._stderr = bytearray()

    # ------------------------------------------------------------------
    # 属性
    # ------------------------------------------------------------------

    @property
    def repo_dir(self) -> str:
        return self._repo_dir

    @property
    def cmd_addr(self) -> str:
        return self._cmd_addr

    @property
    def swarm_addr(self) -> str:
        return self._swarm_addr

    @property
    def cmd_timeout_s(self) -> float:
        return self._cmd_timeout_s

    @property
    def process(self) -> subprocess.Popen | None:
        return self._process

    @property
    def stdin(self) -> IO[bytes] | None:
        return self._process.stdin if self._process is not None else None

    def daemon_args(self) -> list[str]:
        """守护进程的完整启动参数。"""
        args = [
            self._binary,
            "daemon",
            f"--repodir={self._repo_dir}",
            f"--cmdapiaddr={self._cmd_addr}",
            f"--swarmlisten={self._swarm_addr}",
        ]
        if self._mock_mine:
            args.append("--mock-mine")
        return args

    # ------------------------------------------------------------------
    # 生命周期
    # ------------------------------------------------------------------

    def start(self) -> "TestDaemon":
        """启动守护进程，等待控制接口就绪；首次启动时导入密钥文件。"""
        if self._process is not None:
            raise SetupError(f"守护进程已启动，不能重复启动：{self._repo_dir}")

        args = self.daemon_args()
        logger.info(f"启动守护进程：{' '.join(args)}")
        try:
            self._process = subprocess.Popen(
                args,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            raise SetupError(f"守护进程启动失败：{e}") from e

        for stream, buf in ((self._process.stdout, self._stdout), (self._process.stderr, self._stderr)):
            t = threading.Thread(target=self._pump, args=(stream, buf), daemon=True)
            t.start()
            self._readers.append(t)

        proc = self._process
        try:
            wait_for_api(self._cmd_addr, alive=lambda: proc.poll() is None)
        except LivenessError as e:
            self._abort_start()
            raise LivenessError(f"Daemon failed to start: {e}\n--- daemon stderr ---\n{self.read_stderr()}") from e
        logger.info(f"守护进程已就绪：cmd_addr={self._cmd_addr}, pid={proc.pid}")

        if self._first_run:
            try:
                for file in self._key_files:
                    logger.info(f"导入密钥文件：{file}")
                    self.run_success("wallet", "import", file)
            except CommandAssertionError as e:
                self._abort_start()
                raise SetupError(f"导入密钥文件失败：{e}") from e
            self._first_run = False

        return self

    def _abort_start(self) -> None:
        """准备阶段失败：杀死守护进程并删除仓库目录。"""
        self._signal_and_wait(signal.SIGKILL)
        if self._repo_dir:
            shutil.rmtree(self._repo_dir, ignore_errors=True)

    def _pump(self, stream: IO[bytes], buf: bytearray) -> None:
        for chunk in iter(partial(stream.read1, 4096), b""):
            with self._lock:
                buf.extend(chunk)

    def _signal_and_wait(self, sig: int) -> int | None:
        if self._process is None:
            raise HarnessError("守护进程尚未启动")
        proc = self._process
        if proc.poll() is None:
            proc.send_signal(sig)
            try:
                proc.wait(timeout=config.shutdown_wait_s)
            except subprocess.TimeoutExpired:
                logger.warning(f"守护进程在 {config.shutdown_wait_s} 秒内未退出，强制杀死：pid={proc.pid}")
                proc.kill()
                proc.wait()
        for t in self._readers:
            t.join(timeout=1.0)
        if proc.stdin is not None and not proc.stdin.closed:
            try:
                proc.stdin.close()
            except OSError:
                pass
        self._terminated = True
        return proc.returncode

    def _remove_repo_dir(self) -> None:
        if not self._repo_dir:
            raise HarnessError("testdaemon had no repodir set")
        shutil.rmtree(self._repo_dir, ignore_errors=True)

    def shutdown(self) -> None:
        """以 SIGTERM 停止守护进程并删除仓库目录；未启动的节点只删除仓库目录。"""
        if not self._terminated and self._process is not None:
            try:
                self._signal_and_wait(signal.SIGTERM)
            except (OSError, HarnessError) as e:
                logger.error(f"Daemon Stderr:\n{self.read_stderr()}")
                raise HarnessError(f"Failed to kill daemon: {e}") from e
            logger.info(f"守护进程已停止：{self._cmd_addr}")
        self._remove_repo_dir()

    def shutdown_success(self) -> None:
        """以 SIGTERM 停止守护进程，并断言其 stderr 中没有禁止出现的标记。"""
        try:
            self._signal_and_wait(signal.SIGTERM)
            stderr = self.read_stderr()
            for marker in config.forbidden_stderr_markers:
                if marker in stderr:
                    raise CommandAssertionError(f"守护进程 stderr 中出现 {marker!r}\n{stderr}")
        finally:
            self._remove_repo_dir()

    def shutdown_easy(self) -> None:
        """以 SIGINT 停止守护进程，用于观察其优雅退出行为。"""
        try:
            self._signal_and_wait(signal.SIGINT)
        finally:
            self._remove_repo_dir()

    def __enter__(self) -> "TestDaemon":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    # ------------------------------------------------------------------
    # 守护进程自身的输出
    # ------------------------------------------------------------------

    def read_stdout(self) -> str:
        with self._lock:
            return self._stdout.decode("utf-8", errors="replace")

    def read_stderr(self) -> str:
        with self._lock:
            return self._stderr.decode("utf-8", errors="replace")

    # ------------------------------------------------------------------
    # 命令
    # ------------------------------------------------------------------

    def run(self, *args: str) -> CommandResult:
        return self.run_with_stdin(None, *args)

    def run_with_stdin(self, stdin: str | bytes | None, *args: str) -> CommandResult:
        """针对本节点执行命令，可自定义标准输入。"""
        return run_command(
            self._binary,
            args,
            repo_dir=self._repo_dir,
            cmd_addr=self._cmd_addr,
            timeout_s=self._cmd_timeout_s,
            stdin=stdin,
        )

    def run_success(self, *args: str) -> CommandResult:
        return self.run(*args).assert_success()

    def run_fail(self, err: str, *args: str) -> CommandResult:
        return self.run(*args).assert_fail(err)

    def run_success_lines(self, *args: str) -> list[str]:
        return self.run_success(*args).read_stdout_trim_newlines().split("\n")

    def run_success_first_line(self, *args: str) -> str:
        return self.run_success_lines(*args)[0]

    def identity(self) -> NodeIdentity:
        out = self.run_success("id")
        return NodeIdentity.model_validate_json(out.read_stdout())

    def get_id(self) -> str:
        return self.identity().id

    def get_address(self) -> str:
        """返回节点的第一个对外地址。"""
        addresses = self.identity().addresses
        if not addresses:
            raise CommandAssertionError(f"节点没有对外地址：{self._cmd_addr}")
        return addresses[0]

    def connect_success(self, remote: "TestDaemon") -> CommandResult:
        """连接到 remote 节点，并断言双方的 peer 列表都包含对方。"""
        out = self.run_success("swarm", "connect", remote.get_address())
        peers1 = self.run_success("swarm", "peers")
        peers2 = remote.run_success("swarm", "peers")

        remote_id = remote.get_id()
        if remote_id not in peers1.read_stdout():
            raise CommandAssertionError(f"本节点 peer 列表中没有 {remote_id}\n{peers1.describe()}")
        logger.info("[success] 1 -> 2")

        local_id = self.get_id()
        if local_id not in peers2.read_stdout():
            raise CommandAssertionError(f"远端节点 peer 列表中没有 {local_id}\n{peers2.describe()}")
        logger.info("[success] 2 -> 1")
        return out

    def config(self) -> dict[str, Any]:
        """读取仓库目录下的 config.toml。"""
        with (Path(self._repo_dir) / "config.toml").open("rb") as f:
            return tomllib.load(f)

    # ------------------------------------------------------------------
    # 链同步与场景
    # ------------------------------------------------------------------

    def get_chain_head(self) -> list[dict[str, Any]]:
        return convergence.get_chain_head(self)

    def head_state(self) -> HeadState:
        return convergence.get_head_state(self)

    def must_have_chain_head_by(self, wait_s: float, peers: Sequence["TestDaemon"]) -> None:
        convergence.must_have_chain_head_by(self, wait_s, peers)

    def mine_and_propagate(self, wait_s: float, *peers: "TestDaemon") -> None:
        scenarios.mine_and_propagate(self, wait_s, *peers)

    def make_money(self, rewards: int, *peers: "TestDaemon") -> None:
        scenarios.make_money(self, rewards, *peers)

    def create_miner_addr(self, from_addr: str) -> str:
        return scenarios.create_miner_addr(self, from_addr)

    def create_wallet_addr(self) -> str:
        return scenarios.create_wallet_addr(self)

    def wait_for_message_require_success(self, msg_cid: str) -> None:
        scenarios.wait_for_message_require_success(self, msg_cid)

    def make_deal(self, deal_data: str, miner: "TestDaemon", from_addr: str) -> str:
        return scenarios.make_deal(self, deal_data, miner, from_addr)

    def __repr__(self) -> str:
        return f"TestDaemon(cmd_addr={self._cmd_addr!r}, repo_dir={self._repo_dir!r})"


def new_daemon(
    options: DaemonOptions | None = None,
    env: EnvironmentAllocator | None = None,
) -> TestDaemon:
    """按配置项创建 TestDaemon；should_init 为真时先同步执行 init，失败直接抛出 SetupError。"""
    options = options or DaemonOptions()
    env = env or LocalEnvironment()

    binary = get_ledger_binary()
    cmd_addr = options.cmd_addr or f":{env.free_port()}"
    swarm_addr = options.swarm_addr or f"/ip4/127.0.0.1/tcp/{env.free_port()}"
    repo_dir = options.repo_dir or env.repo_dir()
    genesis_file = genesis_file_path() if options.genesis_file is None else options.genesis_file
    key_files = key_file_paths() if options.key_files is None else options.key_files
    cmd_timeout_s = config.cmd_timeout_s if options.cmd_timeout_s is None else options.cmd_timeout_s

    if options.should_init:
        init_flags = [
            f"--repodir={repo_dir}",
            f"--cmdapiaddr={cmd_addr}",
            f"--walletfile={options.wallet_file}",
            f"--walletaddr={options.wallet_addr}",
            f"--testgenesis={'true' if options.wallet_file else 'false'}",
            f"--genesisfile={genesis_file}",
        ]
        try:
            result = run_init(*init_flags)
        except (OSError, subprocess.TimeoutExpired) as e:
            result = None
            error: str = str(e)
        else:
            error = (result.stdout or b"").decode("utf-8", errors="replace")
        if result is None or result.returncode != 0:
            logger.error(f"init 执行失败：\n{error}")
            if options.repo_dir is None:
                shutil.rmtree(repo_dir, ignore_errors=True)
            raise SetupError(f"init 执行失败：{error}")

    return TestDaemon(
        binary,
        cmd_addr,
        swarm_addr,
        repo_dir,
        cmd_timeout_s=cmd_timeout_s,
        key_files=key_files,
        mock_mine=options.mock_mine,
        wallet_file=options.wallet_file,
        wallet_addr=options.wallet_addr,
        genesis_file=genesis_file,
    )
