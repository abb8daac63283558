"""
文件功能：
    链同步协调：以参考节点当前链头为目标，并发轮询各 peer 节点的链头，直到全部一致或超时。

公开接口：
    - ConvergenceSpec: 参考节点 + peer 节点集合 + 等待时间
    - unmarshal_chain(text) -> list[list[dict]]: 解析 `chain ls --enc=json` 的逐行 JSON 输出
    - block_id(block) -> str: 区块标识
    - head_state_of(blocks) -> HeadState
    - get_chain_head(td) / get_head_state(td)
    - must_have_chain_head_by(td, wait_s, peers) / check_convergence(spec)

说明：
    - 参考节点的链头只在开始时读取一次；若参考节点在等待期间继续出块，peer 可能与旧链头一致后即视为完成。
    - 超时后通过 stop 事件通知仍在轮询的线程退出，不会强制中断正在执行的命令。
"""

from __future__ import annotations

import hashlib
import json
import threading
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

from loguru import logger

from src.harness.config import config
from src.harness.daemon.errors import CommandAssertionError, ConvergenceTimeoutError
from src.harness.daemon.schemas import HeadState

if TYPE_CHECKING:
    from .daemon import TestDaemon


@dataclass
class ConvergenceSpec:
    reference: "TestDaemon"
    peers: list["TestDaemon"] = field(default_factory=list)
    wait_s: float = 1.0


def unmarshal_chain(text: str) -> list[list[dict[str, Any]]]:
    """每行是一个 tipset（区块对象数组），第一行为链头。"""
    chain: list[list[dict[str, Any]]] = []
    for line in text.strip("\r\n").splitlines():
        if not line.strip():
            continue
        try:
            blocks = json.loads(line)
        except json.JSONDecodeError as e:
            raise CommandAssertionError(f"无法解析链输出：{e}\n{line}") from e
        if not isinstance(blocks, list):
            raise CommandAssertionError(f"链输出的每一行应为区块数组：{line}")
        chain.append(blocks)
    return chain


def block_id(block: dict[str, Any]) -> str:
    """优先使用区块自带的 cid（字符串或 {"/": ...} 链接形式），否则取规范化 JSON 的 sha256。"""
    for key in ("cid", "Cid", "CID"):
        value = block.get(key)
        if isinstance(value, dict) and "/" in value:
            return str(value["/"])
        if isinstance(value, str) and value:
            return value
    canonical = json.dumps(block, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def head_state_of(blocks: Sequence[dict[str, Any]]) -> HeadState:
    return HeadState(cids=frozenset(block_id(b) for b in blocks))


def get_chain_head(td: "TestDaemon") -> list[dict[str, Any]]:
    """返回节点链头 tipset 中的区块。"""
    out = td.run_success("chain", "ls", "--enc=json")
    chain = unmarshal_chain(out.read_stdout())
    if not chain:
        raise CommandAssertionError(f"链输出为空\n{out.describe()}")
    return chain[0]


def get_head_state(td: "TestDaemon") -> HeadState:
    return head_state_of(get_chain_head(td))


def _poll_until_equal(
    peer: "TestDaemon", expected: HeadState, stop: threading.Event, interval_s: float
) -> None:
    while not stop.is_set():
        if get_head_state(peer) == expected:
            return
        stop.wait(interval_s)


def check_convergence(spec: ConvergenceSpec) -> None:
    """阻塞直到所有 peer 的链头与参考节点一致；超时抛出 ConvergenceTimeoutError。"""
    if not spec.peers:
        return

    expected = get_head_state(spec.reference)
    stop = threading.Event()
    executor = ThreadPoolExecutor(max_workers=len(spec.peers), thread_name_prefix="converge")
    futures = {
        executor.submit(_poll_until_equal, p, expected, stop, config.converge_interval_s): p
        for p in spec.peers
    }
    try:
        done, pending = wait(futures, timeout=spec.wait_s, return_when=FIRST_EXCEPTION)
    finally:
        stop.set()
        executor.shutdown(wait=False, cancel_futures=True)

    for fut in done:
        exc = fut.exception()
        if exc is not None:
            raise exc

    if pending:
        unsynced = [futures[f].cmd_addr for f in pending]
        logger.error(f"等待链同步超时（{spec.wait_s}s），未同步节点：{unsynced}")
        raise ConvergenceTimeoutError(
            f"Timeout waiting for chains to sync; unsynced peers: {unsynced}", pending=unsynced
        )
    logger.info(f"{len(spec.peers)} 个节点已与 {spec.reference.cmd_addr} 的链头一致")


def must_have_chain_head_by(td: "TestDaemon", wait_s: float, peers: Sequence["TestDaemon"]) -> None:
    """确保所有 peers 在 wait_s 秒内与 td 拥有相同的链头。"""
    check_convergence(ConvergenceSpec(reference=td, peers=list(peers), wait_s=wait_s))
