"""
存活探测：轮询节点控制接口 /api/id，直到返回包含 ID 字段的 JSON 或重试次数用尽。
"""

from __future__ import annotations

import time
from typing import Callable

import httpx
from loguru import logger

from src.harness.config import config
from src.harness.daemon.errors import LivenessError


def api_url(cmd_addr: str, path: str = "/api/id") -> str:
    """由控制地址拼出 HTTP 地址；形如 :1234 的地址补全为 127.0.0.1。"""
    host = f"127.0.0.1{cmd_addr}" if cmd_addr.startswith(":") else cmd_addr
    return f"http://{host}{path}"


def _try_api_check(client: httpx.Client, url: str) -> None:
    resp = client.get(url)
    try:
        out = resp.json()
    except ValueError as e:
        raise ValueError(f"liveness check failed: {e}") from e
    if not isinstance(out, dict) or "ID" not in out:
        raise ValueError("liveness check failed: ID field not present in output")


def wait_for_api(
    cmd_addr: str,
    attempts: int | None = None,
    interval_s: float | None = None,
    client: httpx.Client | None = None,
    alive: Callable[[], bool] | None = None,
) -> None:
    """阻塞直到节点控制接口可用；预算用尽时抛出 LivenessError。

    单次探测失败（连接被拒、响应体无法解析、缺少 ID 字段）只记录 debug 日志后重试。
    传入 alive 时，每次探测失败后检查被探测的进程，已退出则立即失败。
    """
    attempts = config.liveness_attempts if attempts is None else attempts
    interval_s = config.liveness_interval_s if interval_s is None else interval_s
    url = api_url(cmd_addr)

    owns_client = client is None
    # 本地节点探测不走代理
    client = client or httpx.Client(timeout=max(interval_s, 1.0), trust_env=False)
    try:
        for i in range(attempts):
            try:
                _try_api_check(client, url)
                return
            except (httpx.HTTPError, ValueError) as e:
                logger.debug(f"存活探测第 {i + 1} 次失败：{url} {e}")
            if alive is not None and not alive():
                logger.error(f"被探测的进程已退出：{url}")
                raise LivenessError(f"node exited before coming online (after {i + 1} attempts)")
            if i + 1 < attempts:
                time.sleep(interval_s)
    finally:
        if owns_client:
            client.close()

    budget = attempts * interval_s
    logger.error(f"节点在 {budget:.1f} 秒内未能上线：{url}")
    raise LivenessError(f"node failed to come online in given time period ({budget:.1f} seconds)")
