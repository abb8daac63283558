"""
链同步协调测试。

纯函数部分（解析链输出、区块标识、HeadState 比较）与协调逻辑（通过 monkeypatch 替换链头读取）
不启动进程；最后几个用例用假账本 CLI 跑真实的多节点同步。
"""

import threading
import time
from dataclasses import dataclass

import pytest

from src.harness.config import config
from src.harness.daemon.errors import CommandAssertionError, ConvergenceTimeoutError
from src.harness.daemon.schemas import HeadState
from src.harness.daemon.services import convergence
from src.harness.daemon.services.convergence import (
    ConvergenceSpec,
    block_id,
    check_convergence,
    head_state_of,
    unmarshal_chain,
)


def test_unmarshal_chain_lines():
    text = '[{"cid": "b2"}, {"cid": "b3"}]\n[{"cid": "b1"}]\n\n'
    chain = unmarshal_chain(text)
    assert len(chain) == 2
    assert [b["cid"] for b in chain[0]] == ["b2", "b3"]


def test_unmarshal_chain_invalid():
    with pytest.raises(CommandAssertionError):
        unmarshal_chain("not json\n")
    with pytest.raises(CommandAssertionError):
        unmarshal_chain('{"cid": "b1"}\n')


def test_block_id_forms():
    assert block_id({"cid": {"/": "bafyabc"}}) == "bafyabc"
    assert block_id({"Cid": "bafydef"}) == "bafydef"
    # 没有 cid 字段时按内容计算，与键顺序无关
    assert block_id({"height": 1, "miner": "m"}) == block_id({"miner": "m", "height": 1})
    assert block_id({"height": 1}) != block_id({"height": 2})


def test_head_state_is_order_independent():
    a = head_state_of([{"cid": "x"}, {"cid": "y"}])
    b = head_state_of([{"cid": "y"}, {"cid": "x"}])
    assert a == b
    assert a != head_state_of([{"cid": "x"}])
    assert HeadState(cids=frozenset({"x", "y"})) == a


@dataclass
class FakeNode:
    cmd_addr: str


def _patch_heads(monkeypatch, heads):
    """heads: cmd_addr -> 可调用对象，返回当前 HeadState。"""
    monkeypatch.setattr(convergence, "get_head_state", lambda td: heads[td.cmd_addr]())
    monkeypatch.setattr(config, "converge_interval_s", 0.01)


def test_converged_peers_return_immediately(monkeypatch):
    head = HeadState(cids=frozenset({"h1"}))
    _patch_heads(monkeypatch, {":1": lambda: head, ":2": lambda: head, ":3": lambda: head})
    start = time.monotonic()
    check_convergence(ConvergenceSpec(FakeNode(":1"), [FakeNode(":2"), FakeNode(":3")], wait_s=5))
    assert time.monotonic() - start < 1


def test_peer_catches_up(monkeypatch):
    target = HeadState(cids=frozenset({"h2"}))
    old = HeadState(cids=frozenset({"h1"}))
    calls = {"n": 0}

    def lagging():
        calls["n"] += 1
        return target if calls["n"] >= 3 else old

    _patch_heads(monkeypatch, {":1": lambda: target, ":2": lagging})
    check_convergence(ConvergenceSpec(FakeNode(":1"), [FakeNode(":2")], wait_s=5))
    assert calls["n"] >= 3


def test_reference_head_read_once(monkeypatch):
    reads = {"n": 0}
    first = HeadState(cids=frozenset({"h1"}))

    def reference():
        reads["n"] += 1
        return first if reads["n"] == 1 else HeadState(cids=frozenset({"h9"}))

    _patch_heads(monkeypatch, {":1": reference, ":2": lambda: first})
    check_convergence(ConvergenceSpec(FakeNode(":1"), [FakeNode(":2")], wait_s=5))
    assert reads["n"] == 1


@pytest.mark.parametrize("order", [[":2", ":3"], [":3", ":2"]])
def test_timeout_names_unsynced_peers(monkeypatch, order):
    head = HeadState(cids=frozenset({"h1"}))
    stale = HeadState(cids=frozenset({"h0"}))
    _patch_heads(monkeypatch, {":1": lambda: head, ":2": lambda: head, ":3": lambda: stale})

    start = time.monotonic()
    with pytest.raises(ConvergenceTimeoutError) as ei:
        check_convergence(ConvergenceSpec(FakeNode(":1"), [FakeNode(a) for a in order], wait_s=0.5))
    elapsed = time.monotonic() - start
    assert 0.4 <= elapsed < 3
    assert ei.value.pending == [":3"]
    assert "Timeout waiting for chains to sync" in str(ei.value)


def test_poll_errors_propagate(monkeypatch):
    head = HeadState(cids=frozenset({"h1"}))

    def broken():
        raise CommandAssertionError("chain ls failed")

    _patch_heads(monkeypatch, {":1": lambda: head, ":2": broken})
    with pytest.raises(CommandAssertionError):
        check_convergence(ConvergenceSpec(FakeNode(":1"), [FakeNode(":2")], wait_s=5))


def test_pollers_stop_after_timeout(monkeypatch):
    polls = {"n": 0}
    lock = threading.Lock()
    head = HeadState(cids=frozenset({"h1"}))

    def never():
        with lock:
            polls["n"] += 1
        return HeadState(cids=frozenset({"h0"}))

    _patch_heads(monkeypatch, {":1": lambda: head, ":2": never})
    with pytest.raises(ConvergenceTimeoutError):
        check_convergence(ConvergenceSpec(FakeNode(":1"), [FakeNode(":2")], wait_s=0.2))
    time.sleep(0.1)
    with lock:
        settled = polls["n"]
    time.sleep(0.2)
    assert polls["n"] == settled


def test_empty_peers_is_noop(monkeypatch):
    _patch_heads(monkeypatch, {})
    check_convergence(ConvergenceSpec(FakeNode(":1"), [], wait_s=0.1))


# ---------------------------------------------------------------------------
# 多节点
# ---------------------------------------------------------------------------


def test_fresh_nodes_converge_immediately(daemon_factory):
    a = daemon_factory()
    b = daemon_factory()
    start = time.monotonic()
    a.must_have_chain_head_by(5, [b])
    assert time.monotonic() - start < 4


def test_unconnected_peer_times_out(daemon_factory):
    a = daemon_factory()
    b = daemon_factory()
    a.run_success("mining", "once")

    start = time.monotonic()
    with pytest.raises(ConvergenceTimeoutError):
        a.must_have_chain_head_by(1, [b])
    elapsed = time.monotonic() - start
    assert 0.9 <= elapsed < 5


def test_mined_blocks_propagate(daemon_factory):
    a = daemon_factory()
    b = daemon_factory()
    c = daemon_factory()
    a.connect_success(b)
    a.connect_success(c)
    a.make_money(2, b, c)
    assert a.head_state() == b.head_state() == c.head_state()
    a.must_have_chain_head_by(3, [c, b])
