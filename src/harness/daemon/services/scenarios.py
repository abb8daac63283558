"""
文件功能：
    场景辅助：由节点管理、命令执行与链同步组合出的多步骤流程。

公开接口：
    - mine_and_propagate(td, wait_s, *peers)
    - make_money(td, rewards, *peers)
    - create_miner_addr(td, from_addr) -> Address
    - create_wallet_addr(td) -> str
    - wait_for_message_require_success(td, msg_cid)
    - make_deal(td, deal_data, miner, from_addr) -> str
"""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

from loguru import logger
from pydantic import ValidationError

from src.harness.daemon.errors import CommandAssertionError
from src.harness.daemon.schemas import MessageReceipt
from src.harness.wallet.schemas import Address

if TYPE_CHECKING:
    from .daemon import TestDaemon

# 矿工区块传播到其他节点的等待时间
PROPAGATION_WAIT_S = 3.0


def mine_and_propagate(td: "TestDaemon", wait_s: float, *peers: "TestDaemon") -> None:
    """出一个块，并确保所有 peers 的链头与 td 一致。"""
    td.run_success("mining", "once")
    if not peers:
        return
    td.must_have_chain_head_by(wait_s, list(peers))


def make_money(td: "TestDaemon", rewards: int, *peers: "TestDaemon") -> None:
    """连续出块 rewards 次获取奖励，每次都等待传播到 peers。"""
    for _ in range(rewards):
        mine_and_propagate(td, 1.0, *peers)


def create_miner_addr(td: "TestDaemon", from_addr: str) -> Address:
    """发送创建矿工的消息，出块打包后返回新矿工地址。

    等价于：`<binary> miner create --from <from_addr> 1000000 1000`
    """
    # 需要余额
    td.run_success("mining", "once")

    with ThreadPoolExecutor(max_workers=1, thread_name_prefix="miner-create") as ex:
        fut = ex.submit(td.run_success, "miner", "create", "--from", from_addr, "1000000", "1000")
        # 消息池确认收到 miner create 的消息后才出块
        td.run_success("mpool", "--wait-for-count=1")
        td.run_success("mining", "once")
        miner = fut.result()

    try:
        addr = Address.from_string(miner.read_stdout_trim_newlines())
    except ValidationError as e:
        raise CommandAssertionError(f"miner create 返回的地址无效：{e}\n{miner.describe()}") from e
    logger.info(f"已创建矿工：{addr}")
    return addr


def create_wallet_addr(td: "TestDaemon") -> str:
    """在节点钱包中新建一个地址并返回。

    等价于：`<binary> wallet addrs new`
    """
    out = td.run_success("wallet", "addrs", "new")
    addr = out.read_stdout_trim_newlines()
    if not addr:
        raise CommandAssertionError(f"wallet addrs new 未返回地址\n{out.describe()}")
    return addr


def wait_for_message_require_success(td: "TestDaemon", msg_cid: str) -> None:
    """阻塞直到消息被打包进区块，并断言其回执退出码为 0。"""
    out = td.run_success("message", "wait", msg_cid, "--receipt=true", "--message=false")
    try:
        receipt = MessageReceipt.model_validate_json(out.read_stdout_trim_newlines())
    except ValidationError as e:
        raise CommandAssertionError(f"无法解析消息回执：{e}\n{out.describe()}") from e
    if receipt.exit_code != 0:
        raise CommandAssertionError(f"消息 {msg_cid} 执行失败，退出码 {receipt.exit_code}")


def make_deal(td: "TestDaemon", deal_data: str, miner: "TestDaemon", from_addr: str) -> str:
    """与 miner 节点就 deal_data 达成存储交易，返回 deal_data 的 cid。"""
    # 双方各需要两次出块奖励
    td.make_money(2)
    miner.make_money(2)

    m = create_miner_addr(miner, from_addr)

    ask = miner.run_success("miner", "add-ask", "--from", from_addr, str(m), "1200", "1")
    miner.mine_and_propagate(PROPAGATION_WAIT_S, td)
    miner.run_success("message", "wait", "--return", ask.read_stdout().strip())

    td.run_success("client", "add-bid", "--from", from_addr, "500", "1")
    td.mine_and_propagate(PROPAGATION_WAIT_S, miner)

    imported = td.run_with_stdin(deal_data, "client", "import").assert_success()
    data_cid = imported.read_stdout().strip()

    proposal = td.run_success("client", "propose-deal", "--ask=0", "--bid=0", data_cid)

    miner.mine_and_propagate(PROPAGATION_WAIT_S, td)

    lines = proposal.read_stdout().split("\n")
    try:
        negid = lines[1].split(" ")[1]
    except IndexError as e:
        raise CommandAssertionError(f"无法解析交易协商 ID\n{proposal.describe()}") from e
    # 确认交易已建立
    td.run_success("client", "query-deal", negid)
    logger.info(f"交易已建立：data={data_cid}, negid={negid}")
    return data_cid
