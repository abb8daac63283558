"""
文件功能：
    定义测试守护进程相关的公开数据模型（Pydantic）。

公开接口：
    - DaemonOptions: 守护进程配置项（替代函数式选项），未填写的字段在构造时取默认值
    - NodeIdentity: `id` 命令与 /api/id 返回的节点身份
    - HeadState: 链头区块标识集合，比较时按集合相等
    - MessageReceipt: `message wait --receipt=true` 返回的消息回执

内部方法：
    无
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field


class DaemonOptions(BaseModel):
    """守护进程配置项。为 None 的字段由 new_daemon 按环境与全局配置补齐。"""

    cmd_addr: str | None = Field(default=None, description="控制接口地址，如 :34567；默认分配空闲端口")
    swarm_addr: str | None = Field(default=None, description="P2P 监听地址；默认 /ip4/127.0.0.1/tcp/<空闲端口>")
    repo_dir: str | None = Field(default=None, description="仓库目录，由该节点独占，关闭时删除；默认新建临时目录")
    should_init: bool = Field(default=True, description="启动守护进程前是否先执行 init")
    cmd_timeout_s: float | None = Field(default=None, description="单条命令的超时时间（秒）")
    wallet_file: str = Field(default="", description="init 使用的钱包文件")
    wallet_addr: str = Field(default="", description="init 使用的钱包地址")
    genesis_file: str | None = Field(default=None, description="创世文件；默认使用夹具中的创世文件")
    key_files: list[str] | None = Field(default=None, description="首次启动时导入的密钥文件；默认五个夹具密钥")
    mock_mine: bool = Field(default=True, description="是否以 --mock-mine 启动，无需有效的存储市场即可出块")


class NodeIdentity(BaseModel):
    """节点身份。"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(alias="ID", description="节点 ID")
    addresses: list[str] = Field(default_factory=list, alias="Addresses", description="节点对外地址，有序")


class HeadState(BaseModel):
    """链头状态：当前链头 tipset 内各区块标识组成的集合。"""

    model_config = ConfigDict(frozen=True)

    cids: frozenset[str] = Field(default_factory=frozenset, description="区块标识集合")


class MessageReceipt(BaseModel):
    """消息回执。"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    exit_code: int = Field(alias="exitCode", description="消息执行退出码，0 表示成功")
    return_value: list | None = Field(default=None, alias="return", description="消息返回值")
