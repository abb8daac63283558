"""
钱包存储后端接口。

框架本身不实现这些接口，只通过 `wallet import`、`wallet addrs new` 等 CLI 命令间接使用；
此处定义的是这些命令背后存储后端需要具备的能力。
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from .schemas import Address, KeyInfo, Signature


class Backend(ABC):
    """可保存多个地址的存储后端。"""

    @abstractmethod
    def addresses(self) -> list[Address]:
        """返回后端当前保存的全部地址。"""

    @abstractmethod
    def has_address(self, addr: Address) -> bool:
        """后端是否保存了该地址。"""

    @abstractmethod
    def sign_bytes(self, data: bytes, addr: Address) -> Signature:
        """用 addr 对应的私钥对 data 签名。"""

    @abstractmethod
    def verify(self, data: bytes, pk: bytes, sig: Signature) -> bool:
        """验证 sig 是否为公钥 pk 对 data 的签名。"""

    @abstractmethod
    def ecrecover(self, data: bytes, sig: Signature) -> bytes:
        """从签名中恢复出可能产生该签名的非压缩公钥。

        返回的公钥不能用来证明 data 合法，一个公钥可能对应多个私钥。
        """

    @abstractmethod
    def get_key_info(self, addr: Address) -> KeyInfo:
        """返回 addr 对应的密钥信息；地址不存在时抛出 KeyError。"""


class Importer(ABC):
    """可以把新密钥导入持久存储的后端。磁盘钱包可以，硬件钱包通常不行。"""

    @abstractmethod
    def import_key(self, ki: KeyInfo) -> Address:
        """导入密钥并返回其地址。"""
