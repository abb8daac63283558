"""
钱包相关的数据模型定义。
"""

from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Address(BaseModel):
    """
    账户地址。CLI 输出中的地址以字符串形式出现，这里只校验其非空且不含空白。
    """
    model_config = ConfigDict(frozen=True)

    value: str

    @field_validator("value")
    @classmethod
    def check_value(cls, v: str) -> str:
        if not v or any(ch.isspace() for ch in v):
            raise ValueError(f"无效地址: {v!r}")
        return v

    @classmethod
    def from_string(cls, s: str) -> "Address":
        return cls(value=s)

    def __str__(self) -> str:
        return self.value


class Signature(BaseModel):
    """
    签名字节。
    """
    data: bytes


class KeyInfo(BaseModel):
    """
    密钥信息，对应密钥夹具文件的 JSON 内容。
    """
    model_config = ConfigDict(populate_by_name=True)

    private_key: str = Field(alias="privateKey")  # 十六进制编码的私钥
    curve: str = "secp256k1"
