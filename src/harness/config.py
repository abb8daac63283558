"""
配置加载模块：支持 .env、环境变量、工作目录 config.json（或 CONFIG_FILE 指定）多来源合并。
公开接口：
- Config: 读取配置的设置类
- config: Config 的单例实例
- get_ledger_binary(): 解析账本 CLI 可执行文件路径
- genesis_file_path() / key_file_paths(): 默认创世与密钥夹具路径
内部方法：
- Config.settings_customise_sources: 自定义配置来源顺序
- Config.parse_markers: 将字符串/JSON 解析为 List[str]
"""

from __future__ import annotations

import json
import os
import re
import shutil
from pathlib import Path
from typing import Annotated, Any, Dict, List, Tuple

from pydantic import field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict, PydanticBaseSettingsSource

from src.harness.daemon.errors import SetupError


class Config(BaseSettings):
    ledger_bin: str = "go-filecoin"
    fixtures_dir: str = "fixtures"
    key_file_count: int = 5
    cmd_timeout_s: float = 60.0
    liveness_attempts: int = 100
    liveness_interval_s: float = 0.1
    converge_interval_s: float = 0.1
    shutdown_wait_s: float = 10.0
    repo_dir_prefix: str = "ledger-harness-"
    log_level: str = "INFO"
    forbidden_stderr_markers: Annotated[List[str], NoDecode] = ["CRITICAL", "ERROR", "WARNING", "Error:"]

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("forbidden_stderr_markers", mode="before")
    @classmethod
    def parse_markers(cls, value: Any) -> List[str]:
        """支持从环境变量以 JSON 或分隔符（逗号/分号）解析禁止出现在 stderr 中的标记。"""
        if value is None or value == "":
            return []
        if isinstance(value, list):
            return [str(v) for v in value]
        if isinstance(value, str):
            text = value.strip()
            try:
                loaded = json.loads(text)
                if isinstance(loaded, list):
                    return [str(v) for v in loaded]
            except Exception:
                pass
            # 标记本身可能含空格，这里只按逗号/分号拆分
            return [p.strip() for p in re.split(r"[,;]+", text) if p.strip()]
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """自定义配置来源顺序：入参 > 环境变量 > .env > config.json > secrets。"""

        class JsonFileSettingsSource(PydanticBaseSettingsSource):
            """从工作目录的 config.json（或 CONFIG_FILE 指定路径）加载配置的自定义 Source。"""

            def __init__(self, settings_cls):
                super().__init__(settings_cls)
                self._data: Dict[str, Any] | None = None

            def _load(self) -> None:
                if self._data is not None:
                    return
                cfg_path = os.environ.get("CONFIG_FILE")
                path = Path(cfg_path) if cfg_path else Path.cwd() / "config.json"
                if not path.exists():
                    self._data = {}
                    return
                try:
                    with path.open("r", encoding="utf-8") as f:
                        data = json.load(f)
                    self._data = data if isinstance(data, dict) else {}
                except Exception:
                    self._data = {}

            def __call__(self) -> Dict[str, Any]:
                self._load()
                return dict(self._data or {})

            def get_field_value(self, field, field_name):  # type: ignore[override]
                """为满足抽象基类要求，按字段名返回字段值。"""
                self._load()
                data = self._data or {}
                if field_name in data:
                    return data[field_name], field_name, False
                return None, field_name, False

        return (
            init_settings,
            env_settings,
            dotenv_settings,
            JsonFileSettingsSource(settings_cls),
            file_secret_settings,
        )


config = Config()


def get_ledger_binary() -> str:
    """解析账本 CLI 可执行文件：优先使用已存在的路径，其次在 PATH 中查找。"""
    candidate = config.ledger_bin
    if candidate and Path(candidate).is_file():
        return str(Path(candidate).absolute())
    found = shutil.which(candidate) if candidate else None
    if not found:
        raise SetupError(f"找不到账本 CLI 可执行文件: {candidate!r}")
    return found


def _fixtures_dir() -> Path:
    p = Path(config.fixtures_dir)
    return p if p.is_absolute() else (Path.cwd() / p)


def genesis_file_path() -> str:
    """默认创世文件路径，包含全部测试地址。"""
    return str(_fixtures_dir() / "genesis.car")


def key_file_paths() -> List[str]:
    """默认密钥夹具路径（keys/0.key ... keys/N-1.key）。"""
    keys_dir = _fixtures_dir() / "keys"
    return [str(keys_dir / f"{i}.key") for i in range(config.key_file_count)]
