"""
测试夹具：假账本 CLI、临时密钥夹具与节点工厂。
"""

import os
import sys
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric import ec

# 允许从项目根导入
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', '..', '..', '..')))

from src.harness.config import config
from src.harness.daemon.services import LocalEnvironment, new_daemon
from src.harness.log import setup_logging
from src.harness.wallet.schemas import KeyInfo

FAKE_LEDGER = Path(__file__).resolve().parent / "fake_ledger.py"

setup_logging("DEBUG")


@pytest.fixture
def ledger_bin(tmp_path, monkeypatch) -> str:
    """生成调用 fake_ledger.py 的可执行脚本，并让配置指向它。"""
    script = tmp_path / "fake-ledger"
    script.write_text(f'#!/bin/sh\nexec "{sys.executable}" "{FAKE_LEDGER}" "$@"\n')
    script.chmod(0o755)
    monkeypatch.setattr(config, "ledger_bin", str(script))
    monkeypatch.setenv("FAKE_LEDGER_NET", str(tmp_path / "net"))
    return str(script)


@pytest.fixture
def key_fixtures(tmp_path, monkeypatch) -> Path:
    """生成 secp256k1 密钥夹具：fixtures/keys/0.key ... 4.key。"""
    fixtures = tmp_path / "fixtures"
    keys_dir = fixtures / "keys"
    keys_dir.mkdir(parents=True)
    for i in range(config.key_file_count):
        key = ec.generate_private_key(ec.SECP256K1())
        ki = KeyInfo(private_key=format(key.private_numbers().private_value, "064x"))
        (keys_dir / f"{i}.key").write_text(ki.model_dump_json(by_alias=True), encoding="utf-8")
    monkeypatch.setattr(config, "fixtures_dir", str(fixtures))
    return fixtures


@pytest.fixture
def daemon_factory(ledger_bin, key_fixtures, tmp_path):
    """创建（默认同时启动）测试节点，测试结束时关闭仍在运行的节点。"""
    created = []
    env = LocalEnvironment(base_dir=str(tmp_path))

    def factory(options=None, start=True):
        td = new_daemon(options, env=env)
        created.append(td)
        return td.start() if start else td

    yield factory

    for td in created:
        if td.process is not None and td.process.poll() is None:
            td.shutdown()
