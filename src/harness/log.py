"""
日志初始化：用单一 stderr sink 替换 loguru 默认 sink，级别取自配置。
"""

from __future__ import annotations

import sys

from loguru import logger

from src.harness.config import config


def setup_logging(level: str | None = None) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=(level or config.log_level).upper(),
        format="<green>{time:HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | {name}:{line} - {message}",
    )
