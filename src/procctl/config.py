"""procctl 环境变量配置管理。

环境变量:
    PROCCTL_COALESCE_INTERVAL: 输出通知的合并间隔（秒）
        - 默认 0.05 秒
        - 限制在 0-1 秒范围，0 表示每次读取都立即通知

    PROCCTL_START_SETTLE: start() 之后的启动屏障等待时间（秒）
        - 默认 0.05 秒
        - 保证 start() 之后立即调用 pause() 能作用到真实进程

    PROCCTL_READ_SIZE: 每次读取的最大字节数
        - 默认 65536

    PROCCTL_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config"]

DEFAULT_COALESCE_INTERVAL = 0.05
DEFAULT_START_SETTLE = 0.05
DEFAULT_READ_SIZE = 64 * 1024


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_seconds(value: str | None, default: float) -> float:
    """解析秒数环境变量，限制在 0-1 秒范围。"""
    if not value:
        return default
    try:
        seconds = float(value)
        return max(0.0, min(seconds, 1.0))
    except ValueError:
        return default


def _parse_read_size(value: str | None) -> int:
    """解析读取块大小环境变量。"""
    if not value:
        return DEFAULT_READ_SIZE
    try:
        return max(1, int(value))
    except ValueError:
        return DEFAULT_READ_SIZE


@dataclass
class Config:
    """procctl 配置。

    Attributes:
        coalesce_interval: 输出通知的合并间隔（秒）
        start_settle: 启动屏障等待时间（秒）
        read_size: 每次读取的最大字节数
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
    """

    coalesce_interval: float = DEFAULT_COALESCE_INTERVAL
    start_settle: float = DEFAULT_START_SETTLE
    read_size: int = DEFAULT_READ_SIZE
    log_debug: bool = False
    log_file: str | None = None

    def __repr__(self) -> str:
        return (
            f"Config(coalesce_interval={self.coalesce_interval}, "
            f"start_settle={self.start_settle}, "
            f"read_size={self.read_size}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file})"
        )


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "procctl"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"procctl_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("PROCCTL_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        coalesce_interval=_parse_seconds(
            os.environ.get("PROCCTL_COALESCE_INTERVAL"),
            DEFAULT_COALESCE_INTERVAL,
        ),
        start_settle=_parse_seconds(
            os.environ.get("PROCCTL_START_SETTLE"),
            DEFAULT_START_SETTLE,
        ),
        read_size=_parse_read_size(os.environ.get("PROCCTL_READ_SIZE")),
        log_debug=log_debug,
        log_file=log_file,
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
