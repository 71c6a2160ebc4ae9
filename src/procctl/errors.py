"""procctl 异常类。

所有异常都继承自 ProcCtlError，便于调用方统一捕获。
"""

from __future__ import annotations

__all__ = [
    "ProcCtlError",
    "InvalidOperationError",
    "ProcessStartError",
    "OutputReadError",
    "UnsupportedPlatformError",
    "CommandFailedError",
    "CommandAbortedError",
]


class ProcCtlError(Exception):
    """procctl 基础异常。"""
    pass


class InvalidOperationError(ProcCtlError, RuntimeError):
    """在当前状态下不允许的调用（例如启动后修改配置、退出前读取 exit_code）。"""
    pass


class ProcessStartError(ProcCtlError):
    """子进程创建失败。

    Attributes:
        command: 尝试执行的命令
    """

    def __init__(self, command: str, message: str) -> None:
        self.command = command
        super().__init__(f"Failed to start {command!r}: {message}")


class OutputReadError(ProcCtlError):
    """读取 stdout/stderr 时发生 I/O 错误，输出可能不完整。

    Attributes:
        stream_name: 流名称 (stdout/stderr)
    """

    def __init__(self, stream_name: str, message: str) -> None:
        self.stream_name = stream_name
        super().__init__(f"Error reading {stream_name}: {message}")


class UnsupportedPlatformError(ProcCtlError):
    """当前平台不支持请求的功能。"""
    pass


class CommandFailedError(ProcCtlError):
    """命令以非预期的退出码结束（仅 fluid 层抛出）。

    Attributes:
        command: 执行的命令
        exit_code: 退出码
        stdout: 捕获的 stdout
        stderr: 捕获的 stderr
    """

    def __init__(
        self,
        command: str,
        exit_code: int,
        stdout: bytes = b"",
        stderr: bytes = b"",
    ) -> None:
        self.command = command
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(f"Command {command!r} exited with unexpected code {exit_code}")


class CommandAbortedError(ProcCtlError):
    """命令被中止，没有退出码（仅 fluid 层抛出）。"""

    def __init__(self, command: str) -> None:
        self.command = command
        super().__init__(f"Command {command!r} was aborted")
