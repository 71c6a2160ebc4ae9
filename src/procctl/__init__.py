"""procctl - run a command and control its whole process tree.

Launches a command through the platform interpreter, streams stdout/stderr
as bytes and UTF-8 text, and supports tree-wide pause/resume and abort.

环境变量:
    PROCCTL_COALESCE_INTERVAL: 输出通知合并间隔 (默认 0.05 秒)
    PROCCTL_START_SETTLE: 启动屏障等待时间 (默认 0.05 秒)
    PROCCTL_READ_SIZE: 每次读取的最大字节数 (默认 65536)
    PROCCTL_LOG_DEBUG: 日志输出到临时文件 (默认 false)

用法:
    python -m procctl -- make -j8
"""

__version__ = "0.1.0"

from .controller import EndedWaitHandle, ProcessController
from .errors import (
    CommandAbortedError,
    CommandFailedError,
    InvalidOperationError,
    OutputReadError,
    ProcCtlError,
    ProcessStartError,
    UnsupportedPlatformError,
)
from .escaping import args_to_command_line, escape_cmd_metachars, join_command
from .fluid import FluidInvoker, InvocationCounter, run, run_raw
from .types import INDEFINITE, RunAsUser, State

__all__ = [
    "__version__",
    "ProcessController",
    "EndedWaitHandle",
    "State",
    "RunAsUser",
    "INDEFINITE",
    "FluidInvoker",
    "InvocationCounter",
    "run",
    "run_raw",
    "args_to_command_line",
    "escape_cmd_metachars",
    "join_command",
    "ProcCtlError",
    "InvalidOperationError",
    "ProcessStartError",
    "OutputReadError",
    "UnsupportedPlatformError",
    "CommandFailedError",
    "CommandAbortedError",
]
