"""FluidInvoker tests.

Test coverage:
- Success/failure code rules (no processes started)
- Running commands: output, errors, handlers, working directory, environment
- Invocation numbering
- Async execution and cancellation
"""

from __future__ import annotations

import sys
import threading
from pathlib import Path

import anyio
import pytest

from procctl.errors import CommandFailedError
from procctl.escaping import join_command
from procctl.fluid import FluidInvoker, InvocationCounter, default_counter, run, run_raw
from procctl.types import RunAsUser, State


@pytest.fixture
def counter() -> InvocationCounter:
    return InvocationCounter()


def invoker(python_command, code: str, fast_config, counter) -> FluidInvoker:
    return FluidInvoker(python_command(code), config=fast_config, counter=counter)


# =============================================================================
# Exit code rules
# =============================================================================


class TestExitCodeRules:
    """Test is_success() for each combination of success/fail codes."""

    def test_default_only_zero(self):
        fluid = FluidInvoker("cmd")
        assert fluid.is_success(0)
        assert not fluid.is_success(1)
        assert not fluid.is_success(-9)

    def test_success_codes_replace_default(self):
        fluid = FluidInvoker("cmd").success_codes(0, 2)
        assert fluid.is_success(2)
        assert not fluid.is_success(1)

    def test_success_codes_can_exclude_zero(self):
        fluid = FluidInvoker("cmd").success_codes(1)
        assert fluid.is_success(1)
        assert not fluid.is_success(0)

    def test_fail_codes_alone(self):
        """With only fail codes, every other code succeeds."""
        fluid = FluidInvoker("cmd").fail_codes(2, 3)
        assert fluid.is_success(0)
        assert fluid.is_success(1)
        assert not fluid.is_success(2)
        assert not fluid.is_success(3)

    @pytest.mark.parametrize("order", ["success_first", "fail_first"])
    def test_fail_codes_take_precedence(self, order: str):
        fluid = FluidInvoker("cmd")
        if order == "success_first":
            fluid.success_codes(0, 1).fail_codes(1)
        else:
            fluid.fail_codes(1).success_codes(0, 1)
        assert fluid.is_success(0)
        assert not fluid.is_success(1)
        assert not fluid.is_success(2)

    def test_builders_return_self(self, tmp_path: Path):
        fluid = FluidInvoker("cmd")
        assert fluid.in_dir(tmp_path) is fluid
        assert fluid.with_env(A="1") is fluid
        assert fluid.as_user(RunAsUser("someone")) is fluid
        assert fluid.on_stdout_text(print) is fluid
        assert fluid.on_stderr_text(print) is fluid

    def test_build_configures_controller(self, tmp_path: Path):
        """build() returns a configured controller that captures both streams."""
        controller = (
            run_raw("echo hi")
            .in_dir(tmp_path)
            .with_env(A="1")
            .with_env(B="2")
            .build()
        )
        assert controller.state == State.NOT_STARTED
        assert controller.command == "echo hi"
        assert controller.working_directory == tmp_path
        assert controller.environment == {"A": "1", "B": "2"}
        assert controller.capture_entire_stdout
        assert controller.capture_entire_stderr

    def test_run_quotes_arguments(self):
        fluid = run("prog", "two words")
        assert fluid.command == join_command(["prog", "two words"])


# =============================================================================
# Execution
# =============================================================================


class TestGo:
    """Test running commands through the fluent interface."""

    def test_go_get_output_text(self, python_command, fast_config, counter):
        fluid = invoker(python_command, "print('hello')", fast_config, counter)
        assert fluid.go_get_output_text().strip() == "hello"

    def test_go_get_output_bytes(self, python_command, fast_config, counter):
        fluid = invoker(
            python_command, "import sys; sys.stdout.buffer.write(b'\\x00\\xff')", fast_config, counter
        )
        assert fluid.go_get_output() == b"\x00\xff"

    def test_invalid_utf8_replaced(self, python_command, fast_config, counter):
        fluid = invoker(
            python_command, "import sys; sys.stdout.buffer.write(b'a\\xffb')", fast_config, counter
        )
        assert fluid.go_get_output_text() == "a�b"

    def test_unexpected_exit_code_raises(self, python_command, fast_config, counter):
        """A failure carries the exit code and captured output."""
        fluid = invoker(
            python_command,
            "import sys; print('partial'); sys.stderr.write('oops'); sys.exit(4)",
            fast_config,
            counter,
        )
        with pytest.raises(CommandFailedError) as exc_info:
            fluid.go()

        error = exc_info.value
        assert error.exit_code == 4
        assert error.stdout.strip() == b"partial"
        assert error.stderr == b"oops"
        assert "4" in str(error)

    def test_accepted_exit_code(self, python_command, fast_config, counter):
        fluid = invoker(python_command, "import sys; sys.exit(2)", fast_config, counter)
        controller = fluid.success_codes(0, 2).go()
        assert controller.exit_code == 2

    def test_stdin(self, python_command, fast_config, counter):
        fluid = invoker(
            python_command, "import sys; print(sys.stdin.read()[::-1])", fast_config, counter
        )
        assert fluid.go_get_output_text(b"abc").strip() == "cba"

    def test_text_handlers(self, python_command, fast_config, counter):
        out: list[str] = []
        err: list[str] = []
        fluid = invoker(
            python_command,
            "import sys; sys.stdout.write('to out'); sys.stderr.write('to err')",
            fast_config,
            counter,
        )
        fluid.on_stdout_text(out.append).on_stderr_text(err.append).go()
        assert "".join(out) == "to out"
        assert "".join(err) == "to err"

    def test_in_dir_and_env(self, python_command, fast_config, counter, tmp_path: Path):
        fluid = invoker(
            python_command,
            "import os; print(os.getcwd()); print(os.environ['FLUID_VAR'])",
            fast_config,
            counter,
        )
        lines = fluid.in_dir(tmp_path).with_env(FLUID_VAR="set").go_get_output_text().split()
        assert Path(lines[0]).resolve() == tmp_path.resolve()
        assert lines[1] == "set"

    def test_run_with_arguments(self, counter):
        """Arguments with spaces reach the program unchanged."""
        fluid = run(
            sys.executable, "-c", "import sys; print(sys.argv[1])", "a b  c", counter=counter
        )
        assert fluid.go_get_output_text().rstrip("\r\n") == "a b  c"


# =============================================================================
# Invocation numbering
# =============================================================================


class TestInvocationCounter:
    """Test invocation numbering."""

    def test_counter_basics(self, counter):
        assert counter.value == 0
        assert counter.next() == 1
        assert counter.next() == 2
        assert counter.value == 2
        counter.reset()
        assert counter.value == 0

    def test_thread_safe(self, counter):
        def bump():
            for _ in range(1000):
                counter.next()

        threads = [threading.Thread(target=bump) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert counter.value == 8000

    def test_each_run_takes_a_number(self, python_command, fast_config, counter):
        first = invoker(python_command, "pass", fast_config, counter)
        second = invoker(python_command, "pass", fast_config, counter)
        assert first.invocation is None

        first.go()
        second.go()

        assert (first.invocation, second.invocation) == (1, 2)
        assert counter.value == 2

    def test_default_counter_shared(self):
        assert FluidInvoker("cmd")._counter is default_counter
        assert run_raw("cmd")._counter is default_counter


# =============================================================================
# Async
# =============================================================================


class TestGoAsync:
    """Test go_async()."""

    @pytest.mark.asyncio
    async def test_success(self, python_command, fast_config, counter):
        fluid = invoker(python_command, "print('async ok')", fast_config, counter)
        controller = await fluid.go_async()
        assert controller.entire_stdout.strip() == b"async ok"

    @pytest.mark.asyncio
    async def test_failure(self, python_command, fast_config, counter):
        fluid = invoker(python_command, "import sys; sys.exit(9)", fast_config, counter)
        with pytest.raises(CommandFailedError) as exc_info:
            await fluid.go_async()
        assert exc_info.value.exit_code == 9

    @pytest.mark.asyncio
    async def test_cancellation_aborts(self, python_command, fast_config, counter):
        """Cancelling the awaiting task aborts the running command."""
        fluid = invoker(python_command, "import time; time.sleep(30)", fast_config, counter)
        controllers = []
        original_build = fluid.build

        def recording_build():
            controller = original_build()
            controllers.append(controller)
            return controller

        fluid.build = recording_build

        with anyio.move_on_after(0.5):
            await fluid.go_async()

        assert len(controllers) == 1
        controller = controllers[0]
        assert controller.wait(10.0)
        assert controller.state == State.ABORTED
