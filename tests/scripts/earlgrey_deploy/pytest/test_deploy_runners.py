# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

import os
import signal
import sys
import threading
import time
from pathlib import Path

import pytest

TEST_ROOT = Path(__file__).parent.resolve()
MODULE_ROOT = TEST_ROOT.parents[3]

sys.path.append(str(MODULE_ROOT / "scripts"))

import deploy_runners  # noqa: E402
from deploy_config import BackendKind, resolve  # noqa: E402
from deploy_errors import LaunchError  # noqa: E402
from deploy_runners import Artifacts, InvocationResult, ProcessRunner  # noqa: E402
from fake_runner import RecordingRunner  # noqa: E402

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="needs POSIX signals")


def python(code: str) -> list:
    return [sys.executable, "-c", code]


def test_exit_status_is_propagated():
    result = ProcessRunner().run(python("import sys; sys.exit(3)"))

    assert result.returncode == 3
    assert result.exit_status == 3
    assert not result.success
    assert result.signal is None
    assert not result.cancelled


def test_output_capture():
    result = ProcessRunner(capture_output=True).run(
        python("import sys; print('hello'); print('oops', file=sys.stderr)")
    )

    assert result.success
    assert result.stdout.strip() == b"hello"
    assert result.stderr.strip() == b"oops"


def test_missing_tool(tmp_path: Path):
    with pytest.raises(LaunchError) as e:
        ProcessRunner().run([tmp_path / "no-such-simulator", "--meminit=rom,x"])

    assert e.value.tool == str(tmp_path / "no-such-simulator")
    assert str(e.value).startswith("[launch]")


@posix_only
def test_tool_not_executable(tmp_path: Path):
    tool = tmp_path / "loader.py"
    tool.write_text("#!/bin/sh\nexit 0\n")
    tool.chmod(0o644)

    with pytest.raises(LaunchError):
        ProcessRunner().run([tool, "--firmware", "binary"])


@posix_only
def test_killed_by_signal():
    result = ProcessRunner().run(
        python("import os, signal; os.kill(os.getpid(), signal.SIGTERM)")
    )

    assert result.signal == signal.SIGTERM
    assert result.exit_status == 128 + signal.SIGTERM
    assert not result.success
    assert not result.cancelled


@posix_only
def test_cancellation_terminates_the_child():
    cancel = threading.Event()
    timer = threading.Timer(0.2, cancel.set)
    timer.start()
    start = time.monotonic()
    try:
        result = ProcessRunner(cancel_event=cancel, poll_interval=0.05).run(
            python("import time; time.sleep(60)")
        )
    finally:
        timer.cancel()

    assert result.cancelled
    assert not result.success
    assert result.signal == signal.SIGTERM
    assert time.monotonic() - start < 30


class InterruptingEvent:
    """Behaves as if Ctrl-C arrived while the runner was waiting"""

    def is_set(self):
        raise KeyboardInterrupt


@posix_only
def test_keyboard_interrupt_terminates_the_child():
    result = ProcessRunner(cancel_event=InterruptingEvent(), poll_interval=0.05).run(
        python("import time; time.sleep(60)")
    )

    assert result.cancelled
    assert result.signal == signal.SIGTERM


@posix_only
def test_child_ignoring_sigterm_is_killed(tmp_path: Path, caplog):
    ready = tmp_path / "ready"
    code = (
        "import pathlib, signal, time; "
        "signal.signal(signal.SIGTERM, signal.SIG_IGN); "
        f"pathlib.Path({str(ready)!r}).touch(); "
        "time.sleep(60)"
    )
    cancel = threading.Event()

    def cancel_when_ready():
        deadline = time.monotonic() + 30
        while not ready.exists() and time.monotonic() < deadline:
            time.sleep(0.01)
        cancel.set()

    threading.Thread(target=cancel_when_ready, daemon=True).start()
    result = ProcessRunner(
        cancel_event=cancel, poll_interval=0.05, kill_timeout=0.2
    ).run(python(code))

    assert result.cancelled
    assert result.signal == signal.SIGKILL
    assert result.exit_status == 128 + signal.SIGKILL
    assert "ignored SIGTERM" in caplog.text


def test_result_exit_status():
    assert InvocationResult(command=["x"], returncode=0).success
    assert InvocationResult(command=["x"], returncode=-9).exit_status == 137
    assert not InvocationResult(command=["x"], returncode=0, cancelled=True).success


def test_every_backend_has_a_runner():
    assert set(deploy_runners.BACKEND_RUNNERS) == set(BackendKind)
    assert not deploy_runners.BACKEND_RUNNERS[BackendKind.EMULATOR].needs_memory_image
    assert deploy_runners.BACKEND_RUNNERS[BackendKind.SIMULATOR].needs_memory_image
    assert deploy_runners.BACKEND_RUNNERS[BackendKind.FPGA].needs_memory_image


def test_simulator_command():
    config = resolve({"VERILATOR": "yes", "OPENTITAN_TREE": "/ot"}, {})
    runner = RecordingRunner(returncode=1)
    artifacts = Artifacts(
        image=Path("/w/earlgrey-cw310.elf"),
        flat_binary=Path("/w/earlgrey-cw310.bin"),
        memory_image=Path("/w/binary.64.vmem"),
    )

    result = deploy_runners.invoke(BackendKind.SIMULATOR, config, artifacts, runner)

    assert result.returncode == 1
    assert runner.commands == [
        [
            str(config.path("verilator")),
            f"--meminit=rom,{config.path('rom')}",
            "--meminit=flash,/w/binary.64.vmem",
            f"--meminit=otp,{config.path('otp')}",
        ]
    ]


def test_fpga_command():
    config = resolve({"OPENTITAN_TREE": "/ot"}, {})
    runner = RecordingRunner()
    artifacts = Artifacts(
        image=Path("/w/earlgrey-cw310.elf"),
        flat_binary=Path("/w/earlgrey-cw310.bin"),
        memory_image=Path("/w/binary.64.vmem"),
    )

    deploy_runners.invoke(BackendKind.FPGA, config, artifacts, runner)

    assert runner.commands == [
        ["/ot/util/fpga/cw310_loader.py", "--firmware", "/w/earlgrey-cw310.bin"]
    ]


def test_emulator_command():
    config = resolve({}, {"qemu": "/q/qemu-system-riscv32", "boot_rom": "/q/rom.elf"})
    runner = RecordingRunner()

    deploy_runners.invoke(
        BackendKind.EMULATOR, config, Artifacts(image=Path("/k/kernel.elf")), runner
    )

    assert runner.commands == [
        [
            "/q/qemu-system-riscv32",
            "-M",
            "opentitan",
            "-nographic",
            "-serial",
            "stdio",
            "-monitor",
            "none",
            "-semihosting",
            "-bios",
            "/q/rom.elf",
            "-kernel",
            "/k/kernel.elf",
        ]
    ]


def test_emulator_loads_the_application_separately():
    config = resolve(
        {"APP": "/apps/blink.tbf"},
        {"qemu": "/q/qemu-system-riscv32", "boot_rom": "/q/rom.elf"},
    )
    runner = RecordingRunner()

    deploy_runners.invoke(
        BackendKind.EMULATOR, config, Artifacts(image=Path("/k/kernel.elf")), runner
    )

    assert runner.commands[0][-4:] == [
        "-kernel",
        "/k/kernel.elf",
        "-device",
        "loader,file=/apps/blink.tbf,addr=0x20030000",
    ]


def test_runner_rejects_other_backends():
    config = resolve({}, {})

    with pytest.raises(ValueError):
        deploy_runners.FpgaRunner(config, RecordingRunner())


def test_hardware_backends_need_artifacts():
    config = resolve({"OPENTITAN_TREE": "/ot"}, {})

    with pytest.raises(ValueError):
        deploy_runners.FpgaRunner(config, RecordingRunner()).command(
            Artifacts(image=Path("/k/kernel.elf"))
        )


@posix_only
def test_real_process_through_backend(tmp_path: Path):
    loader = tmp_path / "cw310_loader.py"
    loader.write_text("#!/bin/sh\necho \"$@\"\nexit 4\n")
    loader.chmod(0o755)
    config = resolve({"OPENTITAN_TREE": "/ot"}, {"loader": loader, "capture": True})
    artifacts = Artifacts(
        image=Path("/w/earlgrey-cw310.elf"), flat_binary=Path("/w/earlgrey-cw310.bin")
    )

    result = deploy_runners.invoke(BackendKind.FPGA, config, artifacts)

    assert result.returncode == 4
    assert result.stdout.strip() == b"--firmware /w/earlgrey-cw310.bin"
    assert os.path.basename(result.command[0]) == "cw310_loader.py"
