# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

"""
Launch the earlgrey back-ends: the Verilator simulator, the CW310 FPGA
loader and QEMU.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import subprocess
import threading
from typing import Optional, Sequence

from deploy_config import BackendConfig, BackendKind
from deploy_errors import LaunchError

_logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InvocationResult:
    command: Sequence[str]
    returncode: int
    stdout: Optional[bytes] = None
    stderr: Optional[bytes] = None
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.cancelled

    @property
    def signal(self) -> Optional[int]:
        """Signal that terminated the process, if it did not exit on its own"""
        if self.returncode < 0:
            return -self.returncode
        return None

    @property
    def exit_status(self) -> int:
        # Same convention as the shell for processes killed by a signal
        if self.signal is not None:
            return 128 + self.signal
        return self.returncode


@dataclass(frozen=True)
class Artifacts:
    image: Path
    flat_binary: Optional[Path] = None
    memory_image: Optional[Path] = None


class ProcessRunner:
    """
    Runs one external tool to completion.

    There is no timeout: simulations can run for a very long time. The child
    is terminated when cancel_event is set or on KeyboardInterrupt.
    """

    def __init__(
        self,
        capture_output: bool = False,
        cancel_event: Optional[threading.Event] = None,
        poll_interval: float = 0.5,
        kill_timeout: float = 5.0,
    ):
        self.capture_output = capture_output
        self.cancel_event = cancel_event
        self.poll_interval = poll_interval
        self.kill_timeout = kill_timeout

    def run(self, cmd: Sequence[str], cwd: Optional[Path] = None) -> InvocationResult:
        cmd = [str(arg) for arg in cmd]
        _logger.debug(f"Running {cmd}")
        pipe = subprocess.PIPE if self.capture_output else None
        try:
            proc = subprocess.Popen(cmd, cwd=cwd, stdout=pipe, stderr=pipe)
        except OSError as e:
            raise LaunchError(cmd[0], e.strerror or str(e)) from e

        try:
            while True:
                try:
                    stdout, stderr = proc.communicate(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if self.cancel_event is not None and self.cancel_event.is_set():
                        return self._cancel(proc, cmd)
        except KeyboardInterrupt:
            _logger.warning(f"Caught SIGINT, stopping {cmd[0]}")
            return self._cancel(proc, cmd)

        _logger.debug(f"{cmd[0]} exited with {proc.returncode}")
        return InvocationResult(
            command=cmd, returncode=proc.returncode, stdout=stdout, stderr=stderr
        )

    def _cancel(self, proc: subprocess.Popen, cmd: list[str]) -> InvocationResult:
        proc.terminate()
        try:
            stdout, stderr = proc.communicate(timeout=self.kill_timeout)
        except subprocess.TimeoutExpired:
            _logger.warning(f"{cmd[0]} ignored SIGTERM, killing it")
            proc.kill()
            stdout, stderr = proc.communicate()
        return InvocationResult(
            command=cmd,
            returncode=proc.returncode,
            stdout=stdout,
            stderr=stderr,
            cancelled=True,
        )


class BackendRunner:
    """
    Builds the command line for one back-end and runs it.

    Subclasses set kind, and needs_memory_image when the back-end consumes
    the flat binary / VMEM artifacts rather than the ELF itself.
    """

    kind: BackendKind
    needs_memory_image = True

    def __init__(self, config: BackendConfig, runner: Optional[ProcessRunner] = None):
        if config.kind is not self.kind:
            raise ValueError(
                f"{self.__class__.__name__} cannot run a {config.kind.value} config"
            )
        self.config = config
        self.runner = runner or ProcessRunner(capture_output=config.capture_output)

    def command(self, artifacts: Artifacts) -> list[str]:
        raise NotImplementedError

    def invoke(self, artifacts: Artifacts) -> InvocationResult:
        cmd = self.command(artifacts)
        _logger.info(f"Launching {self.kind.value}: {cmd[0]}")
        result = self.runner.run(cmd)
        if result.cancelled:
            _logger.warning(f"{self.kind.value} run was cancelled")
        elif result.signal is not None:
            _logger.error(f"{cmd[0]} was killed by signal {result.signal}")
        elif not result.success:
            _logger.error(f"{cmd[0]} exited with status {result.returncode}")
        return result


class SimulatorRunner(BackendRunner):
    kind = BackendKind.SIMULATOR

    def command(self, artifacts: Artifacts) -> list[str]:
        if artifacts.memory_image is None:
            raise ValueError("the simulator needs a memory image")
        return [
            str(self.config.path("verilator")),
            f"--meminit=rom,{self.config.path('rom')}",
            f"--meminit=flash,{artifacts.memory_image}",
            f"--meminit=otp,{self.config.path('otp')}",
        ]


class FpgaRunner(BackendRunner):
    kind = BackendKind.FPGA

    def command(self, artifacts: Artifacts) -> list[str]:
        if artifacts.flat_binary is None:
            raise ValueError("the FPGA loader needs a flat binary")
        return [str(self.config.path("loader")), "--firmware", str(artifacts.flat_binary)]


class EmulatorRunner(BackendRunner):
    kind = BackendKind.EMULATOR
    # QEMU loads the ELF directly
    needs_memory_image = False

    def command(self, artifacts: Artifacts) -> list[str]:
        cmd = [
            str(self.config.path("qemu")),
            "-M",
            self.config.machine,
            "-nographic",
            "-serial",
            "stdio",
            "-monitor",
            "none",
            "-semihosting",
            "-bios",
            str(self.config.path("boot_rom")),
            "-kernel",
            str(artifacts.image),
        ]
        if self.config.app is not None:
            cmd += [
                "-device",
                f"loader,file={self.config.app},addr=0x{self.config.app_address:x}",
            ]
        return cmd


BACKEND_RUNNERS = {
    runner.kind: runner for runner in (SimulatorRunner, FpgaRunner, EmulatorRunner)
}

_missing = set(BackendKind) - set(BACKEND_RUNNERS)
if _missing:
    raise ImportError(f"no runner registered for {sorted(k.value for k in _missing)}")


def invoke(
    kind: BackendKind,
    config: BackendConfig,
    artifacts: Artifacts,
    runner: Optional[ProcessRunner] = None,
) -> InvocationResult:
    return BACKEND_RUNNERS[kind](config, runner).invoke(artifacts)
