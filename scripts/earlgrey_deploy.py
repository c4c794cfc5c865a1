#!/usr/bin/env python3

# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

"""
Run an earlgrey kernel image on the Verilator simulator, the CW310 FPGA or
QEMU.

The back-end is picked from the environment, the same way the board's cargo
runner does it:

    VERILATOR=yes       Verilator simulation, needs OPENTITAN_TREE
    OPENTITAN_TREE=...  CW310 FPGA, flashed with the OpenTitan loader
    (neither)           QEMU

APP names an application binary. For the simulator and the FPGA it is
written into the kernel's .apps section before flashing; QEMU loads it as a
separate image.
"""

from __future__ import annotations

import argparse
from contextlib import contextmanager
import logging
import os
from pathlib import Path
import shutil
import sys
import tempfile
from typing import Any, Iterator, Mapping, Optional, Tuple

import yaml

from deploy_config import BackendConfig, environment, resolve
from deploy_errors import (
    STAGE_CONFIG,
    STAGE_LAUNCH,
    STAGE_TRANSFORM,
    ConfigError,
    DeployError,
    MalformedImage,
    TransformError,
)
from deploy_runners import BACKEND_RUNNERS, Artifacts, InvocationResult, ProcessRunner
from vmem_image import (
    OVERLAY_SECTION,
    ElfImage,
    FlatBinary,
    MemoryImage,
    transform,
)

VMEM_NAME = "binary.64.vmem"

EXIT_CODES = {
    STAGE_CONFIG: os.EX_CONFIG,
    STAGE_TRANSFORM: os.EX_DATAERR,
    STAGE_LAUNCH: os.EX_UNAVAILABLE,
}

_logger = logging.getLogger(__name__)


def check_work_dir(work_dir: Path, image: Path):
    """
    Refuse a work_dir whose removal would take the image or the current
    directory with it.
    """
    wd = work_dir.resolve()
    for what, pth in (("image", image), ("current directory", Path.cwd())):
        pth = pth.resolve()
        if pth == wd or wd in pth.parents:
            raise ConfigError(
                f"work dir {work_dir} contains the {what} {pth} and cannot be wiped"
            )


@contextmanager
def scratch_dir(work_dir: Optional[Path], prefix: str) -> Iterator[Path]:
    """
    Directory for the artifacts of one run.

    A given work_dir is wiped and recreated so that nothing from a previous
    run is picked up. Without one, a private temporary directory is used
    and removed afterwards.
    """
    if work_dir is not None:
        try:
            if work_dir.is_dir() and not work_dir.is_symlink():
                _logger.info(f"Cleaning up {work_dir}")
                shutil.rmtree(work_dir)
            else:
                _logger.info(f"Setting up {work_dir}")
            work_dir.mkdir(parents=True)
        except OSError as e:
            raise TransformError(f"unable to set up work dir {work_dir}: {e}") from e
        yield work_dir
        return

    try:
        tmp = Path(tempfile.mkdtemp(prefix=prefix))
    except OSError as e:
        raise TransformError(f"unable to create a scratch directory: {e}") from e
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


def read_app(app: Optional[Path]) -> Optional[bytes]:
    if app is None:
        return None
    try:
        return Path(app).read_bytes()
    except OSError as e:
        raise TransformError(f"unable to read application {app}: {e}") from e


def write_artifact(path: Path, artifact):
    """Write an ElfImage, FlatBinary or MemoryImage to path"""
    try:
        if isinstance(artifact, ElfImage):
            Path(path).write_bytes(artifact.raw)
        else:
            artifact.write(path)
    except OSError as e:
        raise TransformError(f"unable to write {path}: {e}") from e


def build_images(
    image: Path, config: BackendConfig
) -> Tuple[ElfImage, FlatBinary, MemoryImage]:
    """Merge the application into the image and flatten it, all in memory"""
    return transform(
        ElfImage.load(image),
        overlay=read_app(config.app),
        section=config.board.overlay_section,
        pad=config.pad_overlay,
    )


def prepare_artifacts(
    images: Tuple[ElfImage, FlatBinary, MemoryImage],
    config: BackendConfig,
    work_dir: Path,
) -> Artifacts:
    """Write the ELF, flat binary and VMEM image into work_dir"""
    elf, flat, mem = images
    elf_path = work_dir / f"{config.board.name}.elf"
    write_artifact(elf_path, elf)
    bin_path = work_dir / f"{config.board.name}.bin"
    write_artifact(bin_path, flat)
    vmem_path = work_dir / VMEM_NAME
    write_artifact(vmem_path, mem)
    _logger.info(f"Wrote {bin_path} and {vmem_path}")

    return Artifacts(image=elf_path, flat_binary=bin_path, memory_image=vmem_path)


def run(
    image: Path,
    env: Mapping[str, str],
    params: Mapping[str, Any],
    runner: Optional[ProcessRunner] = None,
) -> InvocationResult:
    """
    Resolve the back-end, prepare its inputs and run it to completion.

    Errors from any stage are raised as-is and stop the run before the next
    stage starts; nothing is retried.
    """
    config = resolve(env, params)

    image = Path(image)
    if not image.is_file():
        raise MalformedImage(f"image {image} does not exist")

    backend = BACKEND_RUNNERS[config.kind](config, runner)
    if not backend.needs_memory_image:
        return backend.invoke(Artifacts(image=image))

    if config.work_dir is not None:
        check_work_dir(config.work_dir, image)
    # the image is read before the work dir is touched
    images = build_images(image, config)

    prefix = f"{config.board.name}-{config.kind.value}-"
    with scratch_dir(config.work_dir, prefix) as work_dir:
        return backend.invoke(prepare_artifacts(images, config, work_dir))


def invoke_run(args):
    try:
        result = run(args.image, environment(), vars(args))
    except DeployError as e:
        _logger.error(e)
        return EXIT_CODES.get(e.stage, os.EX_SOFTWARE)

    if result.cancelled:
        print(f"Run of {result.command[0]} was cancelled")
    if args.capture:
        sys.stdout.buffer.write(result.stdout or b"")
        sys.stderr.buffer.write(result.stderr or b"")
    return result.exit_status


def invoke_mkvmem(args):
    try:
        _, flat, mem = transform(
            ElfImage.load(args.image),
            overlay=read_app(args.app),
            section=args.section,
            pad=args.pad_overlay,
        )
        write_artifact(args.output, mem)
        print(f"Wrote {len(mem)} byte memory image to {args.output}")
        if args.bin:
            write_artifact(args.bin, flat)
            print(f"Wrote {len(flat)} byte flat binary to {args.bin}")
    except DeployError as e:
        _logger.error(e)
        return EXIT_CODES.get(e.stage, os.EX_SOFTWARE)

    return os.EX_OK


def invoke_show_config(args):
    try:
        config = resolve(environment(), vars(args))
    except DeployError as e:
        _logger.error(e)
        return EXIT_CODES.get(e.stage, os.EX_SOFTWARE)
    print(yaml.safe_dump(config.as_dict(), sort_keys=False), end="")
    return os.EX_OK


def _any_int(value: str) -> int:
    return int(value, 0)


def add_selection_args(parser: argparse.ArgumentParser):
    parser.add_argument(
        "--simulate",
        action="store_const",
        const=True,
        default=None,
        help="use the Verilator simulator (same as VERILATOR=yes)",
    )
    parser.add_argument(
        "--opentitan-tree",
        metavar="DIR",
        type=Path,
        help="OpenTitan checkout (defaults to $OPENTITAN_TREE)",
    )
    parser.add_argument(
        "--app", metavar="APP", type=Path, help="application binary (defaults to $APP)"
    )
    parser.add_argument(
        "--board",
        metavar="FILE",
        type=Path,
        help="board description (defaults to $EARLGREY_DEPLOY_BOARD or earlgrey-cw310)",
    )
    parser.add_argument(
        "--work-dir",
        metavar="DIR",
        type=Path,
        help="directory for generated artifacts, wiped at the start of each run",
    )
    parser.add_argument(
        "--pad-overlay",
        action="store_true",
        help="pad an application smaller than the .apps section with 0xFF",
    )
    tools = parser.add_argument_group("tool overrides")
    for name, desc in (
        ("verilator", "Verilator chip simulation binary"),
        ("rom", "boot ROM memory image for the simulator"),
        ("otp", "OTP memory image for the simulator"),
        ("loader", "CW310 FPGA loader"),
        ("qemu", "qemu-system-riscv32 binary"),
        ("boot-rom", "boot ROM ELF for QEMU"),
    ):
        tools.add_argument(f"--{name}", metavar="FILE", type=Path, help=desc)
    tools.add_argument(
        "--app-address",
        metavar="ADDR",
        type=_any_int,
        help="load address of the application in QEMU",
    )


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Run earlgrey images on the simulator, FPGA or QEMU",
        allow_abbrev=False,
    )
    parser.add_argument(
        "-d",
        "--debug",
        action="count",
        default=0,
        help="Increase debugging verbosity (pass -dd for debug, -d for info)",
    )
    subparsers = parser.add_subparsers()

    run_parser = subparsers.add_parser("run", help="run an image on a back-end")
    run_parser.add_argument("image", metavar="IMAGE", help="kernel ELF", type=Path)
    add_selection_args(run_parser)
    run_parser.add_argument(
        "--capture",
        action="store_true",
        help="capture the tool's output and print it after it exits",
    )
    run_parser.set_defaults(func=invoke_run)

    vmem_parser = subparsers.add_parser(
        "mkvmem", help="convert an image to a 64-bit VMEM file"
    )
    vmem_parser.add_argument("image", metavar="IMAGE", help="kernel ELF", type=Path)
    vmem_parser.add_argument("output", metavar="OUT", help="output VMEM", type=Path)
    vmem_parser.add_argument(
        "--bin", metavar="FILE", type=Path, help="also write the flat binary"
    )
    vmem_parser.add_argument("--app", metavar="APP", type=Path, help="application")
    vmem_parser.add_argument(
        "--section",
        default=OVERLAY_SECTION,
        help=f"section the application is written to (default {OVERLAY_SECTION})",
    )
    vmem_parser.add_argument(
        "--pad-overlay",
        action="store_true",
        help="pad an application smaller than the section with 0xFF",
    )
    vmem_parser.set_defaults(func=invoke_mkvmem)

    config_parser = subparsers.add_parser(
        "show-config", help="print the resolved back-end configuration"
    )
    add_selection_args(config_parser)
    config_parser.set_defaults(func=invoke_show_config)

    args = parser.parse_args(argv)

    if args.debug >= 2:
        logging.basicConfig(level=logging.DEBUG)
    elif args.debug == 1:
        logging.basicConfig(level=logging.INFO)
    else:
        logging.basicConfig(level=logging.WARNING)

    if not hasattr(args, "func"):
        print("No command specified")
        parser.print_help()
        sys.exit(os.EX_USAGE)

    return args


def main(argv=None) -> int:
    args = parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
