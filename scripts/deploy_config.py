# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

"""
Resolve which earlgrey back-end a run targets and where its tools live.

The environment is read exactly once, in resolve(); everything after that
works from the returned BackendConfig.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import os
from pathlib import Path
import site
import sys
from types import MappingProxyType
from typing import Any, Mapping, Optional

import pykwalify.core
import yaml

try:
    from yaml import CSafeLoader as SafeLoader
except ImportError:
    from yaml import SafeLoader

from deploy_errors import ConfigError, MissingConfig

ROOT = Path(__file__).parents[1]

# Where an installed copy keeps the schema and boards, below a prefix
DATA_SUBDIR = Path("share") / "earlgrey-deploy"


def data_path(source: Path, installed: str) -> Path:
    """
    Locate a data file: in the source tree when running from a checkout,
    otherwise under share/earlgrey-deploy of the install prefix.
    """
    if source.exists():
        return source
    for prefix in (Path(sys.prefix), Path(site.getuserbase()), Path(__file__).parent):
        candidate = prefix / DATA_SUBDIR / installed
        if candidate.exists():
            return candidate
    return source


SCHEMA_PATH = data_path(
    Path(__file__).parent / "schemas" / "earlgrey-deploy-schema.yml",
    "schemas/earlgrey-deploy-schema.yml",
)
DEFAULT_BOARD = data_path(
    ROOT / "boards" / "opentitan" / "earlgrey-cw310" / "deploy.yml",
    "boards/opentitan/earlgrey-cw310/deploy.yml",
)

DEFAULT_MACHINE = "opentitan"
DEFAULT_OVERLAY_SECTION = ".apps"

# Values of $VERILATOR that turn simulation on
_TRUE_VALUES = {"yes", "true", "1", "on"}

_logger = logging.getLogger(__name__)


class BackendKind(Enum):
    SIMULATOR = "simulator"
    FPGA = "fpga"
    EMULATOR = "emulator"


# Paths each back-end needs, in the order they are checked
REQUIRED_FIELDS = {
    BackendKind.SIMULATOR: ("verilator", "rom", "otp"),
    BackendKind.FPGA: ("loader",),
    BackendKind.EMULATOR: ("qemu", "boot_rom"),
}


@dataclass(frozen=True)
class BoardSpec:
    name: str
    path: Path
    overlay_section: str
    backends: Mapping[BackendKind, Mapping[str, Any]]

    def template(self, kind: BackendKind, key: str) -> Optional[Any]:
        return self.backends.get(kind, {}).get(key)

    @staticmethod
    def load(path: Path) -> BoardSpec:
        path = Path(path)
        try:
            schema = yaml.load(open(SCHEMA_PATH, "r"), Loader=SafeLoader)
            data = yaml.load(open(path, "r"), Loader=SafeLoader)
            data = pykwalify.core.Core(source_data=data, schema_data=schema).validate()
        except Exception as e:
            raise ConfigError(
                f"Failed to validate {path} against schema {SCHEMA_PATH}: {e}"
            ) from e

        return BoardSpec(
            name=data["name"],
            path=path,
            overlay_section=data.get("overlay_section") or DEFAULT_OVERLAY_SECTION,
            backends=MappingProxyType(
                {kind: dict(data.get(kind.value) or {}) for kind in BackendKind}
            ),
        )


@dataclass(frozen=True)
class BackendConfig:
    kind: BackendKind
    board: BoardSpec
    paths: Mapping[str, Path]
    app: Optional[Path] = None
    work_dir: Optional[Path] = None
    pad_overlay: bool = False
    machine: str = DEFAULT_MACHINE
    app_address: Optional[int] = None
    capture_output: bool = False

    def path(self, name: str) -> Path:
        try:
            return self.paths[name]
        except KeyError:
            raise MissingConfig(name, self.kind.value) from None

    def as_dict(self) -> dict[str, Any]:
        """Plain representation, used by show-config"""
        out: dict[str, Any] = {
            "backend": self.kind.value,
            "board": self.board.name,
            "board_file": str(self.board.path),
        }
        out.update({k: str(v) for k, v in self.paths.items()})
        if self.app is not None:
            out["app"] = str(self.app)
            out["overlay_section"] = self.board.overlay_section
        if self.kind is BackendKind.EMULATOR:
            out["machine"] = self.machine
            if self.app_address is not None:
                out["app_address"] = f"0x{self.app_address:x}"
        if self.work_dir is not None:
            out["work_dir"] = str(self.work_dir)
        return out


def _lookup(
    params: Mapping[str, Any],
    env: Mapping[str, str],
    key: str,
    env_key: Optional[str] = None,
) -> Optional[Any]:
    value = params.get(key)
    if (value is None or value == "") and env_key is not None:
        value = env.get(env_key)
    if value is None or value == "":
        return None
    return value


def simulation_requested(env: Mapping[str, str], params: Mapping[str, Any]) -> bool:
    flag = params.get("simulate")
    if flag is not None:
        return bool(flag)
    return env.get("VERILATOR", "").strip().lower() in _TRUE_VALUES


def select_backend(env: Mapping[str, str], params: Mapping[str, Any]) -> BackendKind:
    if simulation_requested(env, params):
        return BackendKind.SIMULATOR
    if _lookup(params, env, "opentitan_tree", "OPENTITAN_TREE") is not None:
        return BackendKind.FPGA
    return BackendKind.EMULATOR


def _expand(template: str, tokens: Mapping[str, str]) -> Optional[str]:
    # A template that refers to an unset token has no value at all
    for token, value in tokens.items():
        if token in template:
            if not value:
                return None
            template = template.replace(token, value)
    return template


def load_board(env: Mapping[str, str], params: Mapping[str, Any]) -> BoardSpec:
    board = _lookup(params, env, "board", "EARLGREY_DEPLOY_BOARD")
    return BoardSpec.load(Path(board) if board is not None else DEFAULT_BOARD)


def resolve(env: Mapping[str, str], params: Mapping[str, Any]) -> BackendConfig:
    """
    Build the configuration for one run.

    @param env: snapshot of the process environment
    @param params: invocation parameters; None or "" means not given.
        Parameters take precedence over the environment.
    """
    board = load_board(env, params)
    kind = select_backend(env, params)
    tree = _lookup(params, env, "opentitan_tree", "OPENTITAN_TREE")
    tokens = {
        "$OPENTITAN_TREE": str(tree) if tree is not None else "",
        "$BOARD_DIR": str(board.path.parent),
        "$ROOT": str(ROOT),
    }
    _logger.info(f"Selected {kind.value} back-end for board {board.name}")

    paths = {}
    for name in REQUIRED_FIELDS[kind]:
        value = params.get(name)
        if value is None or value == "":
            template = board.template(kind, name)
            value = _expand(str(template), tokens) if template else None
        if value is None or value == "":
            raise MissingConfig(name, kind.value)
        paths[name] = Path(value)
        _logger.debug(f"{name}: {paths[name]}")

    app = _lookup(params, env, "app", "APP")
    app_address = None
    machine = DEFAULT_MACHINE
    if kind is BackendKind.EMULATOR:
        machine = board.template(kind, "machine") or DEFAULT_MACHINE
        if app is not None:
            app_address = _lookup(params, env, "app_address")
            if app_address is None:
                app_address = board.template(kind, "app_address")
            if app_address is None:
                raise MissingConfig("app_address", kind.value)
            if isinstance(app_address, str):
                app_address = int(app_address, 0)

    work_dir = _lookup(params, env, "work_dir")

    return BackendConfig(
        kind=kind,
        board=board,
        paths=MappingProxyType(paths),
        app=Path(app) if app is not None else None,
        work_dir=Path(work_dir) if work_dir is not None else None,
        pad_overlay=bool(params.get("pad_overlay")),
        machine=machine,
        app_address=app_address,
        capture_output=bool(params.get("capture")),
    )


def environment() -> dict[str, str]:
    """Snapshot of the process environment"""
    return dict(os.environ)
