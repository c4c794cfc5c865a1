# Copyright (c) 2025 Tenstorrent AI ULC
# SPDX-License-Identifier: Apache-2.0

"""
Errors raised while deploying an image to one of the earlgrey back-ends.

Every error carries the stage it was raised from so that the CLI can report
where a run stopped without a traceback.
"""

STAGE_CONFIG = "config"
STAGE_TRANSFORM = "transform"
STAGE_LAUNCH = "launch"


class DeployError(Exception):
    stage = "deploy"

    def __str__(self):
        return f"[{self.stage}] {super().__str__()}"


class ConfigError(DeployError):
    stage = STAGE_CONFIG


class MissingConfig(ConfigError):
    """A value required by the selected back-end was not provided"""

    def __init__(self, field: str, backend: str = ""):
        self.field = field
        self.backend = backend
        where = f" for the {backend} back-end" if backend else ""
        super().__init__(f"missing required configuration '{field}'{where}")


class TransformError(DeployError):
    stage = STAGE_TRANSFORM


class MalformedImage(TransformError):
    pass


class OverlaySizeMismatch(TransformError):
    def __init__(self, section: str, section_size: int, overlay_size: int):
        self.section = section
        self.section_size = section_size
        self.overlay_size = overlay_size
        super().__init__(
            f"overlay of {overlay_size} bytes does not fit section {section} "
            f"of {section_size} bytes"
        )


class LaunchError(DeployError):
    stage = STAGE_LAUNCH

    def __init__(self, tool: str, reason: str):
        self.tool = tool
        self.reason = reason
        super().__init__(f"failed to launch {tool}: {reason}")
