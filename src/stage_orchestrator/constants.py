"""Stable constants shared across orchestrator components."""

from __future__ import annotations

from pathlib import PurePosixPath
from typing import Final

CONFIG_SCHEMA_VERSION: Final[int] = 1
RUN_REPORT_SCHEMA_VERSION: Final[int] = 1

DEFAULT_CONFIG_FILE: Final[str] = "orchestrator.toml"
ENV_PREFIX: Final[str] = "STAGE_ORCH_"
LOGGER_NAME: Final[str] = "stage_orchestrator"

# Default runtime paths (relative to the workspace unless overridden by config).
REPORTS_DIR: Final[PurePosixPath] = PurePosixPath("reports")
LOGS_DIR: Final[PurePosixPath] = PurePosixPath("logs")
BUILD_LEDGER_FILE: Final[PurePosixPath] = PurePosixPath(".stage-orchestrator/build-ledger.json")

# Well-known scan report locations, relative to the workspace.
FS_SCAN_REPORT: Final[PurePosixPath] = PurePosixPath("reports/fs-scan.json")
IMAGE_SCAN_REPORT: Final[PurePosixPath] = PurePosixPath("reports/image-scan.json")
TEST_REPORTS_GLOB: Final[str] = "target/surefire-reports/*.xml"

LATEST_TAG: Final[str] = "latest"
IMAGE_ID_FILE: Final[PurePosixPath] = PurePosixPath("reports/image-id.txt")
DEFAULT_SUBJECT_TEMPLATE: Final[str] = "[{outcome}] {pipeline_name} #{build_number}"

DEFAULT_OPERATION_TIMEOUT_SECONDS: Final[float] = 1800.0
DEFAULT_TERMINATION_GRACE_SECONDS: Final[float] = 5.0
DEFAULT_GATE_TIMEOUT_SECONDS: Final[float] = 300.0
DEFAULT_GATE_POLL_INTERVAL_SECONDS: Final[float] = 5.0

__all__ = [
    "BUILD_LEDGER_FILE",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_GATE_POLL_INTERVAL_SECONDS",
    "DEFAULT_SUBJECT_TEMPLATE",
    "DEFAULT_GATE_TIMEOUT_SECONDS",
    "DEFAULT_OPERATION_TIMEOUT_SECONDS",
    "DEFAULT_TERMINATION_GRACE_SECONDS",
    "ENV_PREFIX",
    "FS_SCAN_REPORT",
    "IMAGE_ID_FILE",
    "IMAGE_SCAN_REPORT",
    "LATEST_TAG",
    "LOGGER_NAME",
    "LOGS_DIR",
    "REPORTS_DIR",
    "RUN_REPORT_SCHEMA_VERSION",
    "TEST_REPORTS_GLOB",
]
