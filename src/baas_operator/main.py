"""Process wiring for baasctl.

Each ``run_*`` coroutine loads configuration and state, runs one engine
operation and returns a process exit code. Nothing here retries; the
engine stops at the first failure and the state file keeps what succeeded.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from pathlib import Path

import yaml

from .config import Config, ConfigurationError
from .engine import ApplyReport, Engine
from .gateway import Gateway, HttpGateway
from .kinds import get_kind
from .state import ManifestLoadError, StateFileError, StateStore, load_manifest

logger = logging.getLogger(__name__)

# Standard LogRecord attributes; everything else on a record came from extra=
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        # Add extra fields from the record
        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(log_format: str = "json", verbose: bool = False) -> None:
    """Configure logging: JSON on stdout for production, plain text for humans."""
    handler = logging.StreamHandler(sys.stdout)
    if log_format == "json":
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.DEBUG if verbose else logging.INFO)

    # Reduce noise from the HTTP pipeline
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def _build_engine(state_path: Path, gateway: Gateway | None) -> Engine:
    config = Config.from_env()
    store = StateStore.load(state_path)
    return Engine(gateway or HttpGateway(config), store, config)


def _exit_code(operation: str, report: ApplyReport) -> int:
    failure = report.failure
    if failure is None:
        logger.info(
            f"{operation} succeeded",
            extra={"duration_seconds": report.duration_seconds, **report.summary()},
        )
        return 0
    logger.error(
        f"{operation} failed",
        extra={"resource": failure.name, "action": failure.action, "error": str(failure.error)},
    )
    return 1


async def run_apply(manifest_path: Path, state_path: Path, gateway: Gateway | None = None) -> int:
    """Apply a manifest. Returns the process exit code."""
    try:
        manifest = load_manifest(manifest_path)
        engine = _build_engine(state_path, gateway)
    except (ConfigurationError, ManifestLoadError, StateFileError) as e:
        logger.error("Cannot start apply", extra={"error": str(e)})
        return 1

    report = await engine.apply(manifest)
    return _exit_code("apply", report)


async def run_destroy(state_path: Path, gateway: Gateway | None = None) -> int:
    """Delete everything recorded in the state file. Returns the process exit code."""
    try:
        engine = _build_engine(state_path, gateway)
    except (ConfigurationError, StateFileError) as e:
        logger.error("Cannot start destroy", extra={"error": str(e)})
        return 1

    report = await engine.destroy()
    return _exit_code("destroy", report)


async def run_refresh(state_path: Path, gateway: Gateway | None = None) -> int:
    """Re-read every recorded resource. Returns the process exit code."""
    try:
        engine = _build_engine(state_path, gateway)
    except (ConfigurationError, StateFileError) as e:
        logger.error("Cannot start refresh", extra={"error": str(e)})
        return 1

    report = await engine.refresh()
    return _exit_code("refresh", report)


def render_state(store: StateStore) -> str:
    """Human-readable dump of the state file, one block per resource."""
    if not len(store):
        return f"No resources recorded in {store.path}"

    document: dict[str, dict[str, object]] = {}
    for name in store.names():
        entry = store.get(name)
        assert entry is not None
        block: dict[str, object] = {"kind": entry.kind, "id": entry.id, "state": entry.state}
        if entry.parent_keys:
            block["parent_keys"] = dict(entry.parent_keys)
        if entry.shared_deployment:
            block["shared"] = True
        if entry.tainted:
            block["tainted"] = True
        if entry.attributes:
            block["attributes"] = get_kind(entry.kind).redact(entry.attributes)
        document[name] = block
    return yaml.safe_dump(document, sort_keys=False, default_flow_style=False).rstrip()
