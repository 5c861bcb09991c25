"""
GPU Job Mapper: Main Daemon
===========================

Entry point for the mapper.

Each cycle:
  1. Query nvidia-smi for (GPU UUID, PID) pairs
  2. Rewrite the mapping directory, one file per GPU

One-shot mode (default) runs a single cycle and exits non-zero if it fails.
Daemon mode runs a cycle at startup and then every --interval; a failed cycle
is logged and retried on the next tick.

Safe shutdown:
  SIGINT / SIGTERM → stop waiting for the next tick → exit 0
  A cycle that is already running always finishes first.
"""

from __future__ import annotations
import argparse
import json
import logging
import math
import os
import re
import signal
import tempfile
import time
from pathlib import Path
from typing import Any, Optional

import schedule

from .gpu_processes import NVIDIA_SMI, ExecutionError, query_gpu_processes
from .mapping_files import MappingIOError, write_mapping_files

log = logging.getLogger("gpu_job_mapper.agent")

# ─── Logging ──────────────────────────────────────────────────────────────────

LOG_FORMAT         = "[%(asctime)s] %(levelname)s %(name)s - %(message)s"
VERBOSE_LOG_FORMAT = "[%(asctime)s] %(levelname)s %(name)s %(filename)s:%(lineno)d - %(message)s"
LOG_DATEFMT        = "%Y-%m-%dT%H:%M:%S"


def configure_logging(verbose: bool = False) -> None:
    """Set up root logging once, at startup."""
    logging.basicConfig(
        level   = logging.DEBUG if verbose else logging.INFO,
        format  = VERBOSE_LOG_FORMAT if verbose else LOG_FORMAT,
        datefmt = LOG_DATEFMT,
        force   = True,
    )

# ─── Config ───────────────────────────────────────────────────────────────────

DEFAULT_MAPPING_DIR = os.path.join(tempfile.gettempdir(), "dcgm-job-mapping")
DEFAULT_INTERVAL    = 30.0  # seconds

ENV_PREFIX  = "GPU_JOB_MAPPER_"
TRUE_VALUES = {"1", "true", "yes", "on"}

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ms|s|m|h)")
_UNIT_SECONDS  = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}

STOP_POLL_SECONDS = 0.2  # longest a stop() waits to be noticed between ticks


def parse_interval(value: str) -> float:
    """
    Parse an interval into seconds: "30", "2.5", "500ms", "30s", "5m", "1m30s".
    Raises ValueError for malformed or non-positive values.
    """
    text = str(value).strip()
    try:
        seconds = float(text)
    except ValueError:
        pos, seconds = 0, 0.0
        for match in _DURATION_PART.finditer(text):
            if match.start() != pos:
                break
            seconds += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
            pos = match.end()
        if pos == 0 or pos != len(text):
            raise ValueError(f"invalid interval {value!r} (e.g. 30s, 1m, 5m)")

    if not (seconds > 0 and math.isfinite(seconds)):
        raise ValueError(f"interval must be positive, got {value!r}")
    return seconds


def load_config(path: Path) -> dict:
    """Read a JSON config file. A missing file is an empty config."""
    if not path.exists():
        return {}
    cfg = json.loads(path.read_text())
    if not isinstance(cfg, dict):
        raise ValueError(f"{path}: expected a JSON object")
    return cfg


def _env(name: str) -> Optional[str]:
    return os.getenv(ENV_PREFIX + name)


def _as_flag(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in TRUE_VALUES
    return bool(value)


def _env_flag(name: str) -> Optional[bool]:
    return _as_flag(_env(name))


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None

# ─── Mapping Agent ────────────────────────────────────────────────────────────

class MappingAgent:
    def __init__(
        self,
        mapping_dir: str = DEFAULT_MAPPING_DIR,
        interval:    float = DEFAULT_INTERVAL,
        nvidia_smi:  str = NVIDIA_SMI,
    ):
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")

        self.mapping_dir = mapping_dir
        self.interval    = interval
        self.nvidia_smi  = nvidia_smi

        self._running   = True
        self._scheduler = schedule.Scheduler()

    # ─── Cycle ────────────────────────────────────────────────────────────────

    def update_mappings(self) -> int:
        """
        One update cycle: sample GPU processes, rewrite the mapping files.
        Returns the number of processes written. Raises ExecutionError or
        MappingIOError if either step fails.
        """
        processes = query_gpu_processes(self.nvidia_smi)
        write_mapping_files(self.mapping_dir, processes)
        log.info(f"Updated mapping files in {self.mapping_dir} ({len(processes)} processes)")
        return len(processes)

    def _run_cycle(self, context: str = "Error updating mappings") -> bool:
        try:
            self.update_mappings()
            return True
        except (ExecutionError, MappingIOError) as e:
            log.error(f"{context}: {e}")
            return False

    # ─── Main Loop ────────────────────────────────────────────────────────────

    def run(self) -> None:
        """Update now, then every interval, until stop() is called."""
        log.info(f"Starting daemon mode (interval: {self.interval:g}s, directory: {self.mapping_dir})")

        self._scheduler.every(self.interval).seconds.do(self._run_cycle)
        self._run_cycle("Error during initial update")

        while self._running:
            self._wait_for_tick()
            if self._running:
                self._scheduler.run_pending()

        self._scheduler.clear()
        log.info("Shutting down gracefully…")

    def _seconds_until_tick(self) -> float:
        idle = self._scheduler.idle_seconds
        if idle is None:
            return self.interval
        return max(idle, 0.0)

    def _wait_for_tick(self) -> None:
        # stop() runs inside signal handlers and must stay lock-free, so poll the flag.
        deadline = time.monotonic() + self._seconds_until_tick()
        while self._running:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            time.sleep(min(remaining, STOP_POLL_SECONDS))

    def stop(self) -> None:
        self._running = False


def install_signal_handlers(agent: MappingAgent) -> None:
    """SIGINT / SIGTERM cancel the agent's wait for the next tick."""
    def _handle(signum, frame):
        log.info(f"Received signal: {signal.Signals(signum).name}")
        agent.stop()

    signal.signal(signal.SIGTERM, _handle)
    signal.signal(signal.SIGINT,  _handle)

# ─── Entry Point ──────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog        = "gpu-job-mapper",
        description = "Publish GPU → PID mapping files for GPU job accounting",
    )
    parser.add_argument("--daemon",     action="store_true", default=None,
                        help="Run in daemon mode (continuous monitoring)")
    parser.add_argument("--interval",   default=None,
                        help="Update interval in daemon mode, e.g. 30s, 1m, 5m (default: 30s)")
    parser.add_argument("--dir",        default=None,
                        help=f"Directory for mapping files (default: {DEFAULT_MAPPING_DIR})")
    parser.add_argument("--nvidia-smi", default=None,
                        help=f"nvidia-smi executable (default: {NVIDIA_SMI})")
    parser.add_argument("--config",     default=_env("CONFIG"),
                        help="Optional JSON config file (keys: daemon, interval, dir, nvidia_smi, verbose)")
    parser.add_argument("--verbose",    action="store_true", default=None,
                        help="Enable verbose logging")
    return parser


def resolve_settings(args: argparse.Namespace, parser: argparse.ArgumentParser) -> argparse.Namespace:
    """Fill unset options from the environment, then the config file, then defaults."""
    cfg: dict = {}
    if args.config:
        try:
            cfg = load_config(Path(args.config))
        except (OSError, ValueError) as e:
            parser.error(f"cannot load config {args.config}: {e}")

    interval = _first(args.interval, _env("INTERVAL"), cfg.get("interval"), DEFAULT_INTERVAL)
    try:
        interval = parse_interval(interval)
    except ValueError as e:
        parser.error(f"argument --interval: {e}")

    return argparse.Namespace(
        daemon     = bool(_first(args.daemon, _env_flag("DAEMON"), _as_flag(cfg.get("daemon")), False)),
        interval   = interval,
        dir        = _first(args.dir, _env("DIR"), cfg.get("dir"), DEFAULT_MAPPING_DIR),
        nvidia_smi = _first(args.nvidia_smi, _env("NVIDIA_SMI"), cfg.get("nvidia_smi"), NVIDIA_SMI),
        verbose    = bool(_first(args.verbose, _env_flag("VERBOSE"), _as_flag(cfg.get("verbose")), False)),
    )


def main(argv: Optional[list[str]] = None) -> int:
    parser   = build_parser()
    settings = resolve_settings(parser.parse_args(argv), parser)

    configure_logging(settings.verbose)

    agent = MappingAgent(
        mapping_dir = settings.dir,
        interval    = settings.interval,
        nvidia_smi  = settings.nvidia_smi,
    )
    install_signal_handlers(agent)

    if settings.daemon:
        agent.run()
        return 0

    try:
        agent.update_mappings()
    except (ExecutionError, MappingIOError) as e:
        log.error(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
