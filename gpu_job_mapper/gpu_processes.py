"""
GPU Process Discovery
=====================

Asks nvidia-smi which compute processes are running on which GPU.

    nvidia-smi --query-compute-apps=gpu_uuid,pid --format=csv,noheader

prints one "<gpu uuid>, <pid>" line per process and nothing at all when the
GPUs are idle. Only those two columns are relied on.
"""

from __future__ import annotations
import logging
import subprocess
from dataclasses import dataclass
from typing import Optional

log = logging.getLogger(__name__)

NVIDIA_SMI = "nvidia-smi"
QUERY_ARGS = ["--query-compute-apps=gpu_uuid,pid", "--format=csv,noheader"]


class ExecutionError(RuntimeError):
    """Raised when nvidia-smi is missing, cannot be run, or exits non-zero."""

    def __init__(self, message: str, returncode: Optional[int] = None, output: str = ""):
        super().__init__(message)
        self.returncode = returncode
        self.output     = output


# ─── GPU Process ───────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class GpuProcess:
    gpu: str    # GPU UUID as reported by nvidia-smi, e.g. "GPU-1a2b3c4d-..."
    pid: str


# ─── Discovery ─────────────────────────────────────────────────────────────────

def query_gpu_processes(command: str = NVIDIA_SMI) -> list[GpuProcess]:
    """
    Run nvidia-smi and return one GpuProcess per running compute process.
    An idle machine yields an empty list. Raises ExecutionError if the
    command can't be run or fails.
    """
    cmd = [command, *QUERY_ARGS]
    log.debug(f"[sampler] cmd: {' '.join(cmd)}")

    try:
        result = subprocess.run(cmd, capture_output=True, text=True, errors="replace")
    except OSError as e:
        raise ExecutionError(f"failed to run {command}: {e}") from e

    if result.returncode != 0:
        output = (result.stderr or result.stdout).strip()
        raise ExecutionError(
            f"{command} exit {result.returncode}: {output}",
            returncode = result.returncode,
            output     = output,
        )

    processes = parse_compute_apps(result.stdout)
    log.debug(f"[sampler] {len(processes)} GPU process(es) found")
    return processes


def parse_compute_apps(text: str) -> list[GpuProcess]:
    """Parse header-less "gpu_uuid, pid" CSV. Lines with fewer than two fields are skipped."""
    processes = []
    for line in text.splitlines():
        parts = [p.strip() for p in line.split(",")]
        if len(parts) < 2:
            continue
        processes.append(GpuProcess(gpu=parts[0], pid=parts[1]))
    return processes
