"""
Mapping Files
=============

Writes the GPU → PID mapping directory read by the monitoring agent:

    <dir>/GPU-1a2b3c4d-...   one PID per line
    <dir>/GPU-5e6f7a8b-...

The directory only ever reflects the latest sample. Old files are removed
before the new ones are written, so a GPU that went idle disappears from it.

The rewrite is not atomic: a reader may see the directory half-updated.
"""

from __future__ import annotations
import logging
import os
from typing import Iterable

from .gpu_processes import GpuProcess

log = logging.getLogger(__name__)

DIR_MODE  = 0o755
FILE_MODE = 0o644


class MappingIOError(OSError):
    """Raised when the mapping directory or a mapping file can't be written."""


def group_by_gpu(processes: Iterable[GpuProcess]) -> dict[str, list[str]]:
    """Group PIDs by GPU, keeping first-seen order. Duplicates are kept."""
    gpu_map: dict[str, list[str]] = {}
    for proc in processes:
        gpu_map.setdefault(proc.gpu, []).append(proc.pid)
    return gpu_map


def clean_mapping_files(directory: str) -> None:
    """
    Remove old mapping files directly inside directory.
    Subdirectories are left alone. A file that can't be removed is only
    logged, the next cycle will try again.
    """
    try:
        entries = list(os.scandir(directory))
    except FileNotFoundError:
        return  # Nothing written yet
    except OSError as e:
        raise MappingIOError(f"failed to list mapping directory {directory}: {e}") from e

    for entry in entries:
        if entry.is_dir(follow_symlinks=False):
            continue
        try:
            os.remove(entry.path)
        except OSError as e:
            log.warning(f"[mapping] failed to remove old mapping file {entry.path}: {e}")


def _open_mapping_file(path: str, flags: int) -> int:
    return os.open(path, flags, FILE_MODE)


def write_mapping_files(directory: str, processes: Iterable[GpuProcess]) -> None:
    """
    Rewrite directory with one file per GPU, each line a PID.

    Creates the directory (and parents) when missing. Raises MappingIOError
    on the first file that can't be written; files written before it stay.
    """
    gpu_map = group_by_gpu(processes)

    try:
        os.makedirs(directory, mode=DIR_MODE, exist_ok=True)
    except OSError as e:
        raise MappingIOError(f"failed to create directory {directory}: {e}") from e

    clean_mapping_files(directory)

    for gpu, pids in gpu_map.items():
        file_path = os.path.join(directory, gpu)
        try:
            with open(file_path, "w", encoding="utf-8", opener=_open_mapping_file) as fh:
                for pid in pids:
                    fh.write(f"{pid}\n")
        except OSError as e:
            raise MappingIOError(f"failed to write mapping file {file_path}: {e}") from e

        log.debug(f"[mapping] {file_path}: {len(pids)} PID(s)")
