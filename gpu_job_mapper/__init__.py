"""
GPU Job Mapper
==============

Publishes which processes are running on which GPU as a directory of small
mapping files, for a monitoring agent (e.g. a DCGM exporter) to attribute
GPU metrics to jobs.

What it does:
  1. Ask nvidia-smi which compute processes run on which GPU
  2. Group the PIDs by GPU UUID
  3. Rewrite the mapping directory: one file per GPU, one PID per line
  4. In daemon mode, repeat every --interval until SIGINT / SIGTERM

Usage:
  gpu-job-mapper --dir /tmp/dcgm-job-mapping
  gpu-job-mapper --daemon --interval 30s
"""

from .gpu_processes import ExecutionError, GpuProcess, parse_compute_apps, query_gpu_processes
from .mapping_files import MappingIOError, clean_mapping_files, group_by_gpu, write_mapping_files

__version__ = "0.1.0"

__all__ = [
    "ExecutionError",
    "GpuProcess",
    "MappingIOError",
    "clean_mapping_files",
    "group_by_gpu",
    "parse_compute_apps",
    "query_gpu_processes",
    "write_mapping_files",
]
