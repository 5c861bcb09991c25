"""Shared fixtures: a fake nvidia-smi so no GPU or driver is needed."""

from __future__ import annotations

import os
import stat
from pathlib import Path

import pytest



def write_fake_nvidia_smi(path: Path, stdout: str = "", stderr: str = "", exit_code: int = 0) -> str:
    """Write an executable shell script that prints *stdout* / *stderr* and exits."""
    path.write_text(
        "#!/bin/sh\n"
        f"printf '%s' '{stdout}'\n"
        f"printf '%s' '{stderr}' >&2\n"
        f"exit {exit_code}\n"
    )
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return os.fspath(path)


@pytest.fixture
def fake_nvidia_smi(tmp_path: Path):
    """Factory fixture: ``fake_nvidia_smi(stdout=..., exit_code=...)`` → command path."""
    counter = iter(range(1000))

    def _make(stdout: str = "", stderr: str = "", exit_code: int = 0) -> str:
        return write_fake_nvidia_smi(tmp_path / f"nvidia-smi-{next(counter)}", stdout, stderr, exit_code)

    return _make
