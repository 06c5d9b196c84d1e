import stat
from pathlib import Path
from typing import Callable

import pytest

_MARKERS = (
    "ACTIONS_ID_TOKEN_REQUEST_URL",
    "ACTIONS_ID_TOKEN_REQUEST_TOKEN",
    "GITHUB_ACTIONS",
    "GITLAB_CI",
    "BUILDKITE",
    "CIRCLECI",
)


@pytest.fixture
def clean_environ(monkeypatch: pytest.MonkeyPatch) -> None:
    """Strip every CI marker from the real process environment."""
    for name in _MARKERS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def agent_bin(tmp_path: Path) -> Callable[[str, str], str]:
    """Write an executable shell script into a private bin directory.

    Returns a `PATH` value that resolves the script by name.
    """
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def _write(name: str, body: str) -> str:
        script = bin_dir / name
        script.write_text(f"#!/bin/sh\n{body}\n")
        script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return f"{bin_dir}:/usr/bin:/bin"

    return _write
