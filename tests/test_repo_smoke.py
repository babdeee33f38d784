from __future__ import annotations

import os
import re
import subprocess
import sys
from importlib.machinery import PathFinder
from pathlib import Path


def _repo_root() -> Path:
    return Path(__file__).resolve().parents[1]


def _src() -> Path:
    return _repo_root() / "packages" / "companion-bridge-python" / "src"


def test_package_is_importable_without_install() -> None:
    src = _src()
    assert PathFinder.find_spec("companion_bridge", [str(src)]) is not None

    sys.path.insert(0, str(src))
    import companion_bridge

    assert companion_bridge.__all__
    for name in ["BridgeClient", "HostSession", "WorkerServer", "WorkerSupervisor"]:
        assert hasattr(companion_bridge, name)


def test_pyproject_version_matches_package_version() -> None:
    text = (_repo_root() / "pyproject.toml").read_text(encoding="utf-8")
    match = re.search(r'^version\s*=\s*"([^"]+)"\s*$', text, re.MULTILINE)
    assert match is not None, "missing [project].version"

    init_text = (_src() / "companion_bridge" / "__init__.py").read_text(encoding="utf-8")
    init_match = re.search(r'^__version__\s*=\s*"([^"]+)"\s*$', init_text, re.MULTILINE)
    assert init_match is not None, "missing __version__"

    assert match.group(1) == init_match.group(1)


def test_default_config_ships_with_the_package() -> None:
    assert (_src() / "companion_bridge" / "assets" / "default.yaml").exists()


def test_worker_entry_point_starts_from_src(tmp_path: Path) -> None:
    """
    `python -m companion_bridge.worker` 是 supervisor 拉起 worker 的方式：必须能在未安装的情况下启动。
    """

    env = dict(os.environ)
    env["PYTHONPATH"] = str(_src())
    env.pop("COMPANION_BRIDGE_CONFIG", None)
    p = subprocess.run(
        [sys.executable, "-m", "companion_bridge.worker", "--help"],
        cwd=str(tmp_path),
        env=env,
        text=True,
        capture_output=True,
        timeout=60,
    )
    assert p.returncode == 0, p.stderr
    assert "--process-name" in p.stdout
    assert "--session-process" in p.stdout
