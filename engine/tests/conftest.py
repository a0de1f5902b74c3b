import textwrap
from pathlib import Path

import pytest

from quiver.settings import Settings


def write_arrow(repo: Path, name: str, body: str) -> Path:
    """Write `<repo>/<name>.yaml` from an indented YAML snippet."""
    repo.mkdir(parents=True, exist_ok=True)
    path = repo / f"{name}.yaml"
    path.write_text(textwrap.dedent(body).lstrip(), encoding="utf-8")
    return path


def simple_arrow(name: str, version: str = "1.0.0", dependencies=(), extra_methods: str = "",
                 execute: str = 'echo "${PORT}" > port.txt') -> str:
    deps = "".join(f"\n  - {d}" for d in dependencies)
    methods = ""
    for os_name in ("linux", "darwin"):
        methods += (
            f"  {os_name}:\n"
            f"    install:\n"
            f"      - echo {name} > installed.txt\n"
            f"    execute:\n"
            f"      - '{execute}'\n"
            f"{extra_methods}"
        )
    return (
        'version: "0.1"\n'
        "metadata:\n"
        f"  name: {name}\n"
        f"  description: {name} test arrow\n"
        f'  version: "{version}"\n'
        f"dependencies:{deps if deps else ' []'}\n"
        "variables:\n"
        "  - name: PORT\n"
        "    default: 25565\n"
        "  - name: TOKEN\n"
        "    default: s3cret\n"
        "    sensitive: true\n"
        "methods:\n"
        f"{methods}"
    )


@pytest.fixture
def repo_dir(tmp_path):
    d = tmp_path / "repo"
    d.mkdir()
    return d


@pytest.fixture
def settings(tmp_path, repo_dir):
    return Settings(
        home=tmp_path / "home",
        repositories=[str(repo_dir)],
        netbridge_enabled=False,
        method_timeout=30.0,
        stop_timeout=2.0,
        process_sweep_interval=60.0,
    )
