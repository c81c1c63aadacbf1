import sys
from collections.abc import Callable
from pathlib import Path

import pytest

GENERATOR_DIR = Path(__file__).resolve().parent.parent
FIXTURES_DIR = Path(__file__).resolve().parent / "fixtures"
for _path in (GENERATOR_DIR, FIXTURES_DIR):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

import skslc  # noqa: E402
from fake_compiler import CompilerRecorder  # noqa: E402


@pytest.fixture
def recorder() -> CompilerRecorder:
    return CompilerRecorder()


@pytest.fixture
def write_source(tmp_path: Path) -> Callable[[str, str], Path]:
    def _write_source(name: str, text: str = "void main() {}\n") -> Path:
        path = tmp_path / name
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    return _write_source


@pytest.fixture
def make_job() -> Callable[..., skslc.JobDescriptor]:
    def _make_job(
        input_path: Path | str,
        output_path: Path | str,
        *,
        kind: skslc.ProgramKind = skslc.ProgramKind.FRAGMENT,
        honor_settings: bool = True,
    ) -> skslc.JobDescriptor:
        return skslc.JobDescriptor(
            input_path=str(input_path),
            output_path=str(output_path),
            kind=kind,
            honor_settings=honor_settings,
        )

    return _make_job


@pytest.fixture
def make_argv() -> Callable[..., list[str]]:
    def _make_argv(*jobs: tuple[object, ...]) -> list[str]:
        argv = ["skslc"]
        for index, job in enumerate(jobs):
            if index:
                argv.append(skslc.BATCH_SEPARATOR)
            argv.extend(str(arg) for arg in job)
        return argv

    return _make_argv
