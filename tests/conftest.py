from __future__ import annotations

import sys
import textwrap
from pathlib import Path

import pytest

_REPO = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(_REPO / "tools"))

from build_config import BuildConfig  # noqa: E402
from package_builder import Dependency, Package  # noqa: E402
from toolchain_resolve import Toolchain  # noqa: E402

TRIPLE = "wasm32-unknown-wasi"
WASM_MAGIC = b"\0asm\x01\0\0\0"


def write_script(path, body: str) -> str:
    """Write an executable /bin/sh script and return its path."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + textwrap.dedent(body))
    path.chmod(0o755)
    return str(path)


def write_file(path, content="") -> str:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if isinstance(content, bytes):
        path.write_bytes(content)
    else:
        path.write_text(content)
    return str(path)


def write_wasm(path, payload: bytes = b"") -> str:
    return write_file(path, WASM_MAGIC + payload)


def script_package(apps_root, name, body, deps=(), **kwargs) -> Package:
    """A package whose entry point is an sh script written into *apps_root*."""
    write_script(Path(apps_root) / f"{name}.sh", body)
    deps = tuple(Dependency(d) if isinstance(d, str) else d for d in deps)
    return Package(name=name, entry=("sh", f"{name}.sh"), deps=deps, **kwargs)


def fake_cc(path, reject=()) -> str:
    """A compiler that rejects every flag in *reject* and touches its -o output."""
    rejected = " ".join(reject)
    return write_script(path, f"""\
        if [ "$1" = "--version" ]; then
          echo "fake clang version 18.1.8"
          exit 0
        fi
        out=""
        prev=""
        for arg in "$@"; do
          for bad in {rejected}; do
            if [ "$arg" = "$bad" ]; then
              echo "error: unknown argument: '$arg'" >&2
              exit 1
            fi
          done
          if [ "$prev" = "-o" ]; then
            out="$arg"
          fi
          prev="$arg"
        done
        if [ -n "$out" ] && [ "$out" != /dev/null ]; then
          echo "object" > "$out"
        fi
        exit 0
    """)


def fake_ar(path) -> str:
    """``ar rcs ARCHIVE OBJ...`` concatenating the objects."""
    return write_script(path, """\
        shift
        out="$1"
        shift
        cat "$@" > "$out"
    """)


def fake_optimizer(path) -> str:
    """``wasm-opt FLAGS... IN -o OUT``: copies IN to OUT plus a marker line."""
    return write_script(path, """\
        in=""
        out=""
        prev=""
        for arg in "$@"; do
          if [ "$prev" = "-o" ]; then
            out="$arg"
          elif [ "$arg" != "-o" ]; then
            in="$arg"
          fi
          prev="$arg"
        done
        cp "$in" "$out"
        echo "optimized" >> "$out"
    """)


def fake_aot(path) -> str:
    """``aot compile IN -o OUT``: copies IN to OUT."""
    return write_script(path, """\
        cp "$2" "$4"
    """)


def failing_tool(path, code=1) -> str:
    return write_script(path, f"""\
        echo "tool failed" >&2
        exit {code}
    """)


@pytest.fixture
def base_sysroot(tmp_path: Path) -> Path:
    root = tmp_path / "sysroot"
    write_file(root / "include" / "wasm32-wasi" / "stdio.h", "/* stdio */\n")
    write_file(root / "lib" / "wasm32-wasi" / "libc.a", "libc")
    return root


@pytest.fixture
def tool_dir(tmp_path: Path) -> Path:
    d = tmp_path / "tools"
    d.mkdir()
    return d


@pytest.fixture
def toolchain(tool_dir: Path, base_sysroot: Path) -> Toolchain:
    return Toolchain(
        compiler=fake_cc(tool_dir / "clang"),
        archiver=fake_ar(tool_dir / "llvm-ar"),
        librarian=write_script(tool_dir / "llvm-ranlib", "exit 0\n"),
        target_triple=TRIPLE,
        sysroot=str(base_sysroot),
    )


@pytest.fixture
def apps_root(tmp_path: Path) -> Path:
    d = tmp_path / "apps"
    d.mkdir()
    return d


@pytest.fixture
def config(tmp_path: Path, apps_root: Path, base_sysroot: Path, tool_dir: Path) -> BuildConfig:
    build = tmp_path / "build"
    return BuildConfig(
        apps_root=str(apps_root),
        lind_wasm_root=str(tmp_path / "lind-wasm"),
        base_sysroot=str(base_sysroot),
        build_dir=str(build),
        output_root=str(build / "bin"),
        packages_file=str(apps_root / "packages.yaml"),
        target=TRIPLE,
        jobs=2,
        workers=2,
        wasm_opt=fake_optimizer(tool_dir / "wasm-opt"),
        aot=fake_aot(tool_dir / "wasmtime"),
        aot_suffix="cwasm",
    )
