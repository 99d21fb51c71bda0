"""Run configuration for the wasm apps build.

Settings come from ``wasmapps.ini`` (searched in the current directory,
then the repository root), overridden by the environment variables the
old Makefile honoured (LIND_WASM_ROOT, BASE_SYSROOT, JOBS, WASM_OPT,
WASMTIME, CLANG, AR, RANLIB), overridden in turn by CLI flags.

Relative paths in the INI file are resolved against the directory that
holds the file.
"""

import configparser
import os
import shlex
import sys
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, List, Optional

from build_errors import ConfigError

CONFIG_NAME = "wasmapps.ini"

DEFAULT_TARGET = "wasm32-unknown-wasi"
DEFAULT_OPTIMIZE_FLAGS = ["--epoch-injection", "--asyncify", "--debuginfo", "-O2"]
DEFAULT_AOT_COMMAND = ["{aot}", "compile", "{input}", "-o", "{output}"]
DEFAULT_AOT_SUFFIX = "precompiled"


def _default_jobs():
    return os.cpu_count() or 4


@dataclass
class BuildConfig:
    apps_root: str
    lind_wasm_root: str
    base_sysroot: str
    build_dir: str
    output_root: str
    packages_file: str
    target: str = DEFAULT_TARGET
    jobs: int = field(default_factory=_default_jobs)
    workers: int = 2
    wasm_opt: Optional[str] = None
    aot: Optional[str] = None
    aot_command: List[str] = field(default_factory=lambda: list(DEFAULT_AOT_COMMAND))
    aot_suffix: str = DEFAULT_AOT_SUFFIX
    optimize_flags: List[str] = field(default_factory=lambda: list(DEFAULT_OPTIMIZE_FLAGS))
    tool_overrides: Dict[str, str] = field(default_factory=dict)

    @property
    def overlay_root(self) -> str:
        return os.path.join(self.build_dir, "sysroot_overlay")

    @property
    def merged_sysroot(self) -> str:
        return os.path.join(self.build_dir, "sysroot_merged")

    @property
    def lib_dir(self) -> str:
        return os.path.join(self.build_dir, "lib")

    @property
    def work_root(self) -> str:
        return os.path.join(self.build_dir, "work")

    @property
    def pipeline_root(self) -> str:
        return os.path.join(self.build_dir, "pipeline")

    @property
    def log_dir(self) -> str:
        return os.path.join(self.build_dir, "logs")

    @property
    def descriptor(self) -> str:
        return os.path.join(self.build_dir, ".toolchain.env")

    @property
    def report_path(self) -> str:
        return os.path.join(self.build_dir, "report.json")

    def with_overrides(self, **kwargs) -> "BuildConfig":
        """Copy with every non-None keyword applied (CLI flags)."""
        return replace(self, **{k: v for k, v in kwargs.items() if v is not None})


def find_config_file(explicit=None) -> Optional[Path]:
    if explicit:
        path = Path(explicit)
        if not path.is_file():
            raise ConfigError(f"config file not found: {explicit}")
        return path
    search_paths = [
        Path.cwd() / CONFIG_NAME,
        Path(__file__).resolve().parent.parent / CONFIG_NAME,
    ]
    for candidate in search_paths:
        if candidate.is_file():
            return candidate
    return None


def _resolve(base: Path, value: str) -> str:
    value = os.path.expanduser(value)
    if os.path.isabs(value):
        return value
    return str((base / value).resolve())


def _split(value):
    try:
        return shlex.split(value)
    except ValueError as e:
        raise ConfigError(f"cannot parse {value!r}: {e}") from e


def load_config(path=None, environ=None) -> BuildConfig:
    """Build the effective configuration (INI < environment)."""
    environ = os.environ if environ is None else environ
    ini_path = find_config_file(path)
    parser = configparser.ConfigParser(interpolation=None)
    if ini_path is not None:
        try:
            parser.read(ini_path)
        except configparser.Error as e:
            raise ConfigError(f"failed to parse {ini_path}: {e}") from e
        apps_root = ini_path.resolve().parent
    else:
        apps_root = Path.cwd()

    def get(section, key, fallback=None):
        return parser.get(section, key, fallback=fallback) if parser.has_section(section) else fallback

    lind_root = environ.get("LIND_WASM_ROOT") or get("paths", "lind_wasm_root")
    lind_root = _resolve(apps_root, lind_root) if lind_root else os.path.expanduser("~/lind-wasm")

    base_sysroot = environ.get("BASE_SYSROOT") or get("paths", "base_sysroot")
    base_sysroot = (_resolve(apps_root, base_sysroot) if base_sysroot
                    else os.path.join(lind_root, "src", "glibc", "sysroot"))

    build_dir = _resolve(apps_root, get("paths", "build_dir", "build"))
    output_root = get("paths", "output_root")
    output_root = _resolve(apps_root, output_root) if output_root else os.path.join(build_dir, "bin")
    packages_file = _resolve(apps_root, get("paths", "packages", "packages.yaml"))

    try:
        jobs = int(environ.get("JOBS") or get("build", "jobs", 0)) or _default_jobs()
        workers = int(get("build", "workers", 2))
    except ValueError as e:
        raise ConfigError(f"invalid number in [build]: {e}") from e
    if workers < 1:
        raise ConfigError("[build] workers must be at least 1")

    wasm_opt = environ.get("WASM_OPT") or get("pipeline", "wasm_opt")
    wasm_opt = (_resolve(apps_root, wasm_opt) if wasm_opt
                else os.path.join(lind_root, "tools", "binaryen", "bin", "wasm-opt"))
    aot = environ.get("WASMTIME") or get("pipeline", "aot")
    aot = _resolve(apps_root, aot) if aot else os.path.join(lind_root, "build", "wasmtime")

    aot_command = get("pipeline", "aot_command")
    optimize_flags = get("pipeline", "optimize_flags")

    overrides = {}
    for kind, env_var in (("compiler", "CLANG"), ("archiver", "AR"), ("librarian", "RANLIB")):
        value = environ.get(env_var) or get("toolchain", env_var.lower())
        if value:
            overrides[kind] = _resolve(apps_root, value) if os.sep in value else value

    return BuildConfig(
        apps_root=str(apps_root),
        lind_wasm_root=lind_root,
        base_sysroot=base_sysroot,
        build_dir=build_dir,
        output_root=output_root,
        packages_file=packages_file,
        target=get("build", "target", DEFAULT_TARGET),
        jobs=jobs,
        workers=workers,
        wasm_opt=wasm_opt,
        aot=aot,
        aot_command=_split(aot_command) if aot_command else list(DEFAULT_AOT_COMMAND),
        aot_suffix=get("pipeline", "aot_suffix", DEFAULT_AOT_SUFFIX).lstrip("."),
        optimize_flags=_split(optimize_flags) if optimize_flags else list(DEFAULT_OPTIMIZE_FLAGS),
        tool_overrides=overrides,
    )


def describe(config: BuildConfig, out=sys.stdout):
    """Print the effective configuration, Makefile print-config style."""
    rows = [
        ("LIND_WASM_ROOT", config.lind_wasm_root),
        ("BASE_SYSROOT", config.base_sysroot),
        ("APPS_OVERLAY", config.overlay_root),
        ("MERGED_SYSROOT", config.merged_sysroot),
        ("APPS_BIN_DIR", config.output_root),
        ("APPS_LIB_DIR", config.lib_dir),
        ("PACKAGES", config.packages_file),
        ("TARGET", config.target),
        ("JOBS", config.jobs),
        ("WORKERS", config.workers),
        ("WASM_OPT", config.wasm_opt),
        ("AOT", config.aot),
    ]
    for key, val in rows:
        print(f"{key}={val}", file=out)
