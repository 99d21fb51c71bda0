"""Package build wrapper.

Runs one package's own build entry point (compile_<pkg>.sh and friends)
with computed compiler/linker flags and the current merged sysroot, then
collects the artifacts the package declares.  Static libraries and
header trees that name a sysroot destination are staged as the
package's overlay contribution.

The entry point is opaque.  It must be re-runnable without manual
cleanup; the wrapper only gives it a fresh OUT_DIR on every invocation.
"""

import glob
import os
import shlex
import shutil
import subprocess
import sys
import threading
from collections import namedtuple
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

from _env import entry_point_env
from build_errors import ConfigError, MandatoryArtifactMissing, PackageBuildNonZeroExit
from capability_probe import CapabilityProbe
from sysroot_merge import compose_overlay, overlay_dir

ARTIFACT_KINDS = ("static-library", "header-set", "executable")
NODE_KINDS = ("package", "merge", "stub")

# Lines of the package log attached to a failed result.
LOG_TAIL_LINES = 20

_WASM_MAGIC = b"\0asm"

# Never raw executables, even when a glob matches them.
_SKIP_SUFFIXES = (".o", ".a", ".la", ".lo", ".cwasm", ".precompiled", ".opt.wasm")


def is_wasm(path):
    """Check if a file is a wasm module by reading its magic bytes."""
    try:
        with open(path, "rb") as f:
            return f.read(4) == _WASM_MAGIC
    except OSError:
        return False


class BuildStatus(str, Enum):
    PENDING = "pending"
    BUILDING = "building"
    SUCCEEDED = "succeeded"
    SUCCEEDED_PARTIAL = "succeeded_partial"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def usable(self):
        return self in (BuildStatus.SUCCEEDED, BuildStatus.SUCCEEDED_PARTIAL)


@dataclass(frozen=True)
class ArtifactSpec:
    kind: str
    path: str
    sysroot_path: Optional[str] = None
    mandatory: bool = True


@dataclass(frozen=True)
class FlagGroup:
    """Optional flags enabled only when the compiler accepts every cflag.

    A group listing ``requires`` is considered only when all the named
    groups were enabled before it.
    """
    name: str
    cflags: Tuple[str, ...] = ()
    ldflags: Tuple[str, ...] = ()
    requires: Tuple[str, ...] = ()


@dataclass(frozen=True)
class StubSource:
    name: str
    code: str


@dataclass(frozen=True)
class StubSpec:
    """Sources archived by a stub node, written to the library dir."""
    archive: str
    sources: Tuple[StubSource, ...]
    unless_present: Optional[str] = None
    sysroot_path: Optional[str] = None


@dataclass(frozen=True)
class Dependency:
    name: str
    soft: bool = False


@dataclass
class Package:
    name: str
    kind: str = "package"
    deps: Tuple[Dependency, ...] = ()
    entry: Tuple[str, ...] = ()
    cwd: Optional[str] = None
    best_effort: bool = False
    artifacts: Tuple[ArtifactSpec, ...] = ()
    cflags: Tuple[str, ...] = ()
    ldflags: Tuple[str, ...] = ()
    ldlibs: Tuple[str, ...] = ()
    flag_groups: Tuple[FlagGroup, ...] = ()
    env: Dict[str, str] = field(default_factory=dict)
    stub: Optional[StubSpec] = None

    @property
    def dep_names(self):
        return [d.name for d in self.deps]


Artifact = namedtuple("Artifact", ["kind", "path"])


@dataclass
class BuildResult:
    package: str
    status: BuildStatus
    artifacts: List[Artifact] = field(default_factory=list)
    overlay: Optional[str] = None
    log: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    returncode: Optional[int] = None
    flags: Dict[str, str] = field(default_factory=dict)

    def executables(self):
        return [a.path for a in self.artifacts if a.kind == "executable"]

    def log_tail(self, lines=LOG_TAIL_LINES):
        if not self.log or not os.path.isfile(self.log):
            return []
        with open(self.log, errors="replace") as f:
            return f.read().splitlines()[-lines:]

    def to_dict(self):
        return {
            "package": self.package,
            "status": self.status.value,
            "artifacts": [{"kind": a.kind, "path": a.path} for a in self.artifacts],
            "overlay": self.overlay,
            "log": self.log,
            "errors": list(self.errors),
            "returncode": self.returncode,
            "flags": dict(self.flags),
        }


class _Placeholders(dict):
    def __missing__(self, key):
        raise ConfigError(f"unknown placeholder {{{key}}}")


def expand(template, variables):
    """Expand ``{name}`` placeholders; literal braces must be doubled."""
    try:
        return template.format_map(_Placeholders(variables))
    except (ValueError, IndexError) as e:
        raise ConfigError(f"bad template {template!r}: {e}") from e


def run_logged(cmd, log_path, cwd=None, env=None, input=None):
    """Run *cmd* appending combined output to *log_path*; return the exit code.

    A command that cannot be started is reported as exit 127.
    """
    os.makedirs(os.path.dirname(log_path), exist_ok=True)
    with open(log_path, "a") as log:
        log.write(f"$ {shlex.join(cmd)}\n")
        log.flush()
        try:
            result = subprocess.run(cmd, cwd=cwd, env=env, input=input,
                                    stdout=log, stderr=subprocess.STDOUT,
                                    text=True)
        except OSError as e:
            log.write(f"error: cannot execute {cmd[0]}: {e}\n")
            return 127
    return result.returncode


class PackageBuilder:
    def __init__(self, config, probe_factory=CapabilityProbe):
        self.config = config
        self._probe_factory = probe_factory
        self._probes = {}
        self._lock = threading.Lock()

    def probe(self, toolchain, sysroot):
        """One memoizing probe per (toolchain, sysroot) for the whole run."""
        key = (toolchain, sysroot)
        with self._lock:
            if key not in self._probes:
                self._probes[key] = self._probe_factory(toolchain, sysroot)
            return self._probes[key]

    def work_dir(self, package):
        return os.path.join(self.config.work_root, package.name)

    def log_path(self, package):
        return os.path.join(self.config.log_dir, f"{package.name}.log")

    def variables(self, package, toolchain, sysroot):
        return {
            "name": package.name,
            "apps_root": self.config.apps_root,
            "build_dir": self.config.build_dir,
            "out_dir": self.work_dir(package),
            "lib_dir": self.config.lib_dir,
            "sysroot": sysroot,
            "base_sysroot": toolchain.sysroot,
            "triple": toolchain.target_triple,
            "multiarch": toolchain.multiarch,
            "jobs": self.config.jobs,
        }

    def effective_flags(self, package, toolchain, sysroot, variables=None):
        """Return (cflags, ldflags, enabled_groups) for *package*."""
        variables = variables or self.variables(package, toolchain, sysroot)
        cflags = [expand(f, variables) for f in package.cflags]
        ldflags = [expand(f, variables) for f in package.ldflags]
        enabled = []
        probe = self.probe(toolchain, sysroot) if package.flag_groups else None
        for group in package.flag_groups:
            missing = [r for r in group.requires if r not in enabled]
            if missing:
                print(f"[{package.name}] {group.name}: needs {', '.join(missing)}; skipping",
                      file=sys.stderr)
                continue
            group_cflags = [expand(f, variables) for f in group.cflags]
            if probe.supports_all(group_cflags):
                cflags.extend(group_cflags)
                ldflags.extend(expand(f, variables) for f in group.ldflags)
                enabled.append(group.name)
            else:
                print(f"[{package.name}] warning: compiler does not support "
                      f"{group.name} flags ({' '.join(group_cflags)}); disabling",
                      file=sys.stderr)
        return cflags, ldflags, enabled

    def _resolve_path(self, template, variables):
        path = expand(template, variables)
        if not os.path.isabs(path):
            path = os.path.join(self.config.apps_root, path)
        return os.path.normpath(path)

    def collect(self, package, variables):
        """Split declared artifacts into (found, missing) lists of (spec, path)."""
        found = []
        missing = []
        for spec in package.artifacts:
            path = self._resolve_path(spec.path, variables)
            if spec.kind == "executable" and glob.has_magic(path):
                # Best-effort packages stage whatever linked.
                matches = [
                    m for m in sorted(glob.glob(path))
                    if os.path.isfile(m) and not m.endswith(_SKIP_SUFFIXES) and is_wasm(m)
                ]
                if matches:
                    found.extend((spec, m) for m in matches)
                else:
                    missing.append((spec, path))
                continue
            if spec.kind == "header-set":
                present = os.path.isdir(path)
            else:
                present = os.path.isfile(path)
            (found if present else missing).append((spec, path))
        return found, missing

    def _invoke(self, package, env, log_path):
        cwd = self.config.apps_root
        if package.cwd:
            cwd = os.path.join(self.config.apps_root, package.cwd)
        return run_logged(list(package.entry), log_path, cwd=cwd, env=env)

    def build(self, package, toolchain, merged_sysroot):
        log_path = self.log_path(package)
        if os.path.exists(log_path):
            os.remove(log_path)
        work = self.work_dir(package)
        if os.path.lexists(work):
            shutil.rmtree(work)
        os.makedirs(work)
        os.makedirs(self.config.lib_dir, exist_ok=True)

        variables = self.variables(package, toolchain, merged_sysroot)
        cflags, ldflags, enabled = self.effective_flags(package, toolchain, merged_sysroot, variables)
        ldlibs = [expand(f, variables) for f in package.ldlibs]
        extra = {
            "SYSROOT": merged_sysroot,
            "MERGED_SYSROOT": merged_sysroot,
            "CFLAGS": " ".join(cflags),
            "LDFLAGS": " ".join(ldflags),
            "LDLIBS": " ".join(ldlibs),
            "OUT_DIR": work,
            "LIB_DIR": self.config.lib_dir,
            "BUILD_DIR": self.config.build_dir,
            "JOBS": self.config.jobs,
            "ENABLED_FLAG_GROUPS": " ".join(enabled),
        }
        for key, val in package.env.items():
            extra[key] = expand(val, variables)
        env = entry_point_env(toolchain, extra, self.config.descriptor)

        print(f"[{package.name}] building (log: {log_path})", file=sys.stderr)
        returncode = self._invoke(package, env, log_path)

        result = BuildResult(
            package=package.name,
            status=BuildStatus.SUCCEEDED,
            log=log_path,
            returncode=returncode,
            flags={"CFLAGS": extra["CFLAGS"], "LDFLAGS": extra["LDFLAGS"]},
        )
        if returncode != 0:
            result.errors.append(str(PackageBuildNonZeroExit(package.name, returncode)))

        found, missing = self.collect(package, variables)
        mandatory_missing = [path for spec, path in missing if spec.mandatory]
        for spec, path in missing:
            if spec.mandatory or package.best_effort:
                result.errors.append(str(MandatoryArtifactMissing(package.name, path)))
            else:
                print(f"[{package.name}] note: optional artifact not produced: {path}",
                      file=sys.stderr)

        if package.best_effort:
            incomplete = returncode != 0 or bool(missing)
            if incomplete and not found:
                result.status = BuildStatus.FAILED
            elif incomplete:
                result.status = BuildStatus.SUCCEEDED_PARTIAL
        elif returncode != 0 or mandatory_missing:
            result.status = BuildStatus.FAILED

        stale_overlay = overlay_dir(self.config.overlay_root, package.name)
        if result.status == BuildStatus.FAILED:
            # A failed package contributes nothing, not even last run's files.
            if os.path.lexists(stale_overlay):
                shutil.rmtree(stale_overlay)
            return result

        result.artifacts = [Artifact(spec.kind, path) for spec, path in found]
        contributions = [
            (expand(spec.sysroot_path, variables), path)
            for spec, path in found
            if spec.sysroot_path and spec.kind != "executable"
        ]
        if contributions:
            result.overlay = compose_overlay(self.config.overlay_root, package.name, contributions)
        elif os.path.lexists(stale_overlay):
            shutil.rmtree(stale_overlay)
        return result
