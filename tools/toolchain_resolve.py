#!/usr/bin/env python3
"""Resolve the cross toolchain once and persist it for later build steps.

Picks a compiler, archiver and librarian from an ordered candidate list
(explicit override, well-known install path under LIND_WASM_ROOT, PATH
lookup), writes the result to a shell-sourceable descriptor so package
entry points started as separate processes see the same tools, and
reads that descriptor back.
"""

import argparse
import glob
import os
import shlex
import shutil
import subprocess
import sys
from dataclasses import dataclass

from build_errors import SysrootMissing, ToolchainMissing

TOOL_KINDS = ("compiler", "archiver", "librarian")

# Descriptor variable for each tool kind.  Names match what the package
# entry points source from the descriptor.
_DESCRIPTOR_VARS = {
    "compiler": "CLANG",
    "archiver": "AR",
    "librarian": "RANLIB",
}

# Binary names looked up under the install dir and then on PATH, in order.
_TOOL_NAMES = {
    "compiler": ("clang-18", "clang"),
    "archiver": ("llvm-ar", "ar"),
    "librarian": ("llvm-ranlib", "ranlib"),
}

_INSTALL_NAMES = {
    "compiler": "clang",
    "archiver": "llvm-ar",
    "librarian": "llvm-ranlib",
}


@dataclass(frozen=True)
class Toolchain:
    compiler: str
    archiver: str
    librarian: str
    target_triple: str
    sysroot: str

    @property
    def multiarch(self):
        return multiarch_name(self.target_triple)


def multiarch_name(triple):
    """wasm32-unknown-wasi -> wasm32-wasi (drop the vendor field)."""
    parts = triple.split("-")
    if len(parts) == 3 and parts[1] == "unknown":
        return f"{parts[0]}-{parts[2]}"
    return triple


def _is_executable(path):
    return bool(path) and os.path.isfile(path) and os.access(path, os.X_OK)


def install_dirs(lind_wasm_root):
    """Well-known LLVM bin dirs under the lind-wasm checkout, newest name last."""
    if not lind_wasm_root:
        return []
    return sorted(glob.glob(os.path.join(lind_wasm_root, "clang+llvm-*", "bin")))


def default_candidates(lind_wasm_root=None, overrides=None):
    """Build the ordered candidate list for every tool kind.

    Each candidate is either a path or ``("which", name)`` for a PATH
    lookup evaluated at resolve time.
    """
    overrides = overrides or {}
    candidates = {}
    for kind in TOOL_KINDS:
        cands = []
        override = overrides.get(kind)
        if override:
            cands.append(override if os.sep in override else ("which", override))
        for bindir in install_dirs(lind_wasm_root):
            cands.append(os.path.join(bindir, _INSTALL_NAMES[kind]))
        for name in _TOOL_NAMES[kind]:
            cands.append(("which", name))
        candidates[kind] = cands
    return candidates


def _evaluate(candidate):
    if isinstance(candidate, tuple):
        strategy, name = candidate
        if strategy != "which":
            raise ValueError(f"unknown lookup strategy: {strategy}")
        return shutil.which(name), f"which:{name}"
    return candidate, candidate


def pick(kind, candidates):
    """Return the first executable candidate for *kind*."""
    tried = []
    for cand in candidates:
        path, label = _evaluate(cand)
        tried.append(label)
        if _is_executable(path):
            return os.path.abspath(path)
    raise ToolchainMissing(kind, tried)


def compiler_version(compiler):
    """First line of ``<compiler> --version``; empty string on any failure."""
    try:
        result = subprocess.run([compiler, "--version"], capture_output=True,
                                text=True, timeout=30)
    except (OSError, subprocess.TimeoutExpired):
        return ""
    if result.returncode != 0:
        return ""
    lines = result.stdout.strip().splitlines()
    return lines[0] if lines else ""


def resolve(candidates, target_triple, sysroot, descriptor=None):
    """Resolve every tool kind and publish an immutable Toolchain.

    Fails fast with ToolchainMissing on the first kind with no usable
    candidate.  When *descriptor* is given the result is persisted there.
    """
    paths = {}
    for kind in TOOL_KINDS:
        paths[kind] = pick(kind, candidates.get(kind, []))

    toolchain = Toolchain(
        compiler=paths["compiler"],
        archiver=paths["archiver"],
        librarian=paths["librarian"],
        target_triple=target_triple,
        sysroot=os.path.abspath(sysroot),
    )

    version = compiler_version(toolchain.compiler)
    if version:
        print(f"toolchain: {version}", file=sys.stderr)

    if descriptor:
        write_descriptor(toolchain, descriptor)
    return toolchain


def write_descriptor(toolchain, path):
    """Write *toolchain* as ``export VAR='value'`` lines."""
    os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
    values = {
        "CLANG": toolchain.compiler,
        "AR": toolchain.archiver,
        "RANLIB": toolchain.librarian,
        "TARGET_TRIPLE": toolchain.target_triple,
        "SYSROOT": toolchain.sysroot,
    }
    tmp = path + ".tmp"
    with open(tmp, "w") as f:
        for key, val in values.items():
            f.write(f"export {key}={shlex.quote(val)}\n")
    os.replace(tmp, path)


def read_descriptor(path):
    """Parse a descriptor into a dict of variable -> value."""
    values = {}
    with open(path) as f:
        for line in f:
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("export "):
                line = line[len("export "):]
            key, sep, raw = line.partition("=")
            if not sep:
                continue
            parsed = shlex.split(raw)
            values[key.strip()] = parsed[0] if parsed else ""
    return values


def load(path):
    """Recover the Toolchain persisted by an earlier resolve()."""
    if not os.path.isfile(path):
        raise ToolchainMissing("descriptor", [path])
    values = read_descriptor(path)
    for kind in TOOL_KINDS:
        var = _DESCRIPTOR_VARS[kind]
        if not values.get(var):
            raise ToolchainMissing(kind, [f"{path}:{var}"])
    return Toolchain(
        compiler=values["CLANG"],
        archiver=values["AR"],
        librarian=values["RANLIB"],
        target_triple=values.get("TARGET_TRIPLE", ""),
        sysroot=values.get("SYSROOT", ""),
    )


def check_base_sysroot(base, target_triple):
    """Preflight: the base sysroot must carry the target's stdio.h."""
    probe = os.path.join(base, "include", multiarch_name(target_triple), "stdio.h")
    if not os.access(probe, os.R_OK):
        raise SysrootMissing(base)
    return probe


def main():
    parser = argparse.ArgumentParser(description="Resolve and persist the cross toolchain")
    parser.add_argument("--lind-wasm-root", default=os.environ.get("LIND_WASM_ROOT"),
                        help="lind-wasm checkout holding clang+llvm-*/bin")
    parser.add_argument("--sysroot", required=True, help="Base sysroot directory")
    parser.add_argument("--target", default="wasm32-unknown-wasi", help="Target triple")
    parser.add_argument("--descriptor", required=True, help="Descriptor file to write")
    parser.add_argument("--clang", help="Explicit compiler path")
    parser.add_argument("--ar", help="Explicit archiver path")
    parser.add_argument("--ranlib", help="Explicit librarian path")
    args = parser.parse_args()

    try:
        check_base_sysroot(args.sysroot, args.target)
        candidates = default_candidates(args.lind_wasm_root, {
            "compiler": args.clang,
            "archiver": args.ar,
            "librarian": args.ranlib,
        })
        toolchain = resolve(candidates, args.target, args.sysroot, args.descriptor)
    except (ToolchainMissing, SysrootMissing) as e:
        print(f"error: {e}", file=sys.stderr)
        sys.exit(1)

    print(f"compiler:  {toolchain.compiler}")
    print(f"archiver:  {toolchain.archiver}")
    print(f"librarian: {toolchain.librarian}")
    print(f"wrote {args.descriptor}")


if __name__ == "__main__":
    main()
