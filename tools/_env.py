"""Shared environment sanitization for package build entry points.

Package entry points run as separate processes and inherit whatever the
orchestrator hands them.  Host variables like CFLAGS or C_INCLUDE_PATH
leak into autotools configure runs and make cross builds depend on the
machine they happen to run on.

This module provides a whitelist-based approach: start from a clean env
with only functional vars, pin determinism vars, then layer the
toolchain and per-package variables on top.
"""

import os

# Vars passed through from the host environment when present.
_PASSTHROUGH = frozenset({
    "HOME", "USER", "LOGNAME",
    "TMPDIR", "TEMP", "TMP",
    "TERM",
    "PATH",
    "LIND_WASM_ROOT",
})

# Vars pinned to fixed values for determinism.
_DETERMINISM_PINS = {
    "LC_ALL": "C",
    "LANG": "C",
    "SOURCE_DATE_EPOCH": "315576000",
    "CCACHE_DISABLE": "1",
}

# Host build vars that must never reach an entry point implicitly.
_HOST_BUILD_VARS = (
    "CFLAGS", "CPPFLAGS", "CXXFLAGS", "LDFLAGS", "LDLIBS",
    "C_INCLUDE_PATH", "CPLUS_INCLUDE_PATH", "LIBRARY_PATH",
    "PKG_CONFIG_PATH", "LD_LIBRARY_PATH",
)


def clean_env():
    """Return a clean env dict for subprocess env= parameter.

    Copies only whitelisted vars from the host, then applies
    determinism pins.  Callers layer entry-point vars on top.
    """
    env = {}
    for key in _PASSTHROUGH:
        val = os.environ.get(key)
        if val is not None:
            env[key] = val
    env.update(_DETERMINISM_PINS)
    return env


def toolchain_env(toolchain, descriptor=None):
    """Variables describing *toolchain*, in the names the entry points read."""
    env = {
        "CLANG": toolchain.compiler,
        "CC": toolchain.compiler,
        "AR": toolchain.archiver,
        "RANLIB": toolchain.librarian,
        "TARGET_TRIPLE": toolchain.target_triple,
        "BASE_SYSROOT": toolchain.sysroot,
    }
    if descriptor:
        env["TOOL_ENV"] = os.path.abspath(descriptor)
    return env


def entry_point_env(toolchain, extra, descriptor=None):
    """Full environment for one package entry point invocation.

    *extra* values win over the toolchain vars; None values are dropped.
    """
    env = clean_env()
    for var in _HOST_BUILD_VARS:
        env.pop(var, None)
    env.update(toolchain_env(toolchain, descriptor))
    for key, val in extra.items():
        if val is None:
            env.pop(key, None)
        else:
            env[key] = str(val)
    return env
