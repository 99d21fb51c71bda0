"""Compiler flag capability probe.

Answers "does the resolved compiler accept this flag for this target?"
by compiling a trivial translation unit.  Results are cached for the
lifetime of the probe, which is one run: the toolchain cannot change
underneath it.
"""

import shlex
import subprocess
import threading

_PROBE_SOURCE = "int main(void){return 0;}\n"


class CapabilityProbe:
    def __init__(self, toolchain, sysroot=None):
        self.toolchain = toolchain
        self.sysroot = sysroot or toolchain.sysroot
        self._cache = {}
        self._lock = threading.Lock()

    def _command(self, flag):
        return [
            self.toolchain.compiler,
            f"--target={self.toolchain.target_triple}",
            f"--sysroot={self.sysroot}",
            *shlex.split(flag),
            "-x", "c", "-c", "-o", "/dev/null", "-",
        ]

    def _compile(self, flag):
        try:
            result = subprocess.run(
                self._command(flag),
                input=_PROBE_SOURCE,
                capture_output=True,
                text=True,
                timeout=60,
            )
        except (OSError, subprocess.TimeoutExpired):
            return False
        return result.returncode == 0

    def supports(self, flag):
        with self._lock:
            if flag in self._cache:
                return self._cache[flag]
        # Probe outside the lock; a duplicate probe is harmless.
        supported = self._compile(flag)
        with self._lock:
            return self._cache.setdefault(flag, supported)

    def supports_all(self, flags):
        return all(self.supports(f) for f in flags)

    def known(self):
        """Snapshot of (flag, supported) pairs probed so far."""
        with self._lock:
            return sorted(self._cache.items())
