"""Synthetic stub library nodes.

Some targets link against symbols the wasi sysroot does not provide
(libm.a, the POSIX scheduler calls lmbench uses).  A stub node compiles
a few tiny C sources with the resolved toolchain and archives them, so
the consumer links without pretending the functionality exists: the
stubs set errno = ENOTSUP and return an error.
"""

import os
import shutil
import sys

from build_errors import PackageBuildNonZeroExit
from package_builder import Artifact, BuildResult, BuildStatus, expand, run_logged
from sysroot_merge import compose_overlay, overlay_dir


class StubLibraryBuilder:
    def __init__(self, config):
        self.config = config

    def _variables(self, package, toolchain, sysroot):
        return {
            "name": package.name,
            "sysroot": sysroot,
            "triple": toolchain.target_triple,
            "multiarch": toolchain.multiarch,
            "lib_dir": self.config.lib_dir,
        }

    def build(self, package, toolchain, merged_sysroot):
        spec = package.stub
        variables = self._variables(package, toolchain, merged_sysroot)
        log_path = os.path.join(self.config.log_dir, f"{package.name}.log")
        if os.path.exists(log_path):
            os.remove(log_path)
        result = BuildResult(package=package.name, status=BuildStatus.SUCCEEDED,
                             log=log_path, returncode=0)

        if spec.unless_present:
            present = os.path.join(merged_sysroot, expand(spec.unless_present, variables))
            if os.path.exists(present):
                print(f"[{package.name}] {present} already present; no stub needed",
                      file=sys.stderr)
                stale = overlay_dir(self.config.overlay_root, package.name)
                if os.path.lexists(stale):
                    shutil.rmtree(stale)
                return result

        work = os.path.join(self.config.work_root, package.name)
        if os.path.lexists(work):
            shutil.rmtree(work)
        os.makedirs(work)
        os.makedirs(self.config.lib_dir, exist_ok=True)

        print(f"[{package.name}] creating stub {spec.archive}", file=sys.stderr)
        objects = []
        for source in spec.sources:
            src = os.path.join(work, source.name)
            with open(src, "w") as f:
                f.write(source.code)
            obj = os.path.splitext(src)[0] + ".o"
            rc = run_logged([
                toolchain.compiler,
                f"--target={toolchain.target_triple}",
                f"--sysroot={merged_sysroot}",
                "-c", src, "-o", obj,
            ], log_path)
            if rc != 0:
                return self._fail(result, package, rc)
            objects.append(obj)

        archive = os.path.join(self.config.lib_dir, spec.archive)
        if os.path.exists(archive):
            os.remove(archive)
        rc = run_logged([toolchain.archiver, "rcs", archive, *objects], log_path)
        if rc != 0 or not os.path.isfile(archive):
            return self._fail(result, package, rc or 1)

        rc = run_logged([toolchain.librarian, archive], log_path)
        if rc != 0:
            print(f"[{package.name}] warning: {os.path.basename(toolchain.librarian)} "
                  f"exited {rc} for {spec.archive}; archive left unindexed", file=sys.stderr)

        result.artifacts = [Artifact("static-library", archive)]
        if spec.sysroot_path:
            rel = expand(spec.sysroot_path, variables)
            result.overlay = compose_overlay(self.config.overlay_root, package.name,
                                             [(rel, archive)])
        return result

    def _fail(self, result, package, returncode):
        result.status = BuildStatus.FAILED
        result.returncode = returncode
        result.errors.append(str(PackageBuildNonZeroExit(package.name, returncode)))
        return result
