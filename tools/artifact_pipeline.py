"""Post-process produced binaries and stage them.

For every raw executable a package produced:

  1. optimize   wasm-opt --epoch-injection --asyncify --debuginfo -O2
  2. precompile ahead-of-time compile the best available input
  3. stage      copy whatever exists into output_root/<package>/<triple>/

Optimizing and precompiling are accelerators.  Their failure is logged
and never keeps the raw binary (or the optimized one) from being staged.
"""

import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from typing import List, Optional

from build_config import DEFAULT_AOT_COMMAND, DEFAULT_AOT_SUFFIX, DEFAULT_OPTIMIZE_FLAGS
from build_errors import PipelineStageFailed
from package_builder import expand


def split_name(path):
    """ls.wasm -> ("ls", ".wasm"); lat_proc -> ("lat_proc", "")."""
    base = os.path.basename(path)
    stem, ext = os.path.splitext(base)
    if stem and ext:
        return stem, ext
    return base, ""


@dataclass
class ArtifactDescriptor:
    name: str
    raw: str
    optimized: Optional[str] = None
    precompiled: Optional[str] = None
    staged: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "name": self.name,
            "raw": self.raw,
            "optimized": self.optimized is not None,
            "precompiled": self.precompiled is not None,
            "staged": list(self.staged),
            "errors": list(self.errors),
        }


class ArtifactPipeline:
    def __init__(self, output_root, work_root, triple, optimizer=None,
                 optimize_flags=None, aot=None, aot_command=None,
                 aot_suffix=DEFAULT_AOT_SUFFIX):
        self.output_root = output_root
        self.work_root = work_root
        self.triple = triple
        self.optimizer = optimizer
        self.optimize_flags = list(optimize_flags or DEFAULT_OPTIMIZE_FLAGS)
        self.aot = aot
        self.aot_command = list(aot_command or DEFAULT_AOT_COMMAND)
        self.aot_suffix = aot_suffix.lstrip(".")

    @classmethod
    def from_config(cls, config):
        return cls(
            output_root=config.output_root,
            work_root=config.pipeline_root,
            triple=config.target,
            optimizer=config.wasm_opt,
            optimize_flags=config.optimize_flags,
            aot=config.aot,
            aot_command=config.aot_command,
            aot_suffix=config.aot_suffix,
        )

    def output_dir(self, package):
        return os.path.join(self.output_root, package, self.triple)

    # -- stages ----------------------------------------------------------

    @staticmethod
    def _tool_usable(tool):
        return bool(tool) and os.path.isfile(tool) and os.access(tool, os.X_OK)

    def _run(self, stage, cmd, artifact, output):
        try:
            result = subprocess.run(cmd, capture_output=True, text=True)
        except OSError as e:
            raise PipelineStageFailed(stage, artifact, str(e)) from e
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip().splitlines()
            raise PipelineStageFailed(stage, artifact,
                                      f"exit {result.returncode}"
                                      + (f": {detail[-1]}" if detail else ""))
        if not os.path.isfile(output):
            raise PipelineStageFailed(stage, artifact, f"no output at {output}")
        return output

    def optimize(self, raw, output):
        name = os.path.basename(raw)
        if not self._tool_usable(self.optimizer):
            raise PipelineStageFailed("optimize", name, f"optimizer not found at {self.optimizer}")
        cmd = [self.optimizer, *self.optimize_flags, raw, "-o", output]
        return self._run("optimize", cmd, name, output)

    def precompile(self, source, output, name):
        if not self._tool_usable(self.aot):
            raise PipelineStageFailed("precompile", name, f"aot compiler not found at {self.aot}")
        variables = {"aot": self.aot, "input": source, "output": output}
        cmd = [expand(part, variables) for part in self.aot_command]
        return self._run("precompile", cmd, name, output)

    # -- driver ----------------------------------------------------------

    def process_one(self, package, raw, work, dest):
        stem, ext = split_name(raw)
        desc = ArtifactDescriptor(name=stem, raw=raw)

        compile_input = raw
        try:
            desc.optimized = self.optimize(raw, os.path.join(work, f"{stem}.opt{ext}"))
            compile_input = desc.optimized
        except PipelineStageFailed as e:
            print(f"pipeline: warning: {e}; continuing with unoptimized binary", file=sys.stderr)
            desc.errors.append(str(e))

        try:
            desc.precompiled = self.precompile(
                compile_input, os.path.join(work, f"{stem}.{self.aot_suffix}"), stem)
        except PipelineStageFailed as e:
            print(f"pipeline: warning: {e}; continuing", file=sys.stderr)
            desc.errors.append(str(e))

        for src in (raw, desc.optimized, desc.precompiled):
            if src is None:
                continue
            dst = os.path.join(dest, os.path.basename(src))
            shutil.copy2(src, dst)
            desc.staged.append(dst)
        return desc

    def process(self, package, raw_paths):
        """Run every stage for each of *package*'s raw executables.

        The package's output subtree is cleared first, so a re-run never
        keeps variants from an earlier run.
        """
        dest = self.output_dir(package)
        work = os.path.join(self.work_root, package)
        for path in (dest, work):
            if os.path.lexists(path):
                shutil.rmtree(path)
            os.makedirs(path)

        descriptors = []
        seen = set()
        for raw in raw_paths:
            base = os.path.basename(raw)
            if base in seen:
                print(f"pipeline: warning: {package}: duplicate artifact name {base}; "
                      f"skipping {raw}", file=sys.stderr)
                continue
            seen.add(base)
            if not os.path.isfile(raw):
                print(f"pipeline: warning: {package}: raw artifact vanished: {raw}",
                      file=sys.stderr)
                continue
            descriptors.append(self.process_one(package, raw, work, dest))
        staged = sum(len(d.staged) for d in descriptors)
        print(f"pipeline: {package}: staged {staged} files under {dest}", file=sys.stderr)
        return descriptors


def run_pipeline(pipeline, report, graph):
    """Process every usable package's executables; fills report.staged."""
    for name, result in report.results.items():
        if graph[name].kind != "package" or not result.status.usable:
            continue
        raws = result.executables()
        if not raws:
            continue
        descriptors = pipeline.process(name, raws)
        report.staged[name] = [p for d in descriptors for p in d.staged]
        report.pipeline[name] = [d.to_dict() for d in descriptors]
    return report
