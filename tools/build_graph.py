"""Static package graph and its executor.

The graph is declared in packages.yaml, in declaration order.  Besides
real packages it holds two synthetic node kinds:

  merge  recompose the merged sysroot from the base plus the overlays of
         every package resolved so far, in declaration order
  stub   compile and archive a small stub library

The executor walks the graph dependencies-first (ties broken by
declaration order), dispatching ready nodes to a bounded thread pool.
Merge nodes are barriers: they run alone, on the scheduling thread, so
nothing ever reads the merged sysroot while it is being rewritten.

A failed node only affects its hard dependents, which are marked
skipped without being invoked; every other branch runs to completion
and the outcome is collected into one RunReport.
"""

import heapq
import json
import os
import sys
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from typing import Dict, List

import yaml

from build_errors import ConfigError, GraphError, MergeConflict
from package_builder import (
    ARTIFACT_KINDS,
    NODE_KINDS,
    ArtifactSpec,
    BuildResult,
    BuildStatus,
    Dependency,
    FlagGroup,
    Package,
    PackageBuilder,
    StubSource,
    StubSpec,
)
from stub_library import StubLibraryBuilder
from sysroot_merge import merge_all


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _tuple_of_str(node, key, value):
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigError(f"{node}: {key} must be a string or list of strings")
    return tuple(value)


def _parse_dep(node, raw):
    if isinstance(raw, str):
        return Dependency(raw)
    if isinstance(raw, dict) and isinstance(raw.get("name"), str):
        return Dependency(raw["name"], soft=bool(raw.get("soft", False)))
    raise ConfigError(f"{node}: bad dependency entry {raw!r}")


def _parse_artifact(node, raw):
    if not isinstance(raw, dict):
        raise ConfigError(f"{node}: artifact entries must be mappings")
    kind = raw.get("kind")
    if kind not in ARTIFACT_KINDS:
        raise ConfigError(f"{node}: artifact kind must be one of {', '.join(ARTIFACT_KINDS)}")
    if not isinstance(raw.get("path"), str):
        raise ConfigError(f"{node}: artifact needs a path")
    return ArtifactSpec(
        kind=kind,
        path=raw["path"],
        sysroot_path=raw.get("sysroot_path"),
        mandatory=bool(raw.get("mandatory", True)),
    )


def _parse_group(node, raw):
    if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
        raise ConfigError(f"{node}: flag groups need a name")
    return FlagGroup(
        name=raw["name"],
        cflags=_tuple_of_str(node, "cflags", raw.get("cflags")),
        ldflags=_tuple_of_str(node, "ldflags", raw.get("ldflags")),
        requires=_tuple_of_str(node, "requires", raw.get("requires")),
    )


def _parse_stub(node, raw):
    if not isinstance(raw, dict) or not isinstance(raw.get("archive"), str):
        raise ConfigError(f"{node}: stub nodes need stub.archive")
    sources = []
    for src in raw.get("sources") or []:
        if not isinstance(src, dict) or not isinstance(src.get("name"), str) \
                or not isinstance(src.get("code"), str):
            raise ConfigError(f"{node}: stub sources need name and code")
        sources.append(StubSource(src["name"], src["code"]))
    if not sources:
        raise ConfigError(f"{node}: stub has no sources")
    return StubSpec(
        archive=raw["archive"],
        sources=tuple(sources),
        unless_present=raw.get("unless_present"),
        sysroot_path=raw.get("sysroot_path"),
    )


def parse_package(raw):
    if not isinstance(raw, dict) or not isinstance(raw.get("name"), str):
        raise ConfigError(f"package entries need a name: {raw!r}")
    name = raw["name"]
    kind = raw.get("kind", "package")
    if kind not in NODE_KINDS:
        raise ConfigError(f"{name}: kind must be one of {', '.join(NODE_KINDS)}")
    env = raw.get("env") or {}
    if not isinstance(env, dict):
        raise ConfigError(f"{name}: env must be a mapping")
    entry = raw.get("entry")
    if isinstance(entry, str):
        entry = entry.split()
    pkg = Package(
        name=name,
        kind=kind,
        deps=tuple(_parse_dep(name, d) for d in raw.get("deps") or []),
        entry=_tuple_of_str(name, "entry", entry),
        cwd=raw.get("cwd"),
        best_effort=bool(raw.get("best_effort", False)),
        artifacts=tuple(_parse_artifact(name, a) for a in raw.get("artifacts") or []),
        cflags=_tuple_of_str(name, "cflags", raw.get("cflags")),
        ldflags=_tuple_of_str(name, "ldflags", raw.get("ldflags")),
        ldlibs=_tuple_of_str(name, "ldlibs", raw.get("ldlibs")),
        flag_groups=tuple(_parse_group(name, g) for g in raw.get("flag_groups") or []),
        env={str(k): str(v) for k, v in env.items()},
        stub=_parse_stub(name, raw.get("stub")) if kind == "stub" else None,
    )
    if kind == "package" and not pkg.entry:
        raise ConfigError(f"{name}: package nodes need an entry point")
    return pkg


def load_graph(path):
    """Read packages.yaml into a validated BuildGraph."""
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ConfigError(f"cannot read {path}: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigError(f"failed to parse {path}: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("packages"), list):
        raise ConfigError(f"{path}: expected a top-level 'packages' list")
    return BuildGraph([parse_package(p) for p in data["packages"]])


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

class BuildGraph:
    def __init__(self, packages):
        self.packages: Dict[str, Package] = {}
        for pkg in packages:
            if pkg.name in self.packages:
                raise GraphError(f"duplicate package name: {pkg.name}")
            self.packages[pkg.name] = pkg
        self._index = {name: i for i, name in enumerate(self.packages)}
        self._validate()
        self._order = self._topological_order()

    def _validate(self):
        errors = []
        for pkg in self.packages.values():
            for dep in pkg.dep_names:
                if dep not in self.packages:
                    errors.append(f"{pkg.name} depends on unknown package {dep}")
                elif dep == pkg.name:
                    errors.append(f"{pkg.name} depends on itself")
        if errors:
            raise GraphError("; ".join(errors))

    def _topological_order(self):
        # Kahn's algorithm; the heap keeps ties in declaration order.
        in_degree = {name: len(set(pkg.dep_names)) for name, pkg in self.packages.items()}
        dependents = {name: [] for name in self.packages}
        for pkg in self.packages.values():
            for dep in set(pkg.dep_names):
                dependents[dep].append(pkg.name)

        heap = [self._index[n] for n, deg in in_degree.items() if deg == 0]
        heapq.heapify(heap)
        names = list(self.packages)
        order = []
        while heap:
            name = names[heapq.heappop(heap)]
            order.append(name)
            for succ in dependents[name]:
                in_degree[succ] -= 1
                if in_degree[succ] == 0:
                    heapq.heappush(heap, self._index[succ])

        if len(order) < len(self.packages):
            cyclic = sorted(n for n in self.packages if n not in order)
            raise GraphError(f"dependency cycle among: {', '.join(cyclic)}")
        return order

    def __len__(self):
        return len(self.packages)

    def __contains__(self, name):
        return name in self.packages

    def __getitem__(self, name):
        return self.packages[name]

    def order(self) -> List[str]:
        return list(self._order)

    def declaration_index(self, name):
        return self._index[name]

    def ancestors(self, name):
        seen = set()
        stack = list(self.packages[name].dep_names)
        while stack:
            dep = stack.pop()
            if dep not in seen:
                seen.add(dep)
                stack.extend(self.packages[dep].dep_names)
        return seen

    def subgraph(self, targets):
        """Graph restricted to *targets* and everything they depend on."""
        keep = set()
        for target in targets:
            if target not in self.packages:
                raise GraphError(f"unknown package: {target}")
            keep.add(target)
            keep |= self.ancestors(target)
        return BuildGraph([p for n, p in self.packages.items() if n in keep])


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

@dataclass
class RunReport:
    results: Dict[str, BuildResult] = field(default_factory=dict)
    best_effort: Dict[str, bool] = field(default_factory=dict)
    staged: Dict[str, List[str]] = field(default_factory=dict)
    pipeline: Dict[str, List[dict]] = field(default_factory=dict)

    def counts(self):
        counts = {s.value: 0 for s in (BuildStatus.SUCCEEDED, BuildStatus.SUCCEEDED_PARTIAL,
                                       BuildStatus.FAILED, BuildStatus.SKIPPED)}
        for result in self.results.values():
            counts[result.status.value] = counts.get(result.status.value, 0) + 1
        return counts

    @property
    def staged_count(self):
        return sum(len(files) for files in self.staged.values())

    def required_failures(self):
        return [
            name for name, result in self.results.items()
            if result.status in (BuildStatus.FAILED, BuildStatus.SKIPPED)
            and not self.best_effort.get(name, False)
        ]

    @property
    def exit_code(self):
        return 1 if self.required_failures() else 0

    def lines(self):
        out = []
        for name, result in self.results.items():
            tag = " (best-effort)" if self.best_effort.get(name) else ""
            out.append(f"  {name:<20} {result.status.value}{tag}")
            for err in result.errors:
                out.append(f"      {err}")
        counts = self.counts()
        out.append("")
        out.append("  " + ", ".join(f"{k}={v}" for k, v in counts.items()))
        out.append(f"  staged artifacts: {self.staged_count}")
        return out

    def print(self, file=sys.stdout):
        print("=== build report ===", file=file)
        for line in self.lines():
            print(line, file=file)
        for name in self.required_failures():
            tail = self.results[name].log_tail()
            if tail:
                print(f"--- {name}: last lines of {self.results[name].log} ---", file=file)
                for line in tail:
                    print(f"  {line}", file=file)

    def to_dict(self):
        return {
            "packages": [
                dict(r.to_dict(), best_effort=self.best_effort.get(n, False))
                for n, r in self.results.items()
            ],
            "counts": self.counts(),
            "staged": self.staged,
            "pipeline": self.pipeline,
            "exit_code": self.exit_code,
        }

    def write_json(self, path):
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)


# ---------------------------------------------------------------------------
# Executor
# ---------------------------------------------------------------------------

_WAIT, _READY, _BLOCKED = "wait", "ready", "blocked"


class BuildGraphExecutor:
    def __init__(self, config, toolchain, builder=None, stub_builder=None,
                 workers=None, on_result=None):
        self.config = config
        self.toolchain = toolchain
        self.builder = builder or PackageBuilder(config)
        self.stub_builder = stub_builder or StubLibraryBuilder(config)
        self.workers = workers or config.workers
        self.on_result = on_result
        self.status: Dict[str, BuildStatus] = {}
        self.report = RunReport()

    # -- readiness -------------------------------------------------------

    def _edge_state(self, graph, dep):
        result = self.report.results.get(dep.name)
        if result is None:
            return _WAIT
        if result.status.usable:
            return _READY
        if dep.soft or graph[dep.name].best_effort:
            return _READY
        return _BLOCKED

    def _node_state(self, graph, name):
        states = [self._edge_state(graph, d) for d in graph[name].deps]
        if _BLOCKED in states:
            return _BLOCKED
        if _WAIT in states:
            return _WAIT
        return _READY

    def _blocking_deps(self, graph, name):
        return [d.name for d in graph[name].deps if self._edge_state(graph, d) == _BLOCKED]

    # -- node execution --------------------------------------------------

    def overlays_for(self, graph):
        """(owner, dir) overlays of every usable node resolved so far.

        Declaration order.  Every merge re-applies all of them, so the
        merged tree only grows.
        """
        overlays = []
        for name in graph.packages:
            result = self.report.results.get(name)
            if result is not None and result.status.usable and result.overlay:
                overlays.append((name, result.overlay))
        return overlays

    def compose(self, overlays):
        merge_all(self.toolchain.sysroot, overlays, self.config.merged_sysroot)

    def _merge(self, graph, name):
        overlays = self.overlays_for(graph)
        owners = ", ".join(owner for owner, _ in overlays) or "none"
        print(f"merge: refreshing merged sysroot (overlays: {owners})", file=sys.stderr)
        self.compose(overlays)
        return BuildResult(package=name, status=BuildStatus.SUCCEEDED,
                           overlay=None, returncode=0)

    def _build(self, package):
        builder = self.stub_builder if package.kind == "stub" else self.builder
        try:
            return builder.build(package, self.toolchain, self.config.merged_sysroot)
        except OSError as e:
            print(f"[{package.name}] error: {e}", file=sys.stderr)
            return BuildResult(package=package.name, status=BuildStatus.FAILED,
                               errors=[f"{package.name}: {e}"])

    def _record(self, graph, result):
        self.status[result.package] = result.status
        self.report.results[result.package] = result
        self.report.best_effort[result.package] = graph[result.package].best_effort
        print(f"[{result.package}] {result.status.value}", file=sys.stderr)
        if self.on_result:
            self.on_result(result)

    # -- main loop -------------------------------------------------------

    def run(self, graph):
        """Build every node of *graph*; returns the RunReport.

        Raises MergeConflict (usually OverlayCollision) if a merge step
        cannot compose the overlays; self.report still holds everything
        resolved up to that point.
        """
        self.report = RunReport()
        self.status = {name: BuildStatus.PENDING for name in graph.order()}
        os.makedirs(self.config.build_dir, exist_ok=True)

        # Every node sees a merged sysroot, even before the first merge node.
        self.compose([])

        pending = graph.order()
        running = {}
        with ThreadPoolExecutor(max_workers=self.workers) as pool:
            while pending or running:
                merge_ready = None
                dispatch = []
                skipped_any = False
                for name in list(pending):
                    state = self._node_state(graph, name)
                    if state == _BLOCKED:
                        skipped_any = True
                        pending.remove(name)
                        blockers = self._blocking_deps(graph, name)
                        self._record(graph, BuildResult(
                            package=name,
                            status=BuildStatus.SKIPPED,
                            errors=[f"{name}: skipped, required dependency "
                                    f"{', '.join(blockers)} did not build"],
                        ))
                    elif state == _READY:
                        if graph[name].kind == "merge":
                            if merge_ready is None:
                                merge_ready = name
                        else:
                            dispatch.append(name)

                if merge_ready is not None:
                    # Barrier: let in-flight builds drain, then merge alone.
                    if not running:
                        pending.remove(merge_ready)
                        self.status[merge_ready] = BuildStatus.BUILDING
                        try:
                            result = self._merge(graph, merge_ready)
                        except MergeConflict as e:
                            self._record(graph, BuildResult(
                                package=merge_ready, status=BuildStatus.FAILED,
                                errors=[str(e)]))
                            raise
                        self._record(graph, result)
                        continue
                    dispatch = []

                # Only fill free slots so later passes can pick by graph order.
                for name in dispatch[:self.workers - len(running)]:
                    pending.remove(name)
                    self.status[name] = BuildStatus.BUILDING
                    running[pool.submit(self._build, graph[name])] = name

                if not running:
                    if pending and not skipped_any and merge_ready is None:
                        # Unreachable for an acyclic graph.
                        raise GraphError(f"no runnable nodes among: {', '.join(pending)}")
                    continue

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    running.pop(future)
                    self._record(graph, future.result())

        # Report in declaration order, not completion order.
        ordered = {n: self.report.results[n] for n in graph.packages if n in self.report.results}
        self.report.results = ordered
        return self.report
