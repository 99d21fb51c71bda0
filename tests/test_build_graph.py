"""Tests for build_graph.py: loading, ordering, the executor and the run report."""
import json
import os
import threading
import time

import pytest

from conftest import script_package, write_file, write_wasm

from artifact_pipeline import ArtifactPipeline, run_pipeline
from build_errors import ConfigError, GraphError, OverlayCollision
from build_graph import BuildGraph, BuildGraphExecutor, RunReport, load_graph
from package_builder import (
    ArtifactSpec,
    BuildResult,
    BuildStatus,
    Dependency,
    Package,
    StubSource,
    StubSpec,
)


def _pkg(name, deps=(), **kwargs):
    deps = tuple(Dependency(d) if isinstance(d, str) else d for d in deps)
    kwargs.setdefault("entry", () if kwargs.get("kind") == "merge" else ("true",))
    return Package(name=name, deps=deps, **kwargs)


class FakeBuilder:
    """Stands in for PackageBuilder; records calls and concurrency."""

    def __init__(self, fail=(), delays=None, delay=0.0):
        self.fail = set(fail)
        self.delays = delays or {}
        self.delay = delay
        self.executor = None
        self.calls = []
        self.active = set()
        self.max_active = 0
        self.lock = threading.Lock()

    def build(self, package, toolchain, merged_sysroot):
        if self.executor is not None:
            for dep in package.dep_names:
                assert dep in self.executor.report.results, f"{package.name} started before {dep}"
        with self.lock:
            self.calls.append(package.name)
            self.active.add(package.name)
            self.max_active = max(self.max_active, len(self.active))
        time.sleep(self.delays.get(package.name, self.delay))
        with self.lock:
            self.active.discard(package.name)
        status = BuildStatus.FAILED if package.name in self.fail else BuildStatus.SUCCEEDED
        return BuildResult(package=package.name, status=status)


def _executor(config, toolchain, fake, workers=2):
    executor = BuildGraphExecutor(config, toolchain, builder=fake, stub_builder=fake,
                                  workers=workers)
    fake.executor = executor
    return executor


def _statuses(report):
    return {name: result.status for name, result in report.results.items()}


# ---------------------------------------------------------------------------
# loading
# ---------------------------------------------------------------------------

GRAPH_YAML = """\
packages:
  - name: libtirpc
    entry: bash libtirpc/compile_libtirpc.sh
    artifacts:
      - kind: static-library
        path: "{out_dir}/libtirpc.a"
        sysroot_path: "lib/{multiarch}/libtirpc.a"
  - name: merge-sysroot
    kind: merge
    deps: [libtirpc]
  - name: lmb-stubs
    kind: stub
    deps: [merge-sysroot]
    stub:
      archive: liblmb_stubs.a
      sources:
        - name: stubs.c
          code: "int x;"
  - name: lmbench
    entry: [bash, lmbench/src/compile_lmbench.sh]
    deps:
      - merge-sysroot
      - lmb-stubs
      - name: libtirpc
        soft: true
    cflags: "-O2"
    flag_groups:
      - name: threads
        cflags: ["-pthread"]
        ldflags: ["-Wl,--shared-memory"]
      - name: thread-model
        cflags: ["-mthread-model=posix"]
        requires: [threads]
  - name: coreutils
    entry: bash coreutils/compile_coreutils.sh
    best_effort: true
    deps: [merge-sysroot]
    artifacts:
      - kind: executable
        path: "{out_dir}/src/*"
"""


def test_load_graph(tmp_path):
    graph = load_graph(write_file(tmp_path / "packages.yaml", GRAPH_YAML))
    assert len(graph) == 5
    lmbench = graph["lmbench"]
    assert lmbench.entry == ("bash", "lmbench/src/compile_lmbench.sh")
    assert lmbench.deps == (Dependency("merge-sysroot"), Dependency("lmb-stubs"),
                            Dependency("libtirpc", soft=True))
    assert lmbench.cflags == ("-O2",)
    assert [g.name for g in lmbench.flag_groups] == ["threads", "thread-model"]
    assert lmbench.flag_groups[1].requires == ("threads",)
    assert graph["libtirpc"].entry == ("bash", "libtirpc/compile_libtirpc.sh")
    assert graph["libtirpc"].artifacts[0].sysroot_path == "lib/{multiarch}/libtirpc.a"
    stub = graph["lmb-stubs"].stub
    assert isinstance(stub, StubSpec)
    assert stub.archive == "liblmb_stubs.a"
    assert all(isinstance(src, StubSource) for src in stub.sources)
    assert graph["coreutils"].best_effort
    assert graph["merge-sysroot"].kind == "merge"


def test_repository_graph_loads():
    repo = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
    graph = load_graph(os.path.join(repo, "packages.yaml"))
    order = graph.order()
    assert order.index("libtirpc") < order.index("merge-sysroot") < order.index("lmbench")
    assert graph["coreutils"].best_effort


@pytest.mark.parametrize("text, message", [
    ("- name: a\n", "top-level 'packages' list"),
    ("packages:\n  - name: a\n", "need an entry point"),
    ("packages:\n  - name: a\n    kind: rpm\n", "kind must be one of"),
    ("packages:\n  - entry: x\n", "need a name"),
    ("packages:\n  - name: a\n    entry: x\n    artifacts:\n      - {kind: binary, path: x}\n",
     "artifact kind"),
    ("packages:\n  - name: s\n    kind: stub\n", "stub.archive"),
    ("packages: [\n", "failed to parse"),
])
def test_malformed_graphs(tmp_path, text, message):
    path = write_file(tmp_path / "packages.yaml", text)
    with pytest.raises(ConfigError, match=message):
        load_graph(path)


# ---------------------------------------------------------------------------
# graph
# ---------------------------------------------------------------------------

def test_order_is_dependencies_first_then_declaration():
    graph = BuildGraph([
        _pkg("app", ["zlib", "openssl"]),
        _pkg("openssl"),
        _pkg("zlib"),
        _pkg("tool"),
    ])
    assert graph.order() == ["openssl", "zlib", "app", "tool"]


def test_order_respects_every_edge():
    graph = BuildGraph([
        _pkg("d", ["b", "c"]),
        _pkg("c", ["a"]),
        _pkg("b", ["a"]),
        _pkg("a"),
    ])
    order = graph.order()
    for name in graph.packages:
        for dep in graph[name].dep_names:
            assert order.index(dep) < order.index(name)


@pytest.mark.parametrize("packages, message", [
    ([_pkg("a", ["b"]), _pkg("b", ["a"])], "dependency cycle among: a, b"),
    ([_pkg("a", ["ghost"])], "unknown package ghost"),
    ([_pkg("a", ["a"])], "depends on itself"),
    ([_pkg("a"), _pkg("a")], "duplicate package name"),
])
def test_invalid_graphs(packages, message):
    with pytest.raises(GraphError, match=message):
        BuildGraph(packages)


def test_subgraph_keeps_ancestors_only():
    graph = BuildGraph([
        _pkg("zlib"),
        _pkg("openssl"),
        _pkg("merge", ["zlib", "openssl"], kind="merge"),
        _pkg("curl", ["merge"]),
        _pkg("sed", ["merge"]),
    ])
    sub = graph.subgraph(["curl"])
    assert sub.order() == ["zlib", "openssl", "merge", "curl"]
    with pytest.raises(GraphError):
        graph.subgraph(["nginx"])


# ---------------------------------------------------------------------------
# executor
# ---------------------------------------------------------------------------

def test_failure_skips_hard_dependents_only(config, toolchain):
    graph = BuildGraph([
        _pkg("a"),
        _pkg("b", ["a"]),
        _pkg("c", ["b"]),
        _pkg("d"),
        _pkg("e", ["d"]),
    ])
    fake = FakeBuilder(fail=["a"])
    report = _executor(config, toolchain, fake).run(graph)

    assert _statuses(report) == {
        "a": BuildStatus.FAILED,
        "b": BuildStatus.SKIPPED,
        "c": BuildStatus.SKIPPED,
        "d": BuildStatus.SUCCEEDED,
        "e": BuildStatus.SUCCEEDED,
    }
    assert sorted(fake.calls) == ["a", "d", "e"]
    assert "required dependency a did not build" in report.results["b"].errors[0]
    assert report.required_failures() == ["a", "b", "c"]
    assert report.exit_code == 1


def test_best_effort_failure_does_not_block(config, toolchain):
    graph = BuildGraph([
        _pkg("gnulib", best_effort=True),
        _pkg("sed", ["gnulib"]),
    ])
    fake = FakeBuilder(fail=["gnulib"])
    report = _executor(config, toolchain, fake).run(graph)
    assert _statuses(report) == {"gnulib": BuildStatus.FAILED, "sed": BuildStatus.SUCCEEDED}
    assert report.exit_code == 0


def test_soft_edge_does_not_block(config, toolchain):
    graph = BuildGraph([
        _pkg("zlib"),
        _pkg("curl", [Dependency("zlib", soft=True)]),
    ])
    fake = FakeBuilder(fail=["zlib"])
    report = _executor(config, toolchain, fake).run(graph)
    assert report.results["curl"].status == BuildStatus.SUCCEEDED
    assert report.exit_code == 1


def test_skipped_best_effort_package_is_not_fatal(config, toolchain):
    graph = BuildGraph([
        _pkg("gnulib", best_effort=True),
        _pkg("coreutils", ["gnulib", "helper"], best_effort=True),
        _pkg("helper"),
    ])
    fake = FakeBuilder(fail=["helper"])
    report = _executor(config, toolchain, fake).run(graph)
    assert report.results["coreutils"].status == BuildStatus.SKIPPED
    assert report.required_failures() == ["helper"]


def test_results_are_reported_in_declaration_order(config, toolchain):
    graph = BuildGraph([
        _pkg("slow"),
        _pkg("fast"),
        _pkg("after", ["fast"]),
    ])
    fake = FakeBuilder(delays={"slow": 0.2})
    report = _executor(config, toolchain, fake).run(graph)
    assert list(report.results) == ["slow", "fast", "after"]


def test_parallelism_is_bounded(config, toolchain):
    graph = BuildGraph([_pkg(f"p{i}") for i in range(6)])
    fake = FakeBuilder(delay=0.05)
    report = _executor(config, toolchain, fake, workers=2).run(graph)
    assert len(fake.calls) == 6
    assert fake.max_active <= 2
    assert report.exit_code == 0


def test_single_worker_builds_in_order(config, toolchain):
    graph = BuildGraph([
        _pkg("app", ["zlib"]),
        _pkg("zlib"),
        _pkg("tool"),
    ])
    fake = FakeBuilder()
    _executor(config, toolchain, fake, workers=1).run(graph)
    assert fake.calls == ["zlib", "app", "tool"]


def test_merge_runs_alone(config, toolchain):
    graph = BuildGraph([
        _pkg("slow"),
        _pkg("lib"),
        _pkg("merge", ["lib"], kind="merge"),
        _pkg("app", ["merge"]),
    ])
    fake = FakeBuilder(delays={"slow": 0.3})
    executor = _executor(config, toolchain, fake)
    busy_during_merge = []
    compose = executor.compose

    def recording_compose(overlays):
        with fake.lock:
            busy_during_merge.append(set(fake.active))
        compose(overlays)

    executor.compose = recording_compose
    report = executor.run(graph)

    assert report.results["merge"].status == BuildStatus.SUCCEEDED
    # Initial compose plus the merge node.
    assert busy_during_merge == [set(), set()]
    assert fake.calls.index("slow") < fake.calls.index("app")


def test_merge_composes_every_resolved_overlay_in_declaration_order(config, toolchain, tmp_path):
    overlays = {}
    for name in ("zlib", "openssl", "unrelated"):
        overlays[name] = tmp_path / "overlays" / name
        write_file(overlays[name] / "include" / f"{name}.h", name)

    class OverlayBuilder(FakeBuilder):
        def build(self, package, toolchain, merged_sysroot):
            result = super().build(package, toolchain, merged_sysroot)
            if package.name in overlays:
                result.overlay = str(overlays[package.name])
            return result

    graph = BuildGraph([
        _pkg("unrelated"),
        _pkg("openssl"),
        _pkg("zlib"),
        _pkg("merge", ["zlib", "openssl"], kind="merge"),
        _pkg("curl", ["merge"]),
    ])
    executor = _executor(config, toolchain, OverlayBuilder(), workers=1)
    composed = []
    compose = executor.compose

    def recording_compose(layers):
        composed.append([owner for owner, _ in layers])
        compose(layers)

    executor.compose = recording_compose
    executor.run(graph)

    # "unrelated" is not an ancestor of the merge but its overlay stays.
    assert composed == [[], ["unrelated", "openssl", "zlib"]]
    merged = config.merged_sysroot
    assert os.path.isfile(os.path.join(merged, "include", "zlib.h"))
    assert os.path.isfile(os.path.join(merged, "include", "unrelated.h"))
    assert os.path.isfile(os.path.join(merged, "include", "wasm32-wasi", "stdio.h"))


def test_later_merge_keeps_earlier_merge_contributions(config, toolchain, apps_root):
    def header(name):
        return script_package(
            apps_root, name,
            f'mkdir -p "$OUT_DIR/include"\necho {name} > "$OUT_DIR/include/{name}.h"\n',
            artifacts=(ArtifactSpec("header-set", "{out_dir}/include", "include"),))

    def consumer(name, needs, merge):
        return script_package(apps_root, name,
                              f'test -f "$SYSROOT/include/{needs}.h" || exit 4\n',
                              deps=[merge])

    graph = BuildGraph([
        header("a"),
        _pkg("merge-a", ["a"], kind="merge"),
        consumer("b", "a", "merge-a"),
        header("c"),
        _pkg("merge-c", ["c"], kind="merge"),
        consumer("d", "c", "merge-c"),
    ])
    report = BuildGraphExecutor(config, toolchain, workers=2).run(graph)

    assert set(_statuses(report).values()) == {BuildStatus.SUCCEEDED}
    merged = config.merged_sysroot
    assert os.path.isfile(os.path.join(merged, "include", "a.h"))
    assert os.path.isfile(os.path.join(merged, "include", "c.h"))


def test_builder_oserror_fails_the_node(config, toolchain):
    class ExplodingBuilder(FakeBuilder):
        def build(self, package, toolchain, merged_sysroot):
            raise PermissionError(13, "Permission denied", "/ro/out")

    graph = BuildGraph([_pkg("a"), _pkg("b", ["a"])])
    report = _executor(config, toolchain, ExplodingBuilder()).run(graph)
    assert _statuses(report) == {"a": BuildStatus.FAILED, "b": BuildStatus.SKIPPED}


def test_on_result_sees_every_node(config, toolchain):
    graph = BuildGraph([_pkg("a"), _pkg("m", ["a"], kind="merge"), _pkg("b", ["m"])])
    seen = []
    executor = BuildGraphExecutor(config, toolchain, builder=FakeBuilder(),
                                  on_result=lambda r: seen.append(r.package))
    executor.run(graph)
    assert sorted(seen) == ["a", "b", "m"]


# ---------------------------------------------------------------------------
# end to end with real entry points
# ---------------------------------------------------------------------------

LIBA_SCRIPT = """\
    mkdir -p "$OUT_DIR/include"
    echo "#define LIBA 1" > "$OUT_DIR/include/a.h"
    echo "liba" > "$OUT_DIR/liba.a"
"""

APP_SCRIPT = """\
    if [ ! -f "$SYSROOT/include/alib/a.h" ] || [ ! -f "$SYSROOT/lib/wasm32-wasi/liba.a" ]; then
      echo "a.h not found in $SYSROOT" >&2
      exit 1
    fi
    cp prebuilt/app.wasm "$OUT_DIR/app.wasm"
"""

LIBA_ARTIFACTS = (
    ArtifactSpec("static-library", "{out_dir}/liba.a", "lib/{multiarch}/liba.a"),
    ArtifactSpec("header-set", "{out_dir}/include", "include/alib"),
)


def _library_app_graph(apps_root, liba_script=LIBA_SCRIPT, **liba_kwargs):
    write_wasm(apps_root / "prebuilt" / "app.wasm", b"app")
    return BuildGraph([
        script_package(apps_root, "liba", liba_script, artifacts=LIBA_ARTIFACTS, **liba_kwargs),
        _pkg("merge-sysroot", ["liba"], kind="merge"),
        script_package(apps_root, "app", APP_SCRIPT, deps=["merge-sysroot", "liba"],
                       artifacts=(ArtifactSpec("executable", "{out_dir}/app.wasm"),)),
    ])


def test_library_overlay_reaches_dependent_build(config, toolchain, apps_root):
    graph = _library_app_graph(apps_root)
    report = BuildGraphExecutor(config, toolchain).run(graph)

    assert _statuses(report) == {
        "liba": BuildStatus.SUCCEEDED,
        "merge-sysroot": BuildStatus.SUCCEEDED,
        "app": BuildStatus.SUCCEEDED,
    }
    merged = config.merged_sysroot
    assert os.path.isfile(os.path.join(merged, "include", "alib", "a.h"))
    assert os.path.isfile(os.path.join(merged, "lib", "wasm32-wasi", "libc.a"))

    run_pipeline(ArtifactPipeline.from_config(config), report, graph)
    out = os.path.join(config.output_root, "app", "wasm32-unknown-wasi")
    assert sorted(os.listdir(out)) == ["app.cwasm", "app.opt.wasm", "app.wasm"]
    assert report.staged_count == 3
    assert report.exit_code == 0


def test_failed_best_effort_library_still_runs_dependents(config, toolchain, apps_root):
    graph = _library_app_graph(apps_root, liba_script="exit 1\n", best_effort=True)
    report = BuildGraphExecutor(config, toolchain).run(graph)

    assert _statuses(report) == {
        "liba": BuildStatus.FAILED,
        "merge-sysroot": BuildStatus.SUCCEEDED,
        "app": BuildStatus.FAILED,
    }
    assert "a.h not found" in "\n".join(report.results["app"].log_tail())
    assert report.required_failures() == ["app"]
    assert report.exit_code == 1


def test_overlay_collision_aborts_the_run(config, toolchain, apps_root):
    header = ArtifactSpec("header-set", "{out_dir}/include", "include")
    script = 'mkdir -p "$OUT_DIR/include"\necho "$0" > "$OUT_DIR/include/common.h"\n'
    graph = BuildGraph([
        script_package(apps_root, "one", script, artifacts=(header,)),
        script_package(apps_root, "two", script, artifacts=(header,)),
        _pkg("merge-sysroot", ["one", "two"], kind="merge"),
        _pkg("app", ["merge-sysroot"]),
    ])
    executor = BuildGraphExecutor(config, toolchain)
    with pytest.raises(OverlayCollision) as excinfo:
        executor.run(graph)

    assert excinfo.value.path == os.path.join("include", "common.h")
    assert executor.report.results["merge-sysroot"].status == BuildStatus.FAILED
    assert "app" not in executor.report.results
    assert not os.path.exists(os.path.join(config.merged_sysroot, "include", "common.h"))


# ---------------------------------------------------------------------------
# report
# ---------------------------------------------------------------------------

def test_report_print_and_json(tmp_path, capsys):
    log = write_file(tmp_path / "logs" / "sed.log", "checking for gcc... no\nerror: boom\n")
    report = RunReport()
    report.results["sed"] = BuildResult("sed", BuildStatus.FAILED, log=log,
                                        errors=["sed: build entry point exited 2"])
    report.results["coreutils"] = BuildResult("coreutils", BuildStatus.SUCCEEDED_PARTIAL)
    report.best_effort = {"sed": False, "coreutils": True}
    report.staged["coreutils"] = ["/out/ls.wasm", "/out/cat.wasm"]

    report.print()
    out = capsys.readouterr().out
    assert "coreutils" in out and "succeeded_partial (best-effort)" in out
    assert "sed: build entry point exited 2" in out
    assert "error: boom" in out
    assert "staged artifacts: 2" in out

    path = tmp_path / "report.json"
    report.write_json(str(path))
    data = json.loads(path.read_text())
    assert data["exit_code"] == 1
    assert data["counts"]["succeeded_partial"] == 1
    assert [p["package"] for p in data["packages"]] == ["sed", "coreutils"]
    assert data["packages"][1]["best_effort"] is True
