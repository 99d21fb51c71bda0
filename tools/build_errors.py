"""Error taxonomy shared by the build orchestration helpers.

Node-level errors (MandatoryArtifactMissing, PackageBuildNonZeroExit) are
recorded on the node's BuildResult and never end the run.  MergeConflict
(OverlayCollision, SysrootTypeConflict) is the one error that aborts a
whole run.  PipelineStageFailed never leaves the pipeline stage that
raised it.
"""


class BuildError(Exception):
    """Base class for every error raised by the orchestrator."""


class ConfigError(BuildError):
    pass


class GraphError(BuildError):
    pass


class ToolchainMissing(BuildError):
    def __init__(self, kind, tried=()):
        self.kind = kind
        self.tried = list(tried)
        msg = f"{kind} not found"
        if self.tried:
            msg += f" (tried: {', '.join(self.tried)})"
        super().__init__(msg)


class SysrootMissing(BuildError):
    def __init__(self, path):
        self.path = path
        super().__init__(f"sysroot headers missing at {path}")


class MergeConflict(BuildError):
    """The overlays cannot be composed into one sysroot."""


class OverlayCollision(MergeConflict):
    def __init__(self, path, first_owner, second_owner):
        self.path = path
        self.first_owner = first_owner
        self.second_owner = second_owner
        super().__init__(
            f"overlay collision on {path}: written by {first_owner!r}, "
            f"again by {second_owner!r}"
        )


class SysrootTypeConflict(MergeConflict):
    """An overlay needs a file where the tree has a directory, or the reverse."""

    def __init__(self, path, owner, detail):
        self.path = path
        self.owner = owner
        super().__init__(f"{owner}: cannot merge {path}: {detail}")


class MandatoryArtifactMissing(BuildError):
    def __init__(self, package, path):
        self.package = package
        self.path = path
        super().__init__(f"{package}: declared artifact missing: {path}")


class PackageBuildNonZeroExit(BuildError):
    def __init__(self, package, returncode):
        self.package = package
        self.returncode = returncode
        super().__init__(f"{package}: build entry point exited {returncode}")


class PipelineStageFailed(BuildError):
    def __init__(self, stage, artifact, detail=""):
        self.stage = stage
        self.artifact = artifact
        self.detail = detail
        msg = f"{stage} failed for {artifact}"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
