# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

"""The dependency build pipeline.

Dependencies form a DAG over named nodes. Each node is built in its own
container into which the promoted archives of everything it transitively
needs are extracted, so pkg-config discovery sees exactly the upstream
libraries. A node's install is staged, checked and then promoted to
``build/<name>-<version>-<arch>.tar`` in a single rename. The shared prefix
of a run is the union of its promoted archives.
"""

import concurrent.futures
import dataclasses
import io
import pathlib
import subprocess
import tarfile

from .buildenv import build_environment
from .errors import (
    BuildError,
    CompileFailure,
    ConfigureFailure,
    ExtractFailure,
    InstallFailure,
)
from .logging import log, logger_to_path
from .recipes import DEPENDENCIES, PHASES, DependencySpec, finalize, phase_commands
from .utils import download_entry, normalize_tar_archive, write_atomic

PHASE_FAILURES = {
    "extract": ExtractFailure,
    "configure": ConfigureFailure,
    "compile": CompileFailure,
    "install": InstallFailure,
}

# Upper bound on concurrently building nodes.
MAX_PARALLEL = 4


@dataclasses.dataclass(frozen=True)
class BuildStep:
    position: int
    spec: DependencySpec


def select_dependencies(needs, skip=()):
    """Resolve the DependencySpecs to build from a target's ``needs``."""
    for name in list(needs) + list(skip):
        if name not in DEPENDENCIES:
            raise BuildError("unknown dependency: %s" % name)

    for name in skip:
        if not DEPENDENCIES[name].optional:
            raise BuildError("%s is required and cannot be skipped" % name)

    names = [n for n in needs if n not in skip]

    for name in names:
        for need in DEPENDENCIES[name].needs:
            if need not in names:
                raise ConfigureFailure(
                    "%s requires %s, which is not being built" % (name, need)
                )

    return [DEPENDENCIES[n] for n in names]


def topological_order(specs):
    """Order specs so every node follows the nodes it needs.

    Ties are broken by declaration order in DEPENDENCIES, which yields the
    canonical linear order when every node is selected.
    """
    declared = list(DEPENDENCIES)
    remaining = sorted(specs, key=lambda s: declared.index(s.name))
    names = {s.name for s in remaining}
    placed = []
    placed_names = set()

    while remaining:
        for spec in remaining:
            if all(n in placed_names for n in spec.needs if n in names):
                break
        else:
            raise BuildError(
                "dependency cycle among: %s" % ", ".join(s.name for s in remaining)
            )

        remaining.remove(spec)
        placed.append(BuildStep(len(placed), spec))
        placed_names.add(spec.name)

    return placed


def transitive_needs(spec, steps):
    """The steps ``spec`` depends on, directly or not, in build order."""
    by_name = {s.spec.name: s for s in steps}
    wanted = set()
    stack = list(spec.needs)

    while stack:
        name = stack.pop()
        if name in wanted:
            continue
        wanted.add(name)
        stack.extend(by_name[name].spec.needs)

    return [s for s in steps if s.spec.name in wanted]


def finalize_archive(spec, data: bytes) -> bytes:
    """Turn a staged install archive into the promoted archive for ``spec``.

    Member names are made relative to the prefix, fixups and static-only
    checks are applied and the result is normalized.
    """
    files = {}
    modes = {}
    symlinks = {}

    with tarfile.open(fileobj=io.BytesIO(data)) as tf:
        for ti in tf:
            if ti.isdir():
                continue

            _, _, name = ti.name.partition("/")
            if not name:
                continue

            if ti.isfile() or ti.islnk():
                files[name] = tf.extractfile(ti).read()
                modes[name] = ti.mode
            elif ti.issym():
                symlinks[name] = ti.linkname
            else:
                raise InstallFailure("unexpected file type in install: %s" % name)

    files = finalize(spec, files, symlinks)

    out = io.BytesIO()
    with tarfile.open(fileobj=out, mode="w") as tf:
        for name, content in files.items():
            ti = tarfile.TarInfo(name)
            ti.size = len(content)
            ti.mode = modes.get(name, 0o644)
            tf.addfile(ti, io.BytesIO(content))

        for name, target in symlinks.items():
            ti = tarfile.TarInfo(name)
            ti.type = tarfile.SYMTYPE
            ti.linkname = target
            ti.mode = 0o777
            tf.addfile(ti)

    out.seek(0)

    return normalize_tar_archive(out).getvalue()


class Pipeline(object):
    def __init__(
        self,
        client,
        image,
        config,
        build_dir: pathlib.Path,
        downloads_dir: pathlib.Path,
        serial=False,
        environment_factory=build_environment,
    ):
        self.client = client
        self.image = image
        self.config = config
        self.build_dir = build_dir
        self.downloads_dir = downloads_dir
        self.serial = serial
        self.environment_factory = environment_factory

    def archive_path(self, spec) -> pathlib.Path:
        return self.build_dir / (
            "%s-%s-%s.tar" % (spec.name, spec.version, self.config.arch)
        )

    def log_path(self, spec) -> pathlib.Path:
        return self.build_dir / "logs" / (
            "build.%s-%s-%s.log" % (spec.name, spec.version, self.config.arch)
        )

    def clean(self, steps):
        """Remove promoted archives so a new run can't mix in stale ones."""
        for step in steps:
            self.archive_path(step.spec).unlink(missing_ok=True)

    def fetch(self, steps):
        """Download every source, one at a time. Any failure aborts the run."""
        self.downloads_dir.mkdir(parents=True, exist_ok=True)

        return {
            step.spec.name: download_entry(
                step.spec.name, self.downloads_dir, local_name=step.spec.archive_name
            )
            for step in steps
        }

    def build_step(self, step, source: pathlib.Path, steps):
        spec = step.spec
        commands = phase_commands(spec, self.config)

        with logger_to_path(spec.name, self.log_path(spec)):
            log(
                "building %s %s for %s (step %d)"
                % (spec.name, spec.version, self.config.arch, step.position)
            )

            with self.environment_factory(
                self.client, self.image, platform=self.config.platform
            ) as build_env:
                env = self.config.environment()

                try:
                    for dep in transitive_needs(spec, steps):
                        build_env.install_prefix_archive(
                            self.archive_path(dep.spec), self.config.prefix
                        )
                except subprocess.CalledProcessError as e:
                    raise ExtractFailure(
                        "%s: unable to install dependencies" % spec.name, e.returncode
                    ) from e

                build_env.copy_file(source, dest_name=spec.archive_name)

                for phase in PHASES:
                    for command in commands[phase]:
                        try:
                            build_env.run(
                                command.argv,
                                environment=env,
                                workdir=command.workdir,
                            )
                        except subprocess.CalledProcessError as e:
                            raise PHASE_FAILURES[phase](
                                "%s: %s failed with exit code %d"
                                % (spec.name, phase, e.returncode),
                                e.returncode,
                            ) from e

                staged = build_env.get_staged_archive(self.config.prefix)

            dest = self.archive_path(spec)
            write_atomic(dest, finalize_archive(spec, staged))
            log("promoted %s" % dest)

        return dest

    def build_node(self, name, steps):
        """Build one node against archives promoted by earlier runs."""
        by_name = {s.spec.name: s for s in steps}
        if name not in by_name:
            raise BuildError("%s is not selected for %s" % (name, self.config.arch))

        step = by_name[name]
        for dep in transitive_needs(step.spec, steps):
            if not self.archive_path(dep.spec).exists():
                raise ConfigureFailure(
                    "%s requires %s, which has not been built"
                    % (name, dep.spec.name)
                )

        self.build_dir.mkdir(parents=True, exist_ok=True)
        self.clean([step])
        sources = self.fetch([step])

        return self.build_step(step, sources[name], steps)

    def run(self, steps):
        """Build every step, honoring dependency edges.

        With ``serial``, steps run one at a time in topological order.
        Otherwise a step starts as soon as every step it needs is promoted.
        On failure, this run's promoted archives are removed again. Returns
        the promoted archive paths in build order.
        """
        self.build_dir.mkdir(parents=True, exist_ok=True)
        self.clean(steps)
        sources = self.fetch(steps)

        try:
            if self.serial:
                for step in steps:
                    self.build_step(step, sources[step.spec.name], steps)
            else:
                self._run_parallel(steps, sources)
        except BaseException:
            self.clean(steps)
            raise

        return [self.archive_path(s.spec) for s in steps]

    def _run_parallel(self, steps, sources):
        pending = list(steps)
        done = set()
        running = {}

        with concurrent.futures.ThreadPoolExecutor(
            max(1, min(MAX_PARALLEL, len(steps)))
        ) as executor:
            try:
                while pending or running:
                    for step in list(pending):
                        if all(n in done for n in step.spec.needs):
                            pending.remove(step)
                            future = executor.submit(
                                self.build_step, step, sources[step.spec.name], steps
                            )
                            running[future] = step

                    if not running:
                        raise BuildError(
                            "unable to schedule: %s"
                            % ", ".join(s.spec.name for s in pending)
                        )

                    finished, _ = concurrent.futures.wait(
                        running, return_when=concurrent.futures.FIRST_COMPLETED
                    )

                    for future in finished:
                        step = running.pop(future)
                        future.result()
                        done.add(step.spec.name)
            except BaseException:
                for future in running:
                    future.cancel()
                raise
