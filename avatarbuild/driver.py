# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

"""Building the application inside the builder image.

The application source tree is mounted at ``SOURCE_DIR`` and the host's cargo
registry at ``REGISTRY_DIR``, then ``cargo build --release`` runs for the
statically linked musl target of the requested architecture. The release
binary lands in ``target/<rust target>/release`` of the mounted tree.
"""

import contextlib
import fcntl
import os
import pathlib
import platform

from .errors import CompileFailure, UnsupportedArchitecture
from .logging import log

ARCH_ALIASES = {
    "x86_64": "x86_64",
    "amd64": "x86_64",
    "aarch64": "aarch64",
    "arm64": "aarch64",
}

PLATFORMS = {
    "x86_64": "linux/amd64",
    "aarch64": "linux/arm64",
}

DEFAULT_IMAGE = "ghcr.io/nanpuyue/avatar-bot-builder"
DEFAULT_IMAGE_TAG = "latest"

SOURCE_DIR = "/build/avatar-bot"
REGISTRY_DIR = "/usr/local/cargo/registry"
LOCK_NAME = ".avatar-build.lock"

# Build-size and optimization overrides passed through untouched.
FORWARDED_VARIABLES = ("RUSTFLAGS",)
FORWARDED_PREFIXES = ("CARGO_PROFILE_RELEASE_",)


def normalize_arch(value=None, machine=None) -> str:
    """Resolve an architecture name, or the host's, to its canonical form."""
    if not value:
        value = machine or platform.machine()

    try:
        return ARCH_ALIASES[value.lower()]
    except KeyError:
        raise UnsupportedArchitecture(
            "unsupported architecture: %s (expected one of %s)"
            % (value, ", ".join(sorted(ARCH_ALIASES)))
        ) from None


def platform_for_arch(arch: str) -> str:
    return PLATFORMS[normalize_arch(arch)]


def rust_target(arch: str) -> str:
    return "%s-unknown-linux-musl" % normalize_arch(arch)


def cargo_command(arch: str):
    return ["cargo", "build", "--release", "--target", rust_target(arch)]


def cache_dir(environ=None) -> pathlib.Path:
    """The cargo home whose registry is shared with the container."""
    environ = os.environ if environ is None else environ

    cargo_home = environ.get("CARGO_HOME")
    if cargo_home and pathlib.Path(cargo_home).is_dir():
        return pathlib.Path(cargo_home)

    return pathlib.Path(environ.get("HOME") or pathlib.Path.home()) / ".cargo"


def build_environment_vars(arch: str, arch_cflags=(), environ=None):
    """Variables to forward into the build container.

    ``CFLAGS_<rust target>`` is set only for architectures with a flag
    overlay. A value already present in ``environ`` wins over the overlay.
    """
    environ = os.environ if environ is None else environ
    env = {}

    if arch_cflags:
        key = "CFLAGS_%s" % rust_target(arch).replace("-", "_")
        env[key] = environ.get(key, " ".join(arch_cflags))

    for key, value in sorted(environ.items()):
        if key in FORWARDED_VARIABLES or key.startswith(FORWARDED_PREFIXES):
            env[key] = value

    return env


@contextlib.contextmanager
def cache_lock(cache: pathlib.Path):
    """Hold an exclusive lock on the shared registry cache."""
    registry = cache / "registry"
    registry.mkdir(parents=True, exist_ok=True)

    with (registry / LOCK_NAME).open("a") as fh:
        try:
            fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            log("waiting for another build to release %s" % registry)
            fcntl.flock(fh, fcntl.LOCK_EX)

        try:
            yield registry
        finally:
            fcntl.flock(fh, fcntl.LOCK_UN)


def run_build(client, image, arch, source: pathlib.Path, cache: pathlib.Path, environment):
    arch = normalize_arch(arch)
    command = cargo_command(arch)

    log("running %s in %s for %s" % (" ".join(command), image, PLATFORMS[arch]))

    container = client.containers.run(
        image,
        command=command,
        detach=True,
        platform=PLATFORMS[arch],
        working_dir=SOURCE_DIR,
        environment=environment,
        volumes={
            str(source): {"bind": SOURCE_DIR, "mode": "rw"},
            str(cache / "registry"): {"bind": REGISTRY_DIR, "mode": "rw"},
        },
    )

    try:
        for chunk in container.logs(stream=True, follow=True):
            for l in chunk.strip().splitlines():
                log(l)

        res = container.wait()
    finally:
        container.remove(force=True)

    if res["StatusCode"]:
        raise CompileFailure(
            "cargo build exited with %d" % res["StatusCode"], res["StatusCode"]
        )

    artifact = source / "target" / rust_target(arch) / "release"
    log("release artifacts are in %s" % artifact)

    return artifact


def drive(client, arch, source: pathlib.Path, settings, image=None, environ=None):
    """Build the application for ``arch`` with the cache lock held."""
    environ = os.environ if environ is None else environ
    image = image or "%s:%s" % (
        environ.get("AVATARBUILD_REGISTRY_IMAGE", DEFAULT_IMAGE),
        DEFAULT_IMAGE_TAG,
    )

    env = build_environment_vars(arch, settings.get("arch_cflags") or (), environ)
    cache = cache_dir(environ)

    with cache_lock(cache):
        return run_build(client, image, arch, source, cache, env)
