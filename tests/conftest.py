# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

"""Shared test fixtures.

``FakeEnvironmentFactory`` stands in for Docker: each build step gets a
``FakeBuildEnvironment`` that records the commands it runs, answers
``pkg-config`` probes from the dependency archives it was given and hands
back a canned staged install.
"""

from __future__ import annotations

import contextlib
import io
import pathlib
import subprocess
import tarfile
import threading
import time

import pytest

from avatarbuild.recipes import DEPENDENCIES
from avatarbuild.toolchain import load_toolchain_config

ROOT = pathlib.Path(__file__).parent.parent
TARGETS_CONFIG = ROOT / "builder" / "targets.yml"

# Static archives each node installs under lib/, as upstream names them.
STATIC_ARCHIVES = {
    "zlib": ("z",),
    "openssl": ("ssl", "crypto"),
    "libvpx": ("vpx",),
    "ffmpeg": ("avformat", "avcodec", "swscale", "avutil"),
    "rlottie": ("rlottie",),
    "opencv": (),
}


def staged_files(name: str) -> dict[str, bytes]:
    """What a node's install leaves under the staging directory."""
    spec = DEPENDENCIES[name]
    files = {
        "lib/lib%s.a" % lib: b"!<arch>\n%s\n" % lib.encode()
        for lib in STATIC_ARCHIVES[name]
    }

    for module in spec.pkgconfig:
        files["lib/pkgconfig/%s.pc" % module] = (
            "prefix=/opt/musl\nName: %s\nLibs: -L${prefix}/lib %s\n"
            % (module, " ".join("-l%s" % lib for lib in STATIC_ARCHIVES[name]))
        ).encode()

    files["include/%s.h" % name] = b"/* %s */\n" % name.encode()

    if name == "opencv":
        for module in ("core", "imgproc", "imgcodecs", "objdetect"):
            files["lib/libopencv_%s.a" % module] = b"!<arch>\n"
        files["lib/opencv4/3rdparty/liblibpng.a"] = b"!<arch>\npng\n"
        files["lib/opencv4/3rdparty/liblibjpeg-turbo.a"] = b"!<arch>\njpeg\n"
        files["lib/pkgconfig/opencv4.pc"] = (
            b"Name: OpenCV\n"
            b"Libs: -L${exec_prefix}/lib -lopencv_objdetect -lopencv_core\n"
            b"Libs.private: -L${exec_prefix}/lib/opencv4/3rdparty -llibpng -llibjpeg-turbo -lz\n"
        )

    return files


def make_tar(files: dict[str, bytes], prefix="musl/", symlinks=None) -> bytes:
    buf = io.BytesIO()

    with tarfile.open(fileobj=buf, mode="w") as tf:
        for name, data in files.items():
            ti = tarfile.TarInfo(prefix + name)
            ti.size = len(data)
            ti.mtime = int(time.time())
            ti.mode = 0o644
            tf.addfile(ti, io.BytesIO(data))

        for name, target in (symlinks or {}).items():
            ti = tarfile.TarInfo(prefix + name)
            ti.type = tarfile.SYMTYPE
            ti.linkname = target
            tf.addfile(ti)

    return buf.getvalue()


def read_tar(path_or_data) -> dict[str, bytes | None]:
    if isinstance(path_or_data, bytes):
        tf = tarfile.open(fileobj=io.BytesIO(path_or_data))
    else:
        tf = tarfile.open(path_or_data)

    with tf:
        return {
            ti.name: tf.extractfile(ti).read() if ti.isfile() else None  # type: ignore[union-attr]
            for ti in tf
        }


class FakeBuildEnvironment:
    def __init__(self, factory, platform):
        self.factory = factory
        self.platform = platform
        self.node: str | None = None
        self.installed: dict[str, bytes | None] = {}
        self.archives: list[str] = []
        self.commands: list[tuple[list[str], dict | None]] = []

    def copy_file(self, source: pathlib.Path, dest_path=None, dest_name=None):
        dest_name = dest_name or source.name
        for spec in DEPENDENCIES.values():
            if spec.archive_name == dest_name:
                self.node = spec.name

    def install_prefix_archive(self, archive: pathlib.Path, prefix: str):
        self.archives.append(archive.name)
        self.installed.update(read_tar(archive))

    def run(self, program, user="build", environment=None, workdir=None):
        self.commands.append((list(program), environment))

        if program[0] == "pkg-config":
            missing = [
                m for m in program[3:] if "lib/pkgconfig/%s.pc" % m not in self.installed
            ]
            if missing:
                raise subprocess.CalledProcessError(1, program)

        failing = self.factory.fail.get(self.node)
        if failing and program[0] == failing:
            raise subprocess.CalledProcessError(2, program)

    def get_staged_archive(self, prefix: str) -> bytes:
        assert self.node is not None
        files = self.factory.staged.get(self.node) or staged_files(self.node)
        return make_tar(files, symlinks=self.factory.symlinks.get(self.node))


class FakeEnvironmentFactory:
    def __init__(self, fail=None, staged=None, symlinks=None):
        self.fail = fail or {}
        self.staged = staged or {}
        self.symlinks = symlinks or {}
        self.environments: list[FakeBuildEnvironment] = []
        self.lock = threading.Lock()

    def commands(self, node=None):
        return [
            command
            for env in self.environments
            if node is None or env.node == node
            for command in env.commands
        ]

    def installs(self, node):
        return [a for env in self.environments if env.node == node for a in env.archives]

    @property
    def nodes(self):
        return [env.node for env in self.environments]

    @property
    def platforms(self):
        return [env.platform for env in self.environments]

    @contextlib.contextmanager
    def __call__(self, client, image, platform=None):
        env = FakeBuildEnvironment(self, platform)
        with self.lock:
            self.environments.append(env)
        yield env


@pytest.fixture
def targets_config() -> pathlib.Path:
    return TARGETS_CONFIG


@pytest.fixture
def aarch64_config():
    return load_toolchain_config(TARGETS_CONFIG, "aarch64", jobs=2)


@pytest.fixture
def x86_64_config():
    return load_toolchain_config(TARGETS_CONFIG, "x86_64", jobs=2)


@pytest.fixture
def fake_fetch(monkeypatch: pytest.MonkeyPatch):
    """Replace downloads with local files. Names in ``failing`` fail to fetch."""
    from avatarbuild.errors import FetchFailure

    state: dict[str, set[str] | list[str]] = {"failing": set(), "fetched": []}

    def download_entry(key, dest_path, local_name=None):
        if key in state["failing"]:
            raise FetchFailure("error downloading %s: connection refused" % key)

        path = dest_path / (local_name or key)
        path.write_bytes(b"source of %s" % key.encode())
        state["fetched"].append(key)  # type: ignore[union-attr]
        return path

    monkeypatch.setattr("avatarbuild.pipeline.download_entry", download_entry)

    return state
