# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

from __future__ import annotations

import fcntl
import pathlib

import pytest

from avatarbuild.driver import (
    REGISTRY_DIR,
    SOURCE_DIR,
    build_environment_vars,
    cache_dir,
    cache_lock,
    drive,
    normalize_arch,
    platform_for_arch,
    run_build,
)
from avatarbuild.errors import CompileFailure, UnsupportedArchitecture
from avatarbuild.utils import get_target_settings


class FakeContainer:
    def __init__(self, status=0):
        self.status = status
        self.removed = False

    def logs(self, stream=False, follow=False):
        return iter([b"   Compiling avatar-bot v0.1.0\n", b"    Finished release\n"])

    def wait(self):
        return {"StatusCode": self.status}

    def remove(self, force=False):
        self.removed = True


class FakeContainers:
    def __init__(self, status=0):
        self.container = FakeContainer(status)
        self.runs: list[tuple[str, dict]] = []

    def run(self, image, **kwargs):
        self.runs.append((image, kwargs))
        return self.container


class FakeClient:
    def __init__(self, status=0):
        self.containers = FakeContainers(status)


@pytest.mark.parametrize(
    "value,expected",
    [
        ("x86_64", "x86_64"),
        ("amd64", "x86_64"),
        ("aarch64", "aarch64"),
        ("arm64", "aarch64"),
    ],
)
def test_normalize_arch(value, expected) -> None:
    assert normalize_arch(value) == expected
    assert normalize_arch(normalize_arch(value)) == expected


def test_two_platforms() -> None:
    assert {platform_for_arch(a) for a in ("x86_64", "amd64", "aarch64", "arm64")} == {
        "linux/amd64",
        "linux/arm64",
    }


@pytest.mark.parametrize("value", ["riscv64", "i686", "armv7l", "ppc64le"])
def test_unsupported_arch(value) -> None:
    with pytest.raises(UnsupportedArchitecture) as e:
        normalize_arch(value)

    assert e.value.returncode != 0


def test_host_inference() -> None:
    assert normalize_arch(None, machine="arm64") == "aarch64"
    assert normalize_arch("", machine="x86_64") == "x86_64"

    with pytest.raises(UnsupportedArchitecture):
        normalize_arch(None, machine="s390x")


def test_overlay_forwarded_for_aarch64_only(targets_config) -> None:
    aarch64 = get_target_settings(targets_config, "aarch64")
    x86_64 = get_target_settings(targets_config, "x86_64")

    assert build_environment_vars("arm64", aarch64["arch_cflags"], environ={}) == {
        "CFLAGS_aarch64_unknown_linux_musl": "-mno-outline-atomics"
    }
    assert build_environment_vars("x86_64", x86_64["arch_cflags"], environ={}) == {}


def test_overlay_override_is_verbatim() -> None:
    env = build_environment_vars(
        "aarch64",
        ["-mno-outline-atomics"],
        environ={"CFLAGS_aarch64_unknown_linux_musl": "-mno-outline-atomics -O3"},
    )

    assert env["CFLAGS_aarch64_unknown_linux_musl"] == "-mno-outline-atomics -O3"


def test_optimization_overrides_are_forwarded() -> None:
    environ = {
        "RUSTFLAGS": "-Copt-level=z",
        "CARGO_PROFILE_RELEASE_LTO": "fat",
        "HOME": "/home/build",
        "CFLAGS_x86_64_unknown_linux_musl": "-O3",
    }

    assert build_environment_vars("x86_64", (), environ=environ) == {
        "CARGO_PROFILE_RELEASE_LTO": "fat",
        "RUSTFLAGS": "-Copt-level=z",
    }


def test_cache_dir(tmp_path) -> None:
    assert cache_dir({"CARGO_HOME": str(tmp_path)}) == tmp_path
    assert cache_dir(
        {"CARGO_HOME": str(tmp_path / "missing"), "HOME": "/home/build"}
    ) == pathlib.Path("/home/build/.cargo")
    assert cache_dir({"HOME": "/home/build"}) == pathlib.Path("/home/build/.cargo")


def test_cache_lock_is_exclusive(tmp_path) -> None:
    with cache_lock(tmp_path) as registry:
        assert registry == tmp_path / "registry"

        with (registry / ".avatar-build.lock").open("a") as fh:
            with pytest.raises(BlockingIOError):
                fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)

    with (tmp_path / "registry" / ".avatar-build.lock").open("a") as fh:
        fcntl.flock(fh, fcntl.LOCK_EX | fcntl.LOCK_NB)


def test_run_build_mounts_source_and_cache(tmp_path) -> None:
    client = FakeClient()
    source = tmp_path / "avatar-bot"

    artifact = run_build(
        client, "builder:latest", "arm64", source, tmp_path / "cargo", {"A": "1"}
    )

    image, kwargs = client.containers.runs[0]
    assert image == "builder:latest"
    assert kwargs["command"] == [
        "cargo",
        "build",
        "--release",
        "--target",
        "aarch64-unknown-linux-musl",
    ]
    assert kwargs["platform"] == "linux/arm64"
    assert kwargs["working_dir"] == SOURCE_DIR
    assert kwargs["environment"] == {"A": "1"}
    assert kwargs["volumes"] == {
        str(source): {"bind": SOURCE_DIR, "mode": "rw"},
        str(tmp_path / "cargo" / "registry"): {"bind": REGISTRY_DIR, "mode": "rw"},
    }
    assert artifact == source / "target" / "aarch64-unknown-linux-musl" / "release"
    assert client.containers.container.removed


def test_run_build_failure(tmp_path) -> None:
    client = FakeClient(status=101)

    with pytest.raises(CompileFailure) as e:
        run_build(client, "builder:latest", "x86_64", tmp_path, tmp_path, {})

    assert e.value.returncode == 101
    assert client.containers.container.removed


def test_drive(tmp_path, targets_config) -> None:
    client = FakeClient()
    environ = {
        "CARGO_HOME": str(tmp_path),
        "AVATARBUILD_REGISTRY_IMAGE": "ghcr.io/example/avatar-bot-builder",
    }

    drive(
        client,
        "aarch64",
        tmp_path / "src",
        get_target_settings(targets_config, "aarch64"),
        environ=environ,
    )

    image, kwargs = client.containers.runs[0]
    assert image == "ghcr.io/example/avatar-bot-builder:latest"
    assert kwargs["environment"] == {
        "CFLAGS_aarch64_unknown_linux_musl": "-mno-outline-atomics"
    }
    assert (tmp_path / "registry" / ".avatar-build.lock").exists()
