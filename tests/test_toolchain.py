# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

from __future__ import annotations

import dataclasses

import pytest
from conftest import FakeEnvironmentFactory

from avatarbuild.errors import UnsupportedArchitecture
from avatarbuild.pipeline import Pipeline, select_dependencies, topological_order
from avatarbuild.recipes import DEPENDENCIES, phase_commands
from avatarbuild.toolchain import load_toolchain_config

OVERLAY = "-mno-outline-atomics"
ALL = list(DEPENDENCIES)


def run_all(tmp_path, config):
    factory = FakeEnvironmentFactory()
    Pipeline(
        None,
        "image-build",
        config,
        tmp_path / "build",
        tmp_path / "downloads",
        serial=True,
        environment_factory=factory,
    ).run(topological_order(select_dependencies(ALL)))

    return factory


def test_config_from_targets(aarch64_config) -> None:
    assert aarch64_config.arch == "aarch64"
    assert aarch64_config.platform == "linux/arm64"
    assert aarch64_config.rust_target == "aarch64-unknown-linux-musl"
    assert aarch64_config.cc == "aarch64-linux-musl-gcc"
    assert aarch64_config.arch_cflags == (OVERLAY,)


def test_unknown_arch(targets_config) -> None:
    with pytest.raises(UnsupportedArchitecture, match="riscv64"):
        load_toolchain_config(targets_config, "riscv64")


def test_config_is_immutable(aarch64_config) -> None:
    with pytest.raises(dataclasses.FrozenInstanceError):
        aarch64_config.cc = "gcc"  # type: ignore[misc]


def test_environment_is_a_fresh_copy(aarch64_config) -> None:
    env = aarch64_config.environment()
    env["CFLAGS"] = "-O0"

    assert OVERLAY in aarch64_config.environment()["CFLAGS"]


def test_environment_overlays_prefix(x86_64_config) -> None:
    env = x86_64_config.environment()

    assert env["CC"] == "x86_64-linux-musl-gcc"
    assert "-I/opt/musl/include" in env["CFLAGS"].split()
    assert env["LDFLAGS"].split()[:2] == ["-L/opt/musl/lib", "-static"]
    assert env["PKG_CONFIG_PATH"] == "/opt/musl/lib/pkgconfig"
    assert env["PKG_CONFIG_ALL_STATIC"] == "1"
    assert env["NUM_JOBS"] == "2"


def test_aarch64_overlay_reaches_every_compile(tmp_path, aarch64_config, fake_fetch) -> None:
    factory = run_all(tmp_path, aarch64_config)

    for name in ALL:
        commands = factory.commands(name)
        compile_argvs = [c.argv for c in phase_commands(DEPENDENCIES[name], aarch64_config)["compile"]]
        compiles = [env for argv, env in commands if argv in compile_argvs]

        assert compiles, name
        for env in compiles:
            assert OVERLAY in env["CFLAGS"].split()
            assert OVERLAY in env["CXXFLAGS"].split()


def test_ffmpeg_configure_carries_overlay(aarch64_config) -> None:
    configure = phase_commands(DEPENDENCIES["ffmpeg"], aarch64_config)["configure"]
    argv = configure[-1].argv

    assert "--extra-cflags=%s" % " ".join(aarch64_config.cflags) in argv
    assert OVERLAY in " ".join(argv)


def test_x86_64_has_no_overlay(tmp_path, x86_64_config, fake_fetch) -> None:
    factory = run_all(tmp_path, x86_64_config)

    for argv, env in factory.commands():
        assert OVERLAY not in " ".join(argv)
        assert OVERLAY not in " ".join(env.values())


def test_every_step_sees_the_same_environment(tmp_path, aarch64_config, fake_fetch) -> None:
    factory = run_all(tmp_path, aarch64_config)

    envs = {tuple(sorted(env.items())) for _, env in factory.commands()}

    assert len(envs) == 1
