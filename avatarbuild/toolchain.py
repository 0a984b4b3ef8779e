# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

"""Cross-compilation settings shared by every dependency build.

A ToolchainConfig is derived once per run from ``builder/targets.yml`` and
handed to every build step. It is frozen: steps obtain their environment from
``environment()``, which returns a new dict each time, so no step can alter
what its siblings observe.
"""

import dataclasses
import multiprocessing
import pathlib

from .errors import UnsupportedArchitecture
from .utils import get_targets

# Shared installation prefix inside build containers and the builder image.
DEFAULT_PREFIX = "/opt/musl"

# Instruct downstream build systems to link static archives only.
STATIC_LDFLAGS = ("-static",)


@dataclasses.dataclass(frozen=True)
class ToolchainConfig:
    arch: str
    platform: str
    target_triple: str
    rust_target: str
    cc: str
    cxx: str
    ar: str
    openssl_target: str
    prefix: str = DEFAULT_PREFIX
    target_cflags: tuple[str, ...] = ()
    target_ldflags: tuple[str, ...] = ()
    arch_cflags: tuple[str, ...] = ()
    jobs: int = 1

    @property
    def include_paths(self) -> tuple[str, ...]:
        return ("%s/include" % self.prefix,)

    @property
    def library_paths(self) -> tuple[str, ...]:
        return ("%s/lib" % self.prefix,)

    @property
    def pkg_config_path(self) -> str:
        return "%s/lib/pkgconfig" % self.prefix

    @property
    def cflags(self) -> tuple[str, ...]:
        return (
            self.target_cflags
            + tuple("-I%s" % p for p in self.include_paths)
            + self.arch_cflags
        )

    @property
    def ldflags(self) -> tuple[str, ...]:
        return (
            tuple("-L%s" % p for p in self.library_paths)
            + STATIC_LDFLAGS
            + self.target_ldflags
        )

    def environment(self) -> dict[str, str]:
        """Environment variables for commands run by a build step."""
        cflags = " ".join(self.cflags)

        return {
            "CC": self.cc,
            "CXX": self.cxx,
            "AR": self.ar,
            "CFLAGS": cflags,
            "CXXFLAGS": cflags,
            "CPPFLAGS": " ".join("-I%s" % p for p in self.include_paths),
            "LDFLAGS": " ".join(self.ldflags),
            "PKG_CONFIG_PATH": self.pkg_config_path,
            "PKG_CONFIG_LIBDIR": self.pkg_config_path,
            "PKG_CONFIG_ALL_STATIC": "1",
            "PREFIX": self.prefix,
            "TARGET_TRIPLE": self.target_triple,
            "NUM_JOBS": "%d" % self.jobs,
        }


def toolchain_config(settings, arch: str, prefix=DEFAULT_PREFIX, jobs=None):
    """Build the ToolchainConfig for ``arch`` from its targets.yml settings."""
    return ToolchainConfig(
        arch=arch,
        platform=settings["platform"],
        target_triple=settings["target_triple"],
        rust_target=settings["rust_target"],
        cc=settings["target_cc"],
        cxx=settings["target_cxx"],
        ar=settings["target_ar"],
        openssl_target=settings["openssl_target"],
        prefix=prefix,
        target_cflags=tuple(settings.get("target_cflags") or ()),
        target_ldflags=tuple(settings.get("target_ldflags") or ()),
        arch_cflags=tuple(settings.get("arch_cflags") or ()),
        jobs=jobs or multiprocessing.cpu_count(),
    )


def load_toolchain_config(yaml_path: pathlib.Path, arch: str, **kwargs):
    targets = get_targets(yaml_path)

    if arch not in targets:
        raise UnsupportedArchitecture("unsupported architecture: %s" % arch)

    return toolchain_config(targets[arch], arch, **kwargs)
