# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

"""Native dependencies and how to build them.

Every dependency goes through the same phases: extract, configure, compile
and install. ``phase_commands()`` expands a DependencySpec plus the run's
ToolchainConfig into the commands executed in the build container for each
phase. Installs are staged under ``STAGING_DIR`` (via ``DESTDIR``) and only
reach the shared prefix once the staged tree passes ``finalize`` checks.
"""

import collections
import dataclasses
import posixpath
import re

from .downloads import DOWNLOADS
from .errors import InstallFailure

BUILD_DIR = "/build"
STAGING_DIR = "/build/out"

PHASES = ("extract", "configure", "compile", "install")

Command = collections.namedtuple("Command", ["argv", "workdir"])


@dataclasses.dataclass(frozen=True)
class DependencySpec:
    name: str
    build_system: str
    configure_args: tuple[str, ...] = ()
    # Dependency nodes that must be installed before this one is configured.
    needs: tuple[str, ...] = ()
    # pkg-config modules this node installs.
    pkgconfig: tuple[str, ...] = ()
    optional: bool = False
    fixups: tuple[str, ...] = ()

    @property
    def entry(self):
        return DOWNLOADS[self.name]

    @property
    def version(self) -> str:
        return self.entry["version"]

    @property
    def url(self) -> str:
        return self.entry["url"]

    @property
    def archive_format(self) -> str:
        return self.entry["format"]

    @property
    def archive_name(self) -> str:
        return self.entry.get("local_name") or posixpath.basename(self.url)

    @property
    def source_dir(self) -> str:
        return "%s/%s-%s" % (BUILD_DIR, self.name, self.version)


DEPENDENCIES = collections.OrderedDict(
    (spec.name, spec)
    for spec in (
        DependencySpec(
            name="zlib",
            build_system="autotools",
            configure_args=("--static",),
            pkgconfig=("zlib",),
        ),
        DependencySpec(
            name="openssl",
            build_system="openssl",
            configure_args=("no-shared", "no-tests", "zlib"),
            needs=("zlib",),
            pkgconfig=("libcrypto", "libssl", "openssl"),
        ),
        DependencySpec(
            name="libvpx",
            build_system="autotools",
            configure_args=(
                "--disable-shared",
                "--enable-static",
                "--enable-pic",
                "--disable-unit-tests",
                "--disable-examples",
                "--disable-tools",
                "--disable-docs",
            ),
            pkgconfig=("vpx",),
        ),
        DependencySpec(
            name="ffmpeg",
            build_system="ffmpeg",
            configure_args=(
                "--disable-shared",
                "--enable-static",
                "--enable-pic",
                "--enable-gpl",
                "--enable-nonfree",
                "--enable-zlib",
                "--enable-openssl",
                "--enable-libvpx",
                "--disable-programs",
                "--disable-doc",
                "--pkg-config-flags=--static",
            ),
            needs=("zlib", "openssl", "libvpx"),
            pkgconfig=(
                "libavcodec",
                "libavdevice",
                "libavfilter",
                "libavformat",
                "libavutil",
                "libswresample",
                "libswscale",
            ),
        ),
        DependencySpec(
            name="rlottie",
            build_system="cmake",
            configure_args=(
                "-DBUILD_SHARED_LIBS=OFF",
                "-DLOTTIE_MODULE=OFF",
                "-DLOTTIE_TEST=OFF",
            ),
            pkgconfig=("rlottie",),
            optional=True,
            fixups=("link-directive",),
        ),
        DependencySpec(
            name="opencv",
            build_system="cmake",
            configure_args=(
                "-DBUILD_SHARED_LIBS=OFF",
                "-DBUILD_LIST=core,imgproc,imgcodecs,objdetect",
                "-DOPENCV_GENERATE_PKGCONFIG=ON",
                "-DBUILD_TESTS=OFF",
                "-DBUILD_PERF_TESTS=OFF",
                "-DBUILD_EXAMPLES=OFF",
                "-DBUILD_opencv_apps=OFF",
                "-DBUILD_ZLIB=OFF",
                "-DWITH_FFMPEG=OFF",
                "-DWITH_IPP=OFF",
                "-DWITH_ITT=OFF",
                "-DWITH_OPENEXR=OFF",
            ),
            needs=("zlib",),
            pkgconfig=("opencv4",),
            optional=True,
            fixups=("archive-rename",),
        ),
    )
)


def extract_command(spec: DependencySpec) -> Command:
    archive = "%s/%s" % (BUILD_DIR, spec.archive_name)

    if spec.archive_format == "zip":
        return Command(["/usr/bin/unzip", "-q", "-o", "-d", BUILD_DIR, archive], None)

    return Command(["/bin/tar", "-C", BUILD_DIR, "-xf", archive], None)


def probe_command(spec: DependencySpec) -> Command:
    """Verify upstream libraries are discoverable before configuring."""
    modules = []
    for need in spec.needs:
        modules.extend(DEPENDENCIES[need].pkgconfig)

    return Command(
        ["pkg-config", "--exists", "--print-errors", *modules], spec.source_dir
    )


def phase_commands(spec: DependencySpec, config) -> dict[str, list[Command]]:
    src = spec.source_dir
    jobs = "-j%d" % config.jobs
    make_install = ["make", "install", "DESTDIR=%s" % STAGING_DIR]

    commands = {
        "extract": [extract_command(spec)],
        "configure": [probe_command(spec)] if spec.needs else [],
        "compile": [],
        "install": [],
    }

    if spec.build_system == "autotools":
        commands["configure"].append(
            Command(["./configure", "--prefix=%s" % config.prefix, *spec.configure_args], src)
        )
        commands["compile"].append(Command(["make", jobs], src))
        commands["install"].append(Command(make_install, src))

    elif spec.build_system == "openssl":
        commands["configure"].append(
            Command(
                [
                    "./Configure",
                    config.openssl_target,
                    "--prefix=%s" % config.prefix,
                    "--libdir=lib",
                    "--with-zlib-include=%s/include" % config.prefix,
                    "--with-zlib-lib=%s/lib" % config.prefix,
                    *spec.configure_args,
                ],
                src,
            )
        )
        commands["compile"].append(Command(["make", jobs], src))
        commands["install"].append(
            Command(["make", "install_sw", "DESTDIR=%s" % STAGING_DIR], src)
        )

    elif spec.build_system == "ffmpeg":
        # FFmpeg's configure ignores CC and friends from the environment.
        commands["configure"].append(
            Command(
                [
                    "./configure",
                    "--prefix=%s" % config.prefix,
                    "--cc=%s" % config.cc,
                    "--cxx=%s" % config.cxx,
                    "--ar=%s" % config.ar,
                    "--extra-cflags=%s" % " ".join(config.cflags),
                    "--extra-ldflags=%s" % " ".join(config.ldflags),
                    *spec.configure_args,
                ],
                src,
            )
        )
        commands["compile"].append(Command(["make", jobs], src))
        commands["install"].append(Command(make_install, src))

    elif spec.build_system == "cmake":
        commands["configure"].append(
            Command(
                [
                    "cmake",
                    "-S",
                    ".",
                    "-B",
                    "build",
                    "-DCMAKE_BUILD_TYPE=MinSizeRel",
                    "-DCMAKE_INSTALL_PREFIX=%s" % config.prefix,
                    "-DCMAKE_INSTALL_LIBDIR=lib",
                    "-DCMAKE_PREFIX_PATH=%s" % config.prefix,
                    "-DLIB_INSTALL_DIR=%s/lib" % config.prefix,
                    *spec.configure_args,
                ],
                src,
            )
        )
        commands["compile"].append(Command(["cmake", "--build", "build", jobs], src))
        commands["install"].append(
            Command(
                ["/usr/bin/env", "DESTDIR=%s" % STAGING_DIR, "cmake", "--install", "build"],
                src,
            )
        )

    else:
        raise Exception("unhandled build system: %s" % spec.build_system)

    return commands


# Fixups applied to a node's staged files before promotion. Each takes and
# returns a dict of {relative path: bytes}.

SHARED_OBJECT_RE = re.compile(r"\.(so(\.[0-9]+)*|dylib)$")


def patch_link_directive(data: bytes, library: str, flag: str) -> bytes:
    """Append ``flag`` after ``-l<library>`` on the ``Libs:`` line of a .pc file."""
    lines = data.decode("utf-8").splitlines(keepends=True)
    token = "-l%s" % library
    patched = False

    for i, line in enumerate(lines):
        if not line.startswith("Libs:"):
            continue

        words = line.split()
        if token not in words:
            continue

        if flag not in words:
            words.insert(words.index(token) + 1, flag)
            lines[i] = " ".join(words) + "\n"

        patched = True

    if not patched:
        raise InstallFailure("no %s link directive to patch" % token)

    return "".join(lines).encode("utf-8")


def fixup_link_directive(files):
    """rlottie is C++; static consumers need libstdc++ on the link line."""
    path = "lib/pkgconfig/rlottie.pc"
    if path not in files:
        raise InstallFailure("missing %s" % path)

    files[path] = patch_link_directive(files[path], "rlottie", "-lstdc++")
    return files


def strip_redundant_prefix(path: str) -> str:
    """``lib/opencv4/3rdparty/liblibpng.a`` -> ``lib/opencv4/3rdparty/libpng.a``."""
    dirname, basename = posixpath.split(path)
    if basename.startswith("liblib") and basename.endswith(".a"):
        return posixpath.join(dirname, basename[len("lib") :])

    return path


def fixup_archive_rename(files):
    """OpenCV installs bundled third-party archives as ``liblib<name>.a``."""
    renames = {}
    for path in files:
        new = strip_redundant_prefix(path)
        if new != path:
            if new in files:
                raise InstallFailure("cannot rename %s: %s exists" % (path, new))
            renames[path] = new

    for old, new in renames.items():
        files[new] = files.pop(old)

    # Keep the pkg-config metadata consistent with the renamed archives.
    pc = "lib/pkgconfig/opencv4.pc"
    if pc in files:
        files[pc] = re.sub(rb"-llib(?=[A-Za-z0-9])", b"-l", files[pc])

    return files


FIXUPS = {
    "link-directive": fixup_link_directive,
    "archive-rename": fixup_archive_rename,
}


def finalize(spec: DependencySpec, files, symlinks=()):
    """Apply fixups and check static-only postconditions on staged files.

    ``files`` maps paths relative to the prefix to regular file content.
    ``symlinks`` names any other staged links, which are only checked.
    """
    shared = sorted(
        p for p in (*files, *symlinks) if SHARED_OBJECT_RE.search(p)
    )
    if shared:
        raise InstallFailure(
            "%s installed shared objects: %s" % (spec.name, ", ".join(shared))
        )

    for name in spec.fixups:
        files = FIXUPS[name](files)

    missing = [
        m for m in spec.pkgconfig if "lib/pkgconfig/%s.pc" % m not in files
    ]
    if missing:
        raise InstallFailure(
            "%s did not install pkg-config metadata: %s"
            % (spec.name, ", ".join(missing))
        )

    return files
