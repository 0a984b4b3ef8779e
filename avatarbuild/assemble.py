# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

"""Packaging the shared prefix into the builder image."""

import dataclasses
import io
import pathlib
import posixpath
import tarfile

from .docker import ensure_docker_image, render_dockerfile
from .errors import InstallFailure, ManifestPublishFailure
from .logging import log
from .manifest import ArchDigest, write_digest_artifact
from .recipes import SHARED_OBJECT_RE, strip_redundant_prefix
from .utils import DEFAULT_MTIME, compress_archive, normalize_tar_archive, write_atomic

# Link order for the OpenCV modules we build, dependents first.
OPENCV_MODULES = ("objdetect", "imgcodecs", "imgproc", "core")
OPENCV_3RDPARTY = "lib/opencv4/3rdparty/"
# Bundled third-party archives, dependents first. tiff pulls in jpeg-turbo
# and webp. Anything not listed links ahead of these.
OPENCV_3RDPARTY_ORDER = ("tiff", "webp", "png", "openjp2", "jpeg-turbo")


@dataclasses.dataclass(frozen=True)
class BuilderImage:
    image_id: str
    tags: tuple[str, ...]
    platform: str
    digest: str | None = None


def merge_prefix_archives(paths) -> bytes:
    """Combine promoted dependency archives into one prefix archive."""
    members = {}

    for path in paths:
        with tarfile.open(path, "r") as tf:
            for ti in tf:
                if ti.isdir():
                    continue

                data = tf.extractfile(ti).read() if ti.isfile() else None

                if ti.name in members:
                    other_ti, other_data = members[ti.name]
                    if other_data != data or other_ti.linkname != ti.linkname:
                        raise InstallFailure(
                            "%s is installed differently by %s and an earlier dependency"
                            % (ti.name, path.name)
                        )
                    continue

                members[ti.name] = (ti, data)

    out = io.BytesIO()
    with tarfile.open(fileobj=out, mode="w") as tf:
        for ti, data in members.values():
            tf.addfile(ti, io.BytesIO(data) if data is not None else None)

    out.seek(0)

    return normalize_tar_archive(out).getvalue()


def prefix_files(data: bytes):
    files = {}

    with tarfile.open(fileobj=io.BytesIO(data)) as tf:
        for ti in tf:
            files[ti.name] = tf.extractfile(ti).read() if ti.isfile() else None

    return files


def verify_prefix(data: bytes, specs):
    """Check the merged prefix satisfies every dependency's postconditions."""
    files = prefix_files(data)
    names = set(files)

    shared = sorted(n for n in names if SHARED_OBJECT_RE.search(n))
    if shared:
        raise InstallFailure("prefix contains shared objects: %s" % ", ".join(shared))

    for spec in specs:
        for module in spec.pkgconfig:
            if "lib/pkgconfig/%s.pc" % module not in names:
                raise InstallFailure(
                    "prefix lacks pkg-config metadata %s for %s" % (module, spec.name)
                )

        if "link-directive" in spec.fixups:
            pc = files["lib/pkgconfig/rlottie.pc"].decode("utf-8")
            libs = [l for l in pc.splitlines() if l.startswith("Libs:")]
            if not any("-lstdc++" in l.split() for l in libs):
                raise InstallFailure("rlottie.pc does not link libstdc++")

        if "archive-rename" in spec.fixups:
            unrenamed = sorted(
                n
                for n in names
                if n.startswith(OPENCV_3RDPARTY) and strip_redundant_prefix(n) != n
            )
            if unrenamed:
                raise InstallFailure(
                    "archives were not renamed: %s" % ", ".join(unrenamed)
                )

    return files


def bundled_link_rank(lib):
    if lib in OPENCV_3RDPARTY_ORDER:
        return (1 + OPENCV_3RDPARTY_ORDER.index(lib), lib)

    return (0, lib)


def opencv_link_libs(names):
    """Static libraries to link for OpenCV, in link order."""
    libs = [
        "opencv_%s" % m for m in OPENCV_MODULES if "lib/libopencv_%s.a" % m in names
    ]

    if not libs:
        return []

    bundled = [
        posixpath.basename(name)[len("lib") : -len(".a")]
        for name in names
        if name.startswith(OPENCV_3RDPARTY) and name.endswith(".a")
    ]
    libs.extend(sorted(bundled, key=bundled_link_rank))

    if "lib/libz.a" in names:
        libs.append("z")

    return ["static=%s" % l for l in libs]


def builder_dockerfile(template_dir: pathlib.Path, config, base_image, files):
    rust_target_env = config.rust_target.replace("-", "_")

    return render_dockerfile(
        template_dir,
        "builder.Dockerfile",
        base_image=base_image,
        prefix=config.prefix,
        rust_target=config.rust_target,
        rust_target_env=rust_target_env,
        cc=config.cc,
        cxx=config.cxx,
        ar=config.ar,
        opencv_link_libs=opencv_link_libs(set(files)),
    )


def build_context(dockerfile: str, prefix_data: bytes) -> io.BytesIO:
    """A Docker build context holding the Dockerfile and the prefix archive."""
    fh = io.BytesIO()

    with tarfile.open(fileobj=fh, mode="w") as tf:
        for name, data in (
            ("Dockerfile", dockerfile.encode("utf-8")),
            ("prefix.tar", prefix_data),
        ):
            ti = tarfile.TarInfo(name)
            ti.size = len(data)
            ti.mtime = DEFAULT_MTIME
            ti.mode = 0o644
            tf.addfile(ti, io.BytesIO(data))

    fh.seek(0)

    return fh


def split_reference(reference: str):
    repository, _, tag = reference.rpartition(":")
    return repository, tag


def build_builder_image(client, dockerfile: str, prefix_data: bytes, platform, tags):
    image = ensure_docker_image(
        client,
        build_context(dockerfile, prefix_data),
        platform=platform,
        custom_context=True,
        tag=tags[0],
    )

    for reference in tags[1:]:
        repository, tag = split_reference(reference)
        client.api.tag(image, repository, tag)

    return image


def push_image(client, reference: str) -> str:
    """Push a tag and return the content digest the registry reports."""
    repository, tag = split_reference(reference)
    digest = None

    for s in client.api.push(repository, tag=tag, stream=True, decode=True):
        if "error" in s:
            raise ManifestPublishFailure("error pushing %s: %s" % (reference, s["error"]))

        if "status" in s:
            log("%s %s" % (s.get("id", ""), s["status"]))

        if "aux" in s and "Digest" in s["aux"]:
            digest = s["aux"]["Digest"]

    if not digest:
        raise ManifestPublishFailure("registry did not report a digest for %s" % reference)

    return digest


def assemble(
    client,
    base_image,
    config,
    specs,
    archives,
    build_dir: pathlib.Path,
    dist_dir: pathlib.Path,
    template_dir: pathlib.Path,
    image: str,
    release_tag: str,
    push=False,
    digests_dir=None,
):
    """Package promoted archives into the builder image for one architecture.

    The image is tagged ``<image>:<release_tag>-<arch>``. With ``push``, it is
    published and its digest written as an ArchDigest artifact for the merge
    stage.
    """
    prefix_data = merge_prefix_archives(archives)
    files = verify_prefix(prefix_data, specs)

    prefix_path = build_dir / ("prefix-%s.tar" % config.arch)
    write_atomic(prefix_path, prefix_data)

    dist_dir.mkdir(parents=True, exist_ok=True)
    compress_archive(prefix_path, dist_dir, "prefix-%s-%s" % (config.arch, release_tag))

    dockerfile = builder_dockerfile(template_dir, config, base_image, files)
    tags = ("%s:%s-%s" % (image, release_tag, config.arch),)

    image_id = build_builder_image(
        client, dockerfile, prefix_data, config.platform, tags
    )
    log("built %s as %s" % (image_id, ", ".join(tags)))

    digest = None
    if push:
        digest = push_image(client, tags[0])
        log("pushed %s with digest %s" % (tags[0], digest))

        if digests_dir is not None:
            write_digest_artifact(digests_dir, ArchDigest(config.platform, digest))

    return BuilderImage(image_id, tags, config.platform, digest)


def build_and_assemble(pipeline, steps, assemble_args):
    """Run the pipeline, then assemble. Nothing is published unless every
    step was promoted."""
    archives = pipeline.run(steps)

    return assemble(
        specs=[s.spec for s in steps], archives=archives, **assemble_args
    )
