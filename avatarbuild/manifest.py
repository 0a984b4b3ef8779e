# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

"""Merging per-architecture builder images into one manifest list.

Every architecture's image build publishes its image and leaves one ArchDigest
artifact: an empty file named after the digest (without its ``sha256:``
prefix) in a directory named after the platform, e.g.
``digests/linux_arm64/4f2c...``. The merge stage requires one artifact for
every advertised platform; a partial manifest list is never published.
"""

import dataclasses
import json
import pathlib
import subprocess

from .errors import ManifestPublishFailure, MissingDigestArtifact
from .logging import log
from .utils import exec_and_log

DIGEST_ALGORITHM = "sha256"


@dataclasses.dataclass(frozen=True)
class ArchDigest:
    platform: str
    digest: str

    @property
    def hex(self) -> str:
        return self.digest.rpartition(":")[2]

    def reference(self, image: str) -> str:
        return "%s@%s:%s" % (image, DIGEST_ALGORITHM, self.hex)


@dataclasses.dataclass(frozen=True)
class ManifestList:
    image: str
    tags: tuple[str, ...]
    digests: tuple[ArchDigest, ...]

    def validate(self, platforms):
        have = {d.platform for d in self.digests}
        missing = sorted(set(platforms) - have)

        if missing:
            raise MissingDigestArtifact(
                "no image digest for platforms: %s" % ", ".join(missing)
            )

        if not self.tags:
            raise ManifestPublishFailure("manifest list has no tags")


def platform_slug(platform: str) -> str:
    return platform.replace("/", "_")


def image_tags(image: str, release_tag: str, latest=False):
    tags = ["%s:%s" % (image, release_tag)]
    if latest:
        tags.append("%s:latest" % image)

    return tags


def write_digest_artifact(digests_dir: pathlib.Path, arch_digest: ArchDigest):
    dest_dir = digests_dir / platform_slug(arch_digest.platform)
    dest_dir.mkdir(parents=True, exist_ok=True)

    # One digest per platform per run.
    for stale in dest_dir.iterdir():
        stale.unlink()

    path = dest_dir / arch_digest.hex
    path.touch()
    log("wrote digest artifact %s" % path)

    return path


def collect_digests(digests_dir: pathlib.Path, platforms):
    """Read exactly one ArchDigest per expected platform."""
    digests = []

    for platform in platforms:
        platform_dir = digests_dir / platform_slug(platform)
        entries = sorted(platform_dir.iterdir()) if platform_dir.is_dir() else []

        if not entries:
            raise MissingDigestArtifact(
                "missing digest artifact for %s in %s" % (platform, platform_dir)
            )

        if len(entries) > 1:
            raise MissingDigestArtifact(
                "ambiguous digest artifacts for %s: %s"
                % (platform, ", ".join(p.name for p in entries))
            )

        digests.append(
            ArchDigest(platform, "%s:%s" % (DIGEST_ALGORITHM, entries[0].name))
        )

    return digests


def create_manifest(manifest, run=exec_and_log):
    """Publish the manifest list with ``docker buildx imagetools create``."""
    args = ["docker", "buildx", "imagetools", "create"]
    for tag in manifest.tags:
        args.extend(["-t", tag])

    args.extend(d.reference(manifest.image) for d in manifest.digests)

    try:
        run(args, cwd=None, env=None)
    except subprocess.CalledProcessError as e:
        raise ManifestPublishFailure(
            "unable to create manifest list %s" % ", ".join(manifest.tags),
            e.returncode,
        ) from e


def inspect_manifest(reference: str, check_output=subprocess.check_output):
    try:
        data = check_output(
            ["docker", "buildx", "imagetools", "inspect", "--raw", reference]
        )
    except subprocess.CalledProcessError as e:
        raise ManifestPublishFailure(
            "unable to inspect %s" % reference, e.returncode
        ) from e

    return json.loads(data)


def verify_manifest(raw, manifest):
    """Check a raw manifest list references every expected digest."""
    published = {}

    for entry in raw.get("manifests", []):
        p = entry.get("platform", {})
        platform = "%s/%s" % (p.get("os"), p.get("architecture"))
        if p.get("variant"):
            platform += "/%s" % p["variant"]

        published[entry.get("digest")] = platform

    for d in manifest.digests:
        digest = "%s:%s" % (DIGEST_ALGORITHM, d.hex)

        if digest not in published:
            raise ManifestPublishFailure(
                "published manifest lacks %s image %s" % (d.platform, digest)
            )

        # arm64 images may be published with a v8 variant.
        if not (published[digest] + "/").startswith(d.platform + "/"):
            raise ManifestPublishFailure(
                "%s resolves to platform %s, expected %s"
                % (digest, published[digest], d.platform)
            )


def merge(
    image: str,
    digests_dir: pathlib.Path,
    platforms,
    release_tag: str,
    latest=False,
    run=exec_and_log,
    check_output=subprocess.check_output,
):
    """Aggregate per-platform digests into one published tag set."""
    manifest = ManifestList(
        image=image,
        tags=tuple(image_tags(image, release_tag, latest=latest)),
        digests=tuple(collect_digests(digests_dir, platforms)),
    )
    manifest.validate(platforms)

    log(
        "creating %s from %s"
        % (", ".join(manifest.tags), ", ".join(d.hex for d in manifest.digests))
    )
    create_manifest(manifest, run=run)

    for tag in manifest.tags:
        verify_manifest(inspect_manifest(tag, check_output=check_output), manifest)
        log("verified %s" % tag)

    return manifest
