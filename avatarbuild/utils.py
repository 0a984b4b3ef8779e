# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import datetime
import gzip
import hashlib
import http.client
import io
import os
import pathlib
import stat
import subprocess
import tarfile
import urllib.error
import urllib.request

import yaml
import zstandard

from .downloads import DOWNLOADS
from .errors import FetchFailure
from .logging import log


def get_targets(yaml_path: pathlib.Path):
    """Obtain the parsed targets YAML file."""
    with yaml_path.open("rb") as fh:
        return yaml.load(fh, Loader=yaml.SafeLoader)


def get_target_settings(yaml_path: pathlib.Path, arch: str):
    """Obtain the settings for a named architecture."""
    return get_targets(yaml_path)[arch]


def supported_targets(yaml_path: pathlib.Path):
    """Obtain the set of architectures we can build for."""
    return set(get_targets(yaml_path))


def release_tag_from_date(today=None):
    """The date-stamped image tag, e.g. ``20240315``."""
    if "AVATARBUILD_RELEASE_TAG" in os.environ:
        return os.environ["AVATARBUILD_RELEASE_TAG"]

    today = today or datetime.date.today()
    return today.strftime("%Y%m%d")


def hash_path(p: pathlib.Path):
    h = hashlib.sha256()

    with p.open("rb") as fh:
        while True:
            chunk = fh.read(65536)
            if not chunk:
                break

            h.update(chunk)

    return h.hexdigest()


def write_if_different(p: pathlib.Path, data: bytes):
    """Write a file if it is missing or its content is different."""
    if p.exists():
        with p.open("rb") as fh:
            existing = fh.read()
        write = existing != data
    else:
        write = True

    if write:
        with p.open("wb") as fh:
            fh.write(data)


def write_atomic(p: pathlib.Path, data: bytes):
    """Write a file via a temporary sibling so readers never see partial data."""
    tmp = p.with_name("%s.tmp" % p.name)

    try:
        with tmp.open("wb") as fh:
            fh.write(data)

        tmp.rename(p)
    finally:
        tmp.unlink(missing_ok=True)


def secure_download_stream(url, size=None, sha256=None):
    """Download a URL to a stream of chunks.

    If ``size`` and ``sha256`` are given and the download doesn't match them,
    FetchFailure is raised after the last chunk.
    """
    h = hashlib.sha256()
    length = 0

    with urllib.request.urlopen(url) as fh:
        if not url.endswith(".gz") and fh.info().get("Content-Encoding") == "gzip":
            fh = gzip.GzipFile(fileobj=fh)

        while True:
            chunk = fh.read(65536)
            if not chunk:
                break

            h.update(chunk)
            length += len(chunk)

            yield chunk

    digest = h.hexdigest()

    if sha256 is None:
        log("%s is not pinned; got size=%d, sha256=%s" % (url, length, digest))
        return

    if length != size or digest != sha256:
        raise FetchFailure(
            "integrity mismatch on %s: wanted size=%d, sha256=%s; got size=%d, sha256=%s"
            % (url, size, sha256, length, digest)
        )


def download_to_path(
    url: str, path: pathlib.Path, size=None, sha256=None, require_integrity=False
):
    """Download a URL to a filesystem path, verifying it when pinned.

    Any failure is fatal. There are no retries.
    """
    if sha256 is None and require_integrity:
        raise FetchFailure("refusing to download unpinned archive %s" % url)

    log("downloading %s to %s" % (url, path))

    if path.exists():
        if sha256 is not None:
            if path.stat().st_size == size and hash_path(path) == sha256:
                log("%s exists and passes integrity checks" % path)
                return

            log("existing file fails integrity checks; removing")

        path.unlink()

    # We download to a temporary file and rename at the end so there's
    # no chance of the final file being partially written.
    tmp = path.with_name("%s.tmp" % path.name)

    try:
        with tmp.open("wb") as fh:
            for chunk in secure_download_stream(url, size, sha256):
                fh.write(chunk)
    except (http.client.HTTPException, urllib.error.URLError, OSError) as e:
        tmp.unlink(missing_ok=True)
        raise FetchFailure("error downloading %s: %s" % (url, e)) from e
    except FetchFailure:
        tmp.unlink(missing_ok=True)
        raise

    tmp.rename(path)
    log("successfully downloaded %s" % url)


def download_entry(key: str, dest_path: pathlib.Path, local_name=None) -> pathlib.Path:
    entry = DOWNLOADS[key]
    url = entry["url"]

    local_path = dest_path / (
        local_name or entry.get("local_name") or url[url.rindex("/") + 1 :]
    )
    download_to_path(
        url,
        local_path,
        entry.get("size"),
        entry.get("sha256"),
        require_integrity=bool(os.environ.get("AVATARBUILD_REQUIRE_INTEGRITY")),
    )

    return local_path


# 2024-01-01T00:00:00Z
DEFAULT_MTIME = 1704067200


def normalize_tar_archive(data: io.BytesIO) -> io.BytesIO:
    """Normalize the contents of a tar archive.

    We want tar archives to be as deterministic as possible. This function will
    take tar archive data in a buffer and return a new buffer containing a more
    deterministic tar archive.
    """
    members = []

    with tarfile.open(fileobj=data) as tf:
        for ti in tf:
            # We don't care about directory entries. Tools can handle this fine.
            if ti.isdir():
                continue

            filedata = tf.extractfile(ti)
            if filedata is not None:
                filedata = io.BytesIO(filedata.read())

            members.append((ti, filedata))

    members.sort(key=lambda v: v[0].name)

    # Normalize attributes on archive members.
    for ti, _ in members:
        # The pax headers attribute takes priority over the other named
        # attributes.
        ti.pax_headers = {}

        ti.mtime = DEFAULT_MTIME
        ti.uid = 0
        ti.uname = "root"
        ti.gid = 0
        ti.gname = "root"

        # Give user/group read/write on all entries.
        ti.mode |= stat.S_IRUSR | stat.S_IWUSR | stat.S_IRGRP | stat.S_IWGRP

        # If user executable, give to group as well.
        if ti.mode & stat.S_IXUSR:
            ti.mode |= stat.S_IXGRP

    dest = io.BytesIO()
    with tarfile.open(fileobj=dest, mode="w") as tf:
        for ti, filedata in members:
            tf.addfile(ti, filedata)

    dest.seek(0)

    return dest


def compress_archive(source_path: pathlib.Path, dist_path: pathlib.Path, basename: str):
    dest_path = dist_path / ("%s.tar.zst" % basename)
    temp_path = dist_path / ("%s.tar.zst.tmp" % basename)

    log("compressing archive to %s" % dest_path)

    try:
        with source_path.open("rb") as ifh, temp_path.open("wb") as ofh:
            params = zstandard.ZstdCompressionParameters.from_level(
                19, strategy=zstandard.STRATEGY_BTULTRA2
            )
            cctx = zstandard.ZstdCompressor(compression_params=params)
            cctx.copy_stream(ifh, ofh, source_path.stat().st_size)

        temp_path.rename(dest_path)
    finally:
        temp_path.unlink(missing_ok=True)

    log("%s has SHA256 %s" % (dest_path, hash_path(dest_path)))

    return dest_path


def exec_and_log(args, cwd, env):
    """Run a process, logging its output. Raises CalledProcessError on failure."""
    p = subprocess.Popen(
        args,
        cwd=cwd,
        env=env,
        bufsize=1,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
    )

    for line in iter(p.stdout.readline, b""):
        log(line.rstrip())

    p.wait()

    if p.returncode:
        log("process exited %d" % p.returncode)
        raise subprocess.CalledProcessError(p.returncode, args)
