# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import contextlib
import io
import pathlib

import docker

from .docker import (
    container_exec,
    container_get_archive,
    copy_file_to_container,
    run_container,
)
from .errors import InstallFailure
from .logging import log
from .recipes import BUILD_DIR, STAGING_DIR
from .utils import normalize_tar_archive


class ContainerContext(object):
    """A fresh container in which one dependency is built."""

    def __init__(self, container):
        self.container = container

    def copy_file(self, source: pathlib.Path, dest_path=None, dest_name=None):
        dest_name = dest_name or source.name
        dest_path = dest_path or BUILD_DIR
        copy_file_to_container(source, self.container, dest_path, dest_name)

    def install_prefix_archive(self, archive: pathlib.Path, prefix: str):
        """Extract a promoted dependency archive into the shared prefix."""
        self.copy_file(archive)
        self.run(["/bin/tar", "-C", prefix, "-xf", "%s/%s" % (BUILD_DIR, archive.name)])

    def run(self, program, user="build", environment=None, workdir=None):
        container_exec(
            self.container,
            program,
            user=user,
            environment=environment,
            workdir=workdir,
        )

    def get_staged_archive(self, prefix: str) -> bytes:
        """Obtain the files a step installed under its staging directory.

        Member names begin with the final component of the prefix.
        """
        path = STAGING_DIR + prefix
        log("retrieving staged install from container:%s" % path)

        try:
            data = container_get_archive(self.container, path)
        except docker.errors.NotFound as e:
            raise InstallFailure("nothing was installed to %s" % path) from e

        return normalize_tar_archive(io.BytesIO(data)).getvalue()


@contextlib.contextmanager
def build_environment(client, image, platform=None):
    with run_container(client, image, platform=platform) as container:
        yield ContainerContext(container)
