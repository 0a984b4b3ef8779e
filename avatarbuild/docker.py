# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import contextlib
import io
import operator
import os
import pathlib
import subprocess
import tarfile

import docker
import jinja2

from .errors import BuildError
from .logging import log, log_raw
from .utils import DEFAULT_MTIME, write_if_different


def render_dockerfile(source_dir: pathlib.Path, name: str, **context) -> str:
    env = jinja2.Environment(
        loader=jinja2.FileSystemLoader(str(source_dir)),
        undefined=jinja2.StrictUndefined,
        keep_trailing_newline=True,
    )

    return env.get_template(name).render(**context)


def write_dockerfiles(
    source_dir: pathlib.Path, dest_dir: pathlib.Path, targets, **context
):
    """Render the base build image Dockerfile for every architecture."""
    dest_dir.mkdir(parents=True, exist_ok=True)

    for arch, settings in sorted(targets.items()):
        data = render_dockerfile(
            source_dir, "build.Dockerfile", **dict(settings, **context)
        )

        write_if_different(
            dest_dir / ("build.%s.Dockerfile" % arch), data.encode("utf-8")
        )


def build_docker_image(
    client, image_data: bytes, image_dir: pathlib.Path, name, platform=None
):
    image_path = image_dir / ("image-%s" % name)

    return ensure_docker_image(
        client, io.BytesIO(image_data), image_path=image_path, platform=platform
    )


def ensure_docker_image(
    client, fh, image_path=None, platform=None, custom_context=False, tag=None
):
    res = client.api.build(
        fileobj=fh,
        custom_context=custom_context,
        platform=platform,
        tag=tag,
        rm=True,
        decode=True,
    )

    image = None

    for s in res:
        if "stream" in s:
            for l in s["stream"].strip().splitlines():
                log(l)

        if "error" in s:
            raise BuildError("error building Docker image: %s" % s["error"])

        if "aux" in s and "ID" in s["aux"]:
            image = s["aux"]["ID"]

    if not image:
        raise BuildError("unable to determine built Docker image")

    if image_path:
        tar_path = pathlib.Path(str(image_path) + ".tar")
        with tar_path.open("wb") as fh:
            for chunk in client.images.get(image).save():
                fh.write(chunk)

        with image_path.open("w") as fh:
            fh.write(image + "\n")

    return image


def get_image(client, image_dir: pathlib.Path, name, platform=None):
    """Resolve a previously built image, loading or rebuilding it if needed."""
    image_path = image_dir / ("image-%s" % name)
    tar_path = pathlib.Path(str(image_path) + ".tar")

    if image_path.exists():
        with image_path.open("r") as fh:
            image_id = fh.read().strip()

        try:
            client.images.get(image_id)
            return image_id
        except docker.errors.ImageNotFound:
            if tar_path.exists():
                with tar_path.open("rb") as fh:
                    client.images.load(fh.read())

                return image_id

    with (image_dir / ("%s.Dockerfile" % name)).open("rb") as fh:
        image_data = fh.read()

    return build_docker_image(client, image_data, image_dir, name, platform=platform)


def copy_file_to_container(path, container, container_path, archive_path=None):
    """Copy a path on the local filesystem to a running container."""
    buf = io.BytesIO()
    tf = tarfile.open("irrelevant", "w", buf)

    dest_path = archive_path or path.name
    tf.add(str(path), dest_path)
    tf.close()

    log("copying %s to container:%s/%s" % (path, container_path, dest_path))
    container.put_archive(container_path, buf.getvalue())


@contextlib.contextmanager
def run_container(client, image, platform=None):
    container = client.containers.run(
        image, command=["/bin/sleep", "86400"], detach=True, platform=platform
    )
    try:
        yield container
    finally:
        container.stop(timeout=0)
        container.remove()


def container_exec(container, command, user="build", environment=None, workdir=None):
    # docker-py's exec_run() won't return the exit code. So we reinvent the
    # wheel.
    create_res = container.client.api.exec_create(
        container.id, command, user=user, environment=environment, workdir=workdir
    )

    exec_output = container.client.api.exec_start(create_res["Id"], stream=True)

    for chunk in exec_output:
        for l in chunk.strip().splitlines():
            log(l)

        log_raw(chunk)

    inspect_res = container.client.api.exec_inspect(create_res["Id"])

    if inspect_res["ExitCode"] != 0:
        if "AVATARBUILD_BREAK_ON_FAILURE" in os.environ:
            print("to enter container: docker exec -it %s /bin/bash" % container.id)
            import pdb

            pdb.set_trace()

        raise subprocess.CalledProcessError(inspect_res["ExitCode"], command)


def container_get_archive(container, path):
    """Get a deterministic tar archive from a container."""
    data, stat = container.get_archive(path)
    old_data = io.BytesIO()
    for chunk in data:
        old_data.write(chunk)

    old_data.seek(0)

    new_data = io.BytesIO()

    with tarfile.open(fileobj=old_data) as itf, tarfile.open(
        fileobj=new_data, mode="w"
    ) as otf:
        for member in sorted(itf.getmembers(), key=operator.attrgetter("name")):
            file_data = itf.extractfile(member) if not member.linkname else None
            member.mtime = DEFAULT_MTIME
            otf.addfile(member, file_data)

    return new_data.getvalue()
