#!/usr/bin/env python3
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import argparse
import os
import pathlib
import subprocess
import sys

import docker

from avatarbuild.assemble import assemble
from avatarbuild.docker import build_docker_image, get_image, write_dockerfiles
from avatarbuild.driver import DEFAULT_IMAGE, normalize_arch
from avatarbuild.errors import BuildError, ConfigureFailure
from avatarbuild.logging import logger_to_path
from avatarbuild.manifest import merge
from avatarbuild.pipeline import Pipeline, select_dependencies, topological_order
from avatarbuild.recipes import DEPENDENCIES
from avatarbuild.toolchain import DEFAULT_PREFIX, load_toolchain_config
from avatarbuild.utils import get_targets, release_tag_from_date

ROOT = pathlib.Path(os.path.abspath(__file__)).parent.parent
BUILD = ROOT / "build"
DIST = ROOT / "dist"
DOWNLOADS_PATH = BUILD / "downloads"
DIGESTS = ROOT / "digests"
SUPPORT = ROOT / "builder"
TARGETS_CONFIG = SUPPORT / "targets.yml"


def connect_docker():
    try:
        client = docker.from_env()
        client.ping()
    except Exception as e:
        raise BuildError("unable to connect to Docker: %s" % e) from e

    return client


def main():
    BUILD.mkdir(exist_ok=True)
    DOWNLOADS_PATH.mkdir(exist_ok=True)
    (BUILD / "logs").mkdir(exist_ok=True)

    parser = argparse.ArgumentParser()
    parser.add_argument("--arch", help="Architecture to act on")
    parser.add_argument(
        "--skip",
        action="append",
        default=[],
        help="Optional dependency to leave out (may be repeated)",
    )
    parser.add_argument(
        "--image",
        default=os.environ.get("AVATARBUILD_REGISTRY_IMAGE", DEFAULT_IMAGE),
        help="Image repository to tag",
    )
    parser.add_argument(
        "--push",
        action="store_true",
        help="Push the assembled image and record its digest",
    )
    parser.add_argument(
        "--latest",
        action="store_true",
        help="Also publish the merged manifest list as latest",
    )
    parser.add_argument(
        "--digests",
        default=str(DIGESTS),
        help="Directory holding per-platform digest artifacts",
    )
    parser.add_argument("action")

    args = parser.parse_args()

    action = args.action
    targets = get_targets(TARGETS_CONFIG)
    if action in ("merge", "dockerfiles"):
        arch = None
    else:
        arch = normalize_arch(args.arch)

    if action in DEPENDENCIES:
        entry = DEPENDENCIES[action]
        log_name = "%s-%s-%s" % (action, entry.version, arch)
    elif action in ("merge", "dockerfiles"):
        log_name = action
    else:
        log_name = "%s-%s" % (action, arch)

    log_path = BUILD / "logs" / ("build.%s.log" % log_name)

    with logger_to_path(action, log_path):
        if action == "dockerfiles":
            write_dockerfiles(SUPPORT, BUILD, targets, prefix=DEFAULT_PREFIX)

        elif action == "merge":
            platforms = sorted(s["platform"] for s in targets.values())
            merge(
                args.image,
                pathlib.Path(args.digests),
                platforms,
                release_tag_from_date(),
                latest=args.latest,
            )

        elif action == "image-build":
            image_name = "build.%s" % arch
            with (BUILD / ("%s.Dockerfile" % image_name)).open("rb") as fh:
                image_data = fh.read()

            build_docker_image(
                client=connect_docker(),
                image_data=image_data,
                image_dir=BUILD,
                name=image_name,
                platform=targets[arch]["platform"],
            )

        elif action in DEPENDENCIES or action == "assemble":
            client = connect_docker()
            config = load_toolchain_config(TARGETS_CONFIG, arch)
            image = get_image(client, BUILD, "build.%s" % arch, platform=config.platform)
            steps = topological_order(
                select_dependencies(targets[arch]["needs"], skip=args.skip)
            )
            pipeline = Pipeline(client, image, config, BUILD, DOWNLOADS_PATH)

            if action == "assemble":
                archives = [pipeline.archive_path(s.spec) for s in steps]
                missing = [p.name for p in archives if not p.exists()]
                if missing:
                    raise ConfigureFailure(
                        "missing dependency archives: %s" % ", ".join(missing)
                    )

                assemble(
                    client,
                    image,
                    config,
                    [s.spec for s in steps],
                    archives,
                    build_dir=BUILD,
                    dist_dir=DIST,
                    template_dir=SUPPORT,
                    image=args.image,
                    release_tag=release_tag_from_date(),
                    push=args.push,
                    digests_dir=pathlib.Path(args.digests),
                )
            else:
                pipeline.build_node(action, steps)

        else:
            print("do not know how to build %s" % action, file=sys.stderr)
            return 1

    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except BuildError as e:
        print(e, file=sys.stderr)
        sys.exit(e.returncode)
    except subprocess.CalledProcessError as e:
        sys.exit(e.returncode)
