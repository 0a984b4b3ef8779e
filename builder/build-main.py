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

from avatarbuild.assemble import build_and_assemble
from avatarbuild.docker import get_image, write_dockerfiles
from avatarbuild.driver import DEFAULT_IMAGE, normalize_arch
from avatarbuild.errors import BuildError
from avatarbuild.logging import logger_to_path
from avatarbuild.pipeline import Pipeline, select_dependencies, topological_order
from avatarbuild.toolchain import DEFAULT_PREFIX, load_toolchain_config
from avatarbuild.utils import get_targets, release_tag_from_date, supported_targets

ROOT = pathlib.Path(os.path.abspath(__file__)).parent.parent
BUILD = ROOT / "build"
DIST = ROOT / "dist"
DOWNLOADS_PATH = BUILD / "downloads"
DIGESTS = ROOT / "digests"
SUPPORT = ROOT / "builder"
TARGETS_CONFIG = SUPPORT / "targets.yml"


def main():
    parser = argparse.ArgumentParser(
        description="Build the native dependency prefix and the builder image"
    )
    parser.add_argument(
        "--arch",
        choices=supported_targets(TARGETS_CONFIG),
        help="Architecture to build for; defaults to the host's",
    )
    parser.add_argument(
        "--serial",
        action="store_true",
        help="Build dependencies one at a time, in order",
    )
    parser.add_argument(
        "--skip",
        action="append",
        default=[],
        help="Optional dependency to leave out (may be repeated)",
    )
    parser.add_argument(
        "--push",
        action="store_true",
        help="Push the image and record its digest for the merge stage",
    )
    parser.add_argument(
        "--image",
        default=os.environ.get("AVATARBUILD_REGISTRY_IMAGE", DEFAULT_IMAGE),
        help="Image repository to tag",
    )
    parser.add_argument(
        "--break-on-failure",
        action="store_true",
        help="Enter a Python debugger if a build command fails",
    )

    args = parser.parse_args()

    if args.break_on_failure:
        os.environ["AVATARBUILD_BREAK_ON_FAILURE"] = "1"

    arch = args.arch or normalize_arch()

    targets = get_targets(TARGETS_CONFIG)
    settings = targets[arch]
    config = load_toolchain_config(TARGETS_CONFIG, arch)
    release_tag = release_tag_from_date()

    steps = topological_order(select_dependencies(settings["needs"], skip=args.skip))

    try:
        client = docker.from_env()
        client.ping()
    except Exception as e:
        print("unable to connect to Docker: %s" % e, file=sys.stderr)
        return 1

    with logger_to_path(arch, BUILD / "logs" / ("build-main.%s.log" % arch)):
        write_dockerfiles(SUPPORT, BUILD, targets, prefix=DEFAULT_PREFIX)
        image = get_image(
            client, BUILD, "build.%s" % arch, platform=config.platform
        )

        pipeline = Pipeline(
            client,
            image,
            config,
            BUILD,
            DOWNLOADS_PATH,
            serial=args.serial,
        )

        build_and_assemble(
            pipeline,
            steps,
            dict(
                client=client,
                base_image=image,
                config=config,
                build_dir=BUILD,
                dist_dir=DIST,
                template_dir=SUPPORT,
                image=args.image,
                release_tag=release_tag,
                push=args.push,
                digests_dir=DIGESTS,
            ),
        )

    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except BuildError as e:
        print(e, file=sys.stderr)
        sys.exit(e.returncode)
    except subprocess.CalledProcessError as e:
        sys.exit(e.returncode)
