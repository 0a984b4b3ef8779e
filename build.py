#!/usr/bin/env python3
# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

"""Build the application for one architecture inside the builder image."""

import argparse
import os
import pathlib
import subprocess
import sys
import venv

ROOT = pathlib.Path(os.path.abspath(__file__)).parent
BUILD = ROOT / "build"
VENV = BUILD / "venv.driver"
PIP = VENV / "bin" / "pip"
PYTHON = VENV / "bin" / "python"
TARGETS_CONFIG = ROOT / "builder" / "targets.yml"


def bootstrap():
    BUILD.mkdir(exist_ok=True)

    venv.create(VENV, with_pip=True)

    subprocess.run([str(PIP), "install", "-q", "-e", str(ROOT)], check=True)

    os.environ["AVATARBUILD_BOOTSTRAPPED"] = "1"
    os.environ["PATH"] = "%s:%s" % (str(VENV / "bin"), os.environ["PATH"])
    os.environ["PYTHONPATH"] = str(ROOT)

    args = [str(PYTHON), __file__, *sys.argv[1:]]

    os.execv(str(PYTHON), args)


def run():
    import docker

    from avatarbuild.driver import drive, normalize_arch
    from avatarbuild.errors import BuildError
    from avatarbuild.logging import set_logger
    from avatarbuild.utils import get_target_settings

    parser = argparse.ArgumentParser()
    parser.add_argument(
        "arch",
        nargs="?",
        help="Architecture to build for (x86_64, aarch64, amd64 or arm64); "
        "defaults to the host's",
    )
    parser.add_argument("--image", help="Builder image to build in")
    parser.add_argument(
        "--source",
        default=os.getcwd(),
        help="Application source tree to mount",
    )

    args = parser.parse_args()

    set_logger("build", None)

    try:
        arch = normalize_arch(args.arch)
    except BuildError as e:
        print(e, file=sys.stderr)
        return e.returncode

    try:
        client = docker.from_env()
        client.ping()
    except Exception as e:
        print("unable to connect to Docker: %s" % e, file=sys.stderr)
        return 1

    try:
        drive(
            client,
            arch,
            pathlib.Path(args.source).resolve(),
            get_target_settings(TARGETS_CONFIG, arch),
            image=args.image,
        )
    except BuildError as e:
        print(e, file=sys.stderr)
        return e.returncode

    return 0


if __name__ == "__main__":
    try:
        if "AVATARBUILD_BOOTSTRAPPED" not in os.environ:
            bootstrap()
        else:
            sys.exit(run())
    except subprocess.CalledProcessError as e:
        sys.exit(e.returncode)
