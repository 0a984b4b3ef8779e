# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

"""Failures raised by the build orchestration.

Every failure is fatal. Entry points report the message and exit with
``returncode``.
"""


class BuildError(Exception):
    """Base class for all build failures."""

    def __init__(self, message, returncode=1):
        super().__init__(message)
        self.returncode = returncode or 1


class FetchFailure(BuildError):
    """A pinned source archive could not be retrieved or verified."""


class ExtractFailure(BuildError):
    pass


class ConfigureFailure(BuildError):
    """A configure step failed or could not discover an upstream library."""


class CompileFailure(BuildError):
    pass


class InstallFailure(BuildError):
    """Installation failed or violated the static-only postconditions."""


class UnsupportedArchitecture(BuildError):
    pass


class MissingDigestArtifact(BuildError):
    pass


class ManifestPublishFailure(BuildError):
    pass
