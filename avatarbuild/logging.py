# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

import contextlib
import threading

# Dependency nodes may build concurrently, each with its own prefix and log.
_STATE = threading.local()


def set_logger(prefix, fh):
    _STATE.prefix = prefix
    _STATE.fh = fh


def get_logger():
    return getattr(_STATE, "prefix", None), getattr(_STATE, "fh", None)


@contextlib.contextmanager
def logger_to_path(prefix, path):
    """Log to ``path`` for the duration of the context, restoring afterwards."""
    previous = get_logger()
    path.parent.mkdir(parents=True, exist_ok=True)

    with path.open("wb") as fh:
        set_logger(prefix, fh)
        try:
            yield fh
        finally:
            set_logger(*previous)


def log(msg):
    prefix, fh = get_logger()

    if isinstance(msg, bytes):
        msg_str = msg.decode("utf-8", "replace")
        msg_bytes = msg
    else:
        msg_str = msg
        msg_bytes = msg.encode("utf-8", "replace")

    print("%s> %s" % (prefix, msg_str))

    if fh:
        fh.write(msg_bytes + b"\n")


def log_raw(data):
    _, fh = get_logger()

    if fh:
        fh.write(data)
