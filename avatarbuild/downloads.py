# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.

# Entries may carry "size" and "sha256" keys. When present, downloads are
# verified against them. See utils.download_to_path().
DOWNLOADS = {
    "zlib": {
        "url": "https://zlib.net/fossils/zlib-1.3.1.tar.gz",
        "version": "1.3.1",
        "format": "tar.gz",
    },
    "openssl": {
        "url": "https://www.openssl.org/source/openssl-3.0.13.tar.gz",
        "version": "3.0.13",
        "format": "tar.gz",
    },
    "libvpx": {
        "url": "https://github.com/webmproject/libvpx/archive/refs/tags/v1.14.0.tar.gz",
        "version": "1.14.0",
        "format": "tar.gz",
        "local_name": "libvpx-1.14.0.tar.gz",
    },
    "ffmpeg": {
        "url": "https://ffmpeg.org/releases/ffmpeg-6.1.1.tar.xz",
        "version": "6.1.1",
        "format": "tar.xz",
    },
    # rlottie has no releases. Pinned to a commit.
    "rlottie": {
        "url": "https://codeload.github.com/Samsung/rlottie/zip/d400087",
        "version": "d400087",
        "format": "zip",
        "local_name": "rlottie-d400087.zip",
    },
    "opencv": {
        "url": "https://github.com/opencv/opencv/archive/refs/tags/4.9.0.tar.gz",
        "version": "4.9.0",
        "format": "tar.gz",
        "local_name": "opencv-4.9.0.tar.gz",
    },
}
