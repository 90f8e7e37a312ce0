"""
Upload-target arithmetic.

The server hands out a locator such as::

    https://{hostname}/Panopto/Upload/{guid}

The storage service itself lives at ``https://{hostname}/Panopto/`` and
every file of the job is stored under the key ``{guid}/{file name}`` in
the ``Upload`` bucket.
"""

import ntpath
import posixpath

from .errors import MalformedTargetError

ROOT_SEGMENT = "Panopto"
BUCKET_NAME = "Upload"


def service_endpoint(target: str, root: str = ROOT_SEGMENT) -> str:
    """Return the storage service URL: everything up to and including ``/{root}/``."""
    fragment = f"/{root}/"
    i = target.find(fragment)
    if i < 0:
        raise MalformedTargetError(target, fragment)
    return target[: i + len(fragment)]


def key_prefix(target: str, root: str = ROOT_SEGMENT, bucket: str = BUCKET_NAME) -> str:
    """Return the per-job key prefix: everything after ``/{root}/{bucket}/``."""
    fragment = f"/{root}/{bucket}/"
    i = target.find(fragment)
    if i < 0:
        raise MalformedTargetError(target, fragment)
    return target[i + len(fragment):].strip("/")


def object_key(
    target: str, file_name: str, root: str = ROOT_SEGMENT, bucket: str = BUCKET_NAME
) -> str:
    """Return ``{prefix}/{base name}`` for a local file, whatever its directory."""
    # ntpath splits on both separators, so Windows-style names work on any OS
    base_name = ntpath.basename(str(file_name))
    return posixpath.join(key_prefix(target, root, bucket), base_name).replace("\\", "/")
