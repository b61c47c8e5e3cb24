import hashlib
import os
from typing import IO, Any

from bacass.utils import json_dumps


class Hash:
    """
    A convenience class for creating hashes.
    """

    def __init__(self, length=40):
        self.message = hashlib.sha512()
        self.length = length

    def update(self, data):
        self.message.update(data)

    def hexdigest(self) -> str:
        return self.message.hexdigest()[: self.length]


def hash_struct(struct: Any) -> str:
    """
    Hash a JSON-like structure using its canonical serialization.
    """
    m = Hash()
    m.update(json_dumps(struct).encode("utf-8"))
    return m.hexdigest()


def hash_stream(stream: IO, block_size: int = 1024) -> str:
    """
    Hash a stream of bytes.
    """
    m = Hash()
    while True:
        block = stream.read(block_size)
        if not block:
            # Zero bytes indicates the end of the stream.
            break
        m.update(block)
    return m.hexdigest()


def hash_path(path: str) -> str:
    """
    Hash a file, or a directory by the names and contents of its files.

    Directory entries are visited in sorted order so the hash does not depend
    on filesystem listing order.
    """
    if os.path.isfile(path):
        with open(path, "rb") as infile:
            return hash_stream(infile)

    entries = []
    for dirpath, dirnames, filenames in os.walk(path):
        dirnames.sort()
        for filename in sorted(filenames):
            file_path = os.path.join(dirpath, filename)
            with open(file_path, "rb") as infile:
                entries.append([os.path.relpath(file_path, path), hash_stream(infile)])
    return hash_struct(["Dir", entries])
