import logging
import os
import pickle
from typing import NamedTuple

logger = logging.getLogger(__name__)

RECORD_HEADER_LENGTH = 8
RECORD_HEADER_BYTEORDER = "big"


class StorageError(Exception):
    """Durable state could not be written or read back. The node must stop participating."""


HardState = NamedTuple("HardState", [("term", int), ("voted_for", object)])


def fsync_directory(path):
    directory = os.path.dirname(os.path.abspath(path))
    fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def atomic_dump(path, obj):
    """Pickles obj to path so that a crash leaves either the old or the new contents"""
    tmp_path = f"{path}.tmp"
    try:
        with open(tmp_path, "wb") as tmp_file:
            pickle.dump(obj, tmp_file)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        os.replace(tmp_path, path)
        fsync_directory(path)
    except OSError as e:
        raise StorageError(f"could not persist {path}: {e}") from e


def load(path, default=None):
    try:
        with open(path, "rb") as persisted_file:
            return pickle.load(persisted_file)
    except FileNotFoundError:
        return default
    except (OSError, pickle.UnpicklingError, EOFError) as e:
        raise StorageError(f"could not load {path}: {e}") from e


def encode_record(obj):
    payload = pickle.dumps(obj)
    header = len(payload).to_bytes(RECORD_HEADER_LENGTH, byteorder=RECORD_HEADER_BYTEORDER)
    return header + payload


def read_records(data):
    """Decodes length prefixed records, returning them with the number of bytes they span.

    A trailing record that was only partially written is left out, so the caller can cut the file back to
    the returned length.
    """
    records = []
    offset = 0
    while offset + RECORD_HEADER_LENGTH <= len(data):
        size = int.from_bytes(data[offset:offset + RECORD_HEADER_LENGTH], byteorder=RECORD_HEADER_BYTEORDER)
        end = offset + RECORD_HEADER_LENGTH + size
        if end > len(data):
            break
        try:
            records.append(pickle.loads(data[offset + RECORD_HEADER_LENGTH:end]))
        except (pickle.UnpicklingError, EOFError):
            break
        offset = end

    if offset != len(data):
        logger.warning(f"discarding {len(data) - offset} bytes of torn log tail")
    return records, offset


class MemoryHardStateStore:
    def __init__(self, term=0, voted_for=None):
        self._state = HardState(term, voted_for)

    def load(self):
        return self._state

    def save(self, term, voted_for):
        self._state = HardState(term, voted_for)


class HardStateStore:
    """Current term and vote, the only non-log state that has to survive a restart"""

    def __init__(self, path):
        self.path = path

    def load(self):
        state = load(self.path)
        if state is None:
            return HardState(0, None)
        return HardState(*state)

    def save(self, term, voted_for):
        atomic_dump(self.path, tuple(HardState(term, voted_for)))
