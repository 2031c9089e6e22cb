import os
from typing import Any, NamedTuple

from raftcore.storage import StorageError, encode_record, fsync_directory, read_records


class LogNotCaughtUpError(Exception):
    pass


class LogDifferentTermError(Exception):
    pass


LogEntry = NamedTuple("LogEntry", [("index", int), ("term", int), ("command", Any)])


class Log:
    """In-memory log. Indexes are 1-based, index 0 with term 0 stands for the empty prefix."""

    def __init__(self):
        self._log = []

    @classmethod
    def from_entries(cls, entries):
        log = cls()
        log.append(entries)
        return log

    @property
    def last_index(self):
        return len(self._log)

    @property
    def last_term(self):
        try:
            return self._log[-1].term
        except IndexError:
            return 0

    def entry_at(self, index):
        if 1 <= index <= len(self._log):
            return self._log[index - 1]
        return None

    def term_at(self, index):
        if index == 0:
            return 0
        entry = self.entry_at(index)
        return entry.term if entry is not None else None

    def entries_from(self, index, limit=None):
        start = max(index, 1) - 1
        end = None if limit is None else start + limit
        return list(self._log[start:end])

    def append(self, entries):
        entries = list(entries)
        expected_index = self.last_index + 1
        prev_term = self.last_term
        for entry in entries:
            if not isinstance(entry, LogEntry):
                raise ValueError(f"expected a LogEntry instance, got {type(entry)} instead")
            if entry.index != expected_index:
                raise ValueError(f"expected entry with index {expected_index}, got {entry.index}")
            if entry.term < prev_term:
                raise ValueError(f"entry term {entry.term} is lower than preceding term {prev_term}")
            expected_index += 1
            prev_term = entry.term
        self._write(entries)
        self._log.extend(entries)

    def truncate_from(self, index):
        """Deletes the entry at index and every entry after it"""
        if index < 1:
            raise ValueError(f"cannot truncate from index {index}")
        if index > self.last_index:
            return
        self._rewrite(self._log[:index - 1])
        del self._log[index - 1:]

    def append_entries(self, prev_log_index, prev_log_term, entries):
        """Log matching check plus conflict resolution for an incoming AppendEntries.

        Returns the index of the last entry covered by the request.
        """
        if prev_log_index > self.last_index:
            raise LogNotCaughtUpError(
                f"tried to append after index {prev_log_index} but log was only length {self.last_index}"
            )
        if self.term_at(prev_log_index) != prev_log_term:
            raise LogDifferentTermError(
                f"Tried to append to log where previous entries term was {self.term_at(prev_log_index)} "
                f"but prev_log_term was {prev_log_term}"
            )

        # Only truncate on an actual conflict. A delayed AppendEntries whose entries we already hold must not
        # take back entries that follow them, we may already have acknowledged those to the leader.
        new_entries = []
        for offset, entry in enumerate(entries):
            existing = self.entry_at(prev_log_index + 1 + offset)
            if existing is None:
                new_entries = entries[offset:]
                break
            if existing.term != entry.term:
                self.truncate_from(existing.index)
                new_entries = entries[offset:]
                break

        if new_entries:
            self.append(new_entries)
        return prev_log_index + len(entries)

    def is_up_to_date(self, last_log_index, last_log_term):
        """Whether a log ending at (last_log_index, last_log_term) is at least as up-to-date as this one"""
        if last_log_term != self.last_term:
            return last_log_term > self.last_term
        return last_log_index >= self.last_index

    def _write(self, entries):
        pass

    def _rewrite(self, entries):
        pass

    def __len__(self):
        return len(self._log)

    def __iter__(self):
        return iter(self._log)

    def __eq__(self, other):
        if not isinstance(other, Log):
            return NotImplemented
        return self._log == other._log

    def __repr__(self):
        return f"{type(self).__name__}({[(entry.index, entry.term) for entry in self._log]})"


class PersistentLog(Log):
    """Write-ahead log: append and truncate_from only return once the change is on disk"""

    def __init__(self, path):
        super().__init__()
        self.path = path
        self._load()

    def _load(self):
        try:
            with open(self.path, "rb") as log_file:
                data = log_file.read()
        except FileNotFoundError:
            data = b""
        except OSError as e:
            raise StorageError(f"could not read log {self.path}: {e}") from e

        records, valid_length = read_records(data)
        if valid_length != len(data):
            try:
                with open(self.path, "r+b") as log_file:
                    log_file.truncate(valid_length)
                    os.fsync(log_file.fileno())
            except OSError as e:
                raise StorageError(f"could not repair log {self.path}: {e}") from e
        self._log = [LogEntry(*record) for record in records]

    def _write(self, entries):
        if not entries:
            return
        try:
            with open(self.path, "ab") as log_file:
                for entry in entries:
                    log_file.write(encode_record(tuple(entry)))
                log_file.flush()
                os.fsync(log_file.fileno())
        except OSError as e:
            raise StorageError(f"could not append to log {self.path}: {e}") from e

    def _rewrite(self, entries):
        tmp_path = f"{self.path}.tmp"
        try:
            with open(tmp_path, "wb") as log_file:
                for entry in entries:
                    log_file.write(encode_record(tuple(entry)))
                log_file.flush()
                os.fsync(log_file.fileno())
            os.replace(tmp_path, self.path)
            fsync_directory(self.path)
        except OSError as e:
            raise StorageError(f"could not truncate log {self.path}: {e}") from e
