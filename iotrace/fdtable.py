"""Per-process descriptor tables and the registry that owns them."""

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, Optional, Tuple

log = logging.getLogger(__name__)


class HandleKind(Enum):
  FILE = "file"
  SOCKET = "socket"
  PIPE = "pipe"
  STDIO = "stdio"
  UNKNOWN = "unknown"


@dataclass(frozen=True)
class FileHandle:
  kind: HandleKind
  name: str
  port: Optional[int] = None

  @classmethod
  def file(cls, name: str) -> "FileHandle":
    return cls(HandleKind.FILE, name)

  @classmethod
  def socket(cls, name: str, port: Optional[int] = None) -> "FileHandle":
    return cls(HandleKind.SOCKET, name, port)

  @classmethod
  def pipe(cls, name: str) -> "FileHandle":
    return cls(HandleKind.PIPE, name)


STDIO_HANDLES: Dict[int, FileHandle] = {
  0: FileHandle(HandleKind.STDIO, "stdin"),
  1: FileHandle(HandleKind.STDIO, "stdout"),
  2: FileHandle(HandleKind.STDIO, "stderr"),
}


def fallback_handle(fd: int) -> FileHandle:
  """Identity for a descriptor the trace never showed being created."""
  handle = STDIO_HANDLES.get(fd)
  if handle is not None:
    return handle
  return FileHandle(HandleKind.UNKNOWN, f"unknown:{fd}")


class DescriptorTable:
  """Mapping of descriptor number to the handle installed in that slot.

  ``holders`` counts the process ids currently referencing this table; it is
  greater than one only for tables shared through ``CLONE_FILES``.
  """

  def __init__(self, slots: Optional[Dict[int, FileHandle]] = None):
    self._slots: Dict[int, FileHandle] = dict(slots or {})
    self.holders = 0

  def __contains__(self, fd: int) -> bool:
    return fd in self._slots

  def __len__(self) -> int:
    return len(self._slots)

  def items(self) -> Iterator[Tuple[int, FileHandle]]:
    return iter(sorted(self._slots.items()))

  def get(self, fd: int) -> Optional[FileHandle]:
    return self._slots.get(fd)

  def resolve(self, fd: int) -> FileHandle:
    handle = self._slots.get(fd)
    if handle is None:
      return fallback_handle(fd)
    return handle

  def install(self, fd: int, handle: FileHandle):
    self._slots[fd] = handle

  def close(self, fd: int) -> Optional[FileHandle]:
    return self._slots.pop(fd, None)

  def snapshot(self) -> "DescriptorTable":
    return DescriptorTable(copy.deepcopy(self._slots))

  def overlay(self, other: "DescriptorTable"):
    for fd, handle in other.items():
      self._slots[fd] = handle


@dataclass
class RegistryEntry:
  table: DescriptorTable
  # True when the table is borrowed from the cloning parent rather than owned.
  shared: bool = False
  parent: Optional[int] = None


class ProcessRegistry:
  def __init__(self):
    self._entries: Dict[int, RegistryEntry] = {}

  def __contains__(self, pid: int) -> bool:
    return pid in self._entries

  def __len__(self) -> int:
    return len(self._entries)

  def entry(self, pid: int) -> Optional[RegistryEntry]:
    return self._entries.get(pid)

  def table(self, pid: int) -> DescriptorTable:
    """Return the pid's table, creating an empty owned one on first sight."""
    entry = self._entries.get(pid)
    if entry is None:
      table = DescriptorTable()
      table.holders = 1
      entry = RegistryEntry(table=table)
      self._entries[pid] = entry
    return entry.table

  def clone(self, parent: int, child: int, share: bool) -> DescriptorTable:
    """Give ``child`` the parent's table (``share``) or a snapshot of it.

    A child already adopted from this parent keeps its entry untouched.
    """
    early = self._entries.get(child)
    if early is not None and early.parent == parent:
      return early.table
    parent_table = self.table(parent)
    table = parent_table if share else parent_table.snapshot()
    if early is not None and early.table is not parent_table:
      # The child had records before any clone of it was seen pending;
      # what it opened in the meantime stays in place.
      log.debug("pid %d had %d descriptor(s) before its clone record", child, len(early.table))
      table.overlay(early.table)
      self.release(child)
    elif early is not None:
      self.release(child)
    table.holders += 1
    self._entries[child] = RegistryEntry(table=table, shared=share, parent=parent)
    return table

  def release(self, pid: int):
    """Drop a process id's reference to its table, e.g. when it exits."""
    entry = self._entries.pop(pid, None)
    if entry is not None:
      entry.table.holders -= 1
