"""Closed registry of the syscalls the trace parser understands."""

from enum import Enum
from typing import Dict, FrozenSet


class Syscall(Enum):
  OPEN = "open"
  OPENAT = "openat"
  CREAT = "creat"
  CLOSE = "close"
  PIPE = "pipe"
  PIPE2 = "pipe2"
  DUP = "dup"
  DUP2 = "dup2"
  DUP3 = "dup3"
  FCNTL = "fcntl"
  SOCKET = "socket"
  CONNECT = "connect"
  ACCEPT = "accept"
  ACCEPT4 = "accept4"
  CLONE = "clone"
  CLONE3 = "clone3"
  FORK = "fork"
  VFORK = "vfork"
  READ = "read"
  PREAD64 = "pread64"
  READV = "readv"
  PREADV = "preadv"
  RECV = "recv"
  RECVFROM = "recvfrom"
  RECVMSG = "recvmsg"
  WRITE = "write"
  PWRITE64 = "pwrite64"
  WRITEV = "writev"
  PWRITEV = "pwritev"
  SEND = "send"
  SENDTO = "sendto"
  SENDMSG = "sendmsg"
  # Anything the tracer reports that is not listed above.
  IGNORED = ""

  @classmethod
  def lookup(cls, name: str) -> "Syscall":
    return _BY_NAME.get(name, cls.IGNORED)


_BY_NAME: Dict[str, Syscall] = {s.value: s for s in Syscall if s is not Syscall.IGNORED}

READ_CALLS: FrozenSet[Syscall] = frozenset({
  Syscall.READ,
  Syscall.PREAD64,
  Syscall.READV,
  Syscall.PREADV,
  Syscall.RECV,
  Syscall.RECVFROM,
  Syscall.RECVMSG,
})

WRITE_CALLS: FrozenSet[Syscall] = frozenset({
  Syscall.WRITE,
  Syscall.PWRITE64,
  Syscall.WRITEV,
  Syscall.PWRITEV,
  Syscall.SEND,
  Syscall.SENDTO,
  Syscall.SENDMSG,
})

# Calls whose peer is carried in their own msghdr rather than the descriptor table.
MESSAGE_CALLS: FrozenSet[Syscall] = frozenset({Syscall.RECVMSG, Syscall.SENDMSG})


def trace_set() -> str:
  """Comma-joined syscall names for strace's ``-e trace=`` filter."""
  return ",".join(sorted(_BY_NAME))

# Calls that create a process; the new pid is their return value.
CLONE_CALLS: FrozenSet[Syscall] = frozenset({Syscall.CLONE, Syscall.CLONE3, Syscall.FORK, Syscall.VFORK})
