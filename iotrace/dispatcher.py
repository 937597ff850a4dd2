"""Apply each completed call to the descriptor tables and emit I/O rows."""

import logging
from typing import Callable, Dict, List, Optional

from iotrace.fdtable import FileHandle, ProcessRegistry
from iotrace.scanner import PendingCall, TraceRecord
from iotrace.sink import READ, WRITE, OutputRow, RowSink
from iotrace.sockaddr import NULL, fallback_peer, message_peer, resolve_sockaddr
from iotrace.syscalls import CLONE_CALLS, MESSAGE_CALLS, READ_CALLS, WRITE_CALLS, Syscall
from iotrace.tokenizer import TokenizeError, decode_path, parse_list

log = logging.getLogger(__name__)

Handler = Callable[[TraceRecord, List[str]], None]

_DUP_COMMANDS = {"F_DUPFD", "F_DUPFD_CLOEXEC"}

_SOCKET_TRANSPORTS = {
  "SOCK_STREAM": "socket:stream",
  "SOCK_DGRAM": "socket:dgram",
}


def _fd(text: str) -> int:
  return int(text.strip())


def _arg(args: List[str], index: int, record: TraceRecord) -> str:
  if index >= len(args):
    raise TokenizeError(f"{record.name} has {len(args)} argument(s), wanted #{index + 1}")
  return args[index]


class Dispatcher:
  """Runs one handler per record, strictly in the order records arrive."""

  def __init__(
    self,
    registry: ProcessRegistry,
    sink: RowSink,
    verbose: bool = False,
    pending_calls: Optional[Callable[[], List[PendingCall]]] = None,
  ):
    self.registry = registry
    self.pending_calls = pending_calls
    self.sink = sink
    self.verbose = verbose
    self.ignored = 0
    self._handlers: Dict[Syscall, Handler] = {
      Syscall.OPEN: self._on_open,
      Syscall.CREAT: self._on_open,
      Syscall.OPENAT: self._on_openat,
      Syscall.CLOSE: self._on_close,
      Syscall.PIPE: self._on_pipe,
      Syscall.PIPE2: self._on_pipe,
      Syscall.DUP: self._on_dup,
      Syscall.DUP2: self._on_dup2,
      Syscall.DUP3: self._on_dup2,
      Syscall.FCNTL: self._on_fcntl,
      Syscall.SOCKET: self._on_socket,
      Syscall.CONNECT: self._on_connect,
      Syscall.ACCEPT: self._on_accept,
      Syscall.ACCEPT4: self._on_accept,
      Syscall.CLONE: self._on_clone,
      Syscall.CLONE3: self._on_clone,
      Syscall.FORK: self._on_fork,
      Syscall.VFORK: self._on_fork,
      Syscall.IGNORED: self._on_ignored,
    }
    for call in READ_CALLS | WRITE_CALLS:
      self._handlers[call] = self._on_message if call in MESSAGE_CALLS else self._on_transfer
    missing = [call.name for call in Syscall if call not in self._handlers]
    if missing:
      raise RuntimeError(f"no handler for syscall(s): {', '.join(missing)}")

  def dispatch(self, record: TraceRecord):
    if record.pid not in self.registry:
      self._adopt(record.pid)
    call = Syscall.lookup(record.name)
    try:
      args = [] if call is Syscall.IGNORED else record.fields
      self._handlers[call](record, args)
    except ValueError as exc:
      log.warning("pid %d: cannot apply %s(%s): %s", record.pid, record.name, record.raw_args, exc)

  # Descriptor-creating calls

  def _on_open(self, record: TraceRecord, args: List[str]):
    if record.failed:
      return
    path = decode_path(_arg(args, 0, record))
    self.registry.table(record.pid).install(record.retval, FileHandle.file(path))

  def _on_openat(self, record: TraceRecord, args: List[str]):
    # Relative paths are kept as printed; the dirfd is not consulted.
    if record.failed:
      return
    path = decode_path(_arg(args, 1, record))
    self.registry.table(record.pid).install(record.retval, FileHandle.file(path))

  def _on_pipe(self, record: TraceRecord, args: List[str]):
    if record.failed:
      return
    ends = parse_list(_arg(args, 0, record))
    if len(ends) != 2:
      raise TokenizeError(f"pipe returned {len(ends)} descriptors")
    read_fd, write_fd = _fd(ends[0]), _fd(ends[1])
    table = self.registry.table(record.pid)
    table.install(read_fd, FileHandle.pipe(f"pipe:r<-{write_fd}"))
    table.install(write_fd, FileHandle.pipe(f"pipe:w->{read_fd}"))

  def _on_dup(self, record: TraceRecord, args: List[str]):
    if record.failed:
      return
    table = self.registry.table(record.pid)
    table.install(record.retval, table.resolve(_fd(_arg(args, 0, record))))

  def _on_dup2(self, record: TraceRecord, args: List[str]):
    if record.failed:
      return
    table = self.registry.table(record.pid)
    source = table.resolve(_fd(_arg(args, 0, record)))
    table.install(_fd(_arg(args, 1, record)), source)

  def _on_fcntl(self, record: TraceRecord, args: List[str]):
    if record.failed or _arg(args, 1, record) not in _DUP_COMMANDS:
      return
    table = self.registry.table(record.pid)
    table.install(record.retval, table.resolve(_fd(args[0])))

  def _on_socket(self, record: TraceRecord, args: List[str]):
    if record.failed:
      return
    # SOCK_STREAM|SOCK_CLOEXEC
    flags = _arg(args, 1, record).split("|")
    name = next((_SOCKET_TRANSPORTS[f] for f in flags if f in _SOCKET_TRANSPORTS), "socket:other")
    self.registry.table(record.pid).install(record.retval, FileHandle.socket(name))

  def _on_connect(self, record: TraceRecord, args: List[str]):
    # A refused or in-progress connect still names the peer.
    fd = _fd(_arg(args, 0, record))
    peer = resolve_sockaddr(_arg(args, 1, record), fd)
    self.registry.table(record.pid).install(fd, peer)

  def _on_accept(self, record: TraceRecord, args: List[str]):
    if record.failed:
      return
    addr = args[1] if len(args) > 1 else NULL
    if addr == NULL:
      peer = fallback_peer(record.retval, "unknown")
    else:
      peer = resolve_sockaddr(addr, record.retval)
    self.registry.table(record.pid).install(record.retval, peer)

  def _on_close(self, record: TraceRecord, args: List[str]):
    # Linux releases the slot even when close() reports an error.
    self.registry.table(record.pid).close(_fd(_arg(args, 0, record)))

  # Process creation

  def _adopt(self, pid: int):
    """Attach a newly seen pid to a clone that is still unfinished.

    Under -f the child usually runs before its parent's clone returns, so its
    first records arrive while the call is pending. The most recently
    suspended clone of another pid is taken as its parent.
    """
    if self.pending_calls is None:
      return
    for call in reversed(self.pending_calls()):
      if call.pid == pid or Syscall.lookup(call.name) not in CLONE_CALLS:
        continue
      share = "CLONE_FILES" in call.prefix
      self.registry.clone(call.pid, pid, share=share)
      log.debug("pid %d adopted by pending %s of %d (%s table)", pid, call.name, call.pid, "shared" if share else "copied")
      return

  def _on_clone(self, record: TraceRecord, args: List[str]):
    if record.failed:
      return
    share = "CLONE_FILES" in record.raw_args
    self.registry.clone(record.pid, record.retval, share=share)
    log.debug("pid %d cloned %d (%s table)", record.pid, record.retval, "shared" if share else "copied")

  def _on_fork(self, record: TraceRecord, args: List[str]):
    if record.failed:
      return
    self.registry.clone(record.pid, record.retval, share=False)

  # I/O

  def _emit(self, record: TraceRecord, fd: int, handle: FileHandle):
    call = Syscall.lookup(record.name)
    self.sink.emit(
      OutputRow(
        time=record.wall_time,
        dt=record.elapsed,
        pid=record.pid,
        fd=fd,
        direction=READ if call in READ_CALLS else WRITE,
        nbytes=record.retval,
        file=handle.name,
        port=handle.port,
      )
    )

  def _on_transfer(self, record: TraceRecord, args: List[str]):
    fd = _fd(_arg(args, 0, record))
    self._emit(record, fd, self.registry.table(record.pid).resolve(fd))

  def _on_message(self, record: TraceRecord, args: List[str]):
    # A connectionless socket may talk to a different peer on every call.
    fd = _fd(_arg(args, 0, record))
    peer = message_peer(args[1], fd) if len(args) > 1 else None
    if peer is None:
      peer = self.registry.table(record.pid).resolve(fd)
    self._emit(record, fd, peer)

  def _on_ignored(self, record: TraceRecord, args: List[str]):
    self.ignored += 1
    if self.verbose:
      log.debug("unhandled: %d %s %s(%s) = %d", record.pid, record.wall_time, record.name, record.raw_args, record.retval)
