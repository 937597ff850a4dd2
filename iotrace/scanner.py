"""Turn raw ``strace -f -tt -T -xx`` output lines into completed call records.

With ``-f`` every line starts with the pid and timestamp. A call that blocks
while another process prints is split in two::

  100 10:00:00.000000 read(3,  <unfinished ...>
  101 10:00:00.000004 close(4) = 0 <0.000002>
  100 10:00:00.000020 <... read resumed>"\\x61", 10) = 1 <0.000019>

The scanner buffers the first half per pid and reparses the joined text as a
single completed line.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Tuple

from iotrace.tokenizer import TokenizeError, find_closing, split_fields

log = logging.getLogger(__name__)

UNFINISHED_MARKER = " <unfinished ...>"

_PREFIX = re.compile(r"^(?:\[pid\s+)?(?P<pid>\d+)\]?\s+(?P<ts>\d[\d:.]*)\s+(?P<body>.*)$")
_NAME = re.compile(r"^(?P<name>[A-Za-z_][A-Za-z0-9_]*)\(")
_RESUMED = re.compile(r"^<\.\.\. (?P<name>[A-Za-z_][A-Za-z0-9_]*) resumed>(?P<tail>.*)$")
_RESULT = re.compile(
  r"^\s*=\s*(?P<rc>-?(?:0x[0-9a-fA-F]+|\d+))"
  r"(?:\s+(?P<errno>E[A-Z0-9_]+))?"
  r"(?:\s+\((?P<detail>.*)\))?"
  r"(?:\s+<(?P<elapsed>\d+(?:\.\d+)?)>)?\s*$"
)
_UNRESOLVED = re.compile(r"\)\s*=\s*\?(?:\s|$)")


class TraceParseError(ValueError):
  pass


@dataclass(frozen=True)
class TraceRecord:
  pid: int
  wall_time: str
  name: str
  raw_args: str
  retval: int
  errno: Optional[str] = None
  elapsed: str = ""

  @property
  def failed(self) -> bool:
    return self.retval < 0

  @property
  def fields(self) -> List[str]:
    return split_fields(self.raw_args)


@dataclass
class PendingCall:
  pid: int
  name: str
  prefix: str


def _split_prefix(line: str) -> Tuple[int, str, str]:
  m = _PREFIX.match(line)
  if m is None:
    raise TraceParseError("missing pid/timestamp prefix")
  return int(m.group("pid")), m.group("ts"), m.group("body")


def _parse_retval(text: str) -> int:
  negative = text.startswith("-")
  digits = text[1:] if negative else text
  value = int(digits, 16) if digits.lower().startswith("0x") else int(digits)
  return -value if negative else value


def parse_completed(line: str) -> TraceRecord:
  """Parse one unsplit ``pid time name(args) = rc [ERRNO (text)] <elapsed>`` line."""
  pid, stamp, body = _split_prefix(line)
  m = _NAME.match(body)
  if m is None:
    raise TraceParseError("no syscall name")
  opening = m.end() - 1
  try:
    closing = find_closing(body, opening)
  except TokenizeError as exc:
    raise TraceParseError(f"bad argument list: {exc}") from exc
  result = _RESULT.match(body[closing + 1:])
  if result is None:
    raise TraceParseError("unrecognized return value")
  return TraceRecord(
    pid=pid,
    wall_time=stamp,
    name=m.group("name"),
    raw_args=body[opening + 1:closing],
    retval=_parse_retval(result.group("rc")),
    errno=result.group("errno"),
    elapsed=result.group("elapsed") or "",
  )


class Scanner:
  """Line-at-a-time state machine with at most one pending call per pid."""

  def __init__(self, on_exit: Optional[Callable[[int], None]] = None):
    self.on_exit = on_exit
    self.line_no = 0
    self.skipped = 0
    self._pending: Dict[int, PendingCall] = {}

  def pending(self, pid: int) -> Optional[PendingCall]:
    return self._pending.get(pid)

  def pending_calls(self) -> List[PendingCall]:
    """Calls still waiting for their resumed half, oldest suspension first."""
    return list(self._pending.values())

  def scan(self, lines: Iterable[str]) -> Iterator[TraceRecord]:
    for line in lines:
      record = self.feed(line)
      if record is not None:
        yield record

  def feed(self, line: str) -> Optional[TraceRecord]:
    """Consume one line; return a record once a call is complete."""
    self.line_no += 1
    try:
      return self._feed(line.rstrip("\r\n"))
    except TraceParseError as exc:
      self.skipped += 1
      log.warning("line %d skipped (%s): %s", self.line_no, exc, line.rstrip("\r\n"))
      return None

  def _feed(self, line: str) -> Optional[TraceRecord]:
    if not line.strip():
      return None
    pid, _, body = _split_prefix(line)
    if body.startswith("+++"):
      # +++ exited with 0 +++ / +++ killed by SIGKILL +++
      self._pending.pop(pid, None)
      if self.on_exit is not None:
        self.on_exit(pid)
      return None
    if body.startswith("---"):
      return None
    if body.startswith("<... "):
      return self._resume(pid, line, body)
    if line.endswith(UNFINISHED_MARKER):
      self._suspend(pid, line, body)
      return None
    if _UNRESOLVED.search(body):
      return None
    return parse_completed(line)

  def _suspend(self, pid: int, line: str, body: str):
    m = _NAME.match(body)
    if m is None:
      raise TraceParseError("unfinished line without syscall name")
    previous = self._pending.pop(pid, None)
    if previous is not None:
      log.warning("pid %d: unfinished %s replaces pending %s", pid, m.group("name"), previous.name)
    self._pending[pid] = PendingCall(pid=pid, name=m.group("name"), prefix=line[:-len(UNFINISHED_MARKER)])

  def _resume(self, pid: int, line: str, body: str) -> Optional[TraceRecord]:
    m = _RESUMED.match(body)
    if m is None:
      raise TraceParseError("malformed resumed marker")
    pending = self._pending.pop(pid, None)
    if pending is None:
      raise TraceParseError(f"{m.group('name')} resumed without a pending call")
    if pending.name != m.group("name"):
      raise TraceParseError(f"{m.group('name')} resumed while {pending.name} is pending")
    joined = pending.prefix + m.group("tail")
    if joined.endswith(UNFINISHED_MARKER):
      # Interrupted again before completing.
      self._pending[pid] = PendingCall(pid=pid, name=pending.name, prefix=joined[:-len(UNFINISHED_MARKER)])
      return None
    if _UNRESOLVED.search(joined):
      return None
    return parse_completed(joined)
