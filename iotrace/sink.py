import csv
import gzip
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, TextIO

log = logging.getLogger(__name__)

HEADER = ("time", "dt", "pid", "fd", "dir", "bytes", "file", "port")

READ = "R"
WRITE = "W"


@dataclass(frozen=True)
class OutputRow:
  time: str
  dt: str
  pid: int
  fd: int
  direction: str
  nbytes: int
  file: str
  port: Optional[int] = None

  def as_fields(self) -> List[str]:
    # Ordered to match HEADER.
    return [
      self.time,
      self.dt,
      str(self.pid),
      str(self.fd),
      self.direction,
      str(self.nbytes),
      self.file,
      "" if self.port is None else str(self.port),
    ]


class RowSink:
  """CSV writer that flushes after every row so nothing is lost on a kill."""

  def __init__(self, stream: TextIO, owns_stream: bool = False):
    self._fh: Optional[TextIO] = stream
    self._owns_stream = owns_stream
    self._writer = csv.writer(stream, lineterminator="\n")
    self.rows_written = 0
    self._writer.writerow(HEADER)
    self._fh.flush()

  @classmethod
  def to_path(cls, path: str, compress: bool = False) -> "RowSink":
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    if compress:
      fh = gzip.open(target, "wt", encoding="utf-8", newline="")
    else:
      fh = open(target, "w", encoding="utf-8", newline="")
    log.info("writing rows to %s%s", target, " (gzip)" if compress else "")
    return cls(fh, owns_stream=True)

  def emit(self, row: OutputRow):
    if self._fh is None:
      raise ValueError("emit on closed RowSink")
    self._writer.writerow(row.as_fields())
    self._fh.flush()
    self.rows_written += 1

  def close(self):
    if self._fh is None:
      return
    if self._owns_stream:
      self._fh.close()
    else:
      self._fh.flush()
    self._fh = None
