import argparse
import gzip
import logging
import os
import shutil
import signal
import subprocess
import sys
import tempfile
import threading
import time
from pathlib import Path
from typing import Iterable, List, Optional, TextIO

import yaml

from iotrace.config import AppConfig, TracerConfig, load_config
from iotrace.dispatcher import Dispatcher
from iotrace.fdtable import ProcessRegistry
from iotrace.scanner import Scanner
from iotrace.sink import RowSink
from iotrace.syscalls import trace_set

# -f follow children, -tt microsecond wall clock, -T time spent in the call,
# -xx hex-escape every string byte.
STRACE_FLAGS = ["-f", "-tt", "-T", "-xx"]


def open_stream(path: Path) -> TextIO:
  with path.open("rb") as f:
    head = f.read(2)
  if head == b"\x1f\x8b":
    return gzip.open(path, "rt", encoding="utf-8", errors="replace")
  return path.open("r", encoding="utf-8", errors="replace")


def build_strace_command(cfg: TracerConfig, output: str, pid: Optional[int] = None, command: Optional[List[str]] = None) -> List[str]:
  cmd = [cfg.path, *STRACE_FLAGS, "-o", output, "-e", f"trace={trace_set()}", *cfg.extra_args]
  if pid is not None:
    cmd.extend(["-p", str(pid)])
  else:
    cmd.extend(command or [])
  return cmd


class TracerSession:
  """Run strace against a command or pid and stream its output through a FIFO."""

  def __init__(self, cfg: TracerConfig, pid: Optional[int] = None, command: Optional[List[str]] = None):
    if (pid is None) == (not command):
      raise ValueError("TracerSession needs exactly one of pid or command")
    self.cfg = cfg
    self.pid = pid
    self.command = command
    self.proc: Optional[subprocess.Popen] = None
    self._tmpdir: Optional[str] = None
    self._fifo: Optional[str] = None
    self._stream: Optional[TextIO] = None
    self._opened = threading.Event()

  def __enter__(self) -> "TracerSession":
    self._tmpdir = tempfile.mkdtemp(prefix="iotrace-")
    self._fifo = os.path.join(self._tmpdir, "trace.fifo")
    os.mkfifo(self._fifo, 0o600)
    cmd = build_strace_command(self.cfg, self._fifo, pid=self.pid, command=self.command)
    logging.info("starting tracer: %s", " ".join(cmd))
    try:
      self.proc = subprocess.Popen(cmd)
    except OSError:
      self._cleanup()
      raise
    threading.Thread(target=self._unblock_when_dead, daemon=True).start()
    try:
      # Blocks until a writer opens the other end.
      self._stream = open(self._fifo, "r", encoding="utf-8", errors="replace")
    except BaseException:
      self.send_signal(signal.SIGTERM)
      self.proc.wait()
      self._cleanup()
      raise
    finally:
      self._opened.set()
    return self

  def _unblock_when_dead(self):
    # If strace dies before opening the FIFO the reader would wait forever;
    # open and close the write end so it sees EOF instead.
    self.proc.wait()
    while not self._opened.is_set():
      try:
        fd = os.open(self._fifo, os.O_WRONLY | os.O_NONBLOCK)
      except OSError:
        # ENXIO until the reader is waiting in open().
        time.sleep(0.05)
        continue
      os.close(fd)
      return

  def lines(self) -> Iterable[str]:
    if self._stream is None:
      raise RuntimeError("TracerSession used outside of its context")
    return self._stream

  def send_signal(self, signum: int):
    if self.proc is not None and self.proc.poll() is None:
      self.proc.send_signal(signum)

  @property
  def exit_status(self) -> int:
    if self.proc is None:
      return 1
    rc = self.proc.wait()
    return 128 - rc if rc < 0 else rc

  def _cleanup(self):
    if self._stream is not None:
      self._stream.close()
      self._stream = None
    if self._tmpdir is not None:
      shutil.rmtree(self._tmpdir, ignore_errors=True)
      self._tmpdir = None

  def __exit__(self, exc_type, exc, tb):
    if self.proc is not None:
      if exc_type is not None:
        self.send_signal(signal.SIGTERM)
      self.proc.wait()
    self._cleanup()
    return False


class TracePipeline:
  """Scanner, registry and dispatcher wired together for one trace stream."""

  def __init__(self, sink: RowSink, verbose: bool = False):
    self.registry = ProcessRegistry()
    self.scanner = Scanner(on_exit=self.registry.release)
    self.dispatcher = Dispatcher(self.registry, sink, verbose=verbose, pending_calls=self.scanner.pending_calls)
    self.records = 0

  def run(self, lines: Iterable[str]) -> int:
    for record in self.scanner.scan(lines):
      self.dispatcher.dispatch(record)
      self.records += 1
    logging.info(
      "parsed %d record(s) from %d line(s): %d row(s), %d skipped line(s), %d ignored call(s)",
      self.records,
      self.scanner.line_no,
      self.dispatcher.sink.rows_written,
      self.scanner.skipped,
      self.dispatcher.ignored,
    )
    return self.records


def configure_logging(level: str):
  lvl = getattr(logging, level.upper(), logging.INFO)
  logging.basicConfig(level=lvl, format="%(asctime)s %(levelname)s %(message)s", stream=sys.stderr)


def build_parser() -> argparse.ArgumentParser:
  ap = argparse.ArgumentParser(
    prog="iotrace",
    description="Turn strace output into a CSV table of reads and writes per file, socket and pipe",
  )
  ap.add_argument("-f", "--trace-file", help="Parse an existing strace log (supports .gz)")
  ap.add_argument("-p", "--pid", type=int, help="Attach to a running process")
  ap.add_argument("-o", "--output", help="Write CSV rows here instead of stdout")
  ap.add_argument("--compress", action="store_true", default=None, help="gzip the output file")
  ap.add_argument("-v", "--verbose", action="store_true", default=None, help="Debug logging, echo unhandled syscalls")
  ap.add_argument("--log-level", help="debug|info|warning|error")
  ap.add_argument("--config", help="YAML config file (default: $IOTRACE_CONFIG)")
  ap.add_argument("--strace", help="strace binary to run")
  ap.add_argument("command", nargs=argparse.REMAINDER, help="Command to run under the tracer")
  return ap


def _apply_overrides(cfg: AppConfig, args: argparse.Namespace) -> AppConfig:
  if args.output:
    cfg.output.path = args.output
  if args.compress is not None:
    cfg.output.compress = args.compress
  if args.verbose is not None:
    cfg.verbose = args.verbose
  if args.log_level:
    cfg.log_level = args.log_level
  if args.strace:
    cfg.tracer.path = args.strace
  if cfg.verbose:
    cfg.log_level = "debug"
  return cfg


def main(argv: Optional[List[str]] = None) -> int:
  ap = build_parser()
  args = ap.parse_args(argv)
  command = list(args.command or [])
  if command[:1] == ["--"]:
    command = command[1:]
  modes = sum([args.trace_file is not None, args.pid is not None, bool(command)])
  if modes != 1:
    ap.error("exactly one of -f TRACE_FILE, -p PID or a command is required")
  try:
    cfg = _apply_overrides(load_config(args.config), args)
  except (OSError, ValueError, yaml.YAMLError) as exc:
    ap.error(f"cannot load config: {exc}")
  if cfg.output.compress and not cfg.output.path:
    ap.error("--compress needs -o OUTPUT")
  configure_logging(cfg.log_level)

  if cfg.output.path:
    try:
      sink = RowSink.to_path(cfg.output.path, compress=cfg.output.compress)
    except OSError as exc:
      logging.error("cannot open output file: %s", exc)
      return 1
  else:
    sink = RowSink(sys.stdout)
  pipeline = TracePipeline(sink, verbose=cfg.verbose)
  try:
    if args.trace_file is not None:
      try:
        stream = open_stream(Path(args.trace_file))
      except OSError as exc:
        logging.error("cannot open trace file: %s", exc)
        return 1
      with stream:
        pipeline.run(stream)
      return 0

    try:
      session = TracerSession(cfg.tracer, pid=args.pid, command=command or None)
      with session:
        previous = _install_signal_handlers(session)
        try:
          pipeline.run(session.lines())
        finally:
          for signum, handler in previous.items():
            signal.signal(signum, handler)
    except OSError as exc:
      logging.error("tracer session with %s failed: %s", cfg.tracer.path, exc)
      return 1
    status = session.exit_status
    logging.info("tracer exited with status %d", status)
    return status
  finally:
    sink.close()


def _install_signal_handlers(session: TracerSession):
  # The parser keeps draining until the tracer closes the FIFO; the tracee's
  # exit status is what we report.
  def handle_signal(signum, frame):  # noqa: ANN001
    logging.info("received signal %s, waiting for tracer to finish", signum)
    if signum == signal.SIGTERM:
      session.send_signal(signum)

  previous = {}
  for signum in (signal.SIGINT, signal.SIGTERM):
    previous[signum] = signal.signal(signum, handle_signal)
  return previous


if __name__ == "__main__":
  sys.exit(main())
