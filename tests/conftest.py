"""Shared pytest fixtures."""
import io
import tempfile
from pathlib import Path

import pytest

from iotrace.runner import TracePipeline
from iotrace.sink import RowSink


@pytest.fixture
def temp_dir():
  """Create a temporary directory for test files."""
  with tempfile.TemporaryDirectory() as tmpdir:
    yield Path(tmpdir)


class PipelineHarness:
  """TracePipeline writing to an in-memory CSV."""

  def __init__(self, verbose: bool = False):
    self.out = io.StringIO()
    self.sink = RowSink(self.out)
    self.pipeline = TracePipeline(self.sink, verbose=verbose)

  def run(self, text: str):
    self.pipeline.run(text.strip("\n").splitlines())
    return self.rows()

  def rows(self):
    # Header excluded.
    return self.out.getvalue().splitlines()[1:]

  def table(self, pid: int):
    return self.pipeline.registry.table(pid)


@pytest.fixture
def harness():
  return PipelineHarness()


@pytest.fixture
def sample_trace(temp_dir):
  """Create a small multi-process strace log."""
  trace_file = temp_dir / "trace.log"
  trace_file.write_text("""100 10:00:00.000000 open("\\x2f\\x74\\x6d\\x70\\x2f\\x61", O_RDONLY) = 3 <0.000010>
100 10:00:00.000020 read(3, "\\x68\\x69", 10) = 2 <0.000005>
100 10:00:00.000030 clone(child_stack=NULL, flags=CLONE_CHILD_CLEARTID|CLONE_CHILD_SETTID|SIGCHLD, child_tidptr=0x7f) = 101 <0.000050>
101 10:00:00.000040 write(1, "\\x6f\\x6b\\x0a", 3 <unfinished ...>
100 10:00:00.000045 close(3) = 0 <0.000002>
101 10:00:00.000060 <... write resumed>) = 3 <0.000020>
101 10:00:00.000070 read(3, "", 10) = 0 <0.000003>
101 10:00:00.000080 +++ exited with 0 +++
100 10:00:00.000090 --- SIGCHLD {si_signo=SIGCHLD, si_code=CLD_EXITED, si_pid=101} ---
100 10:00:00.000100 exit_group(0) = ?
100 10:00:00.000110 +++ exited with 0 +++
""")
  return trace_file


@pytest.fixture
def sample_config_yaml(temp_dir):
  """Create a sample iotrace config file."""
  config_file = temp_dir / "config.yaml"
  config_file.write_text("""logLevel: debug
verbose: true
strace:
  path: /usr/local/bin/strace
  extraArgs: ["-s", "64"]
output:
  path: /var/log/iotrace/rows.csv.gz
  compress: true
""")
  return config_file
