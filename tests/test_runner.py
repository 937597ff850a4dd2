"""Tests for iotrace/runner.py."""
import gzip
import os
import stat
import sys
import textwrap

import pytest

import iotrace.config
from iotrace.config import TracerConfig
from iotrace.runner import STRACE_FLAGS, TracerSession, build_strace_command, main, open_stream
from iotrace.syscalls import trace_set

EXPECTED_ROWS = [
  "time,dt,pid,fd,dir,bytes,file,port",
  "10:00:00.000020,0.000005,100,3,R,2,/tmp/a,",
  "10:00:00.000040,0.000020,101,1,W,3,stdout,",
  "10:00:00.000070,0.000003,101,3,R,0,/tmp/a,",
]


@pytest.fixture(autouse=True)
def no_system_config(temp_dir, monkeypatch):
  monkeypatch.delenv("IOTRACE_CONFIG", raising=False)
  monkeypatch.setattr(iotrace.config, "DEFAULT_CONFIG_PATH", str(temp_dir / "absent.yaml"))


@pytest.fixture
def fake_tracer(temp_dir):
  """Executable that writes a canned trace to its -o target.

  The last argument selects how it ends: an exit code, "signal" to die by
  SIGTERM, or "early" to exit before opening the output.
  """
  script = temp_dir / "fake-strace"
  script.write_text(f"#!{sys.executable}\n" + textwrap.dedent("""\
    import os, signal, sys
    args = sys.argv[1:]
    mode = args[-1]
    if mode == "early":
      sys.exit(5)
    with open(args[args.index("-o") + 1], "w") as out:
      out.write('100 10:00:00.000000 open("/tmp/a", O_RDONLY) = 3 <0.000010>\\n')
      out.write('100 10:00:00.000020 read(3, "\\\\x68\\\\x69", 10) = 2 <0.000005>\\n')
    if mode == "signal":
      os.kill(os.getpid(), signal.SIGTERM)
    sys.exit(int(mode))
  """))
  script.chmod(script.stat().st_mode | stat.S_IXUSR)
  return str(script)


class TestOpenStream:
  def test_plain_and_gzip(self, temp_dir):
    plain = temp_dir / "trace.log"
    plain.write_text("100 10:00:00.000000 close(3) = 0\n")
    packed = temp_dir / "trace.log.gz"
    with gzip.open(packed, "wt") as f:
      f.write("100 10:00:00.000000 close(3) = 0\n")
    for path in (plain, packed):
      with open_stream(path) as f:
        assert f.read() == "100 10:00:00.000000 close(3) = 0\n"

  def test_invalid_utf8_is_replaced(self, temp_dir):
    path = temp_dir / "trace.log"
    path.write_bytes(b"\xff\n")
    with open_stream(path) as f:
      assert f.read() == "\ufffd\n"


class TestBuildStraceCommand:
  def test_command_mode(self):
    cmd = build_strace_command(TracerConfig(extra_args=["-s", "64"]), "/tmp/fifo", command=["ls", "-l"])
    assert cmd == ["strace", *STRACE_FLAGS, "-o", "/tmp/fifo", "-e", f"trace={trace_set()}", "-s", "64", "ls", "-l"]

  def test_attach_mode(self):
    cmd = build_strace_command(TracerConfig(path="/usr/bin/strace"), "/tmp/fifo", pid=42)
    assert cmd[0] == "/usr/bin/strace"
    assert cmd[-2:] == ["-p", "42"]


class TestTracerSession:
  """Test streaming a live tracer through the FIFO."""

  def test_lines_and_exit_status(self, fake_tracer):
    session = TracerSession(TracerConfig(path=fake_tracer), command=["tracee", "3"])
    with session:
      lines = list(session.lines())
    assert len(lines) == 2
    assert session.exit_status == 3

  def test_killed_tracer_reports_signal_status(self, fake_tracer):
    session = TracerSession(TracerConfig(path=fake_tracer), command=["tracee", "signal"])
    with session:
      list(session.lines())
    assert session.exit_status == 128 + 15

  def test_tracer_that_never_opens_output(self, fake_tracer):
    session = TracerSession(TracerConfig(path=fake_tracer), command=["tracee", "early"])
    with session:
      assert list(session.lines()) == []
    assert session.exit_status == 5

  def test_fifo_directory_is_removed(self, fake_tracer):
    session = TracerSession(TracerConfig(path=fake_tracer), command=["tracee", "0"])
    with session:
      tmpdir = session._tmpdir
      list(session.lines())
    assert not os.path.exists(tmpdir)

  def test_needs_exactly_one_target(self):
    with pytest.raises(ValueError):
      TracerSession(TracerConfig())
    with pytest.raises(ValueError):
      TracerSession(TracerConfig(), pid=1, command=["ls"])

  def test_missing_tracer_binary(self, temp_dir):
    session = TracerSession(TracerConfig(path=str(temp_dir / "no-strace")), command=["ls"])
    with pytest.raises(OSError):
      with session:
        pass


class TestMain:
  """Test the iotrace command line."""

  def test_requires_a_mode(self):
    with pytest.raises(SystemExit) as exc:
      main([])
    assert exc.value.code == 2

  def test_rejects_two_modes(self, sample_trace):
    with pytest.raises(SystemExit) as exc:
      main(["-f", str(sample_trace), "-p", "1"])
    assert exc.value.code == 2

  def test_compress_needs_output(self, sample_trace):
    with pytest.raises(SystemExit) as exc:
      main(["-f", str(sample_trace), "--compress"])
    assert exc.value.code == 2

  def test_bad_config_is_a_usage_error(self, temp_dir, sample_trace):
    config_file = temp_dir / "bad.yaml"
    config_file.write_text("[unclosed\n")
    with pytest.raises(SystemExit) as exc:
      main(["--config", str(config_file), "-f", str(sample_trace)])
    assert exc.value.code == 2

  def test_trace_file_to_output(self, temp_dir, sample_trace):
    out = temp_dir / "rows.csv"
    assert main(["-f", str(sample_trace), "-o", str(out)]) == 0
    assert out.read_text().splitlines() == EXPECTED_ROWS

  def test_trace_file_to_stdout(self, sample_trace, capsys):
    assert main(["-f", str(sample_trace)]) == 0
    assert capsys.readouterr().out.splitlines() == EXPECTED_ROWS

  def test_gzip_trace_to_gzip_output(self, temp_dir, sample_trace):
    packed = temp_dir / "trace.log.gz"
    with gzip.open(packed, "wt", encoding="utf-8") as f:
      f.write(sample_trace.read_text())
    out = temp_dir / "rows.csv.gz"
    assert main(["-f", str(packed), "-o", str(out), "--compress"]) == 0
    with gzip.open(out, "rt", encoding="utf-8") as f:
      assert f.read().splitlines() == EXPECTED_ROWS

  def test_output_settings_from_config(self, temp_dir, sample_trace):
    out = temp_dir / "from-config.csv"
    config_file = temp_dir / "config.yaml"
    config_file.write_text(f"output:\n  path: {out}\n")
    assert main(["--config", str(config_file), "-f", str(sample_trace)]) == 0
    assert out.read_text().splitlines() == EXPECTED_ROWS

  def test_unwritable_output_is_reported(self, temp_dir, sample_trace, caplog):
    blocker = temp_dir / "not-a-dir"
    blocker.write_text("")
    assert main(["-f", str(sample_trace), "-o", str(blocker / "rows.csv")]) == 1
    assert "cannot open output file" in caplog.text

  def test_missing_trace_file(self, temp_dir):
    assert main(["-f", str(temp_dir / "absent.log"), "-o", str(temp_dir / "rows.csv")]) == 1

  def test_live_command_returns_tracee_status(self, temp_dir, fake_tracer):
    out = temp_dir / "rows.csv"
    assert main(["--strace", fake_tracer, "-o", str(out), "--", "tracee", "7"]) == 7
    assert out.read_text().splitlines()[1:] == ["10:00:00.000020,0.000005,100,3,R,2,/tmp/a,"]

  def test_live_command_with_missing_tracer(self, temp_dir):
    out = temp_dir / "rows.csv"
    assert main(["--strace", str(temp_dir / "no-strace"), "-o", str(out), "--", "true"]) == 1
