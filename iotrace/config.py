import os
from dataclasses import dataclass, field
from typing import List, Optional

import yaml

DEFAULT_CONFIG_PATH = "/etc/iotrace/config.yaml"


@dataclass
class TracerConfig:
  path: str = "strace"
  extra_args: List[str] = field(default_factory=list)


@dataclass
class OutputConfig:
  path: str = ""  # empty writes to stdout
  compress: bool = False


@dataclass
class AppConfig:
  log_level: str = "info"
  verbose: bool = False
  tracer: TracerConfig = field(default_factory=TracerConfig)
  output: OutputConfig = field(default_factory=OutputConfig)


def load_config(path: Optional[str] = None) -> AppConfig:
  """Load settings from YAML.

  The file is ``path``, else ``$IOTRACE_CONFIG``, else the default location,
  which may be absent.
  """
  explicit = path or os.environ.get("IOTRACE_CONFIG")
  if not explicit and not os.path.exists(DEFAULT_CONFIG_PATH):
    return AppConfig()
  with open(explicit or DEFAULT_CONFIG_PATH, "r", encoding="utf-8") as f:
    data = yaml.safe_load(f) or {}
  if not isinstance(data, dict):
    raise ValueError("config file must be a mapping")

  strace_cfg = data.get("strace", {}) or {}
  output_cfg = data.get("output", {}) or {}

  tracer = TracerConfig(
    path=str(strace_cfg.get("path", "strace")),
    extra_args=[str(a) for a in strace_cfg.get("extraArgs", []) or []],
  )
  output = OutputConfig(
    path=str(output_cfg.get("path", "") or ""),
    compress=bool(output_cfg.get("compress", False)),
  )

  return AppConfig(
    log_level=str(data.get("logLevel", "info")),
    verbose=bool(data.get("verbose", False)),
    tracer=tracer,
    output=output,
  )
