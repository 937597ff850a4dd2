#!/usr/bin/env python3
"""Summarize an iotrace CSV into per-file byte totals."""

import argparse
import csv
import gzip
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Tuple


@dataclass
class FileTotals:
  file: str
  direction: str
  port: str = ""
  calls: int = 0
  failed: int = 0
  nbytes: int = 0


def open_stream(path: Path):
  with path.open("rb") as f:
    head = f.read(2)
  if head == b"\x1f\x8b":
    return gzip.open(path, "rt", encoding="utf-8", newline="")
  return path.open("r", encoding="utf-8", newline="")


def summarize(path: Path) -> List[FileTotals]:
  totals: Dict[Tuple[str, str, str], FileTotals] = {}
  with open_stream(path) as f:
    for row in csv.DictReader(f):
      try:
        nbytes = int(row["bytes"])
      except (TypeError, ValueError):
        continue
      key = (row["file"], row["dir"], row.get("port") or "")
      entry = totals.get(key)
      if entry is None:
        entry = FileTotals(file=key[0], direction=key[1], port=key[2])
        totals[key] = entry
      entry.calls += 1
      if nbytes < 0:
        entry.failed += 1
      else:
        entry.nbytes += nbytes
  return sorted(totals.values(), key=lambda t: (-t.nbytes, t.file, t.direction))


def write_report(totals: List[FileTotals], out, top: int = 0):
  rows = totals[:top] if top > 0 else totals
  writer = csv.writer(out, lineterminator="\n")
  writer.writerow(["file", "port", "dir", "calls", "failed", "bytes"])
  for t in rows:
    writer.writerow([t.file, t.port, t.direction, t.calls, t.failed, t.nbytes])


def main():
  ap = argparse.ArgumentParser(description="Per-file read/write totals from an iotrace CSV")
  ap.add_argument("csvfile", help="iotrace output, plain or gzip")
  ap.add_argument("--top", type=int, default=0, help="Only show the N busiest files")
  args = ap.parse_args()
  write_report(summarize(Path(args.csvfile)), sys.stdout, top=args.top)


if __name__ == "__main__":
  main()
