"""Splitting and unescaping of strace argument text.

strace prints arguments as C-like literals: quoted strings (hex escaped with
``-xx``), brace structs, bracket arrays and macro calls such as ``htons(80)``.
Commas only separate fields at nesting depth zero and outside strings.
"""

from typing import Dict, Iterator, List, Tuple

_OPENERS = {"{": "}", "[": "]", "(": ")"}
_CLOSERS = set(_OPENERS.values())

_SIMPLE_ESCAPES = {
  "n": 0x0A,
  "t": 0x09,
  "r": 0x0D,
  "v": 0x0B,
  "f": 0x0C,
  "a": 0x07,
  "b": 0x08,
  "\\": 0x5C,
  '"': 0x22,
  "'": 0x27,
}

TRUNCATION_MARKER = "..."


class TokenizeError(ValueError):
  pass


def _string_end(text: str, start: int) -> int:
  """Index of the quote closing the string literal opened at ``start``."""
  i = start + 1
  n = len(text)
  while i < n:
    ch = text[i]
    if ch == "\\":
      i += 2
      continue
    if ch == '"':
      return i
    i += 1
  raise TokenizeError(f"unterminated string starting at offset {start}")


def _walk(text: str) -> Iterator[Tuple[int, str, int]]:
  """Yield (offset, char, depth) for every character outside string literals.

  For an opener, depth is the level it opens from; for a closer, the level it
  returns to. String literals are skipped whole.
  """
  stack: List[str] = []
  i = 0
  n = len(text)
  while i < n:
    ch = text[i]
    if ch == '"':
      i = _string_end(text, i) + 1
      continue
    if ch in _OPENERS:
      yield i, ch, len(stack)
      stack.append(_OPENERS[ch])
    elif ch in _CLOSERS:
      if not stack or stack[-1] != ch:
        raise TokenizeError(f"unbalanced '{ch}' at offset {i}")
      stack.pop()
      yield i, ch, len(stack)
    else:
      yield i, ch, len(stack)
    i += 1
  if stack:
    raise TokenizeError(f"missing '{stack[-1]}' at end of text")


def find_closing(text: str, start: int) -> int:
  """Index of the bracket that closes the one at ``text[start]``."""
  if text[start:start + 1] not in _OPENERS:
    raise TokenizeError(f"no opening bracket at offset {start}")
  for i, ch, depth in _walk(text[start:]):
    if i > 0 and ch in _CLOSERS and depth == 0:
      return start + i
  raise TokenizeError(f"bracket at offset {start} is never closed")


def split_fields(text: str) -> List[str]:
  """Split raw argument text on top-level commas."""
  fields: List[str] = []
  begin = 0
  for i, ch, depth in _walk(text):
    if ch == "," and depth == 0:
      fields.append(text[begin:i].strip())
      begin = i + 1
  tail = text[begin:].strip()
  if tail or fields:
    fields.append(tail)
  return fields


def _top_level_index(text: str, target: str) -> int:
  for i, ch, depth in _walk(text):
    if ch == target and depth == 0:
      return i
  return -1


def is_string(field: str) -> bool:
  text = field.strip()
  if text.endswith('"' + TRUNCATION_MARKER):
    text = text[:-len(TRUNCATION_MARKER)]
  return len(text) >= 2 and text[0] == '"' and text[-1] == '"'


def unescape(field: str) -> bytes:
  """Reverse strace's escaping of a quoted string literal into raw bytes."""
  text = field.strip()
  if text.endswith('"' + TRUNCATION_MARKER):
    text = text[:-len(TRUNCATION_MARKER)]
  if not is_string(text):
    raise TokenizeError(f"not a string literal: {field!r}")
  body = text[1:-1]
  out = bytearray()
  i = 0
  n = len(body)
  while i < n:
    ch = body[i]
    if ch != "\\":
      out.extend(ch.encode("utf-8"))
      i += 1
      continue
    if i + 1 >= n:
      raise TokenizeError(f"dangling backslash in {field!r}")
    nxt = body[i + 1]
    if nxt == "x":
      digits = body[i + 2:i + 4]
      try:
        out.append(int(digits, 16))
      except ValueError as exc:
        raise TokenizeError(f"bad hex escape '\\x{digits}' in {field!r}") from exc
      i += 4
    elif nxt in "01234567":
      j = i + 1
      while j < n and j < i + 4 and body[j] in "01234567":
        j += 1
      out.append(int(body[i + 1:j], 8) & 0xFF)
      i = j
    elif nxt in _SIMPLE_ESCAPES:
      out.append(_SIMPLE_ESCAPES[nxt])
      i += 2
    else:
      raise TokenizeError(f"unknown escape '\\{nxt}' in {field!r}")
  return bytes(out)


def escape(data: bytes) -> str:
  """Quote ``data`` the way ``strace -xx`` does: every byte as ``\\xNN``."""
  return '"' + "".join(f"\\x{b:02x}" for b in data) + '"'


def decode_path(field: str) -> str:
  """Unescape a string literal used as a file or socket name."""
  return unescape(field).decode("utf-8", errors="backslashreplace")


def parse_struct(text: str) -> Dict[str, str]:
  """Parse ``{key=value, ...}`` into a mapping of raw value text.

  Members printed without a key (``inet_pton(...)`` in sockaddr_in6, the
  ``...`` of an abbreviated struct) are stored under their position.
  """
  body = text.strip()
  if len(body) < 2 or body[0] != "{" or body[-1] != "}":
    raise TokenizeError(f"not a struct literal: {text!r}")
  members: Dict[str, str] = {}
  for pos, item in enumerate(split_fields(body[1:-1])):
    eq = _top_level_index(item, "=")
    if eq < 0:
      members[str(pos)] = item
    else:
      members[item[:eq].strip()] = item[eq + 1:].strip()
  return members


def parse_list(text: str) -> List[str]:
  """Parse ``[a, b, ...]`` into its raw items."""
  body = text.strip()
  if len(body) < 2 or body[0] != "[" or body[-1] != "]":
    raise TokenizeError(f"not an array literal: {text!r}")
  return split_fields(body[1:-1])


def parse_call(text: str) -> Tuple[str, List[str]]:
  """Parse a macro-style call such as ``htons(80)`` into (name, args)."""
  body = text.strip()
  paren = body.find("(")
  if paren <= 0 or not body.endswith(")") or find_closing(body, paren) != len(body) - 1:
    raise TokenizeError(f"not a call expression: {text!r}")
  return body[:paren].strip(), split_fields(body[paren + 1:-1])
