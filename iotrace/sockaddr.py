"""Resolve strace's printed sockaddr structs into peer identities."""

import logging
from typing import Callable, Dict, Optional

from iotrace.fdtable import FileHandle
from iotrace.tokenizer import TokenizeError, decode_path, is_string, parse_call, parse_struct

log = logging.getLogger(__name__)

NULL = "NULL"


def fallback_peer(fd: int, family: str) -> FileHandle:
  return FileHandle.socket(f"socket:{fd}:{family}")


def _port(value: Optional[str]) -> Optional[int]:
  # sin_port=htons(80)
  if not value:
    return None
  name, args = parse_call(value)
  if name != "htons" or len(args) != 1:
    return None
  try:
    return int(args[0])
  except ValueError:
    return None


def _inet(members: Dict[str, str]) -> Optional[FileHandle]:
  value = members.get("sin_addr")
  if not value:
    return None
  name, args = parse_call(value)
  if name != "inet_addr" or len(args) != 1 or not is_string(args[0]):
    return None
  return FileHandle.socket(decode_path(args[0]), _port(members.get("sin_port")))


def _inet6(members: Dict[str, str]) -> Optional[FileHandle]:
  # Older strace prints a bare inet_pton(AF_INET6, "::1", &sin6_addr) member,
  # newer ones key it as sin6_addr=inet_pton(AF_INET6, "::1").
  for value in members.values():
    if not value.startswith("inet_pton("):
      continue
    _, args = parse_call(value)
    if len(args) >= 2 and is_string(args[1]):
      return FileHandle.socket(decode_path(args[1]), _port(members.get("sin6_port")))
  return None


def _local(members: Dict[str, str]) -> Optional[FileHandle]:
  value = members.get("sun_path")
  if not value:
    return None
  if value.startswith("@"):
    return FileHandle.socket("@" + decode_path(value[1:]))
  return FileHandle.socket(decode_path(value))


_FAMILY_RESOLVERS: Dict[str, Callable[[Dict[str, str]], Optional[FileHandle]]] = {
  "AF_INET": _inet,
  "AF_INET6": _inet6,
  "AF_UNIX": _local,
  "AF_LOCAL": _local,
}


def resolve_sockaddr(text: str, fd: int) -> FileHandle:
  """Peer identity printed in ``text``; a tagged fallback if it can't be read."""
  try:
    members = parse_struct(text)
  except TokenizeError as exc:
    log.debug("fd %d: unparsable sockaddr %r: %s", fd, text, exc)
    return fallback_peer(fd, "unparsable")
  family = members.get("sa_family", "AF_UNSPEC")
  resolver = _FAMILY_RESOLVERS.get(family)
  if resolver is None:
    return fallback_peer(fd, family)
  try:
    handle = resolver(members)
  except TokenizeError as exc:
    log.debug("fd %d: bad %s address %r: %s", fd, family, text, exc)
    handle = None
  return handle or fallback_peer(fd, family)


def message_peer(msghdr: str, fd: int) -> Optional[FileHandle]:
  """Peer named by a msghdr's ``msg_name``, or None for connected sockets."""
  try:
    members = parse_struct(msghdr)
  except TokenizeError:
    return None
  name = members.get("msg_name")
  if not name or name == NULL or not name.startswith("{"):
    return None
  return resolve_sockaddr(name, fd)
