"""
Route file loading for the port forward relay.

Each line reads alias=localPort->remoteHost:remotePort. Lines starting with
'#' and blank lines are ignored. A bad line is reported and skipped; it never
stops the lines after it from loading.
"""
import logging
import re
from typing import NamedTuple

logger = logging.getLogger(__name__)

LINE_FORMAT = "alias=localPort->remoteHost:remotePort"
PORT_PATTERN = re.compile(r"[+-]?[0-9]+")
MIN_PORT = 1
MAX_PORT = 65535


class Route(NamedTuple):
    alias: str
    local_port: int
    remote_host: str
    remote_port: int

    def __str__(self):
        return f"{self.local_port}->{self.remote_host}:{self.remote_port}"


def parse_port(text, where, messages):
    """Parse a port number, appending a message and returning None when it is unusable."""
    text = text.strip()
    if not PORT_PATTERN.fullmatch(text):
        messages.append(f"Couldn't parse {text!r} as port for line:\n{where}")
        return None
    port = int(text)
    if not MIN_PORT <= port <= MAX_PORT:
        messages.append(f"Port {port} is outside {MIN_PORT}-{MAX_PORT} for line:\n{where}")
        return None
    return port


def parse_line(line, line_number):
    """
    Validate one route line.
    Returns (route, messages); route is None for comments, blank lines and
    rejected lines.
    """
    where = f"{line_number}: {line}"
    stripped = line.strip()
    if not stripped or stripped.startswith("#"):
        return None, []

    alias, sep, target = stripped.partition("=")
    if not sep or not target.strip():
        return None, [f"Line not in format {LINE_FORMAT}\n{where}"]

    local, sep, remote = target.partition("->")
    if not sep:
        return None, [f"Line doesn't contain -> splitter:\n{where}"]

    # The port follows the last colon so IPv6 hosts (::1 or [::1]) keep theirs.
    host, sep, remote_port = remote.strip().rpartition(":")
    if not sep:
        return None, [f"remote host should be in form remoteHost:remotePort for line:\n{where}"]

    messages = []
    local_port = parse_port(local, where, messages)
    remote_port = parse_port(remote_port, where, messages)
    host = host.strip()
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1].strip()
    if not host:
        messages.append(f"remote host is empty for line:\n{where}")
    if messages:
        return None, messages
    return Route(alias.strip(), local_port, host, remote_port), []


def parse_routes(lines):
    routes = []
    messages = []
    for line_number, line in enumerate(lines, start=1):
        route, line_messages = parse_line(line.rstrip("\r\n"), line_number)
        messages.extend(line_messages)
        if route is not None:
            routes.append(route)
    return routes, messages


def load_routes(path):
    """Read a route file. Returns (routes, messages)."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = f.read().splitlines()
    except OSError as e:
        return [], [f"Couldn't read route file {path}: {e}"]
    routes, messages = parse_routes(lines)
    logger.debug("Loaded %d route(s) from %s", len(routes), path)
    return routes, messages
