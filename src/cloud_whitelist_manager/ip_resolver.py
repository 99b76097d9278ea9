"""Public IP discovery.

Sources are tried strictly in configured order and the first one that yields
a syntactically valid address wins. Every source is bounded by its own
timeout so a hung endpoint or command cannot stall the cycle.
"""

from __future__ import annotations

import ipaddress
import logging
import subprocess
from typing import Iterable, Optional

import netifaces
import requests

from .config import CommandSource, HTTPSource, InterfaceSource, IPSource
from .errors import IPSourceError, SourceExhaustedError

logger = logging.getLogger(__name__)

MAX_RESPONSE_BYTES = 1024


def validate_ip(value: str) -> str:
    """Return the canonical form of ``value`` or raise IPSourceError."""
    candidate = (value or "").strip()
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        raise IPSourceError(f"invalid IP address: {candidate!r}")


# =============================================================================
# Source Implementations
# =============================================================================


def get_ip_from_http(source: HTTPSource, session: Optional[requests.Session] = None) -> str:
    if session is None:
        with requests.Session() as owned:
            return _read_http(source, owned)
    return _read_http(source, session)


def _read_http(source: HTTPSource, session: requests.Session) -> str:
    try:
        response = session.get(
            source.url, headers=source.headers, timeout=source.timeout, stream=True
        )
    except requests.exceptions.RequestException as e:
        raise IPSourceError(f"failed to make HTTP request: {e}")

    try:
        if not 200 <= response.status_code < 300:
            raise IPSourceError(f"HTTP request failed with status: {response.status_code}")
        try:
            body = next(response.iter_content(chunk_size=MAX_RESPONSE_BYTES), b"")
        except requests.exceptions.RequestException as e:
            raise IPSourceError(f"failed to read response body: {e}")
    finally:
        response.close()

    if isinstance(body, bytes):
        body = body[:MAX_RESPONSE_BYTES].decode("utf-8", errors="replace")
    return validate_ip(body)


def get_ip_from_command(source: CommandSource) -> str:
    try:
        result = subprocess.run(
            ["sh", "-c", source.cmd],
            capture_output=True,
            timeout=source.timeout,
            check=True,
        )
    except subprocess.TimeoutExpired:
        raise IPSourceError(f"command timed out after {source.timeout}s")
    except subprocess.CalledProcessError as e:
        raise IPSourceError(f"command execution failed with exit code {e.returncode}")
    except OSError as e:
        raise IPSourceError(f"command execution failed: {e}")
    return validate_ip(result.stdout.decode("utf-8", errors="replace"))


def get_ip_from_interface(source: InterfaceSource) -> str:
    if source.interface not in netifaces.interfaces():
        raise IPSourceError(f"interface {source.interface} not found")

    try:
        addresses = netifaces.ifaddresses(source.interface)
    except ValueError as e:
        raise IPSourceError(f"failed to get addresses for interface {source.interface}: {e}")

    family = netifaces.AF_INET6 if source.ipv6 else netifaces.AF_INET
    for entry in addresses.get(family, []):
        # IPv6 link-local addresses carry a "%zone" suffix
        addr = str(entry.get("addr") or "").split("%", 1)[0]
        try:
            ip = ipaddress.ip_address(addr)
        except ValueError:
            continue
        if ip.is_loopback:
            continue
        return str(ip)

    raise IPSourceError(f"interface {source.interface} has no valid IP")


def get_ip_from_source(source: IPSource, session: Optional[requests.Session] = None) -> str:
    if isinstance(source, HTTPSource):
        return get_ip_from_http(source, session=session)
    if isinstance(source, CommandSource):
        return get_ip_from_command(source)
    if isinstance(source, InterfaceSource):
        return get_ip_from_interface(source)
    raise IPSourceError(f"unknown IP source type: {type(source).__name__}")


# =============================================================================
# Resolver
# =============================================================================


def resolve_public_ip(
    sources: Iterable[IPSource], session: Optional[requests.Session] = None
) -> str:
    """Return the IP reported by the first working source.

    Raises SourceExhaustedError listing every failure when no source succeeds.
    """
    failures = []
    for source in sources:
        try:
            ip = get_ip_from_source(source, session=session)
        except IPSourceError as e:
            logger.warning(f"IP source {source.describe()} failed: {e}")
            failures.append(f"{source.describe()}: {e}")
            continue
        logger.debug(f"IP source {source.describe()} returned {ip}")
        return ip

    raise SourceExhaustedError(failures)
