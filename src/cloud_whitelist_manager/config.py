"""Configuration loading and validation.

The configuration file is YAML. Two account layouts are accepted:

    accounts:                      # one or more named accounts
      - name: prod
        access_key_id: ...
        access_key_secret: ...
        region_id: cn-hangzhou
        ecs: {enabled: true, security_groups: [...]}

    aliyun:                        # legacy single unnamed account
      access_key_id: ...

IP sources are given either as a single ``ip_source`` mapping or as an
ordered ``ip_sources`` list; both forms produce the same tuple of sources.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Tuple, Union

import yaml

from .errors import ConfigurationError

DEFAULT_SOURCE_TIMEOUT_SECONDS = 10
LEGACY_ACCOUNT_NAME = "default"

# =============================================================================
# IP Sources
# =============================================================================


@dataclass(frozen=True)
class HTTPSource:
    """Query an HTTP endpoint that answers with the caller's IP as plain text."""

    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    timeout: int = DEFAULT_SOURCE_TIMEOUT_SECONDS

    def describe(self) -> str:
        return f"http:{self.url}"


@dataclass(frozen=True)
class CommandSource:
    """Run a shell command whose stdout is the IP."""

    cmd: str
    timeout: int = DEFAULT_SOURCE_TIMEOUT_SECONDS

    def describe(self) -> str:
        return f"command:{self.cmd}"


@dataclass(frozen=True)
class InterfaceSource:
    """Read the address bound to a local network interface."""

    interface: str
    ipv6: bool = False

    def describe(self) -> str:
        return f"interface:{self.interface}"


IPSource = Union[HTTPSource, CommandSource, InterfaceSource]

# =============================================================================
# Whitelist Targets
# =============================================================================


@dataclass(frozen=True)
class SecurityGroupTarget:
    security_group_id: str
    port: str
    priority: int

    def describe(self) -> str:
        return f"{self.security_group_id} (port {self.port}, priority {self.priority})"


@dataclass(frozen=True)
class InstanceWhitelistTarget:
    instance_id: str
    whitelist_name: str

    def describe(self) -> str:
        return f"{self.instance_id}/{self.whitelist_name}"


@dataclass(frozen=True)
class LoadBalancerAclTarget:
    acl_id: str

    def describe(self) -> str:
        return self.acl_id


@dataclass(frozen=True)
class ResourceConfig:
    """One resource section of an account (ecs, rds, redis or clb)."""

    enabled: bool = False
    targets: Tuple[Any, ...] = ()


@dataclass(frozen=True)
class Account:
    name: str
    access_key_id: str
    access_key_secret: str
    region_id: str
    ecs: ResourceConfig = field(default_factory=ResourceConfig)
    rds: ResourceConfig = field(default_factory=ResourceConfig)
    redis: ResourceConfig = field(default_factory=ResourceConfig)
    clb: ResourceConfig = field(default_factory=ResourceConfig)


@dataclass(frozen=True)
class Config:
    interval: int
    ip_sources: Tuple[IPSource, ...]
    accounts: Tuple[Account, ...]


# =============================================================================
# Parsing Helpers
# =============================================================================


def _parse_bool(value: Any, *, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"1", "true", "yes", "y", "on"}


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _as_int(value: Any, where: str, name: str, *, default: int = 0) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"{where}: {name} must be an integer")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{where}: {name} must be an integer, got {value!r}")


def _as_mapping(value: Any, where: str) -> Dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{where} must be a mapping")
    return value


def _as_list(value: Any, where: str) -> List[Any]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigurationError(f"{where} must be a list")
    return value


# =============================================================================
# Section Parsers
# =============================================================================


def parse_ip_source(item: Any, where: str) -> IPSource:
    """Build an IP source from its mapping, validating the type-specific fields."""
    data = _as_mapping(item, where)
    source_type = _as_str(data.get("type")).lower()

    timeout = _as_int(data.get("timeout"), where, "timeout")
    if timeout < 0:
        raise ConfigurationError(f"{where}: timeout must not be negative")
    if timeout == 0:
        timeout = DEFAULT_SOURCE_TIMEOUT_SECONDS

    if source_type == "http":
        url = _as_str(data.get("url"))
        if not url:
            raise ConfigurationError(f"{where} (http): URL is required")
        headers = _as_mapping(data.get("headers"), f"{where}.headers")
        return HTTPSource(
            url=url,
            headers={str(k): str(v) for k, v in headers.items()},
            timeout=timeout,
        )
    if source_type == "command":
        cmd = _as_str(data.get("cmd"))
        if not cmd:
            raise ConfigurationError(f"{where} (command): command is required")
        return CommandSource(cmd=cmd, timeout=timeout)
    if source_type == "interface":
        interface = _as_str(data.get("interface"))
        if not interface:
            raise ConfigurationError(f"{where} (interface): interface is required")
        return InterfaceSource(interface=interface, ipv6=_parse_bool(data.get("ipv6")))
    if not source_type:
        raise ConfigurationError(f"{where}: IP source type is required")
    raise ConfigurationError(f"{where}: unknown IP source type '{source_type}'")


def _parse_ip_sources(data: Dict[str, Any]) -> Tuple[IPSource, ...]:
    if data.get("ip_sources") is not None:
        items = _as_list(data.get("ip_sources"), "ip_sources")
        sources = tuple(
            parse_ip_source(item, f"ip_sources[{i}]") for i, item in enumerate(items)
        )
    elif data.get("ip_source") is not None:
        sources = (parse_ip_source(data.get("ip_source"), "ip_source"),)
    else:
        sources = ()

    if not sources:
        raise ConfigurationError("At least one IP source must be configured")
    return sources


def _parse_ecs(section: Dict[str, Any], where: str) -> ResourceConfig:
    enabled = _parse_bool(section.get("enabled"))
    targets: List[SecurityGroupTarget] = []
    for j, item in enumerate(_as_list(section.get("security_groups"), f"{where}.security_groups")):
        sg = _as_mapping(item, f"{where}.security_groups[{j}]")
        sg_where = f"{where}: ECS security group {j}"
        target = SecurityGroupTarget(
            security_group_id=_as_str(sg.get("security_group_id")),
            port=_as_str(sg.get("port")),
            priority=_as_int(sg.get("priority"), sg_where, "priority"),
        )
        if enabled:
            if not target.security_group_id:
                raise ConfigurationError(f"{sg_where} security_group_id is required")
            if not target.port:
                raise ConfigurationError(f"{sg_where} port is required")
            if target.priority <= 0:
                raise ConfigurationError(f"{sg_where} priority must be greater than 0")
        targets.append(target)

    if enabled and not targets:
        raise ConfigurationError(
            f"{where}: At least one ECS security group must be configured when ECS is enabled"
        )
    return ResourceConfig(enabled=enabled, targets=tuple(targets))


def _parse_instance_whitelists(
    section: Dict[str, Any], where: str, label: str
) -> ResourceConfig:
    enabled = _parse_bool(section.get("enabled"))
    targets: List[InstanceWhitelistTarget] = []
    key = "instance_whitelists"
    for j, item in enumerate(_as_list(section.get(key), f"{where}.{key}")):
        iw = _as_mapping(item, f"{where}.{key}[{j}]")
        target = InstanceWhitelistTarget(
            instance_id=_as_str(iw.get("instance_id")),
            whitelist_name=_as_str(iw.get("whitelist_name")),
        )
        if enabled:
            if not target.instance_id:
                raise ConfigurationError(
                    f"{where}: {label} instance whitelist {j} instance_id is required"
                )
            if not target.whitelist_name:
                raise ConfigurationError(
                    f"{where}: {label} instance whitelist {j} whitelist_name is required"
                )
        targets.append(target)

    if enabled and not targets:
        raise ConfigurationError(
            f"{where}: At least one {label} instance whitelist must be configured "
            f"when {label} is enabled"
        )
    return ResourceConfig(enabled=enabled, targets=tuple(targets))


def _parse_clb(section: Dict[str, Any], where: str) -> ResourceConfig:
    enabled = _parse_bool(section.get("enabled"))
    targets: List[LoadBalancerAclTarget] = []
    key = "load_balancer_whitelists"
    for j, item in enumerate(_as_list(section.get(key), f"{where}.{key}")):
        lbw = _as_mapping(item, f"{where}.{key}[{j}]")
        target = LoadBalancerAclTarget(acl_id=_as_str(lbw.get("acl_id")))
        if enabled and not target.acl_id:
            raise ConfigurationError(f"{where}: CLB whitelist {j} acl_id is required")
        targets.append(target)

    if enabled and not targets:
        raise ConfigurationError(
            f"{where}: At least one CLB whitelist must be configured when CLB is enabled"
        )
    return ResourceConfig(enabled=enabled, targets=tuple(targets))


def parse_account(item: Any, where: str, *, name: str = "") -> Account:
    """Build an Account from a mapping.

    ``name`` is used for the legacy layout, which has no name field of its own.
    """
    data = _as_mapping(item, where)
    account_name = name or _as_str(data.get("name"))
    if not account_name:
        raise ConfigurationError(f"{where}: name is required")

    for key in ("access_key_id", "access_key_secret", "region_id"):
        if not _as_str(data.get(key)):
            raise ConfigurationError(f"{where}: {key} is required")

    return Account(
        name=account_name,
        access_key_id=_as_str(data.get("access_key_id")),
        access_key_secret=_as_str(data.get("access_key_secret")),
        region_id=_as_str(data.get("region_id")),
        ecs=_parse_ecs(_as_mapping(data.get("ecs"), f"{where}.ecs"), where),
        rds=_parse_instance_whitelists(
            _as_mapping(data.get("rds"), f"{where}.rds"), where, "RDS"
        ),
        redis=_parse_instance_whitelists(
            _as_mapping(data.get("redis"), f"{where}.redis"), where, "Redis"
        ),
        clb=_parse_clb(_as_mapping(data.get("clb"), f"{where}.clb"), where),
    )


# =============================================================================
# Entry Points
# =============================================================================


def parse_config(data: Any) -> Config:
    """Validate raw YAML data and build a Config."""
    data = _as_mapping(data, "configuration")

    interval = _as_int(data.get("interval"), "configuration", "interval")
    if interval <= 0:
        raise ConfigurationError("interval must be greater than 0")

    ip_sources = _parse_ip_sources(data)

    raw_accounts = _as_list(data.get("accounts"), "accounts")
    if raw_accounts:
        accounts = tuple(
            parse_account(item, f"account {i}") for i, item in enumerate(raw_accounts)
        )
        names = [a.name for a in accounts]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ConfigurationError(f"Duplicate account names: {', '.join(duplicates)}")
    else:
        accounts = (parse_account(data.get("aliyun"), "aliyun", name=LEGACY_ACCOUNT_NAME),)

    return Config(interval=interval, ip_sources=ip_sources, accounts=accounts)


def load_config(path: str) -> Config:
    """Read, parse and validate the configuration file at ``path``."""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
    except (OSError, IOError) as e:
        raise ConfigurationError(f"failed to read config file: {e}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"failed to parse config file: {e}")

    if data is None:
        raise ConfigurationError(f"Config file {Path(path).name} is empty")
    return parse_config(data)
