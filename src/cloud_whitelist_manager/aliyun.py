"""Alibaba Cloud whitelist adapters.

Two adapter shapes are used:

    RuleAdapter        ECS security groups. Rules are revoked and authorized
                       one IP at a time; there is no membership to fetch.
    MembershipAdapter  RDS, Redis and CLB. The whitelist is fetched as a set,
                       updated locally and written back as a whole.

All adapters talk to the cloud through AliyunClient, which owns the SDK
client and converts SDK failures into ProviderCallError.
"""

from __future__ import annotations

import ipaddress
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple

from aliyunsdkcore.acs_exception.exceptions import ClientException, ServerException
from aliyunsdkcore.client import AcsClient
from aliyunsdkcore.request import CommonRequest

from .config import Account, InstanceWhitelistTarget, LoadBalancerAclTarget, SecurityGroupTarget
from .errors import GroupNotFoundError, PartialReplaceError, ProviderCallError
from .whitelist import format_membership, parse_membership

logger = logging.getLogger(__name__)

AUTO_ADDED_COMMENT = "Auto added by cloud-whitelist-manager"
REVOKE_MISSING_RULE_CODE = "InvalidParam.SourceCidrIp"

DEFAULT_CONNECT_TIMEOUT_SECONDS = 5
DEFAULT_READ_TIMEOUT_SECONDS = 10

# product -> (endpoint, API version)
PRODUCTS: Dict[str, Tuple[str, str]] = {
    "ecs": ("ecs.aliyuncs.com", "2014-05-26"),
    "rds": ("rds.aliyuncs.com", "2014-08-15"),
    "redis": ("r-kvstore.aliyuncs.com", "2015-01-01"),
    "slb": ("slb.aliyuncs.com", "2014-05-15"),
}

# =============================================================================
# Cloud Client
# =============================================================================


class AliyunClient:
    """Issues RPC-style API calls for one account and region."""

    def __init__(
        self,
        account: Account,
        *,
        connect_timeout: int = DEFAULT_CONNECT_TIMEOUT_SECONDS,
        read_timeout: int = DEFAULT_READ_TIMEOUT_SECONDS,
        acs_client: Optional[AcsClient] = None,
    ):
        self.account_name = account.name
        self.region_id = account.region_id
        # One attempt per call; the next tick is the retry.
        self._client = acs_client or AcsClient(
            account.access_key_id,
            account.access_key_secret,
            account.region_id,
            auto_retry=False,
            connect_timeout=connect_timeout,
            timeout=read_timeout,
        )

    def call(self, product: str, action: str, params: Dict[str, Any]) -> Dict[str, Any]:
        domain, version = PRODUCTS[product]
        request = CommonRequest(domain=domain, version=version, action_name=action)
        request.set_accept_format("json")
        request.set_method("POST")
        request.set_protocol_type("https")
        request.add_query_param("RegionId", self.region_id)
        for key, value in params.items():
            request.add_query_param(key, str(value))

        try:
            body = self._client.do_action_with_exception(request)
        except ServerException as e:
            raise ProviderCallError(
                f"{action} failed: {e.get_error_code()}: {e.get_error_msg()} "
                f"(request id {e.get_request_id()})",
                error_code=e.get_error_code(),
            )
        except ClientException as e:
            raise ProviderCallError(
                f"{action} failed: {e.get_error_code()}: {e.get_error_msg()}",
                error_code=e.get_error_code(),
            )

        try:
            data = json.loads(body) if body else {}
        except (TypeError, ValueError) as e:
            raise ProviderCallError(f"{action} returned malformed response: {e}")
        if not isinstance(data, dict):
            raise ProviderCallError(f"{action} returned unexpected response: {data!r}")
        return data


# =============================================================================
# Helpers
# =============================================================================


def normalize_port(port: str) -> Tuple[str, str]:
    """Map a configured port to the (protocol, port range) pair ECS expects.

    "-1/-1" means all protocols and ports, "80/8080" is already a range and a
    bare "22" becomes "22/22".
    """
    port = port.strip()
    if port == "-1/-1":
        return "all", "-1/-1"
    if "/" in port:
        return "tcp", port
    return "tcp", f"{port}/{port}"


def to_cidr(entry: str) -> str:
    """Return the single-host CIDR for an IP; entries that are already CIDRs pass through."""
    if "/" in entry:
        return entry
    try:
        if ipaddress.ip_address(entry).version == 6:
            return f"{entry}/128"
    except ValueError:
        pass
    return f"{entry}/32"


def strip_host_prefix(entry: str) -> str:
    for suffix in ("/32", "/128"):
        if entry.endswith(suffix):
            return entry[: -len(suffix)]
    return entry


# =============================================================================
# Adapter Interfaces
# =============================================================================


class RuleAdapter(ABC):
    """Rule-oriented whitelist (one firewall rule per IP)."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the resource kind label for logging."""
        pass

    @abstractmethod
    def revoke(self, ip: str, target: SecurityGroupTarget) -> None:
        """Remove the rule for ip. A rule that does not exist is not an error."""
        pass

    @abstractmethod
    def authorize(self, ip: str, target: SecurityGroupTarget) -> None:
        """Add the rule for ip."""
        pass


class MembershipAdapter(ABC):
    """Set-oriented whitelist that is read and written as a whole."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the resource kind label for logging."""
        pass

    @abstractmethod
    def fetch(self, target: Any) -> Set[str]:
        """Return the entries currently on the target."""
        pass

    @abstractmethod
    def replace(self, target: Any, members: Set[str]) -> None:
        """Overwrite the target's entries with members."""
        pass


# =============================================================================
# ECS Security Groups
# =============================================================================


class ECSSecurityGroupAdapter(RuleAdapter):
    def __init__(self, client: AliyunClient):
        self._client = client

    @property
    def name(self) -> str:
        return "ECS"

    def _rule_params(self, ip: str, target: SecurityGroupTarget) -> Dict[str, Any]:
        protocol, port_range = normalize_port(target.port)
        cidr = to_cidr(ip)
        cidr_key = "Ipv6SourceCidrIp" if cidr.endswith("/128") else "SourceCidrIp"
        return {
            "SecurityGroupId": target.security_group_id,
            "IpProtocol": protocol,
            "PortRange": port_range,
            cidr_key: cidr,
            "Priority": target.priority,
        }

    def revoke(self, ip: str, target: SecurityGroupTarget) -> None:
        params = self._rule_params(ip, target)
        try:
            self._client.call("ecs", "RevokeSecurityGroup", params)
        except ProviderCallError as e:
            if e.error_code == REVOKE_MISSING_RULE_CODE or REVOKE_MISSING_RULE_CODE in str(e):
                logger.debug(
                    f"No rule for {ip} in security group {target.security_group_id}, nothing to revoke"
                )
                return
            raise
        logger.info(f"Revoked {ip} from security group {target.describe()}")

    def authorize(self, ip: str, target: SecurityGroupTarget) -> None:
        params = self._rule_params(ip, target)
        params["Description"] = AUTO_ADDED_COMMENT
        self._client.call("ecs", "AuthorizeSecurityGroup", params)
        logger.info(f"Authorized {ip} in security group {target.describe()}")


# =============================================================================
# RDS / Redis Whitelist Groups
# =============================================================================


class RDSWhitelistAdapter(MembershipAdapter):
    def __init__(self, client: AliyunClient):
        self._client = client

    @property
    def name(self) -> str:
        return "RDS"

    def fetch(self, target: InstanceWhitelistTarget) -> Set[str]:
        data = self._client.call(
            "rds", "DescribeDBInstanceIPArrayList", {"DBInstanceId": target.instance_id}
        )
        groups = (data.get("Items") or {}).get("DBInstanceIPArray") or []
        for group in groups:
            if group.get("DBInstanceIPArrayName") == target.whitelist_name:
                return parse_membership(group.get("SecurityIPList") or "")
        raise GroupNotFoundError(target.whitelist_name, target.instance_id, self.name)

    def replace(self, target: InstanceWhitelistTarget, members: Set[str]) -> None:
        self._client.call(
            "rds",
            "ModifySecurityIps",
            {
                "DBInstanceId": target.instance_id,
                "SecurityIps": format_membership(members),
                # classic and VPC networks
                "WhitelistNetworkType": "MIX",
                "DBInstanceIPArrayName": target.whitelist_name,
            },
        )


class RedisWhitelistAdapter(MembershipAdapter):
    def __init__(self, client: AliyunClient):
        self._client = client

    @property
    def name(self) -> str:
        return "Redis"

    def fetch(self, target: InstanceWhitelistTarget) -> Set[str]:
        data = self._client.call("redis", "DescribeSecurityIps", {"InstanceId": target.instance_id})
        groups = (data.get("SecurityIpGroups") or {}).get("SecurityIpGroup") or []
        for group in groups:
            if group.get("SecurityIpGroupName") == target.whitelist_name:
                return parse_membership(group.get("SecurityIpList") or "")
        raise GroupNotFoundError(target.whitelist_name, target.instance_id, self.name)

    def replace(self, target: InstanceWhitelistTarget, members: Set[str]) -> None:
        self._client.call(
            "redis",
            "ModifySecurityIps",
            {
                "InstanceId": target.instance_id,
                "SecurityIps": format_membership(members),
                "SecurityIpGroupName": target.whitelist_name,
            },
        )


# =============================================================================
# CLB Access Control Lists
# =============================================================================


class CLBAclAdapter(MembershipAdapter):
    """Load balancer ACLs.

    The ACL API has no "set entries" call, so replace removes every entry and
    then adds the new ones. If the add fails after a successful removal the
    ACL is left empty and PartialReplaceError is raised.
    """

    def __init__(self, client: AliyunClient):
        self._client = client

    @property
    def name(self) -> str:
        return "CLB"

    def _entries(self, target: LoadBalancerAclTarget) -> List[Dict[str, Any]]:
        data = self._client.call(
            "slb", "DescribeAccessControlListAttribute", {"AclId": target.acl_id}
        )
        entries = (data.get("AclEntrys") or {}).get("AclEntry") or []
        return [e for e in entries if isinstance(e, dict) and e.get("AclEntryIP")]

    def fetch(self, target: LoadBalancerAclTarget) -> Set[str]:
        return {strip_host_prefix(str(e["AclEntryIP"])) for e in self._entries(target)}

    def replace(self, target: LoadBalancerAclTarget, members: Set[str]) -> None:
        existing = self._entries(target)
        if existing:
            to_remove = [
                {"entry": e["AclEntryIP"], "comment": e.get("AclEntryComment") or ""}
                for e in existing
            ]
            self._client.call(
                "slb",
                "RemoveAccessControlListEntry",
                {"AclId": target.acl_id, "AclEntrys": json.dumps(to_remove)},
            )
            logger.debug(f"Removed {len(to_remove)} entries from ACL {target.acl_id}")

        if not members:
            return

        to_add = [{"entry": to_cidr(ip), "comment": AUTO_ADDED_COMMENT} for ip in sorted(members)]
        try:
            self._client.call(
                "slb",
                "AddAccessControlListEntry",
                {"AclId": target.acl_id, "AclEntrys": json.dumps(to_add)},
            )
        except ProviderCallError as e:
            if existing:
                raise PartialReplaceError(
                    f"ACL {target.acl_id} was cleared but new entries could not be added, "
                    f"verify it manually: {e}",
                    error_code=e.error_code,
                )
            raise


# =============================================================================
# Adapter Registry
# =============================================================================


@dataclass
class AccountAdapters:
    ecs: RuleAdapter
    rds: MembershipAdapter
    redis: MembershipAdapter
    clb: MembershipAdapter


def create_account_adapters(client: AliyunClient) -> AccountAdapters:
    """Factory function to create all resource adapters for one account."""
    return AccountAdapters(
        ecs=ECSSecurityGroupAdapter(client),
        rds=RDSWhitelistAdapter(client),
        redis=RedisWhitelistAdapter(client),
        clb=CLBAclAdapter(client),
    )
