"""Exception types shared across cloud-whitelist-manager.

Target-level errors (GroupNotFoundError, ProviderCallError) are caught by the
account reconciler and reported per target. SourceExhaustedError aborts a
single cycle. ConfigurationError is only raised while loading configuration.
"""

from __future__ import annotations

from typing import List, Optional


class WhitelistManagerError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(WhitelistManagerError):
    """Raised when the configuration file cannot be loaded or is invalid."""


class IPSourceError(WhitelistManagerError):
    """Raised by a single IP source; the resolver moves on to the next source."""


class SourceExhaustedError(WhitelistManagerError):
    """Raised when no configured IP source produced a valid address."""

    def __init__(self, failures: List[str]):
        self.failures = failures
        detail = "; ".join(failures) if failures else "no IP sources configured"
        super().__init__(f"Failed to get IP from all configured sources: {detail}")


class GroupNotFoundError(WhitelistManagerError):
    """Raised when a configured whitelist group does not exist on an instance."""

    def __init__(self, group_name: str, instance_id: str, service: str):
        self.group_name = group_name
        self.instance_id = instance_id
        self.service = service
        super().__init__(
            f"whitelist group {group_name} not found for {service} instance {instance_id}"
        )


class ProviderCallError(WhitelistManagerError):
    """Raised when a cloud API call fails."""

    def __init__(self, message: str, error_code: Optional[str] = None):
        self.error_code = error_code
        super().__init__(message)


class PartialReplaceError(ProviderCallError):
    """Raised when an ACL was cleared but the new entries could not be added."""
