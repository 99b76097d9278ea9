#!/usr/bin/env python3
"""cloud-whitelist-manager - Keep cloud whitelists pointed at your public IP

Watches the public IP of the machine it runs on and, whenever it changes,
replaces the old IP with the new one in Alibaba Cloud whitelists:

    - ECS security group rules
    - RDS whitelist groups
    - Redis (KVStore) whitelist groups
    - CLB access control lists

Resources, accounts and IP sources are described in a YAML config file (see
config.example.yaml). The first successful IP lookup after startup always
triggers a full update so the whitelists converge regardless of prior state.

Environment variables:

    CONFIG_PATH              Path to the YAML config file (default: config.yaml)
                             The --config flag takes precedence.
    SYNC_MODE                "once" or "watch" (polling loop) (default: watch)
    LOG_LEVEL                DEBUG, INFO, WARNING, ERROR (default: INFO)
    ALIYUN_CONNECT_TIMEOUT   Cloud API connect timeout in seconds (default: 5)
    ALIYUN_READ_TIMEOUT      Cloud API read timeout in seconds (default: 10)

In watch mode the config file is checked for changes on every tick and
reloaded in place; the last known IP survives the reload.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from typing import List, Optional

from .aliyun import AliyunClient, create_account_adapters
from .config import Account, Config, load_config
from .errors import ConfigurationError
from .reconciler import AccountReconciler, ReconciliationDriver

# =============================================================================
# Configuration
# =============================================================================

CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
SYNC_MODE = os.getenv("SYNC_MODE", "watch").lower().strip()
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
ALIYUN_CONNECT_TIMEOUT = int(os.getenv("ALIYUN_CONNECT_TIMEOUT", "5"))
ALIYUN_READ_TIMEOUT = int(os.getenv("ALIYUN_READ_TIMEOUT", "10"))

# =============================================================================
# Logging Setup
# =============================================================================

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logging.getLogger("aliyunsdkcore").setLevel(logging.WARNING)
logging.getLogger("urllib3").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

# =============================================================================
# File Watching Utilities
# =============================================================================


def get_config_file_mtime(config_path: str) -> float:
    """Get modification time of config file, returns 0 if file doesn't exist."""
    try:
        return os.path.getmtime(config_path) if os.path.exists(config_path) else 0.0
    except (OSError, IOError):
        return 0.0


# =============================================================================
# Wiring
# =============================================================================


def describe_account(account: Account) -> str:
    parts = []
    for label, section in (
        ("ECS", account.ecs),
        ("RDS", account.rds),
        ("Redis", account.redis),
        ("CLB", account.clb),
    ):
        if section.enabled:
            parts.append(f"{label}x{len(section.targets)}")
    return ", ".join(parts) if parts else "no resources enabled"


def build_reconcilers(config: Config) -> List[AccountReconciler]:
    """Create one cloud client and reconciler per configured account."""
    reconcilers: List[AccountReconciler] = []
    for account in config.accounts:
        client = AliyunClient(
            account,
            connect_timeout=ALIYUN_CONNECT_TIMEOUT,
            read_timeout=ALIYUN_READ_TIMEOUT,
        )
        reconcilers.append(AccountReconciler(account, create_account_adapters(client)))
        logger.info(
            f"Aliyun client created for account {account.name} "
            f"({account.region_id}: {describe_account(account)})"
        )
    return reconcilers


def reload_config(config_path: str, driver: ReconciliationDriver) -> Optional[Config]:
    """Reload the config file into a running driver.

    Returns the new config, or None if it could not be loaded; the driver then
    keeps its previous configuration.
    """
    try:
        config = load_config(config_path)
        driver.replace_configuration(
            ip_sources=config.ip_sources, reconcilers=build_reconcilers(config)
        )
    except ConfigurationError as e:
        logger.error(f"Failed to reload configuration: {e}")
        logger.warning("Continuing with previous configuration")
        return None

    logger.info(
        f"Reloaded {len(config.accounts)} account(s): "
        f"{', '.join(a.name for a in config.accounts)}"
    )
    return config


# =============================================================================
# Main
# =============================================================================


def run(config_path: str, sync_mode: str, stop_event: threading.Event) -> None:
    """Load the config and run triggers until stop_event is set (or once)."""
    if sync_mode not in ("once", "watch"):
        raise ConfigurationError(f"Invalid SYNC_MODE: {sync_mode}. Use 'once' or 'watch'")

    config = load_config(config_path)
    logger.info("Configuration loaded successfully")
    logger.info(f"IP sources: {', '.join(s.describe() for s in config.ip_sources)}")
    logger.info(f"Sync mode: {sync_mode}")

    driver = ReconciliationDriver(
        ip_sources=config.ip_sources, reconcilers=build_reconcilers(config)
    )

    logger.info("Running initial IP update")
    driver.on_trigger()

    if sync_mode == "once":
        return

    logger.info(f"Check interval: {config.interval}s")
    last_mtime = get_config_file_mtime(config_path)

    while not stop_event.wait(config.interval):
        current_mtime = get_config_file_mtime(config_path)
        if current_mtime != last_mtime:
            last_mtime = current_mtime
            logger.info(f"Config change detected in: {os.path.basename(config_path)}")
            config = reload_config(config_path, driver) or config

        logger.info("Running scheduled IP update")
        driver.on_trigger()


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="cloud-whitelist-manager",
        description="Keep Alibaba Cloud whitelists in sync with the current public IP.",
    )
    parser.add_argument(
        "--config", default=CONFIG_PATH, help="Path to configuration file (default: %(default)s)"
    )
    args = parser.parse_args(argv)

    stop_event = threading.Event()

    def _handle_signal(signum, frame):
        logger.info("Received shutdown signal, exiting...")
        stop_event.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    try:
        run(args.config, SYNC_MODE, stop_event)
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
