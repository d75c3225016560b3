# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Configuration loader for SMTP domains declared in config.ini.

Besides the admin API and CLI, outbound domains can be declared in the
``[domains]`` section of the service configuration file. They are loaded
into the registry at startup; domains whose id already exists are left
untouched, since domains are immutable once created.

Example:
    Configuration file format (config.ini)::

        [domains]
        domain.relay-a.host = smtp.relay-a.example
        domain.relay-a.port = 465
        domain.relay-a.secure = true
        domain.relay-a.username = mailer
        domain.relay-a.password = secret
        domain.relay-a.from = no-reply@relay-a.example
        domain.relay-a.limit = 100
        domain.relay-a.order = 0

    Loading domains into the database::

        count = await load_domains_from_config("/etc/cocoinbox/config.ini", allocator)
"""

from __future__ import annotations

import configparser
from pathlib import Path
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from .logger import get_logger
from .models import DomainCreate

if TYPE_CHECKING:
    from .domains import DomainAllocator

logger = get_logger("DomainConfigLoader")

DOMAIN_FIELDS = {"host", "port", "secure", "username", "password", "from", "limit", "order"}


class DomainConfigLoader:
    """Parser for the ``[domains]`` section of an INI configuration file."""

    def __init__(self, config_path: str):
        """Initialize with path to config.ini file."""
        self.config_path = config_path
        self.config = configparser.ConfigParser()

    def load_config(self) -> None:
        """Load the configuration file."""
        if not Path(self.config_path).exists():
            raise FileNotFoundError(f"Config file not found: {self.config_path}")
        self.config.read(self.config_path)

    def parse_domains(self) -> list[DomainCreate]:
        """Parse domains from the [domains] section.

        Returns:
            Validated domain payloads, with the key name as domain id.

        Raises:
            ValueError: If a declared domain is incomplete or invalid.
        """
        if not self.config.has_section("domains"):
            logger.debug("No [domains] section found in config file")
            return []

        raw: dict[str, dict[str, Any]] = {}
        for key, value in self.config.items("domains"):
            parts = key.split(".", 2)
            if len(parts) != 3 or parts[0] != "domain":
                logger.warning(f"Ignoring invalid key in [domains] section: {key}")
                continue
            _, name, field = parts
            if field not in DOMAIN_FIELDS:
                logger.warning(f"Unknown domain field: {field} (in {key})")
                continue
            raw.setdefault(name, {"id": name})[field] = value.strip()

        domains: list[DomainCreate] = []
        for name, data in raw.items():
            try:
                domains.append(DomainCreate.model_validate(data))
            except ValidationError as e:
                logger.error(f"Invalid domain '{name}' in config: {e}")
                raise ValueError(f"Invalid domain '{name}' in config: {e}") from e

        logger.info(f"Parsed {len(domains)} domains from config")
        return domains

    async def load_into_db(self, allocator: DomainAllocator) -> int:
        """Register parsed domains that are not in the database yet.

        Returns:
            Number of domains added.
        """
        domains = self.parse_domains()
        if not domains:
            return 0

        existing = {d.id for d in await allocator.list_domains_by_priority()}
        added = 0
        for domain in domains:
            if domain.id in existing:
                continue
            await allocator.add_domain(domain)
            added += 1
        return added


async def load_domains_from_config(config_path: str, allocator: DomainAllocator) -> int:
    """Convenience function to load domains from a config file.

    Args:
        config_path: Path to config.ini file
        allocator: Allocator used to register the domains

    Returns:
        Number of domains added
    """
    loader = DomainConfigLoader(config_path)
    loader.load_config()
    return await loader.load_into_db(allocator)
