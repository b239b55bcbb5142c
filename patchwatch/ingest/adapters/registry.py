"""Adapter registry."""

import logging
from typing import Type

from patchwatch.config import Settings, settings as default_settings
from patchwatch.ingest.adapters.base import AdapterPolicy, IdentityAdapter
from patchwatch.ingest.adapters.gogdb import GOGDBAdapter
from patchwatch.ingest.adapters.steamdb import SteamDBFeedAdapter

logger = logging.getLogger(__name__)

ADAPTERS: dict[str, Type[IdentityAdapter]] = {
    SteamDBFeedAdapter.name: SteamDBFeedAdapter,
    GOGDBAdapter.name: GOGDBAdapter,
}


def build_adapters(config: Settings = default_settings) -> list[IdentityAdapter]:
    """
    Instantiate the adapters enabled in configuration.

    Unknown names are logged and skipped.
    """
    policy = AdapterPolicy.from_settings(config)
    adapters = []
    for name in config.enabled_adapters:
        adapter_cls = ADAPTERS.get(name)
        if adapter_cls is None:
            logger.warning(f"Unknown identity adapter '{name}', skipping")
            continue
        adapters.append(adapter_cls(policy=policy, user_agent=config.adapter_user_agent))
    return adapters
