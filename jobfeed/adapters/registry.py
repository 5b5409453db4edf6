import logging
from typing import Dict, Iterable, List, Optional, Union

from .base import BaseAdapter
from ..database import SourceEnum

logger = logging.getLogger(__name__)


class AdapterRegistry:
    """Explicitly registered adapter instances, one per source."""

    def __init__(self, adapters: Iterable[BaseAdapter] = ()):
        self._adapters: Dict[SourceEnum, BaseAdapter] = {}
        for adapter in adapters:
            self.register(adapter)

    def register(self, adapter: BaseAdapter) -> BaseAdapter:
        if adapter.source in self._adapters:
            raise ValueError(f"adapter for {adapter.source.value} already registered")
        self._adapters[adapter.source] = adapter
        return adapter

    def get(self, source: Union[SourceEnum, str]) -> BaseAdapter:
        """Raises KeyError for sources nobody registered."""
        if isinstance(source, str):
            try:
                source = SourceEnum(source)
            except ValueError:
                raise KeyError(source) from None
        return self._adapters[source]

    def __contains__(self, source) -> bool:
        try:
            self.get(source)
        except KeyError:
            return False
        return True

    def __len__(self) -> int:
        return len(self._adapters)

    def all(self) -> List[BaseAdapter]:
        return list(self._adapters.values())

    def fast(self, only: Optional[Iterable[str]] = None) -> List[BaseAdapter]:
        """Adapters cheap enough for a live request, in registration order."""
        allowed = set(only or [])
        return [a for a in self._adapters.values()
                if a.fast and a.available and (not allowed or a.name in allowed)]

    async def close(self):
        """Closes the HTTP sessions shared by the registered adapters."""
        clients = {}
        for adapter in self._adapters.values():
            client = getattr(adapter, 'http_client', None)
            if client is not None:
                clients[id(client)] = client
        for client in clients.values():
            await client.close()

    def paid(self) -> List[BaseAdapter]:
        return [a for a in self._adapters.values() if a.paid and a.available]

    def ordered(self, names: Iterable[str]) -> List[BaseAdapter]:
        """Adapters for `names` in that order; unknown or unusable ones are skipped."""
        adapters = []
        for name in names:
            try:
                adapter = self.get(name)
            except KeyError:
                logger.warning(f"[Registry] No adapter registered for '{name}', skipping")
                continue
            if not adapter.available:
                logger.info(f"[Registry] {adapter.label} DISABLED: missing credentials")
                continue
            adapters.append(adapter)
        return adapters


def build_default_registry(settings) -> AdapterRegistry:
    from .api_adapters import AdzunaAdapter, JSearchAdapter, RemoteOKAdapter, RemotiveAdapter
    from .http_adapters import (HTTPClient, IndeedAdapter, JoobleAdapter, LinkedInAdapter, NaukriAdapter,
                                ProxyManager, WeWorkRemotelyAdapter)
    from .telegram import TelegramAdapter

    http_client = HTTPClient(ProxyManager(settings.proxy_list))
    registry = AdapterRegistry([
        RemotiveAdapter(),
        RemoteOKAdapter(),
        WeWorkRemotelyAdapter(http_client=http_client),
        IndeedAdapter(http_client=http_client),
        LinkedInAdapter(http_client=http_client),
        NaukriAdapter(http_client=http_client),
        TelegramAdapter(settings.telegram_api_id, settings.telegram_api_hash,
                        settings.telegram_session_string, settings.telegram_channels),
        AdzunaAdapter(settings.adzuna_app_id, settings.adzuna_app_key),
        JoobleAdapter(settings.jooble_api_key, http_client=http_client),
        JSearchAdapter(settings.rapidapi_key),
    ])

    disabled = [a.label for a in registry.all() if not a.available]
    if disabled:
        logger.warning(f"Adapters DISABLED (missing credentials): {', '.join(disabled)}")
    return registry
