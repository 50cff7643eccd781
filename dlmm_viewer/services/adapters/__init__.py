"""
Event source registry: builds the configured position history source.
"""

import importlib
import logging
from typing import Callable, Dict, List

from dlmm_viewer.core.config import Settings

from .base import EventDecoder, EventSource, LivePositionState, PoolState, RawPositionHistory
from .dlmm_accounts import DlmmAccountService
from .indexer import IndexerEventSource
from .onchain import OnChainEventSource

logger = logging.getLogger(__name__)


def load_decoder(path: str) -> EventDecoder:
    """
    Resolve a "module:attribute" path to a decoder. Classes are
    instantiated without arguments; anything else is used as is.
    """
    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ValueError(f"Event decoder must be given as module:attribute, got {path!r}")
    target = getattr(importlib.import_module(module_name), attribute)
    return target() if isinstance(target, type) else target


def _build_indexer(settings: Settings, **services) -> EventSource:
    return IndexerEventSource(services["meteora"], services["accounts"])


def _build_onchain(settings: Settings, **services) -> EventSource:
    if not settings.event_decoder:
        raise ValueError("EVENT_DECODER is required when EVENT_SOURCE=onchain")
    decoder = load_decoder(settings.event_decoder)
    return OnChainEventSource(services["rpc"], decoder, settings.dlmm_program_id)


class EventSourceRegistry:
    """Registry of event source factories, keyed by source name"""

    _factories: Dict[str, Callable[..., EventSource]] = {
        "indexer": _build_indexer,
        "onchain": _build_onchain,
    }

    @classmethod
    def register(cls, name: str, factory: Callable[..., EventSource]) -> None:
        """Register a factory taking (settings, **services)"""
        cls._factories[name] = factory

    @classmethod
    def list_sources(cls) -> List[str]:
        return list(cls._factories.keys())

    @classmethod
    def create(cls, settings: Settings, **services) -> EventSource:
        """Build the source named by settings.event_source"""
        factory = cls._factories.get(settings.event_source)
        if factory is None:
            raise ValueError(f"Unknown event source {settings.event_source!r}; known: {cls.list_sources()}")
        source = factory(settings, **services)
        logger.info(f"Using {source.source_name} event source")
        return source


__all__ = [
    'EventSourceRegistry',
    'EventSource',
    'EventDecoder',
    'RawPositionHistory',
    'PoolState',
    'LivePositionState',
    'DlmmAccountService',
    'IndexerEventSource',
    'OnChainEventSource',
    'load_decoder',
]
