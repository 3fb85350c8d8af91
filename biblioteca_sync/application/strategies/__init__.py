from biblioteca_sync.application.strategies.incremental import IncrementalSyncStrategy
from biblioteca_sync.application.strategies.one_way import OneWaySyncStrategy
from biblioteca_sync.application.strategies.two_way import TwoWaySyncStrategy

__all__ = ["IncrementalSyncStrategy", "OneWaySyncStrategy", "TwoWaySyncStrategy"]
