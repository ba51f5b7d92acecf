from .config import PipelineConfig, load_config
from .store import CheckInStore, InMemoryCheckInStore, JsonFileCheckInStore, PersistenceRetryQueue

__all__ = [
    "PipelineConfig",
    "load_config",
    "CheckInStore",
    "InMemoryCheckInStore",
    "JsonFileCheckInStore",
    "PersistenceRetryQueue",
]
