from ferry.core.types import (
    ContentType,
    DataSourceConfig,
    Origin,
    QueueItem,
    QueueState,
    SourceType,
)

__all__ = ["ContentType", "DataSourceConfig", "Origin", "QueueItem", "QueueState", "SourceType"]
