"""
設定 - 環境変数から読み込む

各サービスは起動時に一度だけ load_settings() を呼び、
以降は Settings を引数として明示的に受け渡す。
"""

import os
import socket

from pydantic import BaseModel


class Settings(BaseModel):
    database_url: str = "sqlite+aiosqlite:///./stockflow.db"
    redis_url: str = "redis://localhost:6379"
    inventory_service_url: str = "http://localhost:8001"
    availability_timeout: float = 5.0

    # イベントバス
    event_bus: str = "redis"  # "redis" | "memory"
    event_partitions: int = 4
    consumer_group: str = "inventory-service"
    consumer_name: str = socket.gethostname()
    max_deliveries: int = 5
    consumer_retry_delay: float = 1.0
    consumer_retry_max: float = 30.0

    # Outbox ディスパッチャ
    outbox_poll_interval: float = 1.0
    outbox_batch_size: int = 100
    outbox_retry_base: float = 0.5
    outbox_retry_max: float = 60.0

    log_level: str = "INFO"


def load_settings(environ: dict[str, str] | None = None) -> Settings:
    """環境変数 (大文字のフィールド名) から Settings を組み立てる。"""
    environ = os.environ if environ is None else environ
    values = {
        name: environ[name.upper()]
        for name in Settings.model_fields
        if name.upper() in environ
    }
    return Settings(**values)
