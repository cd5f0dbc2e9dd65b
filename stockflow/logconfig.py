"""
ログ設定

各モジュールは logging.getLogger(__name__) を使う。
ハンドラの設定はサービスの lifespan で一度だけ行う。
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(name)s] %(message)s"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    if not any(getattr(h, "_stockflow", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._stockflow = True
        root.addHandler(handler)
    root.setLevel(level.upper())

    # ライブラリのログは抑える
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
