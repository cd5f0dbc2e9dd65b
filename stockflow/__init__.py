"""stockflow - 注文サービスと在庫サービスをイベントで連携させる"""

__version__ = "0.1.0"
