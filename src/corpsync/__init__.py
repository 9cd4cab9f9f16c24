"""corpsync - EVE Online 军团数据同步服务."""

__version__ = "0.1.0"
