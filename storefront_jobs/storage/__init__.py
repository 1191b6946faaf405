from .cache import RedisCache
from .orders import Order, OrderStorage

__all__ = ["Order", "OrderStorage", "RedisCache"]
