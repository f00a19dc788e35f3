# SQLAlchemy models
from bootherd.models.base import Base, TimestampMixin
from bootherd.models.device import DeviceRecord

__all__ = ["Base", "TimestampMixin", "DeviceRecord"]
