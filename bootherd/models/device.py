"""Persisted device state."""

from sqlalchemy import Column, String, DateTime, JSON

from bootherd.models.base import Base, TimestampMixin


class DeviceRecord(Base, TimestampMixin):
    """Runtime state of a managed device, kept across controller restarts."""

    __tablename__ = "devices"

    id = Column(String, primary_key=True)  # e.g., "htpc"
    address = Column(String, nullable=False)  # host:port of the agent
    mac_address = Column(String, nullable=True)
    boot_targets = Column(JSON, default=dict)  # target -> boot config reference

    # Observed and requested boot targets
    current_target = Column(String, nullable=True)
    desired_target = Column(String, nullable=True)

    # Status
    power_state = Column(String, default="unknown")  # unknown, online, rebooting, ...
    last_seen = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<DeviceRecord {self.id}: {self.current_target} ({self.power_state})>"
