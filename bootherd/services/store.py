"""Device state persistence backed by SQLAlchemy."""

import logging
from typing import Dict, List

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from bootherd.core.device import Device, PowerState
from bootherd.models import Base, DeviceRecord

logger = logging.getLogger(__name__)


class DeviceStore:
    """
    Keeps the runtime state of devices (observed/desired targets, power
    state, last seen) so a restarted controller can resume pending switches.
    """

    def __init__(self, database_url: str):
        # The registry calls the store from worker threads
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
        self.engine = create_engine(database_url, connect_args=connect_args)
        self.Session = sessionmaker(bind=self.engine, expire_on_commit=False)
        Base.metadata.create_all(self.engine)
        logger.info(f"Device store ready at {self.engine.url.render_as_string(hide_password=True)}")

    def load_all(self) -> Dict[str, DeviceRecord]:
        """Load every persisted device record, keyed by ID."""
        with self.Session() as session:
            records: List[DeviceRecord] = session.query(DeviceRecord).all()
        return {record.id: record for record in records}

    def save(self, device: Device):
        """Insert or update a device's record."""
        with self.Session.begin() as session:
            record = session.get(DeviceRecord, device.id)
            if record is None:
                record = DeviceRecord(id=device.id)
                session.add(record)
            record.address = device.address
            record.mac_address = device.mac_address
            record.boot_targets = dict(device.boot_targets)
            record.current_target = device.current_target
            record.desired_target = device.desired_target
            record.power_state = device.power_state.value
            record.last_seen = device.last_seen

    def delete(self, device_id: str):
        """Delete a device's record if present."""
        with self.Session.begin() as session:
            record = session.get(DeviceRecord, device_id)
            if record is not None:
                session.delete(record)

    def close(self):
        self.engine.dispose()


def merge_persisted(device: Device, record: DeviceRecord) -> Device:
    """Apply persisted runtime state to a freshly configured device.

    A desired target set in configuration takes precedence over the persisted one.
    """
    power_state = PowerState(record.power_state) if record.power_state else PowerState.UNKNOWN
    if power_state == PowerState.ONLINE and not record.current_target:
        power_state = PowerState.UNKNOWN
    return device.model_copy(update={
        "current_target": record.current_target,
        "desired_target": device.desired_target or record.desired_target,
        "power_state": power_state,
        "last_seen": record.last_seen,
    })


def device_from_record(record: DeviceRecord) -> Device:
    """Rebuild a device that was registered at runtime rather than in configuration."""
    return merge_persisted(
        Device(
            id=record.id,
            address=record.address,
            mac_address=record.mac_address,
            boot_targets=record.boot_targets or {},
        ),
        record,
    )
