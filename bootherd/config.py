"""bootherd controller - Configuration."""

import os
import re
from enum import Enum
from typing import Dict, List, Optional, Tuple, Type

from pydantic import BaseModel, field_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

DEVICE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
MAC_PATTERN = re.compile(r"^([0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}$")


def normalize_mac(value: str) -> str:
    """Validate a MAC address and return it as lower-case, colon separated."""
    if not MAC_PATTERN.match(value):
        raise ValueError(f"Invalid MAC address: {value!r}")
    return value.replace("-", ":").lower()


def validate_address(value: str) -> str:
    """Validate a host:port agent address."""
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit() or not 0 < int(port) < 65536:
        raise ValueError(f"Agent address must be host:port, got {value!r}")
    return value


class DeviceConfig(BaseModel):
    """Controller-side configuration of one device."""

    # host:port of the device's agent
    address: str

    # Needed for DHCP-served boot configs and Wake-on-LAN
    mac_address: Optional[str] = None

    # Boot target name -> reference the boot chain serves for it
    # (a PXE/GRUB config file path or menu entry)
    boot_targets: Dict[str, str] = {}

    desired_target: Optional[str] = None

    @field_validator("address")
    @classmethod
    def _check_address(cls, value: str) -> str:
        return validate_address(value)

    @field_validator("mac_address")
    @classmethod
    def _check_mac(cls, value: Optional[str]) -> Optional[str]:
        return normalize_mac(value) if value else None


class BootChainKind(str, Enum):
    DNSMASQ = "dnsmasq"
    ISC_DHCPD = "isc-dhcpd"
    GRUB = "grub"


class BootChainConfig(BaseModel):
    """How boot target selections reach the network-boot chain."""

    kind: BootChainKind = BootChainKind.DNSMASQ

    # DHCP include file for dnsmasq/isc-dhcpd, or a directory of per-device GRUB configs
    config_path: str = "/etc/dnsmasq.d/bootherd.conf"

    # Run after writing, e.g. ["systemctl", "reload", "dnsmasq"]
    reload_command: Optional[List[str]] = None


class Timings(BaseModel):
    """Retry, polling and deadline tunables for orchestrators (seconds)."""

    ping_timeout: float = 2.0
    action_timeout: float = 10.0
    action_attempts: int = 3
    retry_backoff: float = 1.0
    retry_backoff_cap: float = 8.0

    # How long a device may keep answering Ping after accepting a reboot
    # before we assume the reboot cycle was too fast to observe
    offline_grace_period: float = 15.0

    # Measured from the moment the power action was accepted
    online_deadline: float = 300.0

    poll_interval: float = 2.0
    poll_interval_cap: float = 10.0
    suspend_verify_grace: float = 10.0


class Settings(BaseSettings):
    """Controller settings loaded from the environment and a TOML file."""

    model_config = SettingsConfigDict(
        env_prefix="BOOTHERD_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = "development"
    debug: bool = False

    # HTTP API
    host: str = "0.0.0.0"
    port: int = 8000

    # Optional persistence of the device registry
    database_url: Optional[str] = None

    # Fleet
    devices: Dict[str, DeviceConfig] = {}
    boot_chain: BootChainConfig = BootChainConfig()
    timings: Timings = Timings()

    # Background Ping of idle devices, 0 disables
    state_poll_interval: float = 5.0

    # Wake-on-LAN
    wake_broadcast_address: str = "255.255.255.255"
    wake_port: int = 9

    @field_validator("devices")
    @classmethod
    def _check_device_ids(cls, value: Dict[str, DeviceConfig]) -> Dict[str, DeviceConfig]:
        for device_id in value:
            if not DEVICE_ID_PATTERN.match(device_id):
                raise ValueError(
                    f"Device IDs may only contain letters, digits, '-' and '_'. Got {device_id!r}"
                )
        return value

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        toml_file = os.environ.get("BOOTHERD_CONFIG", "bootherd.toml")
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=toml_file),
            file_secret_settings,
        )


settings = Settings()
