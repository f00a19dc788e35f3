"""bootherd agent - Configuration."""

import os
import sys
from typing import List, Optional, Tuple, Type

from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

from bootherd.protocol import PowerAction


# Defaults follow what each OS offers out of the box. macOS goes through
# System Events so the shutdown behaves like one started from the GUI.

def default_reboot_command() -> Optional[List[str]]:
    if sys.platform.startswith("linux"):
        return ["systemctl", "reboot"]
    if sys.platform == "darwin":
        return ["osascript", "-e", 'tell app "System Events" to restart']
    if sys.platform == "win32":
        return ["shutdown", "/r"]
    return None


def default_shutdown_command() -> Optional[List[str]]:
    if sys.platform.startswith("linux"):
        return ["systemctl", "poweroff"]
    if sys.platform == "darwin":
        return ["osascript", "-e", 'tell app "System Events" to shut down']
    if sys.platform == "win32":
        return ["shutdown", "/s"]
    return None


def default_suspend_command() -> Optional[List[str]]:
    # No Windows default: it depends on whether hibernation is enabled
    if sys.platform.startswith("linux"):
        return ["systemctl", "suspend"]
    if sys.platform == "darwin":
        return ["pmset", "sleepnow"]
    return None


class AgentSettings(BaseSettings):
    """Agent settings loaded from the environment and a TOML file."""

    model_config = SettingsConfigDict(
        env_prefix="BOOTHERD_AGENT_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    debug: bool = False

    # gRPC
    listen_address: str = "0.0.0.0:50051"

    # Boot target this installation reports on Ping
    target_name: str = "default"

    # Power commands (argv); None disables the RPC
    reboot_command: Optional[List[str]] = default_reboot_command()
    shutdown_command: Optional[List[str]] = default_shutdown_command()
    suspend_command: Optional[List[str]] = default_suspend_command()

    # Authorization policy: caller hosts allowed to request power actions (empty = any)
    allowed_callers: List[str] = []
    allowed_actions: List[PowerAction] = list(PowerAction)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        toml_file = os.environ.get("BOOTHERD_AGENT_CONFIG", "bootherd-agent.toml")
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=toml_file),
            file_secret_settings,
        )


settings = AgentSettings()
