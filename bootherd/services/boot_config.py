"""Boot chain integration - tells the network-boot chain which target a device boots next.

Writers are idempotent: writing the same selection twice serves the same
configuration. A failed write raises BootConfigError and the caller must not
power-cycle the device afterwards.
"""

import asyncio
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from bootherd.config import BootChainConfig, BootChainKind
from bootherd.core.device import Device, Target
from bootherd.core.registry import DeviceRegistry
from bootherd.errors import BootConfigError

logger = logging.getLogger(__name__)

# Patterns matching the lines DhcpBootConfigWriter.render emits
DNSMASQ_HOST = re.compile(r"^dhcp-host=([0-9A-Fa-f:]+),set:(\S+)$", re.MULTILINE)
DNSMASQ_OPTION = re.compile(r'^dhcp-option-force=tag:([^,]+),209,"([^"]*)"$', re.MULTILINE)
ISC_CLASS = re.compile(
    r'^class "([^"]+)" \{\n'
    r"\s*match if hardware = 1:([0-9A-Fa-f:]+);\n"
    r'\s*option loader-configfile "([^"]*)";\n'
    r"\}$",
    re.MULTILINE,
)


def write_atomically(path: Path, content: str):
    """Replace a file's content so readers never see a partial write."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp_path, path)
    except BaseException:
        os.unlink(tmp_path)
        raise


class BootConfigWriter:
    """Base class for boot chain writers."""

    def __init__(self, registry: DeviceRegistry):
        self.registry = registry

    def resolve(self, device_id: str, target: str) -> Tuple[Device, Target]:
        """Look up a device and the boot target it should load."""
        device = self.registry.get(device_id)
        if device is None:
            raise BootConfigError(f"Unknown device {device_id}")
        ref = device.boot_targets.get(target)
        if ref is None:
            known = ", ".join(sorted(device.boot_targets)) or "none"
            raise BootConfigError(f"Device {device_id} has no boot target {target!r} (known: {known})")
        return device, Target(identifier=target, boot_config_ref=ref)

    async def write_boot_config(self, device_id: str, target: str):
        raise NotImplementedError


class DhcpBootConfigWriter(BootConfigWriter):
    """
    Renders a DHCP server include file that points each device at its
    selected boot config, then reloads the DHCP server.

    dnsmasq passes the reference in option 209 (PXELINUX config file);
    ISC dhcpd gets one class per device matching its hardware address.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        kind: BootChainKind,
        config_path: str,
        reload_command: Optional[List[str]] = None,
    ):
        super().__init__(registry)
        if kind not in (BootChainKind.DNSMASQ, BootChainKind.ISC_DHCPD):
            raise ValueError(f"Not a DHCP server kind: {kind}")
        self.kind = kind
        self.config_path = Path(config_path)
        self.reload_command = reload_command

        # device_id -> (mac, boot_config_ref)
        self.selections: Dict[str, Tuple[str, str]] = self.load()
        self._lock = asyncio.Lock()

    def load(self) -> Dict[str, Tuple[str, str]]:
        """Read back the selections served by an existing include file."""
        if not self.config_path.is_file():
            return {}
        content = self.config_path.read_text(encoding="utf-8")

        if self.kind == BootChainKind.DNSMASQ:
            macs = {device_id: mac for mac, device_id in DNSMASQ_HOST.findall(content)}
            refs = dict(DNSMASQ_OPTION.findall(content))
        else:
            macs, refs = {}, {}
            for device_id, mac, ref in ISC_CLASS.findall(content):
                macs[device_id] = mac
                refs[device_id] = ref

        selections = {device_id: (macs[device_id], ref) for device_id, ref in refs.items() if device_id in macs}
        if selections:
            logger.info(f"Loaded {len(selections)} boot selection(s) from {self.config_path}")
        return selections

    def render(self) -> str:
        """Render the include file for the current selections."""
        lines = []
        for device_id in sorted(self.selections):
            mac, ref = self.selections[device_id]
            if self.kind == BootChainKind.DNSMASQ:
                lines.append(f"dhcp-host={mac},set:{device_id}")
                lines.append(f'dhcp-option-force=tag:{device_id},209,"{ref}"')
            else:
                lines.append(f'class "{device_id}" {{')
                lines.append(f"    match if hardware = 1:{mac};")
                lines.append(f'    option loader-configfile "{ref}";')
                lines.append("}")
        return "\n".join(lines) + "\n" if lines else ""

    async def write_boot_config(self, device_id: str, target: str):
        """Select a target for a device and push it to the DHCP server."""
        device, selected = self.resolve(device_id, target)
        ref = selected.boot_config_ref
        if not device.mac_address:
            raise BootConfigError(f"Device {device_id} has no MAC address; the DHCP server cannot identify it")

        async with self._lock:
            previous = self.selections.get(device_id)
            self.selections[device_id] = (device.mac_address, ref)
            try:
                write_atomically(self.config_path, self.render())
            except OSError as e:
                self._restore(device_id, previous)
                raise BootConfigError(f"Could not write DHCP configuration {self.config_path}: {e}") from e

            logger.info(f"Boot config for {device_id} set to {target} ({ref}) in {self.config_path}")
            await run_reload(self.reload_command)

    def _restore(self, device_id: str, previous: Optional[Tuple[str, str]]):
        if previous is None:
            self.selections.pop(device_id, None)
        else:
            self.selections[device_id] = previous


class GrubBootConfigWriter(BootConfigWriter):
    """Writes one GRUB config per device that chains to the selected target's config."""

    def __init__(self, registry: DeviceRegistry, config_dir: str, reload_command: Optional[List[str]] = None):
        super().__init__(registry)
        self.config_dir = Path(config_dir)
        self.reload_command = reload_command

    def path_for(self, device_id: str) -> Path:
        return self.config_dir / f"{device_id}.cfg"

    async def write_boot_config(self, device_id: str, target: str):
        """Point a device's GRUB config at the selected target."""
        _, selected = self.resolve(device_id, target)
        ref = selected.boot_config_ref
        path = self.path_for(device_id)
        try:
            write_atomically(path, f"configfile {ref}\n")
        except OSError as e:
            raise BootConfigError(f"Could not write GRUB config {path}: {e}") from e

        logger.info(f"Boot config for {device_id} set to {target} ({ref}) in {path}")
        await run_reload(self.reload_command)


async def run_reload(command: Optional[List[str]]):
    """Run the boot chain's reload command, if any, and wait for it."""
    if not command:
        return
    try:
        process = await asyncio.create_subprocess_exec(
            *command,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
    except OSError as e:
        raise BootConfigError(f"Could not run `{' '.join(command)}`: {e}") from e

    if process.returncode != 0:
        message = stderr.decode("utf-8", errors="replace").strip()
        raise BootConfigError(f"`{' '.join(command)}` exited with {process.returncode}: {message}")
    logger.debug(f"Reloaded boot chain with `{' '.join(command)}`")


def create_boot_config_writer(config: BootChainConfig, registry: DeviceRegistry) -> BootConfigWriter:
    """Build the writer for the configured boot chain."""
    if config.kind == BootChainKind.GRUB:
        return GrubBootConfigWriter(registry, config.config_path, config.reload_command)
    return DhcpBootConfigWriter(registry, config.kind, config.config_path, config.reload_command)
