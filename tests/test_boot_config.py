import sys

import pytest

from bootherd.config import BootChainConfig, BootChainKind
from bootherd.errors import BootConfigError
from bootherd.services.boot_config import (
    DhcpBootConfigWriter,
    GrubBootConfigWriter,
    create_boot_config_writer,
    run_reload,
)

from conftest import ADDRESS_B, MAC_A, MAC_B, make_device


class TestDhcpWriter:

    @pytest.mark.asyncio
    async def test_dnsmasq(self, registry, tmp_path):
        await registry.upsert(make_device("a", mac_address=MAC_A))
        await registry.upsert(make_device("b", ADDRESS_B, mac_address=MAC_B))
        path = tmp_path / "dnsmasq.d" / "bootherd.conf"
        writer = DhcpBootConfigWriter(registry, BootChainKind.DNSMASQ, str(path))

        await writer.write_boot_config("b", "linux-a")
        await writer.write_boot_config("a", "linux-b")

        assert path.read_text() == (
            f"dhcp-host={MAC_A},set:a\n"
            'dhcp-option-force=tag:a,209,"pxelinux.cfg/linux-b"\n'
            f"dhcp-host={MAC_B},set:b\n"
            'dhcp-option-force=tag:b,209,"pxelinux.cfg/linux-a"\n'
        )

    @pytest.mark.asyncio
    async def test_isc_dhcpd(self, registry, tmp_path):
        await registry.upsert(make_device("a", mac_address=MAC_A))
        path = tmp_path / "bootherd.conf"
        writer = DhcpBootConfigWriter(registry, BootChainKind.ISC_DHCPD, str(path))

        await writer.write_boot_config("a", "linux-b")

        assert path.read_text() == (
            'class "a" {\n'
            f"    match if hardware = 1:{MAC_A};\n"
            '    option loader-configfile "pxelinux.cfg/linux-b";\n'
            "}\n"
        )

    @pytest.mark.asyncio
    async def test_rewrite_is_idempotent(self, registry, tmp_path):
        await registry.upsert(make_device("a", mac_address=MAC_A))
        path = tmp_path / "bootherd.conf"
        writer = DhcpBootConfigWriter(registry, BootChainKind.DNSMASQ, str(path))

        await writer.write_boot_config("a", "linux-b")
        first = path.read_text()
        await writer.write_boot_config("a", "linux-b")

        assert path.read_text() == first

    @pytest.mark.asyncio
    async def test_unknown_target(self, registry, tmp_path):
        await registry.upsert(make_device("a", mac_address=MAC_A))
        path = tmp_path / "bootherd.conf"
        writer = DhcpBootConfigWriter(registry, BootChainKind.DNSMASQ, str(path))

        with pytest.raises(BootConfigError, match="no boot target"):
            await writer.write_boot_config("a", "windows")
        assert not path.exists()

    @pytest.mark.asyncio
    async def test_needs_mac(self, registry, tmp_path):
        await registry.upsert(make_device("a"))
        writer = DhcpBootConfigWriter(registry, BootChainKind.DNSMASQ, str(tmp_path / "bootherd.conf"))

        with pytest.raises(BootConfigError, match="MAC"):
            await writer.write_boot_config("a", "linux-b")

    @pytest.mark.asyncio
    async def test_failed_write_keeps_previous_selection(self, registry, tmp_path):
        await registry.upsert(make_device("a", mac_address=MAC_A))
        # A directory where the file should be makes the write fail
        path = tmp_path / "bootherd.conf"
        path.mkdir()
        writer = DhcpBootConfigWriter(registry, BootChainKind.DNSMASQ, str(path))

        with pytest.raises(BootConfigError):
            await writer.write_boot_config("a", "linux-b")
        assert writer.selections == {}

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind", [BootChainKind.DNSMASQ, BootChainKind.ISC_DHCPD])
    async def test_new_writer_keeps_other_devices(self, registry, tmp_path, kind):
        await registry.upsert(make_device("a", mac_address=MAC_A))
        await registry.upsert(make_device("b", ADDRESS_B, mac_address=MAC_B))
        path = tmp_path / "bootherd.conf"
        before_restart = DhcpBootConfigWriter(registry, kind, str(path))
        await before_restart.write_boot_config("a", "linux-a")
        await before_restart.write_boot_config("b", "linux-b")

        after_restart = DhcpBootConfigWriter(registry, kind, str(path))
        assert after_restart.selections == before_restart.selections

        await after_restart.write_boot_config("a", "linux-b")

        assert after_restart.selections == {
            "a": (MAC_A, "pxelinux.cfg/linux-b"),
            "b": (MAC_B, "pxelinux.cfg/linux-b"),
        }
        assert path.read_text() == after_restart.render()

    def test_ignores_unrecognised_lines(self, registry, tmp_path):
        path = tmp_path / "bootherd.conf"
        path.write_text(
            "# managed by hand\n"
            f"dhcp-host={MAC_A},set:a\n"
            'dhcp-option-force=tag:a,209,"pxelinux.cfg/linux-a"\n'
            f"dhcp-host={MAC_B},set:b\n"
        )

        writer = DhcpBootConfigWriter(registry, BootChainKind.DNSMASQ, str(path))

        assert writer.selections == {"a": (MAC_A, "pxelinux.cfg/linux-a")}

    def test_rejects_grub_kind(self, registry, tmp_path):
        with pytest.raises(ValueError):
            DhcpBootConfigWriter(registry, BootChainKind.GRUB, str(tmp_path))


class TestGrubWriter:

    @pytest.mark.asyncio
    async def test_writes_per_device_file(self, registry, tmp_path):
        await registry.upsert(make_device("a"))
        writer = GrubBootConfigWriter(registry, str(tmp_path / "grub"))

        await writer.write_boot_config("a", "linux-b")

        assert (tmp_path / "grub" / "a.cfg").read_text() == "configfile pxelinux.cfg/linux-b\n"

    @pytest.mark.asyncio
    async def test_unknown_device(self, registry, tmp_path):
        writer = GrubBootConfigWriter(registry, str(tmp_path))

        with pytest.raises(BootConfigError):
            await writer.write_boot_config("nope", "linux-b")


class TestReload:

    @pytest.mark.asyncio
    async def test_success(self):
        await run_reload([sys.executable, "-c", "pass"])

    @pytest.mark.asyncio
    async def test_nonzero_exit(self):
        with pytest.raises(BootConfigError, match="exited with 3"):
            await run_reload([sys.executable, "-c", "import sys; sys.exit(3)"])

    @pytest.mark.asyncio
    async def test_missing_command(self):
        with pytest.raises(BootConfigError):
            await run_reload(["/nonexistent/reload-dhcp"])

    @pytest.mark.asyncio
    async def test_reload_failure_fails_the_write(self, registry, tmp_path):
        await registry.upsert(make_device("a"))
        writer = GrubBootConfigWriter(registry, str(tmp_path), reload_command=["/nonexistent/reload-dhcp"])

        with pytest.raises(BootConfigError):
            await writer.write_boot_config("a", "linux-b")


def test_factory(registry, tmp_path):
    grub = create_boot_config_writer(BootChainConfig(kind="grub", config_path=str(tmp_path)), registry)
    dhcp = create_boot_config_writer(BootChainConfig(kind="isc-dhcpd", config_path=str(tmp_path / "f")), registry)

    assert isinstance(grub, GrubBootConfigWriter)
    assert isinstance(dhcp, DhcpBootConfigWriter)
    assert dhcp.kind == BootChainKind.ISC_DHCPD
