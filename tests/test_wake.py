import pytest

from bootherd.services.wake import Waker, build_magic_packet


def test_magic_packet():
    packet = build_magic_packet("AA-BB-CC-DD-EE-01")

    assert len(packet) == 102
    assert packet[:6] == b"\xff" * 6
    assert packet[6:12] == bytes.fromhex("aabbccddee01")
    assert packet[6:] == bytes.fromhex("aabbccddee01") * 16


def test_magic_packet_rejects_bad_mac():
    with pytest.raises(ValueError):
        build_magic_packet("aa:bb:cc")


@pytest.mark.asyncio
async def test_wake_sends_to_broadcast(monkeypatch):
    sent = []
    waker = Waker("192.168.1.255", 7)
    monkeypatch.setattr(waker, "_send", lambda packet: sent.append(packet))

    await waker.wake("aa:bb:cc:dd:ee:01")

    assert sent == [build_magic_packet("aa:bb:cc:dd:ee:01")]
