#!/usr/bin/env python3
"""bootherd CLI - Operator interface to the bootherd controller."""

import argparse
import os
import sys
from typing import List, Optional

import httpx

# Default controller URL
DEFAULT_URL = os.environ.get("BOOTHERD_URL", "http://localhost:8000")


class BootherdCLI:
    """CLI client for the bootherd controller."""

    def __init__(self, url: str = DEFAULT_URL, transport: Optional[httpx.BaseTransport] = None):
        self.url = url.rstrip("/")
        # Fleet requests block until every device is done, which can take minutes
        self.client = httpx.Client(base_url=self.url, timeout=httpx.Timeout(10.0, read=900.0), transport=transport)

    def health(self) -> dict:
        """Check controller health."""
        response = self.client.get("/health")
        response.raise_for_status()
        return response.json()

    def list_devices(self) -> dict:
        """List registered devices."""
        response = self.client.get("/api/devices")
        response.raise_for_status()
        return response.json()

    def apply(self, devices: List[str], action: str, target: Optional[str] = None, verify: bool = False) -> dict:
        """Apply an action to devices and wait for the result."""
        response = self.client.post(
            "/api/fleet/apply",
            json={"devices": devices, "action": action, "target": target, "verify": verify},
        )
        response.raise_for_status()
        return response.json()

    def cancel(self, device_id: str) -> dict:
        """Cancel a device's active operation."""
        response = self.client.post(f"/api/devices/{device_id}/cancel")
        response.raise_for_status()
        return response.json()

    def close(self):
        self.client.close()


def parse_selector(selector: str) -> List[str]:
    """Split a comma-separated device selector."""
    return [part.strip() for part in selector.split(",") if part.strip()]


def format_outcome(result: dict) -> str:
    """One status line for a device outcome."""
    line = f"{result['device_id']}: {result['outcome'].upper()} ({result.get('stage') or result['state']})"
    if result.get("reason"):
        line += f" reason={result['reason']}"
    if result.get("current_target"):
        line += f" target={result['current_target']}"
    if result.get("detail"):
        line += f" - {result['detail']}"
    return line


def error_detail(e: httpx.HTTPStatusError) -> str:
    try:
        return e.response.json().get("detail", e.response.text)
    except ValueError:
        return e.response.text


def cmd_health(args, cli: BootherdCLI) -> int:
    """Check if the controller is healthy."""
    result = cli.health()
    print(f"✓ bootherd controller is {result.get('status', 'unknown')}")
    print(f"  Version: {result.get('version', 'unknown')}")
    return 0


def cmd_devices(args, cli: BootherdCLI) -> int:
    """List registered devices."""
    result = cli.list_devices()
    devices = result.get("devices", [])

    if not devices:
        print("No devices registered.")
        return 0

    print(f"Devices ({len(devices)}):\n")
    for d in devices:
        status_icon = "●" if d.get("power_state") == "online" else "○"
        print(f"  {status_icon} {d['id']} - {d['address']}")
        print(f"    Power: {d.get('power_state')}{' (busy)' if d.get('busy') else ''}")
        print(f"    Target: {d.get('current_target') or '-'}"
              + (f" -> {d['desired_target']}" if d.get("desired_target") else ""))
        print(f"    Targets: {', '.join(d.get('boot_targets', {})) or '-'}")
        print()
    return 0


def cmd_apply(args, cli: BootherdCLI) -> int:
    """Run a fleet action and print one line per device."""
    result = cli.apply(
        parse_selector(args.devices),
        args.action,
        target=getattr(args, "target", None),
        verify=getattr(args, "verify", False),
    )
    for outcome in result.get("results", []):
        print(format_outcome(outcome))
    return 0 if result.get("ok") else 1


def cmd_cancel(args, cli: BootherdCLI) -> int:
    """Cancel a device's active operation."""
    result = cli.cancel(args.device)
    if result.get("cancelled"):
        print(f"Cancellation requested for {args.device}")
    else:
        print(f"No operation in progress on {args.device}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bootherd",
        description="bootherd CLI - Switch boot targets and power state across your machines",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  bootherd devices                          List devices
  bootherd switch-target all windows        Reboot every device into windows
  bootherd reboot rig-1,rig-2               Reboot two devices
  bootherd suspend rig-1 --verify           Suspend and check it went quiet
  bootherd --url http://host:8000 health    Use a different controller URL
""",
    )
    parser.add_argument(
        "--url",
        default=DEFAULT_URL,
        help=f"Controller URL (default: {DEFAULT_URL})",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    commands.add_parser("health", help="Check controller status").set_defaults(func=cmd_health)
    commands.add_parser("devices", help="List devices").set_defaults(func=cmd_devices)

    switch = commands.add_parser("switch-target", help="Reboot devices into a boot target")
    switch.add_argument("devices", help="Device ID, comma-separated IDs, or 'all'")
    switch.add_argument("target", help="Boot target name")
    switch.set_defaults(func=cmd_apply, action="switch-target")

    for action, help_text in (
        ("reboot", "Reboot devices"),
        ("shutdown", "Shut devices down"),
        ("wake", "Power devices on with Wake-on-LAN"),
    ):
        sub = commands.add_parser(action, help=help_text)
        sub.add_argument("devices", help="Device ID, comma-separated IDs, or 'all'")
        sub.set_defaults(func=cmd_apply, action=action)

    suspend = commands.add_parser("suspend", help="Suspend devices")
    suspend.add_argument("devices", help="Device ID, comma-separated IDs, or 'all'")
    suspend.add_argument("--verify", action="store_true", help="Fail if a device keeps answering Ping")
    suspend.set_defaults(func=cmd_apply, action="suspend")

    cancel = commands.add_parser("cancel", help="Cancel a device's operation")
    cancel.add_argument("device", help="Device ID")
    cancel.set_defaults(func=cmd_cancel)

    return parser


def main(argv: Optional[List[str]] = None, transport: Optional[httpx.BaseTransport] = None) -> int:
    args = build_parser().parse_args(argv)
    cli = BootherdCLI(args.url, transport=transport)

    try:
        return args.func(args, cli)
    except httpx.ConnectError:
        print(f"✗ Cannot connect to bootherd controller at {cli.url}", file=sys.stderr)
        return 1
    except httpx.HTTPStatusError as e:
        print(f"✗ Error: {error_detail(e)}", file=sys.stderr)
        return 1
    except httpx.HTTPError as e:
        print(f"✗ Error: {e}", file=sys.stderr)
        return 1
    finally:
        cli.close()


if __name__ == "__main__":
    sys.exit(main())
