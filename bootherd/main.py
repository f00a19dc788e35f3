"""bootherd controller - Main FastAPI Application."""

import argparse
import asyncio
import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from bootherd import __version__
from bootherd.api import devices, fleet
from bootherd.config import Settings, settings
from bootherd.core.device import Device
from bootherd.core.fleet import FleetCoordinator
from bootherd.core.registry import DeviceRegistry
from bootherd.errors import DeviceBusy, UnknownDevice
from bootherd.grpc_client import agent_client as default_agent_client
from bootherd.services.boot_config import create_boot_config_writer
from bootherd.services.poller import StatePoller
from bootherd.services.store import DeviceStore, device_from_record, merge_persisted
from bootherd.services.wake import Waker

logger = logging.getLogger(__name__)


async def build_registry(app_settings: Settings, store: Optional[DeviceStore]) -> DeviceRegistry:
    """Register configured devices, merged with any state persisted by a previous run."""
    registry = DeviceRegistry()
    persisted = await asyncio.to_thread(store.load_all) if store else {}

    for device_id, config in app_settings.devices.items():
        device = Device(
            id=device_id,
            address=config.address,
            mac_address=config.mac_address,
            boot_targets=config.boot_targets,
            desired_target=config.desired_target,
        )
        record = persisted.pop(device_id, None)
        if record is not None:
            device = merge_persisted(device, record)
        await registry.upsert(device)

    # Devices registered through the API in an earlier run
    for record in persisted.values():
        await registry.upsert(device_from_record(record))

    # Write through from here on
    registry.store = store
    if store:
        for device in registry.list():
            await asyncio.to_thread(store.save, device)
    return registry


def create_app(
    app_settings: Settings = settings,
    client=None,
    boot_config=None,
    waker=None,
) -> FastAPI:
    """Build the controller app. Collaborators can be injected, otherwise they come from settings."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        # Startup
        logger.info("bootherd controller starting...")
        logger.info(f"   Environment: {app_settings.environment}")
        logger.info(f"   HTTP port: {app_settings.port}")
        logger.info(f"   Boot chain: {app_settings.boot_chain.kind.value} at {app_settings.boot_chain.config_path}")

        store = DeviceStore(app_settings.database_url) if app_settings.database_url else None
        if store is None:
            logger.warning("   Persistence: DISABLED (device state is lost on restart)")

        registry = await build_registry(app_settings, store)
        logger.info(f"   Devices: {len(registry)}")

        agent_client = client or default_agent_client
        coordinator = FleetCoordinator(
            registry,
            agent_client,
            boot_config or create_boot_config_writer(app_settings.boot_chain, registry),
            waker=waker or Waker(app_settings.wake_broadcast_address, app_settings.wake_port),
            timings=app_settings.timings,
        )

        app.state.settings = app_settings
        app.state.registry = registry
        app.state.coordinator = coordinator

        # Start state poller
        poller = None
        if app_settings.state_poll_interval > 0:
            poller = StatePoller(
                registry,
                agent_client,
                coordinator,
                interval=app_settings.state_poll_interval,
                ping_timeout=app_settings.timings.ping_timeout,
            )
            await poller.start()

        # Resume target switches a previous run did not finish
        reconcile_task = asyncio.create_task(coordinator.reconcile())

        logger.info("bootherd controller is ready!")

        yield

        # Shutdown
        logger.info("bootherd controller shutting down...")

        for device_id in list(coordinator.active):
            coordinator.cancel(device_id)
        reconcile_task.cancel()
        try:
            await reconcile_task
        except asyncio.CancelledError:
            pass

        if poller:
            await poller.stop()

        if client is None:
            await agent_client.close()

        if store:
            store.close()

    app = FastAPI(
        title="bootherd",
        description="Remote power and boot target control for a fleet of machines",
        version=__version__,
        lifespan=lifespan,
    )

    # Include routers
    app.include_router(devices.router, prefix="/api/devices", tags=["devices"])
    app.include_router(fleet.router, prefix="/api/fleet", tags=["fleet"])

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "service": "bootherd-controller",
            "version": __version__,
        }

    @app.exception_handler(UnknownDevice)
    async def unknown_device_handler(request: Request, exc: UnknownDevice):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(DeviceBusy)
    async def device_busy_handler(request: Request, exc: DeviceBusy):
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Global exception handler."""
        logger.error(f"Unhandled error on {request.url.path}: {exc!r}")
        return JSONResponse(
            status_code=500,
            content={
                "error": "internal_error",
                "message": str(exc) if app_settings.environment == "development" else "An error occurred",
            },
        )

    return app


app = create_app()


def run():
    """Run the controller with uvicorn."""
    import uvicorn

    parser = argparse.ArgumentParser(description="bootherd controller")
    parser.add_argument(
        "--config",
        help="Path to the controller's TOML config (default: $BOOTHERD_CONFIG or bootherd.toml)",
    )
    args = parser.parse_args()
    if args.config:
        os.environ["BOOTHERD_CONFIG"] = args.config

    run_settings = Settings()
    logging.basicConfig(
        level=logging.DEBUG if run_settings.debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    uvicorn.run(create_app(run_settings), host=run_settings.host, port=run_settings.port)


if __name__ == "__main__":
    run()
