"""
blescope HTTP service - REST commands and Server-Sent Events.

Exposes an Inspector over HTTP: scan, connect, discover, read and write
are REST calls; live characteristic values, connection status and scan
results are SSE streams. Optional API key via the X-API-Key header.
"""

import asyncio
import base64
import json
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Annotated

import uvicorn
from fastapi import Depends, FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sse_starlette.sse import EventSourceResponse

from . import __version__
from .config_loader import APIConfig
from .decode import parse_hex, sample_to_dict
from .errors import (
    AdapterUnavailable,
    BlescopeError,
    OperationTimeout,
    StackFailure,
    UnknownCharacteristic,
)
from .inspector import Inspector
from .models import CharacteristicSample, ConnectionStatus, ScanFilters

logger = logging.getLogger(__name__)

PING_INTERVAL = 30.0

_END = object()


# --- Request/Response Models ---

class ScanRequest(BaseModel):
    """Scan request"""
    timeout: float | None = Field(default=None, gt=0, le=300)
    names: list[str] = []
    addresses: list[str] = []
    service_uuids: list[str] = []
    wait: bool = False


class ConnectRequest(BaseModel):
    """Connection request"""
    auto_connect: bool = False
    timeout: float | None = Field(default=None, gt=0, le=120)


class WriteRequest(BaseModel):
    """Write request; exactly one payload field"""
    data_hex: str | None = None
    data_base64: str | None = None
    text: str | None = None
    with_response: bool = True


class ResultResponse(BaseModel):
    """Generic result response"""
    success: bool
    message: str


class AdapterResponse(BaseModel):
    state: str
    usable: bool


class DeviceResponse(BaseModel):
    """Discovered device"""
    address: str
    name: str
    rssi: int
    service_uuids: list[str]
    last_seen: float
    state: str


class ScanResponse(BaseModel):
    """Scan results"""
    scanning: bool
    devices: list[DeviceResponse]
    count: int


class StatusResponse(BaseModel):
    """Connection status of one device"""
    address: str
    name: str
    state: str
    connected: bool
    mtu: int | None = None
    error: str | None = None


class CharacteristicResponse(BaseModel):
    uuid: str
    handle: int
    service_uuid: str | None
    description: str
    properties: list[str]
    readable: bool
    writable: bool
    notifiable: bool


class ServiceResponse(BaseModel):
    uuid: str
    handle: int
    description: str
    characteristics: list[CharacteristicResponse]


class ServicesResponse(BaseModel):
    address: str
    services: list[ServiceResponse]


class SampleResponse(BaseModel):
    """Characteristic value with its display projections"""
    address: str
    characteristic: str
    handle: int
    timestamp: int
    hex: str
    text: str
    text_valid: bool
    json_value: dict = Field(alias="json")
    raw_base64: str
    length: int

    model_config = {"populate_by_name": True}


def _error_status(exc: BlescopeError) -> int:
    if isinstance(exc, AdapterUnavailable):
        return 503
    if isinstance(exc, UnknownCharacteristic):
        return 404
    if isinstance(exc, OperationTimeout):
        return 504
    if isinstance(exc, StackFailure):
        return 502
    # State preconditions and capability mismatches
    return 409


def _write_payload(request: WriteRequest) -> bytes:
    provided = [v for v in (request.data_hex, request.data_base64, request.text) if v is not None]
    if len(provided) != 1:
        raise HTTPException(
            status_code=400, detail="Provide exactly one of data_hex, data_base64 or text"
        )
    try:
        if request.data_hex is not None:
            return parse_hex(request.data_hex)
        if request.data_base64 is not None:
            return base64.b64decode(request.data_base64, validate=True)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"Invalid payload: {e}")
    return request.text.encode("utf-8")


def _event(event: str, data: dict) -> dict:
    return {"event": event, "data": json.dumps(data)}


def _now_ms() -> int:
    return int(time.time() * 1000)


async def queue_events(
    queue: asyncio.Queue, ping_interval: float = PING_INTERVAL
) -> AsyncIterator[dict]:
    """Drain an event queue into SSE events, with keepalive pings, until _END."""
    while True:
        try:
            item = await asyncio.wait_for(queue.get(), timeout=ping_interval)
        except asyncio.TimeoutError:
            yield _event("ping", {"timestamp": _now_ms()})
            continue
        if item is _END:
            break
        yield item


def create_app(
    inspector: Inspector,
    config: APIConfig | None = None,
    manage_inspector: bool = True,
    ping_interval: float = PING_INTERVAL,
) -> FastAPI:
    """
    Build the FastAPI application around an inspector.

    Args:
        inspector: The inspector to expose
        config: Host/port/auth/CORS settings
        manage_inspector: Start and stop the inspector with the app lifespan
        ping_interval: Seconds between SSE keepalive pings
    """
    config = config or APIConfig()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown lifecycle"""
        logger.info("Starting blescope service")
        if not config.api_key:
            logger.warning("No API key configured, blescope service is unauthenticated")
        if manage_inspector:
            await inspector.start()
        yield
        logger.info("Shutting down blescope service")
        if manage_inspector:
            await inspector.stop()

    app = FastAPI(
        title="blescope",
        description="Bluetooth Low Energy inspector",
        version=__version__,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(BlescopeError)
    async def blescope_error_handler(request, exc: BlescopeError):
        status = _error_status(exc)
        log = logger.warning if status >= 500 else logger.info
        log("%s %s -> %d %s: %s", request.method, request.url.path, status, type(exc).__name__, exc)
        return JSONResponse(
            status_code=status,
            content={"detail": str(exc), "error": type(exc).__name__},
        )

    async def verify_api_key(x_api_key: Annotated[str | None, Header()] = None):
        """Verify API key header"""
        if not config.api_key or config.api_key == "disabled":
            return True
        if x_api_key != config.api_key:
            raise HTTPException(status_code=401, detail="Invalid API key")
        return True

    def device_response(peripheral) -> DeviceResponse:
        return DeviceResponse(
            **peripheral.to_dict(),
            state=inspector.sessions.status(peripheral).value,
        )

    def scan_response() -> ScanResponse:
        devices = [device_response(p) for p in inspector.scanner.results.value]
        return ScanResponse(
            scanning=inspector.scanner.scanning, devices=devices, count=len(devices)
        )

    # --- Adapter & scanning ---

    @app.get("/api/adapter", response_model=AdapterResponse)
    async def get_adapter(_: bool = Depends(verify_api_key)):
        """Current adapter power state"""
        state = await inspector.adapter.refresh()
        return AdapterResponse(state=state.value, usable=state.usable)

    @app.get("/api/scan", response_model=ScanResponse)
    async def get_scan(_: bool = Depends(verify_api_key)):
        """Results of the current or last scan"""
        return scan_response()

    @app.post("/api/scan/start", response_model=ScanResponse)
    async def start_scan(request: ScanRequest, _: bool = Depends(verify_api_key)):
        """Start a scan; with wait=true, return when it has stopped"""
        filters = ScanFilters.build(
            names=request.names,
            addresses=request.addresses,
            service_uuids=request.service_uuids,
        )
        if request.wait:
            await inspector.scan(timeout=request.timeout, filters=filters)
        else:
            await inspector.start_scan(timeout=request.timeout, filters=filters)
        return scan_response()

    @app.post("/api/scan/stop", response_model=ScanResponse)
    async def stop_scan(_: bool = Depends(verify_api_key)):
        """Stop the running scan (no-op when idle)"""
        await inspector.stop_scan()
        return scan_response()

    # --- Sessions ---

    @app.get("/api/devices/{address}/status", response_model=StatusResponse)
    async def get_status(address: str, _: bool = Depends(verify_api_key)):
        """Connection status of a device"""
        return StatusResponse(**inspector.sessions.describe(address))

    @app.post("/api/devices/{address}/connect", response_model=StatusResponse)
    async def connect(
        address: str,
        request: ConnectRequest | None = None,
        _: bool = Depends(verify_api_key),
    ):
        """Connect to a device and negotiate the MTU"""
        request = request or ConnectRequest()
        await inspector.connect(address, auto_connect=request.auto_connect, timeout=request.timeout)
        return StatusResponse(**inspector.sessions.describe(address))

    @app.post("/api/devices/{address}/disconnect", response_model=StatusResponse)
    async def disconnect(address: str, _: bool = Depends(verify_api_key)):
        """Disconnect from a device (also valid while connecting)"""
        await inspector.disconnect(address)
        return StatusResponse(**inspector.sessions.describe(address))

    # --- Discovery ---

    @app.get("/api/devices/{address}/services", response_model=ServicesResponse)
    async def get_services(
        address: str,
        actionable_only: bool = Query(default=False),
        timeout: float | None = Query(default=None, gt=0, le=120),
        _: bool = Depends(verify_api_key),
    ):
        """Discover services and characteristics"""
        services = await inspector.discover_services(address, timeout=timeout)
        return ServicesResponse(
            address=address,
            services=[s.to_dict(actionable_only=actionable_only) for s in services],
        )

    # --- Characteristic I/O ---

    @app.get(
        "/api/devices/{address}/characteristics/{char}/read", response_model=SampleResponse
    )
    async def read_characteristic(
        address: str,
        char: str,
        timeout: float | None = Query(default=None, gt=0, le=60),
        _: bool = Depends(verify_api_key),
    ):
        """Read a characteristic once"""
        characteristic = await inspector.characteristic(address, char)
        sample = await inspector.read_once(characteristic, timeout=timeout)
        return SampleResponse(**sample_to_dict(sample))

    @app.post(
        "/api/devices/{address}/characteristics/{char}/write", response_model=ResultResponse
    )
    async def write_characteristic(
        address: str,
        char: str,
        request: WriteRequest,
        _: bool = Depends(verify_api_key),
    ):
        """Write a value (hex, base64 or UTF-8 text)"""
        data = _write_payload(request)
        characteristic = await inspector.characteristic(address, char)
        await inspector.write(characteristic, data, with_response=request.with_response)
        return ResultResponse(success=True, message=f"Wrote {len(data)} bytes to {characteristic.uuid}")

    @app.get(
        "/api/devices/{address}/characteristics/{char}/latest", response_model=SampleResponse
    )
    async def latest_sample(address: str, char: str, _: bool = Depends(verify_api_key)):
        """Most recent value of a characteristic"""
        characteristic = await inspector.characteristic(address, char)
        sample = inspector.subscriptions.latest(characteristic)
        if sample is None:
            raise HTTPException(status_code=404, detail="No value received yet")
        return SampleResponse(**sample_to_dict(sample))

    # --- SSE streams ---

    @app.get("/api/devices/{address}/characteristics/{char}/notifications")
    async def stream_notifications(address: str, char: str, _: bool = Depends(verify_api_key)):
        """
        Server-Sent Events stream of characteristic values.

        Subscribes on connect and unsubscribes when the client goes away.
        Events:
        - sample: address, characteristic, handle, timestamp, hex, text, json, raw_base64
        - status: connection state changes of the device
        - ping: keepalive
        The stream ends when the device disconnects.
        """
        characteristic = await inspector.characteristic(address, char)
        queue: asyncio.Queue = asyncio.Queue()

        def on_sample(sample: CharacteristicSample) -> None:
            queue.put_nowait(_event("sample", sample_to_dict(sample)))

        on_sample.on_close = lambda: queue.put_nowait(_END)

        def on_status(status: ConnectionStatus) -> None:
            queue.put_nowait(_event("status", {
                "address": address, "state": status.value, "timestamp": _now_ms(),
            }))

        subscription = await inspector.subscribe(characteristic, on_sample)
        status_observer = inspector.sessions.observe(address, on_status)

        async def event_generator():
            try:
                async for item in queue_events(queue, ping_interval):
                    yield item
            finally:
                status_observer.cancel()
                # Runs inside the cancelled response scope when the client goes away
                await asyncio.shield(inspector.unsubscribe(subscription))

        return EventSourceResponse(event_generator())

    @app.get("/api/devices/{address}/events")
    async def stream_device_events(address: str, _: bool = Depends(verify_api_key)):
        """
        Server-Sent Events stream of one device's connection status.

        Starts with the current status. Keepalives are SSE comments.
        """

        async def event_generator():
            async for status in inspector.sessions.status_stream(address):
                yield _event("status", {
                    **inspector.sessions.describe(address),
                    "state": status.value,
                    "connected": status == ConnectionStatus.CONNECTED,
                    "timestamp": _now_ms(),
                })

        return EventSourceResponse(event_generator(), ping=ping_interval)

    @app.get("/api/events")
    async def stream_events(_: bool = Depends(verify_api_key)):
        """Server-Sent Events stream of adapter state, scan state and scan results"""
        queue: asyncio.Queue = asyncio.Queue()

        observers = [
            inspector.adapter.state.subscribe(lambda state: queue.put_nowait(
                _event("adapter", {"state": state.value, "timestamp": _now_ms()})
            )),
            inspector.scanner.is_scanning.subscribe(lambda scanning: queue.put_nowait(
                _event("scanning", {"scanning": scanning, "timestamp": _now_ms()})
            )),
            inspector.scanner.results.subscribe(lambda results: queue.put_nowait(
                _event("scan_results", {
                    "devices": [d.model_dump() for d in map(device_response, results)],
                    "timestamp": _now_ms(),
                })
            )),
        ]

        async def event_generator():
            try:
                async for item in queue_events(queue, ping_interval):
                    yield item
            finally:
                for observer in observers:
                    observer.cancel()

        return EventSourceResponse(event_generator())

    # --- Health Check ---

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        return {
            "status": "healthy",
            "backend": inspector.backend.mode.value,
            "adapter": inspector.adapter.current.value,
            "connected": inspector.sessions.connected_addresses(),
            "timestamp": _now_ms(),
        }

    return app


async def serve(inspector: Inspector, config: APIConfig) -> None:
    """Run the service until cancelled."""
    app = create_app(inspector, config)
    server = uvicorn.Server(uvicorn.Config(
        app,
        host=config.host,
        port=config.port,
        log_level="warning",  # Reduce uvicorn logging noise
        access_log=False,
    ))
    logger.info("blescope service on http://%s:%d", config.host, config.port)
    await server.serve()
