#!/usr/bin/env python3
"""
simkit backend

Picks a compatible Xcode plus iOS (and Watch) Simulator for a set of
constraints, launches apps into them and streams what happens.

Endpoints:
  - POST /rpc     - JSON-RPC requests
  - GET  /events  - Server-Sent Events stream of session events
  - GET  /health  - Health check
"""

import sys
import json
import time
import signal
import asyncio
import logging
import argparse
from typing import Any, Optional

from aiohttp import web

from exceptions import SimulatorError
from models import LaunchOptions, SessionEvent, SimulatorConstraints
from services import DeviceManager, SimulatorService, event_bus

logger = logging.getLogger('simkit')

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Accept",
    "Access-Control-Max-Age": "3600",
}

# JSON-RPC error codes
PARSE_ERROR = -32700
METHOD_NOT_FOUND = -32601
SERVER_ERROR = -1


def rpc_error(request_id: Any, code: int, message: str, data: Optional[dict] = None) -> dict:
    error = {"code": code, "message": message}
    if data is not None:
        error["data"] = data
    return {"id": request_id, "error": error}


def sse_frame(name: str, payload: Any) -> bytes:
    return f"event: {name}\ndata: {json.dumps(payload)}\n\n".encode()


class SimulatorServer:
    """
    JSON-RPC front end for simulator resolution and launch sessions.

    Every session started here forwards its events to the SSE stream.
    """

    def __init__(self, search_paths=None):
        self.simulators = SimulatorService(search_paths=search_paths, on_event=self._emit_event)
        self.devices = DeviceManager()
        self._served = 0

        self._methods = {
            # Toolchains and simulators
            "detectXcodes": self._detect_xcodes,
            "listSimulators": self._list_simulators,
            "resolveSimulator": self._resolve_simulator,
            "invalidateCache": self._invalidate_cache,
            # Sessions
            "launchSimulator": self._launch_simulator,
            "stopSimulator": self._stop_simulator,
            "getSession": self._get_session,
            "listSessions": self._list_sessions,
            # Physical devices
            "listDevices": self._list_devices,
        }

    def _emit_event(self, event: SessionEvent) -> None:
        event_bus.publish_sync(event.to_dict())

    # =========================================================================
    # JSON-RPC
    # =========================================================================

    async def handle_request(self, request: dict) -> dict:
        """Dispatch one JSON-RPC request; never raises."""
        request_id = request.get("id")
        method = request.get("method")
        handler = self._methods.get(method)
        if handler is None:
            return rpc_error(request_id, METHOD_NOT_FOUND, f"Method not found: {method}")

        try:
            result = await handler(request.get("params") or {})
        except SimulatorError as e:
            logger.error(f"{method} failed: {e}")
            return rpc_error(request_id, SERVER_ERROR, str(e), e.to_dict())
        except Exception as e:
            logger.exception(f"{method} raised: {e}")
            return rpc_error(request_id, SERVER_ERROR, str(e))
        return {"id": request_id, "result": result}

    async def _detect_xcodes(self, params: dict) -> dict:
        xcodes = await self.simulators.detect_xcodes(force=bool(params.get("force")))
        return {"xcodes": [x.to_dict() for x in xcodes.values()]}

    async def _list_simulators(self, params: dict) -> dict:
        """iOS and watchOS simulators, bucketed by OS version."""
        registry = await self.simulators.list_simulators(force=bool(params.get("force")))
        return registry.to_dict()

    async def _resolve_simulator(self, params: dict) -> dict:
        """Choose an Xcode, iOS Simulator and optional Watch Simulator."""
        constraints = SimulatorConstraints.from_dict(params, ignore=("force",))
        resolution = await self.simulators.resolve(constraints, force=bool(params.get("force")))
        return resolution.to_dict()

    async def _invalidate_cache(self, params: dict) -> dict:
        self.simulators.invalidate()
        return {"success": True}

    async def _launch_simulator(self, params: dict) -> dict:
        """Resolve, then launch.

        Params are the resolveSimulator constraints plus an "options" object
        holding LaunchOptions fields in camelCase.
        """
        constraints = SimulatorConstraints.from_dict(params, ignore=("options",))
        options = LaunchOptions.from_dict(params.get("options"))
        session = await self.simulators.launch(constraints, options)
        return {"success": True, "session": session.to_dict()}

    async def _stop_simulator(self, params: dict) -> dict:
        udid = params.get("udid")
        if not udid:
            return {"success": False, "error": "udid required"}
        if self.simulators.get_session(udid) is None:
            return {"success": False, "error": f"No session for {udid}"}
        session = await self.simulators.stop(udid)
        return {"success": True, "session": session.to_dict()}

    async def _get_session(self, params: dict) -> dict:
        udid = params.get("udid")
        session = self.simulators.get_session(udid) if udid else None
        if session is None:
            return {"success": False, "error": f"No session for {udid}" if udid else "udid required"}
        return {"success": True, "session": session.to_dict()}

    async def _list_sessions(self, params: dict) -> dict:
        return {"sessions": [s.to_dict() for s in self.simulators.sessions.values()]}

    async def _list_devices(self, params: dict) -> dict:
        """Physical devices attached over usbmux."""
        devices = await self.devices.list_devices()
        return {"devices": [d.to_dict() for d in devices]}

    # =========================================================================
    # HTTP
    # =========================================================================

    @web.middleware
    async def _cors(self, request: web.Request, handler):
        if request.method == "OPTIONS":
            return web.Response(headers=CORS_HEADERS)
        try:
            response = await handler(request)
        except web.HTTPException as e:
            e.headers.update(CORS_HEADERS)
            raise
        response.headers.update(CORS_HEADERS)
        return response

    async def _http_rpc(self, request: web.Request) -> web.Response:
        try:
            body = await request.json()
        except json.JSONDecodeError:
            return web.json_response(rpc_error(None, PARSE_ERROR, "Parse error"), status=400)

        self._served += 1
        n = self._served
        method = body.get("method", "?")
        logger.info(f"[{n}] << {method} (id={body.get('id', '?')})")
        logger.debug(f"[{n}]    params: {body.get('params', {})}")

        started = time.perf_counter()
        response = await self.handle_request(body)
        elapsed = (time.perf_counter() - started) * 1000
        if "error" in response:
            logger.warning(f"[{n}] >> {method} failed ({elapsed:.1f}ms): {response['error']['message']}")
        else:
            logger.info(f"[{n}] >> {method} ok ({elapsed:.1f}ms)")
        return web.json_response(response)

    async def _http_events(self, request: web.Request) -> web.StreamResponse:
        response = web.StreamResponse(headers={
            'Content-Type': 'text/event-stream',
            'Cache-Control': 'no-cache',
            'Connection': 'keep-alive',
        })
        await response.prepare(request)
        try:
            await response.write(sse_frame("connected", {"status": "connected"}))
            async for payload in event_bus.subscribe():
                if payload is None:
                    break
                await response.write(sse_frame(payload.get("event", "message"), payload))
        except (asyncio.CancelledError, ConnectionResetError):
            logger.debug("Event stream client went away")
        return response

    async def _http_health(self, request: web.Request) -> web.Response:
        return web.json_response({
            "status": "ok",
            "sessions": len(self.simulators.sessions),
            "subscribers": event_bus.subscriber_count,
        })

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[self._cors])
        app.router.add_post("/rpc", self._http_rpc)
        app.router.add_route("OPTIONS", "/rpc", self._http_rpc)
        app.router.add_get("/events", self._http_events)
        app.router.add_get("/health", self._http_health)
        return app

    async def serve(self, host: str = "127.0.0.1", port: int = 8765):
        """Serve until SIGINT/SIGTERM, then stop every live session."""
        loop = asyncio.get_running_loop()
        event_bus.set_loop(loop)

        shutdown = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, shutdown.set)
            except NotImplementedError:
                pass

        runner = web.AppRunner(self.create_app())
        await runner.setup()
        await web.TCPSite(runner, host, port).start()
        logger.info(f"simkit listening on http://{host}:{port} (POST /rpc, GET /events, GET /health)")

        try:
            await shutdown.wait()
            logger.info("Shutting down, stopping simulator sessions...")
        finally:
            await self.simulators.stop_all()
            await event_bus.close()
            await runner.cleanup()
            logger.info("Server stopped")


def main():
    parser = argparse.ArgumentParser(description="simkit simulator backend")
    parser.add_argument("--host", default="127.0.0.1",
                        help="HTTP server host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8765,
                        help="HTTP server port (default: 8765)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
                        help="Logging level (default: INFO)")
    parser.add_argument("--xcode-search-path", action="append", default=[], metavar="PATH",
                        help="Extra directory to search for Xcode installs (repeatable)")
    args = parser.parse_args()

    # Log to stderr
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        stream=sys.stderr
    )

    server = SimulatorServer(search_paths=args.xcode_search_path)
    try:
        asyncio.run(server.serve(args.host, args.port))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
