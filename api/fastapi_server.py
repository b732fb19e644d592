import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from config import config
from monitoring.logging_utils import setup_logging


logger = logging.getLogger(__name__)


class StartRequest(BaseModel):
    symbol: Optional[str] = None


class SettingsUpdate(BaseModel):
    symbol: Optional[str] = None
    min_tick_difference: Optional[float] = None
    position_size_usd: Optional[float] = None
    max_slippage_pct: Optional[float] = None
    tick_size: Optional[float] = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _default_bot_factory():
    from main import ArbitrageBot
    return ArbitrageBot()


class ConnectionManager:
    def __init__(self):
        self.active_connections: List[WebSocket] = []

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        self.active_connections.append(websocket)

    def disconnect(self, websocket: WebSocket):
        if websocket in self.active_connections:
            self.active_connections.remove(websocket)


def create_app(bot_factory: Optional[Callable] = None, autostart: Optional[bool] = None) -> FastAPI:
    api_cfg = config.section('api')
    factory = bot_factory or _default_bot_factory
    should_autostart = bool(api_cfg.get('autostart', False)) if autostart is None else autostart
    push_interval = float(api_cfg.get('status_push_interval_s', 1))

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        bot = factory()
        app.state.bot = bot
        logger.info("API ready (autostart=%s)", should_autostart)
        if should_autostart:
            await bot.start()
        try:
            yield
        finally:
            await bot.shutdown()

    app = FastAPI(title="Spread Arbitrage Bot API", version="1.0.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(api_cfg.get('cors_origins', [])),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    manager = ConnectionManager()
    app.state.ws_manager = manager

    def get_bot(request: Request):
        bot = getattr(request.app.state, 'bot', None)
        if bot is None:
            raise HTTPException(status_code=503, detail="Bot not initialized")
        return bot

    @app.get("/")
    async def root(request: Request):
        bot = getattr(request.app.state, 'bot', None)
        return {
            "service": "Spread Arbitrage Bot",
            "version": "1.0.0",
            "status": "running" if bot and bot.running else "stopped",
        }

    @app.get("/health")
    async def health(request: Request):
        bot = getattr(request.app.state, 'bot', None)
        return {
            "status": "healthy",
            "timestamp": _now(),
            "bot_running": bool(bot and bot.running),
        }

    @app.get("/api/status")
    async def get_status(request: Request):
        return {**get_bot(request).get_status(), "timestamp": _now()}

    @app.get("/api/spread")
    async def get_spread(request: Request):
        spread = get_bot(request).get_current_spread()
        return {"success": True, "data": spread.to_dict() if spread else None}

    @app.post("/api/start")
    async def start(request: Request, body: Optional[StartRequest] = None):
        bot = get_bot(request)
        started = await bot.start(body.symbol if body else None)
        return {"success": True, "started": started, "symbol": bot.symbol, "timestamp": _now()}

    @app.post("/api/stop")
    async def stop(request: Request):
        stopped = await get_bot(request).stop('api')
        return {"success": True, "stopped": stopped, "timestamp": _now()}

    @app.post("/api/restart")
    async def restart(request: Request, body: Optional[StartRequest] = None):
        bot = get_bot(request)
        started = await bot.restart(body.symbol if body else None)
        return {"success": True, "started": started, "symbol": bot.symbol, "timestamp": _now()}

    @app.get("/api/settings")
    async def get_settings(request: Request):
        return {"success": True, "data": get_bot(request).get_config()}

    @app.post("/api/settings")
    async def update_settings(request: Request, body: SettingsUpdate):
        bot = get_bot(request)
        try:
            data = bot.update_config(body.model_dump(exclude_none=True))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"success": True, "data": data}

    @app.post("/api/bot/stop-after-close")
    async def stop_after_close(request: Request):
        result = await get_bot(request).request_stop_after_close()
        return {"success": True, **result}

    @app.get("/api/trades/last-close")
    async def last_close(request: Request, since: Optional[int] = None):
        return {"success": True, **get_bot(request).get_last_close(since)}

    @app.get("/api/debug/state")
    async def debug_state(request: Request):
        return {**get_bot(request).get_debug_state(), "timestamp": _now()}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await manager.connect(websocket)
        try:
            while True:
                bot = getattr(websocket.app.state, 'bot', None)
                if bot is not None:
                    data: Dict = {"type": "status", "timestamp": _now(), **bot.get_status()}
                    await websocket.send_json(data)
                await asyncio.sleep(push_interval)
        except WebSocketDisconnect:
            logger.debug("Status websocket disconnected")
        finally:
            manager.disconnect(websocket)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    monitoring_cfg = config.section('monitoring')
    setup_logging(monitoring_cfg.get('log_level', 'INFO'), log_file=monitoring_cfg.get('log_file') or None)
    uvicorn.run(
        app,
        host=config.api['host'],
        port=config.api['port'],
        log_level="info"
    )
