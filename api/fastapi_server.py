import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from api.alerts import NotificationConfig
from config import config
from monitoring.logging_utils import setup_logging
from strategy.signal_classifier import sort_signals


logger = logging.getLogger(__name__)


class NotificationConfigBody(BaseModel):
    bot_token: Optional[str] = None
    chat_ids: str = ''
    enabled: bool = False


class AudioPreferenceBody(BaseModel):
    enabled: bool


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _engine(request: Request):
    engine = request.app.state.engine
    if engine is None:
        raise HTTPException(status_code=503, detail="Signal engine not initialized")
    return engine


def _stats_payload(stats) -> dict:
    return {**stats.to_dict(), 'success_rate': stats.success_rate}


def create_app(engine=None) -> FastAPI:
    """Build the API around ``engine``; without one the app runs its own engine."""
    owns_engine = engine is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        task = None
        if owns_engine:
            from main import SignalEngine
            app.state.engine = SignalEngine()
            task = asyncio.create_task(app.state.engine.start())
        try:
            yield
        finally:
            if owns_engine and app.state.engine is not None:
                await app.state.engine.stop()
            if task is not None:
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    app = FastAPI(title="VWAP Signal Engine API", version="1.0.0", lifespan=lifespan)
    app.state.engine = engine

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.section('api').get('cors_origins', ['*']),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/")
    async def root(request: Request):
        eng = request.app.state.engine
        return {
            "service": "VWAP Signal Engine",
            "version": "1.0.0",
            "status": "running" if eng is not None and eng.running else "stopped",
        }

    @app.get("/health")
    async def health(request: Request):
        eng = request.app.state.engine
        return {
            "status": "healthy",
            "timestamp": _now_iso(),
            "engine_running": bool(eng is not None and eng.running),
            "tickers": len(eng.tickers) if eng is not None else 0,
        }

    @app.get("/api/signals")
    async def get_signals(sort: str = 'score', eng=Depends(_engine)):
        try:
            signals = sort_signals(eng.signals, sort)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {
            "signals": [s.to_dict() for s in signals],
            "count": len(signals),
            "timestamp": _now_iso(),
        }

    @app.get("/api/levels")
    async def get_levels(eng=Depends(_engine)):
        levels = {symbol: lv.to_dict() for symbol, lv in sorted(eng.levels.items())}
        return {"levels": levels, "count": len(levels), "timestamp": _now_iso()}

    @app.get("/api/ledger")
    async def get_ledger(eng=Depends(_engine)):
        return eng.ledger.snapshot().to_dict()

    @app.get("/api/stats")
    async def get_stats(eng=Depends(_engine)):
        return _stats_payload(eng.ledger.stats)

    @app.post("/api/stats/reset")
    async def reset_stats(clear_entries: bool = True, eng=Depends(_engine)):
        eng.ledger.reset(clear_entries=clear_entries)
        return _stats_payload(eng.ledger.stats)

    @app.get("/api/notifications/config")
    async def get_notification_config(eng=Depends(_engine)):
        return eng.dispatcher.config.redacted()

    @app.put("/api/notifications/config")
    async def put_notification_config(body: NotificationConfigBody, eng=Depends(_engine)):
        token = body.bot_token if body.bot_token is not None else eng.dispatcher.config.bot_token
        updated = eng.dispatcher.update_config(
            NotificationConfig(bot_token=token, chat_ids=body.chat_ids, enabled=body.enabled)
        )
        return updated.redacted()

    @app.post("/api/notifications/test")
    async def send_test_notification(eng=Depends(_engine)):
        sent = await eng.dispatcher.send_test_alert()
        return {"sent": sent}

    @app.get("/api/preferences/audio")
    async def get_audio_preference(eng=Depends(_engine)):
        return {"enabled": eng.audio_enabled}

    @app.put("/api/preferences/audio")
    async def put_audio_preference(body: AudioPreferenceBody, eng=Depends(_engine)):
        return {"enabled": eng.set_audio_enabled(body.enabled)}

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        eng = websocket.app.state.engine
        await websocket.accept()
        if eng is None:
            await websocket.close(code=1013)
            return
        queue = eng.channel.subscribe()

        async def _pump():
            while True:
                snapshot = await queue.get()
                await websocket.send_json({"type": "snapshot", **snapshot.to_dict()})

        pump = asyncio.create_task(_pump())
        try:
            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    break
        except WebSocketDisconnect:
            pass
        finally:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
            eng.channel.unsubscribe(queue)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    setup_logging(config.section('monitoring').get('log_level', 'INFO'))
    api_cfg = config.section('api')
    uvicorn.run(
        app,
        host=api_cfg.get('host', '0.0.0.0'),
        port=int(api_cfg.get('port', 8080)),
        log_level="info",
    )
