# strategybot/api/server.py
from __future__ import annotations

from typing import List

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from strategybot.api.state import get_state
from strategybot.models.errors import ConfigInvalid, ScheduleBlocked

app = FastAPI(title="Strategy Bot API", version="0.1.0")


app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class StartPayload(BaseModel):
    override_schedule: bool = False
    wait_for_schedule: bool = True


class KillSwitchPayload(BaseModel):
    reason: str = ""


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/bot")
def bot():
    return get_state().manager.snapshot()


@app.post("/bot/start")
async def start_bot(payload: StartPayload = StartPayload()):
    manager = get_state().manager
    try:
        await manager.start(override_schedule=payload.override_schedule, wait_for_schedule=payload.wait_for_schedule)
    except ConfigInvalid as e:
        raise HTTPException(status_code=422, detail={"errors": e.errors})
    except ScheduleBlocked as e:
        raise HTTPException(status_code=409, detail=str(e))
    return manager.snapshot()


@app.post("/bot/stop")
async def stop_bot():
    manager = get_state().manager
    await manager.stop()
    return manager.snapshot()


@app.post("/bot/pause")
async def pause_bot():
    manager = get_state().manager
    await manager.pause()
    return manager.snapshot()


@app.post("/bot/resume")
async def resume_bot():
    manager = get_state().manager
    await manager.resume()
    return manager.snapshot()


@app.get("/bot/statistics")
def statistics():
    manager = get_state().manager
    return {"performance": manager.performance.to_dict(), "statistics": manager.statistics.to_dict()}


@app.get("/bot/trades")
def trades(limit: int = 200):
    history = get_state().manager.trade_history
    return [t.to_dict() for t in history[-limit:]]


@app.get("/bot/events")
def events(limit: int = 200) -> List[dict]:
    recent = list(get_state().recent_events)
    return recent[-limit:]


@app.get("/killswitch")
def killswitch():
    ks = get_state().killswitch
    ks.reload()
    return {"enabled": ks.engaged, "reason": ks.state.reason}


@app.post("/killswitch/enable")
def enable_killswitch(payload: KillSwitchPayload):
    ks = get_state().killswitch
    ks.engage(payload.reason or "manual")
    return {"enabled": True, "reason": ks.state.reason}


@app.post("/killswitch/disable")
def disable_killswitch():
    ks = get_state().killswitch
    ks.release()
    return {"enabled": False, "reason": ""}
