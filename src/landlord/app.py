import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
import uvicorn

from landlord.cache import LocalStore
from landlord.config import SyncConfig, get_app_config, get_sync_config, print_config
from landlord.models import Document, GameRecord, MatchPayload, Player, PlayerColor
from landlord.network import ConnectivityMonitor, ReachabilityProbe
from landlord.pending import PendingOperationLog
from landlord.remote import HttpRemoteStore
from landlord.sync import DuplicatePlayerError, SyncCoordinator, SyncSnapshot

# Set up logger for this module
logger = logging.getLogger("landlord.app")

PENDING_DB_NAME = "pending_operations.db"


# ---------- Composition root ----------
def build_coordinator(config=SyncConfig):
    """
    Wire the sync subsystem from configuration.

    Returns:
        (coordinator, probe) - the probe feeds connectivity and is started by the caller
    """
    data_dir = Path(config.DATA_DIR)
    data_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Data directory: {data_dir}")

    local_store = LocalStore(data_dir)
    local_store.migrate_if_needed()
    pending_log = PendingOperationLog(data_dir / PENDING_DB_NAME)
    remote = HttpRemoteStore(
        config.REMOTE_API_URL,
        timeout=config.REMOTE_TIMEOUT,
        poll_interval=config.REMOTE_POLL_INTERVAL,
    )
    monitor = ConnectivityMonitor()
    probe = ReachabilityProbe(monitor, config.REACHABILITY_URL, interval=config.REACHABILITY_INTERVAL)

    coordinator = SyncCoordinator(local_store, pending_log, remote, monitor)
    return coordinator, probe


# ---------- App state ----------
class AppState:
    def __init__(self):
        self.coordinator: Optional[SyncCoordinator] = None
        self.probe: Optional[ReachabilityProbe] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self.clients: list[WebSocket] = []


state = AppState()


def get_coordinator() -> SyncCoordinator:
    if state.coordinator is None:
        raise HTTPException(status_code=503, detail="Sync coordinator not running")
    return state.coordinator


# ---------- Request bodies ----------
class PlayerCreateRequest(Document):
    name: str
    color: Optional[PlayerColor] = None


class GameRecordsRequest(Document):
    game_records: list[GameRecord]


# ---------- Broadcast ----------
def status_dict(snapshot: SyncSnapshot) -> dict:
    data = snapshot.to_dict()
    data.pop("players")
    data.pop("matches")
    return data


async def broadcast_state(snapshot: SyncSnapshot):
    data = json.dumps({"state": status_dict(snapshot)})
    dead = []

    for ws in list(state.clients):
        try:
            await ws.send_text(data)
        except Exception as e:
            logger.debug(f"WebSocket send failed: {type(e).__name__}")
            dead.append(ws)

    for ws in dead:
        if ws in state.clients:
            state.clients.remove(ws)

    if dead:
        logger.debug(f"Removed {len(dead)} disconnected client(s)")


def on_sync_change(snapshot: SyncSnapshot):
    """Coordinator listener; called from sync threads."""
    loop = state.loop
    if loop is None or loop.is_closed() or not state.clients:
        return
    asyncio.run_coroutine_threadsafe(broadcast_state(snapshot), loop)


# ---------- Lifespan ----------
@asynccontextmanager
async def lifespan(_app: FastAPI):
    logger.info("Starting application...")
    state.loop = asyncio.get_running_loop()
    state.coordinator, state.probe = build_coordinator(get_sync_config())
    unsubscribe = state.coordinator.subscribe(on_sync_change)
    state.coordinator.initialize()
    if state.probe is not None:
        state.probe.start()

    # Log available endpoints
    logger.info("Available endpoints:")
    for route in app.routes:
        methods = getattr(route, "methods", None)
        path = getattr(route, "path", None)
        if methods and path:
            methods_str = ", ".join(sorted(methods - {"HEAD", "OPTIONS"}))
            if methods_str:
                logger.info(f"  {methods_str:20s} {path}")

    logger.info("Application started")
    try:
        yield
    finally:
        logger.info("Application shutting down")
        if state.probe is not None:
            state.probe.stop()
        unsubscribe()
        state.coordinator.shutdown()
        state.coordinator = None
        state.probe = None
        state.loop = None


app = FastAPI(lifespan=lifespan)


# ---------- Routes ----------
@app.get("/status")
def get_status():
    return status_dict(get_coordinator().snapshot())


@app.get("/players")
def list_players():
    return {"players": [p.to_json() for p in get_coordinator().players]}


@app.post("/players")
def add_player(request: PlayerCreateRequest):
    try:
        player = get_coordinator().add_player(request.name, request.color)
    except DuplicatePlayerError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "ok", "player": player.to_json()}


@app.put("/players/{player_id}")
def update_player(player_id: str, player: Player):
    coordinator = get_coordinator()
    update = {"id": player_id}
    if "created_at" not in player.model_fields_set:
        # Keep the stored creation time when the body leaves it out
        existing = next((p for p in coordinator.players if p.id == player_id), None)
        if existing is not None:
            update["created_at"] = existing.created_at
    player = player.model_copy(update=update)
    try:
        updated = coordinator.update_player(player)
    except DuplicatePlayerError as e:
        raise HTTPException(status_code=409, detail=str(e))
    if not updated:
        raise HTTPException(status_code=404, detail=f"Player {player_id} not found")
    return {"status": "ok", "player": player.to_json()}


@app.delete("/players/{player_id}")
def delete_player(player_id: str):
    if not get_coordinator().delete_player(player_id):
        raise HTTPException(status_code=404, detail=f"Player {player_id} not found")
    return {"status": "ok"}


@app.get("/matches")
def list_matches():
    return {"matches": [m.to_json() for m in get_coordinator().matches]}


@app.post("/matches")
def save_match(request: MatchPayload):
    match_id = get_coordinator().save_match(request.match, request.game_records)
    return {"status": "ok", "id": match_id}


@app.put("/matches/{match_id}")
def update_match(match_id: str, request: MatchPayload):
    match = request.match.model_copy(update={"id": match_id})
    if not get_coordinator().update_match(match, request.game_records):
        raise HTTPException(status_code=404, detail=f"Match {match_id} not found")
    return {"status": "ok", "id": match_id}


@app.delete("/matches/{match_id}")
def delete_match(match_id: str):
    if not get_coordinator().delete_match(match_id):
        raise HTTPException(status_code=404, detail=f"Match {match_id} not found")
    return {"status": "ok"}


@app.get("/matches/{match_id}/records")
def get_game_records(match_id: str):
    records = get_coordinator().load_game_records(match_id)
    return {"gameRecords": [r.to_json() for r in records]}


@app.post("/matches/{match_id}/records")
def add_game_records(match_id: str, request: GameRecordsRequest):
    coordinator = get_coordinator()
    if not any(m.id == match_id for m in coordinator.matches):
        raise HTTPException(status_code=404, detail=f"Match {match_id} not found")
    records = coordinator.add_game_records(match_id, request.game_records)
    return {"status": "ok", "gameRecords": [r.to_json() for r in records]}


@app.post("/sync")
def force_sync():
    if not get_coordinator().force_sync():
        return {"status": "offline"}
    return {"status": "ok"}


@app.post("/reset")
def reset():
    logger.info("Reset requested")
    get_coordinator().reset_and_sync()
    return {"status": "ok"}


@app.get("/operations")
def list_operations():
    """Pending log contents, including operations that gave up."""
    operations = get_coordinator().pending_log.all_operations()
    return {"operations": [op.to_json() for op in operations]}


# ---------- WebSocket ----------
@app.websocket("/ws")
async def websocket_endpoint(ws: WebSocket):
    await ws.accept()
    state.clients.append(ws)
    logger.info(f"WebSocket client connected (total: {len(state.clients)})")

    await ws.send_text(json.dumps({"state": status_dict(get_coordinator().snapshot())}))

    try:
        while True:
            await ws.receive_text()
    except WebSocketDisconnect:
        logger.debug("WebSocket client closed")
    finally:
        if ws in state.clients:
            state.clients.remove(ws)
        logger.info(f"WebSocket client disconnected (total: {len(state.clients)})")


def main():
    # Configure logging first - this will handle all log records
    from landlord.log import init_logging
    init_logging("app", color="dim cyan")

    app_config = get_app_config()
    print_config(get_sync_config())

    logger.info("Starting landlord sync service")
    logger.info(f"Starting web server on http://{app_config.HOST}:{app_config.PORT}")

    try:
        uvicorn.run(app, host=app_config.HOST, port=app_config.PORT, log_config=None)
    finally:
        logger.info("Server stopped")


if __name__ == "__main__":
    main()
