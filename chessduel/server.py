from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
import asyncio
import json
import os
from typing import Dict, Set, Any

from loguru import logger

from chessduel import __version__
from chessduel.config import CONFIG_ENV_VAR, Difficulty, Settings, load_settings
from chessduel.engine_bridge import EngineBridge
from chessduel.exceptions import InvalidIntentError
from chessduel.models import (
    Intent,
    PromoteIntent,
    ResignIntent,
    SelectIntent,
    StartIntent,
    UndoIntent,
    parse_intent,
)
from chessduel.orchestrator import TurnOrchestrator

# ---- Game room storage ----
Room = Dict[str, Any]


def engine_payload(bridge: EngineBridge) -> dict:
    return {"type": "engine", "state": str(bridge.state), "notice": bridge.notice}


def new_room(game_id: str, settings: Settings) -> Room:
    """Create a room with its own engine process and game. Needs a running loop."""
    outbox: asyncio.Queue = asyncio.Queue()

    bridge = EngineBridge(settings.engine)
    bridge.add_listener(lambda b: outbox.put_nowait(engine_payload(b)))

    orchestrator = TurnOrchestrator(
        bridge,
        fallback=bridge.fallback,
        difficulty=settings.default_difficulty,
        on_change=lambda snapshot: outbox.put_nowait(snapshot.payload()),
        on_event=lambda event: outbox.put_nowait(event.payload()),
    )

    room: Room = {
        "game_id": game_id,
        "orchestrator": orchestrator,
        "bridge": bridge,
        "clients": set(),              # all sockets in this game
        "outbox": outbox,              # payloads waiting to be broadcast
    }
    room["broadcaster"] = asyncio.create_task(pump_outbox(room))
    bridge.initialize()
    logger.info(f"Room {game_id} opened")
    return room


async def close_room(room: Room) -> None:
    orchestrator: TurnOrchestrator = room["orchestrator"]
    bridge: EngineBridge = room["bridge"]

    await orchestrator.shutdown()
    await bridge.close()
    room["broadcaster"].cancel()
    try:
        await room["broadcaster"]
    except asyncio.CancelledError:
        pass
    logger.info(f"Room {room['game_id']} closed")


async def broadcast(room: Room, payload: dict) -> None:
    clients: Set[WebSocket] = room["clients"]
    if not clients:
        return

    msg = json.dumps(payload)
    await asyncio.gather(
        *[ws.send_text(msg) for ws in list(clients)],
        return_exceptions=True,
    )


async def pump_outbox(room: Room) -> None:
    outbox: asyncio.Queue = room["outbox"]
    while True:
        payload = await outbox.get()
        await broadcast(room, payload)


def dispatch(orchestrator: TurnOrchestrator, intent: Intent) -> None:
    """Hand a validated client intent to the game."""
    if isinstance(intent, StartIntent):
        orchestrator.start_game(intent.difficulty, intent.color)
    elif isinstance(intent, SelectIntent):
        orchestrator.select_square(intent.square)
    elif isinstance(intent, PromoteIntent):
        orchestrator.choose_promotion(intent.piece)
    elif isinstance(intent, UndoIntent):
        orchestrator.undo()
    elif isinstance(intent, ResignIntent):
        orchestrator.resign()


def create_app(settings: Settings | None = None) -> FastAPI:
    if settings is None:
        settings = load_settings(os.environ.get(CONFIG_ENV_VAR))

    app = FastAPI(title="chessduel", version=__version__)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    rooms: Dict[str, Room] = {}
    app.state.settings = settings
    app.state.rooms = rooms

    # ---- HTTP ----
    @app.get("/")
    async def index() -> dict:
        return {
            "name": "chessduel",
            "version": __version__,
            "difficulties": [str(d) for d in Difficulty],
            "colors": ["white", "black", "random"],
            "defaultDifficulty": str(settings.default_difficulty),
        }

    @app.get("/difficulties")
    async def difficulties() -> dict:
        return {str(d): settings.engine.depth_for(d) for d in Difficulty}

    @app.get("/games/{game_id}")
    async def game_state(game_id: str) -> dict:
        room = rooms.get(game_id)
        if room is None:
            raise HTTPException(status_code=404, detail=f"Game {game_id!r} not found")
        return room["orchestrator"].snapshot().payload()

    # ---- WebSocket endpoint ----
    @app.websocket("/ws/game/{game_id}")
    async def ws_game(websocket: WebSocket, game_id: str) -> None:
        await websocket.accept()

        room = rooms.get(game_id)
        if room is None:
            room = new_room(game_id, settings)
            rooms[game_id] = room
        clients: Set[WebSocket] = room["clients"]
        orchestrator: TurnOrchestrator = room["orchestrator"]

        try:
            # Send initial state before joining the broadcast
            await websocket.send_text(json.dumps(orchestrator.snapshot().payload()))
            clients.add(websocket)
            await websocket.send_text(json.dumps(engine_payload(room["bridge"])))

            while True:
                data = await websocket.receive_text()
                try:
                    intent = parse_intent(data)
                except InvalidIntentError as exc:
                    logger.debug(f"Room {game_id}: rejected message {data!r}")
                    await websocket.send_text(json.dumps({"type": "error", "detail": str(exc)}))
                    continue

                dispatch(orchestrator, intent)

        except WebSocketDisconnect:
            logger.debug(f"Room {game_id}: client disconnected")
        finally:
            clients.discard(websocket)
            if not clients and rooms.get(game_id) is room:
                rooms.pop(game_id)
                await close_room(room)

    return app


app = create_app()
