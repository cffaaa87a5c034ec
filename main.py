import asyncio
import json
import logging
import os
import socket
import sys
from contextlib import asynccontextmanager, suppress

import uvicorn
from fastapi import FastAPI, Request, WebSocket
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketDisconnect

from sahay.config import DEFAULT_CONFIG, get_data_dir, load_config, sanitize_config_values, save_config
from sahay.errors import AssistantError, GenerationFailed, error_to_http
from sahay.log import LOG_FORMAT, apply_runtime_log_levels, log_important
from sahay.orchestrator import ConversationContext
from sahay.runtime import AssistantRuntime
from sahay.sessions import ChatSession

# Setup Logging
logging.basicConfig(level=logging.INFO, format=LOG_FORMAT)
logger = logging.getLogger("sahay.main")

# Configuration
config = load_config()
apply_runtime_log_levels(config)


def create_runtime(cfg: dict) -> AssistantRuntime:
    return AssistantRuntime(cfg, get_data_dir())


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info("Server starting...")
    log_important("server.starting")
    runtime = create_runtime(config)
    app.state.runtime = runtime
    await runtime.start()
    yield
    # Shutdown
    logger.info("Shutting down...")
    log_important("server.stopping")
    await runtime.shutdown()


app = FastAPI(lifespan=lifespan)


def _error_response(exc: BaseException) -> JSONResponse:
    status_code, message = error_to_http(exc)
    if status_code >= 500:
        logger.error(f"Request failed: {exc}")
    return JSONResponse({"status": "error", "message": message}, status_code=status_code)


def _session_summary(session: ChatSession) -> dict:
    data = session.to_dict()
    data.pop("messages", None)
    data["messageCount"] = len([m for m in session.messages if m.role != "system"])
    return data


async def _ws_send_json(
    websocket: WebSocket,
    payload: dict,
    send_lock: asyncio.Lock | None = None,
) -> bool:
    try:
        if send_lock is None:
            await websocket.send_json(payload)
        else:
            async with send_lock:
                await websocket.send_json(payload)
        return True
    except Exception:
        return False


# ============================================
# HTTP ROUTES
# ============================================

@app.get("/api/health")
def api_health(request: Request):
    return {"status": "ok", **request.app.state.runtime.status()}


@app.get("/api/domains")
def api_domains(request: Request):
    catalog = request.app.state.runtime.catalog
    return {
        "status": "ok",
        "domains": [
            {"id": d, "languages": catalog.languages(d), "greeting": catalog.greeting_for(d)}
            for d in catalog.domains()
        ],
    }


@app.get("/api/settings")
def get_settings():
    return {"status": "ok", "config": config}


async def _apply_settings(request: Request, new_config: dict):
    global config
    try:
        config = save_config(new_config)
    except Exception as e:
        return JSONResponse({"status": "error", "message": f"Failed to save settings: {e}"}, status_code=500)

    apply_runtime_log_levels(config)
    warning = None
    try:
        changed = await request.app.state.runtime.apply_config(config)
    except AssistantError as e:
        logger.warning(f"Settings saved but the text engine did not reload: {e}")
        changed = []
        warning = e.user_text
    changed_list = ",".join(changed[:12]) + (",..." if len(changed) > 12 else "")
    log_important(
        "settings.updated",
        changed_count=len(changed),
        changed_keys=(changed_list or "-"),
    )
    payload = {"status": "ok", "config": config}
    if warning:
        payload["warning"] = warning
    return payload


@app.post("/api/settings")
async def update_settings(request: Request):
    try:
        data = await request.json()
    except Exception:
        return JSONResponse({"status": "error", "message": "Invalid JSON"}, status_code=400)

    if not isinstance(data, dict):
        return JSONResponse({"status": "error", "message": "JSON body must be an object"}, status_code=400)

    return await _apply_settings(request, sanitize_config_values(data, base=config))


@app.post("/api/settings/reset")
async def api_reset_settings(request: Request):
    """Reset settings to defaults and persist to disk."""
    log_important("settings.reset")
    return await _apply_settings(request, sanitize_config_values({}, base=DEFAULT_CONFIG))


@app.get("/api/sessions/{domain}")
def api_list_sessions(request: Request, domain: str, q: str = ""):
    store = request.app.state.runtime.store
    try:
        sessions = store.search(domain, q) if q.strip() else store.list(domain)
    except Exception as e:
        return _error_response(e)
    return {"status": "ok", "sessions": [_session_summary(s) for s in sessions]}


@app.get("/api/sessions/{domain}/{session_id}")
def api_get_session(request: Request, domain: str, session_id: str):
    try:
        session = request.app.state.runtime.store.get(domain, session_id)
    except Exception as e:
        return _error_response(e)
    return {"status": "ok", "session": session.to_dict()}


@app.delete("/api/sessions/{domain}/{session_id}")
def api_delete_session(request: Request, domain: str, session_id: str):
    try:
        request.app.state.runtime.store.delete(domain, session_id)
    except Exception as e:
        return _error_response(e)
    log_important("chat.deleted", domain=domain, session_id=session_id)
    return {"status": "ok"}


@app.delete("/api/sessions/{domain}")
def api_clear_sessions(request: Request, domain: str):
    try:
        request.app.state.runtime.store.clear(domain)
    except Exception as e:
        return _error_response(e)
    log_important("chat.cleared", domain=domain)
    return {"status": "ok"}


@app.post("/api/voice/start")
async def api_voice_start(request: Request):
    runtime = request.app.state.runtime
    try:
        handle = runtime.recorder.start()
    except RuntimeError as e:
        return JSONResponse({"status": "error", "message": str(e)}, status_code=409)
    return {"status": "ok", "handle": handle}


@app.post("/api/voice/stop")
async def api_voice_stop(request: Request):
    runtime = request.app.state.runtime
    try:
        recording = await asyncio.to_thread(runtime.recorder.stop)
    except RuntimeError as e:
        return JSONResponse({"status": "error", "message": str(e)}, status_code=409)
    return {"status": "ok", "audio_path": recording.path, "duration_s": round(recording.duration_s, 2)}


# ============================================
# CHAT SOCKET
# ============================================

async def _relay_events(websocket: WebSocket, queue: asyncio.Queue, send_lock: asyncio.Lock) -> None:
    # Single sender keeps token/done/error ordering intact.
    while True:
        payload = await queue.get()
        await _ws_send_json(websocket, payload, send_lock)
        queue.task_done()


def _session_event(context: ConversationContext, runtime: AssistantRuntime) -> dict:
    return {
        "type": "session",
        "session_id": context.session_id,
        "domain": context.domain,
        "language": context.language,
        "greeting": runtime.catalog.greeting_for(context.domain),
        "messages": [m.to_dict() for m in context.messages if m.role != "system"],
    }


async def _run_turn(runtime: AssistantRuntime, context: ConversationContext, msg: dict, queue: asyncio.Queue) -> None:
    orch = runtime.orchestrator
    session_before = context.session_id

    def _on_token(fragment: str) -> None:
        queue.put_nowait({"type": "token", "text": fragment})

    try:
        if msg.get("type") == "voice":
            text = await orch.transcribe(context, str(msg.get("audio_path") or ""))
            queue.put_nowait({"type": "transcript", "text": text})
            message = await orch.submit_user_turn(context, text, is_voice_origin=True, on_token=_on_token)
        else:
            message = await orch.submit_user_turn(context, str(msg.get("text") or ""), on_token=_on_token)
    except Exception as e:
        status_code, text = error_to_http(e)
        if status_code >= 500 and not isinstance(e, AssistantError):
            logger.exception("Chat turn failed")
        payload = {"type": "error", "message": text, "code": status_code}
        if isinstance(e, GenerationFailed) and e.partial_text:
            payload["partial"] = e.partial_text
        queue.put_nowait(payload)
        return

    if context.session_id and context.session_id != session_before:
        queue.put_nowait(_session_event(context, runtime))
    if context.last_warning:
        queue.put_nowait({"type": "warning", "message": context.last_warning})

    outcome = context.last_outcome
    queue.put_nowait(
        {
            "type": "done",
            "message": message.to_dict(),
            "tokens_per_second": (outcome.tokens_per_second if outcome else 0.0),
            "cancelled": bool(outcome and outcome.cancelled),
            "hit_limit": bool(outcome and outcome.hit_limit),
        }
    )


@app.websocket("/ws/chat")
async def websocket_chat(websocket: WebSocket):
    await websocket.accept()
    logger.info("WebSocket connected")
    log_important("ws.connected")

    runtime: AssistantRuntime = websocket.app.state.runtime
    send_lock = asyncio.Lock()
    queue: asyncio.Queue = asyncio.Queue()
    relay_task = asyncio.create_task(_relay_events(websocket, queue, send_lock))
    context: ConversationContext | None = None
    turn_task: asyncio.Task | None = None

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                msg = json.loads(raw)
            except ValueError:
                queue.put_nowait({"type": "error", "message": "Invalid JSON", "code": 400})
                continue
            if not isinstance(msg, dict):
                queue.put_nowait({"type": "error", "message": "Message must be an object", "code": 400})
                continue

            mtype = str(msg.get("type") or "")
            if mtype == "start":
                if turn_task is not None and not turn_task.done():
                    queue.put_nowait({"type": "error", "message": "Please wait for the current response to finish.", "code": 409})
                    continue
                domain = str(msg.get("domain") or "")
                language = str(msg.get("language") or "")
                session_id = msg.get("session_id")
                try:
                    runtime.catalog.instruction_for(domain, language)
                    if session_id:
                        context = runtime.orchestrator.open_session(domain, str(session_id))
                        if language:
                            context.language = language
                    else:
                        context = runtime.orchestrator.new_context(domain.strip().lower(), language or "auto")
                except Exception as e:
                    status_code, text = error_to_http(e)
                    queue.put_nowait({"type": "error", "message": text, "code": status_code})
                    continue
                log_important("chat.opened", domain=context.domain, language=context.language, session_id=context.session_id)
                queue.put_nowait(_session_event(context, runtime))

            elif mtype in ("user_text", "voice"):
                if context is None:
                    queue.put_nowait({"type": "error", "message": "Open a chat first.", "code": 400})
                    continue
                if turn_task is not None and not turn_task.done():
                    queue.put_nowait({"type": "error", "message": "Please wait for the current response to finish.", "code": 409})
                    continue
                turn_task = asyncio.create_task(_run_turn(runtime, context, msg, queue))

            elif mtype == "cancel":
                await runtime.orchestrator.cancel()

            else:
                queue.put_nowait({"type": "error", "message": f"Unknown message type: {mtype or '-'}", "code": 400})

    except WebSocketDisconnect:
        logger.info("WebSocket disconnected")
        log_important("ws.disconnected")
    finally:
        if turn_task is not None and not turn_task.done():
            await runtime.orchestrator.cancel()
            with suppress(Exception):
                await turn_task
        relay_task.cancel()
        with suppress(asyncio.CancelledError):
            await relay_task


# ============================================
# LAUNCH
# ============================================

def find_available_port(host: str, preferred_port: int) -> int:
    for port in range(preferred_port, preferred_port + 100):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((host, port))
                return port
            except OSError:
                continue

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return int(s.getsockname()[1])


def start_server(host: str, port: int):
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    try:
        server_host = "127.0.0.1"
        preferred_port = int(os.environ.get("SAHAY_PORT", "8000"))
        server_port = find_available_port(server_host, preferred_port)
        logger.info(f"Starting server on http://{server_host}:{server_port} (data: {get_data_dir()})")
        try:
            start_server(server_host, server_port)
        except KeyboardInterrupt:
            logger.info("Stopping...")
    except Exception as e:
        logger.exception("Fatal error during startup:")
        print(f"\n\nFATAL ERROR: {e}\n")
        sys.exit(1)
