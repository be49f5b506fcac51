"""
Clinic Context Backend: FastAPI WebSocket Server

Hosts the active patient context for the tabs of the clinic web app:
1. Accepts WebSocket connections from browser tabs (/ws/tab/{origin})
2. Resolves the active patient on each navigation and mirrors it to storage
3. Pushes context changes made in one tab to the other tabs of its origin
4. Confirms patient ids against the hosted profile backend
"""

# Load environment variables FIRST before any other imports
from pathlib import Path
from dotenv import load_dotenv

env_path = Path(__file__).parent.parent / ".env"
load_dotenv(env_path)

import asyncio
import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from typing import Any, Dict, Optional

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pythonjsonlogger import jsonlogger

from clinic_context.clients import ProfileFetchError, get_profile_client
from clinic_context.context_routes import router as context_router
from clinic_context.patient_context import SelectionDetails
from clinic_context.schemas import NavigateRequest, SelectionRequest, TabAction, WebSocketMessage
from clinic_context.tabs import TabSession, get_tab_manager

__version__ = "0.3.0"

# ============================================================================
# LOGGING CONFIGURATION
# ============================================================================

class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for different log levels."""

    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
    }
    RESET = '\033[0m'
    BOLD = '\033[1m'

    def format(self, record):
        record = logging.makeLogRecord(record.__dict__)
        color = self.COLORS.get(record.levelname, self.RESET)
        record.levelname = f"{color}{self.BOLD}{record.levelname}{self.RESET}"
        record.msg = f"{color}{record.getMessage()}{self.RESET}"
        record.args = None
        return super().format(record)


def setup_logging():
    """Setup console, JSON file and error logging for the application."""

    logger = logging.getLogger("clinic-context")
    logger.setLevel(logging.DEBUG)
    logger.handlers = []

    # Module loggers (clinic_context.*) share the same handlers
    package_logger = logging.getLogger("clinic_context")
    package_logger.setLevel(logging.DEBUG)
    package_logger.handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(os.getenv("CLINIC_LOG_LEVEL", "INFO").upper())
    console_handler.setFormatter(ColoredFormatter(
        '%(asctime)s | %(levelname)s | [%(name)s] %(message)s',
        datefmt='%H:%M:%S'
    ))
    handlers = [console_handler]

    # Rotates daily, keeps 7 days. Set CLINIC_LOG_FILE="" to disable file logs.
    log_file = os.getenv("CLINIC_LOG_FILE", "clinic_context.log")
    if log_file:
        file_handler = TimedRotatingFileHandler(
            log_file, when="midnight", interval=1, backupCount=7, encoding='utf-8'
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(jsonlogger.JsonFormatter(
            '%(asctime)s %(name)s %(levelname)s %(message)s %(lineno)d %(funcName)s',
            rename_fields={'levelname': 'level', 'asctime': 'timestamp'}
        ))
        handlers.append(file_handler)

        error_handler = logging.FileHandler(
            os.path.splitext(log_file)[0] + '.error.log', mode='a', encoding='utf-8'
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(logging.Formatter(
            '%(asctime)s | %(levelname)s | [%(name)s] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        handlers.append(error_handler)

    for handler in handlers:
        logger.addHandler(handler)
        package_logger.addHandler(handler)

    return logger

logger = setup_logging()

# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    manager = get_tab_manager()
    logger.info("=" * 60)
    logger.info("  CLINIC CONTEXT BACKEND STARTING")
    logger.info("=" * 60)
    logger.info("WebSocket Endpoints:")
    logger.info("  Browser tabs:     ws://localhost:8000/ws/tab/{origin}")
    logger.info("")
    logger.info("REST Endpoints:")
    logger.info("  Health Check:     http://localhost:8000/health")
    logger.info("  Context:          http://localhost:8000/context/{origin}/tabs")
    logger.info("  Patients:         http://localhost:8000/patients/{id}")
    logger.info(f"  Storage backend:  {manager.registry.backend}")
    logger.info("=" * 60)
    yield
    for tab_id in list(manager.tabs):
        manager.close_tab(tab_id)
    logger.info("=" * 60)
    logger.info("  CLINIC CONTEXT BACKEND SHUTTING DOWN")
    logger.info("=" * 60)


app = FastAPI(
    title="Clinic Context Backend",
    description="Active patient context resolution and cross-tab sync",
    version=__version__,
    lifespan=lifespan
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in os.getenv(
        "CORS_ORIGINS", "http://localhost:3000,http://localhost:5173"
    ).split(",") if o.strip()],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(context_router)


@app.get("/")
async def root():
    """Health check and status endpoint."""
    manager = get_tab_manager()
    logger.debug("Root endpoint accessed")
    return {
        "service": "Clinic Context Backend",
        "status": "running",
        "version": __version__,
        "tabs": len(manager.tabs),
        "storage_backend": manager.registry.backend,
    }


@app.get("/health")
async def health():
    """Simple health check endpoint."""
    return {"status": "healthy", "timestamp": datetime.now().isoformat()}


@app.get("/stats")
async def stats():
    """Get backend statistics."""
    stats = get_tab_manager().get_stats()
    logger.info(f"Stats requested: {stats}")
    return stats


@app.get("/patients/{patient_id}")
async def get_patient(patient_id: str):
    """Fetch the authoritative profile for a patient id."""
    logger.info(f"Patient requested: {patient_id}")

    try:
        profile = await get_profile_client().fetch_profile(patient_id)
    except ProfileFetchError as e:
        logger.error(f"Profile fetch failed for {patient_id}: {e}")
        raise HTTPException(status_code=502, detail="Profile backend unavailable")

    if profile is None:
        logger.warning(f"Patient not found: {patient_id}")
        raise HTTPException(status_code=404, detail="Patient not found")

    return {"patient": profile.model_dump()}


# ============================================================================
# TAB WEBSOCKET
# ============================================================================

def context_message(session: TabSession) -> Dict[str, Any]:
    return WebSocketMessage(type="CONTEXT_UPDATE", data=session.snapshot()).model_dump()


def handle_tab_action(session: TabSession, message: Dict[str, Any]) -> Optional[str]:
    """
    Apply one action sent by a tab.

    Returns:
        An error string for the client, or None on success
    """
    action = message.get('action', '')

    if action == TabAction.NAVIGATE:
        request = NavigateRequest(**{k: v for k, v in message.items() if k != 'action'})
        session.resolver.resolve(request.to_route())
    elif action == TabAction.SELECT:
        request = SelectionRequest(**{k: v for k, v in message.items() if k != 'action'})
        details: SelectionDetails = request.to_details()
        session.resolver.select(request.patient_id, details)
    elif action == TabAction.CLEAR:
        session.resolver.clear()
    else:
        return f"Unknown action: {action}"
    return None


@app.websocket("/ws/tab/{origin}")
async def tab_websocket_endpoint(websocket: WebSocket, origin: str, tab_id: Optional[str] = None):
    """
    WebSocket endpoint for one browser tab.

    The tab session lives as long as the connection. Every action gets one
    CONTEXT_UPDATE reply; changes adopted from other tabs are pushed as they
    happen.
    """
    manager = get_tab_manager()
    await websocket.accept()
    try:
        session = manager.open_tab(origin, tab_id=tab_id)
    except ValueError as e:
        await websocket.send_json(WebSocketMessage(type="ERROR", data=str(e)).model_dump())
        await websocket.close(code=1008)
        return

    loop = asyncio.get_running_loop()
    outbox: asyncio.Queue = asyncio.Queue()
    pushed = {'count': 0}

    def push(s: TabSession) -> None:
        pushed['count'] += 1
        loop.call_soon_threadsafe(outbox.put_nowait, context_message(s))

    session.on_change(push)
    outbox.put_nowait(context_message(session))

    async def sender():
        while True:
            msg = await outbox.get()
            await websocket.send_json(msg)

    # Heartbeat task to keep connection alive through proxies
    async def heartbeat():
        try:
            while True:
                await asyncio.sleep(30)
                try:
                    await websocket.send_json({"type": "PING", "timestamp": datetime.now().isoformat()})
                except Exception:
                    break
        except asyncio.CancelledError:
            pass

    sender_task = asyncio.create_task(sender())
    heartbeat_task = asyncio.create_task(heartbeat())

    try:
        while True:
            try:
                data = await asyncio.wait_for(websocket.receive_text(), timeout=120.0)
            except asyncio.TimeoutError:
                try:
                    await websocket.send_json({"type": "PING", "timestamp": datetime.now().isoformat()})
                    continue
                except Exception:
                    logger.warning(f"Tab {session.tab_id} stale - no response to ping")
                    break

            try:
                message = json.loads(data)
                if not isinstance(message, dict):
                    logger.warning(f"Non-object message from tab {session.tab_id}: {data}")
                    outbox.put_nowait(
                        WebSocketMessage(type="ERROR", data="Message must be a JSON object").model_dump()
                    )
                    continue
                if message.get('action') == TabAction.PONG:
                    continue

                before = pushed['count']
                error = handle_tab_action(session, message)
                if error:
                    outbox.put_nowait(WebSocketMessage(type="ERROR", data=error).model_dump())
                elif pushed['count'] == before:
                    outbox.put_nowait(context_message(session))

            except json.JSONDecodeError:
                logger.warning(f"Invalid JSON from tab {session.tab_id}: {data}")
                outbox.put_nowait(WebSocketMessage(type="ERROR", data="Invalid JSON").model_dump())
            except ValueError as e:
                logger.warning(f"Rejected message from tab {session.tab_id}: {e}")
                outbox.put_nowait(WebSocketMessage(type="ERROR", data=str(e)).model_dump())

    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"Tab WebSocket error: {e}")
    finally:
        for task in (heartbeat_task, sender_task):
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass
        manager.close_tab(session.tab_id)
