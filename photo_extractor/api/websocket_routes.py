"""
WebSocket API Routes
Streams scan progress to connected clients
"""

from datetime import datetime
from fastapi import APIRouter, WebSocket
import structlog

from photo_extractor.api.websocket import ws_manager
from photo_extractor.core.errors import ScanNotFoundError

logger = structlog.get_logger()

router = APIRouter()


def get_publisher():
    from main import app_state
    return app_state["publisher"]


@router.websocket("/ws/scans/{scan_id}")
async def scan_progress_socket(websocket: WebSocket, scan_id: str):
    """
    Push progress messages for one scan

    Message Types Sent:
    - connection_established: Initial connection confirmation
    - progress: Periodic counters while the scan runs
    - terminal: Final state, sent once before the server closes the socket
    - error: The scan does not exist
    """
    publisher = get_publisher()
    await ws_manager.connect(websocket, scan_id)

    stream = publisher.subscribe(scan_id)
    try:
        async for message in stream:
            sent = await ws_manager.send_personal_message(websocket, {
                "type": message.event,
                "data": message.to_dict(),
                "timestamp": message.timestamp,
            })
            if not sent:
                logger.info("WebSocket client went away", scan_id=scan_id)
                break
    except ScanNotFoundError as e:
        await ws_manager.send_personal_message(websocket, {
            "type": "error",
            "data": {"scan_id": scan_id, "error": str(e)},
            "timestamp": datetime.utcnow().isoformat(),
        })
    finally:
        await stream.aclose()
        await ws_manager.disconnect(websocket, scan_id)

    try:
        await websocket.close()
    except RuntimeError:
        # Already closed by the client
        pass


@router.get("/ws/status")
async def websocket_status():
    """Get WebSocket connection statistics"""
    return {
        "total_connections": ws_manager.get_connection_count(),
        "scan_connections": {
            scan_id: len(connections)
            for scan_id, connections in ws_manager.scan_connections.items()
        }
    }
