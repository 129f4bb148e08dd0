"""
FastAPI server for the DBW transport bridge.
Buffers inbound telemetry for the control loop and holds the latest
actuation commands for the vehicle side.
"""

import time
import logging
from pathlib import Path
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel
import uvicorn

from data.formats.data_format import (
    TOPIC_BRAKE,
    TOPIC_ENABLED,
    TOPIC_POSE,
    TOPIC_STEERING,
    TOPIC_THROTTLE,
    TOPIC_VELOCITY,
    TOPIC_WAYPOINTS,
)

app = FastAPI(title="DBW Stack Bridge Server")

# Log when the control loop stops polling for telemetry.
POLL_GAP_WARN_SECONDS = 0.1


def _get_bridge_logger() -> logging.Logger:
    log_path = Path(__file__).resolve().parents[1] / "tmp" / "logs" / "dbw_bridge.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)

    bridge_logger = logging.getLogger("dbw_bridge")
    bridge_logger.setLevel(logging.INFO)

    if not any(isinstance(h, logging.FileHandler) and h.baseFilename == str(log_path)
               for h in bridge_logger.handlers):
        handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")
        handler.setFormatter(formatter)
        bridge_logger.addHandler(handler)
        bridge_logger.propagate = False

    return bridge_logger


logger = _get_bridge_logger()

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global state
# Latest notification per inbound topic, cleared when the control loop drains it.
pending_notifications: Dict[str, dict] = {}
latest_actuation: Dict[str, dict] = {}
last_poll_time: Optional[float] = None
shutdown_requested: bool = False


class Vector3(BaseModel):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


class Quaternion(BaseModel):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0
    w: float = 1.0


class EnabledMessage(BaseModel):
    """/vehicle/dbw_enabled"""
    data: bool


class WaypointMessage(BaseModel):
    position: Vector3
    target_velocity: float = 0.0


class LaneMessage(BaseModel):
    """/final_waypoints"""
    waypoints: List[WaypointMessage]


class PoseMessage(BaseModel):
    """/current_pose"""
    position: Vector3
    orientation: Quaternion = Quaternion()
    heading: Optional[float] = None  # radians; overrides orientation when set


class TwistMessage(BaseModel):
    """/current_velocity"""
    linear: Vector3
    angular: Vector3 = Vector3()


class SteeringCmd(BaseModel):
    enable: bool
    steering_wheel_angle_cmd: float
    steering_wheel_angle_velocity: float = 0.0


class ThrottleCmd(BaseModel):
    enable: bool
    pedal_cmd: float
    pedal_cmd_type: int


class BrakeCmd(BaseModel):
    enable: bool
    pedal_cmd: float
    pedal_cmd_type: int


def reset_state():
    """Clear all buffered telemetry and commands."""
    global last_poll_time, shutdown_requested
    pending_notifications.clear()
    latest_actuation.clear()
    last_poll_time = None
    shutdown_requested = False


def _enqueue(topic: str, payload: dict) -> dict:
    if topic in pending_notifications:
        logger.debug("[OVERWRITE] %s replaced before drain", topic)
    pending_notifications[topic] = payload
    return {"status": "queued", "topic": topic}


@app.post("/api/vehicle/dbw_enabled")
async def receive_dbw_enabled(message: EnabledMessage):
    """Receive the DBW enable flag."""
    return _enqueue(TOPIC_ENABLED, message.model_dump())


@app.post("/api/final_waypoints")
async def receive_final_waypoints(message: LaneMessage):
    """Receive the upcoming waypoint list (replaces the previous one)."""
    return _enqueue(TOPIC_WAYPOINTS, message.model_dump())


@app.post("/api/current_pose")
async def receive_current_pose(message: PoseMessage):
    """Receive the vehicle pose."""
    return _enqueue(TOPIC_POSE, message.model_dump())


@app.post("/api/current_velocity")
async def receive_current_velocity(message: TwistMessage):
    """Receive the vehicle velocity."""
    return _enqueue(TOPIC_VELOCITY, message.model_dump())


@app.get("/api/telemetry/pending")
async def get_pending_telemetry():
    """
    Return and clear all notifications received since the last poll.

    Returns:
        {"notifications": [{"topic": str, "payload": dict}, ...]}
    """
    global last_poll_time

    now = time.time()
    if last_poll_time is not None and now - last_poll_time > POLL_GAP_WARN_SECONDS:
        logger.warning("[POLL_GAP] /api/telemetry/pending gap=%.3fs", now - last_poll_time)
    last_poll_time = now

    notifications = [
        {"topic": topic, "payload": payload}
        for topic, payload in pending_notifications.items()
    ]
    pending_notifications.clear()
    return {"notifications": notifications, "timestamp": now}


@app.post("/api/vehicle/steering_cmd")
async def set_steering_command(command: SteeringCmd):
    latest_actuation[TOPIC_STEERING] = {**command.model_dump(), "timestamp": time.time()}
    return {"status": "received"}


@app.post("/api/vehicle/throttle_cmd")
async def set_throttle_command(command: ThrottleCmd):
    latest_actuation[TOPIC_THROTTLE] = {**command.model_dump(), "timestamp": time.time()}
    return {"status": "received"}


@app.post("/api/vehicle/brake_cmd")
async def set_brake_command(command: BrakeCmd):
    latest_actuation[TOPIC_BRAKE] = {**command.model_dump(), "timestamp": time.time()}
    return {"status": "received"}


@app.get("/api/vehicle/actuation/latest")
async def get_latest_actuation():
    """
    Get the latest steering/throttle/brake commands (for the vehicle side).

    Returns:
        Mapping of command topic to its latest payload
    """
    if not latest_actuation:
        raise HTTPException(status_code=404, detail="No actuation command available")
    return dict(latest_actuation)


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {
        "status": "healthy",
        "timestamp": time.time(),
        "pending_topics": sorted(pending_notifications),
        "has_actuation": bool(latest_actuation),
    }


@app.post("/api/shutdown")
async def shutdown_signal():
    """Signal that the DBW stack is shutting down."""
    global shutdown_requested
    shutdown_requested = True
    return {
        "status": "shutdown",
        "message": "DBW stack is shutting down",
        "timestamp": time.time()
    }


@app.get("/api/shutdown")
async def check_shutdown():
    """Vehicle side polls this to detect that the stack stopped."""
    if shutdown_requested:
        return {
            "status": "shutdown",
            "message": "DBW stack is shutting down",
            "timestamp": time.time()
        }
    return {
        "status": "running",
        "message": "DBW stack is running",
        "timestamp": time.time()
    }


def run_server(host: str = "0.0.0.0", port: int = 8000):
    """Run the bridge server."""
    print(f"Starting DBW Stack Bridge Server on {host}:{port}")
    print("Endpoints:")
    print("  POST /api/vehicle/dbw_enabled - Enable flag")
    print("  POST /api/final_waypoints - Waypoint list")
    print("  POST /api/current_pose - Vehicle pose")
    print("  POST /api/current_velocity - Vehicle velocity")
    print("  GET  /api/telemetry/pending - Drain pending telemetry (control loop)")
    print("  POST /api/vehicle/{steering,throttle,brake}_cmd - Actuation commands")
    print("  GET  /api/vehicle/actuation/latest - Latest actuation commands")
    print("  GET  /api/health - Health check")

    uvicorn.run(app, host=host, port=port)


if __name__ == "__main__":
    run_server()
