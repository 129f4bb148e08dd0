"""
Python client helper for the DBW bridge.
Polls inbound telemetry for the control loop and publishes actuation commands.
"""

import logging
from typing import Dict, List

import requests

from control.telemetry import ENABLED, POSE, VELOCITY, WAYPOINTS, TelemetryStore
from data.formats.data_format import (
    BrakeCommand,
    SteeringCommand,
    ThrottleCommand,
    TOPIC_ENABLED,
    TOPIC_POSE,
    TOPIC_VELOCITY,
    TOPIC_WAYPOINTS,
    command_to_dict,
    pose_from_message,
    velocity_from_message,
    waypoints_from_message,
)

logger = logging.getLogger(__name__)


def submit_notifications(store: TelemetryStore, notifications: List[Dict]) -> int:
    """
    Queue bridge notifications into the telemetry store.

    Malformed or unknown notifications are logged and skipped.

    Returns:
        Number of notifications queued
    """
    queued = 0
    for notification in notifications:
        topic = None
        try:
            topic = notification.get("topic")
            payload = notification.get("payload") or {}
            if topic == TOPIC_ENABLED:
                store.submit(ENABLED, bool(payload["data"]))
            elif topic == TOPIC_WAYPOINTS:
                store.submit(WAYPOINTS, waypoints_from_message(payload))
            elif topic == TOPIC_POSE:
                store.submit(POSE, pose_from_message(payload))
            elif topic == TOPIC_VELOCITY:
                store.submit(VELOCITY, velocity_from_message(payload))
            else:
                logger.warning("[UNKNOWN_TOPIC] %s", topic)
                continue
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("[BAD_NOTIFICATION] topic=%s error=%s", topic, e)
            continue
        queued += 1
    return queued


class DBWBridgeClient:
    """Client for communicating with the DBW bridge server."""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 0.01):
        """
        Initialize DBW bridge client.

        Args:
            base_url: Base URL of the bridge server
            timeout: Per-request timeout in seconds (kept well under one tick)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def fetch_pending_notifications(self) -> List[Dict]:
        """
        Drain notifications queued on the server since the last call.

        Returns:
            List of {"topic", "payload"} dicts (empty on any transport error)
        """
        try:
            response = self.session.get(
                f"{self.base_url}/api/telemetry/pending", timeout=self.timeout
            )
            response.raise_for_status()
            return list(response.json().get("notifications", []))
        except requests.exceptions.Timeout:
            # Nothing this tick; retry next tick
            return []
        except requests.RequestException as e:
            logger.debug("Telemetry poll failed: %s", e)
            return []

    def _post_command(self, path: str, command) -> bool:
        try:
            response = self.session.post(
                f"{self.base_url}{path}",
                json=command_to_dict(command),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.warning("Error publishing %s: %s", path, e)
            return False

    def publish_steering(self, command: SteeringCommand) -> bool:
        return self._post_command("/api/vehicle/steering_cmd", command)

    def publish_throttle(self, command: ThrottleCommand) -> bool:
        return self._post_command("/api/vehicle/throttle_cmd", command)

    def publish_brake(self, command: BrakeCommand) -> bool:
        return self._post_command("/api/vehicle/brake_cmd", command)

    def health_check(self) -> bool:
        """
        Check if bridge server is healthy.

        Returns:
            True if healthy, False otherwise
        """
        try:
            response = self.session.get(f"{self.base_url}/api/health", timeout=1.0)
            response.raise_for_status()
            return True
        except requests.RequestException:
            return False

    def signal_shutdown(self) -> bool:
        """
        Signal to the vehicle side that the DBW stack is shutting down.

        Returns:
            True if signal was sent successfully, False otherwise
        """
        try:
            response = self.session.post(f"{self.base_url}/api/shutdown", timeout=2.0)
            response.raise_for_status()
            return response.json().get("status") == "shutdown"
        except requests.RequestException as e:
            logger.warning("Error signaling shutdown: %s", e)
            return False
