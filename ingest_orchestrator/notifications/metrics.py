"""Telemetry events posted to an optional metrics endpoint."""

from __future__ import annotations

from typing import Any, Dict, Optional

import requests

from ingest_orchestrator.config import get_config
from ingest_orchestrator.logging_utils import get_logger

logger = get_logger(__name__)


def log_event(name: str, props: Optional[Dict[str, Any]] = None, user_metrics_uuid: Optional[str] = None) -> bool:
    """
    Post a telemetry event.

    Without a configured METRICS_URL the event is only logged.

    Returns:
        True if the event was accepted by the endpoint
    """
    cfg = get_config().metrics
    props = dict(props or {})
    props["environment"] = get_config().ingest.environment
    if user_metrics_uuid:
        props["distinct_id"] = user_metrics_uuid

    if not cfg.url:
        logger.info("[METRICS] %s %s", name, props)
        return False

    try:
        response = requests.post(cfg.url, json={"event": name, "properties": props}, timeout=cfg.timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        logger.warning("[METRICS] Failed to post %s: %s", name, e)
        return False
    return True
